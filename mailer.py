import logging
import smtplib
from email.message import EmailMessage

import config

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    pass


class LogOtpSender:
    """Writes the code to the log instead of mailing it (local development)."""

    def send(self, email: str, otp: str) -> None:
        logger.info("OTP for %s: %s", email, otp)


class SmtpOtpSender:
    def __init__(self, host: str, port: int, user=None, password=None, sender=None):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user

    def send(self, email: str, otp: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = "Your verification code"
        msg["From"] = self.sender
        msg["To"] = email
        msg.set_content(
            f"Your verification code is {otp}. "
            f"It expires in {config.OTP_TTL_MINUTES} minutes."
        )
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("OTP email to %s failed: %s", email, e)
            raise DeliveryError(str(e)) from e
        logger.info("OTP email sent to %s", email)


def build_otp_sender():
    if config.SMTP_HOST:
        return SmtpOtpSender(
            config.SMTP_HOST,
            config.SMTP_PORT,
            user=config.SMTP_USER,
            password=config.SMTP_PASSWORD,
            sender=config.SMTP_FROM,
        )
    return LogOtpSender()
