"""
Accounts: signup, OTP verification, login and the vet directory.

Passwords are hashed with PBKDF2-HMAC-SHA256 and a random 16-byte salt,
stored as ``"<hex_salt>:<hex_hash>"``.
"""
import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, get_document_by_id, get_documents, now, serialize
from errors import AuthorizationError, ConflictError, NotFoundError, UpstreamError, ValidationError
from mailer import DeliveryError
from schemas import USERS, VET_FIELDS, User

logger = logging.getLogger(__name__)

PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
PBKDF2_ITERATIONS = 260_000
SECRET_FIELDS = ("password", "otp", "otpExpiresAt")

_email_adapter = TypeAdapter(EmailStr)


def hash_password(password: str) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"{salt.hex()}:{digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        salt_hex, digest_hex = stored.split(":", 1)
        salt = bytes.fromhex(salt_hex)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return hmac.compare_digest(digest.hex(), digest_hex)


def generate_otp() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def public_user(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    doc = serialize(doc)
    if doc is not None:
        for key in SECRET_FIELDS:
            doc.pop(key, None)
    return doc


def _hide_secrets() -> Dict[str, int]:
    # Fresh per query; the driver may add keys to a projection it is given
    return {key: 0 for key in SECRET_FIELDS}


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccountService:
    def __init__(self, db: Database, otp_sender, otp_enabled: Optional[bool] = None,
                 otp_ttl_minutes: Optional[int] = None):
        self.db = db
        self.otp_sender = otp_sender
        self.otp_enabled = config.OTP_ENABLED if otp_enabled is None else otp_enabled
        self.otp_ttl = timedelta(minutes=otp_ttl_minutes or config.OTP_TTL_MINUTES)

    @property
    def users(self):
        return self.db[USERS]

    def signup(
        self,
        username: str,
        email: str,
        password: str,
        role: Optional[str] = None,
        **vet_fields: Optional[str],
    ) -> Dict[str, Any]:
        if not username or not email or not password:
            raise ValidationError("username, email, and password are required")
        try:
            email = str(_email_adapter.validate_python(email.strip())).lower()
        except PydanticValidationError:
            raise ValidationError("Invalid email address")
        if not PASSWORD_RE.match(password):
            raise ValidationError(
                "Password must be at least 8 characters and include upper and lower case "
                "letters, a digit and a special character (@$!%*?&)"
            )

        role = (role or "user").lower().strip()
        if role not in {"user", "vet"}:
            raise ValidationError("Invalid role")

        if self.users.find_one({"email": email}):
            raise ConflictError("Email already exists")
        if self.users.find_one({"username": username}):
            raise ConflictError("Username already exists")

        user = User(
            email=email,
            username=username,
            password=hash_password(password),
            role=role,
            verified=not self.otp_enabled,
        )
        if role == "vet":
            profile = {f: vet_fields[f] for f in VET_FIELDS if vet_fields.get(f)}
            user = user.model_copy(update=profile)

        otp = None
        if self.otp_enabled:
            otp = generate_otp()
            user = user.model_copy(update={"otp": otp, "otp_expires_at": now() + self.otp_ttl})

        try:
            doc = create_document(self.db, USERS, user)
        except DuplicateKeyError:
            # lost a race with a concurrent signup
            raise ConflictError("Email or username already exists")
        logger.info("Created user id=%s role=%s verified=%s", doc["_id"], role, doc["verified"])
        if otp:
            try:
                self.otp_sender.send(email, otp)
            except DeliveryError:
                # Roll back so the same email can sign up again
                self.users.delete_one({"_id": doc["_id"]})
                raise UpstreamError("Could not send verification email, please try again")
        return public_user(doc)

    def verify_otp(self, email: str, otp: Union[str, int]) -> Dict[str, Any]:
        if isinstance(otp, int):
            # JSON clients may send the code as a number and drop leading zeros
            otp = f"{otp:06d}"
        if not email or not otp:
            raise ValidationError("email and otp are required")
        user = self._find_by_email(email)
        if user.get("verified"):
            return public_user(user)
        if not user.get("otp") or str(user["otp"]) != str(otp).strip():
            raise ValidationError("Invalid OTP")
        expires_at = user.get("otpExpiresAt")
        if expires_at is None or datetime.now(timezone.utc) > _as_utc(expires_at):
            raise ValidationError("OTP has expired")

        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"verified": True, "otp": "", "otpExpiresAt": None, "updatedAt": now()}},
        )
        logger.info("Verified user id=%s", user["_id"])
        return public_user(self.users.find_one({"_id": user["_id"]}))

    def resend_otp(self, email: str) -> Dict[str, str]:
        if not email:
            raise ValidationError("Email is required")
        user = self._find_by_email(email)
        if user.get("verified"):
            raise ValidationError("User is already verified")
        otp = generate_otp()
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"otp": otp, "otpExpiresAt": now() + self.otp_ttl, "updatedAt": now()}},
        )
        try:
            self.otp_sender.send(user["email"], otp)
        except DeliveryError:
            raise UpstreamError("Could not send verification email, please try again")
        return {"message": "OTP resent successfully"}

    def login(self, email: str, password: str) -> Dict[str, Any]:
        if not email or not password:
            raise ValidationError("email and password are required")
        user = self.users.find_one({"email": email.strip().lower()})
        if not user or not verify_password(password, user.get("password", "")):
            logger.warning("Failed login for %s", email)
            raise AuthorizationError("Invalid credentials")
        if not user.get("verified"):
            raise AuthorizationError("Email not verified")
        return public_user(user)

    def list_vets(self) -> List[Dict[str, Any]]:
        vets = get_documents(self.db, USERS, {"role": "vet"}, sort=[("username", 1)], projection=_hide_secrets())
        return [serialize(v) for v in vets]

    def get_vet(self, vet_id: str) -> Dict[str, Any]:
        vet = get_document_by_id(self.db, USERS, vet_id, projection=_hide_secrets())
        if not vet or vet.get("role") != "vet":
            raise NotFoundError("Vet not found")
        return serialize(vet)

    def _find_by_email(self, email: str) -> Dict[str, Any]:
        user = self.users.find_one({"email": email.strip().lower()})
        if not user:
            raise NotFoundError("User not found")
        return user
