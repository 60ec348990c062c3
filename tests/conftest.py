import os
import tempfile

import mongomock
import pytest

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="vetconsult-uploads-"))

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
from accounts import AccountService  # noqa: E402
from mailer import DeliveryError  # noqa: E402
from responders import ResponderError  # noqa: E402

STRONG_PASSWORD = "Abcdef1!"


class RecordingSender:
    def __init__(self):
        self.sent = []

    def send(self, email, otp):
        self.sent.append((email, otp))

    @property
    def last_otp(self):
        return self.sent[-1][1]


class BrokenSender:
    def __init__(self):
        self.attempts = 0

    def send(self, email, otp):
        self.attempts += 1
        raise DeliveryError("Connection unexpectedly closed")


class EchoResponder:
    def __init__(self):
        self.calls = []

    def reply(self, message, prediction=None):
        self.calls.append((message, prediction))
        return f"echo: {message}"


class FailingResponder:
    def reply(self, message, prediction=None):
        raise ResponderError("provider timed out")


@pytest.fixture
def db():
    return mongomock.MongoClient()["vetconsult_test"]


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def responder():
    return EchoResponder()


@pytest.fixture
def accounts(db, sender):
    return AccountService(db, sender, otp_enabled=False)


@pytest.fixture
def owner(accounts):
    return accounts.signup("owner", "owner@example.com", STRONG_PASSWORD)


@pytest.fixture
def vet(accounts):
    return accounts.signup(
        "drvet", "vet@example.com", STRONG_PASSWORD, "vet",
        specialization="Cattle Specialist", contact="0300-1234567", area="Lahore",
    )


@pytest.fixture
def client(db, sender, responder, monkeypatch):
    monkeypatch.setattr(main.config, "OTP_ENABLED", False)
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_otp_sender] = lambda: sender
    main.app.dependency_overrides[main.get_responder] = lambda: responder
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
