import io
import os

import pytest
from fastapi.testclient import TestClient

import main
from tests.conftest import STRONG_PASSWORD, BrokenSender, FailingResponder


def signup(client, username, email, **extra):
    payload = {"username": username, "email": email, "password": STRONG_PASSWORD, **extra}
    return client.post("/auth/signup", json=payload)


@pytest.fixture
def users(client):
    owner = signup(client, "owner", "owner@example.com").json()
    vet = signup(client, "drvet", "vet@example.com", role="vet", specialization="Cattle Specialist").json()
    return owner, vet


def book(client, owner, vet, **overrides):
    form = {"vetId": vet["_id"], "date": "2026-11-02", "timeSlot": "10:00 AM - 11:00 AM", "reason": "Nodules"}
    form.update(overrides)
    return client.post("/appointments", data=form, headers={"x-user-id": owner["_id"]})


def test_root(client):
    assert client.get("/").json() == {"message": "VetConsult Backend is live"}


def test_signup_then_duplicate_conflicts(client):
    first = signup(client, "a", "a@a.com")
    assert first.status_code == 201
    assert first.json()["verified"] is True
    again = signup(client, "b", "a@a.com")
    assert again.status_code == 409
    assert again.json() == {"statusCode": 409, "message": "Email already exists"}


def test_signup_with_otp_enabled(client, sender, monkeypatch):
    monkeypatch.setattr(main.config, "OTP_ENABLED", True)
    resp = signup(client, "a", "a@a.com")
    assert resp.status_code == 201
    assert resp.json()["verified"] is False

    assert client.post("/auth/login", json={"email": "a@a.com", "password": STRONG_PASSWORD}).status_code == 401
    verified = client.post("/auth/verify-otp", json={"email": "a@a.com", "otp": sender.last_otp})
    assert verified.status_code == 200
    assert verified.json()["verified"] is True
    login = client.post("/auth/login", json={"email": "a@a.com", "password": STRONG_PASSWORD})
    assert login.status_code == 200
    assert "password" not in login.json()


def test_signup_missing_field_is_400(client):
    resp = client.post("/auth/signup", json={"email": "a@a.com"})
    assert resp.status_code == 400
    assert "username" in resp.json()["message"]


def test_resend_otp_requires_email(client):
    resp = client.post("/auth/resend-otp", json={})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Email is required"


def test_vets_listing(client, users):
    _, vet = users
    vets = client.get("/vets").json()
    assert [v["_id"] for v in vets] == [vet["_id"]]
    assert client.get(f"/vets/{vet['_id']}").json()["specialization"] == "Cattle Specialist"
    assert client.get("/vets/64b000000000000000000000").status_code == 404


def test_create_appointment_requires_user_header(client, users):
    owner, vet = users
    resp = client.post("/appointments", data={"vetId": vet["_id"]})
    assert resp.status_code == 401


def test_create_appointment_missing_fields(client, users):
    owner, vet = users
    resp = book(client, owner, vet, reason="")
    assert resp.status_code == 400
    assert resp.json()["message"] == "vetId, date, timeSlot, and reason are required"


def test_create_appointment_with_non_vet(client, users, db):
    owner, _ = users
    resp = book(client, owner, owner)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid vet ID"
    assert db.appointments.count_documents({}) == 0


def test_create_appointment_with_image(client, users):
    owner, vet = users
    resp = client.post(
        "/appointments",
        data={"vetId": vet["_id"], "date": "2026-11-02T10:00:00Z", "timeSlot": "10-11", "reason": "Lesions"},
        files={"image": ("cow.jpg", io.BytesIO(b"\xff\xd8\xff fake jpeg"), "image/jpeg")},
        headers={"x-user-id": owner["_id"]},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["imageUrl"].startswith("uploads/") and body["imageUrl"].endswith("-cow.jpg")
    served = client.get("/" + body["imageUrl"])
    assert served.status_code == 200
    assert served.content == b"\xff\xd8\xff fake jpeg"


def test_appointment_lifecycle(client, users):
    owner, vet = users
    appt = book(client, owner, vet).json()

    listed = client.get(f"/appointments/user/{owner['_id']}").json()
    assert listed[0]["_id"] == appt["_id"]
    assert listed[0]["vet"]["username"] == "drvet"

    assert client.get(f"/appointments/vet/{vet['_id']}").status_code == 401
    vet_view = client.get(f"/appointments/vet/{vet['_id']}", headers={"x-user-role": "vet"}).json()
    assert vet_view[0]["user"]["username"] == "owner"

    path = f"/appointments/{appt['_id']}/status"
    assert client.patch(path, json={"status": "confirmed"}).status_code == 401
    bad = client.patch(path, json={"status": "cancelled"}, headers={"x-user-role": "vet"})
    assert bad.status_code == 400
    assert bad.json()["message"] == "Invalid status"

    ok = client.patch(path, json={"status": "confirmed", "notes": "See you"}, headers={"x-user-role": "vet"})
    assert ok.status_code == 200
    assert ok.json()["status"] == "confirmed"
    assert ok.json()["confirmedAt"]

    denied = client.delete(f"/appointments/{appt['_id']}", headers={"x-user-id": vet["_id"]})
    assert denied.status_code == 400

    cancelled = client.delete(f"/appointments/{appt['_id']}", headers={"x-user-id": owner["_id"]})
    assert cancelled.json() == {"message": "Appointment cancelled successfully"}
    assert client.get(f"/appointments/{appt['_id']}").json()["status"] == "cancelled"


def test_cancel_completed_appointment_fails(client, users):
    owner, vet = users
    appt = book(client, owner, vet).json()
    path = f"/appointments/{appt['_id']}/status"
    client.patch(path, json={"status": "confirmed"}, headers={"x-user-role": "vet"})
    client.patch(path, json={"status": "completed"}, headers={"x-user-role": "vet"})
    resp = client.delete(f"/appointments/{appt['_id']}", headers={"x-user-id": owner["_id"]})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot cancel completed appointments"


def test_unknown_appointment_is_404(client):
    resp = client.get("/appointments/64b000000000000000000000")
    assert resp.status_code == 404
    assert resp.json()["message"] == "Appointment not found"


def test_diagnosis_endpoints(client, users):
    owner, _ = users
    payload = {
        "userId": owner["_id"],
        "imageUrl": "uploads/cow.jpg",
        "prediction": {"classification": "Lumpy Skin", "confidence": [0.8, 0.2]},
    }
    saved = client.post("/diagnosis/save", json=payload)
    assert saved.status_code == 201
    diag_id = saved.json()["_id"]
    assert client.get(f"/diagnosis/{diag_id}").json()["prediction"]["classification"] == "Lumpy Skin"
    assert [d["_id"] for d in client.get(f"/diagnosis/user/{owner['_id']}").json()] == [diag_id]

    missing = client.post("/diagnosis/save", json={"userId": owner["_id"]})
    assert missing.status_code == 400
    assert client.get("/diagnosis/64b000000000000000000000").status_code == 404


def test_chat_flow(client, users):
    owner, _ = users
    headers = {"x-user-id": owner["_id"]}
    assert client.post("/chat/conversations", json={}).status_code == 401

    conv = client.post("/chat/conversations", json={"title": "Calf"}, headers=headers)
    assert conv.status_code == 201
    conv_id = conv.json()["_id"]

    sent = client.post("/chat/message", json={"conversationId": conv_id, "content": "hello"}, headers=headers)
    assert sent.status_code == 200
    assert sent.json()["userMessage"]["content"] == "hello"
    assert sent.json()["aiMessage"]["content"] == "echo: hello"

    missing = client.post("/chat/message", json={"conversationId": conv_id}, headers=headers)
    assert missing.status_code == 400

    messages = client.get(f"/chat/messages/{conv_id}").json()
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert [c["_id"] for c in client.get(f"/chat/conversations/{owner['_id']}").json()] == [conv_id]

    deleted = client.delete(f"/chat/conversations/{conv_id}", headers=headers)
    assert deleted.json() == {"message": "Conversation deleted successfully"}
    assert client.get(f"/chat/messages/{conv_id}").json() == []


def test_chat_ai_failure_is_502_and_atomic(client, users, db):
    owner, _ = users
    headers = {"x-user-id": owner["_id"]}
    conv_id = client.post("/chat/conversations", json={}, headers=headers).json()["_id"]

    main.app.dependency_overrides[main.get_responder] = lambda: FailingResponder()
    resp = client.post("/chat/message", json={"conversationId": conv_id, "content": "hello"}, headers=headers)
    assert resp.status_code == 502
    assert db.chat_messages.count_documents({}) == 0


def test_database_not_configured(monkeypatch):
    monkeypatch.setattr(main.database, "db", None)
    main.app.dependency_overrides.clear()
    with TestClient(main.app) as test_client:
        resp = test_client.get("/vets")
    assert resp.status_code == 503
    assert resp.json()["message"] == "Database is not configured"


def test_signup_when_otp_email_fails(client, db, sender, monkeypatch):
    monkeypatch.setattr(main.config, "OTP_ENABLED", True)
    main.app.dependency_overrides[main.get_otp_sender] = lambda: BrokenSender()
    resp = signup(client, "a", "a@a.com")
    assert resp.status_code == 502
    assert resp.json()["statusCode"] == 502
    assert db.user.count_documents({}) == 0

    main.app.dependency_overrides[main.get_otp_sender] = lambda: sender
    assert signup(client, "a", "a@a.com").status_code == 201


def test_verify_otp_with_numeric_code(client, db, sender, monkeypatch):
    monkeypatch.setattr(main.config, "OTP_ENABLED", True)
    signup(client, "a", "a@a.com")
    db.user.update_one({"email": "a@a.com"}, {"$set": {"otp": "123456"}})
    resp = client.post("/auth/verify-otp", json={"email": "a@a.com", "otp": 123456})
    assert resp.status_code == 200
    assert resp.json()["verified"] is True


def test_rejected_booking_removes_uploaded_image(client, users):
    owner, _ = users
    before = set(os.listdir(main.config.UPLOAD_DIR))
    resp = client.post(
        "/appointments",
        data={"vetId": owner["_id"], "date": "2026-11-02", "timeSlot": "10-11", "reason": "Lesions"},
        files={"image": ("cow.jpg", io.BytesIO(b"\xff\xd8\xff fake jpeg"), "image/jpeg")},
        headers={"x-user-id": owner["_id"]},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid vet ID"
    assert set(os.listdir(main.config.UPLOAD_DIR)) == before
