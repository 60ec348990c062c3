import logging
import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Union

from fastapi import FastAPI, Depends, HTTPException, Request, UploadFile, File, Form, Header
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
from accounts import AccountService
from appointments import AppointmentService
from chat import ChatService
from diagnosis import DiagnosisService
from errors import AuthorizationError, ServiceError, ValidationError
from mailer import build_otp_sender
from responders import build_responder

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as e:
            logger.warning("Could not ensure indexes: %s", e)
    yield


app = FastAPI(title="VetConsult API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(config.UPLOAD_DIR, exist_ok=True)


# -------------------- Error responses --------------------

def _error(status_code: int, message: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"statusCode": status_code, "message": message})


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return _error(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()]
    return _error(400, f"Invalid or missing fields: {', '.join(f for f in fields if f)}")


# -------------------- Wiring --------------------

_responder = build_responder()
_otp_sender = build_otp_sender()


def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database is not configured")
    return database.db


def get_responder():
    return _responder


def get_otp_sender():
    return _otp_sender


def get_account_service(db: Database = Depends(get_db), otp_sender=Depends(get_otp_sender)) -> AccountService:
    return AccountService(db, otp_sender)


def get_appointment_service(db: Database = Depends(get_db)) -> AppointmentService:
    return AppointmentService(db)


def get_diagnosis_service(db: Database = Depends(get_db)) -> DiagnosisService:
    return DiagnosisService(db)


def get_chat_service(db: Database = Depends(get_db), responder=Depends(get_responder)) -> ChatService:
    return ChatService(db, responder)


def require_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    # Placeholder identity: the header is trusted as-is
    if not x_user_id:
        raise AuthorizationError("User ID is required in headers")
    return x_user_id


def require_vet(x_user_role: Optional[str] = Header(None)) -> str:
    if x_user_role != "vet":
        raise AuthorizationError("Only vets can access this endpoint")
    return x_user_role


class CamelBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -------------------- Health & Root --------------------

@app.get("/")
def read_root():
    return {"message": "VetConsult Backend is live"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = database.db
    if db is not None:
        response["database_name"] = db.name
        try:
            response["collections"] = db.list_collection_names()[:20]
            response["database"] = "Connected & Working"
            response["connection_status"] = "Connected"
        except Exception as e:
            logger.warning("Database check failed: %s", e)
            response["database"] = f"Connected but Error: {str(e)[:50]}"
    return response


# -------------------- Auth Endpoints --------------------

class SignupBody(CamelBody):
    username: str
    email: str
    password: str
    role: Optional[str] = None
    # Vet profile
    specialization: Optional[str] = None
    contact: Optional[str] = None
    area: Optional[str] = None
    availability: Optional[str] = None
    license_number: Optional[str] = None


class VerifyOtpBody(CamelBody):
    email: str
    otp: Union[str, int]


class EmailBody(CamelBody):
    email: Optional[str] = None


class LoginBody(CamelBody):
    email: str
    password: str


@app.post("/auth/signup", status_code=201)
def signup(body: SignupBody, accounts: AccountService = Depends(get_account_service)):
    return accounts.signup(
        body.username,
        body.email,
        body.password,
        body.role,
        specialization=body.specialization,
        contact=body.contact,
        area=body.area,
        availability=body.availability,
        license_number=body.license_number,
    )


@app.post("/auth/verify-otp")
def verify_otp(body: VerifyOtpBody, accounts: AccountService = Depends(get_account_service)):
    return accounts.verify_otp(body.email, body.otp)


@app.post("/auth/resend-otp")
def resend_otp(body: EmailBody, accounts: AccountService = Depends(get_account_service)):
    return accounts.resend_otp(body.email)


@app.post("/auth/login")
def login(body: LoginBody, accounts: AccountService = Depends(get_account_service)):
    return accounts.login(body.email, body.password)


# -------------------- Vets --------------------

@app.get("/vets")
def list_vets(accounts: AccountService = Depends(get_account_service)) -> List[Dict[str, Any]]:
    return accounts.list_vets()


@app.get("/vets/{vet_id}")
def get_vet(vet_id: str, accounts: AccountService = Depends(get_account_service)):
    return accounts.get_vet(vet_id)


# -------------------- Appointments --------------------

class StatusBody(CamelBody):
    status: str
    notes: Optional[str] = None
    rejected_reason: Optional[str] = None


def _parse_date(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("date must be an ISO-8601 date or datetime")


def _store_image(file: UploadFile) -> str:
    if file.content_type and not file.content_type.startswith("image/"):
        raise ValidationError("Only image files are allowed")
    data = file.file.read(config.MAX_UPLOAD_BYTES + 1)
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationError("Image exceeds the 10MB limit")
    original = os.path.basename(file.filename or "image")
    filename = f"{int(datetime.now().timestamp() * 1000)}-{secrets.token_hex(4)}-{original}"
    with open(os.path.join(config.UPLOAD_DIR, filename), "wb") as f:
        f.write(data)
    return f"uploads/{filename}"


def _remove_upload(image_url: str) -> None:
    filepath = os.path.join(config.UPLOAD_DIR, os.path.basename(image_url))
    if os.path.isfile(filepath):
        os.remove(filepath)


@app.post("/appointments", status_code=201)
def create_appointment(
    user_id: str = Depends(require_user_id),
    vet_id: Optional[str] = Form(None, alias="vetId"),
    date: Optional[str] = Form(None),
    time_slot: Optional[str] = Form(None, alias="timeSlot"),
    reason: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    appointments: AppointmentService = Depends(get_appointment_service),
):
    if not vet_id or not date or not time_slot or not reason:
        raise ValidationError("vetId, date, timeSlot, and reason are required")
    when = _parse_date(date)
    image_url = _store_image(image) if image is not None and image.filename else None
    try:
        return appointments.create(user_id, vet_id, when, time_slot, reason, image_url)
    except ServiceError:
        if image_url:
            _remove_upload(image_url)
        raise


@app.get("/appointments/user/{user_id}")
def get_user_appointments(user_id: str, appointments: AppointmentService = Depends(get_appointment_service)):
    return appointments.list_for_user(user_id)


@app.get("/appointments/vet/{vet_id}", dependencies=[Depends(require_vet)])
def get_vet_appointments(vet_id: str, appointments: AppointmentService = Depends(get_appointment_service)):
    return appointments.list_for_vet(vet_id)


@app.get("/appointments/{appointment_id}")
def get_appointment(appointment_id: str, appointments: AppointmentService = Depends(get_appointment_service)):
    return appointments.get_by_id(appointment_id)


@app.patch("/appointments/{appointment_id}/status", dependencies=[Depends(require_vet)])
def update_appointment_status(
    appointment_id: str,
    body: StatusBody,
    appointments: AppointmentService = Depends(get_appointment_service),
):
    return appointments.update_status(appointment_id, body.status, body.notes, body.rejected_reason)


@app.delete("/appointments/{appointment_id}")
def cancel_appointment(
    appointment_id: str,
    user_id: str = Depends(require_user_id),
    appointments: AppointmentService = Depends(get_appointment_service),
):
    appointments.cancel(appointment_id, user_id)
    return {"message": "Appointment cancelled successfully"}


@app.get("/uploads/{filename}")
def get_upload(filename: str):
    filepath = os.path.join(config.UPLOAD_DIR, os.path.basename(filename))
    if not os.path.isfile(filepath):
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(filepath)


# -------------------- Diagnosis History --------------------

class DiagnosisBody(CamelBody):
    user_id: Optional[str] = None
    image_url: Optional[str] = None
    prediction: Optional[Dict[str, Any]] = None
    location: Optional[str] = None


@app.post("/diagnosis/save", status_code=201)
def save_diagnosis(body: DiagnosisBody, diagnoses: DiagnosisService = Depends(get_diagnosis_service)):
    return diagnoses.save(body.user_id, body.image_url, body.prediction, body.location)


@app.get("/diagnosis/user/{user_id}")
def get_user_diagnoses(user_id: str, diagnoses: DiagnosisService = Depends(get_diagnosis_service)):
    return diagnoses.list(user_id)


@app.get("/diagnosis/{diagnosis_id}")
def get_diagnosis(diagnosis_id: str, diagnoses: DiagnosisService = Depends(get_diagnosis_service)):
    return diagnoses.get_by_id(diagnosis_id)


# -------------------- AI Chat --------------------

class ConversationBody(CamelBody):
    diagnosis_id: Optional[str] = None
    title: Optional[str] = None


class MessageBody(CamelBody):
    conversation_id: Optional[str] = None
    content: Optional[str] = None


@app.post("/chat/conversations", status_code=201)
def create_conversation(
    body: ConversationBody,
    user_id: str = Depends(require_user_id),
    chat: ChatService = Depends(get_chat_service),
):
    return chat.create_conversation(user_id, body.diagnosis_id, body.title)


@app.get("/chat/conversations/{user_id}")
def list_conversations(user_id: str, chat: ChatService = Depends(get_chat_service)):
    return chat.list_conversations(user_id)


@app.post("/chat/message")
def send_message(
    body: MessageBody,
    user_id: str = Depends(require_user_id),
    chat: ChatService = Depends(get_chat_service),
):
    return chat.send_message(user_id, body.conversation_id, body.content)


@app.get("/chat/messages/{conversation_id}")
def get_messages(conversation_id: str, chat: ChatService = Depends(get_chat_service)):
    return chat.get_messages(conversation_id)


@app.delete("/chat/conversations/{conversation_id}")
def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(require_user_id),
    chat: ChatService = Depends(get_chat_service),
):
    chat.delete_conversation(conversation_id, user_id)
    return {"message": "Conversation deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
