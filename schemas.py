from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

# VetConsult collection schemas
# Attributes are snake_case in Python and stored camelCase in MongoDB,
# which is also the shape the mobile client reads back.

USERS = "user"
APPOINTMENTS = "appointments"
DIAGNOSIS_HISTORY = "diagnosis_history"
CHAT_CONVERSATIONS = "chat_conversations"
CHAT_MESSAGES = "chat_messages"

Role = Literal["user", "vet"]
AppointmentStatus = Literal["pending", "confirmed", "rejected", "completed", "cancelled"]
MessageRole = Literal["user", "assistant"]

VET_FIELDS = ("specialization", "contact", "area", "availability", "license_number")


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(Document):
    email: EmailStr = Field(..., description="Unique email address")
    username: str = Field(..., description="Unique display handle")
    password: str = Field(..., description="Salted PBKDF2 hash, '<salt>:<hash>'")
    role: Role = Field("user", description="user | vet")
    verified: bool = Field(False, description="Email confirmed through OTP")
    otp: str = Field("", description="Pending one-time password")
    otp_expires_at: Optional[datetime] = None
    # Vet-only profile
    specialization: Optional[str] = Field(None, description="e.g. Cattle Specialist")
    contact: Optional[str] = Field(None, description="Phone number")
    area: Optional[str] = Field(None, description="Service area")
    availability: Optional[str] = Field(None, description="e.g. Mon-Fri 9AM-5PM")
    license_number: Optional[str] = None
    profile_image: Optional[str] = None


class Appointment(Document):
    user_id: str = Field(..., description="Reference to the booking user's _id")
    vet_id: str = Field(..., description="Reference to a role=vet user's _id")
    date: datetime
    time_slot: str = Field(..., description="e.g. 10:00 AM - 11:00 AM")
    status: AppointmentStatus = "pending"
    reason: str = Field(..., description="Owner's description of the issue")
    notes: Optional[str] = Field(None, description="Vet notes after review")
    image_url: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None


class Prediction(BaseModel):
    classification: str = Field(..., min_length=1, description="e.g. Lumpy Skin")
    confidence: List[float] = Field(..., description="[positive, negative] probabilities")

    @field_validator("confidence")
    @classmethod
    def two_scores(cls, value: List[float]) -> List[float]:
        if len(value) != 2:
            raise ValueError("confidence must have exactly two values")
        return value


class DiagnosisHistory(Document):
    user_id: str
    image_url: str
    prediction: Prediction
    location: Optional[str] = Field(None, description="Where the case was observed")
    timestamp: datetime


class ChatConversation(Document):
    user_id: str
    diagnosis_id: Optional[str] = None
    title: str = Field(..., min_length=1)


class ChatMessage(Document):
    conversation_id: str
    role: MessageRole
    content: str
    timestamp: datetime
    metadata: Optional[Dict[str, Any]] = Field(None, description="predictionData when tied to a diagnosis")
