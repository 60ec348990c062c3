"""
Appointment booking between an owner (role=user) and a veterinarian.

Lifecycle::

    pending   -> confirmed | rejected | cancelled
    confirmed -> completed | cancelled

rejected, completed and cancelled are terminal. Vets drive the first
three transitions through ``update_status``; owners cancel through
``cancel``. There is no versioning, concurrent writes are last-write-wins.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo.database import Database

from database import create_document, get_document_by_id, get_documents, now, serialize, to_object_id
from errors import NotFoundError, ValidationError
from schemas import APPOINTMENTS, USERS, Appointment

logger = logging.getLogger(__name__)

VET_STATUSES = {"confirmed", "rejected", "completed"}

TRANSITIONS = {
    "pending": {"confirmed", "rejected", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "rejected": set(),
    "completed": set(),
    "cancelled": set(),
}

VET_PROFILE = ("username", "email", "specialization", "contact", "area")
OWNER_PROFILE = ("username", "email", "contact")


class AppointmentService:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        user_id: str,
        vet_id: str,
        date: datetime,
        time_slot: str,
        reason: str,
        image_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        vet = get_document_by_id(self.db, USERS, vet_id)
        if not vet or vet.get("role") != "vet":
            raise ValidationError("Invalid vet ID")
        if not get_document_by_id(self.db, USERS, user_id):
            raise ValidationError("Invalid user ID")

        appointment = Appointment(
            user_id=str(user_id),
            vet_id=str(vet_id),
            date=date,
            time_slot=time_slot,
            reason=reason,
            image_url=image_url,
            status="pending",
        )
        doc = create_document(self.db, APPOINTMENTS, appointment)
        logger.info("Created appointment id=%s user=%s vet=%s", doc["_id"], user_id, vet_id)
        return serialize(doc)

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        items = get_documents(self.db, APPOINTMENTS, {"userId": str(user_id)},
                              sort=[("createdAt", -1), ("_id", -1)])
        return [self._join(it, vet=True) for it in items]

    def list_for_vet(self, vet_id: str) -> List[Dict[str, Any]]:
        items = get_documents(self.db, APPOINTMENTS, {"vetId": str(vet_id)},
                              sort=[("createdAt", -1), ("_id", -1)])
        return [self._join(it, user=True) for it in items]

    def get_by_id(self, appointment_id: str) -> Dict[str, Any]:
        return self._join(self._get(appointment_id), user=True, vet=True)

    def update_status(
        self,
        appointment_id: str,
        status: str,
        notes: Optional[str] = None,
        rejected_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        if status not in VET_STATUSES:
            raise ValidationError("Invalid status")
        appointment = self._get(appointment_id)
        current = appointment.get("status", "pending")
        if status not in TRANSITIONS.get(current, set()):
            raise ValidationError(f"Cannot change status from {current} to {status}")

        stamp = now()
        changes: Dict[str, Any] = {"status": status, "updatedAt": stamp}
        if notes:
            changes["notes"] = notes
        if status == "confirmed":
            changes["confirmedAt"] = stamp
        if status == "rejected" and rejected_reason:
            changes["rejectedReason"] = rejected_reason

        self.db[APPOINTMENTS].update_one({"_id": appointment["_id"]}, {"$set": changes})
        logger.info("Appointment id=%s %s -> %s", appointment["_id"], current, status)
        appointment.update(changes)
        return serialize(appointment)

    def cancel(self, appointment_id: str, user_id: str) -> None:
        appointment = self._get(appointment_id)
        if appointment.get("userId") != str(user_id):
            raise ValidationError("You can only cancel your own appointments")
        current = appointment.get("status", "pending")
        if current == "completed":
            raise ValidationError("Cannot cancel completed appointments")
        if "cancelled" not in TRANSITIONS.get(current, set()):
            raise ValidationError(f"Cannot cancel {current} appointments")

        self.db[APPOINTMENTS].update_one(
            {"_id": appointment["_id"]},
            {"$set": {"status": "cancelled", "updatedAt": now()}},
        )
        logger.info("Appointment id=%s cancelled by user=%s", appointment["_id"], user_id)

    def _get(self, appointment_id: str) -> Dict[str, Any]:
        appointment = get_document_by_id(self.db, APPOINTMENTS, appointment_id)
        if not appointment:
            logger.warning("Appointment %s not found", appointment_id)
            raise NotFoundError("Appointment not found")
        return appointment

    def _join(self, appointment: Dict[str, Any], user: bool = False, vet: bool = False) -> Dict[str, Any]:
        """Attach counterpart profiles under ``user`` / ``vet``; ids stay as stored."""
        out = serialize(appointment)
        if user:
            out["user"] = self._profile(appointment.get("userId"), OWNER_PROFILE)
        if vet:
            out["vet"] = self._profile(appointment.get("vetId"), VET_PROFILE)
        return out

    def _profile(self, user_id: Optional[str], fields: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        return serialize(self.db[USERS].find_one({"_id": oid}, {f: 1 for f in fields}))
