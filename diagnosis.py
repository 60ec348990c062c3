import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database

from database import create_document, get_document_by_id, get_documents, now, serialize
from errors import NotFoundError, ValidationError
from schemas import DIAGNOSIS_HISTORY, USERS, DiagnosisHistory, Prediction

logger = logging.getLogger(__name__)


def parse_prediction(raw: Any) -> Prediction:
    """Accept ``confidence`` or the classifier's raw ``prediction`` vector."""
    if not isinstance(raw, dict):
        raise ValidationError("prediction must be an object")
    scores = raw.get("confidence")
    if scores is None:
        scores = raw.get("prediction")
    try:
        return Prediction(classification=raw.get("classification"), confidence=scores)
    except PydanticValidationError:
        raise ValidationError("prediction requires a classification and exactly two confidence values")


class DiagnosisService:
    def __init__(self, db: Database):
        self.db = db

    def save(self, user_id: str, image_url: str, prediction: Any, location: Optional[str] = None) -> Dict[str, Any]:
        if not user_id or not image_url or not prediction:
            raise ValidationError("userId, imageUrl, and prediction are required")
        parsed = parse_prediction(prediction)
        if not get_document_by_id(self.db, USERS, user_id):
            raise ValidationError("Invalid user ID")

        record = DiagnosisHistory(
            user_id=str(user_id),
            image_url=image_url,
            prediction=parsed,
            location=location,
            timestamp=now(),
        )
        doc = create_document(self.db, DIAGNOSIS_HISTORY, record)
        logger.info("Saved diagnosis id=%s user=%s label=%s", doc["_id"], user_id, parsed.classification)
        return serialize(doc)

    def list(self, user_id: str) -> List[Dict[str, Any]]:
        items = get_documents(self.db, DIAGNOSIS_HISTORY, {"userId": str(user_id)},
                              sort=[("timestamp", -1), ("_id", -1)])
        return [serialize(it) for it in items]

    def get_by_id(self, diagnosis_id: str) -> Dict[str, Any]:
        diagnosis = get_document_by_id(self.db, DIAGNOSIS_HISTORY, diagnosis_id)
        if not diagnosis:
            raise NotFoundError("Diagnosis not found")
        return serialize(diagnosis)
