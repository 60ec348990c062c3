"""
AI consultation threads.

A send persists nothing until the responder has answered; the user and
assistant messages are then written together so a failed call leaves the
conversation untouched.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from database import create_document, get_document_by_id, get_documents, now, serialize
from errors import NotFoundError, UpstreamError, ValidationError
from responders import ResponderError
from schemas import CHAT_CONVERSATIONS, CHAT_MESSAGES, DIAGNOSIS_HISTORY, ChatConversation, ChatMessage

logger = logging.getLogger(__name__)


def default_title(diagnosis: Optional[Dict[str, Any]], when: datetime) -> str:
    stamp = when.strftime("%b %d")
    if diagnosis:
        label = (diagnosis.get("prediction") or {}).get("classification") or "diagnosis"
        return f"Chat about {label} - {stamp}"
    return f"General consultation - {stamp}"


class ChatService:
    def __init__(self, db: Database, responder):
        self.db = db
        self.responder = responder

    def create_conversation(self, user_id: str, diagnosis_id: Optional[str] = None,
                            title: Optional[str] = None) -> Dict[str, Any]:
        diagnosis = None
        if diagnosis_id:
            diagnosis = get_document_by_id(self.db, DIAGNOSIS_HISTORY, diagnosis_id)
            if not diagnosis:
                raise NotFoundError("Diagnosis not found")

        title = (title or "").strip() or default_title(diagnosis, now())
        conversation = ChatConversation(
            user_id=str(user_id),
            diagnosis_id=str(diagnosis_id) if diagnosis_id else None,
            title=title,
        )
        doc = create_document(self.db, CHAT_CONVERSATIONS, conversation)
        logger.info("Created conversation id=%s user=%s", doc["_id"], user_id)
        return serialize(doc)

    def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        items = get_documents(self.db, CHAT_CONVERSATIONS, {"userId": str(user_id)},
                              sort=[("updatedAt", -1), ("_id", -1)])
        return [serialize(it) for it in items]

    def send_message(self, user_id: str, conversation_id: str, content: str) -> Dict[str, Any]:
        if not conversation_id or not content or not content.strip():
            raise ValidationError("conversationId and content are required")
        conversation = self._get_owned(conversation_id, user_id)

        prediction = None
        if conversation.get("diagnosisId"):
            diagnosis = get_document_by_id(self.db, DIAGNOSIS_HISTORY, conversation["diagnosisId"])
            if diagnosis:
                prediction = diagnosis.get("prediction")

        sent_at = now()
        try:
            reply = self.responder.reply(content, prediction)
        except ResponderError as e:
            logger.exception("AI responder failed for conversation %s", conversation_id)
            raise UpstreamError("AI service is unavailable, please try again") from e

        user_message = ChatMessage(
            conversation_id=str(conversation["_id"]),
            role="user",
            content=content,
            timestamp=sent_at,
        )
        ai_message = ChatMessage(
            conversation_id=str(conversation["_id"]),
            role="assistant",
            content=reply,
            timestamp=max(now(), sent_at),
            metadata={"predictionData": prediction} if prediction else None,
        )
        docs = [m.model_dump(by_alias=True, exclude_none=True) for m in (user_message, ai_message)]
        result = self.db[CHAT_MESSAGES].insert_many(docs, ordered=True)
        for doc, inserted_id in zip(docs, result.inserted_ids):
            doc["_id"] = inserted_id

        self.db[CHAT_CONVERSATIONS].update_one(
            {"_id": conversation["_id"]}, {"$set": {"updatedAt": ai_message.timestamp}}
        )
        return {"userMessage": serialize(docs[0]), "aiMessage": serialize(docs[1])}

    def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        items = get_documents(self.db, CHAT_MESSAGES, {"conversationId": str(conversation_id)},
                              sort=[("timestamp", 1), ("_id", 1)])
        return [serialize(it) for it in items]

    def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        conversation = self._get_owned(conversation_id, user_id)
        removed = self.db[CHAT_MESSAGES].delete_many({"conversationId": str(conversation["_id"])})
        self.db[CHAT_CONVERSATIONS].delete_one({"_id": conversation["_id"]})
        logger.info("Deleted conversation id=%s (%d messages)", conversation["_id"], removed.deleted_count)

    def _get_owned(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = get_document_by_id(self.db, CHAT_CONVERSATIONS, conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        if conversation.get("userId") != str(user_id):
            raise ValidationError("You can only access your own conversations")
        return conversation
