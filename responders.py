"""
AI responders used by the chat service.

A responder takes the latest user message plus, when the conversation is
tied to a diagnosis, that diagnosis' prediction, and returns the assistant's
reply text. Failures are raised as ``ResponderError``.
"""
import logging
from typing import Any, Dict, Optional

from openai import OpenAI, OpenAIError

import config

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a veterinary assistant helping livestock and pet owners. "
    "Explain conditions in plain language, suggest practical care steps, "
    "and always recommend consulting a licensed veterinarian for treatment. "
    "You do not provide a definitive diagnosis."
)


class ResponderError(Exception):
    pass


def describe_prediction(prediction: Optional[Dict[str, Any]]) -> Optional[str]:
    if not prediction:
        return None
    label = prediction.get("classification", "unknown")
    scores = prediction.get("confidence") or []
    if scores:
        pct = ", ".join(f"{float(s) * 100:.1f}%" for s in scores)
        return f"Image classification result: {label} (confidence {pct})."
    return f"Image classification result: {label}."


class RuleBasedResponder:
    """Keyword replies; used when no AI provider is configured."""

    def reply(self, message: str, prediction: Optional[Dict[str, Any]] = None) -> str:
        text = message.lower()
        context = describe_prediction(prediction)

        if "appointment" in text or "book" in text:
            return (
                "To book an appointment, open the Vets tab, choose a veterinarian "
                "and pick a date and time slot."
            )
        if context and ("result" in text or "diagnosis" in text or "mean" in text):
            return (
                f"{context} This is an automated screening, not a diagnosis. "
                "Please share it with a veterinarian to confirm."
            )
        if "lumpy" in text or "nodule" in text or "skin" in text:
            return (
                "Skin nodules can point to lumpy skin disease. Isolate the animal, "
                "control flies and ticks, and contact a veterinarian promptly."
            )
        if "fever" in text or "appetite" in text:
            return (
                "Fever or loss of appetite can have many causes. Keep the animal "
                "hydrated and rested, and consult a veterinarian if it persists."
            )
        if context:
            return f"{context} Ask me anything about this result or next steps."
        return "I'm here to help with general guidance. For medical issues, always consult a veterinarian."


class OpenAIResponder:
    def __init__(self, api_key: str, model: str, timeout: float):
        # One retry at most; the chat request fails as a whole otherwise
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=1)
        self.model = model

    def reply(self, message: str, prediction: Optional[Dict[str, Any]] = None) -> str:
        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        context = describe_prediction(prediction)
        if context:
            messages.append({"role": "system", "content": context})
        messages.append({"role": "user", "content": message})

        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.3,
            )
        except OpenAIError as e:
            logger.exception("OpenAI request failed")
            raise ResponderError(str(e)) from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise ResponderError("Empty response from AI provider")
        return content.strip()


def build_responder():
    if config.OPENAI_API_KEY:
        logger.info("Using OpenAI responder (model=%s)", config.OPENAI_MODEL)
        return OpenAIResponder(config.OPENAI_API_KEY, config.OPENAI_MODEL, config.AI_TIMEOUT_SECONDS)
    logger.info("OPENAI_API_KEY not set; using rule-based responder")
    return RuleBasedResponder()
