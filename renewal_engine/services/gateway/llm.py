import logging
import re
from datetime import datetime

import openai
import opik
from pydantic import ValidationError

from renewal_engine.core.llm_responses import (
    ExtractionOutcome,
    IntentClassificationResponse,
    IntentOutcome,
    LicenseExtractionResponse,
    OutcomeKind,
)
from renewal_engine.core.models import ExtractedData
from renewal_engine.core.states import DocumentType, Intent
from renewal_engine.services.gateway.base import ExtractionGateway
from renewal_engine.services.llm.base import LLMService, image_message
from renewal_engine.services.prompt_store.base import PromptStore

logger = logging.getLogger(__name__)

KEYWORD_INTENTS = {
    "YES": Intent.CONFIRM,
    "Y": Intent.CONFIRM,
    "CONFIRM": Intent.CONFIRM,
    "NO": Intent.REJECT,
    "N": Intent.REJECT,
    "RETRY": Intent.REJECT,
    "HELP": Intent.HELP,
    "INFO": Intent.HELP,
    "STOP": Intent.CANCEL,
    "CANCEL": Intent.CANCEL,
}

# Labels the model uses beyond the canonical intent set
_INTENT_ALIASES = {
    "retry": Intent.REJECT,
    "greeting": Intent.QUESTION,
    "frustration": Intent.QUESTION,
    "urgency": Intent.QUESTION,
}

_DATE_FORMATS = ("%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%d %b %Y", "%m/%d/%y", "%Y/%m/%d")


def normalize_date(value: str | None) -> str | None:
    """Normalize a printed date to ISO YYYY-MM-DD, or None if unreadable."""
    if not value or value.strip().lower() == "null":
        return None
    value = value.strip()
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", value):
        return value
    us = re.fullmatch(r"(\d{1,2})[/-](\d{1,2})[/-](\d{4})", value)
    if us:
        month, day, year = us.groups()
        return f"{year}-{int(month):02d}-{int(day):02d}"
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def keyword_intent(text: str) -> Intent | None:
    return KEYWORD_INTENTS.get(text.strip().upper())


def _error_kind(error: Exception) -> OutcomeKind:
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError)):
        return OutcomeKind.TRANSIENT_ERROR
    if isinstance(error, openai.APIStatusError):
        return OutcomeKind.TRANSIENT_ERROR if error.status_code >= 500 else OutcomeKind.PERMANENT_ERROR
    if isinstance(error, (ValueError, ValidationError)):
        return OutcomeKind.PERMANENT_ERROR
    return OutcomeKind.TRANSIENT_ERROR


class LLMGateway(ExtractionGateway):
    """Extraction and intent classification over a structured-output LLM."""

    def __init__(
        self,
        llm: LLMService,
        prompt_store: PromptStore,
        extraction_threshold: float = 0.7,
        intent_threshold: float = 0.7,
    ):
        self.llm = llm
        self.prompt_store = prompt_store
        self.extraction_threshold = extraction_threshold
        self.intent_threshold = intent_threshold

    @opik.track(name="extract_document")
    def extract(self, document_url: str, document_type: DocumentType) -> ExtractionOutcome:
        try:
            system_prompt = self.prompt_store.get_and_render("extract", "system")
            user_prompt = self.prompt_store.get_and_render("extract", "user", {
                "document_type": document_type.value.replace("_", " "),
            })
            messages = [
                {"role": "system", "content": system_prompt},
                image_message(user_prompt, document_url),
            ]
            result = self.llm.structured_output(messages, LicenseExtractionResponse)
        except Exception as e:
            kind = _error_kind(e)
            logger.warning(f"Extraction failed for {document_url} ({kind.value}): {e}")
            return ExtractionOutcome(kind=kind, error=str(e))

        confidence = min(max(result.confidence, 0.0), 1.0)
        fields = ExtractedData(
            expiration_date=normalize_date(result.expiration_date),
            license_number=result.license_number or None,
            license_type=result.license_type or None,
            state=result.state.upper() if result.state else None,
            holder_name=result.holder_name or None,
            issuing_authority=result.issuing_authority or None,
            issue_date=normalize_date(result.issue_date),
            confidence=confidence,
            raw_response=result.model_dump(),
        )

        error = None
        if fields.expiration_date is None:
            error = "no readable expiration date"
        elif confidence < self.extraction_threshold:
            error = f"confidence {confidence:.2f} below {self.extraction_threshold:.2f}"
        kind = OutcomeKind.SUCCESS if error is None else OutcomeKind.LOW_CONFIDENCE

        logger.info(f"Extracted {document_type.value}: kind={kind.value}, confidence={confidence:.2f}")
        return ExtractionOutcome(
            kind=kind,
            fields=fields,
            confidence=confidence,
            raw=result.model_dump(),
            error=error,
        )

    @opik.track(name="classify_intent")
    def classify_intent(self, text: str, context: dict) -> IntentOutcome:
        keyword = keyword_intent(text)
        if keyword is not None:
            return IntentOutcome(kind=OutcomeKind.SUCCESS, intent=keyword, confidence=1.0)

        try:
            system_prompt = self.prompt_store.get_and_render("classify", "system")
            user_prompt = self.prompt_store.get_and_render("classify", "user", {
                "state": context.get("state", "unknown"),
                "expiration_date": context.get("expiration_date") or "unknown",
                "license_number": context.get("license_number") or "unknown",
                "message": text,
            })
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ]
            result = self.llm.structured_output(messages, IntentClassificationResponse)
        except Exception as e:
            kind = _error_kind(e)
            logger.warning(f"Intent classification failed ({kind.value}): {e}")
            return IntentOutcome(kind=kind, error=str(e))

        label = result.intent.strip().lower()
        if label in _INTENT_ALIASES:
            intent = _INTENT_ALIASES[label]
        else:
            try:
                intent = Intent(label)
            except ValueError:
                intent = Intent.UNKNOWN

        confidence = min(max(result.confidence, 0.0), 1.0)
        extracted_info = {
            key: value
            for key, value in {
                "expiration_date": normalize_date(result.new_expiration_date),
                "license_number": result.new_license_number,
            }.items()
            if value
        }
        kind = OutcomeKind.SUCCESS if confidence >= self.intent_threshold else OutcomeKind.LOW_CONFIDENCE
        return IntentOutcome(
            kind=kind,
            intent=intent,
            confidence=confidence,
            extracted_info=extracted_info,
            reply=result.reply or None,
        )
