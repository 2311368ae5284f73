from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from renewal_engine.core.models import ExtractedData
from renewal_engine.core.states import Intent


class LicenseExtractionResponse(BaseModel):
    """LLM response for license / certificate field extraction."""

    expiration_date: str | None
    license_number: str | None
    license_type: str | None
    state: str | None
    holder_name: str | None
    issuing_authority: str | None
    issue_date: str | None
    confidence: float


class IntentClassificationResponse(BaseModel):
    """LLM response for classifying an employee's SMS reply.

    ``intent`` is kept as free text because the model also produces labels
    outside the canonical set (retry, greeting, frustration, urgency); the
    gateway maps those onto ``Intent``.
    """

    intent: str
    confidence: float
    reply: str | None
    new_expiration_date: str | None
    new_license_number: str | None


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    LOW_CONFIDENCE = "low_confidence"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


class ExtractionOutcome(BaseModel):
    """Result of one document extraction, consumed by the state machine."""

    kind: OutcomeKind
    fields: ExtractedData = Field(default_factory=ExtractedData)
    confidence: float = 0.0
    raw: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @property
    def accepted(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


class IntentOutcome(BaseModel):
    """Result of classifying one inbound message."""

    kind: OutcomeKind
    intent: Intent = Intent.UNKNOWN
    confidence: float = 0.0
    extracted_info: dict[str, Any] = Field(default_factory=dict)
    reply: str | None = None
    error: str | None = None
