from datetime import datetime, timedelta, timezone

from renewal_engine.core.llm_responses import ExtractionOutcome, IntentOutcome, OutcomeKind
from renewal_engine.core.models import ExtractedData
from renewal_engine.core.states import Intent
from renewal_engine.services.gateway.base import ExtractionGateway
from renewal_engine.services.gateway.llm import keyword_intent
from renewal_engine.services.llm.base import LLMService


class MockLLM(LLMService):
    """Returns pre-configured responses for testing."""

    def __init__(self, structured_response=None, should_raise: Exception | None = None):
        self._structured = structured_response
        self._should_raise = should_raise
        self.calls: list[list[dict]] = []

    def structured_output(self, messages, response_model):
        self.calls.append(messages)
        if self._should_raise:
            raise self._should_raise
        return self._structured


def good_extraction(expiration_date="2027-03-15", license_number="G1234567", confidence=0.95) -> ExtractionOutcome:
    fields = ExtractedData(
        expiration_date=expiration_date,
        license_number=license_number,
        state="CA",
        confidence=confidence,
    )
    return ExtractionOutcome(kind=OutcomeKind.SUCCESS, fields=fields, confidence=confidence)


def blurry_extraction(confidence=0.4) -> ExtractionOutcome:
    fields = ExtractedData(confidence=confidence)
    return ExtractionOutcome(
        kind=OutcomeKind.LOW_CONFIDENCE,
        fields=fields,
        confidence=confidence,
        error="no readable expiration date",
    )


def intent(value: Intent, confidence=0.95, reply=None) -> IntentOutcome:
    return IntentOutcome(kind=OutcomeKind.SUCCESS, intent=value, confidence=confidence, reply=reply)


class MockGateway(ExtractionGateway):
    """Hands out queued outcomes; falls back to a good read and keyword intents.

    Calls are recorded in ``extract_calls`` / ``classify_calls`` for assertions.
    """

    def __init__(
        self,
        extractions: list[ExtractionOutcome] | None = None,
        intents: list[IntentOutcome] | None = None,
    ):
        self._extractions = list(extractions or [])
        self._intents = list(intents or [])
        self.extract_calls: list[tuple] = []
        self.classify_calls: list[tuple] = []

    def queue_extraction(self, outcome: ExtractionOutcome) -> None:
        self._extractions.append(outcome)

    def queue_intent(self, outcome: IntentOutcome) -> None:
        self._intents.append(outcome)

    def extract(self, document_url, document_type):
        self.extract_calls.append((document_url, document_type))
        if self._extractions:
            return self._extractions.pop(0)
        return good_extraction()

    def classify_intent(self, text, context):
        self.classify_calls.append((text, context))
        if self._intents:
            return self._intents.pop(0)
        keyword = keyword_intent(text)
        if keyword is not None:
            return intent(keyword, confidence=1.0)
        return IntentOutcome(kind=OutcomeKind.SUCCESS, intent=Intent.UNKNOWN, confidence=0.0)


class FakeClock:
    """Manually advanced clock; pass the instance wherever a ``clock`` callable is taken."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
