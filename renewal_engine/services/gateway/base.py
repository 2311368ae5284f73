from abc import ABC, abstractmethod

from renewal_engine.core.llm_responses import ExtractionOutcome, IntentOutcome
from renewal_engine.core.states import DocumentType


class ExtractionGateway(ABC):
    """Document extraction and intent classification.

    Implementations never raise: failures come back as outcomes with
    ``kind`` transient_error / permanent_error and zero confidence.
    """

    @abstractmethod
    def extract(self, document_url: str, document_type: DocumentType) -> ExtractionOutcome:
        """Pull structured fields out of an uploaded document."""
        ...

    @abstractmethod
    def classify_intent(self, text: str, context: dict) -> IntentOutcome:
        """Classify an employee reply given the instance context (state, pending data)."""
        ...
