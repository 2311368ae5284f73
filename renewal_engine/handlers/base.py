from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from renewal_engine.core.effects import SideEffect
from renewal_engine.core.llm_responses import ExtractionOutcome, IntentOutcome
from renewal_engine.core.models import ExtractedDocument, WorkflowEvent, WorkflowInstance
from renewal_engine.core.states import EventType, RenewalState


class RenewalRules(BaseModel):
    """Deployment switches and thresholds the transition function reads."""
    model_config = ConfigDict(frozen=True)

    extraction_confidence_threshold: float = 0.7
    intent_confidence_threshold: float = 0.7
    max_reminders: int = 3
    require_training: bool = True
    require_portal_submission: bool = True
    allow_retry_after_rejection: bool = True
    portal_url: str = "https://example-state-portal.gov/renewals"


class Observation(BaseModel):
    """Gateway results computed before the transition runs."""
    extraction: ExtractionOutcome | None = None
    intent: IntentOutcome | None = None


class TransitionContext(BaseModel):
    """Inputs for one handler call.

    ``instance`` is a private copy; handlers may set fields on it directly.
    ``state`` is moved by the machine from the returned Decision.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    instance: WorkflowInstance
    event: WorkflowEvent
    data: Any
    observation: Observation
    rules: RenewalRules
    now: datetime


class Decision(BaseModel):
    """What a handler decided for one event."""

    # States entered in order; the last one is the new state. Empty = no change.
    path: list[RenewalState] = Field(default_factory=list)
    effects: list[SideEffect] = Field(default_factory=list)
    completed_step: str | None = None
    documents: list[ExtractedDocument] = Field(default_factory=list)
    validated_document_ids: list[str] = Field(default_factory=list)
    ignored: bool = False
    note: str = ""

    @classmethod
    def ignore(cls, reason: str) -> "Decision":
        return cls(ignored=True, note=reason)


class BaseHandler(ABC):
    """Base class for per-event-type transition handlers.

    Subclasses must set `event_type` as a class variable and implement `__call__`.
    """

    event_type: EventType  # Class variable, set by each subclass

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if not getattr(cls, "event_type", None) and "Abstract" not in cls.__name__:
            raise TypeError(f"{cls.__name__} must define an 'event_type' class variable")

    @abstractmethod
    def __call__(self, ctx: TransitionContext) -> Decision:
        """Decide the transition for ``ctx.event``. Must not perform I/O."""
        ...
