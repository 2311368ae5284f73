"""Side effects scheduled by the state machine and fulfilled by the dispatcher."""
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from renewal_engine.core.models import SubmissionPackage


class SendMessage(BaseModel):
    kind: Literal["send_message"] = "send_message"
    template: str
    params: dict[str, Any] = Field(default_factory=dict)
    body: str | None = None          # filled in by the composer before commit


class RequestSubmission(BaseModel):
    kind: Literal["request_submission"] = "request_submission"
    package: SubmissionPackage
    body: str | None = None


class NotifySupervisor(BaseModel):
    kind: Literal["notify_supervisor"] = "notify_supervisor"
    reason: str
    body: str | None = None


class SyncExternal(BaseModel):
    """Compliance-item update pushed to the HR system."""

    kind: Literal["sync_external"] = "sync_external"
    payload: dict[str, Any] = Field(default_factory=dict)
    # "approval": the outcome is fed back as an approval_check event
    report_as: Literal["approval", "record"] = "record"


SideEffect = Annotated[
    Union[SendMessage, RequestSubmission, NotifySupervisor, SyncExternal],
    Field(discriminator="kind"),
]

_effect_adapter: TypeAdapter = TypeAdapter(SideEffect)


def load_effect(data: dict[str, Any]) -> SendMessage | RequestSubmission | NotifySupervisor | SyncExternal:
    return _effect_adapter.validate_python(data)


class DispatchResult(BaseModel):
    effect_id: str
    kind: str
    success: bool
    attempts: int = 0
    skipped: bool = False        # already delivered on an earlier pass
    error: str | None = None
    response: dict[str, Any] = Field(default_factory=dict)
