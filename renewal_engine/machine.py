"""The renewal transition function.

``transition`` takes the current instance, one event and the gateway results
already computed for it, and returns the next instance together with the side
effects to schedule. It performs no I/O and never reads the clock; callers pass
``now``. Per-event decisions live in ``renewal_engine.handlers``; this module
owns the bookkeeping every transition shares (terminal stability, ignored-event
log, step sets, transcript, reminder counter).
"""
from datetime import datetime

from pydantic import BaseModel, Field

from renewal_engine.core.effects import SideEffect
from renewal_engine.core.events import DocumentUploadedData, EmployeeMessageData, parse_event_data
from renewal_engine.core.models import ConversationTurn, ExtractedDocument, WorkflowEvent, WorkflowInstance
from renewal_engine.core.states import (
    PENDING_STEP_ON_ENTRY,
    TERMINAL_STATES,
    EventType,
    RenewalState,
)
from renewal_engine.handlers.agent import AgentActionHandler
from renewal_engine.handlers.approval import ApprovalCheckHandler
from renewal_engine.handlers.base import BaseHandler, Decision, Observation, RenewalRules, TransitionContext
from renewal_engine.handlers.documents import DocumentUploadedHandler
from renewal_engine.handlers.steps import context_reply
from renewal_engine.handlers.messages import EmployeeMessageHandler
from renewal_engine.handlers.started import WorkflowStartedHandler
from renewal_engine.handlers.step import StepCompletedHandler
from renewal_engine.handlers.submission import SubmissionRecordedHandler
from renewal_engine.handlers.supervisor import SupervisorInterventionHandler
from renewal_engine.handlers.timeouts import TimeoutFiredHandler

HANDLERS: dict[EventType, BaseHandler] = {
    handler.event_type: handler
    for handler in (
        WorkflowStartedHandler(),
        DocumentUploadedHandler(),
        EmployeeMessageHandler(),
        TimeoutFiredHandler(),
        SupervisorInterventionHandler(),
        SubmissionRecordedHandler(),
        ApprovalCheckHandler(),
        StepCompletedHandler(),
        AgentActionHandler(),
    )
}

# Events that count as the employee answering a reminder
_EMPLOYEE_EVENTS = (EventType.EMPLOYEE_MESSAGE, EventType.DOCUMENT_UPLOADED)


class Outcome(BaseModel):
    """Result of applying one event."""

    instance: WorkflowInstance
    previous_state: RenewalState
    path: list[RenewalState] = Field(default_factory=list)
    effects: list[SideEffect] = Field(default_factory=list)
    completed_step: str | None = None
    documents: list[ExtractedDocument] = Field(default_factory=list)
    validated_document_ids: list[str] = Field(default_factory=list)
    ignored: bool = False
    note: str = ""

    @property
    def state(self) -> RenewalState:
        return self.instance.state

    @property
    def changed_state(self) -> bool:
        return self.instance.state != self.previous_state


def transition(
    instance: WorkflowInstance,
    event: WorkflowEvent,
    observation: Observation | None,
    rules: RenewalRules,
    now: datetime,
) -> Outcome:
    working = instance.model_copy(deep=True)
    observation = observation or Observation()

    if working.is_terminal:
        return _ignore(instance, event, f"instance is {working.state.value}", now)

    data, error = parse_event_data(event.event_type, event.event_data)
    if error is not None:
        return _ignore(instance, event, f"unparseable {event.event_type.value} payload: {error}", now)

    ctx = TransitionContext(
        instance=working,
        event=event,
        data=data,
        observation=observation,
        rules=rules,
        now=now,
    )
    decision = HANDLERS[event.event_type](ctx)
    if decision.ignored:
        # Discard anything the handler touched before bailing out
        outcome = _ignore(instance, event, decision.note, now)
        if event.event_type in _EMPLOYEE_EVENTS:
            # The employee still gets exactly one reply for a misplaced text or upload
            outcome.instance.transcript.append(_employee_turn(event, data))
            outcome.effects.append(context_reply(instance.state))
        return outcome

    return _apply(working, instance.state, event, data, decision, now)


def _ignore(instance: WorkflowInstance, event: WorkflowEvent, reason: str, now: datetime) -> Outcome:
    working = instance.model_copy(deep=True)
    working.metadata.setdefault("ignored_events", []).append({
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "state": working.state.value,
        "reason": reason,
        "at": now.isoformat(),
    })
    return Outcome(instance=working, previous_state=instance.state, ignored=True, note=reason)


def _apply(
    working: WorkflowInstance,
    previous: RenewalState,
    event: WorkflowEvent,
    data: BaseModel,
    decision: Decision,
    now: datetime,
) -> Outcome:
    step = decision.completed_step
    if step is not None:
        if step not in working.completed_steps:
            working.completed_steps.append(step)
        if step in working.pending_actions:
            working.pending_actions.remove(step)

    for entered in decision.path:
        pending = PENDING_STEP_ON_ENTRY.get(entered)
        if pending and pending not in working.completed_steps and pending not in working.pending_actions:
            working.pending_actions.append(pending)

    if decision.path:
        new_state = decision.path[-1]
        working.state = new_state
        if new_state in TERMINAL_STATES:
            if working.pending_actions:
                working.metadata["abandoned_steps"] = list(working.pending_actions)
            working.pending_actions = []
            working.current_step = None
        elif new_state in PENDING_STEP_ON_ENTRY:
            working.current_step = PENDING_STEP_ON_ENTRY[new_state]
        # escalated and pass-through states keep current_step for resumption

    if event.event_type in _EMPLOYEE_EVENTS:
        working.transcript.append(_employee_turn(event, data))
        working.metadata["unanswered_reminders"] = 0
    elif decision.path and working.state != RenewalState.ESCALATED:
        working.metadata["unanswered_reminders"] = 0

    working.updated_at = now
    return Outcome(
        instance=working,
        previous_state=previous,
        path=list(decision.path),
        effects=list(decision.effects),
        completed_step=step,
        documents=list(decision.documents),
        validated_document_ids=list(decision.validated_document_ids),
        note=decision.note,
    )


def _employee_turn(event: WorkflowEvent, data: BaseModel) -> ConversationTurn:
    content = ""
    if isinstance(data, EmployeeMessageData):
        content = data.text
    elif isinstance(data, DocumentUploadedData):
        content = f"[{data.document_type.value}] {data.document_url}"
    return ConversationTurn(role="user", content=content, timestamp=event.created_at)
