"""Event processing pass: read unprocessed events, transition, commit, dispatch."""
import logging
import uuid
from datetime import timedelta
from typing import Any, Callable

import opik
from pydantic import BaseModel, Field

from renewal_engine.core.effects import SyncExternal
from renewal_engine.core.errors import ConcurrencyConflictError
from renewal_engine.core.events import DocumentUploadedData, EmployeeMessageData, parse_event_data
from renewal_engine.core.models import (
    ConversationTurn,
    DispatchRecord,
    Employee,
    ToolCall,
    WorkflowEvent,
    WorkflowInstance,
    utcnow,
)
from renewal_engine.core.states import EventType, RenewalState, TriggeredBy, accepts_upload
from renewal_engine.engine.composer import MessageComposer
from renewal_engine.engine.dispatcher import OutboundDispatcher
from renewal_engine.handlers.base import Observation, RenewalRules
from renewal_engine.machine import Outcome, transition
from renewal_engine.services.gateway.base import ExtractionGateway
from renewal_engine.store.repository import EventDraft, RenewalRepository, TransitionCommit

logger = logging.getLogger(__name__)

# Upper bound on events applied in one pass, against feedback loops
MAX_EVENTS_PER_PASS = 50


class ProcessingResult(BaseModel):
    event_id: str
    event_type: EventType
    previous_state: RenewalState
    state: RenewalState
    effects: list[str] = Field(default_factory=list)
    completed_step: str | None = None
    ignored: bool = False
    duplicate: bool = False
    note: str = ""


class EventProcessor:
    """Short-lived execution that brings one instance up to date with its log.

    Each event is applied against a freshly read instance and committed with an
    optimistic version check; a conflicting writer makes this pass re-read and
    reapply, up to ``max_conflict_retries`` times. Outbox rows written by the
    commit are delivered right after it.
    """

    def __init__(
        self,
        repository: RenewalRepository,
        gateway: ExtractionGateway,
        composer: MessageComposer,
        dispatcher: OutboundDispatcher,
        rules: RenewalRules,
        max_conflict_retries: int = 3,
        auto_request_submission: bool = True,
        conversation_ttl_hours: float | None = None,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.gateway = gateway
        self.composer = composer
        self.dispatcher = dispatcher
        self.rules = rules
        self.max_conflict_retries = max_conflict_retries
        self.auto_request_submission = auto_request_submission
        self.conversation_ttl_hours = conversation_ttl_hours
        self._clock = clock

    # ------------------------------------------------------------------
    # Instance lifecycle
    def start_workflow(
        self,
        employee_id: str,
        phone_number: str,
        license_id: str | None = None,
        license_name: str | None = None,
        expiration_date: str | None = None,
        initial_message: str | None = None,
        metadata: dict[str, Any] | None = None,
        triggered_by: TriggeredBy = TriggeredBy.AGENT,
    ) -> WorkflowInstance:
        """Start a renewal, or resume the employee's active one."""
        instance = self.repository.find_active_for_employee(employee_id)
        if instance is None:
            instance, _ = self.repository.create_unless_active(
                self._new_instance(employee_id, phone_number, license_id, metadata)
            )
        if instance.state != RenewalState.GENERAL_INQUIRY:
            logger.info(f"Resuming active renewal {instance.instance_id} for employee {employee_id}")
            return instance

        self.repository.append(
            instance.instance_id,
            EventType.WORKFLOW_STARTED,
            {
                "initial_message": initial_message,
                "license_name": license_name,
                "expiration_date": expiration_date,
            },
            triggered_by,
            created_at=self._clock(),
        )
        self.process(instance.instance_id)
        return self.repository.get_instance(instance.instance_id)

    def open_inquiry(self, employee: Employee) -> WorkflowInstance:
        """Open a general-inquiry instance for an employee who texted in first.

        Two first texts arriving together share one instance.
        """
        metadata = {
            "first_name": employee.first_name or None,
            "employee_name": employee.full_name or None,
        }
        if employee.hr_employee_number is not None:
            metadata["hr_employee_number"] = employee.hr_employee_number
        expires_at = None
        if self.conversation_ttl_hours:
            expires_at = self._clock() + timedelta(hours=self.conversation_ttl_hours)
        instance, created = self.repository.create_unless_active(self._new_instance(
            employee.employee_id, employee.phone_number, None, metadata, expires_at=expires_at,
        ))
        if created:
            logger.info(f"Opened inquiry {instance.instance_id} for employee {employee.employee_id}")
        return instance

    def _new_instance(
        self,
        employee_id: str,
        phone_number: str,
        license_id: str | None,
        metadata: dict[str, Any] | None,
        expires_at=None,
    ) -> WorkflowInstance:
        now = self._clock()
        return WorkflowInstance(
            instance_id=uuid.uuid4().hex,
            employee_id=employee_id,
            license_id=license_id,
            phone_number=phone_number,
            metadata={k: v for k, v in (metadata or {}).items() if v is not None},
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Events
    def record(
        self,
        instance_id: str,
        event_type: EventType,
        event_data: dict[str, Any],
        triggered_by: TriggeredBy,
    ) -> WorkflowEvent:
        """Append an event without processing it."""
        return self.repository.append(instance_id, event_type, event_data, triggered_by, created_at=self._clock())

    def handle(
        self,
        instance_id: str,
        event_type: EventType,
        event_data: dict[str, Any],
        triggered_by: TriggeredBy,
    ) -> list[ProcessingResult]:
        self.record(instance_id, event_type, event_data, triggered_by)
        return self.process(instance_id)

    @opik.track(name="process_instance")
    def process(self, instance_id: str) -> list[ProcessingResult]:
        """Apply every unprocessed event of an instance, in log order."""
        results: list[ProcessingResult] = []
        # Rows left pending by an interrupted earlier pass go first
        self.dispatcher.drain(instance_id)
        while len(results) < MAX_EVENTS_PER_PASS:
            pending = self.repository.unprocessed(instance_id)
            if not pending:
                break
            results.append(self.apply_event(pending[0]))
        else:
            logger.error(f"Stopped processing {instance_id} after {MAX_EVENTS_PER_PASS} events")
        return results

    def apply_event(self, event: WorkflowEvent) -> ProcessingResult:
        observation: Observation | None = None
        for attempt in range(self.max_conflict_retries + 1):
            instance = self.repository.get_instance(event.instance_id)
            current = self.repository.get_event(event.event_id)
            if current is None or current.is_processed:
                return ProcessingResult(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    previous_state=instance.state,
                    state=instance.state,
                    ignored=True,
                    duplicate=True,
                    note="already processed",
                )

            if observation is None:
                observation = self._observe(instance, current)
            now = self._clock()
            outcome = transition(instance, current, observation, self.rules, now)
            commit = self._build_commit(instance, current, outcome, now)
            try:
                self.repository.commit(commit)
            except ConcurrencyConflictError as e:
                logger.warning(f"Conflict applying {current.event_id} (attempt {attempt + 1}): {e}")
                continue

            self._log_outcome(current, outcome)
            self.dispatcher.drain(instance.instance_id)
            if self._should_request_submission(outcome):
                self.repository.append(
                    instance.instance_id,
                    EventType.AGENT_ACTION,
                    {"action": "request_submission", "reason": "documents validated"},
                    TriggeredBy.AGENT,
                    created_at=self._clock(),
                )
            return ProcessingResult(
                event_id=current.event_id,
                event_type=current.event_type,
                previous_state=outcome.previous_state,
                state=outcome.state,
                effects=[effect.kind for effect in outcome.effects],
                completed_step=outcome.completed_step,
                ignored=outcome.ignored,
                note=outcome.note,
            )

        raise ConcurrencyConflictError(event.instance_id, -1)

    # ------------------------------------------------------------------
    # Helpers
    @opik.track(name="observe_event")
    def _observe(self, instance: WorkflowInstance, event: WorkflowEvent) -> Observation:
        """Run the gateway call the event needs, if its precondition holds."""
        if instance.is_terminal:
            return Observation()
        data, error = parse_event_data(event.event_type, event.event_data)
        if error is not None:
            return Observation()

        if isinstance(data, DocumentUploadedData) and accepts_upload(instance.state, data.document_type):
            return Observation(extraction=self.gateway.extract(data.document_url, data.document_type))

        if isinstance(data, EmployeeMessageData):
            extracted = instance.extracted_data
            context = {
                "state": instance.state.value,
                "expiration_date": extracted.expiration_date if extracted else None,
                "license_number": extracted.license_number if extracted else None,
            }
            return Observation(intent=self.gateway.classify_intent(data.text, context))

        return Observation()

    def _build_commit(
        self,
        before: WorkflowInstance,
        event: WorkflowEvent,
        outcome: Outcome,
        now,
    ) -> TransitionCommit:
        instance = outcome.instance
        dispatches = []
        for n, effect in enumerate(outcome.effects):
            effect_id = f"{event.event_id}:{n}"
            composed = self.composer.compose(effect, instance)
            if not isinstance(composed, SyncExternal) and composed.kind != "notify_supervisor":
                instance.transcript.append(ConversationTurn(
                    role="assistant",
                    content=composed.body,
                    timestamp=now,
                    tool_calls=[ToolCall(name=composed.kind, args={"effect_id": effect_id})],
                ))
            dispatches.append(DispatchRecord(
                effect_id=effect_id,
                instance_id=instance.instance_id,
                kind=composed.kind,
                effect=composed.model_dump(mode="json"),
                created_at=now,
                updated_at=now,
            ))

        events = []
        if outcome.completed_step and event.event_type != EventType.STEP_COMPLETED:
            events.append(EventDraft(
                instance_id=instance.instance_id,
                event_type=EventType.STEP_COMPLETED,
                event_data={
                    "step": outcome.completed_step,
                    "status": "completed",
                    "detail": {"source_event_id": event.event_id},
                },
                triggered_by=TriggeredBy.SYSTEM,
                created_at=now,
            ))

        return TransitionCommit(
            instance=instance,
            expected_version=before.version,
            event_id=event.event_id,
            processed_at=now,
            documents=outcome.documents,
            validated_document_ids=outcome.validated_document_ids,
            events=events,
            dispatches=dispatches,
        )

    def _should_request_submission(self, outcome: Outcome) -> bool:
        return (
            self.auto_request_submission
            and not outcome.ignored
            and outcome.changed_state
            and outcome.state == RenewalState.READY_FOR_SUBMISSION
        )

    @staticmethod
    def _log_outcome(event: WorkflowEvent, outcome: Outcome) -> None:
        if outcome.ignored:
            logger.info(f"Ignored {event.event_type.value} {event.event_id}: {outcome.note}")
            return
        logger.info(
            f"Applied {event.event_type.value} {event.event_id}: "
            f"{outcome.previous_state.value} -> {outcome.state.value}"
            f" ({len(outcome.effects)} effect(s)) {outcome.note}"
        )
