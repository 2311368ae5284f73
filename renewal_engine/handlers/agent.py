from renewal_engine.core.effects import RequestSubmission
from renewal_engine.core.events import AgentActionData
from renewal_engine.core.states import EventType, RenewalState
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import build_submission_package, cancel, fail, state_prompt


class AgentActionHandler(BaseHandler):
    """System-driven transitions: resume, submission request, cancel/fail."""

    event_type = EventType.AGENT_ACTION

    def __call__(self, ctx: TransitionContext) -> Decision:
        data: AgentActionData = ctx.data
        handler = {
            "resume": self._resume,
            "request_submission": self._request_submission,
            "submission_failed": self._submission_failed,
            "cancel": self._cancel,
            "fail": self._fail,
        }.get(data.action)
        if handler is None:
            return Decision.ignore(f"unsupported agent action {data.action!r}")
        return handler(ctx, data)

    def _resume(self, ctx: TransitionContext, data: AgentActionData) -> Decision:
        instance = ctx.instance
        if instance.state != RenewalState.ESCALATED:
            return Decision.ignore(f"resume while {instance.state.value}")
        target = instance.metadata.pop("resume_state", None)
        if target is None:
            return Decision.ignore("no resume state recorded")

        resume_state = RenewalState(target)
        instance.metadata.pop("escalation_reason", None)
        instance.metadata["unanswered_reminders"] = 0
        return Decision(
            path=[resume_state],
            effects=state_prompt(instance, resume_state, ctx.rules),
            note=f"resumed at {resume_state.value}",
        )

    def _request_submission(self, ctx: TransitionContext, data: AgentActionData) -> Decision:
        instance = ctx.instance
        if instance.state != RenewalState.READY_FOR_SUBMISSION:
            return Decision.ignore(f"submission requested while {instance.state.value}")
        if instance.submission_package is None:
            instance.submission_package = build_submission_package(instance, ctx.rules)
        return Decision(
            path=[RenewalState.AWAITING_SUBMISSION],
            effects=[RequestSubmission(package=instance.submission_package)],
            note="submission requested",
        )

    def _submission_failed(self, ctx: TransitionContext, data: AgentActionData) -> Decision:
        if ctx.instance.state != RenewalState.AWAITING_SUBMISSION:
            return Decision.ignore(f"submission failure reported while {ctx.instance.state.value}")
        return fail(ctx, data.reason or "submission could not be delivered")

    def _cancel(self, ctx: TransitionContext, data: AgentActionData) -> Decision:
        return cancel(ctx, data.reason or "cancelled by system")

    def _fail(self, ctx: TransitionContext, data: AgentActionData) -> Decision:
        return fail(ctx, data.reason or "failed by system")
