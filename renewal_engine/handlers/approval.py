from renewal_engine.core.effects import NotifySupervisor, SyncExternal
from renewal_engine.core.events import ApprovalCheckData
from renewal_engine.core.states import STEP_APPROVAL, STEP_PORTAL_SUBMISSION, EventType, RenewalState
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import fail, hr_sync_payload, message


class ApprovalCheckHandler(BaseHandler):
    """Final verdict from the licensing portal or the HR compliance sync."""

    event_type = EventType.APPROVAL_CHECK

    def __call__(self, ctx: TransitionContext) -> Decision:
        instance = ctx.instance
        data: ApprovalCheckData = ctx.data

        if instance.state != RenewalState.AWAITING_APPROVAL:
            return Decision.ignore(f"approval check in state {instance.state.value}")

        if data.source == "hr_sync":
            instance.metadata["hr_sync"] = {
                "status": "synced" if data.approved else "failed",
                "error": None if data.approved else data.reason,
            }

        if data.approved:
            expiration = (instance.extracted_data.expiration_date if instance.extracted_data else None) or "on file"
            effects = [message("renewal_complete", expiration_date=expiration)]
            if data.source == "portal":
                effects.append(SyncExternal(payload=hr_sync_payload(instance), report_as="record"))
            return Decision(
                path=[RenewalState.COMPLETED],
                effects=effects,
                completed_step=STEP_APPROVAL,
                note=f"approved via {data.source}",
            )

        reason = data.reason or "renewal rejected"
        if data.retries_remaining > 0 and ctx.rules.allow_retry_after_rejection:
            # Resume re-enters the step that has to be redone
            if data.source == "portal":
                instance.metadata["resume_state"] = RenewalState.READY_FOR_SUBMISSION.value
                if STEP_PORTAL_SUBMISSION in instance.completed_steps:
                    instance.completed_steps.remove(STEP_PORTAL_SUBMISSION)
            else:
                instance.metadata["resume_state"] = RenewalState.AWAITING_APPROVAL.value
            instance.metadata["escalation_reason"] = reason
            instance.metadata["retries_remaining"] = data.retries_remaining
            return Decision(
                path=[RenewalState.ESCALATED],
                effects=[message("renewal_needs_review"), NotifySupervisor(reason=reason)],
                note=f"rejected, {data.retries_remaining} retries remaining",
            )

        template = "sync_failed" if data.source == "hr_sync" else "renewal_failed"
        return fail(ctx, reason, template=template)
