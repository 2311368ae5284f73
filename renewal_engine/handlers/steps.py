"""Building blocks shared by the handlers: messages, flow advancement, terminal exits."""
from renewal_engine.core.effects import NotifySupervisor, SendMessage, SyncExternal
from renewal_engine.core.models import ExtractedData, SubmissionDocument, SubmissionPackage, WorkflowInstance
from renewal_engine.core.states import (
    STEP_PHOTO_UPLOAD,
    STEP_TRAINING_UPLOAD,
    DocumentType,
    RenewalState,
)
from renewal_engine.handlers.base import Decision, RenewalRules, TransitionContext

SUBMISSION_INSTRUCTIONS = [
    "Log into the state portal with your credentials",
    'Navigate to "License Renewals"',
    "Upload your validated license photo",
    "Upload your training certificate",
    "Fill out the renewal form",
    "Submit and save your confirmation number",
]

DOCUMENT_LABELS = {
    DocumentType.LICENSE_PHOTO: "license photo",
    DocumentType.TRAINING_CERTIFICATE: "training certificate",
    DocumentType.FIREARMS_QUALIFICATION: "firearms qualification",
    DocumentType.CPR_CERTIFICATION: "CPR certification",
    DocumentType.BACKGROUND_CHECK: "background check",
    DocumentType.OTHER: "document",
}

_CONTEXT_REPLIES = {
    RenewalState.GENERAL_INQUIRY: "reply_general",
    RenewalState.AWAITING_PHOTO: "reply_awaiting_photo",
    RenewalState.PHOTO_UPLOADED: "reply_awaiting_confirmation",
    RenewalState.AWAITING_TRAINING: "reply_awaiting_training",
    RenewalState.TRAINING_UPLOADED: "reply_awaiting_confirmation",
    RenewalState.ESCALATED: "reply_escalated",
}


def message(template: str, **params) -> SendMessage:
    return SendMessage(template=template, params=params)


def document_label(document_type: DocumentType) -> str:
    return DOCUMENT_LABELS[document_type]


def context_reply(state: RenewalState) -> SendMessage:
    """Informational reply for a message that does not move the flow."""
    return message(_CONTEXT_REPLIES.get(state, "reply_in_progress"))


def confirm_message(document_type: DocumentType, data: ExtractedData) -> SendMessage:
    return message(
        "confirm_extraction",
        document_label=document_label(document_type),
        expiration_date=data.expiration_date or "unknown",
        license_number=data.license_number or "unknown",
    )


def hr_sync_payload(instance: WorkflowInstance) -> dict:
    data = instance.extracted_data or ExtractedData()
    return {
        "employee_number": instance.metadata.get("hr_employee_number"),
        "compliance_item_id": instance.metadata.get("hr_compliance_item_id"),
        "expiration_date": data.expiration_date,
        "license_number": data.license_number,
        "notes": f"Renewal confirmed by employee via SMS (workflow {instance.instance_id})",
    }


def build_submission_package(instance: WorkflowInstance, rules: RenewalRules) -> SubmissionPackage:
    validated = instance.metadata.get("validated_documents", {})
    documents = [
        SubmissionDocument(
            type=DocumentType(doc_type),
            url=doc["source_url"],
            filename=f"{doc_type}_{doc['document_id']}",
            validated=True,
        )
        for doc_type, doc in validated.items()
    ]
    data = instance.extracted_data or ExtractedData()
    form_data = {
        key: value
        for key, value in {
            "license_number": data.license_number,
            "license_type": data.license_type,
            "state": data.state,
            "holder_name": data.holder_name,
            "current_expiration_date": data.expiration_date,
        }.items()
        if value is not None
    }
    return SubmissionPackage(
        portal_url=rules.portal_url,
        instructions=list(SUBMISSION_INSTRUCTIONS),
        documents=documents,
        form_data=form_data,
    )


def mark_validated(ctx: TransitionContext) -> str | None:
    """Move the pending document into the validated set; returns its id."""
    pending = ctx.instance.metadata.pop("pending_document", None)
    if pending is None:
        return None
    validated = ctx.instance.metadata.setdefault("validated_documents", {})
    validated[pending["document_type"]] = pending
    return pending["document_id"]


def advance_to_submission(ctx: TransitionContext, decision: Decision) -> Decision:
    """Continue from a validated state to the submission or HR-sync stage."""
    if ctx.rules.require_portal_submission:
        ctx.instance.submission_package = build_submission_package(ctx.instance, ctx.rules)
        decision.path.append(RenewalState.READY_FOR_SUBMISSION)
        decision.effects.append(message("documents_validated", portal_url=ctx.rules.portal_url))
        return decision

    decision.path.append(RenewalState.AWAITING_APPROVAL)
    decision.effects.append(message("records_updating"))
    decision.effects.append(SyncExternal(payload=hr_sync_payload(ctx.instance), report_as="approval"))
    return decision


def confirm_photo(ctx: TransitionContext) -> Decision:
    doc_id = mark_validated(ctx)
    decision = Decision(
        path=[RenewalState.PHOTO_VALIDATED],
        completed_step=STEP_PHOTO_UPLOAD,
        validated_document_ids=[doc_id] if doc_id else [],
        note="license photo confirmed",
    )
    if ctx.rules.require_training:
        decision.path.append(RenewalState.AWAITING_TRAINING)
        decision.effects.append(message("request_training"))
        return decision
    return advance_to_submission(ctx, decision)


def confirm_training(ctx: TransitionContext) -> Decision:
    doc_id = mark_validated(ctx)
    decision = Decision(
        path=[RenewalState.TRAINING_VALIDATED],
        completed_step=STEP_TRAINING_UPLOAD,
        validated_document_ids=[doc_id] if doc_id else [],
        note="training certificate confirmed",
    )
    return advance_to_submission(ctx, decision)


def escalate(ctx: TransitionContext, reason: str, notify: bool = True) -> Decision:
    """Move to ``escalated``, remembering where to resume."""
    instance = ctx.instance
    if instance.state != RenewalState.ESCALATED:
        instance.metadata["resume_state"] = instance.state.value
    instance.metadata["escalation_reason"] = reason
    effects = [message("escalated")]
    if notify:
        effects.append(NotifySupervisor(reason=reason))
    return Decision(path=[RenewalState.ESCALATED], effects=effects, note=reason)


def fail(ctx: TransitionContext, reason: str, template: str = "renewal_failed") -> Decision:
    ctx.instance.metadata["failure_reason"] = reason
    return Decision(
        path=[RenewalState.FAILED],
        effects=[message(template, reason=reason), NotifySupervisor(reason=reason)],
        note=reason,
    )


def cancel(ctx: TransitionContext, reason: str, template: str = "cancelled") -> Decision:
    ctx.instance.metadata["cancel_reason"] = reason
    return Decision(path=[RenewalState.CANCELLED], effects=[message(template)], note=reason)


def state_prompt(instance: WorkflowInstance, state: RenewalState, rules: RenewalRules) -> list:
    """Effects that re-issue the prompt for ``state`` when a flow resumes."""
    if state == RenewalState.PHOTO_UPLOADED and instance.extracted_data is not None:
        return [confirm_message(DocumentType.LICENSE_PHOTO, instance.extracted_data)]
    if state == RenewalState.TRAINING_UPLOADED and "training_extracted" in instance.metadata:
        data = ExtractedData.model_validate(instance.metadata["training_extracted"])
        return [confirm_message(DocumentType.TRAINING_CERTIFICATE, data)]
    if state == RenewalState.AWAITING_TRAINING:
        return [message("request_training")]
    if state == RenewalState.READY_FOR_SUBMISSION:
        return [message("documents_validated", portal_url=rules.portal_url)]
    if state == RenewalState.AWAITING_APPROVAL and not rules.require_portal_submission:
        return [
            message("records_updating"),
            SyncExternal(payload=hr_sync_payload(instance), report_as="approval"),
        ]
    if state in (RenewalState.AWAITING_SUBMISSION, RenewalState.AWAITING_APPROVAL):
        return [message(f"reminder_{state.value}")]
    if state == RenewalState.GENERAL_INQUIRY:
        return [message("help")]
    return [context_reply(state)]
