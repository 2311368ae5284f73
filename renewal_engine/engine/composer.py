from renewal_engine.core.effects import NotifySupervisor, RequestSubmission, SendMessage, SyncExternal
from renewal_engine.core.models import WorkflowInstance
from renewal_engine.services.prompt_store.base import PromptStore


class MessageComposer:
    """Renders message bodies for effects from the ``sms`` and ``supervisor`` templates."""

    def __init__(self, prompt_store: PromptStore):
        self.prompt_store = prompt_store

    def compose(self, effect, instance: WorkflowInstance):
        """Return a copy of ``effect`` with its body filled in."""
        if isinstance(effect, SyncExternal) or effect.body:
            return effect

        if isinstance(effect, SendMessage):
            params = {**self._employee_params(instance), **effect.params}
            body = self.prompt_store.get_and_render("sms", effect.template, params)
        elif isinstance(effect, RequestSubmission):
            package = effect.package
            steps = "\n".join(f"{i}. {step}" for i, step in enumerate(package.instructions, start=1))
            body = self.prompt_store.get_and_render("sms", "submission_request", {
                **self._employee_params(instance),
                "portal_url": package.portal_url,
                "instructions": steps,
                "estimated_time": package.estimated_time,
            })
        elif isinstance(effect, NotifySupervisor):
            body = self.prompt_store.get_and_render("supervisor", "escalation", {
                "instance_id": instance.instance_id,
                "employee_id": instance.employee_id,
                "employee_name": instance.metadata.get("employee_name") or instance.employee_id,
                "phone_number": instance.phone_number or "unknown",
                "state": instance.state.value,
                "reason": effect.reason,
            })
        else:
            raise ValueError(f"Unknown effect type: {type(effect).__name__}")

        return effect.model_copy(update={"body": body})

    @staticmethod
    def _employee_params(instance: WorkflowInstance) -> dict:
        return {"first_name": instance.metadata.get("first_name")}
