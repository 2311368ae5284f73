import string
from abc import ABC, abstractmethod
from typing import Any, Optional
from pydantic import BaseModel, Field


class PromptTemplate(BaseModel):
    """A single prompt or SMS template with its metadata."""
    name: str
    template: str
    description: str = ""
    params: list[str] = Field(default_factory=list)
    # Values used for params the caller leaves out (e.g. first_name: "there")
    defaults: dict[str, str] = Field(default_factory=dict)

    @property
    def placeholders(self) -> set[str]:
        return {field for _, field, _, _ in string.Formatter().parse(self.template) if field}


class PromptStore(ABC):
    """Template storage keyed by category and name.

    Categories map to files: ``extract`` and ``classify`` hold the language-model
    prompts, ``sms`` the employee-facing messages and ``supervisor`` the
    escalation notices, so ``get("sms", "reminder_awaiting_photo")`` is the
    reminder sent while a license photo is outstanding.

    Each language lives in its own folder (prompts/en/, prompts/es/). A name
    missing from ``language`` is looked up in ``fallback_language``, which lets
    a translation cover only the messages it has been written for.
    """

    @property
    @abstractmethod
    def language(self) -> str:
        """ISO 639-1 code templates are served in first."""
        ...

    @property
    @abstractmethod
    def fallback_language(self) -> str:
        ...

    @abstractmethod
    def get(self, category: str, name: str) -> Optional[PromptTemplate]:
        """The template in the first language that has it, or None."""
        ...

    @abstractmethod
    def list_categories(self) -> list[str]:
        ...

    @abstractmethod
    def list_prompts(self, category: str) -> list[str]:
        """Template names in a category across both languages."""
        ...

    def has(self, category: str, name: str) -> bool:
        return self.get(category, name) is not None

    def find_problems(self) -> list[str]:
        """Templates whose placeholders and declared params disagree."""
        problems = []
        for category in self.list_categories():
            for name in self.list_prompts(category):
                template = self.get(category, name)
                declared = set(template.params)
                if template.placeholders != declared:
                    problems.append(
                        f"{template.name}: placeholders {sorted(template.placeholders)} "
                        f"!= params {sorted(declared)}"
                    )
        return problems

    @staticmethod
    def render(template: PromptTemplate, params: dict[str, Any]) -> str:
        """Fill a template; None values fall back to the template defaults.

        Raises:
            ValueError: If a required parameter has neither a value nor a default
        """
        values = {**template.defaults, **{k: v for k, v in params.items() if v is not None}}
        missing = [p for p in template.params if p not in values]
        if missing:
            raise ValueError(
                f"Missing required parameters for template '{template.name}': {missing}"
            )
        return template.template.format(**values).strip()

    def get_and_render(
        self, category: str, name: str, params: Optional[dict[str, Any]] = None
    ) -> str:
        """Raises ValueError if the template is unknown or a parameter is missing."""
        template = self.get(category, name)
        if template is None:
            raise ValueError(f"Prompt template '{category}/{name}' not found")
        return self.render(template, params or {})
