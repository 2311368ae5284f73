import yaml
from pathlib import Path
from typing import Optional
from renewal_engine.services.prompt_store.base import PromptStore, PromptTemplate


class LocalPromptStore(PromptStore):
    """Loads templates from local YAML files organized by language.

    Directory structure:
        prompts/
        ├── en/
        │   ├── classify.yaml      # intent classification prompts
        │   ├── extract.yaml       # document extraction prompts
        │   ├── sms.yaml           # employee-facing messages
        │   └── supervisor.yaml    # escalation notices
        └── es/
            └── sms.yaml           # partial translations fall back to en

    YAML format per file (each key is a template name within the category):
        confirm_extraction:
            template: |
                Got your {document_label}! Expiration: {expiration_date}.
                Reply YES to confirm or NO to send a new photo.
            description: Ask the employee to confirm extracted fields
            params:
                - document_label
                - expiration_date
            defaults:
                expiration_date: unknown
    """

    def __init__(self, prompts_dir: str | Path, language: str = "en", fallback_language: str = "en"):
        self._base_dir = Path(prompts_dir)
        if not self._base_dir.exists():
            raise FileNotFoundError(f"Prompts directory not found: {self._base_dir}")
        self._language = language
        self._fallback_language = fallback_language
        self._cache: dict[str, dict | None] = {}

    @property
    def language(self) -> str:
        return self._language

    @property
    def fallback_language(self) -> str:
        return self._fallback_language

    def get(self, category: str, name: str) -> Optional[PromptTemplate]:
        entry = next(
            (entries[name] for entries in self._entries(category) if name in entries),
            None,
        )
        if entry is None:
            return None
        return PromptTemplate(
            name=f"{category}.{name}",
            template=entry["template"],
            description=entry.get("description", ""),
            params=entry.get("params") or [],
            defaults={key: str(value) for key, value in (entry.get("defaults") or {}).items()},
        )

    def list_categories(self) -> list[str]:
        return sorted({
            path.stem
            for lang in self._languages()
            for path in (self._base_dir / lang).glob("*.yaml")
        })

    def list_prompts(self, category: str) -> list[str]:
        # dict keeps first-seen order across languages
        return list(dict.fromkeys(name for entries in self._entries(category) for name in entries))

    def _languages(self) -> list[str]:
        return list(dict.fromkeys([self._language, self._fallback_language]))

    def _entries(self, category: str) -> list[dict]:
        """Parsed category files, primary language first; missing files are skipped."""
        found = []
        for lang in self._languages():
            key = f"{lang}/{category}"
            if key not in self._cache:
                path = self._base_dir / lang / f"{category}.yaml"
                self._cache[key] = (yaml.safe_load(path.read_text(encoding="utf-8")) or {}) if path.exists() else None
            if self._cache[key] is not None:
                found.append(self._cache[key])
        return found
