from pathlib import Path

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from renewal_engine.core.states import RenewalState
from renewal_engine.handlers.base import RenewalRules


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # LLM
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str | None = None
    openai_api_key: str | None = None
    llm_timeout_seconds: float = 30.0

    # Prompt store
    prompt_store: str = "local"
    prompts_dir: str = "prompts"
    prompt_language: str = "en"
    prompt_fallback_language: str = "en"

    # Storage: None = in-memory, "sqlite:///path/to.db"
    database_url: str | None = None

    # SMS
    sms_provider: str = "twilio"  # "twilio" | "mock"
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_webhook_url: str | None = None  # public URL Twilio signs; defaults to the request URL

    # HR system
    hr_provider: str = "winteam"  # "winteam" | "mock"
    winteam_api_url: str = "https://apim.myteamsoftware.com/wtnextgen/employees/v1"
    winteam_tenant_id: str = ""

    supervisor_phone: str | None = None

    # Renewal rules
    extraction_confidence_threshold: float = 0.7
    intent_confidence_threshold: float = 0.7
    max_reminders: int = 3
    require_training: bool = True
    require_portal_submission: bool = True
    allow_retry_after_rejection: bool = True
    auto_request_submission: bool = True
    portal_url: str = "https://example-state-portal.gov/renewals"

    # Staleness
    stale_after_hours: float = 72
    stale_states: list[RenewalState] = [
        RenewalState.AWAITING_PHOTO,
        RenewalState.AWAITING_TRAINING,
        RenewalState.AWAITING_SUBMISSION,
    ]
    # Lifetime of a general-inquiry instance; renewals clear it when they start
    conversation_ttl_hours: float | None = None

    # Dispatch / processing
    dispatch_max_attempts: int = 3
    dispatch_base_delay: float = 1.5
    # In-flight outbox rows older than this are reclaimed by the next pass
    dispatch_claim_lease_seconds: float = 300
    max_conflict_retries: int = 3

    # Cron endpoint bearer token
    cron_secret: str | None = None

    # Opik
    opik_workspace: str | None = None
    opik_project: str = "license-renewals"
    opik_api_key: str | None = None

    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def for_testing(cls, **overrides) -> "AppConfig":
        """Pre-configured for tests: in-memory store, mock SMS and HR."""
        values = {
            "sms_provider": "mock",
            "hr_provider": "mock",
            "database_url": None,
            "supervisor_phone": "+15550000000",
            "dispatch_base_delay": 0.0,
        }
        values.update(overrides)
        return cls(**values)

    def rules(self) -> RenewalRules:
        return RenewalRules(
            extraction_confidence_threshold=self.extraction_confidence_threshold,
            intent_confidence_threshold=self.intent_confidence_threshold,
            max_reminders=self.max_reminders,
            require_training=self.require_training,
            require_portal_submission=self.require_portal_submission,
            allow_retry_after_rejection=self.allow_retry_after_rejection,
            portal_url=self.portal_url,
        )
