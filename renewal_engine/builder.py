"""EngineBuilder: wires store, services and engine components based on AppConfig."""
from dataclasses import dataclass

from renewal_engine.config import AppConfig
from renewal_engine.engine.composer import MessageComposer
from renewal_engine.engine.dispatcher import OutboundDispatcher
from renewal_engine.engine.processor import EventProcessor
from renewal_engine.engine.scanner import TimeoutScanner
from renewal_engine.handlers.base import RenewalRules
from renewal_engine.services.gateway.base import ExtractionGateway
from renewal_engine.services.gateway.llm import LLMGateway
from renewal_engine.services.hr.base import HRSystemClient
from renewal_engine.services.hr.mock import MockHRClient
from renewal_engine.services.hr.winteam import WinTeamClient
from renewal_engine.services.llm.base import LLMService
from renewal_engine.services.llm.openai import OpenAILLM
from renewal_engine.services.messaging.base import MessageSender
from renewal_engine.services.messaging.mock import MockMessageSender
from renewal_engine.services.messaging.twilio import TwilioSender
from renewal_engine.services.prompt_store.base import PromptStore
from renewal_engine.services.prompt_store.local import LocalPromptStore
from renewal_engine.store.inmemory import InMemoryRepository
from renewal_engine.store.repository import RenewalRepository
from renewal_engine.store.sqlite import SQLiteRepository


@dataclass
class RenewalEngine:
    """Everything a request handler needs, constructed once per process."""
    config: AppConfig
    rules: RenewalRules
    repository: RenewalRepository
    prompt_store: PromptStore
    gateway: ExtractionGateway
    sender: MessageSender
    hr_client: HRSystemClient
    composer: MessageComposer
    dispatcher: OutboundDispatcher
    processor: EventProcessor
    scanner: TimeoutScanner


class EngineBuilder:
    """Builds the renewal engine by wiring services from config.

    Any service can be supplied up front to override what the config would
    build (tests pass mock gateways this way).
    """

    def __init__(
        self,
        config: AppConfig,
        repository: RenewalRepository | None = None,
        llm: LLMService | None = None,
        gateway: ExtractionGateway | None = None,
        sender: MessageSender | None = None,
        hr_client: HRSystemClient | None = None,
        sleep=None,
        clock=None,
    ):
        self.config = config
        self._repository = repository
        self._llm = llm
        self._gateway = gateway
        self._sender = sender
        self._hr_client = hr_client
        self._sleep = sleep
        self._clock = clock

    def build(self) -> RenewalEngine:
        config = self.config
        rules = config.rules()
        repository = self._repository or self._build_repository()
        prompt_store = self._build_prompt_store()
        gateway = self._gateway or self._build_gateway(prompt_store)
        sender = self._sender or self._build_sender()
        hr_client = self._hr_client or self._build_hr_client()
        composer = MessageComposer(prompt_store)

        timing = {}
        if self._clock is not None:
            timing["clock"] = self._clock
        dispatcher = OutboundDispatcher(
            repository=repository,
            sender=sender,
            hr_client=hr_client,
            supervisor_phone=config.supervisor_phone,
            max_attempts=config.dispatch_max_attempts,
            base_delay=config.dispatch_base_delay,
            claim_lease_seconds=config.dispatch_claim_lease_seconds,
            **({"sleep": self._sleep} if self._sleep is not None else {}),
            **timing,
        )
        processor = EventProcessor(
            repository=repository,
            gateway=gateway,
            composer=composer,
            dispatcher=dispatcher,
            rules=rules,
            max_conflict_retries=config.max_conflict_retries,
            auto_request_submission=config.auto_request_submission,
            conversation_ttl_hours=config.conversation_ttl_hours,
            **timing,
        )
        scanner = TimeoutScanner(
            repository=repository,
            stale_states=config.stale_states,
            stale_after_hours=config.stale_after_hours,
            **timing,
        )
        return RenewalEngine(
            config=config,
            rules=rules,
            repository=repository,
            prompt_store=prompt_store,
            gateway=gateway,
            sender=sender,
            hr_client=hr_client,
            composer=composer,
            dispatcher=dispatcher,
            processor=processor,
            scanner=scanner,
        )

    def _build_repository(self) -> RenewalRepository:
        url = self.config.database_url
        if not url or url == "memory://":
            return InMemoryRepository()
        if url.startswith("sqlite:///"):
            return SQLiteRepository(url.removeprefix("sqlite:///"))
        raise ValueError(f"Unknown database URL: {url}")

    def _build_llm(self) -> LLMService:
        if self._llm is not None:
            return self._llm
        if self.config.llm_provider == "openai":
            return OpenAILLM(
                model=self.config.llm_model,
                api_key=self.config.openai_api_key,
                base_url=self.config.llm_base_url,
                timeout=self.config.llm_timeout_seconds,
            )
        raise ValueError(f"Unknown LLM provider: {self.config.llm_provider}")

    def _build_gateway(self, prompt_store: PromptStore) -> ExtractionGateway:
        return LLMGateway(
            llm=self._build_llm(),
            prompt_store=prompt_store,
            extraction_threshold=self.config.extraction_confidence_threshold,
            intent_threshold=self.config.intent_confidence_threshold,
        )

    def _build_sender(self) -> MessageSender:
        if self.config.sms_provider == "mock":
            return MockMessageSender()
        if self.config.sms_provider == "twilio":
            if not (self.config.twilio_account_sid and self.config.twilio_auth_token and self.config.twilio_from_number):
                raise ValueError("Twilio requires twilio_account_sid, twilio_auth_token and twilio_from_number")
            return TwilioSender(
                account_sid=self.config.twilio_account_sid,
                auth_token=self.config.twilio_auth_token,
                from_number=self.config.twilio_from_number,
            )
        raise ValueError(f"Unknown SMS provider: {self.config.sms_provider}")

    def _build_hr_client(self) -> HRSystemClient:
        if self.config.hr_provider == "mock":
            return MockHRClient()
        if self.config.hr_provider == "winteam":
            return WinTeamClient(
                base_url=self.config.winteam_api_url,
                tenant_id=self.config.winteam_tenant_id,
            )
        raise ValueError(f"Unknown HR provider: {self.config.hr_provider}")

    def _build_prompt_store(self) -> PromptStore:
        if self.config.prompt_store != "local":
            raise ValueError(f"Unknown prompt store: {self.config.prompt_store}")
        store = LocalPromptStore(
            prompts_dir=self.config.prompts_dir,
            language=self.config.prompt_language,
            fallback_language=self.config.prompt_fallback_language,
        )
        # A message that fails to render would only surface mid-renewal
        problems = store.find_problems()
        if problems:
            raise ValueError(f"Invalid templates in {self.config.prompts_dir}: {'; '.join(problems)}")
        return store
