import base64
import hashlib
import hmac
import logging
from typing import Any
from urllib.parse import parse_qsl

import opik
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError

from renewal_engine.builder import EngineBuilder, RenewalEngine
from renewal_engine.config import AppConfig
from renewal_engine.core.errors import (
    ConcurrencyConflictError,
    DispatchError,
    EventLogError,
    InstanceNotFoundError,
)
from renewal_engine.core.events import decode_event_data
from renewal_engine.core.models import Employee
from renewal_engine.core.projections import VIEWS, pending_confirmation, project_status
from renewal_engine.core.states import EventType, TriggeredBy, expected_document_type
from renewal_engine.core.webhook import TwilioWebhookPayload, normalize_phone_number, parse_twilio_webhook

logger = logging.getLogger("renewal_engine.api")

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


async def form_params(request: Request) -> list[tuple[str, str]]:
    """Raw form pairs in arrival order, as the Twilio signature needs them."""
    body = await request.body()
    return parse_qsl(body.decode(), keep_blank_values=True)


class StartRenewalRequest(BaseModel):
    employee_id: str
    phone_number: str
    license_id: str | None = None
    license_name: str | None = None
    expiration_date: str | None = None
    initial_message: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    hr_employee_number: int | None = None
    hr_compliance_item_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RecordEventRequest(BaseModel):
    event_type: EventType
    event_data: dict[str, Any] = Field(default_factory=dict)
    triggered_by: TriggeredBy = TriggeredBy.SUPERVISOR
    process: bool = True


def _twilio_signature(url: str, params: list[tuple[str, str]], auth_token: str) -> str:
    """Signature Twilio sends: HMAC-SHA1 over the URL plus sorted key/value pairs."""
    data = url + "".join(f"{key}{value}" for key, value in sorted(params))
    digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def _verify_twilio_signature(url: str, params: list[tuple[str, str]], auth_token: str, headers) -> None:
    """Raises HTTPException(403) when the request was not signed by Twilio."""
    received = headers.get("x-twilio-signature", "")
    if not received:
        raise HTTPException(status_code=403, detail="Missing Twilio signature")
    expected = _twilio_signature(url, params, auth_token)
    if not hmac.compare_digest(expected, received):
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")


def create_app(config: AppConfig | None = None, engine: RenewalEngine | None = None) -> FastAPI:
    """Factory function for creating the FastAPI app with config.

    Run with ``uvicorn renewal_engine.api:create_app --factory``.
    """
    if config is None:
        config = engine.config if engine is not None else AppConfig.from_yaml("config.yaml")
    logging.basicConfig(level=config.log_level)

    if engine is None:
        engine = EngineBuilder(config).build()
    repository = engine.repository
    processor = engine.processor

    app = FastAPI(title="License Renewal Engine")
    app.state.engine = engine

    @app.exception_handler(InstanceNotFoundError)
    async def instance_not_found(request: Request, exc: InstanceNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(EventLogError)
    async def event_log_unavailable(request: Request, exc: EventLogError):
        logger.error(f"Event log unavailable: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Event log unavailable"})

    @app.exception_handler(ConcurrencyConflictError)
    async def conflict(request: Request, exc: ConcurrencyConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @opik.track(name="renewal_processing")
    def process_instance(instance_id: str):
        """Background task: gateway calls and dispatch can take several seconds."""
        results = processor.process(instance_id)
        if results:
            logger.info(f"Processed {len(results)} event(s) for {instance_id}: now {results[-1].state.value}")
        return results

    def reply_unknown_number(phone_number: str):
        body = engine.prompt_store.get_and_render("sms", "unknown_number")
        try:
            engine.sender.send_text(phone_number, body)
        except DispatchError as e:
            logger.warning(f"Could not reply to unknown number {phone_number}: {e}")

    @app.post("/webhook/sms")
    def handle_sms_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        params: list[tuple[str, str]] = Depends(form_params),
    ):
        """Receive a Twilio messaging webhook. Appends the event, processes in background."""
        if config.sms_provider == "twilio" and config.twilio_auth_token:
            url = config.twilio_webhook_url or str(request.url)
            _verify_twilio_signature(url, params, config.twilio_auth_token, request.headers)

        try:
            payload = TwilioWebhookPayload(**dict(params))
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        message = parse_twilio_webhook(payload)
        logger.info(f"SMS received: sid={message.message_sid} media={len(message.media_urls)}")

        instance = repository.find_active_by_phone(message.from_number)
        if instance is None:
            employee = repository.find_employee_by_phone(message.from_number)
            if employee is None:
                logger.info(f"Message from unknown number {message.from_number}")
                background_tasks.add_task(reply_unknown_number, message.from_number)
                return Response(content=EMPTY_TWIML, media_type="application/xml")
            instance = processor.open_inquiry(employee)

        if message.has_media:
            processor.record(
                instance.instance_id,
                EventType.DOCUMENT_UPLOADED,
                {
                    "document_url": message.media_urls[0],
                    "document_type": expected_document_type(instance.state).value,
                    "media_type": message.media_types[0],
                },
                TriggeredBy.EMPLOYEE,
            )
        elif message.body:
            processor.record(
                instance.instance_id,
                EventType.EMPLOYEE_MESSAGE,
                {"text": message.body},
                TriggeredBy.EMPLOYEE,
            )
        else:
            return Response(content=EMPTY_TWIML, media_type="application/xml")

        background_tasks.add_task(process_instance, instance.instance_id)
        return Response(content=EMPTY_TWIML, media_type="application/xml")

    @app.post("/renewals/start", status_code=201)
    def start_renewal(request: StartRenewalRequest):
        phone_number = normalize_phone_number(request.phone_number)
        if request.first_name or request.hr_employee_number is not None:
            repository.upsert_employee(Employee(
                employee_id=request.employee_id,
                phone_number=phone_number,
                first_name=request.first_name or "",
                last_name=request.last_name or "",
                hr_employee_number=request.hr_employee_number,
            ))

        metadata = {
            **request.metadata,
            "first_name": request.first_name,
            "employee_name": " ".join(n for n in (request.first_name, request.last_name) if n) or None,
            "hr_employee_number": request.hr_employee_number,
            "hr_compliance_item_id": request.hr_compliance_item_id,
        }
        instance = processor.start_workflow(
            employee_id=request.employee_id,
            phone_number=phone_number,
            license_id=request.license_id,
            license_name=request.license_name,
            expiration_date=request.expiration_date,
            initial_message=request.initial_message,
            metadata=metadata,
        )
        return {
            "instance_id": instance.instance_id,
            "state": instance.state.value,
            "status": project_status(instance.state, "session"),
        }

    @app.post("/renewals/{instance_id}/events", status_code=202)
    def record_event(instance_id: str, request: RecordEventRequest):
        repository.get_instance(instance_id)
        try:
            decode_event_data(request.event_type, request.event_data)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        event = processor.record(instance_id, request.event_type, request.event_data, request.triggered_by)
        results = processor.process(instance_id) if request.process else []
        instance = repository.get_instance(instance_id)
        return {
            "event_id": event.event_id,
            "state": instance.state.value,
            "results": [r.model_dump(mode="json") for r in results],
        }

    @app.get("/renewals/{instance_id}")
    async def get_renewal(instance_id: str, view: str = "canonical"):
        if view not in VIEWS:
            raise HTTPException(status_code=422, detail=f"Unknown view: {view}")
        instance = repository.get_instance(instance_id)
        return {
            "instance": instance.model_dump(mode="json"),
            "status": project_status(instance.state, view),
        }

    @app.get("/renewals/{instance_id}/events")
    async def list_events(instance_id: str):
        repository.get_instance(instance_id)
        return [e.model_dump(mode="json") for e in repository.events(instance_id)]

    @app.get("/renewals/{instance_id}/pending-confirmation")
    async def get_pending_confirmation(instance_id: str):
        instance = repository.get_instance(instance_id)
        pending = pending_confirmation(instance, repository.list_documents(instance_id))
        if pending is None:
            raise HTTPException(status_code=404, detail="No license photo uploaded")
        return pending.model_dump(mode="json")

    @app.post("/cron/renewal-reminders")
    def run_reminders(request: Request):
        """Scan for stale renewals, apply the timeouts, then retry any undelivered effects."""
        if config.cron_secret:
            expected = f"Bearer {config.cron_secret}"
            if not hmac.compare_digest(request.headers.get("authorization", ""), expected):
                raise HTTPException(status_code=401, detail="Invalid cron token")

        affected = engine.scanner.scan()
        states = {}
        for instance_id in affected:
            processor.process(instance_id)
            states[instance_id] = repository.get_instance(instance_id).state.value
        redelivered = engine.dispatcher.drain_all()
        logger.info(f"Reminder run: {len(affected)} instance(s), {len(redelivered)} redelivery(ies)")
        return {"processed": len(affected), "states": states, "redelivered": len(redelivered)}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
