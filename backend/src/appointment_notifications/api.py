from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Callable

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from .appointments import AppointmentDirectory, InMemoryAppointmentDirectory
from .audit_log import AutomationAuditLogger, AutomationMessageLogRepository, create_automation_message_log_repository
from .config import Settings, get_settings, runtime_config_summary
from .delivery import WhatsAppDeliveryService
from .jobs import NotificationJobRepository, create_notification_job_repository
from .meta_client import MetaCloudClient, WhatsAppProviderClient
from .models import HealthResponse, JobType, ProcessorRunRequest, ProcessResponse, WebhookProcessResponse
from .processor import NotificationDispatchProcessor
from .scheduler import NotificationScheduler
from .service_window import CustomerServiceWindowEvaluator
from .templates import TemplateContextBuilder
from .webhook_security import verify_meta_signature, verify_subscription_handshake
from .webhooks import MetaWebhookProcessor

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["notifications"])

job_repo: NotificationJobRepository
message_log_repo: AutomationMessageLogRepository
audit_logger: AutomationAuditLogger
appointment_directory: AppointmentDirectory
delivery_service: WhatsAppDeliveryService
dispatch_processor: NotificationDispatchProcessor
window_evaluator: CustomerServiceWindowEvaluator
notification_scheduler: NotificationScheduler
webhook_processor: MetaWebhookProcessor


def _default_client_factory() -> WhatsAppProviderClient:
    return MetaCloudClient.from_settings(_settings)


def configure_runtime(
    settings: Settings | None = None,
    *,
    directory: AppointmentDirectory | None = None,
    client_factory: Callable[[], WhatsAppProviderClient] | None = None,
) -> None:
    """Rebuild the module-level engine wiring from ``settings``."""
    global _settings, job_repo, message_log_repo, audit_logger, appointment_directory
    global delivery_service, dispatch_processor, window_evaluator, notification_scheduler, webhook_processor

    _settings = settings or get_settings()
    factory = client_factory or _default_client_factory
    job_repo = create_notification_job_repository(
        backend=_settings.notification_store_backend,
        database_url=_settings.database_url,
    )
    message_log_repo = create_automation_message_log_repository(
        backend=_settings.notification_store_backend,
        database_url=_settings.database_url,
    )
    audit_logger = AutomationAuditLogger(message_log_repo)
    appointment_directory = directory or InMemoryAppointmentDirectory()
    window_evaluator = CustomerServiceWindowEvaluator(log_repository=message_log_repo)
    delivery_service = WhatsAppDeliveryService(
        settings=_settings,
        context_builder=TemplateContextBuilder(
            directory=appointment_directory,
            studio_location_line=_settings.studio_location_line,
            timezone_name=_settings.business_timezone,
        ),
        client_factory=factory,
        window_evaluator=window_evaluator,
    )
    dispatch_processor = NotificationDispatchProcessor(
        settings=_settings,
        jobs=job_repo,
        audit=audit_logger,
        delivery=delivery_service,
    )
    notification_scheduler = NotificationScheduler(
        settings=_settings,
        jobs=job_repo,
        audit=audit_logger,
        processor=dispatch_processor,
        window_evaluator=window_evaluator,
    )
    webhook_processor = MetaWebhookProcessor(
        settings=_settings,
        jobs=job_repo,
        audit=audit_logger,
        directory=appointment_directory,
        client_factory=factory,
    )


configure_runtime(_settings)


def reset_runtime_state_for_tests() -> None:
    job_repo.reset()
    message_log_repo.reset()
    if isinstance(appointment_directory, InMemoryAppointmentDirectory):
        appointment_directory.reset()


def _bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "").strip()
    if not header.lower().startswith("bearer "):
        return ""
    return header[len("bearer "):].strip()


def _is_authorized(request: Request, secret: str) -> bool:
    token = _bearer_token(request)
    if not secret or not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def _error_response(status_code: int, error: str, *, include_automation: bool = False) -> JSONResponse:
    content: dict[str, Any] = {"ok": False, "error": error}
    if include_automation:
        content["automation"] = runtime_config_summary(_settings)
    return JSONResponse(status_code=status_code, content=content)


def _parse_run_request(body: bytes) -> ProcessorRunRequest:
    if not body.strip():
        return ProcessorRunRequest()
    try:
        raw = json.loads(body)
    except ValueError:
        logger.info("ignoring malformed processor request body")
        return ProcessorRunRequest()
    if not isinstance(raw, dict):
        return ProcessorRunRequest()
    return ProcessorRunRequest.model_validate(raw)


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse()


@router.get("/cron/whatsapp-reminders", response_model=ProcessResponse)
def run_reminder_cron(request: Request) -> ProcessResponse | JSONResponse:
    if not _is_authorized(request, _settings.cron_secret):
        return _error_response(401, "Unauthorized")
    try:
        summary = dispatch_processor.process_pending(
            job_type=JobType.APPOINTMENT_REMINDER,
            limit=_settings.batch_limit,
        )
    except Exception as exc:
        logger.exception("whatsapp reminder cron failed")
        return _error_response(500, str(exc) or exc.__class__.__name__, include_automation=True)
    return ProcessResponse(summary=summary)


@router.get("/internal/notifications/whatsapp/process")
def describe_processor() -> dict[str, Any]:
    return {
        "ok": True,
        "automation": runtime_config_summary(_settings),
        "dispatchEnabled": _settings.dispatch_enabled,
    }


@router.post("/internal/notifications/whatsapp/process", response_model=ProcessResponse)
async def run_processor(request: Request) -> ProcessResponse | JSONResponse:
    if not _settings.processor_secret:
        return _error_response(503, "WHATSAPP_AUTOMATION_PROCESSOR_SECRET não configurado.", include_automation=True)
    if not _is_authorized(request, _settings.processor_secret):
        return _error_response(401, "Unauthorized")

    run_request = _parse_run_request(await request.body())
    try:
        summary = await run_in_threadpool(
            dispatch_processor.process_pending,
            limit=run_request.limit,
            appointment_id=run_request.appointment_id,
            job_id=run_request.job_id,
            job_type=run_request.type,
        )
    except Exception as exc:
        logger.exception("whatsapp notification processor failed")
        return _error_response(500, str(exc) or exc.__class__.__name__, include_automation=True)
    return ProcessResponse(summary=summary)


@router.get("/whatsapp/meta/webhook", response_model=None)
def verify_meta_webhook(request: Request) -> PlainTextResponse | JSONResponse:
    result = verify_subscription_handshake(
        settings=_settings,
        mode=request.query_params.get("hub.mode"),
        verify_token=request.query_params.get("hub.verify_token"),
        challenge=request.query_params.get("hub.challenge"),
    )
    if result.status_code != 200:
        return _error_response(result.status_code, result.error or "Forbidden")
    return PlainTextResponse(result.challenge or "")


@router.post("/whatsapp/meta/webhook", response_model=WebhookProcessResponse)
async def receive_meta_webhook(request: Request) -> WebhookProcessResponse | JSONResponse:
    body = await request.body()
    verification = verify_meta_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        logger.warning("rejected whatsapp webhook: %s", verification.reason)
        return _error_response(401, "Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        return _error_response(400, "Invalid JSON payload")
    if not isinstance(payload, dict):
        return _error_response(400, "Invalid JSON payload")

    return await run_in_threadpool(
        webhook_processor.process_webhook_events,
        payload,
        webhook_origin=str(request.base_url),
    )
