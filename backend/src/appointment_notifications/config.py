from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

AUTOMATION_MODES = {"disabled", "dry_run", "enabled"}
AUTOMATION_PROVIDERS = {"none", "meta_cloud"}


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int(value: str | None, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    if value is None:
        parsed = default
    else:
        try:
            parsed = int(float(value.strip()))
        except ValueError:
            parsed = default
    parsed = max(minimum, parsed)
    if maximum is not None:
        parsed = min(maximum, parsed)
    return parsed


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _env_text(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


@dataclass(frozen=True)
class Settings:
    app_name: str = "Appointment Notifications"
    api_prefix: str = "/api"
    automation_mode: str = "disabled"
    automation_provider: str = "none"
    queue_enabled: bool = False
    auto_dispatch_on_queue: bool = True
    local_poller_enabled: bool = False
    local_poller_interval_seconds: int = 30
    processor_secret: str = ""
    batch_limit: int = 20
    max_retries: int = 3
    retry_base_delay_seconds: int = 60
    allowed_tenant_ids: tuple[str, ...] = ()
    meta_access_token: str = ""
    meta_phone_number_id: str = ""
    meta_test_recipient: str = ""
    meta_api_version: str = "v22.0"
    meta_api_base_url: str = "https://graph.facebook.com"
    meta_timeout_seconds: int = 15
    meta_created_template_name: str = "aviso_agendamento_interno_sem_comprovante"
    meta_created_template_language: str = "pt_BR"
    meta_reminder_template_name: str = "confirmacao_de_agendamento_24h"
    meta_reminder_template_language: str = "pt_BR"
    studio_location_line: str = ""
    meta_webhook_verify_token: str = ""
    meta_app_secret: str = ""
    public_base_url: str = "https://public.corpoealmahumanizado.com.br"
    business_timezone: str = "America/Sao_Paulo"
    cron_secret: str = ""
    notification_store_backend: str = "inmemory"
    database_url: str = ""
    runtime_secret_guard_mode: str = "warn"

    @property
    def dispatch_enabled(self) -> bool:
        return self.automation_mode != "disabled"

    @property
    def effective_poller_interval_seconds(self) -> int:
        return max(5, self.local_poller_interval_seconds)

    def is_tenant_allowed(self, tenant_id: str) -> bool:
        if not self.allowed_tenant_ids:
            return True
        return tenant_id in self.allowed_tenant_ids


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("NOTIFICATIONS_APP_NAME", "Appointment Notifications"),
        api_prefix=os.getenv("NOTIFICATIONS_API_PREFIX", "/api"),
        automation_mode=_normalize_mode(
            os.getenv("WHATSAPP_AUTOMATION_MODE"),
            default="disabled",
            allowed=AUTOMATION_MODES,
        ),
        automation_provider=_normalize_mode(
            os.getenv("WHATSAPP_AUTOMATION_PROVIDER"),
            default="none",
            allowed=AUTOMATION_PROVIDERS,
        ),
        queue_enabled=_as_bool(os.getenv("WHATSAPP_AUTOMATION_QUEUE_ENABLED"), False),
        auto_dispatch_on_queue=_as_bool(os.getenv("WHATSAPP_AUTOMATION_AUTO_DISPATCH_ON_QUEUE"), True),
        local_poller_enabled=_as_bool(os.getenv("WHATSAPP_AUTOMATION_LOCAL_POLLER_ENABLED"), False),
        local_poller_interval_seconds=_as_int(
            os.getenv("WHATSAPP_AUTOMATION_LOCAL_POLLER_INTERVAL_SECONDS"), 30, maximum=3600
        ),
        processor_secret=_env_text("WHATSAPP_AUTOMATION_PROCESSOR_SECRET"),
        batch_limit=_as_int(os.getenv("WHATSAPP_AUTOMATION_BATCH_LIMIT"), 20, minimum=1, maximum=100),
        max_retries=_as_int(os.getenv("WHATSAPP_AUTOMATION_MAX_RETRIES"), 3, maximum=20),
        retry_base_delay_seconds=_as_int(
            os.getenv("WHATSAPP_AUTOMATION_RETRY_BASE_DELAY_SECONDS"), 60, maximum=86400
        ),
        allowed_tenant_ids=_as_csv_tuple(os.getenv("WHATSAPP_AUTOMATION_ALLOWED_TENANT_IDS")),
        meta_access_token=_env_text("WHATSAPP_AUTOMATION_META_ACCESS_TOKEN"),
        meta_phone_number_id=_env_text("WHATSAPP_AUTOMATION_META_PHONE_NUMBER_ID"),
        meta_test_recipient=_env_text("WHATSAPP_AUTOMATION_META_TEST_RECIPIENT"),
        meta_api_version=_env_text("WHATSAPP_AUTOMATION_META_API_VERSION") or "v22.0",
        meta_api_base_url=_env_text("WHATSAPP_AUTOMATION_META_API_BASE_URL") or "https://graph.facebook.com",
        meta_timeout_seconds=_as_int(
            os.getenv("WHATSAPP_AUTOMATION_META_TIMEOUT_SECONDS"), 15, minimum=1, maximum=60
        ),
        meta_created_template_name=_env_text(
            "WHATSAPP_AUTOMATION_META_CREATED_TEMPLATE_NAME", "aviso_agendamento_interno_sem_comprovante"
        ),
        meta_created_template_language=_env_text("WHATSAPP_AUTOMATION_META_CREATED_TEMPLATE_LANGUAGE") or "pt_BR",
        meta_reminder_template_name=_env_text(
            "WHATSAPP_AUTOMATION_META_REMINDER_TEMPLATE_NAME", "confirmacao_de_agendamento_24h"
        ),
        meta_reminder_template_language=_env_text("WHATSAPP_AUTOMATION_META_REMINDER_TEMPLATE_LANGUAGE") or "pt_BR",
        studio_location_line=_env_text("WHATSAPP_AUTOMATION_STUDIO_LOCATION_LINE"),
        meta_webhook_verify_token=_env_text("WHATSAPP_AUTOMATION_META_WEBHOOK_VERIFY_TOKEN"),
        meta_app_secret=_env_text("WHATSAPP_AUTOMATION_META_APP_SECRET"),
        public_base_url=_env_text("WHATSAPP_AUTOMATION_PUBLIC_BASE_URL")
        or "https://public.corpoealmahumanizado.com.br",
        business_timezone=_env_text("WHATSAPP_AUTOMATION_BUSINESS_TIMEZONE") or "America/Sao_Paulo",
        cron_secret=_env_text("CRON_SECRET"),
        notification_store_backend=os.getenv("NOTIFICATION_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_summary(settings: Settings) -> dict[str, Any]:
    test_recipient_digits = "".join(ch for ch in settings.meta_test_recipient if ch.isdigit())
    return {
        "mode": settings.automation_mode,
        "provider": settings.automation_provider,
        "queueEnabled": settings.queue_enabled,
        "autoDispatchOnQueue": settings.auto_dispatch_on_queue,
        "batchLimit": settings.batch_limit,
        "maxRetries": settings.max_retries,
        "retryBaseDelaySeconds": settings.retry_base_delay_seconds,
        "localPollerEnabled": settings.local_poller_enabled,
        "localPollerIntervalSeconds": settings.local_poller_interval_seconds,
        "allowedTenantIdsCount": len(settings.allowed_tenant_ids),
        "meta": {
            "apiVersion": settings.meta_api_version,
            "phoneNumberIdConfigured": bool(settings.meta_phone_number_id),
            "accessTokenConfigured": bool(settings.meta_access_token),
            "testRecipientConfigured": bool(test_recipient_digits),
            "createdTemplateName": settings.meta_created_template_name,
            "createdTemplateLanguage": settings.meta_created_template_language,
            "reminderTemplateName": settings.meta_reminder_template_name,
            "reminderTemplateLanguage": settings.meta_reminder_template_language,
            "studioLocationLineConfigured": bool(settings.studio_location_line),
            "webhookVerifyTokenConfigured": bool(settings.meta_webhook_verify_token),
            "appSecretConfigured": bool(settings.meta_app_secret),
        },
    }


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.automation_mode == "enabled":
        if settings.automation_provider != "meta_cloud":
            issues.append("WHATSAPP_AUTOMATION_PROVIDER=meta_cloud is required when WHATSAPP_AUTOMATION_MODE=enabled")
        if not settings.meta_access_token:
            issues.append("WHATSAPP_AUTOMATION_META_ACCESS_TOKEN is required when WHATSAPP_AUTOMATION_MODE=enabled")
        if not settings.meta_phone_number_id:
            issues.append("WHATSAPP_AUTOMATION_META_PHONE_NUMBER_ID is required when WHATSAPP_AUTOMATION_MODE=enabled")
    if settings.automation_provider == "meta_cloud":
        if not settings.meta_webhook_verify_token:
            issues.append(
                "WHATSAPP_AUTOMATION_META_WEBHOOK_VERIFY_TOKEN is empty; webhook subscription handshakes will be rejected"
            )
        if not settings.meta_app_secret:
            issues.append(
                "WHATSAPP_AUTOMATION_META_APP_SECRET is empty; webhook signatures will not be verified"
            )
    if settings.notification_store_backend.strip().lower() == "postgres" and not settings.database_url:
        issues.append("DATABASE_URL is required when NOTIFICATION_STORE_BACKEND=postgres")
    return tuple(issues)
