from __future__ import annotations

import os

from appointment_notifications.config import Settings, get_settings, runtime_config_summary, runtime_secret_issues


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


_AUTOMATION_KEYS = (
    "WHATSAPP_AUTOMATION_MODE",
    "WHATSAPP_AUTOMATION_PROVIDER",
    "WHATSAPP_AUTOMATION_QUEUE_ENABLED",
    "WHATSAPP_AUTOMATION_AUTO_DISPATCH_ON_QUEUE",
    "WHATSAPP_AUTOMATION_BATCH_LIMIT",
    "WHATSAPP_AUTOMATION_MAX_RETRIES",
    "WHATSAPP_AUTOMATION_RETRY_BASE_DELAY_SECONDS",
    "WHATSAPP_AUTOMATION_ALLOWED_TENANT_IDS",
    "WHATSAPP_AUTOMATION_LOCAL_POLLER_INTERVAL_SECONDS",
    "WHATSAPP_AUTOMATION_META_ACCESS_TOKEN",
    "WHATSAPP_AUTOMATION_META_PHONE_NUMBER_ID",
    "NOTIFICATION_STORE_BACKEND",
    "DATABASE_URL",
)


def test_get_settings_defaults_keep_automation_disabled() -> None:
    previous = _set_env({key: None for key in _AUTOMATION_KEYS})
    try:
        settings = get_settings()
        assert settings.automation_mode == "disabled"
        assert settings.automation_provider == "none"
        assert settings.queue_enabled is False
        assert settings.auto_dispatch_on_queue is True
        assert settings.batch_limit == 20
        assert settings.max_retries == 3
        assert settings.retry_base_delay_seconds == 60
        assert settings.allowed_tenant_ids == ()
        assert settings.dispatch_enabled is False
        assert settings.notification_store_backend == "inmemory"
    finally:
        _restore_env(previous)


def test_get_settings_normalizes_and_clamps_values() -> None:
    previous = _set_env(
        {
            "WHATSAPP_AUTOMATION_MODE": " DRY_RUN ",
            "WHATSAPP_AUTOMATION_PROVIDER": "twilio",
            "WHATSAPP_AUTOMATION_QUEUE_ENABLED": "yes",
            "WHATSAPP_AUTOMATION_AUTO_DISPATCH_ON_QUEUE": "maybe",
            "WHATSAPP_AUTOMATION_BATCH_LIMIT": "500",
            "WHATSAPP_AUTOMATION_MAX_RETRIES": "not-a-number",
            "WHATSAPP_AUTOMATION_ALLOWED_TENANT_IDS": " tenant-a, ,tenant-b ",
            "WHATSAPP_AUTOMATION_LOCAL_POLLER_INTERVAL_SECONDS": "1",
        }
    )
    try:
        settings = get_settings()
        assert settings.automation_mode == "dry_run"
        assert settings.automation_provider == "none"
        assert settings.queue_enabled is True
        assert settings.auto_dispatch_on_queue is True
        assert settings.batch_limit == 100
        assert settings.max_retries == 3
        assert settings.allowed_tenant_ids == ("tenant-a", "tenant-b")
        assert settings.effective_poller_interval_seconds == 5
        assert settings.dispatch_enabled is True
    finally:
        _restore_env(previous)


def test_is_tenant_allowed_treats_empty_allow_list_as_everyone() -> None:
    assert Settings().is_tenant_allowed("any-tenant") is True
    restricted = Settings(allowed_tenant_ids=("tenant-a",))
    assert restricted.is_tenant_allowed("tenant-a") is True
    assert restricted.is_tenant_allowed("tenant-b") is False


def test_runtime_config_summary_never_echoes_secrets() -> None:
    settings = Settings(
        automation_mode="enabled",
        automation_provider="meta_cloud",
        meta_access_token="EAAG-super-secret-token",
        meta_phone_number_id="1234567890",
        meta_app_secret="app-secret-value",
        meta_test_recipient="+55 11 99999-0000",
    )
    summary = runtime_config_summary(settings)

    assert summary["mode"] == "enabled"
    assert summary["meta"]["accessTokenConfigured"] is True
    assert summary["meta"]["phoneNumberIdConfigured"] is True
    assert summary["meta"]["testRecipientConfigured"] is True
    assert summary["meta"]["appSecretConfigured"] is True
    rendered = repr(summary)
    assert "EAAG-super-secret-token" not in rendered
    assert "app-secret-value" not in rendered


def test_runtime_secret_issues_flags_live_mode_without_credentials() -> None:
    issues = runtime_secret_issues(Settings(automation_mode="enabled", automation_provider="none"))
    assert any("WHATSAPP_AUTOMATION_PROVIDER=meta_cloud" in issue for issue in issues)
    assert any("META_ACCESS_TOKEN" in issue for issue in issues)
    assert any("META_PHONE_NUMBER_ID" in issue for issue in issues)


def test_runtime_secret_issues_flags_missing_webhook_secrets_and_database_url() -> None:
    issues = runtime_secret_issues(
        Settings(
            automation_mode="dry_run",
            automation_provider="meta_cloud",
            notification_store_backend="postgres",
        )
    )
    assert any("WEBHOOK_VERIFY_TOKEN" in issue for issue in issues)
    assert any("META_APP_SECRET" in issue for issue in issues)
    assert any("DATABASE_URL" in issue for issue in issues)


def test_runtime_secret_issues_empty_for_disabled_defaults() -> None:
    assert runtime_secret_issues(Settings()) == ()
