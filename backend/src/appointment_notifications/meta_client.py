from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

from .config import Settings
from .errors import DeliveryError, DeliveryErrorKind


def only_digits(value: str | None) -> str:
    return "".join(ch for ch in (value or "") if ch.isdigit())


def mask_phone(value: str | None) -> str:
    digits = only_digits(value)
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "***"


@dataclass(frozen=True)
class ProviderSendResult:
    provider_message_id: str | None
    delivered_at: datetime
    recipient: str
    response: dict[str, Any] = field(default_factory=dict)


class WhatsAppProviderClient(Protocol):
    def send_template_message(
        self,
        *,
        to: str,
        template_name: str,
        language_code: str,
        body_parameters: Sequence[str],
    ) -> ProviderSendResult: ...

    def send_text_message(self, *, to: str, text: str) -> ProviderSendResult: ...


def extract_api_error_message(payload: object, status_code: int) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return f"WhatsApp API responded with status {status_code}."


class MetaCloudClient:
    """Sends WhatsApp messages through the Meta Cloud "messages" endpoint."""

    def __init__(
        self,
        *,
        access_token: str,
        phone_number_id: str,
        api_version: str = "v22.0",
        base_url: str = "https://graph.facebook.com",
        timeout_seconds: int = 15,
    ) -> None:
        self._access_token = access_token.strip()
        self._phone_number_id = phone_number_id.strip()
        self._api_version = api_version.strip() or "v22.0"
        self._base_url = base_url.strip().rstrip("/") or "https://graph.facebook.com"
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> MetaCloudClient:
        return cls(
            access_token=settings.meta_access_token,
            phone_number_id=settings.meta_phone_number_id,
            api_version=settings.meta_api_version,
            base_url=settings.meta_api_base_url,
            timeout_seconds=settings.meta_timeout_seconds,
        )

    @property
    def messages_url(self) -> str:
        return f"{self._base_url}/{self._api_version}/{self._phone_number_id}/messages"

    def _assert_configured(self) -> None:
        if not self._access_token:
            raise DeliveryError(DeliveryErrorKind.CONFIGURATION, "WHATSAPP_AUTOMATION_META_ACCESS_TOKEN not configured.")
        if not self._phone_number_id:
            raise DeliveryError(DeliveryErrorKind.CONFIGURATION, "WHATSAPP_AUTOMATION_META_PHONE_NUMBER_ID not configured.")

    @staticmethod
    def _recipient(to: str) -> str:
        digits = only_digits(to)
        if not digits:
            raise DeliveryError(DeliveryErrorKind.VALIDATION, "Recipient phone number is empty after sanitizing.")
        return digits

    def send_template_message(
        self,
        *,
        to: str,
        template_name: str,
        language_code: str,
        body_parameters: Sequence[str],
    ) -> ProviderSendResult:
        self._assert_configured()
        if not template_name.strip():
            raise DeliveryError(DeliveryErrorKind.CONFIGURATION, "WhatsApp template name not configured.")
        recipient = self._recipient(to)
        template: dict[str, Any] = {
            "name": template_name.strip(),
            "language": {"code": language_code.strip() or "pt_BR"},
        }
        if body_parameters:
            template["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": value} for value in body_parameters],
                }
            ]
        body = {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "template",
            "template": template,
        }
        return self._send(body, recipient=recipient)

    def send_text_message(self, *, to: str, text: str) -> ProviderSendResult:
        self._assert_configured()
        recipient = self._recipient(to)
        body = {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "text",
            "text": {"body": text, "preview_url": True},
        }
        return self._send(body, recipient=recipient)

    def _send(self, body: dict[str, Any], *, recipient: str) -> ProviderSendResult:
        response = self._post(body)
        messages = response.get("messages")
        message_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            raw_id = messages[0].get("id")
            message_id = raw_id if isinstance(raw_id, str) and raw_id else None
        return ProviderSendResult(
            provider_message_id=message_id,
            delivered_at=datetime.now(timezone.utc),
            recipient=recipient,
            response=response,
        )

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON body to the messages endpoint and decode the JSON answer."""
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            self.messages_url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            payload = _read_error_payload(exc)
            message = extract_api_error_message(payload, exc.code)
            kind = DeliveryErrorKind.CONFIGURATION if exc.code in {401, 403} else DeliveryErrorKind.PROVIDER
            if exc.code == 429 or exc.code >= 500:
                kind = DeliveryErrorKind.TRANSIENT
            raise DeliveryError(kind, message, status_code=exc.code) from exc
        except urllib.error.URLError as exc:
            raise DeliveryError(DeliveryErrorKind.TRANSIENT, f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise DeliveryError(DeliveryErrorKind.TRANSIENT, f"Request timed out: {exc}") from exc

        try:
            parsed = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            parsed = {}
        return parsed if isinstance(parsed, dict) else {}


def _read_error_payload(exc: urllib.error.HTTPError) -> object:
    try:
        raw = exc.read().decode("utf-8")
    except (OSError, AttributeError, ValueError):
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None
