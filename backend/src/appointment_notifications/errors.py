from __future__ import annotations

from enum import Enum

NON_RETRYABLE_KEYWORDS = (
    "não configurado",
    "not configured",
    "unauthorized",
    "token",
    "template",
    "verify token",
)


class DeliveryErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PROVIDER = "provider"
    TRANSIENT = "transient"


class DeliveryError(Exception):
    """Raised when a notification cannot be delivered.

    ``kind`` is decided where the failure happens so the processor can pick
    between retry and terminal failure without guessing from message text.
    """

    def __init__(self, kind: DeliveryErrorKind, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code


def _has_non_retryable_keyword(message: str) -> bool:
    normalized = message.lower()
    return any(keyword in normalized for keyword in NON_RETRYABLE_KEYWORDS)


def is_retryable_delivery_error(exc: BaseException) -> bool:
    if isinstance(exc, DeliveryError):
        if exc.kind in {DeliveryErrorKind.CONFIGURATION, DeliveryErrorKind.VALIDATION, DeliveryErrorKind.NOT_FOUND}:
            return False
        return not _has_non_retryable_keyword(exc.message)
    return not _has_non_retryable_keyword(str(exc))
