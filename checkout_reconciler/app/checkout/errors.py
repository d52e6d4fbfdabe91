"""Errors raised by checkout collaborators and the classifier choosing recovery paths.

Backends signal "nothing to do, already done" in several inconsistent ways, so
classification works on a normalized :class:`ErrorShape` rather than on the
concrete exception type.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from .models import ErrorKind

DEFAULT_ERROR_MESSAGE = "Unable to complete the subscription checkout."

_DUPLICATE_MARKERS = ("already processed", "exists", "duplicate")
_REQUEST_ERROR_CODE = "request"
_VALIDATION_STATUSES = frozenset({400, 422})
_TRANSIENT_STATUSES = frozenset({408, 429})


@dataclass
class CheckoutError(Exception):
    """Base error for the checkout reconciliation package."""

    code: str
    message: str

    def __post_init__(self) -> None:
        super().__init__(self.message)


@dataclass
class BackendError(CheckoutError):
    """Non-success HTTP answer from the backend API."""

    status_code: Optional[int] = None
    body_error: Optional[str] = None
    payload: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, status_code: int, payload: object) -> "BackendError":
        body: Dict[str, Any] = dict(payload) if isinstance(payload, Mapping) else {}
        body_error = body.get("error")
        if body_error is not None and not isinstance(body_error, str):
            body_error = str(body_error)
        detail = body.get("detail") or body.get("message")
        message = str(detail) if detail else f"Backend responded with HTTP {status_code}"
        return cls(
            code=body_error or "http_error",
            message=message,
            status_code=status_code,
            body_error=body_error,
            payload=body,
        )


@dataclass(frozen=True)
class ErrorShape:
    """Normalized view of any error raised during completion."""

    status_code: Optional[int] = None
    body_error: Optional[str] = None
    message: Optional[str] = None
    transport: bool = False


def normalize_error(error: BaseException | ErrorShape) -> ErrorShape:
    if isinstance(error, ErrorShape):
        return error
    if isinstance(error, BackendError):
        return ErrorShape(
            status_code=error.status_code,
            body_error=error.body_error,
            message=error.message or None,
        )
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        body_error: Optional[str] = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, Mapping) and data.get("error") is not None:
            body_error = str(data["error"])
        return ErrorShape(status_code=response.status_code, body_error=body_error, message=str(error) or None)
    if isinstance(error, httpx.TransportError):
        return ErrorShape(message=str(error) or type(error).__name__, transport=True)
    return ErrorShape(message=str(error) or None)


def is_duplicate_session_error(error: BaseException | ErrorShape) -> bool:
    shape = normalize_error(error)
    if not shape.body_error:
        return False
    text = shape.body_error.lower()
    if text == _REQUEST_ERROR_CODE:
        return True
    return any(marker in text for marker in _DUPLICATE_MARKERS)


def is_malformed_request_error(error: BaseException | ErrorShape) -> bool:
    """A validation defect on this session, not a business-level duplicate."""

    shape = normalize_error(error)
    return (
        shape.body_error is not None
        and shape.body_error.lower() == _REQUEST_ERROR_CODE
        and shape.status_code in _VALIDATION_STATUSES
    )


def is_transient_error(error: BaseException | ErrorShape) -> bool:
    shape = normalize_error(error)
    if shape.transport:
        return True
    if shape.status_code is None:
        return False
    return shape.status_code >= 500 or shape.status_code in _TRANSIENT_STATUSES


def classify_error(error: BaseException | ErrorShape) -> ErrorKind:
    shape = normalize_error(error)
    if is_malformed_request_error(shape):
        return ErrorKind.MALFORMED_REQUEST
    if is_duplicate_session_error(shape):
        return ErrorKind.DUPLICATE_SESSION
    if is_transient_error(shape):
        return ErrorKind.TRANSIENT_TRANSPORT
    return ErrorKind.UNKNOWN


def extract_message(error: BaseException | ErrorShape, *, fallback: str = DEFAULT_ERROR_MESSAGE) -> str:
    shape = normalize_error(error)
    if shape.body_error:
        return shape.body_error
    if shape.message:
        return shape.message
    return fallback


__all__ = [
    "BackendError",
    "CheckoutError",
    "DEFAULT_ERROR_MESSAGE",
    "ErrorShape",
    "classify_error",
    "extract_message",
    "is_duplicate_session_error",
    "is_malformed_request_error",
    "is_transient_error",
    "normalize_error",
]
