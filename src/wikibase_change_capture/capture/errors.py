"""Failure classification shared by every network-calling component."""

from __future__ import annotations

import json
from enum import Enum
from typing import Optional

import httpx
from rdflib.plugins.parsers.notation3 import BadSyntax


class ErrorKind(str, Enum):
    """Whether a failure is worth retrying automatically."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


class CaptureError(RuntimeError):
    """Failure raised by the capture pipeline, tagged with its :class:`ErrorKind`."""

    def __init__(self, message: str, *, kind: ErrorKind = ErrorKind.FATAL) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RETRYABLE


class ContractError(CaptureError):
    """The remote API answered with something that breaks its contract."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.FATAL)


class EntityMissingError(CaptureError):
    """The entity was deleted or never existed."""

    def __init__(self, entity_id: str, status: Optional[int] = None) -> None:
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"entity {entity_id} not found{detail}", kind=ErrorKind.FATAL)
        self.entity_id = entity_id
        self.status = status


class RetryBudgetExhausted(CaptureError):
    """The loop consumed more retries than its configured total budget."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"retry budget of {limit} exhausted", kind=ErrorKind.FATAL)
        self.limit = limit


class LoopAbortedError(RuntimeError):
    """Raised when a capture loop is used after it entered the aborted state."""


# API error codes (``{"error": {"code": ...}}``) that clear up on their own.
RETRYABLE_API_ERROR_CODES = frozenset({"maxlag", "ratelimited", "readonly"})

_RETRYABLE_STATUS = frozenset({408, 429})


def classify_api_error(code: str) -> ErrorKind:
    if code in RETRYABLE_API_ERROR_CODES or code.startswith("internal_api_error"):
        return ErrorKind.RETRYABLE
    return ErrorKind.FATAL


def classify_status(status: int) -> ErrorKind:
    if status >= 500 or status in _RETRYABLE_STATUS:
        return ErrorKind.RETRYABLE
    return ErrorKind.FATAL


def classify_error(error: BaseException) -> ErrorKind:
    """Map a low level transport or parse failure onto :class:`ErrorKind`."""
    if isinstance(error, CaptureError):
        return error.kind
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.RETRYABLE
    if isinstance(error, (json.JSONDecodeError, BadSyntax)):
        return ErrorKind.RETRYABLE
    if isinstance(error, OSError):
        return ErrorKind.RETRYABLE
    return ErrorKind.FATAL


__all__ = [
    "CaptureError",
    "ContractError",
    "EntityMissingError",
    "ErrorKind",
    "LoopAbortedError",
    "RETRYABLE_API_ERROR_CODES",
    "RetryBudgetExhausted",
    "classify_api_error",
    "classify_error",
    "classify_status",
]
