"""
Error classification - decide whether a capability failure is worth retrying.

The normalizer applies, in order:

1. HTTP status, when the error carries one (401/403 auth and other 4xx are
   fatal; 408, 429 and 5xx are retryable)
2. the capability's own ``classify`` callable
3. message heuristics for rate limiting, auth failure and timeouts
4. ``FATAL``

Classifier labels are normalized to the two-valued :class:`Classification`;
the legacy ``TRANSIENT`` label maps to ``RETRYABLE`` and anything
unrecognised maps to ``FATAL``.

Tags:
    classification, retry-logic, error-normalization, tiller
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from tiller.core.errors import NEVER_RETRY_KINDS, ErrorKind
from tiller.core.logging import get_logger
from tiller.core.result import Err

logger = get_logger(__name__)


class Classification(str, Enum):
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"


_LABEL_ALIASES = {
    "RETRYABLE": Classification.RETRYABLE,
    "TRANSIENT": Classification.RETRYABLE,
    "FATAL": Classification.FATAL,
}

_MESSAGE_RULES: list[tuple[re.Pattern[str], Classification, str]] = [
    (re.compile(r"rate\s*limit|throttl", re.I), Classification.RETRYABLE, "rate limited"),
    (re.compile(r"unauthorized|auth.*fail|invalid.*token", re.I), Classification.FATAL, "authentication failure"),
    (re.compile(r"timeout|timed out|unavailable|retry\s+later", re.I), Classification.RETRYABLE, "transient unavailability"),
]


@dataclass(frozen=True)
class ErrorClassification:
    classification: Classification
    reason: str

    @property
    def retryable(self) -> bool:
        return self.classification is Classification.RETRYABLE


def normalize_label(label: Any) -> Classification:
    """Map a classifier's return value onto :class:`Classification`."""
    if isinstance(label, Classification):
        return label
    value = getattr(label, "value", label)
    normalized = _LABEL_ALIASES.get(str(value).upper())
    if normalized is None:
        logger.warning("classification.unknown_label", label=str(value))
        return Classification.FATAL
    return normalized


def extract_status(error: BaseException) -> int | None:
    """Best-effort HTTP status extraction from an exception."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _classify_status(status: int) -> ErrorClassification | None:
    if status in (401, 403):
        return ErrorClassification(Classification.FATAL, f"HTTP {status}: authentication failure")
    if status == 429:
        return ErrorClassification(Classification.RETRYABLE, "HTTP 429: rate limited")
    if status >= 500 or status == 408:
        return ErrorClassification(Classification.RETRYABLE, f"HTTP {status}: server error")
    if 400 <= status < 500:
        return ErrorClassification(Classification.FATAL, f"HTTP {status}: client error")
    return None


def classify_error(error: BaseException, classifier: Any = None) -> ErrorClassification:
    """Classify an exception raised inside a capability handler."""
    status = extract_status(error)
    if status is not None:
        by_status = _classify_status(status)
        if by_status is not None:
            return by_status

    if classifier is not None:
        try:
            label = classifier(error)
        except Exception as exc:
            logger.warning(
                "classification.classifier_failed",
                error_type=type(error).__name__,
                classifier_error=type(exc).__name__,
            )
            label = None
        if label is not None:
            return ErrorClassification(normalize_label(label), "capability classifier")

    message = str(error)
    for pattern, classification, reason in _MESSAGE_RULES:
        if pattern.search(message):
            return ErrorClassification(classification, reason)

    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorClassification(Classification.RETRYABLE, "network error")

    return ErrorClassification(Classification.FATAL, "No mapping or fallback matched")


def is_retryable(err: Err) -> bool:
    """Retry decision for an ``Err`` envelope."""
    if err.kind in NEVER_RETRY_KINDS:
        return False
    if err.kind is ErrorKind.RETRYABLE:
        return True
    return err.retryable


__all__ = [
    "Classification",
    "ErrorClassification",
    "normalize_label",
    "extract_status",
    "classify_error",
    "is_retryable",
]
