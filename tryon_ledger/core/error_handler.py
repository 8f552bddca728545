"""
Centralized error handling and gem refund.

Classifies any failure into the error taxonomy, maps it to a status code
and a user-facing message, and refunds gems when the failure is the
server's fault. This is the single choke point for refund-on-failure.

User messages are fixed templates. Internal details (stack traces, file
paths, upstream response bodies) are logged, never returned.
"""

import asyncio
import logging
import re
import sqlite3
from dataclasses import dataclass, replace
from typing import Dict, Optional

from .errors import ErrorKind, TryOnError
from .ledger import GemLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorSpec:
    """Static taxonomy entry."""
    status_code: int
    user_message: str
    should_refund: bool


ERROR_CONFIG: Dict[ErrorKind, ErrorSpec] = {
    ErrorKind.INSUFFICIENT_FUNDS: ErrorSpec(
        402, "You don't have enough gems for this try-on. Please buy more gems.", False),
    ErrorKind.INVALID_IMAGE: ErrorSpec(
        400, "Invalid image. Please upload a JPG or PNG under 10MB.", False),
    ErrorKind.INVALID_REQUEST: ErrorSpec(
        400, "Invalid request. Please check your input and try again.", False),
    ErrorKind.UNAUTHORIZED: ErrorSpec(
        401, "Your session has expired. Please sign in again.", False),
    ErrorKind.RATE_LIMIT_EXCEEDED: ErrorSpec(
        429, "Too many requests. Please wait a moment and try again.", False),
    ErrorKind.TOO_MANY_ITEMS: ErrorSpec(
        400, "You can try on at most 5 clothing items at once.", False),
    ErrorKind.STORAGE_ERROR: ErrorSpec(
        500, "Image upload failed. Your gems have been refunded. Please try again.", True),
    ErrorKind.DATABASE_ERROR: ErrorSpec(
        500, "System error. Your gems have been refunded. Please try again later.", True),
    ErrorKind.TIMEOUT: ErrorSpec(
        504, "AI processing timed out. Your gems have been refunded. Please try again.", True),
    ErrorKind.PROCESSING_FAILED: ErrorSpec(
        502, "AI processing failed. Your gems have been refunded. Please try a different image.", True),
    ErrorKind.INTERNAL_ERROR: ErrorSpec(
        500, "System error. Your gems have been refunded. Please try again later.", True),
}


@dataclass(frozen=True)
class ErrorContext:
    """What is known about the job when the failure happened."""
    identity: Optional[str] = None
    job_id: Optional[str] = None
    gems_charged: int = 0
    operation: Optional[str] = None


@dataclass(frozen=True)
class ErrorResponse:
    """Classified failure."""
    kind: ErrorKind
    status_code: int
    user_message: str
    should_refund: bool
    message: str  # internal, sanitized; for logs only
    refunded: bool = False
    retry_after: Optional[int] = None

    def to_body(self) -> Dict[str, object]:
        """Public response body: a stable kind and a templated message."""
        body: Dict[str, object] = {
            "error": self.kind.value,
            "message": self.user_message,
        }
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


def sanitize_error_message(message: str) -> str:
    """Keep the first line of a message and mask filesystem paths."""
    first_line = message.split("\n")[0]
    return re.sub(r"(?<![^\s(])/[^\s]+", "[path]", first_line)


def classify_kind(error: BaseException) -> ErrorKind:
    """Map an exception to its taxonomy entry by type."""
    if isinstance(error, TryOnError):
        return error.kind
    if isinstance(error, sqlite3.Error):
        return ErrorKind.DATABASE_ERROR
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    return ErrorKind.INTERNAL_ERROR


class ErrorClassifier:
    """Classifies failures and performs refunds through the GemLedger."""

    def __init__(self, ledger: Optional[GemLedger] = None):
        self.ledger = ledger

    def classify(self, error: BaseException) -> ErrorResponse:
        """Classify without side effects. Identical input, identical output."""
        kind = classify_kind(error)
        spec = ERROR_CONFIG[kind]
        return ErrorResponse(
            kind=kind,
            status_code=spec.status_code,
            user_message=spec.user_message,
            should_refund=spec.should_refund,
            message=sanitize_error_message(str(error) or type(error).__name__),
            retry_after=getattr(error, "retry_after", None),
        )

    def handle(self, error: BaseException, context: ErrorContext) -> ErrorResponse:
        """Classify, log and refund when appropriate.

        A refund that itself fails is logged for operator follow-up and does
        not replace the original error.

        Args:
            error: The failure
            context: Identity, job id and gems charged so far

        Returns:
            ErrorResponse; refunded is True only if gems were released
        """
        response = self.classify(error)

        log = logger.error if response.should_refund else logger.info
        log(
            "Try-on error %s during %s for job %s: %s",
            response.kind.value, context.operation, context.job_id, response.message,
        )

        if not (response.should_refund and context.identity and context.job_id and context.gems_charged > 0):
            return response

        if self.ledger is None:
            logger.error("No ledger configured, cannot refund job %s", context.job_id)
            return response

        try:
            self.ledger.release(context.identity, context.gems_charged, context.job_id)
        except Exception:
            logger.exception(
                "Failed to refund %d gems to %s for job %s",
                context.gems_charged, context.identity, context.job_id,
            )
            return response

        return replace(response, refunded=True)
