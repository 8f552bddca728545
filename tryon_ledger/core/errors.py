"""
Error taxonomy for the try-on pipeline.

Every failure the pipeline can surface is a TryOnError carrying a closed
ErrorKind. Errors are constructed with their kind at the raise site so that
the error handler never has to guess from message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Stable, caller-visible error identifiers."""
    # Client faults - never refunded
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_IMAGE = "INVALID_IMAGE"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TOO_MANY_ITEMS = "TOO_MANY_ITEMS"

    # Server faults - refunded
    STORAGE_ERROR = "STORAGE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    TIMEOUT = "TIMEOUT"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TryOnError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        kind: Taxonomy entry used for status code, refund and user message
        detail: Internal description, logged but never shown to users
    """
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    default_detail: str = "Internal error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidRequest(TryOnError):
    kind = ErrorKind.INVALID_REQUEST
    default_detail = "Invalid request"


class TooManyItems(TryOnError):
    kind = ErrorKind.TOO_MANY_ITEMS
    default_detail = "Too many clothing items"


class Unauthorized(TryOnError):
    kind = ErrorKind.UNAUTHORIZED
    default_detail = "Missing or invalid bearer token"


class RateLimitExceeded(TryOnError):
    """Raised when an identity exceeds its request quota."""
    kind = ErrorKind.RATE_LIMIT_EXCEEDED
    default_detail = "Rate limit exceeded"

    def __init__(self, detail: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(detail)
        self.retry_after = retry_after


class InsufficientFunds(TryOnError):
    """Raised when a reservation would drive a balance below zero."""
    kind = ErrorKind.INSUFFICIENT_FUNDS
    default_detail = "Insufficient gems"

    def __init__(
        self,
        detail: Optional[str] = None,
        balance: Optional[int] = None,
        required: Optional[int] = None,
    ):
        super().__init__(detail)
        self.balance = balance
        self.required = required


class InvalidImageError(TryOnError):
    kind = ErrorKind.INVALID_IMAGE
    default_detail = "Invalid image"


class InvalidEncoding(InvalidImageError):
    default_detail = "Image payload is not valid base64"


class PayloadTooLarge(InvalidImageError):
    default_detail = "Image payload exceeds the size limit"


class UnsupportedFormat(InvalidImageError):
    default_detail = "Only JPEG and PNG images are supported"


class StorageError(TryOnError):
    kind = ErrorKind.STORAGE_ERROR
    default_detail = "Object store operation failed"


class UploadFailed(StorageError):
    default_detail = "Input image upload failed"


class DatabaseError(TryOnError):
    kind = ErrorKind.DATABASE_ERROR
    default_detail = "Database operation failed"


class ProcessingFailed(TryOnError):
    kind = ErrorKind.PROCESSING_FAILED
    default_detail = "Image generation failed"


class Timeout(TryOnError):
    kind = ErrorKind.TIMEOUT
    default_detail = "Image generation timed out"


class InferenceServiceError(Exception):
    """Non-2xx response from the inference service.

    This is a raw upstream error. The orchestrator converts it into
    ProcessingFailed before it reaches a caller.
    """

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Inference service error {status_code}: {body[:200]}")
