"""
Image intake validation.

Decodes base64 image payloads and classifies them by signature bytes.
Declared MIME types and file extensions are never trusted.
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .errors import InvalidEncoding, PayloadTooLarge, UnsupportedFormat

MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10 MiB, inclusive

JPEG_SIGNATURE = b"\xff\xd8\xff"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class ImageFormat(Enum):
    """Supported image formats, valued by MIME type."""
    JPEG = "image/jpeg"
    PNG = "image/png"

    @property
    def mime_type(self) -> str:
        return self.value

    @property
    def extension(self) -> str:
        return "jpg" if self is ImageFormat.JPEG else "png"


@dataclass(frozen=True)
class ValidatedImage:
    """Decoded image bytes with their detected format."""
    data: bytes
    image_format: ImageFormat

    @property
    def size(self) -> int:
        return len(self.data)


def is_remote_reference(value: str) -> bool:
    """Return True for http(s) references, which are passed through unchanged."""
    return value.startswith("http://") or value.startswith("https://")


def strip_data_url_prefix(payload: str) -> str:
    """Remove a leading ``data:<mime>;base64,`` marker if present."""
    if payload.startswith("data:") and "," in payload:
        return payload.split(",", 1)[1]
    return payload


def detect_format(data: bytes) -> Optional[ImageFormat]:
    """Identify the image format from its leading signature bytes."""
    if data.startswith(JPEG_SIGNATURE):
        return ImageFormat.JPEG
    if data.startswith(PNG_SIGNATURE):
        return ImageFormat.PNG
    return None


def decode_payload(payload: Union[str, bytes]) -> bytes:
    """Decode a base64 (optionally data-URL prefixed) payload to bytes.

    Raw bytes are returned unchanged.

    Raises:
        InvalidEncoding: If the payload is not valid base64
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)

    encoded = "".join(strip_data_url_prefix(payload).split())
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidEncoding(f"Failed to decode image: {e}")


def validate_image(
    payload: Union[str, bytes],
    max_bytes: int = MAX_IMAGE_BYTES
) -> ValidatedImage:
    """Decode and validate an image payload.

    Checks, in order: encoding, size ceiling (inclusive), signature bytes.

    Args:
        payload: base64 text (with or without a data-URL prefix) or raw bytes
        max_bytes: Largest accepted decoded size

    Returns:
        ValidatedImage with the decoded buffer and detected format

    Raises:
        InvalidEncoding: If base64 decoding fails
        PayloadTooLarge: If the decoded buffer exceeds max_bytes
        UnsupportedFormat: If the signature is neither JPEG nor PNG
    """
    data = decode_payload(payload)

    if len(data) > max_bytes:
        raise PayloadTooLarge(
            f"File size {len(data) / 1024 / 1024:.2f}MB exceeds maximum "
            f"{max_bytes / 1024 / 1024:.0f}MB"
        )

    image_format = detect_format(data)
    if image_format is None:
        raise UnsupportedFormat()

    return ValidatedImage(data=data, image_format=image_format)
