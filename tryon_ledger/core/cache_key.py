"""
Content-derived cache keys for try-on requests.

Two requests with the same model image, the same set of clothing images
(in any order) and the same quality tier map to the same key.
"""

import hashlib
from typing import Iterable


def _length_prefixed(value: str) -> bytes:
    encoded = value.encode("utf-8")
    return str(len(encoded)).encode("ascii") + b":" + encoded


def derive_cache_key(model_image: str, clothing_images: Iterable[str], tier: str) -> str:
    """Compute a stable SHA-256 fingerprint for a try-on request.

    Clothing references are sorted so array order does not matter. Every
    component is length-prefixed, so no two distinct inputs can concatenate
    to the same byte string.

    Args:
        model_image: Model image reference (URL or base64 payload)
        clothing_images: Clothing image references
        tier: Quality tier value, e.g. "standard" or "hd"

    Returns:
        64-character lowercase hex digest
    """
    clothing = sorted(clothing_images)

    digest = hashlib.sha256()
    digest.update(_length_prefixed(model_image))
    digest.update(_length_prefixed(str(len(clothing))))
    for reference in clothing:
        digest.update(_length_prefixed(reference))
    digest.update(_length_prefixed(tier))
    return digest.hexdigest()
