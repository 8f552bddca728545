"""
Clients for the services the try-on pipeline depends on.

Provides the inference service client, object stores and identity providers.
"""

from .identity import IdentityProvider, StaticIdentityProvider, SupabaseIdentityProvider
from .inference_client import Prediction, PredictionClient, PredictionStatus
from .object_store import LocalObjectStore, ObjectStore, SupabaseObjectStore

__all__ = [
    "IdentityProvider",
    "StaticIdentityProvider",
    "SupabaseIdentityProvider",
    "Prediction",
    "PredictionClient",
    "PredictionStatus",
    "ObjectStore",
    "LocalObjectStore",
    "SupabaseObjectStore",
]
