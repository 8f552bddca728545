"""
Configuration management and loading.

Reads the pipeline settings from a YAML file. Every section is optional and
has defaults, but unknown keys and out-of-range values are rejected.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Set

import yaml

from ..core.pricing import GemPricing
from ..core.retry import RetryPolicy, inference_policy
from ..sdk.inference_client import DEFAULT_BASE_URL, DEFAULT_MODEL
from ..sdk.object_store import DEFAULT_BUCKET
from ..storage.db import DEFAULT_DB_PATH


class StorageBackend(Enum):
    """Where input and result images are stored."""
    LOCAL = "local"
    SUPABASE = "supabase"


class AuthProvider(Enum):
    """How bearer tokens are resolved to identities."""
    STATIC = "static"
    SUPABASE = "supabase"


@dataclass(frozen=True)
class InferenceConfig:
    """Prediction service settings."""
    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    poll_interval: float = 3.0
    poll_timeout: float = 180.0
    wait_seconds: int = 60
    request_timeout: float = 90.0

    def __post_init__(self):
        """Validate polling and timeout values."""
        if not self.model:
            raise ValueError("inference.model cannot be empty")
        if self.poll_interval <= 0:
            raise ValueError("inference.poll_interval must be > 0")
        if self.poll_timeout < self.poll_interval:
            raise ValueError("inference.poll_timeout must be >= poll_interval")
        if self.wait_seconds < 0:
            raise ValueError("inference.wait_seconds must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("inference.request_timeout must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Object store settings."""
    backend: StorageBackend = StorageBackend.LOCAL
    bucket: str = DEFAULT_BUCKET
    base_dir: str = "tryon_storage"
    public_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    def __post_init__(self):
        """Hosted storage needs credentials."""
        if self.backend is StorageBackend.SUPABASE and not (self.supabase_url and self.supabase_key):
            raise ValueError("storage.supabase_url and storage.supabase_key are required for the supabase backend")


@dataclass(frozen=True)
class AuthConfig:
    """Identity provider settings."""
    provider: AuthProvider = AuthProvider.STATIC
    tokens: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-identity request quota."""
    limit: int = 5
    window_seconds: float = 60.0

    def __post_init__(self):
        """Validate quota values are positive."""
        if self.limit <= 0:
            raise ValueError("rate_limit.limit must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("rate_limit.window_seconds must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings for inference calls."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        """Validate by building the policy once."""
        self.policy()

    def policy(self) -> RetryPolicy:
        return inference_policy(self.max_attempts, self.base_delay, self.max_delay)


@dataclass(frozen=True)
class TryOnConfig:
    """Complete pipeline configuration."""
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    pricing: GemPricing = field(default_factory=GemPricing)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    database_path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        """Supabase auth shares the storage client credentials."""
        if self.auth.provider is AuthProvider.SUPABASE and not (
            self.storage.supabase_url and self.storage.supabase_key
        ):
            raise ValueError("auth provider 'supabase' requires storage.supabase_url and storage.supabase_key")


_SECTION_KEYS: Dict[str, Set[str]] = {
    'inference': {'base_url', 'api_key', 'model', 'poll_interval', 'poll_timeout', 'wait_seconds', 'request_timeout'},
    'storage': {'backend', 'bucket', 'base_dir', 'public_url', 'supabase_url', 'supabase_key'},
    'auth': {'provider', 'tokens'},
    'pricing': {'standard', 'hd'},
    'rate_limit': {'limit', 'window_seconds'},
    'retry': {'max_attempts', 'base_delay', 'max_delay'},
    'database': {'path'},
}


def load_config(path: str) -> TryOnConfig:
    """Load and validate pipeline configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to wrong prices or runaway polling.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated TryOnConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    inference = sections['inference']
    storage = sections['storage']
    auth = sections['auth']
    pricing = sections['pricing']
    rate_limit = sections['rate_limit']
    retry = sections['retry']

    tokens = auth.get('tokens', {})
    if not isinstance(tokens, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in tokens.items()
    ):
        raise ValueError("'auth.tokens' must map token strings to identity strings")

    return TryOnConfig(
        inference=InferenceConfig(
            base_url=str(inference.get('base_url', DEFAULT_BASE_URL)),
            api_key=inference.get('api_key'),
            model=str(inference.get('model', DEFAULT_MODEL)),
            poll_interval=_number(inference, 'poll_interval', 3.0, 'inference'),
            poll_timeout=_number(inference, 'poll_timeout', 180.0, 'inference'),
            wait_seconds=_integer(inference, 'wait_seconds', 60, 'inference'),
            request_timeout=_number(inference, 'request_timeout', 90.0, 'inference'),
        ),
        storage=StorageConfig(
            backend=_enum(StorageBackend, storage, 'backend', StorageBackend.LOCAL, 'storage'),
            bucket=str(storage.get('bucket', DEFAULT_BUCKET)),
            base_dir=str(storage.get('base_dir', 'tryon_storage')),
            public_url=storage.get('public_url'),
            supabase_url=storage.get('supabase_url'),
            supabase_key=storage.get('supabase_key'),
        ),
        auth=AuthConfig(
            provider=_enum(AuthProvider, auth, 'provider', AuthProvider.STATIC, 'auth'),
            tokens=dict(tokens),
        ),
        pricing=GemPricing(
            standard=_integer(pricing, 'standard', 1, 'pricing'),
            hd=_integer(pricing, 'hd', 2, 'pricing'),
        ),
        rate_limit=RateLimitConfig(
            limit=_integer(rate_limit, 'limit', 5, 'rate_limit'),
            window_seconds=_number(rate_limit, 'window_seconds', 60.0, 'rate_limit'),
        ),
        retry=RetryConfig(
            max_attempts=_integer(retry, 'max_attempts', 3, 'retry'),
            base_delay=_number(retry, 'base_delay', 2.0, 'retry'),
            max_delay=_number(retry, 'max_delay', 30.0, 'retry'),
        ),
        database_path=str(sections['database'].get('path', DEFAULT_DB_PATH)),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Fetch an optional section and reject unknown keys in it."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _enum(enum_cls, data: Dict[str, Any], key: str, default, path: str):
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{key}' in {path} must be one of: {valid}")
