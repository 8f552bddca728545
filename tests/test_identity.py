"""
Unit tests for identity providers.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from tryon_ledger.core.errors import Unauthorized
from tryon_ledger.sdk.identity import (
    StaticIdentityProvider,
    SupabaseIdentityProvider,
    strip_bearer,
)


class TestStripBearer:
    """Test bearer scheme handling."""

    @pytest.mark.parametrize("value,expected", [
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("  Bearer   abc  ", "abc"),
        ("abc", "abc"),
    ])
    def test_strip(self, value, expected):
        assert strip_bearer(value) == expected

    @pytest.mark.parametrize("value", [None, "", "   ", "Bearer ", "Bearer    "])
    def test_empty_rejected(self, value):
        with pytest.raises(Unauthorized):
            strip_bearer(value)


class TestStaticIdentityProvider:
    """Test the fixed token mapping."""

    def setup_method(self):
        self.provider = StaticIdentityProvider({"tok-alice": "alice"})

    def test_known_token(self):
        assert asyncio.run(self.provider.resolve("Bearer tok-alice")) == "alice"

    def test_unknown_token(self):
        with pytest.raises(Unauthorized):
            asyncio.run(self.provider.resolve("Bearer tok-mallory"))

    def test_missing_token(self):
        with pytest.raises(Unauthorized):
            asyncio.run(self.provider.resolve(None))


class TestSupabaseIdentityProvider:
    """Test hosted session validation against a mocked client."""

    def test_valid_session(self):
        client = MagicMock()
        client.auth.get_user.return_value = SimpleNamespace(user=SimpleNamespace(id="8d1c-uuid"))

        identity = asyncio.run(SupabaseIdentityProvider(client).resolve("Bearer jwt-token"))

        assert identity == "8d1c-uuid"
        client.auth.get_user.assert_called_once_with("jwt-token")

    def test_rejected_session(self):
        client = MagicMock()
        client.auth.get_user.side_effect = RuntimeError("invalid JWT")

        with pytest.raises(Unauthorized):
            asyncio.run(SupabaseIdentityProvider(client).resolve("Bearer expired"))

    def test_missing_user(self):
        client = MagicMock()
        client.auth.get_user.return_value = SimpleNamespace(user=None)

        with pytest.raises(Unauthorized):
            asyncio.run(SupabaseIdentityProvider(client).resolve("Bearer jwt-token"))
