"""Tests for credential providers."""

import time

import pytest

from pilot.gateway.auth import Credential, StaticTokenProvider


class TestCredential:
    def test_never_expires(self):
        assert not Credential(token="t").expired()

    def test_expiry_with_leeway(self):
        soon = Credential(token="t", expires_at=time.time() + 30)
        later = Credential(token="t", expires_at=time.time() + 3600)

        assert soon.expired()
        assert not soon.expired(leeway=0)
        assert not later.expired()


class TestStaticTokenProvider:
    async def test_returns_token(self):
        provider = StaticTokenProvider("ghu_abc")

        credential = await provider.get_credential()

        assert credential.token == "ghu_abc"

    def test_rejects_empty_token(self):
        with pytest.raises(ValueError):
            StaticTokenProvider("")
