"""
tests/test_auth_service.py — Spotify PKCE Helper Tests
=======================================================
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from dotenv import dotenv_values

from spikesync.services.auth_service import (
    AuthError,
    PendingAuthStore,
    TokenSet,
    build_authorize_url,
    code_challenge,
    decode_state,
    encode_state,
    exchange_code,
    new_pkce_pair,
    refresh_access_token,
    upsert_env_tokens,
)


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.get_event_loop_policy().new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestPkce:
    def test_pair(self):
        verifier, challenge = new_pkce_pair()
        assert "=" not in verifier
        assert 43 <= len(verifier) <= 128
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        assert challenge == expected.decode().rstrip("=")
        assert code_challenge(verifier) == challenge

    def test_pairs_are_random(self):
        assert new_pkce_pair()[0] != new_pkce_pair()[0]


class TestState:
    def test_decodes_what_it_encodes(self):
        state = encode_state("http://127.0.0.1:1/cb", nonce="n1")
        assert decode_state(state) == {"nonce": "n1", "localCallbackUrl": "http://127.0.0.1:1/cb"}

    @pytest.mark.parametrize("value", ["", "!!!", "bm90IGpzb24", "WzFd"])
    def test_malformed(self, value):
        # "bm90IGpzb24" is "not json", "WzFd" is "[1]"
        assert decode_state(value) is None


class TestAuthorizeUrl:
    def test_query(self):
        url = build_authorize_url("cid", "http://cb", ["a", "b"], "chal", "st")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        assert parsed.netloc == "accounts.spotify.com"
        assert query["client_id"] == ["cid"]
        assert query["response_type"] == ["code"]
        assert query["code_challenge_method"] == ["S256"]
        assert query["code_challenge"] == ["chal"]
        assert query["scope"] == ["a b"]
        assert query["state"] == ["st"]
        assert query["redirect_uri"] == ["http://cb"]


class TestTokenEndpoint:
    def test_exchange_code(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"access_token": "AT", "refresh_token": "RT", "expires_in": 3600}
            )

        tokens = run_async(
            exchange_code("code", "ver", "http://cb", "cid", transport=httpx.MockTransport(handler))
        )
        assert tokens == TokenSet("AT", "RT", 3600, None)
        form = parse_qs(seen[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code_verifier"] == ["ver"]

    def test_error_status(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(400, text="invalid_grant"))
        with pytest.raises(AuthError, match="400"):
            run_async(exchange_code("c", "v", "http://cb", "cid", transport=transport))

    def test_missing_access_token(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={}))
        with pytest.raises(AuthError, match="no access token"):
            run_async(exchange_code("c", "v", "http://cb", "cid", transport=transport))

    def test_refresh_keeps_old_refresh_token(self):
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"access_token": "AT2"}))
        tokens = run_async(refresh_access_token("RT-old", "cid", transport=transport))
        assert tokens.access_token == "AT2"
        assert tokens.refresh_token == "RT-old"


class TestEnvUpsert:
    def test_preserves_other_keys(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("SPOTIFY_CLIENT_ID=cid\nSPOTIFY_ACCESS_TOKEN=old\n", encoding="utf-8")
        upsert_env_tokens(env, TokenSet("new-at", "new-rt"))
        values = dotenv_values(env)
        assert values["SPOTIFY_CLIENT_ID"] == "cid"
        assert values["SPOTIFY_ACCESS_TOKEN"] == "new-at"
        assert values["SPOTIFY_REFRESH_TOKEN"] == "new-rt"

    def test_creates_file(self, tmp_path):
        env = tmp_path / ".env"
        upsert_env_tokens(env, TokenSet("at"))
        assert dotenv_values(env)["SPOTIFY_ACCESS_TOKEN"] == "at"


class TestPendingAuthStore:
    def test_one_time_use(self):
        store = PendingAuthStore()
        store.put("s", "v")
        assert store.consume("s") == "v"
        assert store.consume("s") is None

    def test_unknown_state(self):
        assert PendingAuthStore().consume("nope") is None

    def test_expiry(self):
        store = PendingAuthStore(ttl_seconds=10)
        with patch("spikesync.services.auth_service.time.monotonic", return_value=100.0):
            store.put("s", "v")
        with patch("spikesync.services.auth_service.time.monotonic", return_value=111.0):
            assert store.consume("s") is None
