"""Tests for the realtime token provider."""

import pytest

from falrt.auth import TokenProvider, parse_token_response
from falrt.errors import ServerError, UnauthorizedError


class TestParseTokenResponse:
    """Test token body parsing."""

    def test_quoted_string(self):
        assert parse_token_response('"eyJhbGciOi.token"\n') == "eyJhbGciOi.token"

    def test_bare_string(self):
        assert parse_token_response("eyJhbGciOi.token") == "eyJhbGciOi.token"

    def test_detail_object(self):
        assert parse_token_response('{"detail": "abc"}') == "abc"

    @pytest.mark.parametrize("body", ['""', "{}", '{"detail": 3}', "[1, 2]", "42"])
    def test_unusable_body(self, body):
        with pytest.raises(UnauthorizedError):
            parse_token_response(body)


class TestTokenProvider:
    """Test token fetching."""

    @pytest.mark.asyncio
    async def test_fetch_token(self):
        calls = []

        async def request(method, url, data):
            calls.append((method, url, data))
            return '"token-123"'

        provider = TokenProvider(request, rest_host="rest.example.com")
        grant = await provider.fetch_token("fal-ai/fast-lcm-diffusion/realtime-path")

        assert grant.token == "token-123"
        assert grant.expires_in == 120
        assert calls == [(
            "POST",
            "https://rest.example.com/tokens/",
            {"allowed_apps": ["fast-lcm-diffusion"], "token_expiration": 120},
        )]

    @pytest.mark.asyncio
    async def test_http_error_is_unauthorized(self):
        async def request(method, url, data):
            raise ServerError(401, "invalid key")

        provider = TokenProvider(request)

        with pytest.raises(UnauthorizedError, match="invalid key"):
            await provider.fetch_token("fal-ai/app")
