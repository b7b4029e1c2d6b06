"""Tests for indieauth.py."""
import sys
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from indieauth import (
    TokenExchangeError,
    build_authorization_url,
    exchange_code_for_token,
    refresh_access_token,
)

TOKEN_ENDPOINT = "https://alice.example/token"


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


# ---------------------------------------------------------------------------
# build_authorization_url
# ---------------------------------------------------------------------------

class TestBuildAuthorizationUrl:
    def _build(self, endpoint="https://alice.example/auth"):
        return build_authorization_url(
            endpoint,
            client_id="https://mcp.example/",
            redirect_uri="https://mcp.example/indieauth-callback",
            me="https://alice.example/",
            scope="create update",
            state="state123",
            code_challenge="challenge456",
        )

    def test_parameters(self):
        url = self._build()
        parts = urlsplit(url)
        q = {k: v[0] for k, v in parse_qs(parts.query).items()}
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://alice.example/auth"
        assert q == {
            "response_type": "code",
            "client_id": "https://mcp.example/",
            "redirect_uri": "https://mcp.example/indieauth-callback",
            "me": "https://alice.example/",
            "scope": "create update",
            "state": "state123",
            "code_challenge": "challenge456",
            "code_challenge_method": "S256",
        }

    def test_keeps_existing_query(self):
        q = parse_qs(urlsplit(self._build("https://alice.example/auth?tenant=7")).query)
        assert q["tenant"] == ["7"]
        assert q["state"] == ["state123"]

    def test_never_contains_verifier(self):
        assert "code_verifier" not in self._build()


# ---------------------------------------------------------------------------
# exchange_code_for_token
# ---------------------------------------------------------------------------

class TestExchangeCodeForToken:
    async def _exchange(self, web):
        async with web.client() as client:
            return await exchange_code_for_token(
                TOKEN_ENDPOINT,
                code="the-code",
                client_id="https://mcp.example/",
                redirect_uri="https://mcp.example/indieauth-callback",
                code_verifier="the-verifier",
                client=client,
            )

    @pytest.mark.asyncio
    async def test_success(self, web):
        web.add(TOKEN_ENDPOINT, body={
            "access_token": "xyz", "token_type": "Bearer",
            "scope": "create update", "me": "https://alice.example/",
        })
        token = await self._exchange(web)
        assert token.access_token == "xyz"
        assert token.me == "https://alice.example/"
        assert token.scope == "create update"
        assert token.refresh_token is None

    @pytest.mark.asyncio
    async def test_null_fields_take_defaults(self, web):
        web.add(TOKEN_ENDPOINT, body={
            "access_token": "xyz", "me": "https://alice.example/",
            "scope": None, "token_type": None,
        })
        token = await self._exchange(web)
        assert token.scope == ""
        assert token.token_type == "Bearer"

    @pytest.mark.asyncio
    async def test_request_shape(self, web):
        web.add(TOKEN_ENDPOINT, body={"access_token": "xyz", "me": "https://alice.example/"})
        await self._exchange(web)
        (request,) = web.sent_to(TOKEN_ENDPOINT)
        assert request.method == "POST"
        assert request.headers["content-type"].startswith("application/x-www-form-urlencoded")
        assert _form(request) == {
            "grant_type": "authorization_code",
            "code": "the-code",
            "client_id": "https://mcp.example/",
            "redirect_uri": "https://mcp.example/indieauth-callback",
            "code_verifier": "the-verifier",
        }

    @pytest.mark.asyncio
    async def test_optional_fields(self, web):
        web.add(TOKEN_ENDPOINT, body={
            "access_token": "xyz", "me": "https://alice.example/",
            "expires_in": 3600, "refresh_token": "r1", "profile": {"name": "Alice"},
        })
        token = await self._exchange(web)
        assert token.expires_in == 3600
        assert token.refresh_token == "r1"

    @pytest.mark.asyncio
    async def test_missing_access_token(self, web):
        web.add(TOKEN_ENDPOINT, body={"me": "https://alice.example/"})
        with pytest.raises(TokenExchangeError, match="access_token"):
            await self._exchange(web)

    @pytest.mark.asyncio
    async def test_missing_me(self, web):
        web.add(TOKEN_ENDPOINT, body={"access_token": "xyz"})
        with pytest.raises(TokenExchangeError, match="me"):
            await self._exchange(web)

    @pytest.mark.asyncio
    async def test_error_description(self, web):
        web.add(TOKEN_ENDPOINT, status=400, body={
            "error": "invalid_grant", "error_description": "The code has expired",
        })
        with pytest.raises(TokenExchangeError) as exc:
            await self._exchange(web)
        assert str(exc.value) == "The code has expired"

    @pytest.mark.asyncio
    async def test_error_code_only(self, web):
        web.add(TOKEN_ENDPOINT, status=400, body={"error": "invalid_grant"})
        with pytest.raises(TokenExchangeError, match="^invalid_grant$"):
            await self._exchange(web)

    @pytest.mark.asyncio
    async def test_http_status_fallback(self, web):
        web.add(TOKEN_ENDPOINT, status=502, body={})
        with pytest.raises(TokenExchangeError, match="HTTP 502"):
            await self._exchange(web)

    @pytest.mark.asyncio
    async def test_not_json(self, web):
        web.add(TOKEN_ENDPOINT, body="access_token=xyz&me=https://alice.example/")
        with pytest.raises(TokenExchangeError, match="JSON"):
            await self._exchange(web)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(TokenExchangeError, match="unreachable"):
                await exchange_code_for_token(
                    TOKEN_ENDPOINT, code="c", client_id="i", redirect_uri="r",
                    code_verifier="v", client=client,
                )


# ---------------------------------------------------------------------------
# refresh_access_token
# ---------------------------------------------------------------------------

class TestRefreshAccessToken:
    @pytest.mark.asyncio
    async def test_success_without_me(self, web):
        web.add(TOKEN_ENDPOINT, body={"access_token": "new", "refresh_token": "r2", "expires_in": 60})
        async with web.client() as client:
            token = await refresh_access_token(
                TOKEN_ENDPOINT, refresh_token="r1", client_id="https://mcp.example/", client=client,
            )
        assert token.access_token == "new"
        assert token.refresh_token == "r2"
        assert _form(web.requests[0]) == {
            "grant_type": "refresh_token",
            "refresh_token": "r1",
            "client_id": "https://mcp.example/",
        }

    @pytest.mark.asyncio
    async def test_rejected(self, web):
        web.add(TOKEN_ENDPOINT, status=400, body={"error": "invalid_grant", "error_description": "Revoked"})
        async with web.client() as client:
            with pytest.raises(TokenExchangeError, match="Revoked"):
                await refresh_access_token(TOKEN_ENDPOINT, refresh_token="r1", client_id="c", client=client)
