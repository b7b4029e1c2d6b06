"""
indieauth.py — IndieAuth client side: authorization URL, code exchange, refresh.

Implements https://indieauth.spec.indieweb.org/ with S256 PKCE.
"""

import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from pydantic import ValidationError

import httpclient
from models import TokenResponse

logger = logging.getLogger("micropub-indieauth")

_FORM_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}


class TokenExchangeError(Exception):
    """Token endpoint rejected the request or returned unusable data."""


def build_authorization_url(
    authorization_endpoint: str,
    *,
    client_id: str,
    redirect_uri: str,
    me: str,
    scope: str,
    state: str,
    code_challenge: str,
) -> str:
    """Authorization request URL. Existing query parameters on the endpoint are kept."""
    parts = urlsplit(authorization_endpoint)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    params.update({
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "me": me,
        "scope": scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    })
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))


async def _post_token_request(
    token_endpoint: str,
    data: dict[str, str],
    client: httpx.AsyncClient | None,
    timeout: float,
) -> dict[str, Any]:
    async with httpclient.session(client, timeout) as http:
        try:
            response = await http.post(token_endpoint, data=data, headers=_FORM_HEADERS)
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token endpoint unreachable: {e}") from e

    if not response.is_success:
        message = httpclient.error_message(response, f"HTTP {response.status_code}")
        logger.warning(
            "token request (%s) rejected by %s: HTTP %d",
            data["grant_type"], urlsplit(token_endpoint).netloc, response.status_code,
        )
        raise TokenExchangeError(message)

    try:
        body = response.json()
    except ValueError as e:
        raise TokenExchangeError("Token response is not valid JSON") from e
    if not isinstance(body, dict):
        raise TokenExchangeError("Token response is not a JSON object")
    return body


def _parse_token_response(body: dict[str, Any], require_me: bool = True) -> TokenResponse:
    if not body.get("access_token"):
        raise TokenExchangeError("Token response missing access_token")
    if require_me and not body.get("me"):
        raise TokenExchangeError("Token response missing me URL")
    try:
        return TokenResponse.model_validate(body)
    except ValidationError as e:
        raise TokenExchangeError(f"Malformed token response: {e.errors()[0]['msg']}") from e


async def exchange_code_for_token(
    token_endpoint: str,
    *,
    code: str,
    client_id: str,
    redirect_uri: str,
    code_verifier: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> TokenResponse:
    """Exchange an authorization code for an access token.

    Raises:
        TokenExchangeError: non-2xx reply (message is the provider's
            error_description, else error, else the HTTP status), or a reply
            without access_token / me.
    """
    body = await _post_token_request(
        token_endpoint,
        {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        },
        client,
        timeout,
    )
    token = _parse_token_response(body)
    logger.info("token exchange ok: me=%s scope=%r", token.me, token.scope)
    return token


async def refresh_access_token(
    token_endpoint: str,
    *,
    refresh_token: str,
    client_id: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> TokenResponse:
    """Trade a refresh token for a new access token. Same error shape as exchange."""
    body = await _post_token_request(
        token_endpoint,
        {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        },
        client,
        timeout,
    )
    token = _parse_token_response(body, require_me=False)
    logger.info("token refresh ok: me=%s", token.me)
    return token
