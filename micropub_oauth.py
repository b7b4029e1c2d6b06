"""
micropub_oauth.py — OAuthAuthorizationServerProvider for Micropub MCP.

The upstream half of the bridge. MCP clients register, authorize and obtain
tokens here; the SDK owns the /authorize, /token, /register and /revoke
routes and calls into this provider.

Instead of approving requests itself, authorize() sends the browser to the
/login page, where the user names their website and is bounced through that
site's IndieAuth provider (see delegation.py). Once the downstream token is
in hand, complete_authorization() issues the upstream code, carrying the
downstream credentials as opaque AuthProps that only tool calls ever see.

Security layers:
  - Dynamic registration rate-limited (10 per minute), metadata size-capped.
  - Requests rebuilt from the login form are re-validated against the
    client registry before anything is stored.
  - Codes are single use and expire after 5 minutes.
  - Tokens are opaque random strings stored in-memory.
"""

import asyncio
import json
import logging
import secrets
import time
from typing import Any, Mapping
from urllib.parse import urlencode

from mcp.server.auth.provider import (
    AccessToken,
    AuthorizationCode,
    AuthorizationParams,
    RefreshToken,
    construct_redirect_uri,
)
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import AnyUrl, Field, ValidationError

from models import DEFAULT_SCOPES, AuthProps, AuthRequestSnapshot

logger = logging.getLogger("micropub-oauth")
audit_logger = logging.getLogger("micropub-audit")

TOKEN_EXPIRY = 3600  # 1 hour
REFRESH_TOKEN_EXPIRY = 30 * 86400  # 30 days
AUTH_CODE_TTL = 300  # 5 minutes

MAX_CLIENT_NAME = 256
MAX_CLIENT_URI = 2048


def audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


class RegistrationError(ValueError):
    pass


class InvalidAuthRequestError(ValueError):
    """An authorization request rebuilt from the login form failed validation."""


# ---------------------------------------------------------------------------
# Grant artifacts carrying the downstream AuthProps
# ---------------------------------------------------------------------------

class MicropubAuthorizationCode(AuthorizationCode):
    user_id: str
    props: AuthProps
    metadata: dict[str, Any] = Field(default_factory=dict)


class MicropubAccessToken(AccessToken):
    user_id: str
    props: AuthProps


class MicropubRefreshToken(RefreshToken):
    user_id: str
    props: AuthProps


class MicropubOAuthProvider:
    """OAuth 2.1 provider for Micropub MCP.

    All clients → /login (website entry) → downstream IndieAuth → code.
    Registration rate-limited to 10/min.
    """

    REG_RATE_LIMIT = 10
    REG_RATE_WINDOW = 60  # seconds

    def __init__(
        self,
        issuer_url: str,
        scopes: list[str] | None = None,
        login_path: str = "/login",
    ):
        self.issuer_url = issuer_url.rstrip("/")
        self.scopes = list(scopes or DEFAULT_SCOPES)
        self.login_path = login_path
        self.clients: dict[str, OAuthClientInformationFull] = {}
        self.auth_codes: dict[str, MicropubAuthorizationCode] = {}
        self.access_tokens: dict[str, MicropubAccessToken] = {}
        self.refresh_tokens: dict[str, MicropubRefreshToken] = {}
        self._reg_timestamps: list[float] = []
        self._reg_lock = asyncio.Lock()

    # --- OAuthAuthorizationServerProvider protocol ---

    async def get_client(self, client_id: str) -> OAuthClientInformationFull | None:
        return self.clients.get(client_id)

    async def register_client(self, client_info: OAuthClientInformationFull) -> None:
        if client_info.client_name and len(client_info.client_name) > MAX_CLIENT_NAME:
            raise RegistrationError(f"client_name exceeds {MAX_CLIENT_NAME} characters")
        if client_info.client_uri and len(str(client_info.client_uri)) > MAX_CLIENT_URI:
            raise RegistrationError(f"client_uri exceeds {MAX_CLIENT_URI} characters")

        async with self._reg_lock:
            now = time.time()
            self._reg_timestamps = [t for t in self._reg_timestamps
                                    if now - t < self.REG_RATE_WINDOW]
            if len(self._reg_timestamps) >= self.REG_RATE_LIMIT:
                audit("register_rate_limited")
                raise RegistrationError("Too many registration requests, try again later")
            self._reg_timestamps.append(now)
            self.clients[client_info.client_id] = client_info

        audit("client_registered", client_id=client_info.client_id,
               client_name=client_info.client_name)
        logger.info("client_registered: %s", client_info.client_id)

    async def authorize(
        self,
        client: OAuthClientInformationFull,
        params: AuthorizationParams,
    ) -> str:
        snapshot = AuthRequestSnapshot(
            client_id=client.client_id,
            redirect_uri=str(params.redirect_uri),
            redirect_uri_provided_explicitly=params.redirect_uri_provided_explicitly,
            state=params.state,
            scopes=params.scopes or list(self.scopes),
            code_challenge=params.code_challenge,
            code_challenge_method="S256",
            resource=getattr(params, "resource", None),
        )
        audit("authorize_login", client_id=client.client_id)
        logger.info("authorize: client=%s → %s", client.client_id, self.login_path)
        return f"{self.issuer_url}{self.login_path}?{urlencode(snapshot.to_query())}"

    async def load_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: str,
    ) -> MicropubAuthorizationCode | None:
        code = self.auth_codes.pop(authorization_code, None)
        if code is None:
            return None
        if code.client_id != client.client_id or code.expires_at < time.time():
            return None
        return code

    async def exchange_authorization_code(
        self,
        client: OAuthClientInformationFull,
        authorization_code: MicropubAuthorizationCode,
    ) -> OAuthToken:
        scopes = authorization_code.scopes or list(self.scopes)
        token = self._issue_tokens(
            client.client_id, scopes,
            user_id=authorization_code.user_id,
            props=authorization_code.props,
            resource=authorization_code.resource,
        )
        audit("token_issued", client_id=client.client_id,
               user_id=authorization_code.user_id, expires_in=TOKEN_EXPIRY)
        logger.info("token_issued: client=%s me=%s stored=%d",
                    client.client_id, authorization_code.user_id, len(self.access_tokens))
        return token

    async def load_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: str,
    ) -> MicropubRefreshToken | None:
        rt = self.refresh_tokens.get(refresh_token)
        if rt is None or rt.client_id != client.client_id:
            return None
        if rt.expires_at and rt.expires_at < time.time():
            del self.refresh_tokens[refresh_token]
            return None
        return rt

    async def exchange_refresh_token(
        self,
        client: OAuthClientInformationFull,
        refresh_token: MicropubRefreshToken,
        scopes: list[str],
    ) -> OAuthToken:
        self.refresh_tokens.pop(refresh_token.token, None)
        token = self._issue_tokens(
            client.client_id, scopes or refresh_token.scopes,
            user_id=refresh_token.user_id,
            props=refresh_token.props,
        )
        audit("token_refreshed", client_id=client.client_id, user_id=refresh_token.user_id)
        return token

    async def load_access_token(self, token: str) -> MicropubAccessToken | None:
        at = self.access_tokens.get(token)
        if at is None:
            logger.debug("load_access_token: not found")
            return None
        if at.expires_at and at.expires_at < time.time():
            logger.info("load_access_token: expired for client=%s", at.client_id)
            del self.access_tokens[token]
            return None
        return at

    async def revoke_token(self, token: AccessToken | RefreshToken) -> None:
        if isinstance(token, AccessToken):
            self.access_tokens.pop(token.token, None)
        else:
            self.refresh_tokens.pop(token.token, None)
        audit("token_revoked", client_id=token.client_id)

    # --- Bridge primitives (used by delegation.py) ---

    def parse_auth_request(self, params: Mapping[str, str]) -> AuthRequestSnapshot:
        """Rebuild and re-validate an upstream request from login-page parameters.

        Raises:
            InvalidAuthRequestError: missing fields, unknown client,
                unregistered redirect URI, unsupported PKCE method or scope.
        """
        try:
            snapshot = AuthRequestSnapshot.from_query(params)
        except ValidationError as e:
            raise InvalidAuthRequestError("Missing client_id or redirect_uri") from e

        if snapshot.response_type != "code":
            raise InvalidAuthRequestError(f"Unsupported response_type: {snapshot.response_type}")

        client = self.clients.get(snapshot.client_id)
        if client is None:
            raise InvalidAuthRequestError("Unknown client")

        registered = [str(u) for u in client.redirect_uris or []]
        if snapshot.redirect_uri not in registered:
            raise InvalidAuthRequestError("redirect_uri is not registered for this client")

        if not snapshot.code_challenge:
            raise InvalidAuthRequestError("code_challenge is required")
        if (snapshot.code_challenge_method or "S256") != "S256":
            raise InvalidAuthRequestError("Only S256 code_challenge_method is supported")

        allowed = client.scope.split() if client.scope else self.scopes
        unknown = [s for s in snapshot.scopes if s not in allowed]
        if unknown:
            raise InvalidAuthRequestError(f"Scope not allowed: {' '.join(unknown)}")
        if not snapshot.scopes:
            snapshot.scopes = list(self.scopes)
        return snapshot

    def complete_authorization(
        self,
        *,
        request: AuthRequestSnapshot,
        user_id: str,
        metadata: dict[str, Any],
        scope: list[str],
        props: AuthProps,
    ) -> str:
        """Persist a grant for `user_id` and return the client's resume URL."""
        client = self.clients.get(request.client_id)
        if client is None:
            raise InvalidAuthRequestError("Client no longer exists")

        code_str = secrets.token_urlsafe(32)
        self.auth_codes[code_str] = MicropubAuthorizationCode(
            code=code_str,
            scopes=scope,
            expires_at=time.time() + AUTH_CODE_TTL,
            client_id=request.client_id,
            code_challenge=request.code_challenge or "",
            redirect_uri=AnyUrl(request.redirect_uri),
            redirect_uri_provided_explicitly=request.redirect_uri_provided_explicitly,
            resource=request.resource,
            user_id=user_id,
            props=props,
            metadata=metadata,
        )
        self._evict_expired_codes()
        audit("grant_completed", client_id=request.client_id, user_id=user_id,
               scope=" ".join(scope))
        return construct_redirect_uri(request.redirect_uri, code=code_str, state=request.state)

    # --- Internal ---

    def _issue_tokens(
        self,
        client_id: str,
        scopes: list[str],
        *,
        user_id: str,
        props: AuthProps,
        resource: str | None = None,
    ) -> OAuthToken:
        now = int(time.time())
        access_tok = secrets.token_urlsafe(32)
        refresh_tok = secrets.token_urlsafe(32)

        self.access_tokens[access_tok] = MicropubAccessToken(
            token=access_tok,
            client_id=client_id,
            scopes=scopes,
            expires_at=now + TOKEN_EXPIRY,
            resource=resource,
            user_id=user_id,
            props=props,
        )
        self.refresh_tokens[refresh_tok] = MicropubRefreshToken(
            token=refresh_tok,
            client_id=client_id,
            scopes=scopes,
            expires_at=now + REFRESH_TOKEN_EXPIRY,
            user_id=user_id,
            props=props,
        )
        return OAuthToken(
            access_token=access_tok,
            token_type="Bearer",
            expires_in=TOKEN_EXPIRY,
            scope=" ".join(scopes),
            refresh_token=refresh_tok,
        )

    def _evict_expired_codes(self) -> None:
        now = time.time()
        expired = [c for c, ac in self.auth_codes.items() if ac.expires_at < now]
        for c in expired:
            del self.auth_codes[c]
