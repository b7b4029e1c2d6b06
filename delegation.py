"""
delegation.py — The IndieAuth bridge between the two OAuth handshakes.

    MCP client ──/authorize (SDK)──▶ /login form ──POST──▶ discovery
        ──302──▶ user's IndieAuth provider ──▶ /indieauth-callback
        ──▶ token exchange ──▶ provider.complete_authorization ──302──▶ MCP client

The pending record written at POST /login is the only state carried across
the hop to the user's site. The callback pops it before doing anything else,
so a downstream code can be redeemed through this bridge at most once.
"""

import enum
import logging
import time
from dataclasses import dataclass
from urllib.parse import urlencode, urlsplit

import httpx
from starlette.requests import Request
from starlette.responses import HTMLResponse, RedirectResponse, Response

import httpclient
from discovery import DiscoveryError, discover_endpoints, normalize_url, resolve_url
from indieauth import TokenExchangeError, build_authorization_url, exchange_code_for_token
from micropub_client import MicropubClient, MicropubError
from micropub_oauth import InvalidAuthRequestError, MicropubOAuthProvider, audit
from models import AuthProps, AuthRequestSnapshot, PendingAuthorization
from pages import error_page, login_page
from pending_store import PENDING_AUTH_TTL, PendingAuthStore
from pkce import generate_code_challenge, generate_code_verifier, generate_state

logger = logging.getLogger("micropub-delegation")

CALLBACK_PATH = "/indieauth-callback"


class SessionExpiredError(Exception):
    """No pending authorization for the callback's state (expired or already used)."""


class MalformedBridgeStateError(Exception):
    """The stored upstream request cannot be completed. Indicates a bridging bug."""


# ---------------------------------------------------------------------------
# Media endpoint enrichment
# ---------------------------------------------------------------------------

class MediaLookupOutcome(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class MediaEndpointLookup:
    outcome: MediaLookupOutcome
    endpoint: str | None = None
    error: str | None = None


async def lookup_media_endpoint(
    micropub_endpoint: str,
    access_token: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> MediaEndpointLookup:
    """Ask the Micropub endpoint (?q=config) for its media endpoint. Never raises."""
    micropub = MicropubClient(micropub_endpoint, access_token, client=client, timeout=timeout)
    try:
        config = await micropub.get_config()
    except MicropubError as e:
        return MediaEndpointLookup(MediaLookupOutcome.FAILED, error=str(e))

    endpoint = config.get("media-endpoint") if isinstance(config, dict) else None
    if not endpoint or not isinstance(endpoint, str):
        return MediaEndpointLookup(MediaLookupOutcome.NOT_FOUND)
    return MediaEndpointLookup(MediaLookupOutcome.FOUND, endpoint=resolve_url(endpoint, micropub_endpoint))


def _is_absolute_url(value: str | None) -> bool:
    if not value:
        return False
    parts = urlsplit(value)
    return bool(parts.scheme and parts.netloc)


def validate_snapshot(snapshot: AuthRequestSnapshot) -> None:
    """Check the stored upstream request before a grant is built from it.

    The redirect URI must be an absolute URL. The client id must be present;
    URL-shaped client ids must be absolute, opaque registered ids are accepted.

    Raises:
        MalformedBridgeStateError
    """
    if not snapshot.redirect_uri or not snapshot.client_id:
        raise MalformedBridgeStateError("Stored request is missing redirect_uri or client_id")
    if not _is_absolute_url(snapshot.redirect_uri):
        raise MalformedBridgeStateError("Stored redirect_uri is not an absolute URL")
    if "://" in snapshot.client_id and not _is_absolute_url(snapshot.client_id):
        raise MalformedBridgeStateError("Stored client_id is not a valid URL")


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class IndieAuthDelegation:
    """Serves /login and /indieauth-callback for one MicropubOAuthProvider."""

    def __init__(
        self,
        provider: MicropubOAuthProvider,
        store: PendingAuthStore,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = httpclient.DEFAULT_TIMEOUT,
        pending_ttl: int = PENDING_AUTH_TTL,
        server_name: str = "Micropub MCP",
    ):
        self.provider = provider
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.pending_ttl = pending_ttl
        self.server_name = server_name
        self._http = http_client
        self._timeout = timeout

    @property
    def client_id(self) -> str:
        """Our IndieAuth client_id toward the user's site."""
        return f"{self.base_url}/"

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url}{CALLBACK_PATH}"

    def login_url(self, snapshot: AuthRequestSnapshot) -> str:
        return f"{self.provider.login_path}?{urlencode(snapshot.to_query())}"

    # --- /login ---

    async def handle_login(self, request: Request) -> Response:
        try:
            snapshot = self.provider.parse_auth_request(request.query_params)
        except InvalidAuthRequestError as e:
            logger.info("login: invalid upstream request: %s", e)
            return _page("Invalid request", str(e), status_code=400)

        if request.method == "GET":
            return HTMLResponse(login_page(
                snapshot.to_query(), snapshot.scope, self.server_name, login_path=self.provider.login_path,
            ))
        return await self._submit_login(request, snapshot)

    async def _submit_login(self, request: Request, snapshot: AuthRequestSnapshot) -> Response:
        retry = self.login_url(snapshot)
        form = await request.form()
        me = str(form.get("me") or "").strip()
        if not me:
            return _page("Sign-in failed", "Please enter your website URL", retry_url=retry)
        if not _is_absolute_url(normalize_url(me)):
            return _page("Sign-in failed", f"Not a valid website URL: {me}", retry_url=retry)

        audit("login_started", client_id=snapshot.client_id, site=me)
        try:
            endpoints = await discover_endpoints(me, client=self._http, timeout=self._timeout)
        except DiscoveryError as e:
            logger.info("login: discovery failed: %s", e)
            return _page("Sign-in failed", f"Failed to connect to your website: {e}", retry_url=retry)
        except Exception:
            logger.exception("login: unexpected error during discovery")
            return _page("Sign-in failed", "Something went wrong while contacting your website.",
                         status_code=500, retry_url=retry)

        if not endpoints.micropub_endpoint:
            return _page(
                "Micropub not supported",
                "Your website doesn't appear to support Micropub. "
                "Make sure you have a Micropub endpoint configured.",
                retry_url=retry,
            )
        if not endpoints.authorization_endpoint or not endpoints.token_endpoint:
            return _page(
                "IndieAuth not found",
                "Couldn't find IndieAuth endpoints on your website. "
                "Make sure you have authorization_endpoint and token_endpoint configured.",
                retry_url=retry,
            )

        state = generate_state()
        verifier = generate_code_verifier()
        await self.store.put(
            state,
            PendingAuthorization(
                me=endpoints.me,
                endpoints=endpoints,
                code_verifier=verifier,
                auth_request=snapshot,
            ),
            self.pending_ttl,
        )

        auth_url = build_authorization_url(
            endpoints.authorization_endpoint,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            me=endpoints.me,
            scope=snapshot.scope or " ".join(self.provider.scopes),
            state=state,
            code_challenge=generate_code_challenge(verifier),
        )
        audit("login_redirect", client_id=snapshot.client_id, me=endpoints.me,
               authorization_host=urlsplit(endpoints.authorization_endpoint).netloc)
        logger.info("login: state=%s... → %s", state[:6], urlsplit(endpoints.authorization_endpoint).netloc)
        return RedirectResponse(auth_url, status_code=302)

    # --- /indieauth-callback ---

    async def handle_callback(self, request: Request) -> Response:
        params = request.query_params
        code = params.get("code")
        state = params.get("state")
        error = params.get("error")

        if error:
            # the record for this attempt is dead either way
            pending = await self.store.pop(state) if state else None
            audit("callback_rejected", reason="provider_error", error=error)
            return _page(
                "Authorization failed",
                params.get("error_description") or error,
                retry_url=self.login_url(pending.auth_request) if pending else None,
            )

        if not code or not state:
            audit("callback_rejected", reason="missing_parameters")
            return _page("Authorization failed", "Missing authorization code or state")

        try:
            pending = await self._consume(state)
        except SessionExpiredError as e:
            audit("callback_rejected", reason="session_expired")
            return _page("Session expired", str(e))

        retry = self.login_url(pending.auth_request)
        try:
            redirect_to = await self._complete(pending, code)
        except TokenExchangeError as e:
            logger.info("callback: token exchange failed for %s: %s", pending.me, e)
            return _page("Authorization failed", f"Failed to complete authentication: {e}",
                         retry_url=retry)
        except MalformedBridgeStateError as e:
            snap = pending.auth_request
            logger.error(
                "callback: malformed bridge state: %s (client_id=%r redirect_uri=%r version=%d)",
                e, snap.client_id, snap.redirect_uri, snap.version,
            )
            return _page("Configuration error",
                         "Invalid OAuth configuration. Please start the sign-in again.",
                         status_code=500)
        except InvalidAuthRequestError as e:
            return _page("Authorization failed", str(e))
        except Exception:
            logger.exception("callback: unexpected error completing authorization")
            return _page("Authorization failed", "Something went wrong completing sign-in.",
                         status_code=500, retry_url=retry)

        return RedirectResponse(redirect_to, status_code=302)

    async def _consume(self, state: str) -> PendingAuthorization:
        pending = await self.store.pop(state)
        if pending is None:
            logger.info("callback: no pending auth for state=%s...", state[:6])
            raise SessionExpiredError("Authorization session expired. Please try again.")
        return pending

    async def _complete(self, pending: PendingAuthorization, code: str) -> str:
        endpoints = pending.endpoints
        token = await exchange_code_for_token(
            endpoints.token_endpoint,
            code=code,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            code_verifier=pending.code_verifier,
            client=self._http,
            timeout=self._timeout,
        )

        media_endpoint = endpoints.media_endpoint
        if not media_endpoint:
            lookup = await lookup_media_endpoint(
                endpoints.micropub_endpoint, token.access_token,
                client=self._http, timeout=self._timeout,
            )
            logger.info("callback: media endpoint lookup %s%s", lookup.outcome.value,
                        f" ({lookup.error})" if lookup.error else "")
            media_endpoint = lookup.endpoint

        props = AuthProps(
            me=token.me,
            micropub_endpoint=endpoints.micropub_endpoint,
            media_endpoint=media_endpoint,
            indieauth_token=token.access_token,
            token_type=token.token_type,
            scope=token.scope,
            refresh_token=token.refresh_token,
            token_expires_at=time.time() + token.expires_in if token.expires_in else None,
            token_endpoint=endpoints.token_endpoint,
        )

        validate_snapshot(pending.auth_request)
        return self.provider.complete_authorization(
            request=pending.auth_request,
            user_id=token.me,
            metadata={"me": token.me, "scope": token.scope, "authorized_at": time.time()},
            scope=token.scope.split() or pending.auth_request.scopes,
            props=props,
        )


def _page(title: str, message: str, *, status_code: int = 400, retry_url: str | None = None) -> HTMLResponse:
    return HTMLResponse(error_page(title, message, retry_url), status_code=status_code)
