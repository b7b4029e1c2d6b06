#!/usr/bin/env python3
"""
Micropub MCP — publish to IndieWeb sites from MCP clients.

Runs as a streamable-http MCP server. Clients authorize through the server's
own OAuth endpoints; the server in turn signs the user in to their website's
IndieAuth provider and keeps the resulting Micropub token on the grant, so
tool calls can post to the site without the client ever seeing that token.
"""

import argparse
import asyncio
import logging

from pydantic import AnyHttpUrl
from mcp.server.auth.middleware.auth_context import get_access_token
from mcp.server.auth.settings import AuthSettings, ClientRegistrationOptions, RevocationOptions
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response

import tools
from config import load_settings
from delegation import CALLBACK_PATH, IndieAuthDelegation
from micropub_oauth import MicropubAccessToken, MicropubOAuthProvider
from models import AuthContext
from pages import service_info, service_page
from pending_store import MemoryPendingAuthStore
from tools import Location, ManageAction, PostType, QueryType, ResponseFormat, RsvpValue

logger = logging.getLogger("micropub")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
SETTINGS = load_settings()

_oauth_provider = MicropubOAuthProvider(SETTINGS.base_url, scopes=SETTINGS.scopes)
_delegation = IndieAuthDelegation(
    _oauth_provider,
    MemoryPendingAuthStore(),
    SETTINGS.base_url,
    timeout=SETTINGS.http_timeout,
    pending_ttl=SETTINGS.pending_ttl,
    server_name=SETTINGS.server_name,
)


def current_auth_context() -> AuthContext | None:
    """AuthContext for the bearer token on the current request, if any."""
    token = get_access_token()
    if isinstance(token, MicropubAccessToken):
        return AuthContext.from_props(token.props)
    return None


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

def _build_instructions() -> str:
    return (
        f"{SETTINGS.server_name} — publish to the user's IndieWeb site via Micropub.\n"
        "\n"
        "Tools:\n"
        "  micropub_post        — Create a note, article, bookmark, like, repost, reply,\n"
        "                         RSVP, photo, video or checkin.\n"
        "  micropub_query       — Endpoint config, post source, syndication targets,\n"
        "                         categories, contacts.\n"
        "  micropub_media       — Upload a file from a URL to the media endpoint.\n"
        "  micropub_manage      — Update, delete or undelete an existing post.\n"
        "  micropub_discover    — Check which endpoints a website advertises.\n"
        "  micropub_auth_status — Show the connected site, scopes and token expiry.\n"
        "\n"
        "Query config first to learn syndication targets and the media endpoint.\n"
    )


mcp = FastMCP(
    "micropub",
    auth_server_provider=_oauth_provider,
    auth=AuthSettings(
        issuer_url=AnyHttpUrl(SETTINGS.base_url),
        resource_server_url=AnyHttpUrl(f"{SETTINGS.base_url}/mcp"),
        client_registration_options=ClientRegistrationOptions(
            enabled=True,
            valid_scopes=SETTINGS.scopes,
            default_scopes=SETTINGS.scopes,
        ),
        revocation_options=RevocationOptions(enabled=True),
    ),
    # Behind a reverse proxy the Host header is the public domain.
    transport_security=TransportSecuritySettings(
        enable_dns_rebinding_protection=False,
    ),
    instructions=_build_instructions(),
)


@mcp.custom_route("/", methods=["GET"])
async def _service_route(request: Request) -> Response:
    """h-app page (our IndieAuth client_id), or JSON for API consumers."""
    accept = request.headers.get("accept", "")
    headers = {"Access-Control-Allow-Origin": "*"}
    if "application/json" in accept and "text/html" not in accept:
        return JSONResponse(service_info(SETTINGS.base_url, SETTINGS.server_name), headers=headers)
    return HTMLResponse(service_page(SETTINGS.base_url, SETTINGS.server_name), headers=headers)


@mcp.custom_route("/login", methods=["GET", "POST"])
async def _login_route(request: Request) -> Response:
    """Website entry form, then discovery and the redirect to the user's IndieAuth provider."""
    return await _delegation.handle_login(request)


@mcp.custom_route(CALLBACK_PATH, methods=["GET"])
async def _callback_route(request: Request) -> Response:
    return await _delegation.handle_callback(request)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def micropub_post(
    post_type: PostType,
    content: str | None = None,
    name: str | None = None,
    target_url: str | None = None,
    rsvp_value: RsvpValue | None = None,
    photo_url: str | None = None,
    photo_alt: str | None = None,
    video_url: str | None = None,
    location: Location | None = None,
    categories: list[str] | None = None,
    summary: str | None = None,
    slug: str | None = None,
    draft: bool = False,
    syndicate_to: list[str] | None = None,
    response_format: ResponseFormat = "concise",
) -> str:
    """Create a Micropub post of any type.

    Args:
        post_type: note (short status), article (long-form with title), bookmark,
            like, repost, reply, rsvp (respond to an event), photo, video, checkin
        content: Text of the post. Required for note, article and reply.
        name: Title. Required for article.
        target_url: URL being interacted with. Required for bookmark, like,
            repost, reply and rsvp.
        rsvp_value: yes, no, maybe or interested. Required for rsvp.
        photo_url: Photo URL. Required for photo.
        photo_alt: Alt text for the photo.
        video_url: Video URL. Required for video.
        location: latitude, longitude and optional name. Required for checkin.
        categories: Tags for the post.
        summary: Short excerpt (mainly for articles).
        slug: URL slug suggestion (mp-slug).
        draft: Save as draft instead of publishing.
        syndicate_to: Syndication target UIDs (see micropub_query config).
        response_format: 'concise' for a one-line confirmation, 'detailed' for more.
    """
    return await tools.micropub_post(
        current_auth_context(), post_type,
        content=content, name=name, target_url=target_url, rsvp_value=rsvp_value,
        photo_url=photo_url, photo_alt=photo_alt, video_url=video_url,
        location=location, categories=categories, summary=summary, slug=slug,
        draft=draft, syndicate_to=syndicate_to, response_format=response_format,
        timeout=SETTINGS.http_timeout,
    )


@mcp.tool()
async def micropub_query(
    query_type: QueryType,
    url: str | None = None,
    properties: list[str] | None = None,
    filter: str | None = None,
    limit: int = 20,
    offset: int = 0,
    response_format: ResponseFormat = "concise",
) -> str:
    """Query the Micropub endpoint.

    Args:
        query_type: config (capabilities), source (post data), syndicate-to
            (cross-posting targets), category (tags), contact (address book)
        url: Post URL. Required for source.
        properties: Properties to fetch for source (omit for all).
        filter: Prefix filter for category.
        limit: Maximum items for contact.
        offset: Pagination offset for contact.
        response_format: 'concise' for a summary, 'detailed' for full data.
    """
    return await tools.micropub_query(
        current_auth_context(), query_type,
        url=url, properties=properties, filter=filter, limit=limit, offset=offset,
        response_format=response_format, timeout=SETTINGS.http_timeout,
    )


@mcp.tool()
async def micropub_media(
    source_url: str,
    alt_text: str | None = None,
    filename: str | None = None,
    response_format: ResponseFormat = "concise",
) -> str:
    """Upload a file (image, video, audio) to the site's media endpoint.

    Returns the hosted URL, for use in photo/video properties of a post.

    Args:
        source_url: URL of the file to fetch and upload.
        alt_text: Accessibility description for the media.
        filename: Override the filename (taken from the URL otherwise).
        response_format: 'concise' for just the URL, 'detailed' for more.
    """
    return await tools.micropub_media(
        current_auth_context(), source_url,
        alt_text=alt_text, filename=filename, response_format=response_format,
        timeout=SETTINGS.http_timeout,
    )


@mcp.tool()
async def micropub_manage(
    action: ManageAction,
    url: str,
    replace: dict | None = None,
    add: dict | None = None,
    remove: list[str] | dict | None = None,
    response_format: ResponseFormat = "concise",
) -> str:
    """Update, delete or restore an existing post.

    Args:
        action: update, delete or undelete
        url: URL of the post.
        replace: Properties to replace entirely (update).
        add: Values to add to existing properties (update).
        remove: Property names to remove, or {property: [values]} to remove (update).
        response_format: 'concise' or 'detailed'.
    """
    return await tools.micropub_manage(
        current_auth_context(), action, url,
        replace=replace, add=add, remove=remove, response_format=response_format,
        timeout=SETTINGS.http_timeout,
    )


@mcp.tool()
async def micropub_discover(url: str) -> str:
    """Discover the Micropub and IndieAuth endpoints a website advertises.

    Args:
        url: Website URL, e.g. https://example.com
    """
    return await tools.micropub_discover(url, timeout=SETTINGS.http_timeout)


@mcp.tool()
async def micropub_auth_status() -> str:
    """Show which site this session is connected to, granted scopes and token expiry."""
    return tools.micropub_auth_status(current_auth_context())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    from starlette.types import ASGIApp, Receive, Scope, Send

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON lines, one per security event
    SETTINGS.audit_log.parent.mkdir(parents=True, exist_ok=True)
    _audit_handler = logging.FileHandler(SETTINGS.audit_log)
    _audit_handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger = logging.getLogger("micropub-audit")
    _audit_logger.addHandler(_audit_handler)
    _audit_logger.setLevel(logging.INFO)
    _audit_logger.propagate = False

    parser = argparse.ArgumentParser(description="Micropub MCP server")
    parser.add_argument("--port", type=int, default=8222)
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    # Includes the OAuth routes, metadata endpoints and bearer auth middleware.
    app = mcp.streamable_http_app()

    class _RequestLogMiddleware:
        def __init__(self, inner: ASGIApp):
            self.inner = inner

        async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
            if scope["type"] != "http":
                await self.inner(scope, receive, send)
                return

            hdrs = dict(scope.get("headers", []))
            ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
            logger.info("recv: %s %s auth=%s ua=%s",
                        scope.get("method", "?"), scope.get("path", "?"),
                        "bearer" if b"authorization" in hdrs else "none", ua[:60])
            await self.inner(scope, receive, send)

    logger.info("micropub: starting HTTP server on %s:%d (issuer %s)",
                args.host, args.port, SETTINGS.base_url)
    config = uvicorn.Config(
        _RequestLogMiddleware(app), host=args.host, port=args.port,
        log_level="info", proxy_headers=True, forwarded_allow_ips="*",
    )
    asyncio.run(uvicorn.Server(config).serve())
