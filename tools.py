"""
tools.py — Micropub tool operations.

Each operation takes the caller's AuthContext explicitly (None when the
request carried no Micropub grant) and returns the text shown to the model.
Failures raise ToolError; the MCP layer reports them as error results.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal
from urllib.parse import urlsplit

import httpx
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel

import httpclient
from discovery import DiscoveryError, discover_endpoints
from micropub_client import MicropubClient, MicropubError
from models import AuthContext

logger = logging.getLogger("micropub")

PostType = Literal["note", "article", "bookmark", "like", "repost", "reply", "rsvp", "photo", "video", "checkin"]
RsvpValue = Literal["yes", "no", "maybe", "interested"]
QueryType = Literal["config", "source", "syndicate-to", "category", "contact"]
ManageAction = Literal["update", "delete", "undelete"]
ResponseFormat = Literal["concise", "detailed"]

NOT_AUTHENTICATED = "Not authenticated. Please complete the OAuth flow first."

_TARGET_PROPERTY = {
    "bookmark": "bookmark-of",
    "like": "like-of",
    "repost": "repost-of",
    "reply": "in-reply-to",
    "rsvp": "in-reply-to",
}


class Location(BaseModel):
    latitude: float
    longitude: float
    name: str | None = None


def _require_auth(ctx: AuthContext | None) -> AuthContext:
    if ctx is None:
        raise ToolError(NOT_AUTHENTICATED)
    return ctx


def _client(ctx: AuthContext, client: httpx.AsyncClient | None, timeout: float) -> MicropubClient:
    return MicropubClient(ctx.micropub_endpoint, ctx.token, client=client, timeout=timeout)


# ---------------------------------------------------------------------------
# micropub_post
# ---------------------------------------------------------------------------

def validate_post_type(
    post_type: str,
    *,
    content: str | None = None,
    name: str | None = None,
    target_url: str | None = None,
    rsvp_value: str | None = None,
    photo_url: str | None = None,
    video_url: str | None = None,
    location: Location | None = None,
) -> str | None:
    """Return the reason a post of `post_type` is incomplete, or None."""
    if post_type == "note" and not content:
        return "Note requires content"
    if post_type == "article":
        if not name:
            return "Article requires a title (name)"
        if not content:
            return "Article requires content"
    if post_type in ("bookmark", "like", "repost", "reply") and not target_url:
        return f"{post_type.capitalize()} requires a target_url"
    if post_type == "reply" and not content:
        return "Reply requires content"
    if post_type == "rsvp":
        if not target_url:
            return "RSVP requires a target_url (event URL)"
        if not rsvp_value:
            return "RSVP requires an rsvp_value"
    if post_type == "photo" and not photo_url:
        return "Photo post requires a photo_url"
    if post_type == "video" and not video_url:
        return "Video post requires a video_url"
    if post_type == "checkin" and location is None:
        return "Checkin requires location data"
    return None


def build_properties(
    post_type: str,
    *,
    content: str | None = None,
    name: str | None = None,
    target_url: str | None = None,
    rsvp_value: str | None = None,
    photo_url: str | None = None,
    photo_alt: str | None = None,
    video_url: str | None = None,
    location: Location | None = None,
    categories: list[str] | None = None,
    summary: str | None = None,
    slug: str | None = None,
    draft: bool = False,
    syndicate_to: list[str] | None = None,
) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    if content:
        properties["content"] = content
    if name:
        properties["name"] = name
    if target_url and post_type in _TARGET_PROPERTY:
        properties[_TARGET_PROPERTY[post_type]] = target_url
    if post_type == "rsvp" and rsvp_value:
        properties["rsvp"] = rsvp_value
    if photo_url:
        properties["photo"] = [{"value": photo_url, "alt": photo_alt} if photo_alt else photo_url]
    if video_url:
        properties["video"] = [video_url]
    if post_type == "checkin" and location is not None:
        card: dict[str, list] = {
            "latitude": [location.latitude],
            "longitude": [location.longitude],
        }
        if location.name:
            card["name"] = [location.name]
        properties["checkin"] = [{"type": ["h-card"], "properties": card}]
    if categories:
        properties["category"] = list(categories)
    if summary:
        properties["summary"] = summary
    if slug:
        properties["mp-slug"] = slug
    if draft:
        properties["post-status"] = "draft"
    if syndicate_to:
        properties["mp-syndicate-to"] = list(syndicate_to)
    return properties


def format_post_response(post_type: str, location: str | None, response_format: str, draft: bool) -> str:
    label = post_type.capitalize()
    status = " (draft)" if draft else ""
    if response_format == "concise":
        return f"{label} created{status}: {location}" if location else f"{label} created{status}"

    lines = [f"{label} post created successfully{status}"]
    if location:
        lines += ["", f"URL: {location}"]
    lines += ["", f"Post type: {post_type}"]
    if draft:
        lines.append("Status: Draft (not yet published)")
    return "\n".join(lines)


async def micropub_post(
    ctx: AuthContext | None,
    post_type: PostType,
    *,
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
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> str:
    auth = _require_auth(ctx)
    problem = validate_post_type(
        post_type, content=content, name=name, target_url=target_url,
        rsvp_value=rsvp_value, photo_url=photo_url, video_url=video_url, location=location,
    )
    if problem:
        raise ToolError(problem)

    properties = build_properties(
        post_type, content=content, name=name, target_url=target_url,
        rsvp_value=rsvp_value, photo_url=photo_url, photo_alt=photo_alt,
        video_url=video_url, location=location, categories=categories,
        summary=summary, slug=slug, draft=draft, syndicate_to=syndicate_to,
    )
    result = await _client(auth, client, timeout).create_entry(properties)
    if not result.success:
        raise ToolError(f"Failed to create post: {result.error}")
    logger.info("post created: type=%s me=%s", post_type, auth.me)
    return format_post_response(post_type, result.location, response_format, draft)


# ---------------------------------------------------------------------------
# micropub_query
# ---------------------------------------------------------------------------

def _target_name(target: dict[str, Any]) -> str:
    return str(target.get("name") or target.get("uid", ""))


def format_config(config: dict[str, Any], response_format: str) -> str:
    syndicate_to = config.get("syndicate-to") or []
    post_types = config.get("post-types") or []
    if response_format == "concise":
        features = []
        if config.get("media-endpoint"):
            features.append("media uploads")
        if syndicate_to:
            features.append(f"{len(syndicate_to)} syndication targets")
        if post_types:
            features.append(f"{len(post_types)} post types")
        return f"Micropub config: {', '.join(features) if features else 'basic support'}"

    lines = ["Micropub Configuration", ""]
    lines.append(f"Media Endpoint: {config.get('media-endpoint') or 'Not available'}")
    if syndicate_to:
        lines += ["", "Syndication Targets:"]
        lines += [f"  - {_target_name(t)} ({t.get('uid')})" for t in syndicate_to]
    if post_types:
        lines += ["", "Supported Post Types:"]
        lines += [f"  - {pt.get('name')}: {pt.get('type')}" for pt in post_types]
    if config.get("q"):
        lines += ["", f"Supported Queries: {', '.join(config['q'])}"]
    return "\n".join(lines)


def format_source(source: dict[str, Any], response_format: str) -> str:
    if response_format == "concise":
        props = source.get("properties") or {}
        title = (props.get("name") or [None])[0]
        if not title and props.get("content"):
            content = props["content"][0]
            if isinstance(content, dict):
                content = content.get("value") or content.get("html") or ""
            title = str(content)[:50]
        return f"Post source: {title or 'Untitled'}"
    return json.dumps(source, indent=2)


def format_syndicate_to(targets: list[dict[str, Any]], response_format: str) -> str:
    if not targets:
        return "No syndication targets available"
    if response_format == "concise":
        return f"Syndication targets: {', '.join(_target_name(t) for t in targets)}"

    lines = ["Syndication Targets", ""]
    for target in targets:
        lines.append(f"- {_target_name(target)}")
        lines.append(f"  UID: {target.get('uid')}")
        service = target.get("service")
        if isinstance(service, dict):
            lines.append(f"  Service: {service.get('name')} ({service.get('url')})")
    return "\n".join(lines)


def format_categories(categories: list[str], response_format: str) -> str:
    if not categories:
        return "No categories found"
    if response_format == "concise":
        more = f" (+{len(categories) - 10} more)" if len(categories) > 10 else ""
        return f"Categories: {', '.join(categories[:10])}{more}"
    listing = "\n".join(f"  - {c}" for c in categories)
    return f"Categories ({len(categories)}):\n{listing}"


def _object(result: Any, query_type: str) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise ToolError(f"Query failed: unexpected response for q={query_type}")
    return result


async def micropub_query(
    ctx: AuthContext | None,
    query_type: QueryType,
    *,
    url: str | None = None,
    properties: list[str] | None = None,
    filter: str | None = None,
    limit: int = 20,
    offset: int = 0,
    response_format: ResponseFormat = "concise",
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> str:
    auth = _require_auth(ctx)
    if query_type == "source" and not url:
        raise ToolError("Source query requires a URL parameter")

    micropub = _client(auth, client, timeout)
    try:
        if query_type == "config":
            return format_config(_object(await micropub.get_config(), query_type), response_format)
        if query_type == "source":
            return format_source(_object(await micropub.get_source(url, properties), query_type), response_format)
        if query_type == "syndicate-to":
            result = _object(await micropub.query("syndicate-to"), query_type)
            return format_syndicate_to(result.get("syndicate-to") or [], response_format)
        if query_type == "category":
            result = _object(await micropub.query("category", {"filter": filter} if filter else None), query_type)
            return format_categories(result.get("categories") or [], response_format)
        if query_type == "contact":
            result = _object(
                await micropub.query("contact", {"limit": str(limit), "offset": str(offset)}), query_type,
            )
            if response_format == "concise":
                return f"Found {len(result.get('contacts') or [])} contacts"
            return json.dumps(result, indent=2)
    except MicropubError as e:
        raise ToolError(f"Query failed: {e}") from e
    raise ToolError(f"Unknown query type: {query_type}")


# ---------------------------------------------------------------------------
# micropub_media
# ---------------------------------------------------------------------------

def extract_filename(url: str) -> str:
    last_segment = urlsplit(url).path.rsplit("/", 1)[-1]
    return last_segment if "." in last_segment else "upload"


async def micropub_media(
    ctx: AuthContext | None,
    source_url: str,
    *,
    alt_text: str | None = None,
    filename: str | None = None,
    response_format: ResponseFormat = "concise",
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> str:
    """Fetch `source_url` and re-upload it to the site's media endpoint."""
    auth = _require_auth(ctx)
    if not auth.media_endpoint:
        raise ToolError(
            "No media endpoint available. This site may not support media uploads. "
            "You can include external photo/video URLs directly in posts instead."
        )

    async with httpclient.session(client, timeout) as http:
        try:
            source = await http.get(source_url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise ToolError(f"Failed to fetch file from {source_url}: {e}") from e
    if not source.is_success:
        raise ToolError(
            f"Failed to fetch file from {source_url}: {source.status_code} {source.reason_phrase}".rstrip()
        )

    content_type = source.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
    result = await _client(auth, client, timeout).upload_media(
        auth.media_endpoint, source.content, filename or extract_filename(source_url), content_type,
    )
    if not result.success:
        raise ToolError(f"Upload failed: {result.error}")

    if response_format == "concise":
        return result.location
    lines = ["Media uploaded successfully", "", f"URL: {result.location}"]
    if alt_text:
        lines.append(f"Alt text: {alt_text}")
    lines += ["", "Use this URL in the photo, video, or audio property when creating posts."]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# micropub_manage
# ---------------------------------------------------------------------------

async def micropub_manage(
    ctx: AuthContext | None,
    action: ManageAction,
    url: str,
    *,
    replace: dict[str, Any] | None = None,
    add: dict[str, Any] | None = None,
    remove: list[str] | dict[str, Any] | None = None,
    response_format: ResponseFormat = "concise",
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> str:
    auth = _require_auth(ctx)
    micropub = _client(auth, client, timeout)

    if action == "update":
        if not replace and not add and not remove:
            raise ToolError("Update action requires at least one of: replace, add, or remove")
        result = await micropub.update_entry(url, replace=replace, add=add, delete=remove)
        if not result.success:
            raise ToolError(f"Update failed: {result.error}")
        return f"Updated: {url}" if response_format == "concise" else f"Post updated successfully\n\nURL: {url}"

    if action == "delete":
        result = await micropub.delete_entry(url)
        if not result.success:
            raise ToolError(f"Delete failed: {result.error}")
        if response_format == "concise":
            return f"Deleted: {url}"
        return f"Post deleted successfully\n\nURL: {url}\n\nNote: Some servers support undelete if needed."

    if action == "undelete":
        result = await micropub.undelete_entry(url)
        if not result.success:
            raise ToolError(f"Restore failed: {result.error}")
        return f"Restored: {url}" if response_format == "concise" else f"Post restored successfully\n\nURL: {url}"

    raise ToolError(f"Unknown action: {action}")


# ---------------------------------------------------------------------------
# micropub_discover / micropub_auth_status
# ---------------------------------------------------------------------------

async def micropub_discover(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> str:
    try:
        endpoints = await discover_endpoints(url, client=client, timeout=timeout)
    except DiscoveryError as e:
        raise ToolError(f"Discovery failed: {e}") from e

    lines = [
        f"Discovered endpoints for {endpoints.me}:",
        "",
        f"Micropub: {endpoints.micropub_endpoint or 'Not found'}",
        f"Authorization: {endpoints.authorization_endpoint or 'Not found'}",
        f"Token: {endpoints.token_endpoint or 'Not found'}",
        "",
    ]
    if not endpoints.micropub_endpoint:
        lines.append("This site does not appear to support Micropub.")
    elif not endpoints.authorization_endpoint or not endpoints.token_endpoint:
        lines.append("IndieAuth endpoints not found. Site may use different authentication.")
    else:
        lines.append("Site supports Micropub. Connect this server to sign in with it.")
    return "\n".join(lines)


def micropub_auth_status(ctx: AuthContext | None, now: float | None = None) -> str:
    if ctx is None:
        return NOT_AUTHENTICATED

    lines = [
        f"Connected to: {ctx.me}",
        f"Scopes: {ctx.scope or '(none)'}",
        f"Micropub endpoint: {ctx.micropub_endpoint}",
        f"Media endpoint: {ctx.media_endpoint or 'Not available'}",
    ]
    if ctx.token_expires_at is None:
        lines.append("Token expires: never")
    else:
        expires = datetime.fromtimestamp(ctx.token_expires_at, tz=timezone.utc)
        state = "expired" if ctx.is_expired(now) else "valid"
        lines.append(f"Token expires: {expires.isoformat(timespec='seconds')} ({state})")
    lines.append(f"Refresh available: {'yes' if ctx.can_refresh else 'no'}")
    return "\n".join(lines)
