"""
discovery.py — Micropub and IndieAuth endpoint discovery for a user's site.

Sources, in priority order:
  1. HTTP Link headers
  2. HTML <link rel=...> elements
  3. The IndieAuth metadata document (rel="indieauth-metadata"), whose
     authorization_endpoint / token_endpoint override 1 and 2.

A site without Micropub or IndieAuth endpoints is a normal outcome, reported
through the None fields of EndpointSet. Only an unreachable site raises.
"""

import logging
import re
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx
from bs4 import BeautifulSoup

import httpclient
from models import EndpointSet

logger = logging.getLogger("micropub-discovery")

METADATA_REL = "indieauth-metadata"
_LINK_TARGET = re.compile(r"<([^>]+)>")


class DiscoveryError(Exception):
    """The site could not be fetched (network failure or non-2xx)."""


def normalize_url(site: str) -> str:
    """Add a scheme if missing; add a trailing slash to extension-less paths."""
    url = site.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    parts = urlsplit(url)
    if parts.query:
        return url
    path = parts.path
    last_segment = path.rsplit("/", 1)[-1]
    if "." in last_segment:
        return url
    if not path.endswith("/"):
        path += "/"
    return urlunsplit((parts.scheme, parts.netloc, path, "", parts.fragment))


def extract_link_rel(header: str, rel: str) -> str | None:
    """Find the target of `rel` in a Link header value.

    Rel matching is case-insensitive, accepts quoted or bare values and any
    one token of a space-separated rel list.
    """
    wanted = rel.lower()
    for link in header.split(","):
        parts = link.strip().split(";")
        if len(parts) < 2:
            continue
        target = _LINK_TARGET.search(parts[0])
        if not target:
            continue
        for param in parts[1:]:
            name, _, value = param.strip().partition("=")
            if name.strip().lower() != "rel":
                continue
            rels = value.strip().strip("\"'").lower().split()
            if wanted in rels:
                return target.group(1)
    return None


def _find_link(soup: BeautifulSoup, rel: str) -> str | None:
    wanted = rel.lower()
    for link in soup.find_all("link", href=True):
        rels = link.get("rel") or []
        if isinstance(rels, str):
            rels = rels.split()
        if wanted in (r.lower() for r in rels):
            return link["href"]
    return None


def extract_html_link_rel(html: str, rel: str) -> str | None:
    """Find the href of the first <link> whose rel list contains `rel`."""
    return _find_link(BeautifulSoup(html, "html.parser"), rel)


def resolve_url(url: str | None, base: str) -> str | None:
    """Resolve relative and protocol-relative URLs against `base`."""
    if not url:
        return None
    return urljoin(base, url)


async def _fetch_metadata(client: httpx.AsyncClient, url: str) -> dict:
    response = await client.get(
        url, headers={"Accept": "application/json"}, follow_redirects=True,
    )
    response.raise_for_status()
    metadata = response.json()
    if not isinstance(metadata, dict):
        raise ValueError("IndieAuth metadata is not a JSON object")
    return metadata


async def discover_endpoints(
    site: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = httpclient.DEFAULT_TIMEOUT,
) -> EndpointSet:
    """Discover the endpoints advertised by `site`.

    Raises:
        DiscoveryError: the site could not be fetched.
    """
    url = normalize_url(site)

    async with httpclient.session(client, timeout) as http:
        try:
            response = await http.get(
                url, headers={"Accept": "text/html"}, follow_redirects=True,
            )
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Failed to fetch {url}: {e}") from e
        if not response.is_success:
            raise DiscoveryError(
                f"Failed to fetch {url}: HTTP {response.status_code} {response.reason_phrase}".rstrip()
            )

        me = str(response.url)
        found: dict[str, str | None] = {}
        metadata_url = None

        link_header = response.headers.get("link")
        if link_header:
            metadata_url = extract_link_rel(link_header, METADATA_REL)
            found["micropub"] = extract_link_rel(link_header, "micropub")
            found["authorization_endpoint"] = extract_link_rel(link_header, "authorization_endpoint")
            found["token_endpoint"] = extract_link_rel(link_header, "token_endpoint")

        soup = BeautifulSoup(response.text, "html.parser")
        if not metadata_url:
            metadata_url = _find_link(soup, METADATA_REL)
        for rel in ("micropub", "authorization_endpoint", "token_endpoint"):
            if not found.get(rel):
                found[rel] = _find_link(soup, rel)

        if metadata_url:
            metadata_url = resolve_url(metadata_url, me)
            try:
                metadata = await _fetch_metadata(http, metadata_url)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("discovery: metadata fetch failed for %s: %s", me, e)
            else:
                for rel in ("authorization_endpoint", "token_endpoint"):
                    value = metadata.get(rel)
                    if isinstance(value, str) and value.strip():
                        found[rel] = value.strip()
                    elif value is not None and not isinstance(value, str):
                        logger.warning("discovery: ignoring non-string %s in metadata for %s", rel, me)

    endpoints = EndpointSet(
        me=me,
        micropub_endpoint=resolve_url(found.get("micropub"), me),
        authorization_endpoint=resolve_url(found.get("authorization_endpoint"), me),
        token_endpoint=resolve_url(found.get("token_endpoint"), me),
    )
    logger.info(
        "discovery: me=%s micropub=%s authorization=%s token=%s metadata=%s",
        me,
        _host(endpoints.micropub_endpoint),
        _host(endpoints.authorization_endpoint),
        _host(endpoints.token_endpoint),
        "yes" if metadata_url else "no",
    )
    return endpoints


def _host(url: str | None) -> str:
    return urlsplit(url).netloc if url else "none"
