"""Tests for discovery.py."""
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from discovery import (
    DiscoveryError,
    discover_endpoints,
    extract_html_link_rel,
    extract_link_rel,
    normalize_url,
    resolve_url,
)

SITE = "https://alice.example/"
LINK_HEADER = (
    '<https://alice.example/micropub>; rel="micropub", '
    '<https://alice.example/auth>; rel="authorization_endpoint", '
    '<https://alice.example/token>; rel="token_endpoint"'
)


# ---------------------------------------------------------------------------
# normalize_url
# ---------------------------------------------------------------------------

class TestNormalizeUrl:
    def test_adds_scheme_and_slash(self):
        assert normalize_url("alice.example") == "https://alice.example/"

    def test_keeps_http(self):
        assert normalize_url("http://alice.example") == "http://alice.example/"

    def test_adds_slash_to_directory_path(self):
        assert normalize_url("https://alice.example/about") == "https://alice.example/about/"

    def test_keeps_file_path(self):
        assert normalize_url("https://alice.example/index.html") == "https://alice.example/index.html"

    def test_keeps_query(self):
        assert normalize_url("https://alice.example/?p=1") == "https://alice.example/?p=1"

    def test_strips_whitespace(self):
        assert normalize_url("  alice.example/ ") == "https://alice.example/"


# ---------------------------------------------------------------------------
# Link header
# ---------------------------------------------------------------------------

class TestExtractLinkRel:
    def test_finds_each_rel(self):
        assert extract_link_rel(LINK_HEADER, "micropub") == "https://alice.example/micropub"
        assert extract_link_rel(LINK_HEADER, "authorization_endpoint") == "https://alice.example/auth"
        assert extract_link_rel(LINK_HEADER, "token_endpoint") == "https://alice.example/token"

    def test_case_insensitive(self):
        assert extract_link_rel('<https://a.example/mp>; rel="Micropub"', "MICROPUB") == "https://a.example/mp"

    def test_space_separated_rels(self):
        header = '<https://a.example/mp>; rel="webmention micropub"'
        assert extract_link_rel(header, "micropub") == "https://a.example/mp"
        assert extract_link_rel(header, "webmention") == "https://a.example/mp"

    def test_unquoted_rel(self):
        assert extract_link_rel("<https://a.example/mp>; rel=micropub", "micropub") == "https://a.example/mp"

    def test_extra_params(self):
        header = '<https://a.example/mp>; type="text/html"; rel="micropub"'
        assert extract_link_rel(header, "micropub") == "https://a.example/mp"

    def test_missing_rel(self):
        assert extract_link_rel(LINK_HEADER, "webmention") is None
        assert extract_link_rel("", "micropub") is None

    def test_no_substring_match(self):
        assert extract_link_rel('<https://a.example/x>; rel="micropub-media"', "micropub") is None


# ---------------------------------------------------------------------------
# HTML <link>
# ---------------------------------------------------------------------------

class TestExtractHtmlLinkRel:
    @pytest.mark.parametrize("html", [
        '<link rel="micropub" href="https://a.example/mp">',
        '<link href="https://a.example/mp" rel="micropub">',
        "<link rel='micropub' href='https://a.example/mp'>",
        '<LINK REL="MicroPub" HREF="https://a.example/mp">',
        '<link rel="micropub" href="https://a.example/mp" />',
    ])
    def test_variants(self, html):
        page = f"<html><head>{html}</head><body></body></html>"
        assert extract_html_link_rel(page, "micropub") == "https://a.example/mp"

    def test_multi_value_rel(self):
        page = '<link rel="micropub webmention" href="https://a.example/both">'
        assert extract_html_link_rel(page, "micropub") == "https://a.example/both"
        assert extract_html_link_rel(page, "webmention") == "https://a.example/both"

    def test_ignores_anchors(self):
        page = '<a rel="micropub" href="https://a.example/nope">x</a>'
        assert extract_html_link_rel(page, "micropub") is None

    def test_first_match_wins(self):
        page = ('<link rel="micropub" href="https://a.example/one">'
                '<link rel="micropub" href="https://a.example/two">')
        assert extract_html_link_rel(page, "micropub") == "https://a.example/one"

    def test_missing(self):
        assert extract_html_link_rel("<html></html>", "micropub") is None


# ---------------------------------------------------------------------------
# resolve_url
# ---------------------------------------------------------------------------

class TestResolveUrl:
    def test_none(self):
        assert resolve_url(None, SITE) is None

    def test_root_relative(self):
        assert resolve_url("/micropub", "https://alice.example/blog/") == "https://alice.example/micropub"

    def test_absolute_passes_through(self):
        assert resolve_url("https://other.example/mp", SITE) == "https://other.example/mp"

    def test_protocol_relative(self):
        assert resolve_url("//cdn.example/mp", "http://alice.example/") == "http://cdn.example/mp"


# ---------------------------------------------------------------------------
# discover_endpoints
# ---------------------------------------------------------------------------

class TestDiscoverEndpoints:
    @pytest.mark.asyncio
    async def test_link_headers(self, web):
        web.add(SITE, headers={"Link": LINK_HEADER}, body="<html></html>")
        async with web.client() as client:
            endpoints = await discover_endpoints("alice.example", client=client)
        assert endpoints.me == SITE
        assert endpoints.micropub_endpoint == "https://alice.example/micropub"
        assert endpoints.authorization_endpoint == "https://alice.example/auth"
        assert endpoints.token_endpoint == "https://alice.example/token"

    @pytest.mark.asyncio
    async def test_html_fallback_resolves_relative(self, web):
        web.add(SITE, body=(
            '<html><head>'
            '<link rel="micropub" href="/micropub">'
            '<link rel="authorization_endpoint" href="https://auth.example/auth">'
            '<link rel="token_endpoint" href="//auth.example/token">'
            '</head></html>'
        ))
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.micropub_endpoint == "https://alice.example/micropub"
        assert endpoints.authorization_endpoint == "https://auth.example/auth"
        assert endpoints.token_endpoint == "https://auth.example/token"

    @pytest.mark.asyncio
    async def test_header_wins_over_html(self, web):
        web.add(SITE, headers={"Link": '<https://alice.example/hdr>; rel="micropub"'},
                body='<link rel="micropub" href="https://alice.example/html">')
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.micropub_endpoint == "https://alice.example/hdr"

    @pytest.mark.asyncio
    async def test_metadata_overrides_legacy(self, web):
        web.add(SITE, headers={"Link": LINK_HEADER + ', </.well-known/oauth>; rel="indieauth-metadata"'})
        web.add("https://alice.example/.well-known/oauth", body={
            "issuer": SITE,
            "authorization_endpoint": "https://alice.example/v2/auth",
            "token_endpoint": "https://alice.example/v2/token",
        })
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.authorization_endpoint == "https://alice.example/v2/auth"
        assert endpoints.token_endpoint == "https://alice.example/v2/token"
        assert endpoints.micropub_endpoint == "https://alice.example/micropub"

    @pytest.mark.asyncio
    async def test_metadata_link_in_html(self, web):
        web.add(SITE, body=(
            '<link rel="indieauth-metadata" href="/meta">'
            '<link rel="micropub" href="/micropub">'
        ))
        web.add("https://alice.example/meta", body={
            "authorization_endpoint": "/auth",
            "token_endpoint": "/token",
        })
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.authorization_endpoint == "https://alice.example/auth"
        assert endpoints.token_endpoint == "https://alice.example/token"

    @pytest.mark.asyncio
    async def test_metadata_failure_keeps_legacy(self, web):
        web.add(SITE, headers={"Link": LINK_HEADER + ', <https://alice.example/meta>; rel="indieauth-metadata"'})
        web.add("https://alice.example/meta", status=500, body="boom")
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.authorization_endpoint == "https://alice.example/auth"
        assert endpoints.token_endpoint == "https://alice.example/token"

    @pytest.mark.asyncio
    async def test_metadata_not_json_keeps_legacy(self, web):
        web.add(SITE, headers={"Link": LINK_HEADER + ', <https://alice.example/meta>; rel="indieauth-metadata"'})
        web.add("https://alice.example/meta", body="<html>not json</html>")
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.token_endpoint == "https://alice.example/token"

    @pytest.mark.asyncio
    async def test_metadata_wrong_types_keep_legacy(self, web):
        web.add(SITE, headers={"Link": LINK_HEADER + ', <https://alice.example/meta>; rel="indieauth-metadata"'})
        web.add("https://alice.example/meta", body={
            "authorization_endpoint": ["https://alice.example/v2/auth"],
            "token_endpoint": {"url": "https://alice.example/v2/token"},
        })
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.authorization_endpoint == "https://alice.example/auth"
        assert endpoints.token_endpoint == "https://alice.example/token"

    @pytest.mark.asyncio
    async def test_metadata_partial_override(self, web):
        web.add(SITE, headers={"Link": LINK_HEADER + ', <https://alice.example/meta>; rel="indieauth-metadata"'})
        web.add("https://alice.example/meta", body={
            "authorization_endpoint": "https://alice.example/v2/auth",
            "token_endpoint": 42,
        })
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.authorization_endpoint == "https://alice.example/v2/auth"
        assert endpoints.token_endpoint == "https://alice.example/token"

    @pytest.mark.asyncio
    async def test_redirect_sets_me(self, web):
        web.add(SITE, status=301, headers={"Location": "https://www.alice.example/"})
        web.add("https://www.alice.example/", headers={"Link": '</micropub>; rel="micropub"'})
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.me == "https://www.alice.example/"
        assert endpoints.micropub_endpoint == "https://www.alice.example/micropub"

    @pytest.mark.asyncio
    async def test_plain_site_is_not_an_error(self, web):
        web.add(SITE, body="<html><body>hello</body></html>")
        async with web.client() as client:
            endpoints = await discover_endpoints(SITE, client=client)
        assert endpoints.me == SITE
        assert endpoints.micropub_endpoint is None
        assert endpoints.authorization_endpoint is None
        assert endpoints.token_endpoint is None
        assert endpoints.media_endpoint is None

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self, web):
        web.add(SITE, status=404, body="gone")
        async with web.client() as client:
            with pytest.raises(DiscoveryError, match="Failed to fetch https://alice.example/: HTTP 404"):
                await discover_endpoints(SITE, client=client)

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(DiscoveryError, match="connection refused"):
                await discover_endpoints(SITE, client=client)
