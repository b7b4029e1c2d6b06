"""Tests for pages.py."""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pages import error_page, login_page, service_info, service_page

BASE = "https://mcp.example"


class TestLoginPage:
    def test_action_carries_request(self):
        page = login_page({"client_id": "c1", "state": "a&b"}, "create media")
        assert 'action="/login?client_id=c1&amp;state=a%26b"' in page
        assert 'name="me"' in page
        assert "create media" in page

    def test_action_uses_login_path(self):
        page = login_page({"client_id": "c1"}, "create", login_path="/auth/login")
        assert 'action="/auth/login?client_id=c1"' in page
        assert 'action="/login?' not in page

    def test_escapes_scope_and_name(self):
        page = login_page({}, "<b>", server_name="A & B")
        assert "&lt;b&gt;" in page
        assert "A &amp; B" in page
        assert "<b>" not in page


class TestErrorPage:
    def test_escapes_everything(self):
        page = error_page("<t>", "x \" ' & <y>", retry_url='/login?a=1&b="2"')
        assert "&lt;t&gt;" in page
        assert "x &quot; &#x27; &amp; &lt;y&gt;" in page
        assert 'href="/login?a=1&amp;b=&quot;2&quot;"' in page

    def test_without_retry(self):
        page = error_page("Session expired", "gone")
        assert "Try again" not in page
        assert "start the sign-in again" in page


class TestServicePage:
    def test_info(self):
        info = service_info(BASE, "My Server")
        assert info["name"] == "My Server"
        assert info["endpoints"] == {
            "mcp": f"{BASE}/mcp",
            "authorize": f"{BASE}/authorize",
            "callback": f"{BASE}/indieauth-callback",
        }

    def test_h_app_markup(self):
        page = service_page(BASE)
        assert 'class="card h-app"' in page
        assert 'class="p-name"' in page
        assert f'href="{BASE}/" class="u-url"' in page
        assert f'<link rel="redirect_uri" href="{BASE}/indieauth-callback">' in page
