"""
pages.py — HTML served to the browser during sign-in, plus the service page.

Every interpolated value goes through html.escape: error descriptions, codes
and state values arrive from third-party redirects.
"""

import html as html_mod
from urllib.parse import urlencode

SERVER_INFO = {
    "name": "Micropub MCP",
    "description": "MCP server for publishing to IndieWeb sites via Micropub",
    "protocols": {
        "micropub": "https://micropub.spec.indieweb.org/",
        "indieauth": "https://indieauth.spec.indieweb.org/",
        "mcp": "https://modelcontextprotocol.io/",
    },
}

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 440px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); }
        .card.error { border-color: #ff4444; text-align: center; }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }
        .error h1 { color: #ff4444; }
        a { color: #00d4ff; }
"""


def login_page(
    query: dict[str, str],
    scope: str,
    server_name: str = SERVER_INFO["name"],
    login_path: str = "/login",
) -> str:
    """Website entry form. `query` is the upstream request, re-posted to `login_path`."""
    action = html_mod.escape(f"{login_path}?{urlencode(query)}", quote=True)
    safe_scope = html_mod.escape(scope)
    safe_name = html_mod.escape(server_name)
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>{safe_name} — Sign in with your website</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}
        .subtitle {{ color: #aaa; margin-bottom: 1.5rem; }}
        form {{ display: flex; flex-direction: column; gap: 0.8rem; }}
        input[type="url"] {{ padding: 0.7rem; border: 1px solid #2a2a4a; border-radius: 8px;
            background: #12122a; color: #e0e0e0; font-size: 1rem; }}
        button {{ padding: 0.75rem; border: none; border-radius: 8px; font-size: 1rem;
            cursor: pointer; font-weight: 600; background: #00d4ff; color: #0a0a1a; }}
        button:hover {{ background: #00b8e6; }}
        .info {{ background: #12122a; border: 1px solid #2a2a4a; border-radius: 8px;
            padding: 1rem; margin-top: 1.5rem; font-size: 0.9rem; }}
        .scopes {{ font-family: monospace; color: #ff6b9d; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>Sign in with your website</h1>
        <p class="subtitle">Connect your IndieWeb site to publish through {safe_name}.</p>
        <form method="POST" action="{action}">
            <label for="me">Your website URL</label>
            <input type="url" id="me" name="me" placeholder="https://example.com"
                required autocomplete="url">
            <button type="submit">Continue with IndieAuth</button>
        </form>
        <div class="info">
            <p>You'll be redirected to your site's IndieAuth provider to authorize access.</p>
            <p>Requested permissions: <span class="scopes">{safe_scope}</span></p>
        </div>
    </div>
</body>
</html>"""


def error_page(title: str, message: str, retry_url: str | None = None) -> str:
    safe_title = html_mod.escape(title)
    safe_msg = html_mod.escape(message)
    if retry_url:
        link = f'<a href="{html_mod.escape(retry_url, quote=True)}">Try again</a>'
    else:
        link = "Return to your application and start the sign-in again."
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>Micropub MCP — {safe_title}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card error">
        <h1>{safe_title}</h1>
        <p>{safe_msg}</p>
        <p style="margin-top:1.5rem">{link}</p>
    </div>
</body>
</html>"""


def service_info(base_url: str, server_name: str = SERVER_INFO["name"]) -> dict:
    return {
        **SERVER_INFO,
        "name": server_name,
        "endpoints": {
            "mcp": f"{base_url}/mcp",
            "authorize": f"{base_url}/authorize",
            "callback": f"{base_url}/indieauth-callback",
        },
    }


def service_page(base_url: str, server_name: str = SERVER_INFO["name"]) -> str:
    """h-app page; IndieAuth servers fetch the client_id URL to identify us."""
    info = service_info(base_url, server_name)
    esc = html_mod.escape
    endpoints = "\n".join(
        f"                <dt>{esc(name)}</dt><dd><code>{esc(url)}</code></dd>"
        for name, url in info["endpoints"].items()
    )
    protocols = "\n".join(
        f'                <li><a href="{esc(url, quote=True)}">{esc(name)}</a></li>'
        for name, url in info["protocols"].items()
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="utf-8">
    <title>{esc(info["name"])}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <link rel="redirect_uri" href="{esc(info["endpoints"]["callback"], quote=True)}">
    <style>{_STYLE}
        code {{ background: #12122a; padding: 0.1rem 0.3rem; border-radius: 4px; }}
        dd {{ margin: 0 0 0.5rem 0; }}
    </style>
</head>
<body>
    <div class="card h-app">
        <h1 class="p-name">{esc(info["name"])}</h1>
        <p class="p-summary">{esc(info["description"])}</p>
        <a href="{esc(base_url, quote=True)}/" class="u-url" rel="canonical">{esc(base_url)}/</a>
        <h2>Endpoints</h2>
            <dl>
{endpoints}
            </dl>
        <h2>Protocols</h2>
            <ul>
{protocols}
            </ul>
    </div>
</body>
</html>"""
