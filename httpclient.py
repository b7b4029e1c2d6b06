"""
httpclient.py — Outbound HTTP plumbing shared by discovery, IndieAuth and Micropub.

Every outbound call is a single-shot request with a bounded timeout and no
retry. Callers may pass their own httpx.AsyncClient; otherwise a short-lived
one is opened for the call.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

DEFAULT_TIMEOUT = 10.0  # seconds
USER_AGENT = "micropub-mcp/1.0 (+https://indieweb.org/Micropub)"


@asynccontextmanager
async def session(
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=timeout, headers={"User-Agent": USER_AGENT},
    ) as owned:
        yield owned


def error_message(response: httpx.Response, default: str) -> str:
    """Best human-readable error from a failed response.

    Precedence: JSON error_description, JSON error, raw body text, default.
    """
    try:
        body: Any = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("error_description") or body.get("error")
        if message:
            return str(message)
        return default
    text = response.text.strip()
    return text or default
