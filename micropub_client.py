"""
micropub_client.py — Thin client for one Micropub endpoint and one bearer token.

Implements https://micropub.spec.indieweb.org/ (JSON syntax). Post operations
return a MicropubResult instead of raising; queries raise MicropubError.
"""

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

import httpclient

logger = logging.getLogger("micropub-client")


class MicropubError(Exception):
    """A Micropub query failed."""


@dataclass
class MicropubResult:
    success: bool
    location: str | None = None
    error: str | None = None


def normalize_properties(properties: dict[str, Any]) -> dict[str, list]:
    """Micropub properties are always list-valued on the wire."""
    return {k: v if isinstance(v, list) else [v] for k, v in properties.items()}


class MicropubClient:
    def __init__(
        self,
        endpoint: str,
        access_token: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = httpclient.DEFAULT_TIMEOUT,
    ):
        self.endpoint = endpoint
        self._access_token = access_token
        self._client = client
        self._timeout = timeout

    def __repr__(self) -> str:
        return f"MicropubClient({self.endpoint!r})"

    @property
    def _auth_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _post(self, body: dict[str, Any]) -> MicropubResult:
        headers = {**self._auth_header, "Accept": "application/json"}
        async with httpclient.session(self._client, self._timeout) as http:
            try:
                response = await http.post(self.endpoint, json=body, headers=headers)
            except httpx.HTTPError as e:
                logger.warning("micropub %s failed: %s", _action(body), e)
                return MicropubResult(success=False, error=f"Request failed: {e}")

        if response.status_code in (201, 202):
            return MicropubResult(success=True, location=response.headers.get("location"))
        if response.status_code in (200, 204):
            return MicropubResult(success=True)

        error = httpclient.error_message(response, f"HTTP {response.status_code}")
        logger.info("micropub %s rejected by %s: HTTP %d",
                    _action(body), urlsplit(self.endpoint).netloc, response.status_code)
        return MicropubResult(success=False, error=error)

    # --- Posts ---

    async def create_entry(self, properties: dict[str, Any]) -> MicropubResult:
        return await self._post({
            "type": ["h-entry"],
            "properties": normalize_properties(properties),
        })

    async def update_entry(
        self,
        url: str,
        *,
        replace: dict[str, Any] | None = None,
        add: dict[str, Any] | None = None,
        delete: list[str] | dict[str, Any] | None = None,
    ) -> MicropubResult:
        """Update a post. `delete` is a list of property names or per-value removals."""
        body: dict[str, Any] = {"action": "update", "url": url}
        if replace:
            body["replace"] = normalize_properties(replace)
        if add:
            body["add"] = normalize_properties(add)
        if delete:
            body["delete"] = list(delete) if isinstance(delete, list) else normalize_properties(delete)
        return await self._post(body)

    async def delete_entry(self, url: str) -> MicropubResult:
        return await self._post({"action": "delete", "url": url})

    async def undelete_entry(self, url: str) -> MicropubResult:
        return await self._post({"action": "undelete", "url": url})

    # --- Queries ---

    async def query(self, query_type: str, params: dict[str, str] | None = None) -> Any:
        """GET ?q=<query_type> and return the decoded JSON body as-is.

        Raises:
            MicropubError: transport failure, non-2xx reply or non-JSON body.
        """
        # params= would replace a query string already on the endpoint
        url = httpx.URL(self.endpoint).copy_merge_params({"q": query_type, **(params or {})})
        headers = {**self._auth_header, "Accept": "application/json"}
        async with httpclient.session(self._client, self._timeout) as http:
            try:
                response = await http.get(url, headers=headers)
            except httpx.HTTPError as e:
                raise MicropubError(f"Query failed: {e}") from e

        if not response.is_success:
            raise MicropubError(
                httpclient.error_message(response, f"Query failed: HTTP {response.status_code}")
            )
        try:
            return response.json()
        except ValueError as e:
            raise MicropubError("Query response is not valid JSON") from e

    async def get_config(self) -> dict[str, Any]:
        return await self.query("config")

    async def get_source(self, url: str, properties: list[str] | None = None) -> dict[str, Any]:
        params = {"url": url}
        if properties:
            # some servers read properties[], others properties
            params["properties[]"] = ",".join(properties)
        return await self.query("source", params)

    # --- Media ---

    async def upload_media(
        self,
        media_endpoint: str,
        content: bytes,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> MicropubResult:
        """Multipart upload of `content` as the `file` field. Success is 201 + Location."""
        async with httpclient.session(self._client, self._timeout) as http:
            try:
                response = await http.post(
                    media_endpoint,
                    files={"file": (filename, content, content_type)},
                    headers=self._auth_header,
                )
            except httpx.HTTPError as e:
                return MicropubResult(success=False, error=f"Request failed: {e}")

        if response.status_code == 201:
            location = response.headers.get("location")
            if not location:
                return MicropubResult(
                    success=False,
                    error="Upload succeeded but no URL was returned by the server.",
                )
            logger.info("media uploaded: %s (%d bytes)", filename, len(content))
            return MicropubResult(success=True, location=location)

        return MicropubResult(
            success=False,
            error=httpclient.error_message(response, f"HTTP {response.status_code}"),
        )


def _action(body: dict[str, Any]) -> str:
    return body.get("action", "create")
