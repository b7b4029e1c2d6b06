"""
models.py — Data carried across the two OAuth handshakes.

  EndpointSet           — what discovery found for one site
  TokenResponse         — downstream token endpoint reply
  AuthRequestSnapshot   — upstream authorization request, reduced to plain fields
  PendingAuthorization  — short-lived bridge record, keyed by downstream state
  AuthProps             — durable props attached to a completed upstream grant
  AuthContext           — immutable view of AuthProps handed to tool operations

Secret fields (tokens, PKCE verifier) are excluded from repr so they never
reach logs through an f-string or a debugger dump.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

SNAPSHOT_VERSION = 1
DEFAULT_SCOPES = ["create", "update", "delete", "media"]


class EndpointSet(BaseModel):
    me: str
    micropub_endpoint: str | None = None
    media_endpoint: str | None = None
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None


class TokenResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str = Field(repr=False)
    token_type: str = "Bearer"
    scope: str = ""
    me: str = ""
    expires_in: int | None = None
    refresh_token: str | None = Field(default=None, repr=False)

    @field_validator("token_type", "scope", "me", mode="before")
    @classmethod
    def _null_is_default(cls, value: Any, info: ValidationInfo) -> Any:
        # JSON null means absent
        return cls.model_fields[info.field_name].default if value is None else value


class AuthRequestSnapshot(BaseModel):
    """Serializable copy of a validated upstream authorization request.

    Version 1 shape. Must survive a round trip through query parameters (the
    login form) and JSON (the pending store) without losing anything needed
    to complete the grant later.
    """

    version: int = SNAPSHOT_VERSION
    response_type: str = "code"
    client_id: str
    redirect_uri: str
    redirect_uri_provided_explicitly: bool = True
    state: str | None = None
    scopes: list[str] = Field(default_factory=list)
    code_challenge: str | None = None
    code_challenge_method: str | None = "S256"
    resource: str | None = None

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def to_query(self) -> dict[str, str]:
        params = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "redirect_uri_provided_explicitly": "true" if self.redirect_uri_provided_explicitly else "false",
        }
        if self.state:
            params["state"] = self.state
        if self.scopes:
            params["scope"] = self.scope
        if self.code_challenge:
            params["code_challenge"] = self.code_challenge
        if self.code_challenge_method:
            params["code_challenge_method"] = self.code_challenge_method
        if self.resource:
            params["resource"] = self.resource
        return params

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "AuthRequestSnapshot":
        """Rebuild from query parameters. Raises pydantic.ValidationError."""
        explicit = params.get("redirect_uri_provided_explicitly", "true").lower()
        return cls.model_validate({
            "response_type": params.get("response_type", "code"),
            "client_id": params.get("client_id"),
            "redirect_uri": params.get("redirect_uri"),
            "redirect_uri_provided_explicitly": explicit != "false",
            "state": params.get("state") or None,
            "scopes": (params.get("scope") or "").split(),
            "code_challenge": params.get("code_challenge") or None,
            "code_challenge_method": params.get("code_challenge_method") or None,
            "resource": params.get("resource") or None,
        })


class PendingAuthorization(BaseModel):
    me: str
    endpoints: EndpointSet
    code_verifier: str = Field(repr=False)
    auth_request: AuthRequestSnapshot
    created_at: float = Field(default_factory=time.time)


class AuthProps(BaseModel):
    """Props stored with an upstream grant. Never shown to the tool client."""

    me: str
    micropub_endpoint: str
    media_endpoint: str | None = None
    indieauth_token: str = Field(repr=False)
    token_type: str = "Bearer"
    scope: str = ""
    refresh_token: str | None = Field(default=None, repr=False)
    token_expires_at: float | None = None
    token_endpoint: str | None = None


@dataclass(frozen=True)
class AuthContext:
    me: str
    micropub_endpoint: str
    token: str = field(repr=False)
    media_endpoint: str | None = None
    scope: str = ""
    token_expires_at: float | None = None
    token_endpoint: str | None = None
    can_refresh: bool = False

    @classmethod
    def from_props(cls, props: AuthProps) -> "AuthContext":
        return cls(
            me=props.me,
            micropub_endpoint=props.micropub_endpoint,
            token=props.indieauth_token,
            media_endpoint=props.media_endpoint,
            scope=props.scope,
            token_expires_at=props.token_expires_at,
            token_endpoint=props.token_endpoint,
            can_refresh=bool(props.refresh_token and props.token_endpoint),
        )

    @property
    def scopes(self) -> list[str]:
        return self.scope.split()

    def is_expired(self, now: float | None = None) -> bool:
        if self.token_expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.token_expires_at
