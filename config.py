"""
config.py — Server settings from micropub.yaml and MICROPUB_* environment variables.

Environment variables win over the file. The file is optional unless named
explicitly (argument or MICROPUB_CONFIG), in which case it must exist.

    issuer_url:   https://micropub-mcp.example.com   # MICROPUB_ISSUER_URL
    http_timeout: 10                                  # MICROPUB_HTTP_TIMEOUT
    pending_ttl:  600                                 # MICROPUB_PENDING_TTL
    scopes:       [create, update, delete, media]     # MICROPUB_SCOPES
    server_name:  Micropub MCP                        # MICROPUB_SERVER_NAME
    audit_log:    ~/.micropub-mcp/audit.log           # MICROPUB_AUDIT_LOG
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from models import DEFAULT_SCOPES

DEFAULT_CONFIG_PATH = Path(__file__).parent / "micropub.yaml"
DEFAULT_ISSUER_URL = "http://localhost:8222"

_ENV = {
    "issuer_url": "MICROPUB_ISSUER_URL",
    "http_timeout": "MICROPUB_HTTP_TIMEOUT",
    "pending_ttl": "MICROPUB_PENDING_TTL",
    "scopes": "MICROPUB_SCOPES",
    "server_name": "MICROPUB_SERVER_NAME",
    "audit_log": "MICROPUB_AUDIT_LOG",
}


@dataclass
class Settings:
    issuer_url: str = DEFAULT_ISSUER_URL
    http_timeout: float = 10.0
    pending_ttl: int = 600
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    server_name: str = "Micropub MCP"
    audit_log: Path = field(default_factory=lambda: Path.home() / ".micropub-mcp" / "audit.log")

    @property
    def base_url(self) -> str:
        return self.issuer_url.rstrip("/")


def _coerce(name: str, value: Any, source: str) -> Any:
    try:
        if name == "http_timeout":
            value = float(value)
            if value <= 0:
                raise ValueError
        elif name == "pending_ttl":
            value = int(value)
            if value <= 0:
                raise ValueError
        elif name == "scopes":
            scopes = value.split() if isinstance(value, str) else [str(s) for s in value]
            if not scopes:
                raise ValueError
            value = scopes
        elif name == "audit_log":
            value = Path(str(value)).expanduser()
        else:
            value = str(value).strip()
            if not value:
                raise ValueError
    except (TypeError, ValueError):
        raise SystemExit(f"Invalid {name} in {source}: {value!r}")
    return value


def _read_file(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SystemExit(f"Invalid YAML in {config_path}: {e}")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid {config_path.name}: expected a mapping of settings in {config_path}")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise SystemExit(
            f"Unknown setting(s) in {config_path}: {', '.join(unknown)}. "
            f"Valid options: {', '.join(sorted(known))}"
        )
    return {k: _coerce(k, v, str(config_path)) for k, v in raw.items()}


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings: defaults, then the YAML file, then the environment."""
    env = os.environ if environ is None else environ

    explicit = config_path is not None or bool(env.get("MICROPUB_CONFIG"))
    if config_path is None:
        config_path = Path(env["MICROPUB_CONFIG"]) if env.get("MICROPUB_CONFIG") else DEFAULT_CONFIG_PATH

    values: dict[str, Any] = {}
    if config_path.exists():
        values.update(_read_file(config_path))
    elif explicit:
        raise SystemExit(f"Config file not found: {config_path}")

    for name, var in _ENV.items():
        if env.get(var):
            values[name] = _coerce(name, env[var], var)

    return Settings(**values)
