"""Discovery configuration model.

A :class:`DiscoveryConfig` is a frozen value: every change (defaults,
a resolved region, a runtime update) produces a new instance, so a poll
cycle that captured one never sees it change underneath it.

Typical flow::

    cfg = DiscoveryConfig.load("discovery.json")
    cfg = apply_defaults(cfg)
    cfg = await validate(cfg)
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import httpx

from beacon.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "ec2"
DEFAULT_REFRESH_INTERVAL = 60.0
DEFAULT_PORT = 80

#: Each poll must finish within this fraction of the refresh interval.
POLL_TIMEOUT_FRACTION = 0.9

_PROXY_SCHEMES = ("http", "https", "socks5")

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
    "w": 604800.0,
}


def parse_duration(value: Any) -> float:
    """Parse ``60``, ``"60s"``, ``"1m30s"`` or ``"500ms"`` into seconds."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ConfigurationError(f"invalid duration: {value!r}")

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(text):
        raise ConfigurationError(f"invalid duration: {value!r}")
    return total


def poll_timeout(refresh_interval: float) -> float:
    return refresh_interval * POLL_TIMEOUT_FRACTION


# ── HTTP client block ──────────────────────────────────────────────


@dataclass(frozen=True)
class BasicAuth:
    username: str = ""
    password: str = field(default="", repr=False)
    password_file: str = ""


@dataclass(frozen=True)
class TLSConfig:
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    server_name: str = ""
    insecure_skip_verify: bool = False


@dataclass(frozen=True)
class HTTPClientConfig:
    """Shared HTTP client settings used to reach a discovery backend."""

    bearer_token: str = field(default="", repr=False)
    bearer_token_file: str = ""
    basic_auth: BasicAuth | None = None
    tls_config: TLSConfig = field(default_factory=TLSConfig)
    proxy_url: str = ""
    follow_redirects: bool = True
    enable_http2: bool = True

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` on conflicting settings."""
        auth_methods = [
            name
            for name, is_set in (
                ("bearer_token", bool(self.bearer_token)),
                ("bearer_token_file", bool(self.bearer_token_file)),
                ("basic_auth", self.basic_auth is not None),
            )
            if is_set
        ]
        if len(auth_methods) > 1:
            raise ConfigurationError(
                "at most one of bearer_token, bearer_token_file and basic_auth "
                f"must be configured (got {', '.join(auth_methods)})"
            )
        if self.basic_auth is not None and self.basic_auth.password and self.basic_auth.password_file:
            raise ConfigurationError(
                "at most one of basic_auth password and password_file must be configured"
            )
        if bool(self.tls_config.cert_file) != bool(self.tls_config.key_file):
            raise ConfigurationError(
                "tls_config requires both cert_file and key_file, or neither"
            )
        if self.proxy_url:
            parsed = urlparse(self.proxy_url)
            if parsed.scheme not in _PROXY_SCHEMES or not parsed.netloc:
                raise ConfigurationError(
                    f"invalid proxy_url {self.proxy_url!r}: expected one of "
                    f"{', '.join(_PROXY_SCHEMES)} with a host"
                )

    def client_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for :class:`httpx.AsyncClient`."""
        kwargs: dict[str, Any] = {
            "follow_redirects": self.follow_redirects,
            "http2": self.enable_http2,
        }

        headers: dict[str, str] = {}
        token = self.bearer_token
        if self.bearer_token_file:
            token = _read_secret_file(self.bearer_token_file)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if headers:
            kwargs["headers"] = headers

        if self.basic_auth is not None:
            password = self.basic_auth.password
            if self.basic_auth.password_file:
                password = _read_secret_file(self.basic_auth.password_file)
            kwargs["auth"] = httpx.BasicAuth(self.basic_auth.username, password)

        tls = self.tls_config
        if tls.insecure_skip_verify:
            kwargs["verify"] = False
        elif tls.ca_file or tls.cert_file:
            context = ssl.create_default_context(cafile=tls.ca_file or None)
            if tls.cert_file:
                context.load_cert_chain(tls.cert_file, tls.key_file)
            kwargs["verify"] = context

        if self.proxy_url:
            kwargs["proxy"] = self.proxy_url
        return kwargs

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HTTPClientConfig:
        values: dict[str, Any] = {}
        for key in ("bearer_token", "bearer_token_file", "proxy_url"):
            if key in data:
                values[key] = str(data[key])
        for key in ("follow_redirects", "enable_http2"):
            if key in data:
                values[key] = bool(data[key])
        if data.get("basic_auth") is not None:
            values["basic_auth"] = _build(BasicAuth, data["basic_auth"], "basic_auth")
        if data.get("tls_config") is not None:
            values["tls_config"] = _build(TLSConfig, data["tls_config"], "tls_config")
        return cls(**values)


DEFAULT_HTTP_CLIENT_CONFIG = HTTPClientConfig()

_HTTP_CLIENT_KEYS = {f.name for f in dataclasses.fields(HTTPClientConfig)}


def _read_secret_file(path: str) -> str:
    try:
        return Path(path).read_text().strip()
    except OSError as exc:
        raise ConfigurationError(f"cannot read secret file {path}: {exc}") from exc


def _build(cls: type, data: Any, name: str) -> Any:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{name} must be an object")
    known = {f.name for f in dataclasses.fields(cls)}
    try:
        return cls(**{k: v for k, v in data.items() if k in known})
    except TypeError as exc:
        raise ConfigurationError(f"invalid {name}: {exc}") from exc


# ── Discovery configuration ────────────────────────────────────────


@dataclass(frozen=True)
class Filter:
    """Narrows discovered targets to those whose *name* has one of *values*."""

    name: str
    values: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> Filter:
        if not isinstance(data, Mapping):
            raise ConfigurationError("filter must be an object with name and values")
        values = data.get("values") or ()
        if isinstance(values, str):
            values = (values,)
        return cls(name=str(data.get("name", "")), values=tuple(str(v) for v in values))


@dataclass(frozen=True)
class DiscoveryConfig:
    """What to discover and how often."""

    backend: str = DEFAULT_BACKEND
    endpoint: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = field(default="", repr=False)
    profile: str = ""
    role_arn: str = ""
    refresh_interval: float | None = None
    port: int | None = None
    filters: tuple[Filter, ...] = ()
    http_client_config: HTTPClientConfig | None = None

    def replace(self, **changes: Any) -> DiscoveryConfig:
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DiscoveryConfig:
        """Build a configuration from a plain mapping (e.g. parsed JSON).

        HTTP client settings may be nested under ``http_client_config`` or
        given at the top level.  Unknown keys are ignored.
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError("configuration must be an object")

        known = {f.name for f in dataclasses.fields(cls)}
        values: dict[str, Any] = {}
        http_block: dict[str, Any] = {}

        for key, value in data.items():
            if key in ("filter", "filters"):
                if not isinstance(value, list):
                    raise ConfigurationError(f"{key} must be a list")
                values["filters"] = tuple(Filter.from_dict(f) for f in value)
            elif key == "refresh_interval":
                values[key] = None if value is None else parse_duration(value)
            elif key == "port":
                if value is not None:
                    try:
                        values[key] = int(value)
                    except (TypeError, ValueError) as exc:
                        raise ConfigurationError(f"invalid port: {value!r}") from exc
            elif key == "http_client_config":
                if value is not None:
                    if not isinstance(value, Mapping):
                        raise ConfigurationError("http_client_config must be an object")
                    http_block.update(value)
            elif key in _HTTP_CLIENT_KEYS:
                http_block[key] = value
            elif key in known:
                values[key] = "" if value is None else str(value)
            else:
                logger.debug("Ignoring unknown configuration key %r", key)

        if http_block:
            values["http_client_config"] = HTTPClientConfig.from_dict(http_block)
        return cls(**values)

    @classmethod
    def load(cls, path: str | Path) -> DiscoveryConfig:
        """Load a JSON configuration file."""
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"configuration file not found: {path}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"cannot read configuration {path}: {exc}") from exc
        logger.debug("Loaded configuration from %s", path)
        return cls.from_dict(data)


def apply_defaults(cfg: DiscoveryConfig) -> DiscoveryConfig:
    """Return *cfg* with every unset optional field given its default.

    Idempotent: applying it to its own output changes nothing.
    """
    from beacon.discovery import lookup_backend

    changes: dict[str, Any] = {}
    if cfg.refresh_interval is None:
        changes["refresh_interval"] = DEFAULT_REFRESH_INTERVAL
    if cfg.port is None:
        backend = lookup_backend(cfg.backend)
        if backend is not None:
            changes["port"] = backend.default_port
    if cfg.http_client_config is None:
        changes["http_client_config"] = DEFAULT_HTTP_CLIENT_CONFIG
    if not changes:
        return cfg
    return cfg.replace(**changes)
