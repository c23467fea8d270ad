from __future__ import annotations

import base64
import json
from typing import Any, Generator

import httpx

from tool_catalog.app.core.errors import ConfigParseError
from tool_catalog.app.models.db_models import AUTH_API_KEY, AUTH_BASIC, AUTH_BEARER


def _parse_auth_config(auth_type: str, auth_config: str | None) -> dict[str, Any]:
    try:
        parsed = json.loads(auth_config or "")
    except (TypeError, ValueError) as exc:
        raise ConfigParseError(f"auth_config for auth_type '{auth_type}' is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigParseError(f"auth_config for auth_type '{auth_type}' must be a JSON object")
    return parsed


def _text(config: dict[str, Any], key: str) -> str:
    value = config.get(key)
    return "" if value is None else str(value)


class CredentialInjector(httpx.Auth):
    """Static credentials for one MCP server, applied to every outgoing request.

    Construct through `from_server_config` so a malformed auth_config fails
    before anything touches the network. Unknown auth types inject nothing,
    exactly like `none`.
    """

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self._headers = dict(headers or {})

    @classmethod
    def from_server_config(cls, auth_type: str | None, auth_config: str | None) -> "CredentialInjector":
        kind = (auth_type or "").strip().lower()

        if kind == AUTH_BEARER:
            config = _parse_auth_config(kind, auth_config)
            return cls({"Authorization": f"Bearer {_text(config, 'token')}"})

        if kind == AUTH_BASIC:
            config = _parse_auth_config(kind, auth_config)
            raw = f"{_text(config, 'username')}:{_text(config, 'password')}".encode("utf-8")
            return cls({"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"})

        if kind == AUTH_API_KEY:
            config = _parse_auth_config(kind, auth_config)
            header_name = _text(config, "key").strip()
            if not header_name:
                raise ConfigParseError("auth_config for auth_type 'api_key' requires a non-empty 'key'")
            return cls({header_name: _text(config, "value")})

        return cls()

    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        for name, value in self._headers.items():
            request.headers[name] = value
        yield request
