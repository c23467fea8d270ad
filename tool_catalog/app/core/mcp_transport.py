from __future__ import annotations

import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urlparse

import httpx
from mcp.shared.exceptions import McpError
from mcp.types import Implementation, InitializeResult
from mcp_use import MCPClient
from pydantic import ValidationError

from tool_catalog.env import ENV
from tool_catalog.app.core.credentials import CredentialInjector
from tool_catalog.app.core.errors import (
    ConnectFailedError,
    HandshakeFailedError,
    InvalidURLError,
    NotConnectedError,
    ProtocolError,
    TransportError,
    UnsupportedSchemeError,
)
from tool_catalog.app.core.logger import get_logger
from tool_catalog.app.services.registry.discovery_service import RawTool


logger = get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_SCHEMES = frozenset({"http", "https"})
SESSION_HEADER = "Mcp-Session-Id"

# JSON-RPC 2.0 reserved codes used for locally detected protocol violations.
PARSE_ERROR = -32700
INVALID_RESPONSE = -32603


def validate_server_url(url: str) -> str:
    """Reject URLs the transports cannot talk to, without any I/O."""
    value = (url or "").strip()
    try:
        parsed = urlparse(value)
    except ValueError as exc:
        raise InvalidURLError(f"Invalid MCP server URL {url!r}: {exc}") from exc
    if not parsed.scheme:
        raise InvalidURLError(f"Invalid MCP server URL {url!r}: missing scheme")
    if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
        raise UnsupportedSchemeError(f"Unsupported URL scheme '{parsed.scheme}' (expected http or https)")
    if not parsed.hostname:
        raise InvalidURLError(f"Invalid MCP server URL {url!r}: missing host")
    try:
        parsed.port
    except ValueError as exc:
        raise InvalidURLError(f"Invalid MCP server URL {url!r}: {exc}") from exc
    return value


def _raw_tools_from_entries(entries: list[Any]) -> list[RawTool]:
    tools: list[RawTool] = []
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str) or not entry["name"]:
            logger.warning("Skipping malformed tool entry in tools/list result: %r", entry)
            continue
        description = entry.get("description")
        tools.append(
            RawTool(
                name=entry["name"],
                description=description if isinstance(description, str) else "",
                input_schema=entry.get("inputSchema") or {},
            )
        )
    return tools


class MCPTransport(ABC):
    """Connection to one remote MCP server: connect, list tools, close."""

    def __init__(self, url: str, *, timeout: float | None = None) -> None:
        self.url = url
        self.timeout = float(timeout if timeout is not None else ENV.mcp_request_timeout_sec)

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def list_tools(self) -> list[RawTool]: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def __aenter__(self) -> "MCPTransport":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def _decode_event_stream(body: str) -> dict[str, Any]:
    """Pull the JSON-RPC message out of a streamable-HTTP `text/event-stream` body."""
    data_lines: list[str] = []
    messages: list[Any] = []
    for line in body.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].strip())
            continue
        if not line.strip() and data_lines:
            messages.append(json.loads("\n".join(data_lines)))
            data_lines = []
    for message in messages:
        if isinstance(message, dict) and ("result" in message or "error" in message):
            return message
    raise ValueError("event stream carried no JSON-RPC response")


class HttpJsonRpcTransport(MCPTransport):
    """Stateless JSON-RPC over HTTP POST, one request per call."""

    def __init__(
        self,
        url: str,
        *,
        credentials: CredentialInjector | None = None,
        timeout: float | None = None,
        client_name: str | None = None,
        client_version: str | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(url, timeout=timeout)
        self.credentials = credentials or CredentialInjector()
        self.client_info = Implementation(
            name=client_name or ENV.mcp_client_name,
            version=client_version or ENV.mcp_client_version,
        )
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None
        self._session_id: str | None = None
        self._ids = itertools.count(1)

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        if self._client is None:
            raise NotConnectedError("MCP transport is not connected")
        try:
            response = await self._client.post(self.url, json=payload, headers=self._headers())
        except httpx.InvalidURL as exc:
            raise InvalidURLError(f"Invalid MCP server URL {self.url!r}: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"Request '{payload.get('method')}' timed out after {self.timeout:g}s", timed_out=True
            ) from exc
        except httpx.RequestError as exc:
            raise TransportError(f"Request '{payload.get('method')}' failed: {exc}") from exc

        if not response.is_success:
            raise TransportError(
                f"MCP server returned HTTP {response.status_code} for '{payload.get('method')}'",
                status_code=response.status_code,
            )
        return response

    async def _call(self, method: str, params: dict[str, Any]) -> tuple[dict[str, Any], httpx.Response]:
        response = await self._post({"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params})
        try:
            if response.headers.get("content-type", "").startswith("text/event-stream"):
                message = _decode_event_stream(response.text)
            else:
                message = response.json()
        except ValueError as exc:
            raise ProtocolError(PARSE_ERROR, f"Unreadable response to '{method}': {exc}") from exc
        if not isinstance(message, dict):
            raise ProtocolError(INVALID_RESPONSE, f"Response to '{method}' is not a JSON-RPC object")
        return message, response

    async def connect(self) -> None:
        if self._client is not None:
            return
        validate_server_url(self.url)
        self._client = httpx.AsyncClient(
            auth=self.credentials,
            timeout=self.timeout,
            transport=self._http_transport,
        )
        try:
            await self._handshake()
        except TransportError as exc:
            await self.close()
            if exc.timed_out:
                raise
            raise ConnectFailedError(f"Could not connect to MCP server {self.url}: {exc}") from exc
        except Exception:
            await self.close()
            raise

    async def _handshake(self) -> None:
        try:
            message, response = await self._call(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"roots": {"listChanged": True}},
                    "clientInfo": self.client_info.model_dump(exclude_none=True),
                },
            )
        except ProtocolError as exc:
            raise HandshakeFailedError(f"Malformed initialize response: {exc.message}") from exc

        if "error" in message:
            error = message.get("error")
            detail = error.get("message", error) if isinstance(error, dict) else error
            raise HandshakeFailedError(f"initialize rejected: {detail}")
        try:
            result = InitializeResult.model_validate(message.get("result"))
        except ValidationError as exc:
            raise HandshakeFailedError(f"Malformed initialize result: {exc.error_count()} validation error(s)") from exc
        if str(result.protocolVersion) != PROTOCOL_VERSION:
            raise HandshakeFailedError(
                f"Protocol version mismatch: client {PROTOCOL_VERSION}, server {result.protocolVersion}"
            )

        self._session_id = response.headers.get(SESSION_HEADER)
        await self._post({"jsonrpc": "2.0", "method": "notifications/initialized"})
        logger.debug(
            "Handshake with %s ok (server=%s %s)",
            self.url,
            result.serverInfo.name,
            result.serverInfo.version,
        )

    async def list_tools(self) -> list[RawTool]:
        if self._client is None:
            raise NotConnectedError("MCP transport is not connected")

        tools: list[RawTool] = []
        params: dict[str, Any] = {}
        while True:
            message, _ = await self._call("tools/list", params)
            if message.get("error") is not None:
                error = message["error"] if isinstance(message["error"], dict) else {}
                code = error.get("code")
                raise ProtocolError(
                    code if isinstance(code, int) else INVALID_RESPONSE,
                    str(error.get("message", "unknown error")),
                )

            result = message.get("result")
            if not isinstance(result, dict) or not isinstance(result.get("tools", []), list):
                raise ProtocolError(INVALID_RESPONSE, "tools/list result has no tool array")
            tools.extend(_raw_tools_from_entries(result.get("tools", [])))

            cursor = result.get("nextCursor")
            if not cursor:
                return tools
            params = {"cursor": cursor}

    async def close(self) -> None:
        client, self._client = self._client, None
        self._session_id = None
        if client is not None:
            await client.aclose()


class MCPUseSessionTransport(MCPTransport):
    """Session-oriented variant backed by mcp_use; the SDK owns the handshake."""

    server_key = "catalog"

    def __init__(
        self,
        url: str,
        *,
        credentials: CredentialInjector | None = None,
        timeout: float | None = None,
        client_cls: Any = MCPClient,
    ) -> None:
        super().__init__(url, timeout=timeout)
        self.credentials = credentials or CredentialInjector()
        self._client_cls = client_cls
        self._client: Any = None
        self._session: Any = None

    async def connect(self) -> None:
        if self._session is not None:
            return
        validate_server_url(self.url)

        server_config: dict[str, Any] = {"url": self.url}
        headers = self.credentials.headers()
        if headers:
            server_config["headers"] = headers
        self._client = self._client_cls({"mcpServers": {self.server_key: server_config}})
        try:
            await asyncio.wait_for(self._client.create_all_sessions(), timeout=self.timeout)
            self._session = self._client.get_session(self.server_key)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise TransportError(f"Connecting to {self.url} timed out after {self.timeout:g}s", timed_out=True) from exc
        except Exception as exc:
            await self.close()
            raise ConnectFailedError(f"Could not connect to MCP server {self.url}: {exc}") from exc

    async def list_tools(self) -> list[RawTool]:
        if self._session is None:
            raise NotConnectedError("MCP session is not connected")
        try:
            tools = await asyncio.wait_for(self._session.list_tools(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"tools/list timed out after {self.timeout:g}s", timed_out=True) from exc
        except McpError as exc:
            raise ProtocolError(exc.error.code, exc.error.message) from exc
        except Exception as exc:
            raise TransportError(f"tools/list failed: {exc}") from exc

        return _raw_tools_from_entries(
            [
                {
                    "name": getattr(tool, "name", None),
                    "description": getattr(tool, "description", "") or "",
                    "inputSchema": getattr(tool, "inputSchema", {}) or {},
                }
                for tool in tools
            ]
        )

    async def close(self) -> None:
        client, self._client, self._session = self._client, None, None
        if client is None:
            return
        try:
            await client.close_all_sessions()
        except Exception:
            logger.debug("Error closing mcp_use sessions for %s", self.url, exc_info=True)


def build_transport(
    url: str,
    credentials: CredentialInjector,
    *,
    kind: str | None = None,
    timeout: float | None = None,
) -> MCPTransport:
    transport_kind = (kind or ENV.mcp_transport or "http").strip().lower()
    if transport_kind == "session":
        return MCPUseSessionTransport(url, credentials=credentials, timeout=timeout)
    if transport_kind != "http":
        raise ValueError(f"Unknown MCP_TRANSPORT '{transport_kind}' (expected 'http' or 'session')")
    return HttpJsonRpcTransport(url, credentials=credentials, timeout=timeout)
