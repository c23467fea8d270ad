from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for every failure raised by the discovery stack."""


class ConfigParseError(DiscoveryError):
    """auth_config could not be interpreted for the declared auth_type."""


class TransportFailure(DiscoveryError):
    """Base class for transport/protocol client errors."""


class InvalidURLError(TransportFailure):
    pass


class UnsupportedSchemeError(TransportFailure):
    pass


class ConnectFailedError(TransportFailure):
    pass


class HandshakeFailedError(TransportFailure):
    pass


class NotConnectedError(TransportFailure):
    pass


class TransportError(TransportFailure):
    def __init__(self, message: str, *, status_code: int | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.timed_out = timed_out


class ProtocolError(TransportFailure):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"MCP server error {code}: {message}")
        self.code = code
        self.message = message


class ServerNotFoundError(DiscoveryError):
    def __init__(self, server_id: int) -> None:
        super().__init__(f"MCP server {server_id} not found")
        self.server_id = server_id


class ServerNotActiveError(DiscoveryError):
    def __init__(self, server_id: int, status: str) -> None:
        super().__init__(f"MCP server {server_id} is not active (status={status!r})")
        self.server_id = server_id
        self.status = status


class DiscoveryTransportFailure(DiscoveryError):
    """Fetching the tool list failed; `__cause__` holds the underlying error."""

    def __init__(self, server_id: int, cause: DiscoveryError) -> None:
        super().__init__(f"Failed to fetch tools from MCP server {server_id}: {cause}")
        self.server_id = server_id
        self.cause = cause


class PersistenceFailure(DiscoveryError):
    def __init__(self, server_id: int, tool_name: str, reason: str) -> None:
        super().__init__(f"Failed to persist tool {tool_name!r} for server {server_id}: {reason}")
        self.server_id = server_id
        self.tool_name = tool_name
