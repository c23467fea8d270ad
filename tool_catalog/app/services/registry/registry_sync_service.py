import asyncio
import weakref
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from tool_catalog.app.core.credentials import CredentialInjector
from tool_catalog.app.core.errors import (
    DiscoveryError,
    DiscoveryTransportFailure,
    PersistenceFailure,
    ServerNotActiveError,
    ServerNotFoundError,
)
from tool_catalog.app.core.logger import get_logger
from tool_catalog.app.core.mcp_transport import MCPTransport, build_transport
from tool_catalog.app.models.db_models import STATUS_ACTIVE, MCPToolModel, utc_now
from tool_catalog.app.schemas.discovery import (
    ERROR_DISCOVERY_TRANSPORT,
    ERROR_SERVER_NOT_ACTIVE,
    DiscoverySummary,
    ToolOut,
)
from tool_catalog.app.services.registry.categories import classify_tool
from tool_catalog.app.services.registry.discovery_service import (
    ParameterDescriptor,
    RawTool,
    parse_input_schema,
)
from tool_catalog.app.services.registry.repository import CatalogRepository, CatalogUnitOfWork

logger = get_logger(__name__)

TransportFactory = Callable[[str, CredentialInjector], MCPTransport]


@dataclass(frozen=True)
class ServerTarget:
    id: int
    name: str
    url: str
    auth_type: str
    auth_config: str
    status: str


@dataclass
class EnrichedTool:
    name: str
    description: str
    category: str
    parameters: list[ParameterDescriptor]


def enrich_tool(raw: RawTool) -> EnrichedTool:
    return EnrichedTool(
        name=raw.name,
        description=raw.description or "",
        category=classify_tool(raw.name),
        parameters=parse_input_schema(raw.input_schema),
    )


class ToolDiscoveryService:
    """Reconciles the tools a remote MCP server reports into the local catalog.

    `discover_tools` merges additively and keeps ids and `is_enabled`;
    `refresh_all_tools` replaces the server's whole tool set. Calls for the
    same server id never overlap.
    """

    def __init__(
        self,
        repository: CatalogRepository,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._repository = repository
        self._transport_factory = transport_factory or build_transport
        # Entries disappear once no caller holds the lock.
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, server_id: int) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    def _load_target(self, server_id: int) -> ServerTarget:
        with self._repository.unit_of_work() as uow:
            server = uow.get_server(server_id)
            if server is None:
                raise ServerNotFoundError(server_id)
            return ServerTarget(
                id=server.id,
                name=server.name,
                url=server.url,
                auth_type=server.auth_type or "",
                auth_config=server.auth_config or "",
                status=server.status,
            )

    @staticmethod
    def _require_active(target: ServerTarget) -> None:
        if target.status != STATUS_ACTIVE:
            raise ServerNotActiveError(target.id, target.status)

    @staticmethod
    def _not_active(target: ServerTarget, exc: ServerNotActiveError, action: str) -> DiscoverySummary:
        logger.info("Skipping %s for server %s (%s): %s", action, target.id, target.name, exc)
        return DiscoverySummary(
            success=False,
            message=f"Server '{target.name}' is not active; cannot {action}",
            error_code=ERROR_SERVER_NOT_ACTIVE,
        )

    async def _fetch(self, target: ServerTarget) -> list[EnrichedTool]:
        try:
            credentials = CredentialInjector.from_server_config(target.auth_type, target.auth_config)
            async with self._transport_factory(target.url, credentials) as transport:
                raw_tools = await transport.list_tools()
        except DiscoveryError as exc:
            raise DiscoveryTransportFailure(target.id, exc) from exc

        tools: list[EnrichedTool] = []
        seen: set[str] = set()
        for raw in raw_tools:
            if raw.name in seen:
                logger.warning("Server %s reported tool %r more than once; keeping the first", target.id, raw.name)
                continue
            seen.add(raw.name)
            tools.append(enrich_tool(raw))
        logger.info("Fetched %d tools from server %s (%s)", len(tools), target.id, target.url)
        return tools

    @staticmethod
    def _fetch_failed(exc: DiscoveryTransportFailure) -> DiscoverySummary:
        logger.warning("%s", exc)
        return DiscoverySummary(
            success=False,
            message=f"Failed to fetch tools from MCP server: {exc.cause}",
            error_code=ERROR_DISCOVERY_TRANSPORT,
        )

    @staticmethod
    def _new_row(server_id: int, tool: EnrichedTool) -> MCPToolModel:
        row = MCPToolModel(
            server_id=server_id,
            name=tool.name,
            description=tool.description,
            category=tool.category,
            is_enabled=True,
        )
        row.set_parameters(tool.parameters)
        return row

    def _persist_each(
        self,
        uow: CatalogUnitOfWork,
        server_id: int,
        tools: list[EnrichedTool],
        save: Callable[[CatalogUnitOfWork, EnrichedTool], MCPToolModel],
    ) -> tuple[list[ToolOut], int]:
        saved: list[ToolOut] = []
        skipped = 0
        for tool in tools:
            try:
                with uow.savepoint():
                    row = save(uow, tool)
                    saved.append(ToolOut.from_row(row))
            except SQLAlchemyError as exc:
                skipped += 1
                logger.warning("%s", PersistenceFailure(server_id, tool.name, str(exc)))
        return saved, skipped

    def _upsert(self, server_id: int) -> Callable[[CatalogUnitOfWork, EnrichedTool], MCPToolModel]:
        def save(uow: CatalogUnitOfWork, tool: EnrichedTool) -> MCPToolModel:
            row = uow.find_tool(server_id, tool.name)
            if row is None:
                return uow.add_tool(self._new_row(server_id, tool))
            row.description = tool.description
            row.category = tool.category
            row.set_parameters(tool.parameters)
            row.updated_on = utc_now()
            uow.flush()
            return row

        return save

    def _insert(self, server_id: int) -> Callable[[CatalogUnitOfWork, EnrichedTool], MCPToolModel]:
        def save(uow: CatalogUnitOfWork, tool: EnrichedTool) -> MCPToolModel:
            return uow.add_tool(self._new_row(server_id, tool))

        return save

    async def discover_tools(self, server_id: int) -> DiscoverySummary:
        """Merge the server's current tools into the catalog; nothing is deleted."""
        async with self._lock_for(server_id):
            target = self._load_target(server_id)
            try:
                self._require_active(target)
            except ServerNotActiveError as exc:
                return self._not_active(target, exc, "discover tools")

            try:
                tools = await self._fetch(target)
            except DiscoveryTransportFailure as exc:
                return self._fetch_failed(exc)

            with self._repository.unit_of_work() as uow:
                saved, skipped = self._persist_each(uow, server_id, tools, self._upsert(server_id))

        message = f"Discovered {len(saved)} tools"
        if skipped:
            message += f" ({skipped} could not be saved)"
        logger.info("Server %s: %s", server_id, message)
        return DiscoverySummary(success=True, message=message, tools=saved, skipped=skipped)

    async def refresh_all_tools(self, server_id: int) -> DiscoverySummary:
        """Replace the server's tools with a fresh fetch.

        Customizations (is_enabled, category) are discarded. The delete and
        the inserts share one transaction, and nothing is deleted when the
        fetch fails.
        """
        async with self._lock_for(server_id):
            target = self._load_target(server_id)
            try:
                self._require_active(target)
            except ServerNotActiveError as exc:
                return self._not_active(target, exc, "refresh tools")

            try:
                tools = await self._fetch(target)
            except DiscoveryTransportFailure as exc:
                return self._fetch_failed(exc)

            with self._repository.unit_of_work() as uow:
                removed = uow.delete_tools_for_server(server_id)
                saved, skipped = self._persist_each(uow, server_id, tools, self._insert(server_id))

        message = f"Refreshed {len(saved)} tools (replaced {removed})"
        if skipped:
            message += f"; {skipped} could not be saved"
        logger.info("Server %s: %s", server_id, message)
        return DiscoverySummary(success=True, message=message, tools=saved, skipped=skipped)
