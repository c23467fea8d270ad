import asyncio
import gc
import logging

import pytest
from sqlalchemy.exc import IntegrityError

from tool_catalog.app.core.errors import (
    ConnectFailedError,
    DiscoveryTransportFailure,
    InvalidURLError,
    ProtocolError,
    ServerNotFoundError,
)
from tool_catalog.app.models.db_models import MCPToolModel
from tool_catalog.app.schemas.discovery import ERROR_DISCOVERY_TRANSPORT, ERROR_SERVER_NOT_ACTIVE
from tool_catalog.app.services.registry.discovery_service import RawTool
from tool_catalog.app.services.registry.registry_sync_service import ToolDiscoveryService
from tool_catalog.app.services.registry.repository import CatalogUnitOfWork

FIRST_FETCH = [
    RawTool(
        name="list_pods",
        description="List pods in a namespace",
        input_schema={
            "type": "object",
            "properties": {"namespace": {"type": "string", "default": "default"}},
            "required": ["namespace"],
        },
    ),
    RawTool(name="read_file", description="Read a file", input_schema={"properties": {"path": {"type": "string"}}}),
    RawTool(name="unrelated_name", description="Something else"),
]


def _set_enabled(session_factory, tool_id: int, enabled: bool, category: str | None = None) -> None:
    with session_factory() as db:
        tool = db.get(MCPToolModel, tool_id)
        tool.is_enabled = enabled
        if category is not None:
            tool.category = category
        db.commit()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["inactive", "error"])
async def test_inactive_server_is_a_noop_without_network(
    discovery_service, remote, make_server, status, caplog
) -> None:
    server_id = make_server(status=status)

    with caplog.at_level(logging.INFO):
        discovered = await discovery_service.discover_tools(server_id)
        refreshed = await discovery_service.refresh_all_tools(server_id)

    for summary in (discovered, refreshed):
        assert summary.success is False
        assert summary.error_code == ERROR_SERVER_NOT_ACTIVE
        assert summary.tools == []
    assert remote.created == []
    assert f"is not active (status='{status}')" in caplog.text


@pytest.mark.asyncio
async def test_unknown_server_raises(discovery_service, remote) -> None:
    with pytest.raises(ServerNotFoundError):
        await discovery_service.discover_tools(404)
    with pytest.raises(ServerNotFoundError):
        await discovery_service.refresh_all_tools(404)
    assert remote.created == []


@pytest.mark.asyncio
async def test_discovery_inserts_enriched_tools(discovery_service, remote, make_server, stored_tools) -> None:
    server_id = make_server(url="http://k8s.example.com:9000/mcp")
    remote.serve(FIRST_FETCH)

    summary = await discovery_service.discover_tools(server_id)

    assert summary.success is True
    assert summary.message == "Discovered 3 tools"
    assert [tool.name for tool in summary.tools] == ["list_pods", "read_file", "unrelated_name"]
    assert remote.created[0][0] == "http://k8s.example.com:9000/mcp"
    assert remote.closed == 1

    rows = {row.name: row for row in stored_tools(server_id)}
    assert rows["list_pods"].category == "kubernetes"
    assert rows["read_file"].category == "file operations"
    assert rows["unrelated_name"].category == "general"
    assert rows["list_pods"].get_parameters() == [
        {"name": "namespace", "type": "string", "description": "", "required": True, "default": "default"}
    ]
    assert rows["unrelated_name"].get_parameters() == []
    assert all(row.is_enabled for row in rows.values())


@pytest.mark.asyncio
async def test_rediscovery_preserves_ids_and_enabled_flag(
    discovery_service, remote, make_server, stored_tools, session_factory
) -> None:
    server_id = make_server()
    remote.serve(FIRST_FETCH, FIRST_FETCH)

    await discovery_service.discover_tools(server_id)
    before = {row.name: row for row in stored_tools(server_id)}
    _set_enabled(session_factory, before["read_file"].id, False)

    summary = await discovery_service.discover_tools(server_id)
    after = {row.name: row for row in stored_tools(server_id)}

    assert summary.success is True
    assert set(after) == set(before)
    for name, row in after.items():
        assert row.id == before[name].id
        assert row.description == before[name].description
        assert row.category == before[name].category
        assert row.parameters == before[name].parameters
    assert after["read_file"].is_enabled is False
    assert after["list_pods"].is_enabled is True


@pytest.mark.asyncio
async def test_discovery_updates_in_place_and_never_deletes(discovery_service, remote, make_server, stored_tools) -> None:
    server_id = make_server()
    changed = RawTool(name="read_file", description="Read any file", input_schema={"properties": {}})
    remote.serve(FIRST_FETCH, [changed, RawTool(name="web_fetch")])

    await discovery_service.discover_tools(server_id)
    original_id = {row.name: row.id for row in stored_tools(server_id)}["read_file"]
    summary = await discovery_service.discover_tools(server_id)

    rows = {row.name: row for row in stored_tools(server_id)}
    assert [tool.name for tool in summary.tools] == ["read_file", "web_fetch"]
    assert set(rows) == {"list_pods", "read_file", "unrelated_name", "web_fetch"}
    assert rows["read_file"].id == original_id
    assert rows["read_file"].description == "Read any file"
    assert rows["read_file"].get_parameters() == []
    assert rows["web_fetch"].category == "network request"


@pytest.mark.asyncio
async def test_duplicate_tool_names_in_one_fetch_keep_the_first(
    discovery_service, remote, make_server, stored_tools
) -> None:
    server_id = make_server()
    remote.serve([RawTool(name="db_query", description="first"), RawTool(name="db_query", description="second")])

    summary = await discovery_service.refresh_all_tools(server_id)

    assert summary.success is True
    assert [(row.name, row.description) for row in stored_tools(server_id)] == [("db_query", "first")]


@pytest.mark.asyncio
async def test_transport_failure_reports_failure_and_keeps_catalog(
    discovery_service, remote, make_server, stored_tools
) -> None:
    server_id = make_server()
    remote.serve(FIRST_FETCH, ConnectFailedError("connection refused"), ProtocolError(-32601, "Method not found"))

    await discovery_service.discover_tools(server_id)
    discovered = await discovery_service.discover_tools(server_id)
    refreshed = await discovery_service.refresh_all_tools(server_id)

    for summary in (discovered, refreshed):
        assert summary.success is False
        assert summary.error_code == ERROR_DISCOVERY_TRANSPORT
    assert "connection refused" in discovered.message
    assert "Method not found" in refreshed.message
    assert len(stored_tools(server_id)) == 3


@pytest.mark.asyncio
async def test_malformed_auth_config_fails_before_network(discovery_service, remote, make_server) -> None:
    server_id = make_server(auth_type="bearer", auth_config="{not-json")

    summary = await discovery_service.discover_tools(server_id)

    assert summary.success is False
    assert summary.error_code == ERROR_DISCOVERY_TRANSPORT
    assert "not valid JSON" in summary.message
    assert remote.created == []


@pytest.mark.asyncio
async def test_credentials_reach_the_transport(discovery_service, remote, make_server) -> None:
    server_id = make_server(auth_type="bearer", auth_config='{"token": "abc"}')

    await discovery_service.discover_tools(server_id)

    (_, credentials), = remote.created
    assert credentials.headers() == {"Authorization": "Bearer abc"}


@pytest.mark.asyncio
async def test_refresh_replaces_catalog_and_drops_customizations(
    discovery_service, remote, make_server, stored_tools, session_factory
) -> None:
    server_id = make_server()
    fresh = [FIRST_FETCH[0], RawTool(name="get_metrics", description="Metrics")]
    remote.serve(FIRST_FETCH, fresh)

    await discovery_service.discover_tools(server_id)
    pods = {row.name: row for row in stored_tools(server_id)}["list_pods"]
    _set_enabled(session_factory, pods.id, False, category="custom")

    summary = await discovery_service.refresh_all_tools(server_id)
    rows = {row.name: row for row in stored_tools(server_id)}

    assert summary.success is True
    assert summary.message == "Refreshed 2 tools (replaced 3)"
    assert set(rows) == {"list_pods", "get_metrics"}
    assert rows["list_pods"].is_enabled is True
    assert rows["list_pods"].category == "kubernetes"
    assert rows["get_metrics"].category == "monitoring"


@pytest.mark.asyncio
async def test_refresh_only_touches_its_own_server(discovery_service, remote, make_server, stored_tools) -> None:
    first = make_server()
    second = make_server()
    remote.serve(FIRST_FETCH, FIRST_FETCH, [RawTool(name="http_get")])

    await discovery_service.discover_tools(first)
    await discovery_service.discover_tools(second)
    await discovery_service.refresh_all_tools(first)

    assert [row.name for row in stored_tools(first)] == ["http_get"]
    assert len(stored_tools(second)) == 3


@pytest.mark.asyncio
async def test_concurrent_refreshes_leave_exactly_one_result(
    discovery_service, remote, make_server, stored_tools
) -> None:
    server_id = make_server()
    result_a = [RawTool(name="a_one"), RawTool(name="a_two")]
    result_b = [RawTool(name="b_one"), RawTool(name="b_two"), RawTool(name="b_three")]
    remote.serve(result_a, result_b)

    summaries = await asyncio.gather(
        discovery_service.refresh_all_tools(server_id),
        discovery_service.refresh_all_tools(server_id),
    )

    names = sorted(row.name for row in stored_tools(server_id))
    assert all(summary.success for summary in summaries)
    assert names in (sorted(tool.name for tool in result_a), sorted(tool.name for tool in result_b))


@pytest.mark.asyncio
async def test_concurrent_discoveries_do_not_duplicate_rows(
    discovery_service, remote, make_server, stored_tools
) -> None:
    server_id = make_server()
    remote.serve(FIRST_FETCH, FIRST_FETCH)

    await asyncio.gather(discovery_service.discover_tools(server_id), discovery_service.discover_tools(server_id))

    assert [row.name for row in stored_tools(server_id)] == ["list_pods", "read_file", "unrelated_name"]


@pytest.mark.asyncio
async def test_per_tool_persistence_failure_is_skipped(
    discovery_service, remote, make_server, stored_tools, monkeypatch
) -> None:
    server_id = make_server()
    remote.serve(FIRST_FETCH)
    original_add_tool = CatalogUnitOfWork.add_tool

    def flaky_add_tool(self, tool):
        if tool.name == "read_file":
            raise IntegrityError("INSERT INTO mcp_tools", {}, Exception("disk says no"))
        return original_add_tool(self, tool)

    monkeypatch.setattr(CatalogUnitOfWork, "add_tool", flaky_add_tool)

    summary = await discovery_service.discover_tools(server_id)

    assert summary.success is True
    assert summary.skipped == 1
    assert summary.message == "Discovered 2 tools (1 could not be saved)"
    assert [row.name for row in stored_tools(server_id)] == ["list_pods", "unrelated_name"]


@pytest.mark.asyncio
async def test_unparseable_port_is_reported_as_invalid_url(repository, make_server, stored_tools) -> None:
    server_id = make_server(url="http://mcp.example.com:abc/mcp")
    service = ToolDiscoveryService(repository)

    discovered = await service.discover_tools(server_id)
    refreshed = await service.refresh_all_tools(server_id)

    for summary in (discovered, refreshed):
        assert summary.success is False
        assert summary.error_code == ERROR_DISCOVERY_TRANSPORT
        assert "Invalid MCP server URL" in summary.message
    assert stored_tools(server_id) == []


@pytest.mark.asyncio
async def test_unparseable_port_failure_wraps_invalid_url(repository, make_server) -> None:
    server_id = make_server(url="http://mcp.example.com:abc/mcp")
    service = ToolDiscoveryService(repository)
    target = service._load_target(server_id)

    with pytest.raises(DiscoveryTransportFailure) as excinfo:
        await service._fetch(target)

    assert isinstance(excinfo.value.cause, InvalidURLError)


@pytest.mark.asyncio
async def test_server_locks_are_released_after_use(discovery_service, remote, make_server) -> None:
    server_ids = [make_server() for _ in range(3)]
    remote.serve(FIRST_FETCH, FIRST_FETCH, FIRST_FETCH)

    for server_id in server_ids:
        await discovery_service.discover_tools(server_id)
    gc.collect()

    assert len(discovery_service._locks) == 0
