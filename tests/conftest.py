"""Shared fixtures for the tool catalog test suite."""

import asyncio
import itertools
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import Engine, select
from sqlalchemy.orm import sessionmaker

from tool_catalog.app.core.credentials import CredentialInjector
from tool_catalog.app.core.db import build_engine, build_session_factory, init_db
from tool_catalog.app.core.errors import DiscoveryError
from tool_catalog.app.core.mcp_transport import MCPTransport
from tool_catalog.app.models.db_models import MCPToolModel, ServerModel
from tool_catalog.app.services.registry.discovery_service import RawTool
from tool_catalog.app.services.registry.registry_sync_service import ToolDiscoveryService
from tool_catalog.app.services.registry.repository import CatalogRepository


@pytest.fixture
def db_engine(tmp_path: Path) -> Generator[Engine, None, None]:
    engine = build_engine(f"sqlite:///{tmp_path / 'catalog.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine) -> sessionmaker:
    return build_session_factory(db_engine)


@pytest.fixture
def repository(session_factory: sessionmaker) -> CatalogRepository:
    return CatalogRepository(session_factory)


@pytest.fixture
def make_server(session_factory: sessionmaker):
    """Factory fixture inserting a server row and returning its id."""
    counter = itertools.count(1)

    def _make_server(**overrides: Any) -> int:
        values: dict[str, Any] = {
            "name": f"server-{next(counter)}",
            "url": "http://mcp.example.com:8005/mcp",
            "auth_type": "none",
            "auth_config": "",
            "status": "active",
        }
        values.update(overrides)
        with session_factory() as db:
            server = ServerModel(**values)
            db.add(server)
            db.commit()
            return server.id

    return _make_server


@pytest.fixture
def stored_tools(session_factory: sessionmaker):
    def _stored_tools(server_id: int) -> list[MCPToolModel]:
        with session_factory() as db:
            return list(
                db.scalars(
                    select(MCPToolModel).where(MCPToolModel.server_id == server_id).order_by(MCPToolModel.name)
                ).all()
            )

    return _stored_tools


class FakeRemote:
    """Stands in for remote MCP servers; hands out one scripted response per connection."""

    def __init__(self) -> None:
        self.responses: list[list[RawTool] | DiscoveryError] = []
        self.default: list[RawTool] | DiscoveryError = []
        self.created: list[tuple[str, CredentialInjector]] = []
        self.closed = 0

    def serve(self, *responses: list[RawTool] | DiscoveryError) -> None:
        self.responses.extend(responses)

    def factory(self, url: str, credentials: CredentialInjector) -> MCPTransport:
        self.created.append((url, credentials))
        response = self.responses.pop(0) if self.responses else self.default
        return FakeTransport(self, url, response)


class FakeTransport(MCPTransport):
    def __init__(self, remote: FakeRemote, url: str, response: list[RawTool] | DiscoveryError) -> None:
        super().__init__(url, timeout=1)
        self.remote = remote
        self.response = response

    async def connect(self) -> None:
        await asyncio.sleep(0)

    async def list_tools(self) -> list[RawTool]:
        # Yield to the loop so concurrent callers can interleave.
        await asyncio.sleep(0)
        if isinstance(self.response, DiscoveryError):
            raise self.response
        return list(self.response)

    async def close(self) -> None:
        self.remote.closed += 1


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def discovery_service(repository: CatalogRepository, remote: FakeRemote) -> ToolDiscoveryService:
    return ToolDiscoveryService(repository, remote.factory)
