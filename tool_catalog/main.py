from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import Engine

from tool_catalog.env import ENV
from tool_catalog.app.core.db import SessionLocal, build_session_factory, engine, init_db
from tool_catalog.app.core.logger import get_logger
from tool_catalog.app.models.db_models import MCPToolModel, ServerModel
from tool_catalog.app.routers.health import create_health_router
from tool_catalog.app.routers.servers import create_servers_router
from tool_catalog.app.routers.tools import create_tools_router
from tool_catalog.app.schemas.registration import (
    ServerRegistration,
    ServerStatusUpdate,
    ServerUpdate,
    ToolBatchUpdate,
    ToolUpdate,
)
from tool_catalog.app.services.registry.registry_sync_service import ToolDiscoveryService, TransportFactory
from tool_catalog.app.services.registry.repository import CatalogRepository

logger = get_logger(__name__)


def create_app(
    db_engine: Engine | None = None,
    transport_factory: TransportFactory | None = None,
) -> FastAPI:
    db_engine = db_engine if db_engine is not None else engine
    session_factory = SessionLocal if db_engine is engine else build_session_factory(db_engine)
    discovery_service = ToolDiscoveryService(CatalogRepository(session_factory), transport_factory)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        init_db(db_engine)
        logger.info("MCP tool catalog ready (db=%s, transport=%s)", db_engine.dialect.name, ENV.mcp_transport)
        yield

    application = FastAPI(title="MCP Tool Catalog", lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.state.discovery_service = discovery_service

    application.include_router(
        create_health_router(db_engine.dialect.name, ENV.mcp_transport, ENV.mcp_request_timeout_sec),
        tags=["Health"],
    )
    application.include_router(
        create_servers_router(
            session_factory,
            ServerModel,
            ServerRegistration,
            ServerUpdate,
            ServerStatusUpdate,
            discovery_service,
        ),
        prefix="/api",
        tags=["MCP Servers"],
    )
    application.include_router(
        create_tools_router(
            session_factory,
            MCPToolModel,
            ToolUpdate,
            ToolBatchUpdate,
            discovery_service,
        ),
        prefix="/api",
        tags=["MCP Tools"],
    )
    return application


app = create_app()


def run(**kwargs: Any) -> None:
    uvicorn.run("tool_catalog.main:app", host=ENV.api_host, port=ENV.api_port, **kwargs)


if __name__ == "__main__":
    run(reload=True)
