from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from tool_catalog.app.core.errors import ServerNotFoundError
from tool_catalog.app.schemas.discovery import DiscoverySummary


def _server_to_dict(server) -> dict[str, Any]:
    return {
        "id": server.id,
        "name": server.name,
        "description": server.description or "",
        "url": server.url,
        "auth_type": server.auth_type,
        "status": server.status,
        "is_enabled": bool(server.is_enabled),
        "tags": server.tag_list(),
        "created_on": server.created_on,
        "updated_on": server.updated_on,
    }


def create_servers_router(
    session_local_factory,
    server_model,
    server_registration_model,
    server_update_model,
    server_status_update_model,
    discovery_service,
) -> APIRouter:
    router = APIRouter()
    order_columns = {
        "created_on": server_model.created_on,
        "updated_on": server_model.updated_on,
        "name": server_model.name,
    }

    def _get_or_404(db, server_id: int):
        server = db.get(server_model, server_id)
        if server is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Server {server_id} not found")
        return server

    @router.get(
        "/mcp-servers",
        summary="List MCP Servers",
        description="Paginated server list with search, status and enabled filters.",
    )
    def list_servers(
        page: int = Query(default=1, ge=1),
        size: int = Query(default=10, ge=1, le=100),
        search: str | None = None,
        server_status: str | None = Query(default=None, alias="status", pattern="^(active|inactive|error)$"),
        enabled: bool | None = None,
        order_by: str = Query(default="created_on", pattern="^(created_on|updated_on|name)$"),
        order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    ) -> dict[str, Any]:
        query = select(server_model)
        if search:
            term = f"%{search}%"
            query = query.where(
                or_(
                    server_model.name.like(term),
                    server_model.description.like(term),
                    server_model.tags.like(term),
                )
            )
        if server_status:
            query = query.where(server_model.status == server_status)
        if enabled is not None:
            query = query.where(server_model.is_enabled == enabled)

        column = order_columns[order_by]
        with session_local_factory() as db:
            total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
            rows = db.scalars(
                query.order_by(column.asc() if order_dir == "asc" else column.desc())
                .offset((page - 1) * size)
                .limit(size)
            ).all()
            return {
                "total": total,
                "page": page,
                "size": size,
                "servers": [_server_to_dict(row) for row in rows],
            }

    @router.get("/mcp-servers/tags", summary="List Server Tags")
    def list_tags() -> dict[str, Any]:
        with session_local_factory() as db:
            rows = db.scalars(select(server_model).where(server_model.tags != "")).all()
            tags = sorted({tag for row in rows for tag in row.tag_list()})
        return {"tags": tags}

    @router.post(
        "/mcp-servers",
        summary="Register MCP Server",
        description="Create a server registration. New servers start inactive.",
        status_code=status.HTTP_201_CREATED,
    )
    def create_server(data: server_registration_model) -> dict[str, Any]:
        with session_local_factory() as db:
            existing = db.scalar(select(server_model).where(server_model.name == data.name))
            if existing is not None:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Server name already exists")

            server = server_model(
                name=data.name,
                description=(data.description or "").strip(),
                url=data.url,
                auth_type=data.auth_type,
                auth_config=data.auth_config or "",
                tags=(data.tags or "").strip(),
                status="inactive",
                is_enabled=True,
            )
            try:
                db.add(server)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to create server",
                ) from exc
            return _server_to_dict(server)

    @router.get("/mcp-servers/{server_id}", summary="Get MCP Server")
    def get_server(server_id: int) -> dict[str, Any]:
        with session_local_factory() as db:
            server = _get_or_404(db, server_id)
            payload = _server_to_dict(server)
            payload["tool_count"] = len(server.tools)
            return payload

    @router.put(
        "/mcp-servers/{server_id}",
        summary="Update MCP Server",
        description="Replace a server's registration fields. Status and discovered tools are left as they are.",
    )
    def update_server(server_id: int, data: server_update_model) -> dict[str, Any]:
        with session_local_factory() as db:
            server = _get_or_404(db, server_id)
            duplicate = db.scalar(
                select(server_model).where(server_model.name == data.name, server_model.id != server_id)
            )
            if duplicate is not None:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Server name already exists")

            server.name = data.name
            server.description = (data.description or "").strip()
            server.url = data.url
            server.auth_type = data.auth_type
            server.auth_config = data.auth_config or ""
            server.tags = (data.tags or "").strip()
            if data.is_enabled is not None:
                server.is_enabled = data.is_enabled
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to update server",
                ) from exc
            return _server_to_dict(server)

    @router.put("/mcp-servers/{server_id}/status", summary="Update MCP Server Status")
    def update_server_status(server_id: int, payload: server_status_update_model) -> dict[str, Any]:
        with session_local_factory() as db:
            server = _get_or_404(db, server_id)
            server.status = payload.status
            db.commit()
            return {"id": server.id, "status": server.status}

    @router.put("/mcp-servers/{server_id}/toggle", summary="Toggle MCP Server")
    def toggle_server(server_id: int) -> dict[str, Any]:
        with session_local_factory() as db:
            server = _get_or_404(db, server_id)
            server.is_enabled = not server.is_enabled
            db.commit()
            return _server_to_dict(server)

    @router.delete(
        "/mcp-servers/{server_id}",
        summary="Delete MCP Server",
        description="Delete a server together with every tool discovered from it.",
    )
    def delete_server(server_id: int) -> dict[str, Any]:
        with session_local_factory() as db:
            server = _get_or_404(db, server_id)
            try:
                db.delete(server)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to delete server",
                ) from exc
        return {"status": "deleted", "id": server_id}

    @router.post(
        "/mcp-servers/{server_id}/discover-tools",
        summary="Discover Server Tools",
        description="Fetch the server's tools and merge them into the catalog without deleting missing ones.",
        response_model=DiscoverySummary,
    )
    async def discover_tools(server_id: int) -> DiscoverySummary:
        try:
            return await discovery_service.discover_tools(server_id)
        except ServerNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return router
