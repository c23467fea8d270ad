from typing import Any

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from tool_catalog.app.core.errors import ServerNotFoundError
from tool_catalog.app.models.db_models import utc_now
from tool_catalog.app.schemas.discovery import DiscoverySummary, ToolOut


def create_tools_router(
    session_local_factory,
    mcp_tool_model,
    tool_update_model,
    tool_batch_update_model,
    discovery_service,
) -> APIRouter:
    router = APIRouter()

    def _changes(payload) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if payload.is_enabled is not None:
            values["is_enabled"] = payload.is_enabled
        if payload.category:
            values["category"] = payload.category
        if values:
            values["updated_on"] = utc_now()
        return values

    @router.get(
        "/mcp-tools",
        summary="List Tools",
        description="Paginated catalog listing filtered by server, category, enabled flag and text search.",
    )
    def list_tools(
        server_id: int | None = Query(default=None, ge=1),
        category: str | None = None,
        enabled: bool | None = None,
        search: str | None = None,
        page: int = Query(default=1, ge=1),
        size: int = Query(default=50, ge=1, le=100),
    ) -> dict[str, Any]:
        query = select(mcp_tool_model)
        if server_id is not None:
            query = query.where(mcp_tool_model.server_id == server_id)
        if category:
            query = query.where(mcp_tool_model.category == category)
        if enabled is not None:
            query = query.where(mcp_tool_model.is_enabled == enabled)
        if search:
            term = f"%{search}%"
            query = query.where(or_(mcp_tool_model.name.like(term), mcp_tool_model.description.like(term)))

        with session_local_factory() as db:
            total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
            rows = db.scalars(query.order_by(mcp_tool_model.id).offset((page - 1) * size).limit(size)).all()
            return {
                "total": total,
                "page": page,
                "size": size,
                "tools": [ToolOut.from_row(row).model_dump(mode="json") for row in rows],
            }

    @router.get("/mcp-tools/categories", summary="List Tool Categories")
    def list_categories(server_id: int | None = Query(default=None, ge=1)) -> dict[str, Any]:
        query = select(mcp_tool_model.category).where(mcp_tool_model.category != "").distinct()
        if server_id is not None:
            query = query.where(mcp_tool_model.server_id == server_id)
        with session_local_factory() as db:
            categories = sorted(db.scalars(query).all())
        return {"categories": categories}

    @router.put("/mcp-tools/batch", summary="Batch Update Tools")
    def batch_update_tools(payload: tool_batch_update_model) -> dict[str, Any]:
        values = _changes(payload)
        if not values:
            return {"status": "unchanged", "updated": 0}
        with session_local_factory() as db:
            try:
                result = db.execute(
                    update(mcp_tool_model).where(mcp_tool_model.id.in_(payload.tool_ids)).values(**values)
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to batch update tools",
                ) from exc
        return {"status": "updated", "updated": result.rowcount or 0}

    @router.put("/mcp-tools/{tool_id}", summary="Update Tool")
    def update_tool(tool_id: int, payload: tool_update_model) -> dict[str, Any]:
        with session_local_factory() as db:
            tool = db.get(mcp_tool_model, tool_id)
            if tool is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tool not found")
            for key, value in _changes(payload).items():
                setattr(tool, key, value)
            db.commit()
            return ToolOut.from_row(tool).model_dump(mode="json")

    @router.post(
        "/mcp-tools/refresh/{server_id}",
        summary="Refresh Server Tools",
        description="Replace every stored tool of the server with a fresh fetch. Customizations are discarded.",
        response_model=DiscoverySummary,
    )
    async def refresh_tools(server_id: int) -> DiscoverySummary:
        try:
            return await discovery_service.refresh_all_tools(server_id)
        except ServerNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return router
