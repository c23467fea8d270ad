import datetime
from typing import Any

from pydantic import BaseModel, Field

from tool_catalog.app.models.db_models import MCPToolModel

ERROR_SERVER_NOT_ACTIVE = "server_not_active"
ERROR_DISCOVERY_TRANSPORT = "discovery_transport_failure"


class ToolOut(BaseModel):
    id: int
    server_id: int
    name: str
    description: str
    category: str
    parameters: list[dict[str, Any]] = Field(default_factory=list)
    is_enabled: bool
    created_on: datetime.datetime
    updated_on: datetime.datetime

    @classmethod
    def from_row(cls, row: MCPToolModel) -> "ToolOut":
        return cls(
            id=row.id,
            server_id=row.server_id,
            name=row.name,
            description=row.description or "",
            category=row.category or "",
            parameters=row.get_parameters(),
            is_enabled=bool(row.is_enabled),
            created_on=row.created_on,
            updated_on=row.updated_on,
        )


class DiscoverySummary(BaseModel):
    success: bool
    message: str
    tools: list[ToolOut] = Field(default_factory=list)
    error_code: str | None = None
    skipped: int = 0
