import datetime
import json
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from tool_catalog.app.services.registry.discovery_service import ParameterDescriptor

AUTH_NONE = "none"
AUTH_BEARER = "bearer"
AUTH_BASIC = "basic"
AUTH_API_KEY = "api_key"
AUTH_TYPES = (AUTH_NONE, AUTH_BEARER, AUTH_BASIC, AUTH_API_KEY)

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_ERROR = "error"
SERVER_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE, STATUS_ERROR)


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class ServerModel(Base):
    __tablename__ = "mcp_servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str] = mapped_column(String(255), nullable=False)
    auth_type: Mapped[str] = mapped_column(String(50), nullable=False, default=AUTH_NONE)
    # Raw JSON text, interpreted per auth_type at discovery time.
    auth_config: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_INACTIVE)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tags: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_on: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_on: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    tools: Mapped[list["MCPToolModel"]] = relationship(
        back_populates="server",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def tag_list(self) -> list[str]:
        return [tag.strip() for tag in (self.tags or "").split(",") if tag.strip()]


class MCPToolModel(Base):
    __tablename__ = "mcp_tools"
    __table_args__ = (UniqueConstraint("server_id", "name", name="uq_mcp_tool_server_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    server_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("mcp_servers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    parameters: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_on: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_on: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    server: Mapped[ServerModel] = relationship(back_populates="tools")

    def get_parameters(self) -> list[dict[str, Any]]:
        if not self.parameters:
            return []
        return json.loads(self.parameters)

    def set_parameters(self, descriptors: "list[ParameterDescriptor]") -> None:
        self.parameters = json.dumps([descriptor.to_dict() for descriptor in descriptors])
