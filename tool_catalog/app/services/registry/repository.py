from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from tool_catalog.app.models.db_models import MCPToolModel, ServerModel


class CatalogUnitOfWork:
    """Catalog operations bound to one open transaction."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_server(self, server_id: int) -> ServerModel | None:
        return self.db.get(ServerModel, server_id)

    def find_tool(self, server_id: int, name: str) -> MCPToolModel | None:
        return self.db.scalar(
            select(MCPToolModel).where(
                MCPToolModel.server_id == server_id,
                MCPToolModel.name == name,
            )
        )

    def add_tool(self, tool: MCPToolModel) -> MCPToolModel:
        self.db.add(tool)
        self.db.flush()
        return tool

    def flush(self) -> None:
        self.db.flush()

    def delete_tools_for_server(self, server_id: int) -> int:
        result = self.db.execute(delete(MCPToolModel).where(MCPToolModel.server_id == server_id))
        return result.rowcount or 0

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        with self.db.begin_nested():
            yield


class CatalogRepository:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def unit_of_work(self) -> Iterator[CatalogUnitOfWork]:
        """Commit on clean exit, roll back everything if the block raises."""
        with self._session_factory() as db:
            with db.begin():
                yield CatalogUnitOfWork(db)
