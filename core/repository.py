# core/repository.py
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from core.config import logger as core_logger
from core.data_client import DataAccessClient
from core.errors import BackendError, NotFoundError

logger = core_logger.getChild("Repository")

ModelT = TypeVar("ModelT", bound=BaseModel)

ID_COLUMN = "id"


class TableRepository(Generic[ModelT]):
    """Typed access to one backend table through the shared data-access client."""

    def __init__(self, db: DataAccessClient, table: str, model: Type[ModelT],
                 order_by: Optional[str] = "position", select: str = "*"):
        self.db = db
        self.table = table
        self.model = model
        self.order_by = order_by
        self.select = select

    def _parse(self, row: Dict[str, Any]) -> ModelT:
        try:
            return self.model.model_validate(row)
        except ValidationError as e:
            row_id = row.get(ID_COLUMN, "UNKNOWN")
            logger.error(f"[{self.table}:{row_id}] Row does not match {self.model.__name__}: {e}", exc_info=False)
            raise BackendError(f"Malformed row in '{self.table}': {e}") from e

    def _single(self, response, entity_id: str, action: str) -> ModelT:
        if not response.data:
            raise NotFoundError(f"No row with id '{entity_id}' in '{self.table}' to {action}.")
        return self._parse(response.data[0])

    async def fetch_all(self) -> List[ModelT]:
        """Returns all rows in server-defined order."""
        def db_call():
            query = self.db.table(self.table).select(self.select)
            if self.order_by:
                query = query.order(self.order_by)
            return query.execute()

        response = await self.db.execute(f"[{self.table}] select", db_call)
        rows = response.data or []
        logger.debug(f"[{self.table}] Retrieved {len(rows)} rows.")
        return [self._parse(row) for row in rows]

    async def fetch_where(self, column: str, value: Any) -> List[ModelT]:
        def db_call():
            query = self.db.table(self.table).select(self.select).eq(column, value)
            if self.order_by:
                query = query.order(self.order_by)
            return query.execute()

        response = await self.db.execute(f"[{self.table}] select where {column}", db_call)
        return [self._parse(row) for row in (response.data or [])]

    async def fetch_one(self, entity_id: str) -> Optional[ModelT]:
        def db_call():
            return self.db.table(self.table).select(self.select).eq(ID_COLUMN, entity_id).limit(1).execute()

        response = await self.db.execute(f"[{self.table}:{entity_id}] select", db_call)
        if not response.data:
            return None
        return self._parse(response.data[0])

    async def insert(self, record: Dict[str, Any]) -> ModelT:
        """Inserts a row and returns it with its server-assigned id."""
        payload = {k: v for k, v in record.items() if k != ID_COLUMN}

        def db_call():
            return self.db.table(self.table).insert(payload).execute()

        response = await self.db.execute(f"[{self.table}] insert", db_call, idempotent=False)
        if not response.data:
            raise BackendError(f"Insert into '{self.table}' returned no row.")
        created = self._parse(response.data[0])
        logger.info(f"[{self.table}:{getattr(created, ID_COLUMN)}] Inserted row.")
        return created

    async def update(self, entity_id: str, patch: Dict[str, Any]) -> ModelT:
        payload = {k: v for k, v in patch.items() if k != ID_COLUMN}

        def db_call():
            return self.db.table(self.table).update(payload).eq(ID_COLUMN, entity_id).execute()

        response = await self.db.execute(f"[{self.table}:{entity_id}] update", db_call)
        updated = self._single(response, entity_id, "update")
        logger.info(f"[{self.table}:{entity_id}] Updated fields: {sorted(payload)}.")
        return updated

    async def delete(self, entity_id: str) -> None:
        attempts = 0

        def db_call():
            nonlocal attempts
            attempts += 1
            return self.db.table(self.table).delete().eq(ID_COLUMN, entity_id).execute()

        response = await self.db.execute(f"[{self.table}:{entity_id}] delete", db_call)
        if not response.data:
            if attempts > 1:
                # An earlier attempt may have removed the row before its response was lost
                logger.info(f"[{self.table}:{entity_id}] Row already gone on retried delete.")
                return
            raise NotFoundError(f"No row with id '{entity_id}' in '{self.table}' to delete.")
        logger.info(f"[{self.table}:{entity_id}] Deleted row.")
