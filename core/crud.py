# core/crud.py
"""
Generic CRUD store used by the admin pages.

An `AdminCRUD` keeps a local list of entities for one table and applies
create/update/delete optimistically: the local list changes immediately, the
write goes to the backend, and the change is reconciled with the server row on
success or rolled back on failure. Writes to the same entity are serialized
through a `PendingEditLedger`, so local state is always either the last
confirmed server state or that state plus one in-flight edit per entity.

Operations never raise backend errors into the caller; they return a
`CrudResult` carrying either the data or a typed `AdminError`.
"""
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from core.config import logger as core_logger
from core.data_client import translate_error
from core.errors import AdminError, StoreClosedError, ValidationFailed
from core.ledger import CREATE, DELETE, UPDATE, PendingEdit, PendingEditLedger
from core.repository import TableRepository

logger = core_logger.getChild("CRUD")

ModelT = TypeVar("ModelT", bound=BaseModel)
T = TypeVar("T")

OPERATIONS = ("list", "create", "update", "delete")
OPTIMISTIC_PREFIX = "optimistic-"


@dataclass
class CrudResult(Generic[T]):
    data: Optional[T] = None
    error: Optional[AdminError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _field_errors(exc: ValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for item in exc.errors():
        name = ".".join(str(part) for part in item.get("loc", ())) or "__all__"
        errors.setdefault(name, item.get("msg", "Invalid value"))
    return errors


class AdminCRUD(Generic[ModelT]):
    """Optimistic list/create/update/delete over one `TableRepository`."""

    def __init__(self, repository: TableRepository[ModelT], ledger: Optional[PendingEditLedger] = None,
                 allow_delete: bool = True):
        self.repository = repository
        self.ledger = ledger or PendingEditLedger()
        self.allow_delete = allow_delete
        self.items: List[ModelT] = []
        self.errors: Dict[str, Optional[AdminError]] = {op: None for op in OPERATIONS}
        self._inflight: Dict[str, int] = {op: 0 for op in OPERATIONS}
        self._closed = False

    # --- State helpers ---

    @property
    def table(self) -> str:
        return self.repository.table

    @property
    def closed(self) -> bool:
        return self._closed

    def is_loading(self, op: Optional[str] = None) -> bool:
        if op is None:
            return any(self._inflight.values())
        return self._inflight[op] > 0

    def get(self, entity_id: str) -> Optional[ModelT]:
        index = self._index_of(entity_id)
        return None if index is None else self.items[index]

    def snapshot(self) -> List[Dict[str, Any]]:
        """Plain JSON-ready copies of the current items."""
        return [item.model_dump(mode="json") for item in self.items]

    def close(self) -> None:
        """Detaches the store; in-flight operations will no longer touch local state."""
        if not self._closed:
            logger.debug(f"[{self.table}] Store closed with {len(self.ledger)} edit(s) in flight.")
        self._closed = True

    def _index_of(self, entity_id: str) -> Optional[int]:
        for index, item in enumerate(self.items):
            if getattr(item, "id") == entity_id:
                return index
        return None

    def _put(self, entity_id: str, value: ModelT) -> None:
        index = self._index_of(entity_id)
        if index is None:
            self.items.append(value)
        else:
            self.items[index] = value

    def _remove(self, entity_id: str) -> None:
        index = self._index_of(entity_id)
        if index is not None:
            del self.items[index]

    @asynccontextmanager
    async def _track(self, op: str) -> AsyncIterator[None]:
        self._inflight[op] += 1
        try:
            yield
        finally:
            self._inflight[op] -= 1

    def _done(self, op: str, data: Any = None, error: Optional[AdminError] = None) -> CrudResult:
        if not self._closed:
            self.errors[op] = error
        if error is not None:
            logger.warning(f"[{self.table}] {op} failed: {error}")
        return CrudResult(data=data, error=error)

    def _closed_result(self, op: str) -> CrudResult:
        return CrudResult(error=StoreClosedError(f"{op} on closed '{self.table}' store"))

    def _build(self, values: Dict[str, Any]) -> ModelT:
        return self.repository.model.model_validate(values)

    # --- Operations ---

    async def list(self) -> CrudResult[List[ModelT]]:
        """Fetches all rows in server order; in-flight edits stay visible locally."""
        if self._closed:
            return self._closed_result("list")
        async with self._track("list"):
            try:
                rows = await self.repository.fetch_all()
            except Exception as e:
                return self._done("list", error=translate_error(e))
            if not self._closed:
                self.items = self.ledger.overlay(rows, key=lambda row: getattr(row, "id"))
            return self._done("list", data=rows)

    async def create(self, record: Dict[str, Any]) -> CrudResult[ModelT]:
        if self._closed:
            return self._closed_result("create")
        temp_id = f"{OPTIMISTIC_PREFIX}{uuid.uuid4().hex[:12]}"
        try:
            optimistic = self._build({**record, "id": temp_id})
        except ValidationError as e:
            return self._done("create", error=ValidationFailed(str(e), field_errors=_field_errors(e)))

        async with self._track("create"), self.ledger.hold(temp_id):
            self.ledger.record(PendingEdit(temp_id, CREATE, optimistic=optimistic))
            self.items.append(optimistic)
            try:
                created = await self.repository.insert(record)
            except Exception as e:
                if not self._closed:
                    self._remove(temp_id)
                return self._done("create", error=translate_error(e))
            finally:
                self.ledger.settle(temp_id)
            if not self._closed:
                created_id = getattr(created, "id")
                index = self._index_of(temp_id)
                if index is None or self.get(created_id) is not None:
                    # A concurrent list() already brought in the server row
                    self._remove(temp_id)
                    self._put(created_id, created)
                else:
                    self.items[index] = created
            return self._done("create", data=created)

    async def update(self, entity_id: str, patch: Dict[str, Any]) -> CrudResult[ModelT]:
        if self._closed:
            return self._closed_result("update")
        async with self._track("update"), self.ledger.hold(entity_id):
            index = self._index_of(entity_id)
            if index is not None:
                snapshot = self.items[index]
                try:
                    optimistic = self._build({**snapshot.model_dump(), **patch, "id": entity_id})
                except ValidationError as e:
                    return self._done("update", error=ValidationFailed(str(e), field_errors=_field_errors(e)))
                self.ledger.record(PendingEdit(entity_id, UPDATE, snapshot=snapshot, index=index, optimistic=optimistic))
                self.items[index] = optimistic
            try:
                updated = await self.repository.update(entity_id, patch)
            except Exception as e:
                edit = self.ledger.settle(entity_id)
                if edit is not None and not self._closed:
                    self._put(entity_id, edit.snapshot)
                return self._done("update", error=translate_error(e))
            finally:
                self.ledger.settle(entity_id)
            if not self._closed:
                self._put(entity_id, updated)
            return self._done("update", data=updated)

    async def delete(self, entity_id: str) -> CrudResult[None]:
        if self._closed:
            return self._closed_result("delete")
        if not self.allow_delete:
            return self._done("delete", error=ValidationFailed(
                f"Deletes are disabled for '{self.table}'", user_message="This entry cannot be deleted."))
        async with self._track("delete"), self.ledger.hold(entity_id):
            index = self._index_of(entity_id)
            if index is not None:
                self.ledger.record(PendingEdit(entity_id, DELETE, snapshot=self.items[index], index=index))
                del self.items[index]
            try:
                await self.repository.delete(entity_id)
            except Exception as e:
                edit = self.ledger.settle(entity_id)
                if edit is not None and not self._closed and self._index_of(entity_id) is None:
                    self.items.insert(min(edit.index, len(self.items)), edit.snapshot)
                return self._done("delete", error=translate_error(e))
            finally:
                self.ledger.settle(entity_id)
            return self._done("delete")
