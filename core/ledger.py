# core/ledger.py
"""
Pending-edit ledger.

Tracks at most one in-flight optimistic edit per entity id and serializes
writes to the same entity: `hold(entity_id)` admits one holder at a time, in
arrival order. Edits to different entities never wait on each other.
"""
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


@dataclass
class PendingEdit:
    entity_id: str
    kind: str
    snapshot: Any = None # Confirmed value before the edit (None for creates)
    index: Optional[int] = None # Position in the local list before the edit
    optimistic: Any = None # Locally displayed value while in flight (None for deletes)


class PendingEditLedger:

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._pending: Dict[str, PendingEdit] = {}

    @asynccontextmanager
    async def hold(self, entity_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._holders[entity_id] = self._holders.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[entity_id] -= 1
            if self._holders[entity_id] == 0:
                del self._holders[entity_id]
                self._locks.pop(entity_id, None)

    def is_busy(self, entity_id: str) -> bool:
        return entity_id in self._holders

    def record(self, edit: PendingEdit) -> None:
        if edit.entity_id in self._pending:
            raise RuntimeError(f"Entity '{edit.entity_id}' already has an in-flight edit.")
        self._pending[edit.entity_id] = edit

    def settle(self, entity_id: str) -> Optional[PendingEdit]:
        return self._pending.pop(entity_id, None)

    def pending(self, entity_id: str) -> Optional[PendingEdit]:
        return self._pending.get(entity_id)

    def __len__(self) -> int:
        return len(self._pending)

    def overlay(self, rows: List[Any], key: Callable[[Any], str]) -> List[Any]:
        """Re-applies in-flight edits on top of freshly fetched server rows."""
        result: List[Any] = []
        for row in rows:
            edit = self._pending.get(key(row))
            if edit is None or edit.kind == CREATE:
                result.append(row)
                continue
            # A rollback must restore the newest confirmed state
            edit.snapshot = row
            if edit.kind == UPDATE:
                result.append(edit.optimistic)
        listed = {key(row) for row in rows}
        for edit in self._pending.values():
            if edit.kind == CREATE and edit.entity_id not in listed:
                result.append(edit.optimistic)
        return result
