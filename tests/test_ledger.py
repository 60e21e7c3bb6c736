import asyncio

import pytest

from core.ledger import CREATE, DELETE, UPDATE, PendingEdit, PendingEditLedger


def by_id(row):
    return row["id"]


@pytest.mark.asyncio
async def test_hold_serializes_same_entity_in_arrival_order():
    ledger = PendingEditLedger()
    order = []
    release_first = asyncio.Event()

    async def first():
        async with ledger.hold("a"):
            order.append("first:start")
            await release_first.wait()
            order.append("first:end")

    async def second():
        async with ledger.hold("a"):
            order.append("second")

    t1 = asyncio.create_task(first())
    await asyncio.sleep(0)
    t2 = asyncio.create_task(second())
    await asyncio.sleep(0)
    assert order == ["first:start"]
    assert ledger.is_busy("a")

    release_first.set()
    await asyncio.gather(t1, t2)
    assert order == ["first:start", "first:end", "second"]
    assert not ledger.is_busy("a")


@pytest.mark.asyncio
async def test_hold_does_not_block_other_entities():
    ledger = PendingEditLedger()
    async with ledger.hold("a"):
        await asyncio.wait_for(_enter(ledger, "b"), timeout=1)


async def _enter(ledger, entity_id):
    async with ledger.hold(entity_id):
        return True


def test_record_rejects_second_pending_edit():
    ledger = PendingEditLedger()
    ledger.record(PendingEdit("a", UPDATE))
    with pytest.raises(RuntimeError):
        ledger.record(PendingEdit("a", DELETE))
    assert ledger.settle("a").kind == UPDATE
    assert len(ledger) == 0


def test_overlay_keeps_in_flight_edits_visible():
    ledger = PendingEditLedger()
    ledger.record(PendingEdit("a", UPDATE, snapshot={"id": "a", "v": 1}, optimistic={"id": "a", "v": 2}))
    ledger.record(PendingEdit("b", DELETE, snapshot={"id": "b"}))
    ledger.record(PendingEdit("tmp", CREATE, optimistic={"id": "tmp"}))

    rows = [{"id": "a", "v": 5}, {"id": "b"}, {"id": "c"}]
    assert ledger.overlay(rows, key=by_id) == [{"id": "a", "v": 2}, {"id": "c"}, {"id": "tmp"}]
    # Rollback of the update now restores the freshly listed server state
    assert ledger.pending("a").snapshot == {"id": "a", "v": 5}
