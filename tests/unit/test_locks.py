"""
Unit tests for keyed locks and status resolution.
"""

import asyncio

import pytest

from backend.buildboard_server.social.locks import KeyedLocks
from backend.buildboard_server.social.reconciler import resolve_status
from backend.buildboard_server.store.relationship_store import RelationshipRecord, RequestStatus


class TestKeyedLocks:
    """Tests for KeyedLocks."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("build-9"):
                order.append(f"{name}:in")
                await asyncio.sleep(0.01)
                order.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (
            ["a:in", "a:out", "b:in", "b:out"],
            ["b:in", "b:out", "a:in", "a:out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        locks = KeyedLocks()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold("a"):
                await entered.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)

        async with locks.hold("b"):
            entered.set()

        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_unused_locks_are_dropped(self):
        locks = KeyedLocks()

        async with locks.hold(("u1", "u2")):
            assert len(locks) == 1

        assert len(locks) == 0


def _record(status):
    return RelationshipRecord("u1", "u2", status, 1, 1)


class TestResolveStatus:
    """Least privileged status wins."""

    def test_no_records(self):
        assert resolve_status(None, None) is None

    @pytest.mark.parametrize(
        "first, second, expected",
        [
            (RequestStatus.ACCEPTED, RequestStatus.DECLINED, RequestStatus.DECLINED),
            (RequestStatus.ACCEPTED, RequestStatus.PENDING, RequestStatus.PENDING),
            (RequestStatus.PENDING, RequestStatus.DECLINED, RequestStatus.DECLINED),
            (RequestStatus.ACCEPTED, RequestStatus.ACCEPTED, RequestStatus.ACCEPTED),
        ],
    )
    def test_both_present(self, first, second, expected):
        assert resolve_status(_record(first), _record(second)) == expected
        assert resolve_status(_record(second), _record(first)) == expected

    @pytest.mark.parametrize(
        "present, expected",
        [
            (RequestStatus.ACCEPTED, RequestStatus.PENDING),
            (RequestStatus.PENDING, RequestStatus.PENDING),
            (RequestStatus.DECLINED, RequestStatus.DECLINED),
        ],
    )
    def test_missing_mirror_is_capped_at_pending(self, present, expected):
        assert resolve_status(_record(present), None) == expected
        assert resolve_status(None, _record(present)) == expected
