"""
Integration tests for the friend request state machine.

Tests cover:
- send / accept / decline transitions on both mirrored records
- Preconditions (self request, already friends, not pending)
- Idempotent resend and simultaneous cross requests
- Partial writes flagged and repaired on read
"""

from unittest.mock import patch

import pytest

from backend.buildboard_server.errors import (
    AlreadyFriendsError,
    NoSuchRequestError,
    NotPendingError,
    SelfRequestError,
    TransientStoreError,
    ValidationError,
)
from backend.buildboard_server.store.relationship_store import RequestStatus


def _fail_for_owner(original, owner):
    """Wrap a store write so it fails for records/edges stored under ``owner``."""

    async def write(item):
        if item.owner == owner:
            raise TransientStoreError("injected failure", operation="write")
        return await original(item)

    return write


class TestRelationshipService:
    """Tests for RelationshipService."""

    @pytest.mark.asyncio
    async def test_send_and_accept(self, relationships):
        """Accepting a request makes both members friends."""
        await relationships.send_request("u1", "u2")

        pending = await relationships.list_pending("u2")
        assert len(pending) == 1
        assert pending[0].owner == "u2"
        assert pending[0].counterpart == "u1"
        assert pending[0].status == RequestStatus.PENDING

        await relationships.accept("u2", "u1")

        assert await relationships.list_friends("u1") == ["u2"]
        assert await relationships.list_friends("u2") == ["u1"]
        assert await relationships.list_pending("u1") == []
        assert await relationships.list_pending("u2") == []

    @pytest.mark.asyncio
    async def test_both_records_written_with_same_timestamp(self, relationships):
        outgoing = await relationships.send_request("u1", "u2")
        incoming = await relationships.get_record("u2", "u1")

        assert outgoing.owner == "u1"
        assert incoming.status == RequestStatus.PENDING
        assert incoming.created_at == outgoing.created_at
        assert incoming.updated_at == outgoing.updated_at

    @pytest.mark.asyncio
    async def test_accept_marks_both_records(self, relationships):
        await relationships.send_request("u1", "u2")
        await relationships.accept("u2", "u1")

        for owner, counterpart in (("u1", "u2"), ("u2", "u1")):
            record = await relationships.get_record(owner, counterpart)
            assert record.status == RequestStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_decline_then_rerequest(self, relationships):
        """A declined request can be sent again and is Pending afresh."""
        await relationships.send_request("u1", "u2")
        await relationships.decline("u2", "u1")

        assert await relationships.list_friends("u1") == []
        assert await relationships.list_friends("u2") == []
        assert (await relationships.get_record("u1", "u2")).status == RequestStatus.DECLINED

        record = await relationships.send_request("u1", "u2")

        assert record.status == RequestStatus.PENDING
        assert (await relationships.get_record("u2", "u1")).status == RequestStatus.PENDING
        assert len(await relationships.list_pending("u2")) == 1

    @pytest.mark.asyncio
    async def test_resend_is_idempotent(self, relationships, documents):
        """Sending twice leaves exactly one Pending record per side."""
        await relationships.send_request("u1", "u2")
        await relationships.send_request("u1", "u2")

        assert await documents.count("friends/u1/requests") == 1
        assert await documents.count("friends/u2/requests") == 1
        assert (await relationships.get_record("u1", "u2")).status == RequestStatus.PENDING
        assert (await relationships.get_record("u2", "u1")).status == RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_cross_requests_converge(self, relationships):
        """Requests in both directions leave both sides Pending."""
        await relationships.send_request("u1", "u2")
        await relationships.send_request("u2", "u1")

        assert (await relationships.get_record("u1", "u2")).status == RequestStatus.PENDING
        assert (await relationships.get_record("u2", "u1")).status == RequestStatus.PENDING

        await relationships.accept("u1", "u2")
        assert await relationships.list_friends("u2") == ["u1"]

    @pytest.mark.asyncio
    async def test_self_request_rejected(self, relationships):
        with pytest.raises(SelfRequestError) as exc_info:
            await relationships.send_request("u1", "u1")

        assert exc_info.value.code == "SELF_REQUEST"
        assert await relationships.get_record("u1", "u1") is None

    @pytest.mark.asyncio
    async def test_request_to_friend_rejected(self, relationships):
        await relationships.send_request("u1", "u2")
        await relationships.accept("u2", "u1")

        with pytest.raises(AlreadyFriendsError):
            await relationships.send_request("u1", "u2")
        with pytest.raises(AlreadyFriendsError):
            await relationships.send_request("u2", "u1")

    @pytest.mark.asyncio
    async def test_accept_without_request(self, relationships):
        with pytest.raises(NoSuchRequestError):
            await relationships.accept("u2", "u1")

    @pytest.mark.asyncio
    async def test_accept_after_decline(self, relationships):
        await relationships.send_request("u1", "u2")
        await relationships.decline("u2", "u1")

        with pytest.raises(NotPendingError) as exc_info:
            await relationships.accept("u2", "u1")

        assert exc_info.value.details["status"] == "declined"
        assert await relationships.list_friends("u2") == []

    @pytest.mark.asyncio
    async def test_decline_accepted_rejected(self, relationships):
        await relationships.send_request("u1", "u2")
        await relationships.accept("u2", "u1")

        with pytest.raises(NotPendingError):
            await relationships.decline("u1", "u2")

        assert await relationships.list_friends("u1") == ["u2"]

    @pytest.mark.asyncio
    async def test_invalid_identity(self, relationships):
        with pytest.raises(ValidationError):
            await relationships.send_request("u1", "a/b")

    @pytest.mark.asyncio
    async def test_first_write_failure_leaves_nothing(self, relationships, reconciler):
        """A failure on the first write is surfaced without flagging the pair."""
        store = relationships.relationships
        with patch.object(
            store, "put_record", side_effect=_fail_for_owner(store.put_record, "u1")
        ):
            with pytest.raises(TransientStoreError):
                await relationships.send_request("u1", "u2")

        assert await relationships.get_record("u1", "u2") is None
        assert await relationships.get_record("u2", "u1") is None
        assert not reconciler.has_suspect_pairs("u1")

    @pytest.mark.asyncio
    async def test_half_written_accept_repaired_on_read(self, relationships, reconciler):
        """A missing edge after a failed accept is restored by list_friends."""
        await relationships.send_request("u1", "u2")

        store = relationships.relationships
        with patch.object(store, "put_edge", side_effect=_fail_for_owner(store.put_edge, "u1")):
            with pytest.raises(TransientStoreError):
                await relationships.accept("u2", "u1")

        assert reconciler.has_suspect_pairs("u1")
        assert await store.get_edge("u1", "u2") is None

        assert await relationships.list_friends("u1") == ["u2"]
        assert await relationships.list_friends("u2") == ["u1"]
        assert not reconciler.has_suspect_pairs("u1")

    @pytest.mark.asyncio
    async def test_half_written_accept_can_be_retried(self, relationships, reconciler):
        """If only one record was accepted, repair returns the pair to Pending."""
        await relationships.send_request("u1", "u2")

        store = relationships.relationships
        with patch.object(
            store, "put_record", side_effect=_fail_for_owner(store.put_record, "u1")
        ):
            with pytest.raises(TransientStoreError):
                await relationships.accept("u2", "u1")

        assert (await store.get_record("u2", "u1")).status == RequestStatus.ACCEPTED
        assert (await store.get_record("u1", "u2")).status == RequestStatus.PENDING

        assert await relationships.list_friends("u2") == []
        assert (await store.get_record("u2", "u1")).status == RequestStatus.PENDING

        await relationships.accept("u2", "u1")
        assert await relationships.list_friends("u1") == ["u2"]

    @pytest.mark.asyncio
    async def test_read_repair_disabled(self, relationships, reconciler):
        """Without read repair the divergence stays until the sweep."""
        relationships.read_repair = False
        await relationships.send_request("u1", "u2")

        store = relationships.relationships
        with patch.object(store, "put_edge", side_effect=_fail_for_owner(store.put_edge, "u1")):
            with pytest.raises(TransientStoreError):
                await relationships.accept("u2", "u1")

        assert await relationships.list_friends("u1") == []

        await reconciler.sweep()
        assert await relationships.list_friends("u1") == ["u2"]
