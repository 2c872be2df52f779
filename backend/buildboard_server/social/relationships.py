"""
Friend request state machine for Buildboard.

States per ordered pair:

    NONE ──send──▶ Pending ──accept──▶ Accepted (terminal, grants friendship)
                      │
                      └──decline──▶ Declined ──send──▶ Pending

Each transition writes both mirrored RelationshipRecords and, on accept,
both FriendshipEdges. These are separate single-document writes:

- The first write failing leaves nothing committed; the caller may retry.
- A later write failing leaves the pair half-written. The pair is
  flagged for the Reconciler and the error is re-raised.

Invariants:
    - Resending before a decision is an idempotent overwrite
    - Both mirrored records of one transition carry the same timestamp
    - On success the triangle invariant holds for the pair

How to change safely:
    - Keep every write keyed by (owner, counterpart)
    - Any new multi-write transition must go through _write_mirrored()
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..errors import (
    AlreadyFriendsError,
    NoSuchRequestError,
    NotPendingError,
    SelfRequestError,
    TransientStoreError,
)
from ..store.document_store import now_ms, validate_key
from ..store.relationship_store import (
    FriendshipEdge,
    RelationshipRecord,
    RelationshipStore,
    RequestStatus,
)
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class RelationshipService:
    """Friend requests and friendships between members.

    Example:
        >>> service = RelationshipService(relationships, reconciler)
        >>> await service.send_request("u1", "u2")
        >>> await service.accept("u2", "u1")
        >>> await service.list_friends("u1")
        ['u2']
    """

    def __init__(
        self,
        relationships: RelationshipStore,
        reconciler: Reconciler,
        read_repair: bool = True,
    ) -> None:
        """Initialize the service.

        Args:
            relationships: Mirrored relationship projections
            reconciler: Reconciler for locks, suspect flags and read repair
            read_repair: Repair suspect pairs before listing friends
        """
        self.relationships = relationships
        self.reconciler = reconciler
        self.read_repair = read_repair

    async def _write_mirrored(
        self,
        a: str,
        b: str,
        operation: str,
        writes: list[Callable[[], Awaitable[object]]],
    ) -> None:
        """Run the writes of one transition in order.

        Raises:
            TransientStoreError: After flagging the pair, if any write but
                the first fails
        """
        for index, write in enumerate(writes):
            try:
                await write()
            except TransientStoreError:
                if index > 0:
                    self.reconciler.mark_pair_suspect(a, b, reason=operation)
                    logger.error(
                        f"{operation} failed after partial write",
                        extra={"pair": f"{a}|{b}", "completed_writes": index},
                    )
                raise

    async def send_request(self, from_member: str, to_member: str) -> RelationshipRecord:
        """Send (or resend) a friend request.

        Args:
            from_member: Requesting member
            to_member: Requested member

        Returns:
            The requester's projection of the request

        Raises:
            SelfRequestError: If both members are the same
            AlreadyFriendsError: If the members are already friends
        """
        validate_key(from_member, "from_member")
        validate_key(to_member, "to_member")
        if from_member == to_member:
            raise SelfRequestError(from_member)

        async with self.reconciler.pair_lock(from_member, to_member):
            if (
                await self.relationships.get_edge(from_member, to_member) is not None
                or await self.relationships.get_edge(to_member, from_member) is not None
            ):
                raise AlreadyFriendsError(from_member, to_member)

            for owner, counterpart in ((from_member, to_member), (to_member, from_member)):
                record = await self.relationships.get_record(owner, counterpart)
                if record is not None and record.status == RequestStatus.ACCEPTED:
                    raise AlreadyFriendsError(from_member, to_member)

            ts = now_ms()
            outgoing = RelationshipRecord(from_member, to_member, RequestStatus.PENDING, ts, ts)
            incoming = RelationshipRecord(to_member, from_member, RequestStatus.PENDING, ts, ts)

            await self._write_mirrored(
                from_member,
                to_member,
                "send_request",
                [
                    lambda: self.relationships.put_record(outgoing),
                    lambda: self.relationships.put_record(incoming),
                ],
            )

        logger.info("Friend request sent", extra={"from": from_member, "to": to_member})
        return outgoing

    async def _pending_record(self, me: str, other: str) -> RelationshipRecord:
        record = await self.relationships.get_record(me, other)
        if record is None:
            raise NoSuchRequestError(me, other)
        if record.status != RequestStatus.PENDING:
            raise NotPendingError(me, other, record.status.value)
        return record

    async def accept(self, me: str, other: str) -> None:
        """Accept a pending request and create the friendship.

        Raises:
            NoSuchRequestError: If there is no request between the members
            NotPendingError: If the request was already decided
        """
        validate_key(me, "me")
        validate_key(other, "other")

        async with self.reconciler.pair_lock(me, other):
            record = await self._pending_record(me, other)
            ts = now_ms()

            mine = RelationshipRecord(me, other, RequestStatus.ACCEPTED, record.created_at, ts)
            theirs = RelationshipRecord(other, me, RequestStatus.ACCEPTED, record.created_at, ts)

            await self._write_mirrored(
                me,
                other,
                "accept",
                [
                    lambda: self.relationships.put_record(mine),
                    lambda: self.relationships.put_record(theirs),
                    lambda: self.relationships.put_edge(FriendshipEdge(me, other, ts)),
                    lambda: self.relationships.put_edge(FriendshipEdge(other, me, ts)),
                ],
            )

        logger.info("Friend request accepted", extra={"member": me, "other": other})

    async def decline(self, me: str, other: str) -> None:
        """Decline a pending request. No friendship edge is touched.

        Raises:
            NoSuchRequestError: If there is no request between the members
            NotPendingError: If the request was already decided
        """
        validate_key(me, "me")
        validate_key(other, "other")

        async with self.reconciler.pair_lock(me, other):
            record = await self._pending_record(me, other)
            ts = now_ms()

            mine = RelationshipRecord(me, other, RequestStatus.DECLINED, record.created_at, ts)
            theirs = RelationshipRecord(other, me, RequestStatus.DECLINED, record.created_at, ts)

            await self._write_mirrored(
                me,
                other,
                "decline",
                [
                    lambda: self.relationships.put_record(mine),
                    lambda: self.relationships.put_record(theirs),
                ],
            )

        logger.info("Friend request declined", extra={"member": me, "other": other})

    async def list_pending(self, owner: str) -> list[RelationshipRecord]:
        """Pending requests stored under ``owner``, newest first."""
        validate_key(owner, "owner")
        return await self.relationships.list_records(owner, status=RequestStatus.PENDING)

    async def list_friends(self, owner: str) -> list[str]:
        """Identities of ``owner``'s friends.

        Suspect pairs involving ``owner`` are repaired first when read
        repair is enabled.
        """
        validate_key(owner, "owner")

        if self.read_repair and self.reconciler.has_suspect_pairs(owner):
            await self.reconciler.repair_suspects(member=owner)

        edges = await self.relationships.list_edges(owner)
        return [edge.friend for edge in edges]

    async def get_record(self, owner: str, counterpart: str) -> RelationshipRecord | None:
        """The request record stored under ``owner`` for ``counterpart``, if any."""
        validate_key(owner, "owner")
        validate_key(counterpart, "counterpart")
        return await self.relationships.get_record(owner, counterpart)
