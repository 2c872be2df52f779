"""
Mirrored relationship projections for Buildboard.

Every friend request and friendship is stored twice, once under each
member, so each side can list its own requests and friends without a
scan:

    friends/{owner}/requests/{counterpart}   RelationshipRecord
    friends/{owner}/list/{friend}            FriendshipEdge

Invariants:
    - The counterpart (or friend) is the document id, so a repeated write
      for the same ordered pair overwrites instead of duplicating
    - Records are never physically deleted
    - This module writes one projection at a time; keeping the two sides
      in agreement is the job of the services and the Reconciler

How to change safely:
    - New fields need defaults in from_document() for records already stored
    - Keep document ids equal to the counterpart identity
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .document_store import Document, DocumentStore

logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    """Status of one projection of a friend request."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


@dataclass
class RelationshipRecord:
    """One member's projection of a friend request.

    Attributes:
        owner: Member under whom the record is stored
        counterpart: The other member (document id)
        status: Request status
        created_at: Request timestamp (Unix ms)
        updated_at: Last transition timestamp (Unix ms)
    """

    owner: str
    counterpart: str
    status: RequestStatus
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "counterpart": self.counterpart,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Document) -> RelationshipRecord:
        data = doc.data
        return cls(
            owner=data["owner"],
            counterpart=data.get("counterpart", doc.doc_id),
            status=RequestStatus(data["status"]),
            created_at=data.get("created_at", doc.created_at),
            updated_at=data.get("updated_at", doc.updated_at),
        )


@dataclass
class FriendshipEdge:
    """One member's projection of a friendship.

    Attributes:
        owner: Member under whom the edge is stored
        friend: The other member (document id)
        since: Friendship timestamp (Unix ms)
    """

    owner: str
    friend: str
    since: int

    def to_dict(self) -> dict[str, Any]:
        return {"owner": self.owner, "friend": self.friend, "since": self.since}

    @classmethod
    def from_document(cls, doc: Document) -> FriendshipEdge:
        return cls(
            owner=doc.data["owner"],
            friend=doc.data.get("friend", doc.doc_id),
            since=doc.data.get("since", doc.created_at),
        )


def requests_collection(owner: str) -> str:
    return f"friends/{owner}/requests"


def edges_collection(owner: str) -> str:
    return f"friends/{owner}/list"


def pair_key(a: str, b: str) -> tuple[str, str]:
    """Canonical unordered key for a pair of members."""
    return (a, b) if a <= b else (b, a)


class RelationshipStore:
    """Typed access to the mirrored request and friendship projections.

    Example:
        >>> relationships = RelationshipStore(documents)
        >>> await relationships.put_record(record)
        >>> pending = await relationships.list_records(
        ...     "u2", status=RequestStatus.PENDING
        ... )
    """

    def __init__(self, documents: DocumentStore) -> None:
        self.documents = documents

    async def get_record(self, owner: str, counterpart: str) -> RelationshipRecord | None:
        doc = await self.documents.get(requests_collection(owner), counterpart)
        return RelationshipRecord.from_document(doc) if doc else None

    async def put_record(self, record: RelationshipRecord) -> RelationshipRecord:
        """Write (or overwrite) one projection of a request."""
        await self.documents.set(
            requests_collection(record.owner),
            record.counterpart,
            record.to_dict(),
            ts=record.updated_at,
        )
        logger.debug(
            "Wrote relationship record",
            extra={
                "owner": record.owner,
                "counterpart": record.counterpart,
                "status": record.status.value,
            },
        )
        return record

    async def list_records(
        self,
        owner: str,
        status: RequestStatus | None = None,
    ) -> list[RelationshipRecord]:
        where = ("status", status.value) if status is not None else None
        docs = await self.documents.list_collection(
            requests_collection(owner),
            where=where,
            order_by="created_at",
            descending=True,
        )
        return [RelationshipRecord.from_document(doc) for doc in docs]

    async def get_edge(self, owner: str, friend: str) -> FriendshipEdge | None:
        doc = await self.documents.get(edges_collection(owner), friend)
        return FriendshipEdge.from_document(doc) if doc else None

    async def put_edge(self, edge: FriendshipEdge) -> FriendshipEdge:
        await self.documents.set(
            edges_collection(edge.owner), edge.friend, edge.to_dict(), ts=edge.since
        )
        logger.debug("Wrote friendship edge", extra={"owner": edge.owner, "friend": edge.friend})
        return edge

    async def delete_edge(self, owner: str, friend: str) -> bool:
        return await self.documents.delete(edges_collection(owner), friend)

    async def list_edges(self, owner: str) -> list[FriendshipEdge]:
        docs = await self.documents.list_collection(edges_collection(owner))
        return [FriendshipEdge.from_document(doc) for doc in docs]

    async def iter_pairs(self, batch_size: int = 200) -> AsyncIterator[tuple[str, str]]:
        """Yield every unordered member pair that has a record or an edge.

        Each pair is yielded once per call, in canonical (min, max) order.

        Args:
            batch_size: Documents fetched per store round trip
        """
        seen: set[tuple[str, str]] = set()

        for group, other_field in (("requests", "counterpart"), ("list", "friend")):
            cursor: tuple[str, str] | None = None
            while True:
                docs = await self.documents.collection_group(
                    group, limit=batch_size, start_after=cursor
                )
                if not docs:
                    break
                cursor = (docs[-1].collection, docs[-1].doc_id)

                for doc in docs:
                    if not doc.collection.startswith("friends/"):
                        continue
                    owner = doc.data.get("owner")
                    other = doc.data.get(other_field, doc.doc_id)
                    if not owner or not other:
                        continue
                    key = pair_key(owner, other)
                    if key not in seen:
                        seen.add(key)
                        yield key
