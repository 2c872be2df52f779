"""
Like ledger and popularity counter storage for Buildboard.

Layout:

    likes/{content}/by/{member}   LikeMark (existence = "member likes content")
    builds/{content}.popularity   PopularityCounter (cached mark count)

The counter is a denormalized cache of the mark count. It is only ever
changed inside a single-document transaction on the build document, so
concurrent likes on one build serialize correctly. The mark and the
counter are two documents and are NOT updated atomically together.

Invariants:
    - At most one mark per (content, member): the member is the document id
    - popularity is never written below 0
    - Only the popularity field of a build is touched here

How to change safely:
    - Never read the counter and write it back outside run_transaction()
    - Keep count_marks() as the ground truth used by the Reconciler
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .document_store import Document, DocumentStore

logger = logging.getLogger(__name__)

BUILDS_COLLECTION = "builds"


def likes_collection(content: str) -> str:
    return f"likes/{content}/by"


@dataclass
class LikeMark:
    """A member's like of a build.

    Attributes:
        content: Build identifier
        member: Liking member (document id)
        created_at: Like timestamp (Unix ms)
    """

    content: str
    member: str
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "member": self.member, "created_at": self.created_at}

    @classmethod
    def from_document(cls, doc: Document) -> LikeMark:
        return cls(
            content=doc.data.get("content", ""),
            member=doc.data.get("member", doc.doc_id),
            created_at=doc.data.get("created_at", doc.created_at),
        )


class EngagementStore:
    """Typed access to like marks and the popularity counter.

    Example:
        >>> engagement = EngagementStore(documents)
        >>> await engagement.put_mark(LikeMark("build-9", "u1", now_ms()))
        >>> await engagement.adjust_popularity("build-9", +1)
        1
    """

    def __init__(self, documents: DocumentStore) -> None:
        self.documents = documents

    async def get_mark(self, content: str, member: str) -> LikeMark | None:
        doc = await self.documents.get(likes_collection(content), member)
        return LikeMark.from_document(doc) if doc else None

    async def put_mark(self, mark: LikeMark) -> LikeMark:
        await self.documents.set(
            likes_collection(mark.content), mark.member, mark.to_dict(), ts=mark.created_at
        )
        return mark

    async def delete_mark(self, content: str, member: str) -> bool:
        return await self.documents.delete(likes_collection(content), member)

    async def count_marks(self, content: str) -> int:
        """Count the marks of a build (ground truth for popularity)."""
        return await self.documents.count(likes_collection(content))

    async def content_exists(self, content: str) -> bool:
        return await self.documents.get(BUILDS_COLLECTION, content) is not None

    async def get_popularity(self, content: str) -> int | None:
        """Read the cached counter.

        Returns:
            The counter, or None if the build does not exist
        """
        doc = await self.documents.get(BUILDS_COLLECTION, content)
        if doc is None:
            return None
        return int(doc.data.get("popularity") or 0)

    async def adjust_popularity(self, content: str, delta: int) -> int | None:
        """Add ``delta`` to the counter in a single-document transaction.

        The result is floored at 0.

        Returns:
            The new counter, or None if the build does not exist
        """
        result: dict[str, int] = {}

        def apply(data: dict[str, Any] | None) -> dict[str, Any] | None:
            if data is None:
                return None
            value = max(0, int(data.get("popularity") or 0) + delta)
            result["popularity"] = value
            return {**data, "popularity": value}

        await self.documents.run_transaction(BUILDS_COLLECTION, content, apply)
        return result.get("popularity")

    async def overwrite_popularity(self, content: str, value: int) -> tuple[int, int] | None:
        """Set the counter to ``value`` if it differs.

        Returns:
            (previous, new) when a write happened, None when the build is
            missing or already holds ``value``
        """
        value = max(0, value)
        result: dict[str, int] = {}

        def apply(data: dict[str, Any] | None) -> dict[str, Any] | None:
            if data is None:
                return None
            previous = int(data.get("popularity") or 0)
            if previous == value:
                return None
            result["previous"] = previous
            return {**data, "popularity": value}

        await self.documents.run_transaction(BUILDS_COLLECTION, content, apply)
        if "previous" not in result:
            return None
        return result["previous"], value

    async def iter_content_ids(self, batch_size: int = 200) -> AsyncIterator[str]:
        """Yield every build id, in batches."""
        offset = 0
        while True:
            docs = await self.documents.list_collection(
                BUILDS_COLLECTION, limit=batch_size, offset=offset
            )
            if not docs:
                return
            offset += len(docs)
            for doc in docs:
                yield doc.doc_id
