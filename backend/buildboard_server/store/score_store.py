"""
Leaderboard score storage for Buildboard.

A member's score is written twice:

    leaderboards/global/scores/{member}   ScoreEntry (authoritative)
    profiles/{member}.stats               {"score", "streak"} mirror

Invariants:
    - The leaderboard entry is the source of truth for the profile mirror
    - Profile writes merge, other profile fields are left alone
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .document_store import Document, DocumentStore

SCORES_COLLECTION = "leaderboards/global/scores"
PROFILES_COLLECTION = "profiles"


@dataclass
class ScoreEntry:
    """A member's leaderboard entry.

    Attributes:
        member: Member identity (document id)
        score: Total score
        streak: Current streak in days
        updated_at: Last update timestamp (Unix ms)
    """

    member: str
    score: int
    streak: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "member": self.member,
            "score": self.score,
            "streak": self.streak,
            "updated_at": self.updated_at,
        }

    def stats(self) -> dict[str, int]:
        return {"score": self.score, "streak": self.streak}

    @classmethod
    def from_document(cls, doc: Document) -> ScoreEntry:
        return cls(
            member=doc.data.get("member", doc.doc_id),
            score=int(doc.data.get("score", 0)),
            streak=int(doc.data.get("streak", 0)),
            updated_at=doc.data.get("updated_at", doc.updated_at),
        )


class ScoreStore:
    """Typed access to leaderboard entries and profile stats."""

    def __init__(self, documents: DocumentStore) -> None:
        self.documents = documents

    async def get_entry(self, member: str) -> ScoreEntry | None:
        doc = await self.documents.get(SCORES_COLLECTION, member)
        return ScoreEntry.from_document(doc) if doc else None

    async def put_entry(self, entry: ScoreEntry) -> ScoreEntry:
        await self.documents.set(
            SCORES_COLLECTION, entry.member, entry.to_dict(), merge=True, ts=entry.updated_at
        )
        return entry

    async def get_profile_stats(self, member: str) -> dict[str, int] | None:
        doc = await self.documents.get(PROFILES_COLLECTION, member)
        if doc is None or "stats" not in doc.data:
            return None
        return dict(doc.data["stats"])

    async def put_profile_stats(self, entry: ScoreEntry) -> None:
        await self.documents.set(
            PROFILES_COLLECTION,
            entry.member,
            {"stats": entry.stats(), "updated_at": entry.updated_at},
            merge=True,
            ts=entry.updated_at,
        )

    async def top(self, limit: int) -> list[ScoreEntry]:
        docs = await self.documents.list_collection(
            SCORES_COLLECTION, order_by="score", descending=True, limit=limit
        )
        return [ScoreEntry.from_document(doc) for doc in docs]

    async def iter_members(self, batch_size: int = 200) -> AsyncIterator[str]:
        offset = 0
        while True:
            docs = await self.documents.list_collection(
                SCORES_COLLECTION, limit=batch_size, offset=offset
            )
            if not docs:
                return
            offset += len(docs)
            for doc in docs:
                yield doc.doc_id
