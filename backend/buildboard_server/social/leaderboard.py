"""
Leaderboard scores for Buildboard.

update_score() is a dual write: the leaderboard entry first, then the
stats mirror on the member's profile. The entry is authoritative; a failed
mirror write flags the member for the Reconciler, which copies the entry
over the profile.

Invariants:
    - Scores and streaks are non-negative integers
    - The profile mirror is never written before the leaderboard entry
"""

from __future__ import annotations

import logging

from ..errors import TransientStoreError, ValidationError
from ..store.document_store import now_ms, validate_key
from ..store.score_store import ScoreEntry, ScoreStore
from .reconciler import Reconciler
from .relationships import RelationshipService

logger = logging.getLogger(__name__)

MAX_LEADERBOARD_LIMIT = 500


def _check_count(value: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer", details={name: value})
    return value


def _check_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError("limit must be an integer", details={"limit": limit})
    if not 0 < limit <= MAX_LEADERBOARD_LIMIT:
        raise ValidationError(
            f"limit must be between 1 and {MAX_LEADERBOARD_LIMIT}", details={"limit": limit}
        )
    return limit


class LeaderboardService:
    """Global leaderboard with profile stats mirror."""

    def __init__(
        self,
        scores: ScoreStore,
        reconciler: Reconciler,
        relationships: RelationshipService,
    ) -> None:
        self.scores = scores
        self.reconciler = reconciler
        self.relationships = relationships

    async def update_score(self, member: str, score: int, streak: int = 0) -> ScoreEntry:
        """Record a member's score and streak.

        Raises:
            ValidationError: If score or streak is negative
            TransientStoreError: If either write failed (safe to retry)
        """
        validate_key(member, "member")
        entry = ScoreEntry(
            member=member,
            score=_check_count(score, "score"),
            streak=_check_count(streak, "streak"),
            updated_at=now_ms(),
        )

        await self.scores.put_entry(entry)
        try:
            await self.scores.put_profile_stats(entry)
        except TransientStoreError:
            self.reconciler.mark_score_suspect(member, reason="update_score")
            logger.error("Profile stats write failed", extra={"member": member})
            raise

        logger.debug("Updated score", extra={"member": member, "score": entry.score})
        return entry

    async def get_leaderboard(self, limit: int = 50) -> list[ScoreEntry]:
        """Top entries by score, highest first.

        Raises:
            ValidationError: If limit is outside 1..MAX_LEADERBOARD_LIMIT
        """
        return await self.scores.top(_check_limit(limit))

    async def get_entry(self, member: str) -> ScoreEntry | None:
        validate_key(member, "member")
        return await self.scores.get_entry(member)

    async def get_friends_leaderboard(self, member: str, limit: int = 20) -> list[ScoreEntry]:
        """Scores of ``member`` and their friends, highest first.

        Friends without a leaderboard entry are left out. Ties rank by
        member identity.

        Raises:
            ValidationError: If limit is outside 1..MAX_LEADERBOARD_LIMIT
        """
        _check_limit(limit)
        friends = await self.relationships.list_friends(member)

        entries = []
        for candidate in [member, *friends]:
            entry = await self.scores.get_entry(candidate)
            if entry is not None:
                entries.append(entry)

        entries.sort(key=lambda e: (-e.score, e.member))
        return entries[:limit]
