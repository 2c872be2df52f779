"""
Consistency reconciler for Buildboard.

The Reconciler detects and repairs divergence left behind by multi-document
operations that failed part way through:

- Relationship triangle: both mirrored RelationshipRecords agree, and
  FriendshipEdges exist on both sides iff both records are Accepted
- Popularity: builds/{c}.popularity equals the number of likes/{c}/by marks
- Score mirror: profiles/{m}.stats equals the leaderboard entry

It runs lazily (services flag keys as suspect after a failed write; reads
of a suspect key repair it first) and as a periodic sweep over everything.

Conflict policy:
    Mirrored records that disagree resolve to the least privileged status,
    Declined < Pending < Accepted. A missing mirror takes the present
    record's status, capped at Pending. Friendship is never granted by a
    repair that one side did not accept.

Invariants:
    - Repairs are idempotent: a second run finds nothing to change
    - Repairs take the same per-key locks as live operations
    - A counter is only ever set to the observed mark count
    - Violations are logged, never raised to members

How to change safely:
    - Every new redundant projection needs a reconcile_* method and a sweep pass
    - Keep sweep failures per item: log, flag store failures suspect, continue
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from ..config import ReconcilerConfig
from ..errors import ConsistencyViolation, TransientStoreError
from ..store.document_store import now_ms
from ..store.engagement_store import EngagementStore
from ..store.relationship_store import (
    FriendshipEdge,
    RelationshipRecord,
    RelationshipStore,
    RequestStatus,
    pair_key,
)
from ..store.score_store import ScoreStore
from .locks import KeyedLocks

logger = logging.getLogger(__name__)

_PRIVILEGE = {
    RequestStatus.DECLINED: 0,
    RequestStatus.PENDING: 1,
    RequestStatus.ACCEPTED: 2,
}


def resolve_status(
    first: RelationshipRecord | None,
    second: RelationshipRecord | None,
) -> RequestStatus | None:
    """Resolve the status two mirrored records should share.

    Returns:
        The resolved status, or None if neither record exists
    """
    present = [r.status for r in (first, second) if r is not None]
    if not present:
        return None
    if len(present) == 1:
        return min(present[0], RequestStatus.PENDING, key=_PRIVILEGE.__getitem__)
    return min(present, key=_PRIVILEGE.__getitem__)


@dataclass
class SweepReport:
    """Result of a full sweep.

    Attributes:
        pairs_checked: Member pairs examined
        contents_checked: Builds whose popularity was recounted
        scores_checked: Leaderboard entries examined
        violations: Divergences found and repaired
        errors: Keys that could not be checked
        started_at: Sweep start (Unix ms)
        duration_ms: Sweep duration
    """

    pairs_checked: int = 0
    contents_checked: int = 0
    scores_checked: int = 0
    violations: list[ConsistencyViolation] = field(default_factory=list)
    errors: int = 0
    started_at: int = 0
    duration_ms: int = 0

    @property
    def repairs(self) -> int:
        return len(self.violations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pairs_checked": self.pairs_checked,
            "contents_checked": self.contents_checked,
            "scores_checked": self.scores_checked,
            "repairs": self.repairs,
            "errors": self.errors,
            "violations": [v.details for v in self.violations],
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
        }


class Reconciler:
    """Detects and heals divergence between redundant projections.

    Thread safety:
        Designed to run inside one event loop alongside the services
        that share its locks.

    Example:
        >>> reconciler = Reconciler(relationships, engagement, scores)
        >>> await reconciler.reconcile_pair("u1", "u2")
        []
        >>> report = await reconciler.sweep()
    """

    def __init__(
        self,
        relationships: RelationshipStore,
        engagement: EngagementStore,
        scores: ScoreStore,
        config: ReconcilerConfig | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            relationships: Mirrored relationship projections
            engagement: Like marks and popularity counters
            scores: Leaderboard entries and profile mirrors
            config: Reconciler configuration
        """
        self.relationships = relationships
        self.engagement = engagement
        self.scores = scores
        self.config = config or ReconcilerConfig()

        self._pair_locks = KeyedLocks()
        self._content_locks = KeyedLocks()

        self._suspect_pairs: set[tuple[str, str]] = set()
        self._suspect_contents: set[str] = set()
        self._suspect_scores: set[str] = set()
        self._last_recount: dict[str, float] = {}

        self._running = False
        self._stop_event = asyncio.Event()
        self._sweep_count = 0
        self._repair_count = 0
        self._error_count = 0
        self._last_sweep: SweepReport | None = None

    # ------------------------------------------------------------------
    # Locks shared with the services
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def pair_lock(self, a: str, b: str) -> AsyncIterator[None]:
        async with self._pair_locks.hold(pair_key(a, b)):
            yield

    @asynccontextmanager
    async def content_lock(self, content: str) -> AsyncIterator[None]:
        async with self._content_locks.hold(content):
            yield

    # ------------------------------------------------------------------
    # Suspect registry
    # ------------------------------------------------------------------

    def mark_pair_suspect(self, a: str, b: str, reason: str = "") -> None:
        self._suspect_pairs.add(pair_key(a, b))
        logger.warning("Pair flagged for repair", extra={"pair": f"{a}|{b}", "reason": reason})

    def mark_content_suspect(self, content: str, reason: str = "") -> None:
        self._suspect_contents.add(content)
        logger.warning("Build flagged for recount", extra={"content": content, "reason": reason})

    def mark_score_suspect(self, member: str, reason: str = "") -> None:
        self._suspect_scores.add(member)
        logger.warning("Score flagged for repair", extra={"member": member, "reason": reason})

    def is_content_suspect(self, content: str) -> bool:
        return content in self._suspect_contents

    def has_suspect_pairs(self, member: str) -> bool:
        return any(member in pair for pair in self._suspect_pairs)

    # ------------------------------------------------------------------
    # Repairs
    # ------------------------------------------------------------------

    def _record_violation(self, violation: ConsistencyViolation) -> ConsistencyViolation:
        self._repair_count += 1
        logger.warning(
            "Consistency violation repaired",
            extra={
                "kind": violation.kind,
                "key": violation.key,
                "found": str(violation.found),
                "expected": str(violation.expected),
            },
        )
        return violation

    async def reconcile_pair(self, a: str, b: str) -> list[ConsistencyViolation]:
        """Repair the relationship triangle of one member pair.

        Args:
            a: First member
            b: Second member

        Returns:
            Violations found (and repaired); empty if consistent
        """
        async with self.pair_lock(a, b):
            violations = await self._reconcile_pair_locked(a, b)
        self._suspect_pairs.discard(pair_key(a, b))
        return violations

    async def _reconcile_pair_locked(self, a: str, b: str) -> list[ConsistencyViolation]:
        violations: list[ConsistencyViolation] = []
        key = f"{a}|{b}"

        rec_ab = await self.relationships.get_record(a, b)
        rec_ba = await self.relationships.get_record(b, a)
        resolved = resolve_status(rec_ab, rec_ba)
        ts = now_ms()

        if resolved is not None:
            created_at = min(r.created_at for r in (rec_ab, rec_ba) if r is not None)
            for owner, counterpart, record in ((a, b, rec_ab), (b, a, rec_ba)):
                if record is not None and record.status == resolved:
                    continue
                violations.append(
                    self._record_violation(
                        ConsistencyViolation(
                            "relationship",
                            f"{owner}->{counterpart}",
                            record.status.value if record else None,
                            resolved.value,
                        )
                    )
                )
                await self.relationships.put_record(
                    RelationshipRecord(
                        owner=owner,
                        counterpart=counterpart,
                        status=resolved,
                        created_at=record.created_at if record else created_at,
                        updated_at=ts,
                    )
                )

        want_edges = resolved == RequestStatus.ACCEPTED
        for owner, friend in ((a, b), (b, a)):
            edge = await self.relationships.get_edge(owner, friend)
            if want_edges and edge is None:
                violations.append(
                    self._record_violation(
                        ConsistencyViolation("edge", f"{owner}->{friend}", "missing", "present")
                    )
                )
                await self.relationships.put_edge(FriendshipEdge(owner, friend, ts))
            elif not want_edges and edge is not None:
                violations.append(
                    self._record_violation(
                        ConsistencyViolation("edge", f"{owner}->{friend}", "present", "missing")
                    )
                )
                await self.relationships.delete_edge(owner, friend)

        if violations:
            logger.info(
                "Reconciled pair",
                extra={
                    "pair": key,
                    "repairs": len(violations),
                    "status": resolved.value if resolved else None,
                },
            )
        return violations

    async def reconcile_popularity(
        self, content: str, force: bool = False
    ) -> ConsistencyViolation | None:
        """Recount the likes of a build and fix its cached counter.

        This is O(marks); unless forced, a build is recounted at most once
        per ``min_recount_interval_seconds``.

        Args:
            content: Build identifier
            force: Ignore the recount rate limit

        Returns:
            The violation repaired, or None if the counter was correct
        """
        last = self._last_recount.get(content)
        interval = self.config.min_recount_interval_seconds
        if not force and last is not None and time.monotonic() - last < interval:
            return None

        async with self.content_lock(content):
            true_count = await self.engagement.count_marks(content)
            changed = await self.engagement.overwrite_popularity(content, true_count)

        self._last_recount[content] = time.monotonic()
        self._suspect_contents.discard(content)

        if changed is None:
            return None
        previous, value = changed
        return self._record_violation(ConsistencyViolation("popularity", content, previous, value))

    async def reconcile_score(self, member: str) -> ConsistencyViolation | None:
        """Copy a leaderboard entry into the member's profile stats if they differ."""
        entry = await self.scores.get_entry(member)
        if entry is None:
            self._suspect_scores.discard(member)
            return None

        stats = await self.scores.get_profile_stats(member)
        if stats != entry.stats():
            await self.scores.put_profile_stats(entry)
        self._suspect_scores.discard(member)

        if stats == entry.stats():
            return None
        return self._record_violation(ConsistencyViolation("score", member, stats, entry.stats()))

    async def repair_suspects(self, member: str | None = None) -> list[ConsistencyViolation]:
        """Repair every key flagged suspect.

        Args:
            member: Only repair pairs involving this member (builds and
                scores are skipped when given)

        Returns:
            Violations repaired
        """
        violations: list[ConsistencyViolation] = []

        pairs = [p for p in self._suspect_pairs if member is None or member in p]
        for a, b in pairs:
            violations.extend(await self.reconcile_pair(a, b))

        if member is not None:
            return violations

        for content in list(self._suspect_contents):
            violation = await self.reconcile_popularity(content, force=True)
            if violation:
                violations.append(violation)

        for score_member in list(self._suspect_scores):
            violation = await self.reconcile_score(score_member)
            if violation:
                violations.append(violation)

        return violations

    async def sweep(self) -> SweepReport:
        """Check every pair, build and leaderboard entry.

        A key that cannot be checked is logged and skipped; the sweep
        continues. Keys that failed on a store error are also flagged suspect.

        Returns:
            SweepReport
        """
        started = time.monotonic()
        report = SweepReport(started_at=now_ms())
        batch_size = self.config.batch_size

        self._prune_recounts()

        async for a, b in self.relationships.iter_pairs(batch_size):
            report.pairs_checked += 1
            try:
                report.violations.extend(await self.reconcile_pair(a, b))
            except TransientStoreError as e:
                report.errors += 1
                self.mark_pair_suspect(a, b, reason=f"sweep: {e}")
            except Exception as e:
                report.errors += 1
                self._log_sweep_error("pair", f"{a}|{b}", e)

        async for content in self.engagement.iter_content_ids(batch_size):
            report.contents_checked += 1
            try:
                violation = await self.reconcile_popularity(content, force=True)
            except TransientStoreError as e:
                report.errors += 1
                self.mark_content_suspect(content, reason=f"sweep: {e}")
                continue
            except Exception as e:
                report.errors += 1
                self._log_sweep_error("popularity", content, e)
                continue
            if violation:
                report.violations.append(violation)

        async for member in self.scores.iter_members(batch_size):
            report.scores_checked += 1
            try:
                violation = await self.reconcile_score(member)
            except TransientStoreError as e:
                report.errors += 1
                self.mark_score_suspect(member, reason=f"sweep: {e}")
                continue
            except Exception as e:
                report.errors += 1
                self._log_sweep_error("score", member, e)
                continue
            if violation:
                report.violations.append(violation)

        report.duration_ms = int((time.monotonic() - started) * 1000)
        self._sweep_count += 1
        self._error_count += report.errors
        self._last_sweep = report

        logger.info(
            "Sweep complete",
            extra={
                "pairs_checked": report.pairs_checked,
                "contents_checked": report.contents_checked,
                "scores_checked": report.scores_checked,
                "repairs": report.repairs,
                "errors": report.errors,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    def _log_sweep_error(self, kind: str, key: str, error: Exception) -> None:
        # Not retryable, so the key is not flagged suspect
        logger.error(
            f"Sweep could not check {kind} {key}: {error}",
            exc_info=True,
            extra={"kind": kind, "key": key},
        )

    def _prune_recounts(self) -> None:
        """Forget recount times older than the recount interval."""
        cutoff = time.monotonic() - self.config.min_recount_interval_seconds
        stale = [content for content, last in self._last_recount.items() if last <= cutoff]
        for content in stale:
            del self._last_recount[content]

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run repairs and sweeps until stop() is called."""
        if self._running:
            logger.warning("Reconciler already running")
            return

        self._running = True
        self._stop_event.clear()
        interval = self.config.sweep_interval_seconds
        logger.info("Starting reconciler", extra={"sweep_interval_seconds": interval})

        try:
            while self._running:
                for step in (self.repair_suspects, self.sweep):
                    try:
                        await step()
                    except Exception as e:
                        self._error_count += 1
                        logger.error(f"Reconciler {step.__name__} failed: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.info("Reconciler cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the background loop."""
        self._running = False
        self._stop_event.set()
        logger.info("Stopping reconciler")

    @property
    def stats(self) -> dict[str, Any]:
        """Get reconciler statistics."""
        return {
            "running": self._running,
            "sweep_count": self._sweep_count,
            "repair_count": self._repair_count,
            "error_count": self._error_count,
            "suspect_pairs": len(self._suspect_pairs),
            "suspect_contents": len(self._suspect_contents),
            "suspect_scores": len(self._suspect_scores),
            "tracked_recounts": len(self._last_recount),
            "last_sweep": self._last_sweep.to_dict() if self._last_sweep else None,
        }
