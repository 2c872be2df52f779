"""
Like / popularity engagement counter for Buildboard.

A like is two documents: the mark under likes/{content}/by/{member} and
the popularity field of builds/{content}. They are written in two steps,
with a compensating rollback:

    like:   write mark  ──▶ counter +1 (transaction)
                              │ fails
                              ▼
                          delete mark  (fails too ─▶ flag build suspect)

    unlike: delete mark ──▶ counter -1, floored at 0 (transaction)
                              │ fails
                              ▼
                          restore mark (fails too ─▶ flag build suspect)

Invariants:
    - like/unlike on one build are serialized with the Reconciler's recount
    - The counter changes only inside a single-document transaction
    - A store failure always reaches the caller as TransientStoreError

How to change safely:
    - Keep the mark write first; it is the step whose failure is harmless
    - Any new counter needs a matching recount in the Reconciler
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..errors import AlreadyLikedError, NotFoundError, NotLikedError, TransientStoreError
from ..store.document_store import now_ms, validate_key
from ..store.engagement_store import EngagementStore, LikeMark
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


def _content_not_found(content: str) -> NotFoundError:
    return NotFoundError(
        f"Build not found: {content}", code="BUILD_NOT_FOUND", details={"content": content}
    )


class EngagementService:
    """Likes and popularity of builds.

    Example:
        >>> service = EngagementService(engagement, reconciler)
        >>> await service.like("build-9", "u1")
        1
        >>> await service.get_popularity("build-9")
        1
    """

    def __init__(
        self,
        engagement: EngagementStore,
        reconciler: Reconciler,
        read_repair: bool = True,
    ) -> None:
        self.engagement = engagement
        self.reconciler = reconciler
        self.read_repair = read_repair

    async def _compensate(
        self,
        content: str,
        member: str,
        operation: str,
        undo: Callable[[], Awaitable[object]],
    ) -> None:
        """Undo the mark write of a failed like/unlike."""
        try:
            await undo()
        except TransientStoreError:
            self.reconciler.mark_content_suspect(content, reason=f"{operation} compensation failed")
            logger.error(
                f"{operation} compensation failed",
                extra={"content": content, "member": member},
                exc_info=True,
            )
        else:
            logger.warning(
                f"{operation} rolled back after counter failure",
                extra={"content": content, "member": member},
            )

    async def like(self, content: str, member: str) -> int:
        """Like a build.

        Returns:
            The new popularity

        Raises:
            NotFoundError: If the build does not exist
            AlreadyLikedError: If the member already likes the build
            TransientStoreError: If the store failed (safe to retry)
        """
        validate_key(content, "content")
        validate_key(member, "member")

        async with self.reconciler.content_lock(content):
            if not await self.engagement.content_exists(content):
                raise _content_not_found(content)
            if await self.engagement.get_mark(content, member) is not None:
                raise AlreadyLikedError(content, member)

            await self.engagement.put_mark(LikeMark(content, member, now_ms()))

            try:
                popularity = await self.engagement.adjust_popularity(content, +1)
            except TransientStoreError:
                await self._compensate(
                    content, member, "like", lambda: self.engagement.delete_mark(content, member)
                )
                raise

            if popularity is None:
                # Build removed between the existence check and the increment
                await self._compensate(
                    content, member, "like", lambda: self.engagement.delete_mark(content, member)
                )
                raise _content_not_found(content)

        logger.debug("Liked build", extra={"content": content, "member": member})
        return popularity

    async def unlike(self, content: str, member: str) -> int:
        """Remove a like.

        Returns:
            The new popularity (0 if the build no longer exists)

        Raises:
            NotLikedError: If the member does not like the build
            TransientStoreError: If the store failed (safe to retry)
        """
        validate_key(content, "content")
        validate_key(member, "member")

        async with self.reconciler.content_lock(content):
            mark = await self.engagement.get_mark(content, member)
            if mark is None:
                raise NotLikedError(content, member)

            await self.engagement.delete_mark(content, member)

            try:
                popularity = await self.engagement.adjust_popularity(content, -1)
            except TransientStoreError:
                await self._compensate(
                    content, member, "unlike", lambda: self.engagement.put_mark(mark)
                )
                raise

        logger.debug("Unliked build", extra={"content": content, "member": member})
        return popularity or 0

    async def get_popularity(self, content: str) -> int:
        """Cached popularity of a build.

        May lag the true like count after a failed write, unless the build
        is flagged suspect and read repair is enabled.

        Raises:
            NotFoundError: If the build does not exist
        """
        validate_key(content, "content")

        if self.read_repair and self.reconciler.is_content_suspect(content):
            await self.reconciler.reconcile_popularity(content, force=True)

        popularity = await self.engagement.get_popularity(content)
        if popularity is None:
            raise _content_not_found(content)
        return popularity

    async def has_liked(self, content: str, member: str) -> bool:
        validate_key(content, "content")
        validate_key(member, "member")
        return await self.engagement.get_mark(content, member) is not None
