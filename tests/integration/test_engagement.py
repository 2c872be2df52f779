"""
Integration tests for likes and the popularity counter.

Tests cover:
- like / unlike keep the counter equal to the mark count
- AlreadyLiked / NotLiked / missing build
- Compensation when the counter write fails
- Suspect builds recounted on read
- Concurrent likes on one build
- Public build listings and the friends feed
"""

import asyncio
from unittest.mock import patch

import pytest

from backend.buildboard_server.errors import (
    AlreadyLikedError,
    NotFoundError,
    NotLikedError,
    TransientStoreError,
    ValidationError,
)


@pytest.fixture
def build_id():
    return "build-9"


async def _create_build(documents, build_id="build-9", popularity=0):
    await documents.set(
        "builds", build_id, {"owner": "u0", "name": "Run", "popularity": popularity}
    )


class TestEngagementService:
    """Tests for EngagementService."""

    @pytest.mark.asyncio
    async def test_like_increments(self, engagement, documents, build_id):
        await _create_build(documents)

        assert await engagement.like(build_id, "u1") == 1
        assert await engagement.get_popularity(build_id) == 1
        assert await engagement.has_liked(build_id, "u1") is True

    @pytest.mark.asyncio
    async def test_like_twice_rejected(self, engagement, documents, build_id):
        """A second like fails and leaves the counter alone."""
        await _create_build(documents)
        await engagement.like(build_id, "u1")

        with pytest.raises(AlreadyLikedError) as exc_info:
            await engagement.like(build_id, "u1")

        assert exc_info.value.message == "Already liked this build"
        assert await engagement.get_popularity(build_id) == 1

    @pytest.mark.asyncio
    async def test_unlike_restores_prior_value(self, engagement, documents, build_id):
        await _create_build(documents, popularity=0)
        await engagement.like(build_id, "u2")
        before = await engagement.get_popularity(build_id)

        await engagement.like(build_id, "u1")
        assert await engagement.get_popularity(build_id) == before + 1

        assert await engagement.unlike(build_id, "u1") == before
        assert await engagement.get_popularity(build_id) == before
        assert await engagement.has_liked(build_id, "u1") is False

    @pytest.mark.asyncio
    async def test_unlike_without_like(self, engagement, documents, build_id):
        await _create_build(documents, popularity=0)
        await engagement.like(build_id, "u2")

        with pytest.raises(NotLikedError):
            await engagement.unlike(build_id, "u1")

        assert await engagement.get_popularity(build_id) == 1

    @pytest.mark.asyncio
    async def test_popularity_never_negative(self, engagement, documents, build_id):
        """A stale mark on a zero counter does not push it below 0."""
        await _create_build(documents, popularity=0)
        await documents.set(f"likes/{build_id}/by", "u1", {"content": build_id, "member": "u1"})

        assert await engagement.unlike(build_id, "u1") == 0
        assert await engagement.get_popularity(build_id) == 0

    @pytest.mark.asyncio
    async def test_like_missing_build(self, engagement, documents):
        with pytest.raises(NotFoundError):
            await engagement.like("nope", "u1")

        assert await documents.count("likes/nope/by") == 0

    @pytest.mark.asyncio
    async def test_popularity_missing_build(self, engagement):
        with pytest.raises(NotFoundError):
            await engagement.get_popularity("nope")

    @pytest.mark.asyncio
    async def test_like_counter_failure_compensates(self, engagement, documents, build_id):
        """If the increment fails the mark is removed again."""
        await _create_build(documents)
        store = engagement.engagement

        with patch.object(
            store, "adjust_popularity", side_effect=TransientStoreError("injected")
        ):
            with pytest.raises(TransientStoreError):
                await engagement.like(build_id, "u1")

        assert await engagement.has_liked(build_id, "u1") is False
        assert await engagement.get_popularity(build_id) == 0
        assert not engagement.reconciler.is_content_suspect(build_id)

        assert await engagement.like(build_id, "u1") == 1

    @pytest.mark.asyncio
    async def test_unlike_counter_failure_compensates(self, engagement, documents, build_id):
        await _create_build(documents)
        await engagement.like(build_id, "u1")
        store = engagement.engagement

        with patch.object(
            store, "adjust_popularity", side_effect=TransientStoreError("injected")
        ):
            with pytest.raises(TransientStoreError):
                await engagement.unlike(build_id, "u1")

        assert await engagement.has_liked(build_id, "u1") is True
        assert await engagement.get_popularity(build_id) == 1

    @pytest.mark.asyncio
    async def test_failed_compensation_flags_build(
        self, engagement, reconciler, documents, build_id
    ):
        """When compensation fails too, the build is recounted on next read."""
        await _create_build(documents)
        store = engagement.engagement

        with patch.object(
            store, "adjust_popularity", side_effect=TransientStoreError("injected")
        ), patch.object(store, "delete_mark", side_effect=TransientStoreError("injected")):
            with pytest.raises(TransientStoreError):
                await engagement.like(build_id, "u1")

        assert reconciler.is_content_suspect(build_id)
        assert await engagement.has_liked(build_id, "u1") is True

        # Read repair recounts the orphan mark
        assert await engagement.get_popularity(build_id) == 1
        assert not reconciler.is_content_suspect(build_id)

    @pytest.mark.asyncio
    async def test_concurrent_likes(self, engagement, documents, build_id):
        """Concurrent likes from different members are all counted."""
        await _create_build(documents)

        await asyncio.gather(*(engagement.like(build_id, f"u{i}") for i in range(10)))

        assert await engagement.get_popularity(build_id) == 10
        assert await engagement.engagement.count_marks(build_id) == 10

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_like(self, engagement, documents, build_id):
        """Only one of two simultaneous likes by the same member succeeds."""
        await _create_build(documents)

        results = await asyncio.gather(
            engagement.like(build_id, "u1"),
            engagement.like(build_id, "u1"),
            return_exceptions=True,
        )

        assert sorted(type(r).__name__ for r in results) == ["AlreadyLikedError", "int"]
        assert await engagement.get_popularity(build_id) == 1


class TestBuildService:
    """Tests for BuildService."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, builds):
        build = await builds.create_build("u1", "  Run 5k  ", category="fitness")

        fetched = await builds.get_build(build.build_id)
        assert fetched.name == "Run 5k"
        assert fetched.owner == "u1"
        assert fetched.category == "fitness"
        assert fetched.popularity == 0
        assert fetched.is_public is False

    @pytest.mark.asyncio
    async def test_created_build_can_be_liked(self, builds, engagement):
        build = await builds.create_build("u1", "Read daily")

        assert await engagement.like(build.build_id, "u2") == 1
        assert (await builds.get_build(build.build_id)).popularity == 1

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, builds):
        with pytest.raises(ValidationError):
            await builds.create_build("u1", "   ")

    @pytest.mark.asyncio
    async def test_get_missing(self, builds):
        with pytest.raises(NotFoundError):
            await builds.get_build("nope")

    @pytest.mark.asyncio
    async def test_list_builds_by_owner(self, builds):
        await builds.create_build("u1", "a")
        await builds.create_build("u2", "b")
        await builds.create_build("u1", "c")

        names = {b.name for b in await builds.list_builds("u1")}
        assert names == {"a", "c"}

    @pytest.mark.asyncio
    async def test_public_builds_by_popularity_then_newest(self, builds, documents):
        await documents.set(
            "builds", "b1", {"owner": "u1", "is_public": True, "popularity": 2, "created_at": 100}
        )
        await documents.set(
            "builds", "b2", {"owner": "u2", "is_public": True, "popularity": 5, "created_at": 50}
        )
        await documents.set(
            "builds", "b3", {"owner": "u3", "is_public": True, "popularity": 2, "created_at": 300}
        )
        await documents.set(
            "builds", "b4", {"owner": "u1", "is_public": False, "popularity": 9, "created_at": 1}
        )

        public = await builds.list_public_builds()

        assert [b.build_id for b in public] == ["b2", "b3", "b1"]
        assert [b.build_id for b in await builds.list_public_builds(limit=1)] == ["b2"]

    @pytest.mark.asyncio
    async def test_like_moves_build_up_public_list(self, builds, engagement):
        first = await builds.create_build("u1", "a", is_public=True)
        second = await builds.create_build("u2", "b", is_public=True)

        await engagement.like(second.build_id, "u3")

        public = await builds.list_public_builds()
        assert public[0].build_id == second.build_id
        assert public[0].popularity == 1
        assert {b.build_id for b in public} == {first.build_id, second.build_id}

    @pytest.mark.asyncio
    async def test_friends_public_builds(self, builds, relationships, documents):
        await relationships.send_request("u1", "u2")
        await relationships.accept("u2", "u1")
        await relationships.send_request("u1", "u3")
        await relationships.accept("u3", "u1")
        await relationships.send_request("u1", "u4")

        await documents.set("builds", "b1", {"owner": "u2", "is_public": True, "updated_at": 100})
        await documents.set("builds", "b2", {"owner": "u3", "is_public": True, "updated_at": 300})
        await documents.set("builds", "b3", {"owner": "u2", "is_public": False, "updated_at": 400})
        await documents.set("builds", "b4", {"owner": "u4", "is_public": True, "updated_at": 500})
        await documents.set("builds", "b5", {"owner": "u1", "is_public": True, "updated_at": 600})

        feed = await builds.list_friends_public_builds("u1")

        assert [b.build_id for b in feed] == ["b2", "b1"]
        assert [b.build_id for b in await builds.list_friends_public_builds("u1", limit=1)] == [
            "b2"
        ]
        assert await builds.list_friends_public_builds("u4") == []

    @pytest.mark.parametrize("limit", [0, 101, True])
    @pytest.mark.asyncio
    async def test_invalid_list_limit_rejected(self, builds, limit):
        with pytest.raises(ValidationError):
            await builds.list_public_builds(limit=limit)
        with pytest.raises(ValidationError):
            await builds.list_friends_public_builds("u1", limit=limit)
