"""
Builds: the content members like.

A build is a goal-tracking item owned by one member. Its document also
carries the popularity counter maintained by the engagement service; this
module only ever initializes it to 0.

Public builds are listed most liked first, and a member's feed lists the
public builds of their friends, most recently updated first.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..store.document_store import Document, DocumentStore, now_ms, validate_key
from ..store.engagement_store import BUILDS_COLLECTION
from .relationships import RelationshipService

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 200
MAX_LIST_LIMIT = 100


def _check_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 0 < limit <= MAX_LIST_LIMIT:
        raise ValidationError(
            f"limit must be between 1 and {MAX_LIST_LIMIT}", details={"limit": limit}
        )
    return limit


@dataclass
class Build:
    """A member's build.

    Attributes:
        build_id: Generated identifier (document id)
        owner: Owning member
        name: Display name
        category: Optional category
        description: Optional free text
        is_public: Visible to other members
        popularity: Cached like count
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    build_id: str
    owner: str
    name: str
    category: str | None
    description: str | None
    is_public: bool
    popularity: int
    created_at: int
    updated_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build_id,
            "owner": self.owner,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "is_public": self.is_public,
            "popularity": self.popularity,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Document) -> Build:
        data = doc.data
        return cls(
            build_id=doc.doc_id,
            owner=data.get("owner", ""),
            name=data.get("name", ""),
            category=data.get("category"),
            description=data.get("description"),
            is_public=bool(data.get("is_public", False)),
            popularity=int(data.get("popularity") or 0),
            created_at=data.get("created_at", doc.created_at),
            updated_at=data.get("updated_at", doc.updated_at),
        )


class BuildService:
    """Create and read builds."""

    def __init__(self, documents: DocumentStore, relationships: RelationshipService) -> None:
        self.documents = documents
        self.relationships = relationships

    async def create_build(
        self,
        owner: str,
        name: str,
        category: str | None = None,
        description: str | None = None,
        is_public: bool = False,
    ) -> Build:
        """Create a build with popularity 0.

        Raises:
            ValidationError: If the name is empty or too long
        """
        validate_key(owner, "owner")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Build name is required", details={"name": name})
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"Build name longer than {MAX_NAME_LENGTH} characters",
                details={"length": len(name)},
            )

        ts = now_ms()
        build = Build(
            build_id=str(uuid.uuid4()),
            owner=owner,
            name=name.strip(),
            category=category,
            description=description,
            is_public=bool(is_public),
            popularity=0,
            created_at=ts,
            updated_at=ts,
        )
        data = build.to_dict()
        del data["build_id"]
        await self.documents.set(BUILDS_COLLECTION, build.build_id, data, ts=ts)

        logger.info("Created build", extra={"build_id": build.build_id, "owner": owner})
        return build

    async def get_build(self, build_id: str) -> Build:
        """Get a build.

        Raises:
            NotFoundError: If the build does not exist
        """
        validate_key(build_id, "build_id")
        doc = await self.documents.get(BUILDS_COLLECTION, build_id)
        if doc is None:
            raise NotFoundError(
                f"Build not found: {build_id}",
                code="BUILD_NOT_FOUND",
                details={"content": build_id},
            )
        return Build.from_document(doc)

    async def list_builds(self, owner: str, limit: int = 50) -> list[Build]:
        """Builds owned by ``owner``, newest first."""
        validate_key(owner, "owner")
        docs = await self.documents.list_collection(
            BUILDS_COLLECTION,
            where=("owner", owner),
            order_by="created_at",
            descending=True,
            limit=limit,
        )
        return [Build.from_document(doc) for doc in docs]

    async def list_public_builds(self, limit: int = 20) -> list[Build]:
        """Public builds, most liked first, then newest first.

        Raises:
            ValidationError: If limit is outside 1..MAX_LIST_LIMIT
        """
        docs = await self.documents.list_collection(
            BUILDS_COLLECTION,
            where=("is_public", True),
            order_by=("popularity", "created_at"),
            descending=True,
            limit=_check_limit(limit),
        )
        return [Build.from_document(doc) for doc in docs]

    async def list_friends_public_builds(self, member: str, limit: int = 20) -> list[Build]:
        """Public builds owned by ``member``'s friends, most recently updated first.

        Raises:
            ValidationError: If limit is outside 1..MAX_LIST_LIMIT
        """
        _check_limit(limit)
        friends = await self.relationships.list_friends(member)

        builds: list[Build] = []
        for friend in friends:
            docs = await self.documents.list_collection(
                BUILDS_COLLECTION,
                where=[("owner", friend), ("is_public", True)],
                order_by="updated_at",
                descending=True,
                limit=limit,
            )
            builds.extend(Build.from_document(doc) for doc in docs)

        builds.sort(key=lambda b: (b.updated_at, b.build_id), reverse=True)
        return builds[:limit]
