"""
Storage module for Buildboard - documents and typed projections.

This module handles:
- SQLite document store with single-document transactions
- Mirrored friend request / friendship projections
- Like marks and the popularity counter
- Leaderboard scores mirrored into profiles

Invariants:
    - Only single-document writes are atomic
    - Every write is keyed so that repeating it overwrites
    - SQLite uses WAL mode for concurrent reads during writes

How to change safely:
    - Keep document ids meaningful (member or build ids), never generated
      for projection records
    - Route every counter change through run_transaction()
"""

from .document_store import Document, DocumentStore, now_ms, validate_key
from .engagement_store import EngagementStore, LikeMark
from .score_store import ScoreEntry, ScoreStore
from .relationship_store import (
    FriendshipEdge,
    RelationshipRecord,
    RelationshipStore,
    RequestStatus,
    pair_key,
)

__all__ = [
    "Document",
    "DocumentStore",
    "now_ms",
    "validate_key",
    "EngagementStore",
    "LikeMark",
    "FriendshipEdge",
    "RelationshipRecord",
    "RelationshipStore",
    "RequestStatus",
    "pair_key",
    "ScoreEntry",
    "ScoreStore",
]
