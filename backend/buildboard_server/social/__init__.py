"""
Social services for Buildboard - relationships, engagement and repair.

This module handles:
- Friend request state machine over mirrored projections
- Likes with the popularity counter and compensating rollback
- Builds and leaderboard scores
- The Reconciler that heals partial multi-document writes

Invariants:
    - Every multi-document operation is a sequence of idempotent writes
    - A partially applied operation is always either compensated or
      flagged for the Reconciler

How to change safely:
    - Share the Reconciler's locks when adding operations on pairs or builds
    - Add a reconcile_* method for every new redundant projection
"""

from .builds import Build, BuildService
from .engagement import EngagementService
from .leaderboard import LeaderboardService
from .locks import KeyedLocks
from .reconciler import Reconciler, SweepReport, resolve_status
from .relationships import RelationshipService

__all__ = [
    "Build",
    "BuildService",
    "EngagementService",
    "LeaderboardService",
    "KeyedLocks",
    "Reconciler",
    "SweepReport",
    "resolve_status",
    "RelationshipService",
]
