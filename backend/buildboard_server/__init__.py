"""
Buildboard Server - social consistency layer for goal-tracking builds.

This package keeps redundant projections correct on a document store that
only offers single-document transactions:
- Friend requests mirrored under both members, plus friendship edges
- Like marks per build, plus a denormalized popularity counter
- Leaderboard scores mirrored into member profiles

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────────┐
    │   Client    │────▶│  HTTP (v1)   │────▶│ Relationship /      │
    │   (UI)      │     │   Server     │     │ Engagement services │
    └─────────────┘     └──────────────┘     └──────────┬──────────┘
                                                        │
                                                        ▼
                        ┌─────────────────────────────────────────┐
                        │      DocumentStore (SQLite documents)   │
                        └─────────────────────────────────────────┘
                                             ▲
                                             │
                                      ┌──────┴─────┐
                                      │ Reconciler │
                                      └────────────┘

Invariants:
    - Multi-document operations are idempotent by construction
    - Only single-document writes are atomic
    - The Reconciler converges mirrored projections and cached counters

How to change safely:
    - Keep every write keyed so a retry overwrites instead of duplicating
    - Add a reconcile step for every new redundant projection
"""

from ._version import __version__

__all__ = ["__version__"]
