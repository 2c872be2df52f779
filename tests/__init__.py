"""
Buildboard Test Suite.

This package contains:
- unit/: Unit tests (document store, config, locks)
- integration/: Integration tests (services, reconciler, HTTP API on SQLite)
"""
