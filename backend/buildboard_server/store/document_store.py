"""
SQLite document store for Buildboard.

This module stores schemaless JSON documents addressed by a
Firestore-style collection path and a document id, for example
``friends/u1/requests`` + ``u2``. It is the only persistence layer of the
server; the typed stores wrap it.

The store deliberately offers atomicity for ONE document at a time:
- set/update/delete touch a single row
- run_transaction() is a single-document read-modify-write

Anything spanning several documents is the caller's responsibility
(idempotent writes plus the Reconciler).

Invariants:
    - At most one row per (collection, doc_id)
    - created_at is preserved across overwrites
    - Every sqlite3 failure surfaces as TransientStoreError

How to change safely:
    - Never add multi-document transactions here; callers must not depend on them
    - Keep JSON field filters parameterized (json_extract with bound paths)

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - data_json TEXT
        - created_at INTEGER (Unix ms)
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import NotFoundError, TransientStoreError, ValidationError

logger = logging.getLogger(__name__)

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


def validate_key(value: str, name: str) -> str:
    """Check that an opaque identity or content key is usable as a path segment."""
    if not isinstance(value, str) or not value or "/" in value:
        raise ValidationError(f"Invalid {name}: {value!r}", details={name: value})
    return value


def _json_path(field_name: str) -> str:
    if not _FIELD_RE.match(field_name):
        raise ValueError(f"Invalid field name: {field_name!r}")
    return f"$.{field_name}"


@dataclass
class Document:
    """A stored document.

    Attributes:
        collection: Collection path (e.g. "likes/build-9/by")
        doc_id: Document identifier within the collection
        data: Field values
        created_at: First write timestamp (Unix ms)
        updated_at: Last write timestamp (Unix ms)
    """

    collection: str
    doc_id: str
    data: dict[str, Any]
    created_at: int
    updated_at: int


class DocumentStore:
    """SQLite-backed document store with single-document transactions.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode; write
        transactions use BEGIN IMMEDIATE.

    Example:
        >>> store = DocumentStore("/var/lib/buildboard")
        >>> await store.initialize()
        >>> await store.set("builds", "b1", {"name": "Run 5k", "popularity": 0})
        >>> await store.run_transaction(
        ...     "builds", "b1", lambda d: {**d, "popularity": d["popularity"] + 1}
        ... )
    """

    def __init__(
        self,
        data_dir: str,
        db_filename: str = "documents.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the document store.

        Args:
            data_dir: Directory for the SQLite database file
            db_filename: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_filename
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._schema_ready = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a configured database connection.

        Yields:
            SQLite connection

        Raises:
            TransientStoreError: On any SQLite failure
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (sqlite3.Error, OSError) as e:
            raise TransientStoreError(f"Cannot open document store: {e}") from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True

            yield conn
        except sqlite3.Error as e:
            raise TransientStoreError(f"Document store failure: {e}") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_updated
                ON documents(collection, updated_at DESC);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection():
            pass
        logger.info(f"Initialized document store: {self.db_path}")

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(
            collection=row["collection"],
            doc_id=row["doc_id"],
            data=json.loads(row["data_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _fetch(conn: sqlite3.Connection, collection: str, doc_id: str) -> sqlite3.Row | None:
        cursor = conn.execute(
            "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )
        return cursor.fetchone()

    @staticmethod
    def _upsert(
        conn: sqlite3.Connection,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        ts: int,
    ) -> None:
        conn.execute(
            """
            INSERT INTO documents (collection, doc_id, data_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (collection, doc_id)
            DO UPDATE SET data_json = excluded.data_json, updated_at = excluded.updated_at
            """,
            (collection, doc_id, json.dumps(data), ts, ts),
        )

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Get a document.

        Args:
            collection: Collection path
            doc_id: Document identifier

        Returns:
            Document or None if not found
        """
        with self._get_connection() as conn:
            row = self._fetch(conn, collection, doc_id)
            return self._row_to_document(row) if row else None

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        merge: bool = False,
        ts: int | None = None,
    ) -> Document:
        """Write a document, creating it if needed.

        Without ``merge`` the stored data is replaced; with ``merge`` the
        given fields are shallow-merged into the existing data.

        Args:
            collection: Collection path
            doc_id: Document identifier
            data: Field values
            merge: Merge into existing data instead of replacing
            ts: Optional write timestamp

        Returns:
            The stored Document
        """
        now = ts or now_ms()

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._fetch(conn, collection, doc_id)
                stored = dict(data)
                if merge and row:
                    stored = json.loads(row["data_json"])
                    stored.update(data)

                self._upsert(conn, collection, doc_id, stored, now)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Set document",
            extra={"collection": collection, "doc_id": doc_id, "merge": merge},
        )

        return Document(
            collection=collection,
            doc_id=doc_id,
            data=stored,
            created_at=row["created_at"] if row else now,
            updated_at=now,
        )

    async def update(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        ts: int | None = None,
    ) -> Document:
        """Merge fields into an existing document.

        Args:
            collection: Collection path
            doc_id: Document identifier
            patch: Fields to update
            ts: Optional write timestamp

        Returns:
            Updated Document

        Raises:
            NotFoundError: If the document does not exist
        """
        now = ts or now_ms()

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._fetch(conn, collection, doc_id)
                if not row:
                    conn.execute("ROLLBACK")
                    raise NotFoundError(
                        f"Document not found: {collection}/{doc_id}",
                        details={"collection": collection, "doc_id": doc_id},
                    )

                stored = json.loads(row["data_json"])
                stored.update(patch)
                self._upsert(conn, collection, doc_id, stored, now)
                conn.execute("COMMIT")
            except NotFoundError:
                raise
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return Document(
            collection=collection,
            doc_id=doc_id,
            data=stored,
            created_at=row["created_at"],
            updated_at=now,
        )

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            return cursor.rowcount > 0

    async def run_transaction(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any] | None],
        ts: int | None = None,
    ) -> Document | None:
        """Read-modify-write a single document atomically.

        ``fn`` receives the current data (None if the document is missing)
        and returns the new data, or None to leave the document untouched.
        Concurrent transactions on the same database are serialized by
        SQLite's immediate write lock.

        Args:
            collection: Collection path
            doc_id: Document identifier
            fn: Pure function computing the new data
            ts: Optional write timestamp

        Returns:
            The resulting Document, or None if it does not exist
        """
        now = ts or now_ms()

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._fetch(conn, collection, doc_id)
                current = json.loads(row["data_json"]) if row else None
                new_data = fn(current)

                if new_data is None:
                    conn.execute("ROLLBACK")
                    return self._row_to_document(row) if row else None

                self._upsert(conn, collection, doc_id, new_data, now)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return Document(
            collection=collection,
            doc_id=doc_id,
            data=new_data,
            created_at=row["created_at"] if row else now,
            updated_at=now,
        )

    async def list_collection(
        self,
        collection: str,
        where: tuple[str, Any] | list[tuple[str, Any]] | None = None,
        order_by: str | tuple[str, ...] | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Document]:
        """List documents of a collection.

        Args:
            collection: Collection path
            where: Optional (field, value) equality filter, or a list of
                them that must all match
            order_by: Optional field, or fields in priority order, to sort
                by (document id otherwise)
            descending: Sort direction, applied to every order_by field
            limit: Maximum documents to return
            offset: Pagination offset

        Returns:
            List of documents
        """
        query = "SELECT * FROM documents WHERE collection = ?"
        params: list[Any] = [collection]

        filters = [where] if isinstance(where, tuple) else list(where or [])
        for field_name, value in filters:
            query += " AND json_extract(data_json, ?) = ?"
            params.extend([_json_path(field_name), value])

        direction = "DESC" if descending else "ASC"
        if order_by is not None:
            fields = (order_by,) if isinstance(order_by, str) else order_by
            terms = ", ".join(f"json_extract(data_json, ?) {direction}" for _ in fields)
            query += f" ORDER BY {terms}, doc_id ASC"
            params.extend(_json_path(name) for name in fields)
        else:
            query += f" ORDER BY doc_id {direction}"

        query += " LIMIT ? OFFSET ?"
        params.extend([limit if limit is not None else -1, offset])

        with self._get_connection() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_document(row) for row in cursor.fetchall()]

    async def count(self, collection: str, where: tuple[str, Any] | None = None) -> int:
        """Count documents of a collection."""
        query = "SELECT COUNT(*) FROM documents WHERE collection = ?"
        params: list[Any] = [collection]

        if where is not None:
            field_name, value = where
            query += " AND json_extract(data_json, ?) = ?"
            params.extend([_json_path(field_name), value])

        with self._get_connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    async def collection_group(
        self,
        name: str,
        limit: int | None = None,
        start_after: tuple[str, str] | None = None,
    ) -> list[Document]:
        """List documents across every collection whose last segment is ``name``.

        ``collection_group("requests")`` returns the documents of
        ``friends/u1/requests``, ``friends/u2/requests`` and so on.
        Pagination is keyset-based so that writes made while paging do
        not shift later pages.

        Args:
            name: Final collection path segment
            limit: Maximum documents to return
            start_after: (collection, doc_id) of the last document already seen

        Returns:
            Documents ordered by (collection, doc_id)
        """
        suffix = f"/{name}"
        query = "SELECT * FROM documents WHERE (collection = ? OR substr(collection, -?) = ?)"
        params: list[Any] = [name, len(suffix), suffix]

        if start_after is not None:
            last_collection, last_doc_id = start_after
            query += " AND (collection > ? OR (collection = ? AND doc_id > ?))"
            params.extend([last_collection, last_collection, last_doc_id])

        query += " ORDER BY collection, doc_id LIMIT ?"
        params.append(limit if limit is not None else -1)

        with self._get_connection() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_document(row) for row in cursor.fetchall()]

    async def get_stats(self) -> dict[str, int]:
        """Get document counts."""
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT COUNT(*) FROM documents")
            return {"documents": cursor.fetchone()[0]}
