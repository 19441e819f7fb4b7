from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
import json
from pathlib import Path
import sqlite3
from typing import Any
from uuid import uuid4
import weakref

import aiosqlite
from pydantic import ValidationError

from listing_hunter.core.timestamps import format_timestamp, parse_timestamp, utcnow_text
from listing_hunter.schemas.documents import DOCUMENT_TYPES, DocumentRecord, DocumentType
from listing_hunter.schemas.listings import Listing, ListingPage, ListingSchema
from listing_hunter.schemas.pipeline import PipelineRunRecord, PipelineRunStats
from listing_hunter.services.migrations import apply_migrations


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database file cannot be opened or migrated."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write violates a constraint or a state transition rule."""


class DuplicateListingError(RepositoryConflictError):
    """Raised when a listing's (source_name, source_id) key is already stored."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class RatingOverrideRecord:
    id: str
    listing_id: str
    ai_rating: int
    user_rating: int
    user_note: str | None
    created_at: str


@dataclass(slots=True)
class SourceCursorRecord:
    source_name: str
    cursor_value: str
    last_run_at: str


LISTING_FILTER_CLAUSES = {
    "new": "where archived = 0 and user_rating is null",
    "shortlist": "where archived = 0 and user_rating >= 4",
    "archived": "where archived = 1",
    "all": "",
}
LISTING_SORT_CLAUSES = {
    "rating": "order by ai_rating is null, ai_rating desc, discovered_at desc",
    "newest": "order by discovered_at desc",
}
LISTING_COLUMNS = """
  id,
  source_id,
  source_name,
  source_url,
  title,
  description,
  images,
  metadata,
  ai_rating,
  ai_rating_reason,
  user_rating,
  user_rating_note,
  archived,
  discovered_at,
  enriched_at
"""


class SqliteDatabase:
    """Single shared aiosqlite connection, opened and migrated on first use."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None
        self._connect_lock = asyncio.Lock()

    async def connection(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn

        async with self._connect_lock:
            if self._conn is not None:
                return self._conn
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(self.path, isolation_level=None)
                conn.row_factory = aiosqlite.Row
                await conn.execute("pragma journal_mode=WAL")
                await conn.execute("pragma busy_timeout=5000")
                await conn.execute("pragma foreign_keys=ON")
                await apply_migrations(conn)
            except (OSError, sqlite3.Error) as exc:
                raise RepositoryUnavailableError(f"database unavailable: {self.path}") from exc
            self._conn = conn
            return conn

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None


class ListingRepository:
    def __init__(self, db: SqliteDatabase, schema: ListingSchema | None = None) -> None:
        self._db = db
        self.schema = schema or ListingSchema()
        self._metadata_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def insert(self, listing: Listing) -> None:
        try:
            metadata = self.schema.validate_metadata(listing.metadata)
        except ValidationError as exc:
            raise RepositoryValidationError(f"listing {listing.id} has invalid fields: {exc}") from exc

        now = utcnow_text()
        conn = await self._db.connection()
        try:
            await conn.execute(
                """
                insert into listings (
                  id,
                  source_id,
                  source_name,
                  source_url,
                  title,
                  description,
                  images,
                  metadata,
                  ai_rating,
                  ai_rating_reason,
                  user_rating,
                  user_rating_note,
                  archived,
                  discovered_at,
                  enriched_at,
                  created_at,
                  updated_at
                )
                values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    listing.id,
                    listing.source_id,
                    listing.source_name,
                    listing.source_url,
                    listing.title,
                    listing.description,
                    json.dumps(listing.images),
                    _dump_metadata(metadata),
                    listing.ai_rating,
                    listing.ai_rating_reason,
                    listing.user_rating,
                    listing.user_rating_note,
                    int(listing.archived),
                    format_timestamp(listing.discovered_at),
                    format_timestamp(listing.enriched_at) if listing.enriched_at else None,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            if getattr(exc, "sqlite_errorcode", None) == sqlite3.SQLITE_CONSTRAINT_UNIQUE:
                raise DuplicateListingError(
                    f"listing already stored for source_name={listing.source_name} source_id={listing.source_id}"
                ) from exc
            raise RepositoryConflictError(f"listing {listing.id} violates a constraint") from exc

    async def get_by_id(self, listing_id: str) -> Listing | None:
        conn = await self._db.connection()
        async with conn.execute(f"select {LISTING_COLUMNS} from listings where id = ?", (listing_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_listing(row)

    async def require(self, listing_id: str) -> Listing:
        listing = await self.get_by_id(listing_id)
        if listing is None:
            raise RepositoryNotFoundError(f"listing not found: {listing_id}")
        return listing

    async def query(
        self,
        filter: str = "all",
        *,
        sort: str = "newest",
        limit: int = 50,
        offset: int = 0,
    ) -> ListingPage:
        where = LISTING_FILTER_CLAUSES.get(filter)
        if where is None:
            raise RepositoryValidationError(f"filter must be one of: {', '.join(LISTING_FILTER_CLAUSES)}")
        order_by = LISTING_SORT_CLAUSES.get(sort)
        if order_by is None:
            raise RepositoryValidationError(f"sort must be one of: {', '.join(LISTING_SORT_CLAUSES)}")
        if limit < 1 or offset < 0:
            raise RepositoryValidationError("limit must be positive and offset must not be negative")

        conn = await self._db.connection()
        async with conn.execute(f"select count(*) from listings {where}") as cursor:
            count_row = await cursor.fetchone()
        rows = await conn.execute_fetchall(
            f"select {LISTING_COLUMNS} from listings {where} {order_by} limit ? offset ?",
            (limit, offset),
        )
        return ListingPage(
            listings=[self._row_to_listing(row) for row in rows],
            total=int(count_row[0]) if count_row else 0,
        )

    async def query_unrated(self, limit: int) -> list[Listing]:
        return await self._query_backlog("ai_rating is null", limit)

    async def query_unenriched(self, limit: int) -> list[Listing]:
        return await self._query_backlog("enriched_at is null", limit)

    async def update_ai_rating(self, listing_id: str, rating: int, reason: str | None) -> None:
        _validate_rating(rating, field="ai_rating")
        await self._update(
            listing_id,
            "ai_rating = ?, ai_rating_reason = ?",
            (rating, reason),
        )

    async def update_rating(self, listing_id: str, user_rating: Any, user_note: str | None = None) -> Listing:
        _validate_rating(user_rating, field="user_rating")
        await self._update(
            listing_id,
            "user_rating = ?, user_rating_note = ?",
            (user_rating, user_note),
        )
        return await self.require(listing_id)

    async def update_metadata(self, listing_id: str, patch: Mapping[str, Any]) -> Listing:
        """Merge ``patch`` into the listing's extension-field map.

        The read-modify-write runs under a per-listing lock so concurrent
        patches to the same id cannot drop each other's keys.
        """
        lock = self._metadata_locks.get(listing_id)
        if lock is None:
            lock = asyncio.Lock()
            self._metadata_locks[listing_id] = lock

        async with lock:
            listing = await self.require(listing_id)
            merged = {**listing.metadata, **patch}
            try:
                metadata = self.schema.validate_metadata(merged)
            except ValidationError as exc:
                raise RepositoryValidationError(f"listing {listing_id} has invalid fields: {exc}") from exc
            await self._update(listing_id, "metadata = ?", (_dump_metadata(metadata),))
        return await self.require(listing_id)

    async def mark_enriched(self, listing_id: str) -> None:
        await self._update(listing_id, "enriched_at = ?", (utcnow_text(),))

    async def archive(self, listing_id: str) -> None:
        await self._update(listing_id, "archived = 1", ())

    async def exists_by_source_key(self, source_name: str, source_id: str) -> bool:
        conn = await self._db.connection()
        async with conn.execute(
            "select 1 from listings where source_name = ? and source_id = ? limit 1",
            (source_name, source_id),
        ) as cursor:
            row = await cursor.fetchone()
        return row is not None

    async def _query_backlog(self, condition: str, limit: int) -> list[Listing]:
        if limit < 1:
            return []
        conn = await self._db.connection()
        rows = await conn.execute_fetchall(
            f"""
            select {LISTING_COLUMNS}
            from listings
            where archived = 0
              and {condition}
            order by discovered_at desc
            limit ?
            """,
            (limit,),
        )
        return [self._row_to_listing(row) for row in rows]

    async def _update(self, listing_id: str, assignments: str, params: tuple[Any, ...]) -> None:
        conn = await self._db.connection()
        async with conn.execute(
            f"update listings set {assignments}, updated_at = ? where id = ?",
            (*params, utcnow_text(), listing_id),
        ) as cursor:
            updated = cursor.rowcount
        if updated == 0:
            raise RepositoryNotFoundError(f"listing not found: {listing_id}")

    @staticmethod
    def _row_to_listing(row: aiosqlite.Row) -> Listing:
        return Listing(
            id=row["id"],
            source_id=row["source_id"],
            source_name=row["source_name"],
            source_url=row["source_url"],
            title=row["title"],
            description=row["description"],
            images=_load_json(row["images"], default=[]),
            metadata=_load_json(row["metadata"], default={}),
            ai_rating=row["ai_rating"],
            ai_rating_reason=row["ai_rating_reason"],
            user_rating=row["user_rating"],
            user_rating_note=row["user_rating_note"],
            archived=bool(row["archived"]),
            discovered_at=parse_timestamp(row["discovered_at"]),
            enriched_at=parse_timestamp(row["enriched_at"]),
        )


class DocumentRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def get(self, document_type: DocumentType) -> DocumentRecord | None:
        _validate_document_type(document_type)
        conn = await self._db.connection()
        async with conn.execute(
            "select type, content, updated_at from documents where type = ?",
            (document_type,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return DocumentRecord(type=row["type"], content=row["content"], updated_at=row["updated_at"])

    async def get_content(self, document_type: DocumentType) -> str | None:
        record = await self.get(document_type)
        return record.content if record is not None else None

    async def set(self, document_type: DocumentType, content: str) -> DocumentRecord:
        _validate_document_type(document_type)
        now = utcnow_text()
        conn = await self._db.connection()
        await conn.execute(
            """
            insert into documents (type, content, updated_at)
            values (?, ?, ?)
            on conflict (type) do update set
              content = excluded.content,
              updated_at = excluded.updated_at
            """,
            (document_type, content, now),
        )
        return DocumentRecord(type=document_type, content=content, updated_at=now)

    async def get_all(self) -> list[DocumentRecord]:
        conn = await self._db.connection()
        rows = await conn.execute_fetchall("select type, content, updated_at from documents order by type")
        return [DocumentRecord(type=row["type"], content=row["content"], updated_at=row["updated_at"]) for row in rows]


class RatingOverrideRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def insert(
        self,
        *,
        listing_id: str,
        ai_rating: int,
        user_rating: int,
        user_note: str | None = None,
    ) -> RatingOverrideRecord:
        record = RatingOverrideRecord(
            id=str(uuid4()),
            listing_id=listing_id,
            ai_rating=ai_rating,
            user_rating=user_rating,
            user_note=user_note,
            created_at=utcnow_text(),
        )
        conn = await self._db.connection()
        await conn.execute(
            """
            insert into rating_overrides (id, listing_id, ai_rating, user_rating, user_note, created_at)
            values (?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.listing_id,
                record.ai_rating,
                record.user_rating,
                record.user_note,
                record.created_at,
            ),
        )
        return record

    async def get_by_listing_id(self, listing_id: str) -> list[RatingOverrideRecord]:
        conn = await self._db.connection()
        rows = await conn.execute_fetchall(
            """
            select id, listing_id, ai_rating, user_rating, user_note, created_at
            from rating_overrides
            where listing_id = ?
            order by created_at desc
            """,
            (listing_id,),
        )
        return [self._row_to_record(row) for row in rows]

    async def list_since(self, since: str | None) -> list[RatingOverrideRecord]:
        """Overrides created after ``since`` (all when None), oldest first."""
        conn = await self._db.connection()
        rows = await conn.execute_fetchall(
            """
            select id, listing_id, ai_rating, user_rating, user_note, created_at
            from rating_overrides
            where ? is null or created_at > ?
            order by created_at asc
            """,
            (since, since),
        )
        return [self._row_to_record(row) for row in rows]

    async def count_since(self, since: str | None) -> int:
        conn = await self._db.connection()
        async with conn.execute(
            "select count(*) from rating_overrides where ? is null or created_at > ?",
            (since, since),
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> RatingOverrideRecord:
        return RatingOverrideRecord(
            id=row["id"],
            listing_id=row["listing_id"],
            ai_rating=row["ai_rating"],
            user_rating=row["user_rating"],
            user_note=row["user_note"],
            created_at=row["created_at"],
        )


class PipelineRunRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def create(self, run_id: str) -> PipelineRunRecord:
        record = PipelineRunRecord(
            id=run_id,
            started_at=utcnow_text(),
            status="running",
            stats=PipelineRunStats(),
        )
        conn = await self._db.connection()
        await conn.execute(
            "insert into pipeline_runs (id, started_at, status, stats) values (?, ?, ?, ?)",
            (record.id, record.started_at, record.status, record.stats.model_dump_json()),
        )
        return record

    async def complete(self, run_id: str, stats: PipelineRunStats) -> None:
        await self._finish(run_id, "status = 'completed', stats = ?", (stats.model_dump_json(),))

    async def fail(self, run_id: str, error: str) -> None:
        await self._finish(run_id, "status = 'failed', error = ?", (error,))

    async def get_by_id(self, run_id: str) -> PipelineRunRecord | None:
        conn = await self._db.connection()
        async with conn.execute(
            "select id, started_at, completed_at, status, stats, error from pipeline_runs where id = ?",
            (run_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    async def get_latest(self) -> PipelineRunRecord | None:
        runs = await self.list_recent(limit=1)
        return runs[0] if runs else None

    async def list_recent(self, limit: int = 20) -> list[PipelineRunRecord]:
        conn = await self._db.connection()
        rows = await conn.execute_fetchall(
            """
            select id, started_at, completed_at, status, stats, error
            from pipeline_runs
            order by started_at desc
            limit ?
            """,
            (max(1, limit),),
        )
        return [self._row_to_record(row) for row in rows]

    async def _finish(self, run_id: str, assignments: str, params: tuple[Any, ...]) -> None:
        conn = await self._db.connection()
        async with conn.execute(
            f"update pipeline_runs set {assignments}, completed_at = ? where id = ? and status = 'running'",
            (*params, utcnow_text(), run_id),
        ) as cursor:
            updated = cursor.rowcount
        if updated == 0:
            raise RepositoryConflictError(f"pipeline run {run_id} is not running")

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> PipelineRunRecord:
        return PipelineRunRecord(
            id=row["id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            status=row["status"],
            stats=PipelineRunStats.model_validate(_load_json(row["stats"], default={})),
            error=row["error"],
        )


class SourceCursorRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    async def get(self, source_name: str) -> SourceCursorRecord | None:
        conn = await self._db.connection()
        async with conn.execute(
            "select source_name, cursor_value, last_run_at from source_cursors where source_name = ?",
            (source_name,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SourceCursorRecord(
            source_name=row["source_name"],
            cursor_value=row["cursor_value"],
            last_run_at=row["last_run_at"],
        )

    async def set(self, source_name: str, cursor_value: str) -> SourceCursorRecord:
        now = utcnow_text()
        conn = await self._db.connection()
        await conn.execute(
            """
            insert into source_cursors (source_name, cursor_value, last_run_at)
            values (?, ?, ?)
            on conflict (source_name) do update set
              cursor_value = excluded.cursor_value,
              last_run_at = excluded.last_run_at
            """,
            (source_name, cursor_value, now),
        )
        return SourceCursorRecord(source_name=source_name, cursor_value=cursor_value, last_run_at=now)


def _validate_rating(value: Any, *, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise RepositoryValidationError(f"{field} must be an integer between 1 and 5")


def _validate_document_type(document_type: str) -> None:
    if document_type not in DOCUMENT_TYPES:
        raise RepositoryValidationError(f"document type must be one of: {', '.join(DOCUMENT_TYPES)}")


def _dump_metadata(metadata: Mapping[str, Any]) -> str:
    return json.dumps(metadata, sort_keys=True, default=str)


def _load_json(value: Any, *, default: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    return default
