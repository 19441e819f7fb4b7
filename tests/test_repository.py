from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel
import pytest

from listing_hunter.schemas.listings import Listing, ListingSchema
from listing_hunter.schemas.pipeline import PipelineRunStats
from listing_hunter.services.migrations import LATEST_VERSION, apply_migrations
from listing_hunter.services.repository import (
    DocumentRepository,
    DuplicateListingError,
    ListingRepository,
    PipelineRunRepository,
    RatingOverrideRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SourceCursorRepository,
    SqliteDatabase,
)

T = TypeVar("T")
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class RentalFields(BaseModel):
    weekly_rent: int
    bedrooms: int


def test_insert_rejects_duplicate_source_key_with_typed_error(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        await listings.insert(_listing("a", source_id="dup-1"))

        with pytest.raises(DuplicateListingError):
            await listings.insert(_listing("b", source_id="dup-1"))

        assert await listings.exists_by_source_key("test", "dup-1")
        assert not await listings.exists_by_source_key("other", "dup-1")
        page = await listings.query("all")
        assert page.total == 1

    _with_db(tmp_path, scenario)


def test_insert_with_reused_id_is_not_a_duplicate(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        await listings.insert(_listing("same-id", source_id="one"))

        with pytest.raises(RepositoryConflictError) as exc_info:
            await listings.insert(_listing("same-id", source_id="two"))
        assert not isinstance(exc_info.value, DuplicateListingError)

    _with_db(tmp_path, scenario)


def test_round_trip_keeps_base_fields_and_extension_map(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db, ListingSchema(RentalFields))
        listing = _listing("a", metadata={"weekly_rent": 650, "bedrooms": 3, "suburb": "Aro Valley"})
        listing.images = ["https://example.com/1.jpg", "https://example.com/2.jpg"]
        await listings.insert(listing)

        stored = await listings.get_by_id("a")
        assert stored is not None
        assert stored.title == "Listing a"
        assert stored.images == ["https://example.com/1.jpg", "https://example.com/2.jpg"]
        assert stored.metadata == {"weekly_rent": 650, "bedrooms": 3, "suburb": "Aro Valley"}
        assert stored.discovered_at == listing.discovered_at
        assert stored.archived is False
        assert stored.enriched_at is None
        assert await listings.get_by_id("missing") is None

    _with_db(tmp_path, scenario)


def test_insert_validates_extension_fields(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db, ListingSchema(RentalFields))
        with pytest.raises(RepositoryValidationError):
            await listings.insert(_listing("a", metadata={"weekly_rent": "a lot"}))

    _with_db(tmp_path, scenario)


def test_query_filters_and_sorts(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        await listings.insert(_listing("old-unrated", minutes=0))
        await listings.insert(_listing("mid-rated-5", minutes=10, ai_rating=5))
        await listings.insert(_listing("new-rated-2", minutes=20, ai_rating=2))
        await listings.insert(_listing("loved", minutes=30, ai_rating=3))
        await listings.insert(_listing("gone", minutes=40))
        await listings.update_rating("loved", 4, "great light")
        await listings.archive("gone")

        newest = await listings.query("new", sort="newest")
        assert [item.id for item in newest.listings] == ["new-rated-2", "mid-rated-5", "old-unrated"]
        assert newest.total == 3

        by_rating = await listings.query("new", sort="rating")
        assert [item.id for item in by_rating.listings] == ["mid-rated-5", "new-rated-2", "old-unrated"]

        shortlist = await listings.query("shortlist")
        assert [item.id for item in shortlist.listings] == ["loved"]
        assert shortlist.listings[0].user_rating_note == "great light"

        archived = await listings.query("archived")
        assert [item.id for item in archived.listings] == ["gone"]

        paged = await listings.query("all", sort="newest", limit=2, offset=1)
        assert [item.id for item in paged.listings] == ["loved", "new-rated-2"]
        assert paged.total == 5

        with pytest.raises(RepositoryValidationError):
            await listings.query("favourites")
        with pytest.raises(RepositoryValidationError):
            await listings.query("all", sort="cheapest")

    _with_db(tmp_path, scenario)


def test_backlog_queries_skip_archived_and_return_newest_first(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        await listings.insert(_listing("a", minutes=0))
        await listings.insert(_listing("b", minutes=5, ai_rating=4))
        await listings.insert(_listing("c", minutes=10))
        await listings.insert(_listing("d", minutes=15))
        await listings.archive("d")
        await listings.mark_enriched("c")

        assert [item.id for item in await listings.query_unrated(10)] == ["c", "a"]
        assert [item.id for item in await listings.query_unenriched(10)] == ["b", "a"]
        assert [item.id for item in await listings.query_unenriched(1)] == ["b"]

        enriched = await listings.get_by_id("c")
        assert enriched is not None and enriched.enriched_at is not None

    _with_db(tmp_path, scenario)


def test_update_rating_validates_integer_range(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        await listings.insert(_listing("a"))

        for bad in (0, 6, 4.5, "5", True):
            with pytest.raises(RepositoryValidationError, match="between 1 and 5"):
                await listings.update_rating("a", bad)

        updated = await listings.update_rating("a", 5)
        assert updated.user_rating == 5

        with pytest.raises(RepositoryNotFoundError):
            await listings.update_rating("missing", 3)

    _with_db(tmp_path, scenario)


def test_update_ai_rating_and_archive(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        await listings.insert(_listing("a"))

        await listings.update_ai_rating("a", 3, "decent commute")
        stored = await listings.get_by_id("a")
        assert stored is not None
        assert (stored.ai_rating, stored.ai_rating_reason) == (3, "decent commute")

        with pytest.raises(RepositoryValidationError):
            await listings.update_ai_rating("a", 9, "off the scale")
        with pytest.raises(RepositoryNotFoundError):
            await listings.archive("missing")

    _with_db(tmp_path, scenario)


def test_update_metadata_merges_and_serializes_concurrent_patches(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        await listings.insert(_listing("a", metadata={"suburb": "Te Aro"}))

        await asyncio.gather(
            *(listings.update_metadata("a", {f"field_{index}": index}) for index in range(8)),
        )
        updated = await listings.update_metadata("a", {"suburb": "Kelburn"})

        assert updated.metadata == {"suburb": "Kelburn", **{f"field_{index}": index for index in range(8)}}
        with pytest.raises(RepositoryNotFoundError):
            await listings.update_metadata("missing", {"x": 1})

    _with_db(tmp_path, scenario)


def test_documents_are_singletons_overwritten_in_place(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        documents = DocumentRepository(db)
        assert await documents.get("calibration_log") is None
        assert await documents.get_content("preference_profile") is None

        first = await documents.set("preference_profile", "Two bedrooms near the city")
        await asyncio.sleep(0.002)
        second = await documents.set("preference_profile", "Three bedrooms, pets allowed")

        stored = await documents.get("preference_profile")
        assert stored is not None
        assert stored.content == "Three bedrooms, pets allowed"
        assert second.updated_at > first.updated_at
        assert [record.type for record in await documents.get_all()] == ["preference_profile"]

        with pytest.raises(RepositoryValidationError):
            await documents.set("shopping_list", "milk")  # type: ignore[arg-type]

    _with_db(tmp_path, scenario)


def test_rating_overrides_count_since_timestamp(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        listings = ListingRepository(db)
        overrides = RatingOverrideRepository(db)
        await listings.insert(_listing("a"))

        await overrides.insert(listing_id="a", ai_rating=2, user_rating=5, user_note="underrated")
        await asyncio.sleep(0.002)
        await overrides.insert(listing_id="a", ai_rating=4, user_rating=1)
        await asyncio.sleep(0.002)
        checkpoint = (await DocumentRepository(db).set("calibration_log", "v1")).updated_at
        await asyncio.sleep(0.002)
        latest = await overrides.insert(listing_id="a", ai_rating=3, user_rating=5)

        assert await overrides.count_since(None) == 3
        assert await overrides.count_since(checkpoint) == 1
        assert [record.id for record in await overrides.list_since(checkpoint)] == [latest.id]

        history = await overrides.get_by_listing_id("a")
        assert [record.user_rating for record in history] == [5, 1, 5]
        assert history[-1].user_note == "underrated"

    _with_db(tmp_path, scenario)


def test_pipeline_run_transitions_exactly_once(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        runs = PipelineRunRepository(db)
        created = await runs.create("run-1")
        assert created.status == "running"
        assert created.stats == PipelineRunStats()

        await runs.complete("run-1", PipelineRunStats(discovered=3, new=2, duplicates=1))
        with pytest.raises(RepositoryConflictError):
            await runs.fail("run-1", "too late")

        stored = await runs.get_by_id("run-1")
        assert stored is not None
        assert stored.status == "completed"
        assert stored.completed_at is not None
        assert stored.stats.new == 2
        assert stored.error is None

        await asyncio.sleep(0.002)
        await runs.create("run-2")
        await runs.fail("run-2", "discover exploded")
        latest = await runs.get_latest()
        assert latest is not None
        assert (latest.id, latest.status, latest.error) == ("run-2", "failed", "discover exploded")
        assert [run.id for run in await runs.list_recent()] == ["run-2", "run-1"]

    _with_db(tmp_path, scenario)


def test_source_cursor_upsert(tmp_path: Path) -> None:
    async def scenario(db: SqliteDatabase) -> None:
        cursors = SourceCursorRepository(db)
        assert await cursors.get("trademe") is None
        await cursors.set("trademe", "page-1")
        await cursors.set("trademe", "page-2")
        stored = await cursors.get("trademe")
        assert stored is not None
        assert stored.cursor_value == "page-2"

    _with_db(tmp_path, scenario)


def test_migrations_apply_once_and_survive_reopen(tmp_path: Path) -> None:
    path = tmp_path / "listings.sqlite"

    async def scenario() -> None:
        first = SqliteDatabase(str(path))
        await ListingRepository(first).insert(_listing("a"))
        await first.close()

        second = SqliteDatabase(str(path))
        conn = await second.connection()
        versions = [row[0] for row in await conn.execute_fetchall("select version from schema_migrations order by version")]
        assert versions == list(range(1, LATEST_VERSION + 1))
        assert await apply_migrations(conn) == []
        assert await ListingRepository(second).get_by_id("a") is not None
        await second.close()

    asyncio.run(scenario())


def _with_db(tmp_path: Path, scenario: Callable[[SqliteDatabase], Awaitable[T]]) -> T:
    async def run() -> T:
        db = SqliteDatabase(str(tmp_path / "test.sqlite"))
        try:
            return await scenario(db)
        finally:
            await db.close()

    return asyncio.run(run())


def _listing(
    listing_id: str,
    *,
    source_id: str | None = None,
    minutes: int = 0,
    ai_rating: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> Listing:
    return Listing(
        id=listing_id,
        source_name="test",
        source_id=source_id or listing_id,
        source_url=f"https://example.com/{listing_id}",
        title=f"Listing {listing_id}",
        description="Description",
        discovered_at=BASE_TIME + timedelta(minutes=minutes),
        ai_rating=ai_rating,
        ai_rating_reason=None if ai_rating is None else "AI guess",
        metadata=metadata or {},
    )
