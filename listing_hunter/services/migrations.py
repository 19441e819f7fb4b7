from __future__ import annotations

import logging

import aiosqlite

from listing_hunter.core.timestamps import utcnow_text

logger = logging.getLogger(__name__)

# Forward-only and additive. Never edit a step that has shipped; append a new one.
MIGRATIONS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (
        1,
        (
            """
            create table if not exists listings (
              id               text primary key,
              source_id        text not null,
              source_name      text not null,
              source_url       text not null,
              title            text not null,
              description      text not null,
              images           text not null,
              metadata         text not null,
              ai_rating        integer,
              ai_rating_reason text,
              user_rating      integer,
              user_rating_note text,
              archived         integer not null default 0,
              discovered_at    text not null,
              created_at       text not null,
              updated_at       text not null,
              unique (source_name, source_id)
            )
            """,
            "create index if not exists idx_listings_discovered_at on listings (discovered_at desc)",
            """
            create table if not exists rating_overrides (
              id          text primary key,
              listing_id  text not null references listings (id),
              ai_rating   integer not null,
              user_rating integer not null,
              user_note   text,
              created_at  text not null
            )
            """,
            "create index if not exists idx_rating_overrides_listing_id on rating_overrides (listing_id)",
            """
            create table if not exists documents (
              type       text primary key,
              content    text not null,
              updated_at text not null
            )
            """,
            """
            create table if not exists source_cursors (
              source_name  text primary key,
              cursor_value text not null,
              last_run_at  text not null
            )
            """,
            """
            create table if not exists pipeline_runs (
              id           text primary key,
              started_at   text not null,
              completed_at text,
              status       text not null,
              stats        text not null,
              error        text
            )
            """,
        ),
    ),
    (
        2,
        ("alter table listings add column enriched_at text",),
    ),
    (
        3,
        (
            "create index if not exists idx_rating_overrides_created_at on rating_overrides (created_at)",
            "create index if not exists idx_pipeline_runs_started_at on pipeline_runs (started_at desc)",
        ),
    ),
)

LATEST_VERSION = MIGRATIONS[-1][0]


async def current_version(conn: aiosqlite.Connection) -> int:
    async with conn.execute("select max(version) as version from schema_migrations") as cursor:
        row = await cursor.fetchone()
    if row is None or row[0] is None:
        return 0
    return int(row[0])


async def apply_migrations(conn: aiosqlite.Connection) -> list[int]:
    """Bring the schema up to ``LATEST_VERSION``; returns the versions applied.

    Expects an autocommit connection so each step runs in its own explicit
    transaction.
    """
    await conn.execute(
        """
        create table if not exists schema_migrations (
          version    integer primary key,
          applied_at text not null
        )
        """
    )
    version = await current_version(conn)
    applied: list[int] = []
    for step_version, statements in MIGRATIONS:
        if step_version <= version:
            continue
        await conn.execute("begin")
        try:
            for statement in statements:
                await conn.execute(statement)
            await conn.execute(
                "insert or ignore into schema_migrations (version, applied_at) values (?, ?)",
                (step_version, utcnow_text()),
            )
        except Exception:
            await conn.execute("rollback")
            raise
        await conn.execute("commit")
        applied.append(step_version)
        logger.info("applied schema migration version=%s", step_version)
    return applied
