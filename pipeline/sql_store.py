"""
SQLAlchemy Core implementation of the Store contract.

Runs a synchronous engine in worker threads (asyncio.to_thread) so the
crawl loop is never blocked on database I/O. Upserts use the dialect's
ON CONFLICT support; SQLite and PostgreSQL are supported.

Usage:
    store = SQLStore.from_url(os.environ['DATABASE_URL'])
    store.create_tables()
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

import structlog
from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from schema import CaseRecord, ExistingPost, PostWrite, RunStatus, ScrapedThread, ScrapeStats, ThreadHandle
from .store import Store, StoreError, TransientStoreError, utcnow

log = structlog.get_logger(__name__)

T = TypeVar('T')

metadata = MetaData()

threads = Table(
    'threads', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('source_id', String(100), nullable=False, index=True),
    Column('external_id', String(100), nullable=False),
    Column('url', Text, nullable=False),
    Column('title', Text, nullable=False, default=''),
    Column('author_name', String(255)),
    Column('posted_at', DateTime(timezone=True)),
    Column('total_pages', Integer, nullable=False, default=0),
    Column('last_scraped_page', Integer, nullable=False, default=0),
    Column('last_scraped_at', DateTime(timezone=True)),
    Column('created_at', DateTime(timezone=True), nullable=False, default=utcnow),
    UniqueConstraint('source_id', 'external_id', name='uq_threads_source_external'),
)

posts = Table(
    'posts', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('thread_id', Integer, ForeignKey('threads.id', ondelete='CASCADE'), nullable=False),
    Column('external_id', String(100), nullable=False),
    Column('author_name', String(255)),
    Column('content', Text, nullable=False),
    Column('content_hash', String(64), nullable=False),
    Column('page_number', Integer, nullable=False),
    Column('posted_at', DateTime(timezone=True)),
    Column('scraped_at', DateTime(timezone=True), nullable=False, default=utcnow),
    UniqueConstraint('thread_id', 'external_id', name='uq_posts_thread_external'),
)

extracted_cases = Table(
    'extracted_cases', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('post_id', Integer, ForeignKey('posts.id', ondelete='CASCADE'), nullable=False, unique=True),
    Column('application_type', String(50)),
    Column('application_route', String(100)),
    Column('application_date', Date),
    Column('biometrics_date', Date),
    Column('decision_date', Date),
    Column('waiting_days', Integer),
    Column('service_center', String(100)),
    Column('outcome', String(20), nullable=False, default='unknown'),
    Column('confidence', Float, nullable=False),
    Column('notes', Text),
    Column('extractor_version', String(20), nullable=False),
    Column('extracted_at', DateTime(timezone=True), nullable=False),
)

scrape_runs = Table(
    'scrape_runs', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('source_id', String(100), nullable=False, index=True),
    Column('status', String(20), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('completed_at', DateTime(timezone=True)),
    Column('threads_found', Integer, nullable=False, default=0),
    Column('threads_scraped', Integer, nullable=False, default=0),
    Column('posts_found', Integer, nullable=False, default=0),
    Column('posts_scraped', Integer, nullable=False, default=0),
    Column('cases_extracted', Integer, nullable=False, default=0),
    Column('run_config', JSON, nullable=False, default=dict),
    Column('error_message', Text),
    Column('error_details', JSON),
)

CASE_FIELDS = (
    'application_type', 'application_route', 'application_date', 'biometrics_date',
    'decision_date', 'waiting_days', 'service_center', 'outcome', 'confidence',
    'notes', 'extractor_version', 'extracted_at',
)

# Driver-level failures that a reconnect can fix
TRANSIENT_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


def _case_values(case: CaseRecord) -> dict[str, Any]:
    values = case.to_dict()
    return {name: values[name] for name in CASE_FIELDS}


class SQLStore(Store):
    """Store backed by a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        dialect = engine.dialect.name
        if dialect == 'sqlite':
            self._insert = sqlite.insert
        elif dialect == 'postgresql':
            self._insert = postgresql.insert
        else:
            raise StoreError(f"Unsupported database dialect: {dialect}")
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, **engine_options) -> "SQLStore":
        """
        Build a store for a database URL.

        In-memory SQLite gets a single shared connection so every worker
        thread sees the same database.
        """
        in_memory = database_url == 'sqlite://' or (
            database_url.startswith('sqlite') and ':memory:' in database_url
        )
        if in_memory:
            engine_options.setdefault('poolclass', StaticPool)
            engine_options.setdefault('connect_args', {'check_same_thread': False})
        else:
            engine_options.setdefault('pool_pre_ping', True)
        return cls(create_engine(database_url, **engine_options))

    def create_tables(self) -> None:
        metadata.create_all(self.engine)

    # -------------------------------------------------------------------------
    # Execution helpers
    # -------------------------------------------------------------------------

    async def _run(self, fn: Callable[[Connection], T], label: str) -> T:
        """Run fn inside one transaction on a worker thread."""
        def work():
            with self.engine.begin() as conn:
                return fn(conn)

        try:
            return await asyncio.to_thread(work)
        except TRANSIENT_ERRORS as exc:
            raise TransientStoreError(f"{label}: {exc}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientStoreError(f"{label}: {exc}") from exc
            raise StoreError(f"{label}: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"{label}: {exc}") from exc

    def _post_id(self, conn: Connection, thread_id: int, external_id: str) -> Optional[int]:
        return conn.execute(
            select(posts.c.id).where(posts.c.thread_id == thread_id, posts.c.external_id == external_id)
        ).scalar_one_or_none()

    def _upsert_case(self, conn: Connection, post_id: int, case: CaseRecord) -> None:
        values = _case_values(case)
        stmt = self._insert(extracted_cases).values(post_id=post_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=['post_id'], set_=values)
        conn.execute(stmt)

    # -------------------------------------------------------------------------
    # Store contract
    # -------------------------------------------------------------------------

    async def ping(self) -> None:
        await self._run(lambda conn: conn.execute(text('SELECT 1')).scalar_one(), 'ping')

    async def upsert_thread(self, source_id: str, thread: ScrapedThread) -> ThreadHandle:
        def work(conn: Connection) -> ThreadHandle:
            now = utcnow()
            stmt = self._insert(threads).values(
                source_id=source_id,
                external_id=thread.external_id,
                url=thread.url,
                title=thread.title,
                author_name=thread.author_name,
                posted_at=thread.posted_at,
                total_pages=0,
                last_scraped_page=0,
                created_at=now,
            ).on_conflict_do_update(
                index_elements=['source_id', 'external_id'],
                set_={'title': thread.title, 'last_scraped_at': now},
            )
            conn.execute(stmt)
            row = conn.execute(
                select(threads.c.id, threads.c.last_scraped_page, threads.c.total_pages)
                .where(threads.c.source_id == source_id, threads.c.external_id == thread.external_id)
            ).one()
            return ThreadHandle(id=row.id, last_scraped_page=row.last_scraped_page, total_pages=row.total_pages)

        return await self._run(work, 'upsert_thread')

    async def find_posts_by_external_ids(self, thread_id: int, external_ids: list[str]) -> list[ExistingPost]:
        if not external_ids:
            return []

        def work(conn: Connection) -> list[ExistingPost]:
            rows = conn.execute(
                select(posts.c.id, posts.c.external_id, posts.c.content_hash)
                .where(posts.c.thread_id == thread_id, posts.c.external_id.in_(list(external_ids)))
            )
            return [ExistingPost(id=r.id, external_id=r.external_id, content_hash=r.content_hash) for r in rows]

        return await self._run(work, 'find_posts_by_external_ids')

    async def insert_posts_batch(self, thread_id: int, writes: list[PostWrite]) -> list[str]:
        if not writes:
            return []

        def work(conn: Connection) -> list[str]:
            inserted = []
            now = utcnow()
            for write in writes:
                post = write.post
                stmt = self._insert(posts).values(
                    thread_id=thread_id,
                    external_id=post.external_id,
                    author_name=post.author_name,
                    content=post.content,
                    content_hash=write.content_hash,
                    page_number=post.page_number,
                    posted_at=post.posted_at,
                    scraped_at=now,
                ).on_conflict_do_nothing(index_elements=['thread_id', 'external_id'])
                if conn.execute(stmt).rowcount != 1:
                    continue
                inserted.append(post.external_id)
                if write.case is not None:
                    self._upsert_case(conn, self._post_id(conn, thread_id, post.external_id), write.case)
            return inserted

        return await self._run(work, 'insert_posts_batch')

    async def update_posts_batch(self, thread_id: int, writes: list[PostWrite]) -> list[str]:
        if not writes:
            return []

        def work(conn: Connection) -> list[str]:
            updated = []
            now = utcnow()
            for write in writes:
                post = write.post
                post_id = self._post_id(conn, thread_id, post.external_id)
                if post_id is None:
                    continue
                values = {
                    'content': post.content,
                    'content_hash': write.content_hash,
                    'page_number': post.page_number,
                    'scraped_at': now,
                }
                if post.posted_at is not None:
                    values['posted_at'] = post.posted_at
                conn.execute(update(posts).where(posts.c.id == post_id).values(**values))
                if write.case is not None:
                    self._upsert_case(conn, post_id, write.case)
                else:
                    conn.execute(delete(extracted_cases).where(extracted_cases.c.post_id == post_id))
                updated.append(post.external_id)
            return updated

        return await self._run(work, 'update_posts_batch')

    async def upsert_extracted_case(self, post_id: int, case: CaseRecord) -> None:
        await self._run(lambda conn: self._upsert_case(conn, post_id, case), 'upsert_extracted_case')

    async def update_thread_progress(self, thread_id: int, last_scraped_page: int, total_pages: int) -> None:
        def work(conn: Connection) -> None:
            conn.execute(
                update(threads).where(threads.c.id == thread_id).values(
                    last_scraped_page=last_scraped_page,
                    total_pages=total_pages,
                    last_scraped_at=utcnow(),
                )
            )

        await self._run(work, 'update_thread_progress')

    async def create_scrape_run(self, source_id: str, config: dict[str, Any]) -> int:
        def work(conn: Connection) -> int:
            result = conn.execute(
                scrape_runs.insert().values(
                    source_id=source_id,
                    status=RunStatus.RUNNING.value,
                    started_at=utcnow(),
                    run_config=config,
                )
            )
            return result.inserted_primary_key[0]

        return await self._run(work, 'create_scrape_run')

    async def update_scrape_run(
        self,
        run_id: int,
        status: RunStatus,
        stats: ScrapeStats,
        error_message: Optional[str] = None,
        error_details: Optional[dict[str, Any]] = None,
    ) -> None:
        def work(conn: Connection) -> None:
            values = dict(stats.to_dict(), status=status.value,
                          error_message=error_message, error_details=error_details)
            if status is not RunStatus.RUNNING:
                values['completed_at'] = utcnow()
            result = conn.execute(update(scrape_runs).where(scrape_runs.c.id == run_id).values(**values))
            if result.rowcount == 0:
                raise StoreError(f"Unknown scrape run id {run_id}")

        await self._run(work, 'update_scrape_run')

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)
