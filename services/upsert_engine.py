"""
Upsert Engine: apply validated records to the relational store.

- Categories are applied in one transaction of their own; every topic then runs in
  its own transaction (Topic -> Lessons -> CodeExamples/QuizQuestions).
- Rows are looked up by natural key. Missing rows are inserted, unchanged rows are
  skipped, changed rows are updated in place (primary keys are preserved).
- Lesson children are replaced wholesale (delete-then-insert) whenever their ordered
  column values differ from what is stored; otherwise they are left alone.
- Transient store failures retry the whole transaction with jittered exponential
  backoff (tenacity). Exhausted retries become permanent failures.
- In dry-run mode the same lookups run inside a transaction that is rolled back, no
  DDL or DML is issued, and the report counts what would change.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import Table, delete, func, inspect, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

import models
from database import Base
from schemas.records import Category, LessonBundle, ValidatedBundle
from schemas.report import BatchReport, ErrorEntry
from services.errors import MissingReferenceError, PermanentStoreError, TopicError, TransientStoreError
from services.store import RelationalStore

logger = logging.getLogger("upsert")

_CODE_EXAMPLE_COLUMNS = ("title", "description", "language", "code", "explanation", "order_index", "is_interactive")
_QUIZ_QUESTION_COLUMNS = (
    "question_text",
    "question_type",
    "options",
    "correct_answer",
    "explanation",
    "difficulty",
    "points",
    "order_index",
)


class wait_jittered_exponential(wait_base):
    """Wait base * 2**(attempt-1), scaled by a random factor in [0.5, 1.5]."""

    def __init__(self, base: float = 0.1, jitter: Callable[[float, float], float] = random.uniform):
        self.base = base
        self.jitter = jitter

    def __call__(self, retry_state: RetryCallState) -> float:
        nominal = self.base * (2 ** (retry_state.attempt_number - 1))
        return nominal * self.jitter(0.5, 1.5)


@dataclass
class _Cursor:
    """Key of the record currently being applied, so failures can name it."""

    key: str


class UpsertEngine:
    def __init__(
        self,
        store: RelationalStore,
        dry_run: bool = False,
        max_attempts: int = 3,
        backoff_base: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ):
        self.store = store
        self.dry_run = dry_run
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep
        self._jitter = jitter
        self._has_schema: Optional[bool] = None
        # Category slugs a dry run would insert, so planned topics can resolve them
        self._planned_categories: Set[str] = set()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def ensure_schema(self) -> None:
        """Create missing tables. Dry runs never issue DDL."""
        if self.dry_run:
            return
        async with self.store.transaction() as conn:
            await self.store.run_sync(conn, Base.metadata.create_all)
        self._has_schema = True

    async def _check_schema(self, conn: AsyncConnection) -> bool:
        if self._has_schema is None:

            def has_tables(sync_conn) -> bool:
                inspector = inspect(sync_conn)
                return all(inspector.has_table(name) for name in models.TABLES)

            self._has_schema = await self.store.run_sync(conn, has_tables)
            if not self._has_schema:
                logger.info("content tables do not exist yet; treating the store as empty")
        return self._has_schema

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    async def _fetch_one(self, conn: AsyncConnection, table: Table, *criteria) -> Optional[Dict[str, Any]]:
        if not self._has_schema:
            return None
        rows = await self.store.query(conn, select(table).where(*criteria))
        return rows[0] if rows else None

    async def _fetch_children(self, conn: AsyncConnection, table: Table, lesson_id: Optional[int]) -> List[Dict[str, Any]]:
        if not self._has_schema or lesson_id is None:
            return []
        return await self.store.query(
            conn, select(table).where(table.c.lesson_id == lesson_id).order_by(table.c.order_index)
        )

    async def _upsert(
        self,
        conn: AsyncConnection,
        table: Table,
        kind: str,
        natural_key: list,
        values: Dict[str, Any],
        report: BatchReport,
        unchanged: Callable[[Dict[str, Any]], bool],
        touch_updated_at: bool = False,
    ) -> Optional[int]:
        """Insert, update or skip one row; return its id (None for rows a dry run would insert)."""
        existing = await self._fetch_one(conn, table, *natural_key)

        if existing is None:
            report.count(kind, "inserted")
            if self.dry_run:
                return None
            await self.store.execute(conn, insert(table).values(**values))
            created = await self._fetch_one(conn, table, *natural_key)
            return created["id"]

        if unchanged(existing):
            report.count(kind, "unchanged")
            return existing["id"]

        report.count(kind, "updated")
        if not self.dry_run:
            changes = dict(values)
            if touch_updated_at:
                changes["updated_at"] = func.now()
            await self.store.execute(conn, update(table).where(table.c.id == existing["id"]).values(**changes))
        return existing["id"]

    @staticmethod
    def _same_columns(values: Dict[str, Any]) -> Callable[[Dict[str, Any]], bool]:
        return lambda row: all(row.get(column) == value for column, value in values.items())

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _log_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"transient store failure, retrying: {error}",
            extra={"attempt": retry_state.attempt_number, "delay": round(delay, 3)},
        )

    async def _with_retry(self, report: BatchReport, apply: Callable[[], Awaitable[None]]) -> None:
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_jittered_exponential(self.backoff_base, self._jitter),
            retry=retry_if_exception_type(TransientStoreError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    report.attempts = attempt.retry_state.attempt_number
                    report.reset_counts()
                    await apply()
        except TransientStoreError as exc:
            raise PermanentStoreError(f"gave up after {report.attempts} attempts: {exc}") from exc

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def ingest_categories(self, categories: List[Category]) -> BatchReport:
        """Apply every category in one transaction; raises TopicError if the batch fails."""
        report = BatchReport(scope="categories", status="planned" if self.dry_run else "committed")
        cursor = _Cursor(key="categories")
        started = time.perf_counter()

        async def apply() -> None:
            planned: Set[str] = set()
            async with self.store.transaction(commit=not self.dry_run) as conn:
                await self._check_schema(conn)
                for category in categories:
                    cursor.key = f"category:{category.slug}"
                    values = category.column_values()
                    category_id = await self._upsert(
                        conn,
                        models.categories,
                        "categories",
                        [models.categories.c.slug == category.slug],
                        values,
                        report,
                        self._same_columns(values),
                    )
                    if category_id is None:
                        planned.add(category.slug)
            self._planned_categories = planned

        try:
            await self._with_retry(report, apply)
        except PermanentStoreError as exc:
            report.status = "failed"
            report.elapsed_seconds = time.perf_counter() - started
            report.errors.append(ErrorEntry(record_key=cursor.key, kind="permanent", message=str(exc)))
            logger.error(f"category batch failed at {cursor.key}: {exc}", extra={"record_key": cursor.key})
            raise TopicError(None, cursor.key, "permanent", str(exc), report=report) from exc

        report.elapsed_seconds = time.perf_counter() - started
        logger.info(
            f"categories {report.status}",
            extra={
                "inserted": report.total("inserted"),
                "updated": report.total("updated"),
                "unchanged": report.total("unchanged"),
                "elapsed_seconds": round(report.elapsed_seconds, 3),
            },
        )
        return report

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    async def _resolve_topic(
        self, conn: AsyncConnection, bundle: ValidatedBundle, report: BatchReport, cursor: _Cursor
    ) -> Optional[int]:
        topics = models.topics
        if bundle.topic is None:
            cursor.key = f"topic:{bundle.topic_slug}"
            existing = await self._fetch_one(conn, topics, topics.c.slug == bundle.topic_slug)
            if existing is None:
                reason = "was rejected" if bundle.topic_rejected else "is not declared in the corpus"
                raise MissingReferenceError(
                    cursor.key, f"topic '{bundle.topic_slug}' {reason} and does not exist in the store"
                )
            return existing["id"]

        topic = bundle.topic
        cursor.key = f"topic:{topic.slug}"
        category = await self._fetch_one(conn, models.categories, models.categories.c.slug == topic.category_slug)
        if category is None and topic.category_slug not in self._planned_categories:
            raise MissingReferenceError(cursor.key, f"category '{topic.category_slug}' does not exist")

        values = topic.column_values()
        values["category_id"] = category["id"] if category else None
        return await self._upsert(
            conn,
            topics,
            "topics",
            [topics.c.slug == topic.slug],
            values,
            report,
            self._same_columns(values),
        )

    async def _sync_children(
        self,
        conn: AsyncConnection,
        table: Table,
        kind: str,
        columns: tuple,
        lesson_id: Optional[int],
        records: List[Any],
        report: BatchReport,
    ) -> None:
        """Leave children alone when identical, otherwise delete them all and insert the new list."""
        existing = await self._fetch_children(conn, table, lesson_id)
        new_rows = [record.column_values() for record in records]

        stored = [tuple(row[c] for c in columns) for row in existing]
        wanted = [tuple(row[c] for c in columns) for row in new_rows]
        if stored == wanted:
            report.count(kind, "unchanged", len(new_rows))
            return

        report.count(kind, "deleted", len(existing))
        report.count(kind, "inserted", len(new_rows))
        if self.dry_run:
            return
        if existing:
            await self.store.execute(conn, delete(table).where(table.c.lesson_id == lesson_id))
        for row in new_rows:
            await self.store.execute(conn, insert(table).values(lesson_id=lesson_id, **row))

    async def _apply_lesson(
        self, conn: AsyncConnection, topic_id: Optional[int], entry: LessonBundle, report: BatchReport, cursor: _Cursor
    ) -> None:
        lessons = models.lessons
        lesson = entry.lesson
        cursor.key = f"lesson:{lesson.slug}"

        values = lesson.column_values()
        values["topic_id"] = topic_id
        if topic_id is None:
            # Topic is only planned (dry run), so the lesson cannot exist yet
            report.count("lessons", "inserted")
            lesson_id = None
        else:
            lesson_id = await self._upsert(
                conn,
                lessons,
                "lessons",
                [lessons.c.topic_id == topic_id, lessons.c.slug == lesson.slug],
                values,
                report,
                lambda row: row["content_hash"] == lesson.content_hash,
                touch_updated_at=True,
            )

        cursor.key = f"code_example:{lesson.slug}"
        await self._sync_children(
            conn, models.code_examples, "code_examples", _CODE_EXAMPLE_COLUMNS, lesson_id, entry.code_examples, report
        )
        cursor.key = f"quiz_question:{lesson.slug}"
        await self._sync_children(
            conn,
            models.quiz_questions,
            "quiz_questions",
            _QUIZ_QUESTION_COLUMNS,
            lesson_id,
            entry.quiz_questions,
            report,
        )

    async def ingest_topic(self, bundle: ValidatedBundle) -> BatchReport:
        """Apply one topic and its subtree in a single transaction.

        Validation errors carried by the bundle are copied into the report. A failure
        rolls the whole topic back and raises TopicError naming the record that failed.
        """
        report = BatchReport(
            scope="topic",
            topic_slug=bundle.topic_slug,
            status="planned" if self.dry_run else "committed",
        )
        for error in bundle.errors:
            report.errors.append(
                ErrorEntry(record_key=error.location, kind=error.kind, message=error.reason, topic=bundle.topic_slug)
            )

        cursor = _Cursor(key=f"topic:{bundle.topic_slug}")
        started = time.perf_counter()

        async def apply() -> None:
            async with self.store.transaction(commit=not self.dry_run) as conn:
                await self._check_schema(conn)
                topic_id = await self._resolve_topic(conn, bundle, report, cursor)
                for entry in bundle.lessons:
                    await self._apply_lesson(conn, topic_id, entry, report, cursor)

        try:
            await self._with_retry(report, apply)
        except (MissingReferenceError, PermanentStoreError) as exc:
            kind = "reference" if isinstance(exc, MissingReferenceError) else "permanent"
            record_key = exc.record_key if isinstance(exc, MissingReferenceError) else cursor.key
            report.status = "failed"
            report.reset_counts()
            report.elapsed_seconds = time.perf_counter() - started
            report.errors.append(ErrorEntry(record_key=record_key, kind=kind, message=str(exc), topic=bundle.topic_slug))
            logger.error(
                f"topic {bundle.topic_slug} rolled back at {record_key}: {exc}",
                extra={"record_key": record_key, "error_kind": kind},
            )
            raise TopicError(bundle.topic_slug, record_key, kind, str(exc), report=report) from exc

        report.elapsed_seconds = time.perf_counter() - started
        logger.info(
            f"topic {bundle.topic_slug} {report.status}",
            extra={
                "inserted": report.total("inserted"),
                "updated": report.total("updated"),
                "unchanged": report.total("unchanged"),
                "deleted": report.total("deleted"),
                "attempt": report.attempts,
                "elapsed_seconds": round(report.elapsed_seconds, 3),
            },
        )
        return report
