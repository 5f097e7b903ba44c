"""
Seed ingestion driver for the learning-content store.

Responsibilities:
- Read the seed corpus under `root` (JSON/YAML files, see services.source_loader).
- Validate every record (schemas.records) and upsert Categories, then Topics with their
  Lessons, CodeExamples and QuizQuestions, one transaction per topic (services.upsert_engine).
- Print a JSON summary of what was inserted, updated, left unchanged or deleted.

Re-runnable:
- Rows are matched by natural key (slug, or lesson and position for children), so a
  second run over an unchanged corpus reports everything as unchanged.

Scheduling:
- Categories are committed first; topic tasks wait on a one-shot barrier and then run
  at most `concurrency` at a time, each on its own pooled connection.
- Reports are collected in completion order.
- SIGINT/SIGTERM stop the run: pending topics are not started and in-flight topics roll back.

Exit codes: 0 clean, 1 record or topic errors, 2 configuration error, 3 store unreachable.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from core.config import Settings, get_settings
from core.logging_config import configure_logging, set_run_id, set_topic
from repository import ContentRepository
from schemas.records import Category, ValidationError, validate_bundle, validate_category
from schemas.report import BatchReport, ErrorEntry, RunSummary
from services.errors import ConfigurationError, StoreError, StoreUnavailableError, TopicError
from services.source_loader import SourceGroup, SourceLoader
from services.store import RelationalStore
from services.upsert_engine import UpsertEngine

logger = logging.getLogger("ingest")

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_CONFIG = 2
EXIT_UNREACHABLE = 3


class IngestionDriver:
    def __init__(
        self,
        settings: Settings,
        store: Optional[RelationalStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.store = store
        self._owns_store = store is None
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        self._cancel_requested = False
        self._stopping = False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def validate_settings(self) -> None:
        if not self.settings.database_url:
            raise ConfigurationError("database_url is required (set DATABASE_URL or pass --database-url)")
        root = self.settings.root_path
        if not root.is_dir():
            raise ConfigurationError(f"root '{root}' is not a directory")
        if not os.access(root, os.R_OK | os.X_OK):
            raise ConfigurationError(f"root '{root}' is not readable")
        try:
            make_url(self.settings.async_database_url).get_dialect()
        except (ArgumentError, ImportError) as e:
            raise ConfigurationError(f"database_url is not a usable connection string: {e}") from e

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self._stopping:
            task.cancel()
        return task

    def _stop(self, reason: str) -> None:
        if self._stopping:
            return
        self._stopping = True
        pending = [task for task in self._tasks if not task.done()]
        logger.warning(f"stopping run ({reason}); cancelling {len(pending)} pending topics")
        for task in pending:
            task.cancel()

    def cancel(self) -> None:
        """Stop scheduling topics and abort the ones in flight (they roll back)."""
        self._cancel_requested = True
        self._stop("cancellation requested")

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _validate_categories(self, loader: SourceLoader, errors: List[ErrorEntry]) -> List[Category]:
        valid: List[Category] = []
        for raw in loader.categories:
            result = validate_category(raw.fields, position=raw.position)
            if isinstance(result, ValidationError):
                errors.append(ErrorEntry(record_key=result.location, kind="validation", message=result.reason))
            else:
                valid.append(result)
        return valid

    async def _run_topic(
        self,
        loader: SourceLoader,
        group: SourceGroup,
        engine: UpsertEngine,
        barrier: asyncio.Event,
        slots: asyncio.Semaphore,
    ) -> BatchReport:
        set_topic(group.topic_slug)
        await barrier.wait()
        async with slots:
            bundle = validate_bundle(loader.load(group))
            return await engine.ingest_topic(bundle)

    def _collect(
        self, task: asyncio.Task, label: str, topic_slug: Optional[str], reports: List[BatchReport], errors: List[ErrorEntry]
    ) -> None:
        if task.cancelled():
            errors.append(
                ErrorEntry(
                    record_key=label,
                    kind="cancelled",
                    message="run stopped before this batch committed",
                    topic=topic_slug,
                )
            )
            return
        exc = task.exception()
        if exc is None:
            reports.append(task.result())
            return
        if isinstance(exc, TopicError):
            if exc.report is not None:
                reports.append(exc.report)
            else:
                errors.append(ErrorEntry(record_key=exc.record_key, kind=exc.kind, message=exc.message, topic=topic_slug))
            if self.settings.fail_fast:
                self._stop(f"fail_fast after error in {exc.record_key}")
            return
        self._stop(f"unexpected error in {label}")
        raise exc

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _ingest(self, store: RelationalStore, run_id: str) -> RunSummary:
        settings = self.settings
        loader = SourceLoader(settings.root_path)
        groups = loader.discover()
        errors: List[ErrorEntry] = list(loader.errors)
        categories = self._validate_categories(loader, errors)

        engine = UpsertEngine(
            store,
            dry_run=settings.dry_run,
            max_attempts=settings.retry_attempts,
            backoff_base=settings.retry_backoff_base,
            sleep=self._sleep,
        )
        await engine.ensure_schema()

        reports: List[BatchReport] = []
        barrier = asyncio.Event()
        slots = asyncio.Semaphore(settings.concurrency)

        category_task = self._spawn(engine.ingest_categories(categories))
        topic_tasks: Dict[asyncio.Task, SourceGroup] = {
            self._spawn(self._run_topic(loader, group, engine, barrier, slots)): group for group in groups
        }

        try:
            await asyncio.wait([category_task])
            self._collect(category_task, "categories", None, reports, errors)
        finally:
            barrier.set()

        pending = set(topic_tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                group = topic_tasks[task]
                self._collect(task, f"topic:{group.topic_slug}", group.topic_slug, reports, errors)

        summary = RunSummary.build(
            run_id=run_id,
            reports=reports,
            errors=errors,
            dry_run=settings.dry_run,
            cancelled=self._cancel_requested,
        )

        if not settings.dry_run and not self._cancel_requested:
            repository = ContentRepository(store)
            summary.inventory = await repository.inventory()
            summary.orphans = await repository.orphans(loader.corpus_slugs(groups))
            if summary.orphans:
                logger.info(
                    "store holds entities the corpus no longer declares",
                    extra={"records": sum(len(v) for v in summary.orphans.values())},
                )
        return summary

    async def run(self) -> RunSummary:
        """Validate configuration, check the store, ingest the corpus and return the summary."""
        started = time.perf_counter()
        run_id = uuid.uuid4().hex[:12]
        set_run_id(run_id)

        self.validate_settings()
        if self.store is None:
            self.store = RelationalStore(
                self.settings.async_database_url,
                pool_size=self.settings.pool_size,
                statement_timeout=self.settings.statement_timeout,
                echo=self.settings.echo_sql,
            )

        logger.info(
            f"starting ingestion from {self.settings.root_path}",
            extra={"path": str(self.settings.root_path), "status": "dry_run" if self.settings.dry_run else "apply"},
        )
        try:
            await self.store.ping()
            summary = await self._ingest(self.store, run_id)
        finally:
            if self._owns_store:
                await self.store.dispose()

        summary.elapsed_seconds = round(time.perf_counter() - started, 3)
        logger.info(
            "ingestion finished",
            extra={
                "inserted": summary.inserted,
                "updated": summary.updated,
                "unchanged": summary.unchanged,
                "deleted": summary.deleted,
                "elapsed_seconds": summary.elapsed_seconds,
                "status": "cancelled" if summary.cancelled else ("errors" if summary.has_errors else "ok"),
            },
        )
        return summary


def exit_code_for(summary: RunSummary) -> int:
    return EXIT_ERRORS if summary.has_errors else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="seed-ingest", description="Load the seed content corpus into the database.")
    parser.add_argument("--root", help="directory holding the corpus (default: SEED_ROOT or .)")
    parser.add_argument("--database-url", help="store connection string (default: DATABASE_URL)")
    parser.add_argument("--dry-run", action="store_true", default=None, help="plan only; write nothing")
    parser.add_argument("--fail-fast", action="store_true", default=None, help="stop at the first failed topic")
    parser.add_argument("--concurrency", type=int, help="topics ingested in parallel")
    parser.add_argument("--pool-size", type=int, help="connection pool capacity")
    parser.add_argument("--timeout", type=float, dest="statement_timeout", help="per-operation deadline in seconds")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


async def _run_with_signals(driver: IngestionDriver) -> RunSummary:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, driver.cancel)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform (e.g. Windows event loops)
            pass
    return await driver.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings().with_overrides(
            root=args.root,
            database_url=args.database_url,
            dry_run=args.dry_run,
            fail_fast=args.fail_fast,
            concurrency=args.concurrency,
            pool_size=args.pool_size,
            statement_timeout=args.statement_timeout,
            log_level=args.log_level.upper() if args.log_level else None,
        )
    except ValueError as e:
        configure_logging()
        logger.error(f"invalid configuration: {e}")
        return EXIT_CONFIG

    configure_logging(settings.log_level)
    driver = IngestionDriver(settings)
    try:
        summary = asyncio.run(_run_with_signals(driver))
    except ConfigurationError as e:
        logger.error(f"invalid configuration: {e}")
        return EXIT_CONFIG
    except StoreUnavailableError as e:
        logger.error(str(e))
        return EXIT_UNREACHABLE
    except StoreError as e:
        logger.error(f"store failure outside a topic batch: {e}")
        return EXIT_ERRORS

    print(summary.model_dump_json(indent=2))
    return exit_code_for(summary)


if __name__ == "__main__":
    sys.exit(main())
