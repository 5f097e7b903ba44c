import asyncio
import json
import logging

import pytest
from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect

import ingest
import models
from core.config import Settings, normalize_database_url
from ingest import IngestionDriver, exit_code_for
from services.errors import ConfigurationError, translate_store_error
from services.store import RelationalStore


async def _run(settings, sleep=None, store=None):
    driver = IngestionDriver(settings, store=store, sleep=sleep or _instant)
    return await driver.run()


async def _instant(seconds):
    return None


@pytest.mark.asyncio
async def test_scenario_a_empty_store(settings, scenario_a, fetch_rows, db_url):
    summary = await _run(settings)

    assert summary.inserted == 5
    assert summary.updated == 0
    assert summary.unchanged == 0
    assert summary.errors == []
    assert (summary.categories, summary.topics, summary.lessons) == (1, 1, 1)
    assert (summary.code_examples, summary.quiz_questions) == (1, 1)
    assert summary.inventory == {
        "categories": 1,
        "topics": 1,
        "lessons": 1,
        "code_examples": 1,
        "quiz_questions": 1,
    }
    assert summary.orphans == {}
    assert exit_code_for(summary) == 0


@pytest.mark.asyncio
async def test_scenario_b_rerun_is_unchanged(settings, scenario_a, fetch_rows, db_url):
    await _run(settings)
    store = RelationalStore(db_url)
    try:
        before = {name: await fetch_rows(store, table) for name, table in models.TABLES.items()}
    finally:
        await store.dispose()

    summary = await _run(settings)

    assert (summary.inserted, summary.updated, summary.deleted) == (0, 0, 0)
    assert summary.unchanged == 5
    store = RelationalStore(db_url)
    try:
        after = {name: await fetch_rows(store, table) for name, table in models.TABLES.items()}
    finally:
        await store.dispose()
    assert after == before


@pytest.mark.asyncio
async def test_scenario_c_lesson_body_edited(settings, write_corpus, scenario_a_records, fetch_rows, db_url):
    records = scenario_a_records
    write_corpus("intro.json", records)
    await _run(settings)
    store = RelationalStore(db_url)
    try:
        hash_before = (await fetch_rows(store, models.lessons))[0]["content_hash"]
    finally:
        await store.dispose()

    records[2]["content"] = "# Hello"
    write_corpus("intro.json", records)
    summary = await _run(settings)

    assert summary.updated >= 1
    assert summary.topic_reports[-1].counts["lessons"].updated == 1
    store = RelationalStore(db_url)
    try:
        lesson = (await fetch_rows(store, models.lessons))[0]
        assert lesson["content"] == "# Hello"
        assert lesson["content_hash"] != hash_before
        for table in (models.code_examples, models.quiz_questions):
            rows = await fetch_rows(store, table)
            assert [r["order_index"] for r in rows] == list(range(1, len(rows) + 1))
    finally:
        await store.dispose()


@pytest.mark.asyncio
async def test_scenario_d_invalid_quiz(settings, write_corpus, scenario_a_records, fetch_rows, db_url):
    records = scenario_a_records
    records.append(
        {
            "kind": "quiz_question",
            "lesson_slug": "hello",
            "question_text": "Broken",
            "options": ["A", "B", "C"],
            "correct_answer": "XYZ",
        }
    )
    write_corpus("intro.json", records)

    summary = await _run(settings)

    assert [(e.kind, e.record_key) for e in summary.errors] == [("validation", "quiz_question:hello/2.correct_answer")]
    assert summary.errors[0].topic == "intro"
    assert summary.inserted == 5
    assert exit_code_for(summary) == 1
    store = RelationalStore(db_url)
    try:
        questions = await fetch_rows(store, models.quiz_questions)
    finally:
        await store.dispose()
    assert [q["question_text"] for q in questions] == ["What does print do?"]


@pytest.mark.asyncio
async def test_scenario_e_unresolved_category(settings, scenario_a, write_corpus, fetch_rows, db_url):
    write_corpus(
        "orphan.json",
        [
            {"kind": "topic", "slug": "lost", "name": "Lost", "category_slug": "missing"},
            {"kind": "lesson", "slug": "nowhere", "topic_slug": "lost", "content": "x"},
        ],
    )

    summary = await _run(settings)

    assert [(e.kind, e.record_key) for e in summary.errors] == [("reference", "topic:lost")]
    assert summary.topics == 1
    assert exit_code_for(summary) == 1
    store = RelationalStore(db_url)
    try:
        topics = await fetch_rows(store, models.topics)
        lessons = await fetch_rows(store, models.lessons)
    finally:
        await store.dispose()
    assert [t["slug"] for t in topics] == ["intro"]
    assert [lesson["slug"] for lesson in lessons] == ["hello"]


class DeadlockOnceStore(RelationalStore):
    """Fails the first commit of a topic batch with a deadlock, then behaves."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.commits = 0
        self.injected = False

    async def commit(self, connection):
        self.commits += 1
        # commit 1 is the schema DDL, commit 2 the categories batch
        if self.commits == 3 and not self.injected:
            self.injected = True
            raise translate_store_error(sa_exc.OperationalError("COMMIT", None, Exception("deadlock detected")))
        await super().commit(connection)


@pytest.mark.asyncio
async def test_scenario_f_transient_failure_recovery(tmp_path, write_corpus, corpus_root, scenario_a_records):
    write_corpus("intro.json", scenario_a_records)
    baseline_settings = Settings(root=str(corpus_root), database_url=f"sqlite+aiosqlite:///{tmp_path / 'baseline.db'}")
    baseline = await _run(baseline_settings)

    url = f"sqlite+aiosqlite:///{tmp_path / 'flaky.db'}"
    delays = []

    async def record_sleep(seconds):
        delays.append(seconds)

    store = DeadlockOnceStore(url, pool_size=5)
    try:
        summary = await _run(baseline_settings.with_overrides(database_url=url), sleep=record_sleep, store=store)
    finally:
        await store.dispose()

    assert store.injected
    assert len(delays) == 1
    assert 0.05 <= delays[0] <= 0.15
    assert summary.topic_reports[-1].attempts == 2
    ignored = {"run_id", "topic_reports", "elapsed_seconds"}
    assert summary.model_dump(exclude=ignored) == baseline.model_dump(exclude=ignored)


@pytest.mark.asyncio
async def test_dry_run_reports_planned_mutations(settings, scenario_a, fetch_rows, db_url):
    summary = await _run(settings.with_overrides(dry_run=True))

    assert summary.dry_run
    assert (summary.inserted, summary.updated, summary.deleted) == (0, 0, 0)
    assert summary.would_insert == {
        "categories": 1,
        "topics": 1,
        "lessons": 1,
        "code_examples": 1,
        "quiz_questions": 1,
    }
    assert summary.inventory == {}
    assert exit_code_for(summary) == 0

    # Nothing was written, not even the schema
    store = RelationalStore(db_url)
    try:
        async with store.transaction(commit=False) as conn:
            tables = await store.run_sync(conn, lambda sync_conn: inspect(sync_conn).get_table_names())
    finally:
        await store.dispose()
    assert tables == []


@pytest.mark.asyncio
async def test_dry_run_after_apply_is_unchanged(settings, scenario_a):
    await _run(settings)

    summary = await _run(settings.with_overrides(dry_run=True))

    assert summary.unchanged == 5
    assert summary.would_insert == {kind: 0 for kind in summary.would_insert}


@pytest.mark.asyncio
async def test_conflicts_are_escalated(settings, scenario_a, write_corpus):
    write_corpus("zz-duplicate.json", [{"kind": "lesson", "slug": "hello", "topic_slug": "intro", "content": "drift"}])

    summary = await _run(settings)

    assert summary.conflicts == 1
    assert [e.kind for e in summary.errors] == ["conflict"]
    assert exit_code_for(summary) == 1


@pytest.mark.asyncio
async def test_orphans_are_reported_but_do_not_fail(settings, scenario_a, write_corpus):
    write_corpus(
        "extra.json",
        [
            {"kind": "topic", "slug": "extra", "name": "Extra", "category_slug": "basics"},
            {"kind": "lesson", "slug": "more", "topic_slug": "extra", "content": "x"},
        ],
    )
    await _run(settings)
    (settings.root_path / "extra.json").unlink()

    summary = await _run(settings)

    assert summary.orphans == {"topics": ["extra"], "lessons": ["extra/more"]}
    assert exit_code_for(summary) == 0


@pytest.mark.asyncio
async def test_concurrent_topics_all_commit(tmp_path, corpus_root, write_corpus, fetch_rows):
    records = [{"kind": "category", "slug": "basics", "name": "Basics"}]
    for i in range(6):
        records.append({"kind": "topic", "slug": f"topic-{i}", "name": f"T{i}", "category_slug": "basics"})
        records.append({"kind": "lesson", "slug": "intro", "topic_slug": f"topic-{i}", "content": f"# {i}"})
    write_corpus("all.json", records)
    url = f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}"
    settings = Settings(
        root=str(corpus_root), database_url=url, concurrency=3, pool_size=3, retry_attempts=10, retry_backoff_base=0.01
    )

    summary = await _run(settings, sleep=asyncio.sleep)

    assert summary.errors == []
    assert summary.topics == 6
    assert len([r for r in summary.topic_reports if r.scope == "topic"]) == 6
    store = RelationalStore(url)
    try:
        assert len(await fetch_rows(store, models.lessons)) == 6
    finally:
        await store.dispose()


class GatedStore(RelationalStore):
    """Holds every topic transaction open until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def execute(self, connection, statement, params=None):
        result = await super().execute(connection, statement, params)
        table = getattr(statement, "table", None)
        if table is not None and table.name == "topics":
            self.entered.set()
            await self.gate.wait()
        return result


@pytest.mark.asyncio
async def test_cancellation_rolls_back_in_flight_topic(settings, scenario_a, fetch_rows, db_url):
    store = GatedStore(db_url, pool_size=5)
    driver = IngestionDriver(settings, store=store, sleep=_instant)
    try:
        run = asyncio.ensure_future(driver.run())
        await asyncio.wait_for(store.entered.wait(), timeout=10)
        driver.cancel()
        summary = await asyncio.wait_for(run, timeout=10)

        assert summary.cancelled
        assert [(e.kind, e.record_key) for e in summary.errors] == [("cancelled", "topic:intro")]
        assert exit_code_for(summary) == 0
        assert await fetch_rows(store, models.topics) == []
        assert [c["slug"] for c in await fetch_rows(store, models.categories)] == ["basics"]
        assert store.in_use == 0
    finally:
        await store.dispose()


@pytest.mark.asyncio
async def test_fail_fast_stops_after_first_failed_topic(settings, write_corpus):
    write_corpus(
        "a.json",
        [
            {"kind": "topic", "slug": "lost", "name": "Lost", "category_slug": "missing"},
            {"kind": "topic", "slug": "also-lost", "name": "Also", "category_slug": "missing"},
        ],
    )

    summary = await _run(settings.with_overrides(fail_fast=True))

    kinds = [e.kind for e in summary.errors]
    assert kinds.count("reference") == 1
    assert kinds.count("cancelled") == 1
    assert exit_code_for(summary) == 1


@pytest.mark.asyncio
async def test_missing_database_url_is_a_configuration_error(corpus_root):
    driver = IngestionDriver(Settings(root=str(corpus_root)))
    with pytest.raises(ConfigurationError):
        await driver.run()


@pytest.mark.asyncio
async def test_unknown_database_dialect_is_a_configuration_error(corpus_root):
    driver = IngestionDriver(Settings(root=str(corpus_root), database_url="nosuchdb://host/db"))
    with pytest.raises(ConfigurationError, match="database_url"):
        await driver.run()
    assert driver.store is None


def test_main_exit_codes(tmp_path, corpus_root, write_corpus, scenario_a_records, monkeypatch, capsys):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    ingest.get_settings.cache_clear()
    write_corpus("intro.json", scenario_a_records)
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"

    assert ingest.main(["--root", str(corpus_root)]) == 2
    assert ingest.main(["--root", str(tmp_path / "nope"), "--database-url", url]) == 2
    assert ingest.main(["--root", str(corpus_root), "--database-url", url, "--concurrency", "9", "--pool-size", "2"]) == 2
    assert ingest.main(["--root", str(corpus_root), "--database-url", "not a url"]) == 2
    assert ingest.main(["--root", str(corpus_root), "--database-url", "nosuchdb://host/db"]) == 2
    unreachable = f"sqlite+aiosqlite:///{tmp_path / 'missing-dir' / 'x.db'}"
    assert ingest.main(["--root", str(corpus_root), "--database-url", unreachable]) == 3

    capsys.readouterr()
    try:
        assert ingest.main(["--root", str(corpus_root), "--database-url", url]) == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["inserted"] == 5
        assert printed["errors"] == []
    finally:
        ingest.get_settings.cache_clear()
        # main() installed a handler bound to the captured stderr
        logging.getLogger().handlers.clear()


def test_database_url_normalization():
    assert normalize_database_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert normalize_database_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
    assert normalize_database_url("sqlite:///seed.db") == "sqlite+aiosqlite:///seed.db"
    assert normalize_database_url("sqlite+aiosqlite:///seed.db") == "sqlite+aiosqlite:///seed.db"


def test_concurrency_cannot_exceed_pool():
    with pytest.raises(ValueError):
        Settings(concurrency=4, pool_size=2)
