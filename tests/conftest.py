import json
from pathlib import Path

import pytest
import yaml
from sqlalchemy import select

from core.config import Settings


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'seed.db'}"


@pytest.fixture
def corpus_root(tmp_path):
    root = tmp_path / "corpus"
    root.mkdir()
    return root


@pytest.fixture
def write_corpus(corpus_root):
    """Write a corpus file relative to the corpus root; .yaml/.yml paths are dumped as YAML."""

    def _write(relative: str, document) -> Path:
        path = corpus_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix in (".yaml", ".yml"):
            path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        else:
            path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def settings(corpus_root, db_url):
    return Settings(root=str(corpus_root), database_url=db_url, retry_backoff_base=0.0)


@pytest.fixture
def fetch_rows():
    """Read every row of a table through a store, ordered by id."""

    async def _fetch(store, table):
        async with store.transaction(commit=False) as conn:
            return await store.query(conn, select(table).order_by(table.c.id))

    return _fetch


@pytest.fixture
def no_sleep():
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


def _scenario_a_records():
    return [
        {"kind": "category", "slug": "basics", "name": "Basics"},
        {"kind": "topic", "slug": "intro", "category_slug": "basics"},
        {
            "kind": "lesson",
            "slug": "hello",
            "topic_slug": "intro",
            "content": "# Hi",
            "order_index": 1,
            "key_points": ["a", "b"],
        },
        {
            "kind": "code_example",
            "lesson_slug": "hello",
            "title": "Print",
            "language": "python",
            "code": "print('hi')\n",
        },
        {
            "kind": "quiz_question",
            "lesson_slug": "hello",
            "question_text": "What does print do?",
            "options": ["Writes output", "Reads input"],
            "correct_answer": "Writes output",
        },
    ]


@pytest.fixture
def scenario_a_records():
    """Records of the single-topic corpus: one record of every kind."""
    return _scenario_a_records()


@pytest.fixture
def scenario_a(write_corpus, scenario_a_records):
    records = scenario_a_records
    write_corpus("intro.json", records)
    return records
