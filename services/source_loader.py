"""
Source Loader: discover the seed corpus under a root directory and group its records by topic.

Corpus convention:
- Files with .json, .yaml or .yml suffixes anywhere under root; hidden files and
  directories are skipped. Files are read in lexicographic order of their relative
  path so every run sees records in the same order.
- A file holds either a list of kind-tagged records, a single kind-tagged record,
  a {"records": [...]} wrapper, or a grouped document:

      topic: {...}
      lessons: [...]
      code_examples: {<lesson_slug>: [...]}     # "examples" also accepted
      quiz_questions: {<lesson_slug>: [...]}    # "quiz" also accepted
      categories: [...]

  Lessons in a grouped document inherit topic_slug from its topic; children inherit
  lesson_slug from their mapping key.
- Files under <category>/<level>/<topic-dir>/ (level being a lesson difficulty) supply
  defaults: a topic without category_slug gets <category>, topics and lessons without
  difficulty_level get <level>.

Records for the same topic or lesson coming from several files are merged by slug.
When two sources claim the same entity key the first-seen record is kept and a
conflict is reported. The loader never talks to the database.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from schemas.records import (
    LESSON_DIFFICULTIES,
    RECORD_KINDS,
    VALIDATORS,
    RawRecord,
    RawRecordBundle,
    ValidationError,
)
from schemas.report import ErrorEntry
from services.errors import SourceError

logger = logging.getLogger("loader")

SUPPORTED_SUFFIXES = {".json", ".yaml", ".yml"}

_GROUPED_CHILD_KEYS = {
    "code_examples": "code_example",
    "examples": "code_example",
    "quiz_questions": "quiz_question",
    "quiz": "quiz_question",
}


def _slug_of(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


@dataclass
class SourceGroup:
    """All records the corpus declares for one topic, in first-seen order."""

    topic_slug: str
    topic: Optional[RawRecord] = None
    lessons: Dict[str, RawRecord] = field(default_factory=dict)
    code_examples: Dict[str, List[RawRecord]] = field(default_factory=dict)
    quiz_questions: Dict[str, List[RawRecord]] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)

    def note_source(self, source: str) -> None:
        if source not in self.sources:
            self.sources.append(source)

    def children(self, kind: str) -> Dict[str, List[RawRecord]]:
        return self.code_examples if kind == "code_example" else self.quiz_questions


class SourceLoader:
    """Reads the corpus once; discover() groups it, load() hands out one group at a time."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.categories: List[RawRecord] = []
        self.errors: List[ErrorEntry] = []
        self._category_slugs: Dict[str, str] = {}
        self._topic_positions = 0
        self._pending_children: List[RawRecord] = []

    # ------------------------------------------------------------------
    # File discovery and parsing
    # ------------------------------------------------------------------

    def iter_files(self) -> Iterator[Path]:
        candidates = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.suffix.lower() not in SUPPORTED_SUFFIXES:
                continue
            relative = path.relative_to(self.root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            candidates.append(relative)
        for relative in sorted(candidates, key=lambda p: p.as_posix()):
            yield self.root / relative

    def _parse(self, path: Path) -> Any:
        try:
            with path.open("r", encoding="utf-8") as f:
                if path.suffix.lower() == ".json":
                    return json.load(f)
                return yaml.safe_load(f)
        except (OSError, UnicodeDecodeError, ValueError, yaml.YAMLError) as exc:
            raise SourceError(f"cannot read {path.relative_to(self.root).as_posix()}: {exc}") from exc

    def _path_defaults(self, path: Path) -> Dict[str, str]:
        """Infer category and level from a <category>/<level>/<topic-dir>/ layout."""
        dirs = path.relative_to(self.root).parts[:-1]
        for i in range(len(dirs) - 1, 0, -1):
            if dirs[i].lower() in LESSON_DIFFICULTIES:
                return {"category_slug": dirs[i - 1].lower(), "difficulty_level": dirs[i].lower()}
        return {}

    def _source_error(self, source: str, message: str) -> None:
        logger.warning(message, extra={"path": source})
        self.errors.append(ErrorEntry(record_key=f"source:{source}", kind="source", message=message))

    def _extract(self, document: Any, source: str) -> List[Tuple[str, Dict[str, Any]]]:
        """Turn one parsed document into (kind, fields) pairs, applying grouped-document inheritance."""
        if document is None:
            return []
        if isinstance(document, list):
            return self._extract_tagged(document, source)
        if not isinstance(document, dict):
            self._source_error(source, "document must be a list of records or a mapping")
            return []
        if "kind" in document:
            return self._extract_tagged([document], source)
        if "records" in document:
            records = document["records"]
            if not isinstance(records, list):
                self._source_error(source, "'records' must be a list")
                return []
            return self._extract_tagged(records, source)
        return self._extract_grouped(document, source)

    def _extract_tagged(self, items: List[Any], source: str) -> List[Tuple[str, Dict[str, Any]]]:
        out = []
        for i, item in enumerate(items):
            if not isinstance(item, dict):
                self._source_error(source, f"record {i} is not a mapping")
                continue
            kind = item.get("kind")
            if kind not in RECORD_KINDS:
                self._source_error(source, f"record {i} has unknown kind {kind!r}")
                continue
            out.append((kind, dict(item)))
        return out

    def _extract_grouped(self, document: Dict[str, Any], source: str) -> List[Tuple[str, Dict[str, Any]]]:
        out: List[Tuple[str, Dict[str, Any]]] = []

        categories = document.get("categories") or []
        if isinstance(document.get("category"), dict):
            categories = [document["category"]] + list(categories)
        for item in categories:
            if isinstance(item, dict):
                out.append(("category", dict(item)))
            else:
                self._source_error(source, "category entries must be mappings")

        topics = document.get("topics") or []
        if isinstance(document.get("topic"), dict):
            topics = [document["topic"]] + list(topics)
        context_topic: Optional[str] = None
        for item in topics:
            if isinstance(item, dict):
                out.append(("topic", dict(item)))
                context_topic = context_topic or _slug_of(item.get("slug"))
            else:
                self._source_error(source, "topic entries must be mappings")

        for item in document.get("lessons") or []:
            if not isinstance(item, dict):
                self._source_error(source, "lesson entries must be mappings")
                continue
            lesson = dict(item)
            if context_topic and lesson.get("topic_slug") is None:
                lesson["topic_slug"] = context_topic
            out.append(("lesson", lesson))

        for key, kind in _GROUPED_CHILD_KEYS.items():
            section = document.get(key)
            if section is None:
                continue
            if isinstance(section, dict):
                entries = [(lesson_slug, item) for lesson_slug, items in section.items() for item in (items or [])]
            elif isinstance(section, list):
                entries = [(None, item) for item in section]
            else:
                self._source_error(source, f"'{key}' must be a mapping of lesson slug to records or a list")
                continue
            for lesson_slug, item in entries:
                if not isinstance(item, dict):
                    self._source_error(source, f"'{key}' entries must be mappings")
                    continue
                child = dict(item)
                if lesson_slug is not None and child.get("lesson_slug") is None:
                    child["lesson_slug"] = lesson_slug
                if context_topic and child.get("topic_slug") is None:
                    child["topic_slug"] = context_topic
                out.append((kind, child))

        if not out:
            logger.info("no records in document", extra={"path": source})
        return out

    # ------------------------------------------------------------------
    # Routing records into topic groups
    # ------------------------------------------------------------------

    def _conflict(self, record: RawRecord, first_source: str) -> None:
        message = f"already declared in {first_source}; keeping the first-seen record (duplicate in {record.source})"
        logger.warning(f"conflict for {record.key}: {message}")
        self.errors.append(ErrorEntry(record_key=record.key, kind="conflict", message=message))

    def _reject_unroutable(self, kind: str, fields: Dict[str, Any], source: str, reason: str) -> None:
        result = VALIDATORS[kind](fields)
        if isinstance(result, ValidationError):
            entry = ErrorEntry(record_key=result.location, kind="validation", message=f"{result.reason} (in {source})")
        else:
            entry = ErrorEntry(record_key=f"{kind}:?", kind="validation", message=f"{reason} (in {source})")
        self.errors.append(entry)

    def _group(self, groups: Dict[str, SourceGroup], topic_slug: str) -> SourceGroup:
        if topic_slug not in groups:
            groups[topic_slug] = SourceGroup(topic_slug=topic_slug)
        return groups[topic_slug]

    def _route(self, groups: Dict[str, SourceGroup], kind: str, fields: Dict[str, Any], source: str) -> None:
        if kind == "category":
            slug = _slug_of(fields.get("slug"))
            if slug is None:
                self._reject_unroutable(kind, fields, source, "category has no slug")
                return
            record = RawRecord(kind=kind, fields=fields, source=source, position=len(self.categories) + 1)
            if slug in self._category_slugs:
                self._conflict(record, self._category_slugs[slug])
                return
            self._category_slugs[slug] = source
            self.categories.append(record)
            return

        if kind == "topic":
            slug = _slug_of(fields.get("slug"))
            if slug is None:
                self._reject_unroutable(kind, fields, source, "topic has no slug")
                return
            self._topic_positions += 1
            record = RawRecord(kind=kind, fields=fields, source=source, position=self._topic_positions)
            group = self._group(groups, slug)
            if group.topic is not None:
                self._conflict(record, group.topic.source)
                return
            group.topic = record
            group.note_source(source)
            return

        if kind == "lesson":
            topic_slug = _slug_of(fields.get("topic_slug"))
            slug = _slug_of(fields.get("slug"))
            if topic_slug is None or slug is None:
                self._reject_unroutable(kind, fields, source, "lesson needs slug and topic_slug")
                return
            group = self._group(groups, topic_slug)
            record = RawRecord(kind=kind, fields=fields, source=source, position=len(group.lessons) + 1)
            if slug in group.lessons:
                self._conflict(record, group.lessons[slug].source)
                return
            group.lessons[slug] = record
            group.note_source(source)
            return

        # Children wait until every lesson in the corpus is known
        self._pending_children.append(RawRecord(kind=kind, fields=fields, source=source))

    def _attach_children(self, groups: Dict[str, SourceGroup]) -> None:
        lesson_topics: Dict[str, List[str]] = {}
        for group in groups.values():
            for lesson_slug in group.lessons:
                lesson_topics.setdefault(lesson_slug, []).append(group.topic_slug)

        seen_keys: Dict[Tuple[str, str, str, Any], str] = {}
        for child in self._pending_children:
            fields = child.fields
            lesson_slug = _slug_of(fields.get("lesson_slug"))
            if lesson_slug is None:
                self._reject_unroutable(child.kind, fields, child.source, f"{child.kind} has no lesson_slug")
                continue

            topic_slug = _slug_of(fields.get("topic_slug"))
            candidates = lesson_topics.get(lesson_slug, [])
            if topic_slug is not None:
                candidates = [t for t in candidates if t == topic_slug]

            if not candidates:
                where = f" in topic '{topic_slug}'" if topic_slug else ""
                self.errors.append(
                    ErrorEntry(
                        record_key=child.key,
                        kind="reference",
                        message=f"lesson '{lesson_slug}'{where} is not declared in the corpus",
                    )
                )
                continue
            if len(candidates) > 1:
                self.errors.append(
                    ErrorEntry(
                        record_key=child.key,
                        kind="conflict",
                        message=f"lesson slug '{lesson_slug}' is used by topics {candidates}; add topic_slug to disambiguate",
                    )
                )
                continue

            group = groups[candidates[0]]
            siblings = group.children(child.kind).setdefault(lesson_slug, [])
            child.position = len(siblings) + 1

            declared = fields.get("order_index")
            if declared is not None:
                key = (group.topic_slug, lesson_slug, child.kind, declared)
                if key in seen_keys:
                    self._conflict(child, seen_keys[key])
                    continue
                seen_keys[key] = child.source

            siblings.append(child)
            group.note_source(child.source)

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def discover(self) -> List[SourceGroup]:
        """Read every corpus file and return one SourceGroup per topic, in first-seen order."""
        groups: Dict[str, SourceGroup] = {}
        self.categories = []
        self.errors = []
        self._category_slugs = {}
        self._topic_positions = 0
        self._pending_children = []

        file_count = 0
        for path in self.iter_files():
            source = path.relative_to(self.root).as_posix()
            file_count += 1
            try:
                document = self._parse(path)
            except SourceError as exc:
                self._source_error(source, str(exc))
                continue

            records = self._extract(document, source)
            defaults = self._path_defaults(path)
            for kind, fields in records:
                if kind == "topic":
                    for key in ("category_slug", "difficulty_level"):
                        if key in defaults and fields.get(key) is None:
                            fields[key] = defaults[key]
                elif kind == "lesson" and "difficulty_level" in defaults and fields.get("difficulty_level") is None:
                    fields["difficulty_level"] = defaults["difficulty_level"]
                self._route(groups, kind, fields, source)
            logger.debug(f"read {source}", extra={"path": source, "records": len(records)})

        self._attach_children(groups)
        logger.info(
            f"discovered {len(groups)} topic groups in {file_count} files",
            extra={"groups": len(groups), "records": sum(len(g.lessons) for g in groups.values())},
        )
        return list(groups.values())

    def load(self, group: SourceGroup) -> RawRecordBundle:
        """Materialize one group as the bundle the validators and the upsert engine consume."""
        return RawRecordBundle(
            topic_slug=group.topic_slug,
            topic=group.topic,
            lessons=list(group.lessons.values()),
            code_examples={slug: list(items) for slug, items in group.code_examples.items()},
            quiz_questions={slug: list(items) for slug, items in group.quiz_questions.items()},
            sources=list(group.sources),
        )


    def corpus_slugs(self, groups: List[SourceGroup]) -> Dict[str, List[str]]:
        """Slugs the corpus declares, in the shape ContentRepository.orphans() expects."""
        return {
            "categories": list(self._category_slugs),
            "topics": [group.topic_slug for group in groups],
            "lessons": [f"{group.topic_slug}/{slug}" for group in groups for slug in group.lessons],
        }


def discover(root: Path) -> Tuple[SourceLoader, List[SourceGroup]]:
    """Convenience wrapper: build a loader for root and discover its groups."""
    loader = SourceLoader(root)
    return loader, loader.discover()
