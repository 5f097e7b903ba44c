"""
Reporting schemas: one BatchReport per transaction (the categories pass or a topic)
and the RunSummary the driver prints at the end of a run.

Future-proofing notes:
- Counts are keyed by table name so new entity kinds only extend ENTITY_KINDS.
- RunSummary keeps the flat totals the command surface promises (inserted, updated, ...)
  and carries the per-batch detail alongside for anyone who wants it.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

ENTITY_KINDS = ("categories", "topics", "lessons", "code_examples", "quiz_questions")
ACTIONS = ("inserted", "updated", "unchanged", "deleted")


class EntityCounts(BaseModel):
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0

    @property
    def written(self) -> int:
        """Rows that exist in the store for this batch after it commits."""
        return self.inserted + self.updated + self.unchanged


def _empty_counts() -> Dict[str, EntityCounts]:
    return {kind: EntityCounts() for kind in ENTITY_KINDS}


class ErrorEntry(BaseModel):
    record_key: str
    kind: Literal["validation", "reference", "permanent", "conflict", "source", "cancelled"]
    message: str
    topic: Optional[str] = None


class BatchReport(BaseModel):
    """Outcome of one transactional batch."""

    scope: Literal["categories", "topic"] = "topic"
    topic_slug: Optional[str] = None
    status: Literal["committed", "planned", "failed", "cancelled"] = "committed"
    counts: Dict[str, EntityCounts] = Field(default_factory=_empty_counts)
    attempts: int = 1
    elapsed_seconds: float = 0.0
    errors: List[ErrorEntry] = Field(default_factory=list)

    @property
    def retried(self) -> bool:
        return self.attempts > 1

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def count(self, kind: str, action: str, n: int = 1) -> None:
        counts = self.counts[kind]
        setattr(counts, action, getattr(counts, action) + n)

    def total(self, action: str) -> int:
        return sum(getattr(c, action) for c in self.counts.values())

    def reset_counts(self) -> None:
        self.counts = _empty_counts()


class RunSummary(BaseModel):
    run_id: str
    dry_run: bool = False
    cancelled: bool = False

    categories: int = 0
    topics: int = 0
    lessons: int = 0
    code_examples: int = 0
    quiz_questions: int = 0

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0

    would_insert: Optional[Dict[str, int]] = None
    would_update: Optional[Dict[str, int]] = None
    would_delete: Optional[Dict[str, int]] = None

    errors: List[ErrorEntry] = Field(default_factory=list)
    conflicts: int = 0
    orphans: Dict[str, List[str]] = Field(default_factory=dict)
    inventory: Dict[str, int] = Field(default_factory=dict)
    topic_reports: List[BatchReport] = Field(default_factory=list)
    elapsed_seconds: float = 0.0

    @classmethod
    def build(
        cls,
        run_id: str,
        reports: Iterable[BatchReport],
        errors: Iterable[ErrorEntry],
        dry_run: bool = False,
        cancelled: bool = False,
    ) -> "RunSummary":
        """Aggregate batch reports (kept in completion order) into the run totals."""
        reports = list(reports)
        summary = cls(run_id=run_id, dry_run=dry_run, cancelled=cancelled, topic_reports=reports)

        per_kind = _empty_counts()
        for report in reports:
            if report.status in ("failed", "cancelled"):
                continue
            for kind, counts in report.counts.items():
                for action in ACTIONS:
                    setattr(per_kind[kind], action, getattr(per_kind[kind], action) + getattr(counts, action))

        for kind, counts in per_kind.items():
            setattr(summary, kind, counts.written)

        summary.unchanged = sum(c.unchanged for c in per_kind.values())
        if dry_run:
            summary.would_insert = {kind: c.inserted for kind, c in per_kind.items()}
            summary.would_update = {kind: c.updated for kind, c in per_kind.items()}
            summary.would_delete = {kind: c.deleted for kind, c in per_kind.items()}
        else:
            summary.inserted = sum(c.inserted for c in per_kind.values())
            summary.updated = sum(c.updated for c in per_kind.values())
            summary.deleted = sum(c.deleted for c in per_kind.values())

        summary.errors = list(errors)
        for report in reports:
            summary.errors.extend(report.errors)
        summary.conflicts = sum(1 for e in summary.errors if e.kind == "conflict")
        return summary

    @property
    def has_errors(self) -> bool:
        return any(e.kind != "cancelled" for e in self.errors)
