"""
Record schemas for the seed-data corpus: Category, Topic, Lesson, CodeExample, QuizQuestion.

Design choices:
- Each record kind is a pydantic model; normalization (slug casing, trimming, difficulty
  mapping, option cleanup) happens in validators so a validated record is always in
  canonical form.
- The validate_* functions never raise. They return either the model or a
  ValidationError naming the record key and the first failing field.
- Unknown fields are ignored (model_config extra="ignore") so the corpus can carry
  authoring metadata the pipeline does not persist.
- Lesson content is opaque Markdown and is never trimmed or rewritten; content_hash is
  derived from it (and the other persisted lesson columns) on demand.
"""
from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Mapping, Optional, Tuple, Type, TypeVar, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")

LESSON_DIFFICULTIES = ("beginner", "intermediate", "advanced", "expert")
QUESTION_DIFFICULTIES = ("easy", "medium", "hard")

RECORD_KINDS = ("category", "topic", "lesson", "code_example", "quiz_question")


def _normalize_slug(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("slug must be a string")
    slug = value.strip().lower()
    if not SLUG_PATTERN.match(slug):
        raise ValueError(f"'{slug}' is not a valid slug (expected lowercase words joined by single hyphens)")
    return slug


def _lower_choice(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _required_text(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("must not be empty")
    return cleaned


def _drop_blank_entries(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [v for v in value if not (isinstance(v, str) and not v.strip())]
    return value


Slug = Annotated[str, BeforeValidator(_normalize_slug)]
RequiredText = Annotated[str, AfterValidator(_required_text)]
LessonDifficulty = Annotated[Literal["beginner", "intermediate", "advanced", "expert"], BeforeValidator(_lower_choice)]
QuestionDifficulty = Annotated[Literal["easy", "medium", "hard"], BeforeValidator(_lower_choice)]
QuestionType = Annotated[Literal["multiple_choice"], BeforeValidator(_lower_choice)]


def content_digest(payload: Mapping[str, Any]) -> str:
    """SHA-256 over the canonical JSON encoding of payload."""
    canonical = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # Display field that falls back to the humanized slug when a record omits it
    title_field: ClassVar[Optional[str]] = None

    kind: str = ""

    @model_validator(mode="before")
    @classmethod
    def default_title_from_slug(cls, data: Any) -> Any:
        name = cls.title_field
        if name and isinstance(data, dict) and name not in data and isinstance(data.get("slug"), str):
            data = {**data, name: data["slug"].strip().replace("-", " ").title()}
        return data

    def column_values(self) -> Dict[str, Any]:
        """Values for the record's own table columns (foreign keys excluded)."""
        raise NotImplementedError


class Category(_Record):
    kind: Literal["category"] = "category"
    title_field: ClassVar[Optional[str]] = "name"

    slug: Slug
    name: RequiredText
    description: Optional[str] = None
    icon: Optional[str] = None
    order_index: int = Field(ge=0)

    def column_values(self) -> Dict[str, Any]:
        return self.model_dump(include={"slug", "name", "description", "icon", "order_index"})


class Topic(_Record):
    kind: Literal["topic"] = "topic"
    title_field: ClassVar[Optional[str]] = "name"

    slug: Slug
    name: RequiredText
    description: Optional[str] = None
    estimated_time: Optional[int] = Field(default=None, ge=0, description="Estimated time in minutes")
    order_index: int = Field(ge=0)
    category_slug: Slug
    difficulty_level: Optional[LessonDifficulty] = None
    icon: Optional[str] = None

    def column_values(self) -> Dict[str, Any]:
        return self.model_dump(
            include={"slug", "name", "description", "estimated_time", "order_index", "difficulty_level", "icon"}
        )


class Lesson(_Record):
    kind: Literal["lesson"] = "lesson"
    title_field: ClassVar[Optional[str]] = "title"

    topic_slug: Slug
    slug: Slug
    title: RequiredText
    summary: Optional[str] = None
    content: str
    difficulty_level: LessonDifficulty = "beginner"
    estimated_time: Optional[int] = Field(default=None, ge=0, description="Estimated time in minutes")
    order_index: int = Field(ge=0)
    key_points: List[RequiredText] = Field(default_factory=list)

    @field_validator("key_points", mode="before")
    @classmethod
    def drop_empty_key_points(cls, v: Any) -> Any:
        return _drop_blank_entries(v)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def content_hash(self) -> str:
        return content_digest(
            {
                "slug": self.slug,
                "title": self.title,
                "summary": self.summary,
                "content": self.content,
                "difficulty_level": self.difficulty_level,
                "estimated_time": self.estimated_time,
                "order_index": self.order_index,
                "key_points": list(self.key_points),
            }
        )

    def column_values(self) -> Dict[str, Any]:
        values = self.model_dump(
            include={
                "slug",
                "title",
                "summary",
                "content",
                "difficulty_level",
                "estimated_time",
                "order_index",
                "key_points",
            }
        )
        values["content_hash"] = self.content_hash
        return values


class CodeExample(_Record):
    kind: Literal["code_example"] = "code_example"
    lesson_slug: Slug
    topic_slug: Optional[Slug] = None
    title: RequiredText
    description: Optional[str] = None
    language: RequiredText
    code: str
    explanation: Optional[str] = None
    order_index: int = Field(ge=0)
    is_interactive: bool = False

    def column_values(self) -> Dict[str, Any]:
        return self.model_dump(
            include={"title", "description", "language", "code", "explanation", "order_index", "is_interactive"}
        )


class QuizQuestion(_Record):
    kind: Literal["quiz_question"] = "quiz_question"
    lesson_slug: Slug
    topic_slug: Optional[Slug] = None
    question_text: RequiredText
    question_type: QuestionType = "multiple_choice"
    options: List[RequiredText] = Field(min_length=2)
    correct_answer: str
    explanation: Optional[str] = None
    difficulty: QuestionDifficulty = "medium"
    points: int = Field(default=10, ge=0)
    order_index: int = Field(ge=0)

    @field_validator("options")
    @classmethod
    def validate_unique_options(cls, v: List[str]) -> List[str]:
        seen: Dict[str, int] = {}
        for i, option in enumerate(v):
            if option in seen:
                raise ValueError(f"option {i} duplicates option {seen[option]} ('{option}')")
            seen[option] = i
        return v

    @field_validator("correct_answer")
    @classmethod
    def validate_answer_in_options(cls, v: str, info: ValidationInfo) -> str:
        answer = v.strip()
        options = info.data.get("options")
        if options is not None and answer not in options:
            raise ValueError(f"correct answer '{answer}' is not one of the options")
        return answer

    def column_values(self) -> Dict[str, Any]:
        return self.model_dump(
            include={
                "question_text",
                "question_type",
                "options",
                "correct_answer",
                "explanation",
                "difficulty",
                "points",
                "order_index",
            }
        )


R = TypeVar("R", Category, Topic, Lesson, CodeExample, QuizQuestion)


@dataclass(frozen=True)
class ValidationError:
    """A record that failed validation (or could not be attached to its parent)."""

    record_key: str
    reason: str
    field: Optional[str] = None
    kind: str = "validation"

    @property
    def location(self) -> str:
        if self.field:
            return f"{self.record_key}.{self.field}"
        return self.record_key

    def __str__(self) -> str:
        return f"{self.location}: {self.reason}"


def _format_loc(loc: Tuple[Any, ...]) -> Optional[str]:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or None


def _format_msg(msg: str) -> str:
    prefix = "Value error, "
    return msg[len(prefix):] if msg.startswith(prefix) else msg


def record_key(kind: str, raw: Any, position: int = 1) -> str:
    """Human-readable identity of a raw record, e.g. 'lesson:ddd-fundamentals'."""
    fields = raw if isinstance(raw, Mapping) else {}
    if kind in ("code_example", "quiz_question"):
        parent = fields.get("lesson_slug")
        parent = parent.strip().lower() if isinstance(parent, str) else "?"
        index = fields.get("order_index")
        return f"{kind}:{parent}/{index if index is not None else position}"
    slug = fields.get("slug")
    slug = slug.strip().lower() if isinstance(slug, str) else "?"
    return f"{kind}:{slug}"


def _validate(model: Type[R], kind: str, raw: Any, position: int) -> Union[R, ValidationError]:
    key = record_key(kind, raw, position)
    if not isinstance(raw, Mapping):
        return ValidationError(record_key=key, reason="record must be a mapping of fields")

    # None means "not provided" so defaults and position-based ordering apply
    data = {k: v for k, v in raw.items() if v is not None}
    data.pop("kind", None)
    data.setdefault("order_index", position)

    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        return ValidationError(
            record_key=key,
            field=_format_loc(tuple(first.get("loc", ()))),
            reason=_format_msg(first.get("msg", "invalid value")),
        )


def validate_category(raw: Any, position: int = 1) -> Union[Category, ValidationError]:
    return _validate(Category, "category", raw, position)


def validate_topic(raw: Any, position: int = 1) -> Union[Topic, ValidationError]:
    return _validate(Topic, "topic", raw, position)


def validate_lesson(raw: Any, position: int = 1) -> Union[Lesson, ValidationError]:
    return _validate(Lesson, "lesson", raw, position)


def validate_example(raw: Any, position: int = 1) -> Union[CodeExample, ValidationError]:
    return _validate(CodeExample, "code_example", raw, position)


def validate_question(raw: Any, position: int = 1) -> Union[QuizQuestion, ValidationError]:
    return _validate(QuizQuestion, "quiz_question", raw, position)


VALIDATORS = {
    "category": validate_category,
    "topic": validate_topic,
    "lesson": validate_lesson,
    "code_example": validate_example,
    "quiz_question": validate_question,
}


def renumber(records: List[R]) -> List[R]:
    """Stable-sort by order_index and renumber densely from 1, keeping input order for ties."""
    ordered = sorted(enumerate(records), key=lambda pair: (pair[1].order_index, pair[0]))
    return [record.model_copy(update={"order_index": i}) for i, (_, record) in enumerate(ordered, start=1)]


# ---------------------------------------------------------------------------
# Record groups as they travel from the loader to the upsert engine
# ---------------------------------------------------------------------------


@dataclass
class RawRecord:
    """One record as read from a source file, before validation."""

    kind: str
    fields: Dict[str, Any]
    source: str
    position: int = 1

    @property
    def key(self) -> str:
        return record_key(self.kind, self.fields, self.position)


@dataclass
class RawRecordBundle:
    """Everything the corpus declares for one topic."""

    topic_slug: str
    topic: Optional[RawRecord] = None
    lessons: List[RawRecord] = field(default_factory=list)
    code_examples: Dict[str, List[RawRecord]] = field(default_factory=dict)
    quiz_questions: Dict[str, List[RawRecord]] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)

    @property
    def record_count(self) -> int:
        children = sum(len(v) for v in self.code_examples.values()) + sum(
            len(v) for v in self.quiz_questions.values()
        )
        return (1 if self.topic else 0) + len(self.lessons) + children


@dataclass
class LessonBundle:
    lesson: Lesson
    code_examples: List[CodeExample] = field(default_factory=list)
    quiz_questions: List[QuizQuestion] = field(default_factory=list)


@dataclass
class ValidatedBundle:
    topic_slug: str
    topic: Optional[Topic] = None
    lessons: List[LessonBundle] = field(default_factory=list)
    errors: List[ValidationError] = field(default_factory=list)
    topic_rejected: bool = False


def _validate_children(
    raws: List[RawRecord],
    validator,
    errors: List[ValidationError],
) -> list:
    valid = []
    for raw in raws:
        result = validator(raw.fields, position=raw.position)
        if isinstance(result, ValidationError):
            errors.append(result)
        else:
            valid.append(result)
    return renumber(valid)


def validate_bundle(bundle: RawRecordBundle) -> ValidatedBundle:
    """Validate every record of a topic bundle and normalize child ordering.

    Invalid records are dropped and reported; children of a rejected lesson are
    reported as reference errors since they have nothing to attach to.
    """
    result = ValidatedBundle(topic_slug=bundle.topic_slug)

    if bundle.topic is not None:
        topic = validate_topic(bundle.topic.fields, position=bundle.topic.position)
        if isinstance(topic, ValidationError):
            result.errors.append(topic)
            result.topic_rejected = True
        else:
            result.topic = topic

    lessons: List[Lesson] = []
    rejected: Dict[str, str] = {}
    for raw in bundle.lessons:
        lesson = validate_lesson(raw.fields, position=raw.position)
        if isinstance(lesson, ValidationError):
            result.errors.append(lesson)
            slug = raw.fields.get("slug")
            if isinstance(slug, str):
                rejected[slug.strip().lower()] = lesson.location
        else:
            lessons.append(lesson)

    for lesson in renumber(lessons):
        result.lessons.append(
            LessonBundle(
                lesson=lesson,
                code_examples=_validate_children(
                    bundle.code_examples.get(lesson.slug, []), validate_example, result.errors
                ),
                quiz_questions=_validate_children(
                    bundle.quiz_questions.get(lesson.slug, []), validate_question, result.errors
                ),
            )
        )

    for lesson_slug, failure in rejected.items():
        orphans = bundle.code_examples.get(lesson_slug, []) + bundle.quiz_questions.get(lesson_slug, [])
        for raw in orphans:
            result.errors.append(
                ValidationError(
                    record_key=raw.key,
                    reason=f"parent lesson was rejected ({failure})",
                    kind="reference",
                )
            )

    return result
