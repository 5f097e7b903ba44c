import pytest

from services.errors import SourceError
from services.source_loader import SourceLoader, discover


def test_flat_records_are_grouped_by_topic(corpus_root, write_corpus):
    write_corpus(
        "b.json",
        [
            {"kind": "topic", "slug": "intro", "name": "Intro", "category_slug": "basics"},
            {"kind": "lesson", "slug": "hello", "topic_slug": "intro", "content": "# Hi"},
            {"kind": "lesson", "slug": "bye", "topic_slug": "intro", "content": "# Bye"},
        ],
    )
    write_corpus("a.json", {"records": [{"kind": "topic", "slug": "advanced", "name": "Adv", "category_slug": "basics"}]})

    loader, groups = discover(corpus_root)

    # a.json is read before b.json
    assert [g.topic_slug for g in groups] == ["advanced", "intro"]
    bundle = loader.load(groups[1])
    assert [r.fields["slug"] for r in bundle.lessons] == ["hello", "bye"]
    assert [r.position for r in bundle.lessons] == [1, 2]
    assert loader.errors == []


def test_grouped_document_inherits_parent_slugs(corpus_root, write_corpus):
    write_corpus(
        "intro/content.yaml",
        {
            "topic": {"slug": "intro", "name": "Intro", "category_slug": "basics"},
            "lessons": [{"slug": "hello", "content": "# Hi"}],
            "examples": {"hello": [{"title": "one", "language": "py", "code": "1"}, {"title": "two", "language": "py", "code": "2"}]},
            "quiz": {"hello": [{"question_text": "q", "options": ["A", "B"], "correct_answer": "A"}]},
        },
    )

    loader, groups = discover(corpus_root)

    assert len(groups) == 1
    bundle = loader.load(groups[0])
    assert bundle.lessons[0].fields["topic_slug"] == "intro"
    examples = bundle.code_examples["hello"]
    assert [e.fields["title"] for e in examples] == ["one", "two"]
    assert [e.position for e in examples] == [1, 2]
    assert bundle.quiz_questions["hello"][0].fields["lesson_slug"] == "hello"
    assert bundle.sources == ["intro/content.yaml"]


def test_records_for_one_topic_merge_across_files(corpus_root, write_corpus):
    write_corpus("intro/1-content.json", {"topic": {"slug": "intro", "category_slug": "basics"}, "lessons": [{"slug": "hello", "content": "x"}]})
    write_corpus("intro/2-examples.json", {"code_examples": {"hello": [{"title": "t", "language": "py", "code": "c"}]}})
    write_corpus("intro/3-quiz.json", {"quiz_questions": {"hello": [{"question_text": "q", "options": ["A", "B"], "correct_answer": "B"}]}})

    loader, groups = discover(corpus_root)

    bundle = loader.load(groups[0])
    assert bundle.record_count == 4
    assert bundle.sources == ["intro/1-content.json", "intro/2-examples.json", "intro/3-quiz.json"]


def test_path_convention_supplies_category_and_level(corpus_root, write_corpus):
    write_corpus(
        "python/intermediate/decorators/content.json",
        {
            "topic": {"slug": "decorators", "name": "Decorators"},
            "lessons": [
                {"slug": "basics", "content": "x"},
                {"slug": "wraps", "content": "y", "difficulty_level": "advanced"},
            ],
        },
    )

    loader, groups = discover(corpus_root)

    bundle = loader.load(groups[0])
    assert bundle.topic.fields["category_slug"] == "python"
    assert bundle.topic.fields["difficulty_level"] == "intermediate"
    assert [r.fields["difficulty_level"] for r in bundle.lessons] == ["intermediate", "advanced"]


def test_duplicate_lesson_keeps_first_seen_and_reports_conflict(corpus_root, write_corpus):
    write_corpus("a.json", [{"kind": "lesson", "slug": "hello", "topic_slug": "intro", "content": "first"}])
    write_corpus("b.json", [{"kind": "lesson", "slug": "hello", "topic_slug": "intro", "content": "second"}])

    loader, groups = discover(corpus_root)

    bundle = loader.load(groups[0])
    assert [r.fields["content"] for r in bundle.lessons] == ["first"]
    assert [(e.kind, e.record_key) for e in loader.errors] == [("conflict", "lesson:hello")]
    assert "a.json" in loader.errors[0].message


def test_duplicate_child_order_index_is_a_conflict(corpus_root, write_corpus):
    write_corpus("a.json", {"topic": {"slug": "intro", "category_slug": "basics"}, "lessons": [{"slug": "hello", "content": "x"}]})
    write_corpus("b.json", [{"kind": "code_example", "lesson_slug": "hello", "order_index": 1, "title": "a", "language": "py", "code": ""}])
    write_corpus("c.json", [{"kind": "code_example", "lesson_slug": "hello", "order_index": 1, "title": "b", "language": "py", "code": ""}])

    loader, groups = discover(corpus_root)

    examples = loader.load(groups[0]).code_examples["hello"]
    assert [e.fields["title"] for e in examples] == ["a"]
    assert [e.kind for e in loader.errors] == ["conflict"]


def test_child_for_unknown_lesson_is_a_reference_error(corpus_root, write_corpus):
    write_corpus("a.json", [{"kind": "quiz_question", "lesson_slug": "ghost", "question_text": "q", "options": ["A", "B"], "correct_answer": "A"}])

    loader, groups = discover(corpus_root)

    assert groups == []
    assert [(e.kind, e.record_key) for e in loader.errors] == [("reference", "quiz_question:ghost/1")]


def test_ambiguous_lesson_slug_needs_topic_slug(corpus_root, write_corpus):
    write_corpus(
        "a.json",
        [
            {"kind": "lesson", "slug": "overview", "topic_slug": "one", "content": "x"},
            {"kind": "lesson", "slug": "overview", "topic_slug": "two", "content": "y"},
            {"kind": "code_example", "lesson_slug": "overview", "title": "t", "language": "py", "code": ""},
            {"kind": "code_example", "lesson_slug": "overview", "topic_slug": "two", "title": "t", "language": "py", "code": ""},
        ],
    )

    loader, groups = discover(corpus_root)

    by_topic = {g.topic_slug: loader.load(g) for g in groups}
    assert by_topic["one"].code_examples == {}
    assert len(by_topic["two"].code_examples["overview"]) == 1
    assert [e.kind for e in loader.errors] == ["conflict"]


def test_unparseable_and_hidden_files(corpus_root, write_corpus):
    write_corpus("good.json", [{"kind": "category", "slug": "basics", "name": "Basics"}])
    (corpus_root / "broken.json").write_text("{not json", encoding="utf-8")
    (corpus_root / ".hidden.json").write_text("{not json either", encoding="utf-8")
    (corpus_root / "notes.txt").write_text("ignored", encoding="utf-8")

    loader = SourceLoader(corpus_root)
    loader.discover()

    assert [r.fields["slug"] for r in loader.categories] == ["basics"]
    assert [(e.kind, e.record_key) for e in loader.errors] == [("source", "source:broken.json")]


def test_parse_failure_raises_source_error(corpus_root):
    (corpus_root / "broken.yaml").write_text("topics: [unclosed", encoding="utf-8")

    loader = SourceLoader(corpus_root)
    with pytest.raises(SourceError, match="cannot read broken.yaml"):
        loader._parse(corpus_root / "broken.yaml")


def test_unknown_kind_is_a_source_error(corpus_root, write_corpus):
    write_corpus("a.json", [{"kind": "chapter", "slug": "x"}])

    loader, groups = discover(corpus_root)

    assert groups == []
    assert loader.errors[0].kind == "source"


def test_corpus_slugs_for_orphan_detection(corpus_root, write_corpus):
    write_corpus("a.json", [{"kind": "category", "slug": "basics", "name": "B"}])
    write_corpus("b.json", [{"kind": "lesson", "slug": "hello", "topic_slug": "intro", "content": "x"}])

    loader, groups = discover(corpus_root)

    assert loader.corpus_slugs(groups) == {
        "categories": ["basics"],
        "topics": ["intro"],
        "lessons": ["intro/hello"],
    }
