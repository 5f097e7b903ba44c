from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from database import Base


class CategoryRow(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(100), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    icon = Column(String(100))
    order_index = Column(Integer, nullable=False, default=0)


class TopicRow(Base):
    __tablename__ = "topics"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(200), unique=True, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    estimated_time = Column(Integer)  # minutes
    order_index = Column(Integer, nullable=False, default=0)
    difficulty_level = Column(String(20))
    icon = Column(String(100))


class LessonRow(Base):
    __tablename__ = "lessons"
    __table_args__ = (
        UniqueConstraint("topic_id", "slug"),
        CheckConstraint(
            "difficulty_level IN ('beginner', 'intermediate', 'advanced', 'expert')",
            name="ck_lessons_difficulty_level",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    topic_id = Column(Integer, ForeignKey("topics.id", ondelete="CASCADE"), nullable=False, index=True)
    slug = Column(String(300), nullable=False)
    title = Column(String(300), nullable=False)
    summary = Column(Text)
    content = Column(Text, nullable=False)  # Markdown, stored verbatim
    content_hash = Column(String(64), nullable=False)
    difficulty_level = Column(String(20), nullable=False)
    estimated_time = Column(Integer)  # minutes
    order_index = Column(Integer, nullable=False, default=0)
    key_points = Column(JSON, nullable=False)  # ordered list of strings
    updated_at = Column(DateTime, server_default=func.now())


class CodeExampleRow(Base):
    __tablename__ = "code_examples"
    __table_args__ = (UniqueConstraint("lesson_id", "order_index"),)

    id = Column(Integer, primary_key=True, index=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    language = Column(String(50), nullable=False)
    code = Column(Text, nullable=False)
    explanation = Column(Text)
    order_index = Column(Integer, nullable=False)
    is_interactive = Column(Boolean, nullable=False, default=False)


class QuizQuestionRow(Base):
    __tablename__ = "quiz_questions"
    __table_args__ = (
        UniqueConstraint("lesson_id", "order_index"),
        CheckConstraint("question_type IN ('multiple_choice')", name="ck_quiz_questions_type"),
        CheckConstraint("difficulty IN ('easy', 'medium', 'hard')", name="ck_quiz_questions_difficulty"),
    )

    id = Column(Integer, primary_key=True, index=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True)
    question_text = Column(Text, nullable=False)
    question_type = Column(String(20), nullable=False)
    options = Column(JSON, nullable=False)  # ordered list of strings
    correct_answer = Column(Text, nullable=False)
    explanation = Column(Text)
    difficulty = Column(String(20), nullable=False)
    points = Column(Integer, nullable=False, default=10)
    order_index = Column(Integer, nullable=False)


categories = CategoryRow.__table__
topics = TopicRow.__table__
lessons = LessonRow.__table__
code_examples = CodeExampleRow.__table__
quiz_questions = QuizQuestionRow.__table__

TABLES = {
    "categories": categories,
    "topics": topics,
    "lessons": lessons,
    "code_examples": code_examples,
    "quiz_questions": quiz_questions,
}
