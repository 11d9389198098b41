"""SQLModel data models.

This module defines the document tables using SQLModel. Nested
structures (option lists, telemetry, optional analytics buckets) are
stored as JSON columns so each row behaves like a single document with
atomic writes.

Stored aggregates on `AttemptedTest` (per-answer `is_correct`, the
`total_*` counters and `score`) are a write-time snapshot kept for list
views such as performance trends. Any view that claims to show current
correctness recomputes them from the question catalog instead; see
`analytics.AnalyticsService`.
"""

from typing import Any, List, Optional
from sqlalchemy import Column, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: `student`, `admin` or `superadmin`
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: str = Field(default="student")
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_privileged(self) -> bool:
        return self.role in ("admin", "superadmin")


class Question(SQLModel, table=True):
    """One assessable item in the catalog.

    `correct_options` is the source of truth for choice questions. Older
    rows may hold a bare scalar here, so readers go through
    `utils.scoring.normalize_correct_options` rather than using it directly.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    author_id: Optional[int] = Field(default=None, foreign_key="user.id")
    text: str = ""
    image_url: Optional[str] = None
    question_type: str = Field(default="single")
    options: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    correct_options: Any = Field(default_factory=list, sa_column=Column(JSON))
    numerical_answer: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    explanation: Optional[str] = None
    solution: Optional[str] = None
    subject: str = Field(index=True)
    chapter: Optional[str] = None
    section: Optional[str] = None
    topic: Optional[str] = None
    class_name: Optional[str] = None
    exam_type: Optional[str] = None
    difficulty: str = Field(default="medium")
    marks: float = 1
    negative_marks: float = 0
    revision_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Test(SQLModel, table=True):
    """An ordered, graded assembly of questions.

    `question_count` and `total_marks` are derived from `questions` by
    `services.TestService` before every write that touches the list.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    description: str = ""
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    test_category: str = Field(index=True)
    status: str = Field(default="draft", index=True)
    instructions: str = ""
    solutions_visibility: str = Field(default="after_submission")
    attempts_allowed: Optional[int] = None
    questions: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    question_count: int = 0
    total_marks: float = 0
    duration: int
    marking_scheme: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    subject: str
    exam_type: str
    class_name: str
    difficulty: str = Field(default="medium")
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    last_modified_by: Optional[int] = Field(default=None, foreign_key="user.id")
    revision_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    # PYQ
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None
    session: Optional[str] = None
    # Platform
    platform_test_type: Optional[str] = None
    is_premium: bool = False
    syllabus: Optional[str] = None
    # UserCustom
    is_public: bool = False
    generation_criteria: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class AttemptedTest(SQLModel, table=True):
    """One user's attempt at one test.

    The optional analytics buckets (`time_analytics`, `error_analytics`,
    ...) are `None` when absent. Readers must treat `None` as "no data"
    and substitute the documented empty shape.
    """
    __table_args__ = (
        UniqueConstraint("user_id", "test_id", "attempt_number", name="uq_attempt_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    test_id: int = Field(index=True)
    attempt_number: int = 1
    language: str = "English"
    start_time: datetime
    end_time: datetime
    total_time_taken: float = 0
    attempt_metadata: dict = Field(default_factory=dict, sa_column=Column(JSON))
    answers: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    question_states: dict = Field(default_factory=dict, sa_column=Column(JSON))
    navigation_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    environment: dict = Field(default_factory=dict, sa_column=Column(JSON))
    interaction_metrics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    question_analytics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    subject_analytics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    time_analytics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    error_analytics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    behavioral_analytics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    difficulty_metrics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    strategy_metrics: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    total_correct_answers: int = 0
    total_wrong_answers: int = 0
    total_unattempted: int = 0
    total_visited_questions: int = 0
    score: float = 0
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    updated_at: datetime = Field(default_factory=_utcnow)
