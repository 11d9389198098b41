"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable. The attempt submission schema is
deliberately loose (`Any` for the telemetry blocks): malformed optional
telemetry is normalized by the service instead of rejecting the whole
submission, and the required fields are validated there so the error
names the offending field.
"""

from pydantic import BaseModel, Field
from typing import Any, List, Optional


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str
    password: str


class OptionIn(BaseModel):
    """One answer option of a choice question."""
    text: str = ""
    image_url: str = ""


class RangeIn(BaseModel):
    min: float
    max: float


class NumericalAnswerIn(BaseModel):
    """Accepted answer for a numerical question."""
    exact_value: float
    range: RangeIn
    unit: Optional[str] = None


class QuestionIn(BaseModel):
    """Request format for adding a question to the catalog."""
    text: str = ""
    image_url: Optional[str] = None
    question_type: str = "single"
    options: List[OptionIn] = Field(default_factory=list)
    correct_options: List[int] = Field(default_factory=list)
    numerical_answer: Optional[NumericalAnswerIn] = None
    explanation: Optional[str] = None
    solution: Optional[str] = None
    subject: str
    chapter: Optional[str] = None
    section: Optional[str] = None
    topic: Optional[str] = None
    class_name: Optional[str] = None
    exam_type: Optional[str] = None
    difficulty: str = "medium"
    marks: float = 1
    negative_marks: float = 0


class QuestionUpdate(BaseModel):
    """Partial update of a catalog question; unset fields are left alone."""
    text: Optional[str] = None
    image_url: Optional[str] = None
    question_type: Optional[str] = None
    options: Optional[List[OptionIn]] = None
    correct_options: Optional[List[int]] = None
    numerical_answer: Optional[NumericalAnswerIn] = None
    explanation: Optional[str] = None
    solution: Optional[str] = None
    subject: Optional[str] = None
    chapter: Optional[str] = None
    section: Optional[str] = None
    topic: Optional[str] = None
    class_name: Optional[str] = None
    exam_type: Optional[str] = None
    difficulty: Optional[str] = None
    marks: Optional[float] = None
    negative_marks: Optional[float] = None
    changes: Optional[str] = None


class MarkingSchemeIn(BaseModel):
    """Points for correct/incorrect/unattempted; missing entries use defaults."""
    correct: Optional[float] = None
    incorrect: Optional[float] = None
    unattempted: Optional[float] = None


class TestIn(BaseModel):
    """Request format for creating a test definition.

    `question_count` and `total_marks` are not accepted; they are derived
    from `questions`.
    """
    title: str
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    test_category: str
    status: str = "draft"
    instructions: str = ""
    solutions_visibility: str = "after_submission"
    attempts_allowed: Optional[int] = None
    questions: List[int]
    duration: int
    marking_scheme: Optional[MarkingSchemeIn] = None
    subject: str
    exam_type: str
    class_name: str
    difficulty: str = "medium"
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None
    session: Optional[str] = None
    platform_test_type: Optional[str] = None
    is_premium: Optional[bool] = None
    syllabus: Optional[str] = None
    is_public: Optional[bool] = None
    generation_criteria: Optional[dict] = None


class TestUpdate(BaseModel):
    """Partial update of a test definition.

    Category, creator, revision history and the derived totals are not
    part of this schema, so clients cannot set them.
    """
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[str] = None
    instructions: Optional[str] = None
    solutions_visibility: Optional[str] = None
    attempts_allowed: Optional[int] = None
    questions: Optional[List[int]] = None
    duration: Optional[int] = None
    marking_scheme: Optional[MarkingSchemeIn] = None
    subject: Optional[str] = None
    exam_type: Optional[str] = None
    class_name: Optional[str] = None
    difficulty: Optional[str] = None
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None
    session: Optional[str] = None
    platform_test_type: Optional[str] = None
    is_premium: Optional[bool] = None
    syllabus: Optional[str] = None
    is_public: Optional[bool] = None
    generation_criteria: Optional[dict] = None
    changes_description: Optional[str] = None


class AttemptSubmission(BaseModel):
    """Raw attempt submission as sent by the exam client."""
    test_id: Any = None
    answers: Any = None
    metadata: Any = None
    question_states: Any = None
    navigation_history: Any = None
    environment: Any = None
    interaction_metrics: Any = None
    start_time: Any = None
    end_time: Any = None
    total_time_taken: Any = None
    language: Optional[str] = None
