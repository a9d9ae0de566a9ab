"""In-memory models the grading and progress engine operates on.

These are plain pydantic models, independent of the database tables in
`models`. Repositories convert between the two; the engine only ever sees
the types defined here.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Option(BaseModel):
    """One selectable answer of a `Question`."""
    id: str = Field(default_factory=new_id)
    text: str
    is_correct: bool = False


class Question(BaseModel):
    """A single- or multi-select question.

    `points` may be zero; a question whose options are all incorrect is
    accepted here and simply never earns its points when graded.
    """
    id: str = Field(default_factory=new_id)
    text: str
    options: List[Option]
    points: float = Field(default=1, ge=0)
    explanation: Optional[str] = None

    def correct_option_ids(self) -> FrozenSet[str]:
        return frozenset(o.id for o in self.options if o.is_correct)


class QuizDefinition(BaseModel):
    """Answer key and rules of a quiz."""
    id: Optional[int] = None
    course_id: Optional[int] = None
    title: str = ""
    questions: List[Question] = Field(default_factory=list)
    passing_score_percent: int = Field(default=70, ge=0, le=100)
    max_attempts: int = Field(default=0, ge=0)
    time_limit_minutes: int = Field(default=0, ge=0)
    is_active: bool = True

    @property
    def total_points(self) -> float:
        return sum(q.points for q in self.questions)


class SubmittedAnswer(BaseModel):
    """Options picked for one question; order and duplicates are ignored."""
    selected_option_ids: FrozenSet[str] = frozenset()

    @field_validator("selected_option_ids", mode="before")
    @classmethod
    def _wrap_single_id(cls, value):
        if value is None:
            return frozenset()
        if isinstance(value, str):
            return frozenset([value])
        return value


class ScoreResult(BaseModel):
    """Outcome of grading one submission."""
    model_config = ConfigDict(frozen=True)

    correct_answers: int
    total_questions: int
    earned_points: float
    total_points: float
    percentage: int
    passed: bool


class QuestionReview(BaseModel):
    """Per-question feedback shown after a submission."""
    question_id: str
    question: str
    user_answers: List[str]
    correct_answers: List[str]
    is_correct: bool
    explanation: Optional[str] = None


class QuizAttempt(BaseModel):
    """One graded submission. Never modified after creation."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    quiz_id: int
    answers: Dict[str, List[str]] = Field(default_factory=dict)
    score: ScoreResult
    started_at: datetime
    completed_at: datetime
    time_spent_minutes: float = 0


class LessonProgressEntry(BaseModel):
    """Completion state of one lesson for one learner."""
    lesson_id: int
    completed: bool = False
    completed_at: Optional[datetime] = None
    time_spent_minutes: float = 0
    watched_percentage: float = 0


class ProgressRecord(BaseModel):
    """A learner's state in one course, unique per (user_id, course_id)."""
    user_id: int
    course_id: int
    enrolled_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    lessons_progress: List[LessonProgressEntry] = Field(default_factory=list)
    quiz_attempts: List[QuizAttempt] = Field(default_factory=list)
    overall_progress_percent: int = 0
    certificate_issued: bool = False
    certificate_issued_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def completed_lessons_count(self) -> int:
        return sum(1 for lp in self.lessons_progress if lp.completed)

    @property
    def passed_quizzes_count(self) -> int:
        return len({a.quiz_id for a in self.quiz_attempts if a.score.passed})

    @property
    def total_time_spent_minutes(self) -> float:
        return sum(lp.time_spent_minutes for lp in self.lessons_progress)
