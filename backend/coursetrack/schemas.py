"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from pydantic import BaseModel, Field
from typing import List, Optional, Union


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class CourseIn(BaseModel):
    """Request format for creating a course."""
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = Field(default=None, max_length=100)
    level: Optional[str] = Field(default=None, max_length=50)


class LessonIn(BaseModel):
    """Request format for creating a lesson."""
    title: str = Field(min_length=1, max_length=200)
    content: Optional[str] = None
    duration_minutes: int = Field(default=0, ge=0)
    order: int = 1


class OptionIn(BaseModel):
    """A possible answer of a question in requests."""
    text: str
    is_correct: bool = False


class QuestionIn(BaseModel):
    """A question with its options and point value."""
    text: str = Field(min_length=1, max_length=500)
    options: List[OptionIn] = Field(min_length=2, max_length=6)
    points: float = Field(default=1, ge=0)
    explanation: Optional[str] = Field(default=None, max_length=1000)


class QuizIn(BaseModel):
    """Request format for creating a quiz."""
    title: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    questions: List[QuestionIn] = Field(min_length=1)
    passing_score: int = Field(default=70, ge=0, le=100)
    max_attempts: int = Field(default=0, ge=0)
    time_limit_minutes: int = Field(default=0, ge=0)
    is_active: bool = True
    order: int = 1


class LessonActivityIn(BaseModel):
    """Time spent and how much of the lesson was watched."""
    time_spent: float = Field(default=0, ge=0)
    watched_percentage: Optional[float] = Field(default=None, ge=0, le=100)


class QuizSubmission(BaseModel):
    """Request model for grading.

    `answers[i]` holds the selected option ids for question `i`; a single
    id string is accepted for single-choice questions.
    """
    answers: List[Union[List[str], str, None]]
    time_spent: float = Field(default=0, ge=0)
