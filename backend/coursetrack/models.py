"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Quiz questions and the per-learner progress document are stored as JSON
columns; the engine works on their `domain` counterparts.
"""

from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, UniqueConstraint
from datetime import datetime, timezone
from typing import List


def _now():
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: `student` or `admin`
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: str = Field(default="student")
    created_at: datetime = Field(default_factory=_now)


class Course(SQLModel, table=True):
    """A course in the catalog."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    level: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class Lesson(SQLModel, table=True):
    """A lesson belonging to a course."""
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    title: str
    content: Optional[str] = None
    duration_minutes: int = 0
    order: int = 1


class Quiz(SQLModel, table=True):
    """A quiz with its answer key.

    `questions` holds a list of question documents, each with its options
    and their `is_correct` flags.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    title: str
    description: Optional[str] = None
    questions: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    passing_score: int = 70
    max_attempts: int = 0
    time_limit_minutes: int = 0
    is_active: bool = True
    order: int = 1
    created_at: datetime = Field(default_factory=_now)


class Enrollment(SQLModel, table=True):
    """Membership of a user in a course."""
    __table_args__ = (UniqueConstraint('user_id', 'course_id', name='uq_enrollment_user_course'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    enrolled_at: datetime = Field(default_factory=_now)


class Progress(SQLModel, table=True):
    """Stored progress document for one (user, course) pair.

    `version` is bumped on every write and checked on replace so two
    writers cannot silently overwrite each other.
    """
    __table_args__ = (UniqueConstraint('user_id', 'course_id', name='uq_progress_user_course'),)
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    version: int = 1
    document: dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=_now)
