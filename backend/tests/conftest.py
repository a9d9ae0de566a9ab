import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Point the app at a throwaway database before anything imports it.
_TMP = Path(tempfile.mkdtemp(prefix="coursetrack-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ.setdefault("ADMIN_USERNAMES", "admin")

from coursetrack.domain import Option, ProgressRecord, Question, QuizDefinition  # noqa: E402


class FakeClock:
    """Deterministic clock; each call returns the current time, `advance` moves it."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, minutes=1):
        self.now = self.now + timedelta(minutes=minutes)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def make_quiz(passing=70, max_attempts=0, quiz_id=1):
    """Two one-point questions: q1 single answer (a), q2 multi-select (c, d)."""
    return QuizDefinition(
        id=quiz_id,
        course_id=1,
        title="Basics",
        passing_score_percent=passing,
        max_attempts=max_attempts,
        questions=[
            Question(id="q1", text="Pick a", options=[
                Option(id="a", text="A", is_correct=True),
                Option(id="b", text="B"),
            ], explanation="A is right"),
            Question(id="q2", text="Pick c and d", options=[
                Option(id="c", text="C", is_correct=True),
                Option(id="d", text="D", is_correct=True),
                Option(id="e", text="E"),
            ]),
        ],
    )


@pytest.fixture
def quiz():
    return make_quiz()


@pytest.fixture
def record():
    return ProgressRecord(user_id=1, course_id=1, enrolled_at=datetime(2025, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def quiz_factory():
    return make_quiz
