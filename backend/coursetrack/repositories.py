"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
courses, lessons, quizzes, enrollments, progress). Repositories return
SQLModel objects and perform commits/refreshes where appropriate;
`QuizRepository` and `ProgressRepository` also convert rows to and from
the engine's `domain` models.
"""

from datetime import datetime, timezone
from typing import List, Optional
from sqlmodel import Session, select
from sqlalchemy import func, update
from . import models
from .domain import ProgressRecord, Question, QuizDefinition
from .errors import ConcurrentUpdateError


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class CourseRepository:
    """CRUD operations for `Course` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, course: models.Course) -> models.Course:
        self.session.add(course)
        self.session.commit()
        self.session.refresh(course)
        return course

    def get(self, course_id: int) -> Optional[models.Course]:
        return self.session.get(models.Course, course_id)

    def list_all(self) -> List[models.Course]:
        return self.session.exec(select(models.Course).order_by(models.Course.id)).all()

    def delete(self, course: models.Course) -> None:
        self.session.delete(course)
        self.session.commit()


class LessonRepository:
    """CRUD operations for `Lesson` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, lesson: models.Lesson) -> models.Lesson:
        self.session.add(lesson)
        self.session.commit()
        self.session.refresh(lesson)
        return lesson

    def get(self, lesson_id: int) -> Optional[models.Lesson]:
        return self.session.get(models.Lesson, lesson_id)

    def list_for_course(self, course_id: int) -> List[models.Lesson]:
        stmt = select(models.Lesson).where(models.Lesson.course_id == course_id).order_by(models.Lesson.order, models.Lesson.id)
        return self.session.exec(stmt).all()

    def count_for_course(self, course_id: int) -> int:
        stmt = select(func.count()).select_from(models.Lesson).where(models.Lesson.course_id == course_id)
        return self.session.exec(stmt).one()

    def delete(self, lesson: models.Lesson) -> None:
        self.session.delete(lesson)
        self.session.commit()


class QuizRepository:
    """CRUD operations for `Quiz` records and conversion to `QuizDefinition`."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, quiz: models.Quiz) -> models.Quiz:
        self.session.add(quiz)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        return self.session.get(models.Quiz, quiz_id)

    def list_for_course(self, course_id: int) -> List[models.Quiz]:
        stmt = select(models.Quiz).where(models.Quiz.course_id == course_id).order_by(models.Quiz.order, models.Quiz.id)
        return self.session.exec(stmt).all()

    def count_for_course(self, course_id: int) -> int:
        stmt = select(func.count()).select_from(models.Quiz).where(models.Quiz.course_id == course_id)
        return self.session.exec(stmt).one()

    def delete(self, quiz: models.Quiz) -> None:
        self.session.delete(quiz)
        self.session.commit()

    @staticmethod
    def to_definition(quiz: models.Quiz) -> QuizDefinition:
        """Build the engine's view of a stored quiz."""
        return QuizDefinition(
            id=quiz.id,
            course_id=quiz.course_id,
            title=quiz.title,
            questions=[Question.model_validate(q) for q in quiz.questions or []],
            passing_score_percent=quiz.passing_score,
            max_attempts=quiz.max_attempts,
            time_limit_minutes=quiz.time_limit_minutes,
            is_active=quiz.is_active,
        )


class EnrollmentRepository:
    """Query helpers for `Enrollment` records."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int, course_id: int) -> Optional[models.Enrollment]:
        stmt = select(models.Enrollment).where(
            models.Enrollment.user_id == user_id,
            models.Enrollment.course_id == course_id
        )
        return self.session.exec(stmt).first()

    def create(self, enrollment: models.Enrollment) -> models.Enrollment:
        self.session.add(enrollment)
        self.session.commit()
        self.session.refresh(enrollment)
        return enrollment

    def list_for_course(self, course_id: int) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(models.Enrollment.course_id == course_id)
        return self.session.exec(stmt).all()

    def delete(self, enrollment: models.Enrollment) -> None:
        self.session.delete(enrollment)
        self.session.commit()


class ProgressRepository:
    """Load and store progress documents keyed by (user_id, course_id).

    `replace` is a compare-and-swap on the row's `version`; a stale write
    raises `ConcurrentUpdateError` instead of overwriting.
    """
    def __init__(self, session: Session):
        self.session = session

    def find(self, user_id: int, course_id: int) -> Optional[models.Progress]:
        """Return the progress row for a learner and course, or `None`."""
        stmt = select(models.Progress).where(
            models.Progress.user_id == user_id,
            models.Progress.course_id == course_id
        )
        return self.session.exec(stmt).first()

    def get(self, progress_id: int) -> Optional[models.Progress]:
        return self.session.get(models.Progress, progress_id)

    def list_for_user(self, user_id: int) -> List[models.Progress]:
        stmt = select(models.Progress).where(models.Progress.user_id == user_id)
        return self.session.exec(stmt).all()

    def list_for_course(self, course_id: int) -> List[models.Progress]:
        stmt = select(models.Progress).where(models.Progress.course_id == course_id)
        return self.session.exec(stmt).all()

    def insert(self, record: ProgressRecord) -> models.Progress:
        row = models.Progress(
            user_id=record.user_id,
            course_id=record.course_id,
            document=record.model_dump(mode="json"),
        )
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    def replace(self, progress_id: int, expected_version: int, record: ProgressRecord) -> int:
        """Overwrite the stored document if nobody wrote since `expected_version`.

        Returns the new version number.
        """
        stmt = (
            update(models.Progress)
            .where(models.Progress.id == progress_id, models.Progress.version == expected_version)
            .values(
                document=record.model_dump(mode="json"),
                version=expected_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        result = self.session.connection().execute(stmt)
        if result.rowcount != 1:
            self.session.rollback()
            raise ConcurrentUpdateError(f"progress {progress_id} changed since version {expected_version}")
        self.session.commit()
        return expected_version + 1

    def delete(self, row: models.Progress) -> None:
        self.session.delete(row)
        self.session.commit()

    @staticmethod
    def to_record(row: models.Progress) -> ProgressRecord:
        return ProgressRecord.model_validate(row.document)
