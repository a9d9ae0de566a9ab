"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and the grading/progress engine. Services are intentionally thin: they
perform the caller-side checks (enrollment, quiz availability, attempt
limits), load the inputs the engine needs, run it, and persist the
result via repositories.
"""

from datetime import datetime, timedelta, timezone
import logging
from passlib.context import CryptContext
from pydantic import ValidationError
import jwt
from typing import Callable, List, Optional
from sqlmodel import Session
from . import grading, models, progress, reports, repositories, schemas
from .config import settings
from .domain import ProgressRecord, Question, utcnow
from .errors import (
    AttemptLimitError,
    ConcurrentUpdateError,
    InvalidInputError,
    NotEnrolledError,
    NotFoundError,
    QuizInactiveError,
)

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
logger = logging.getLogger("coursetrack.services")


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str) -> models.User:
        """Create a new user with a hashed password.

        Usernames listed in `ADMIN_USERNAMES` get the `admin` role.
        Returns the persisted `User` instance.
        """
        hashed = PWD_CTX.hash(password)
        role = "admin" if username in settings.ADMIN_USERNAMES else "student"
        u = models.User(username=username, password_hash=hashed, role=role)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "role": user.role, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _validate_question(q: dict, idx: int) -> Question:
    options = q.get('options') or []
    if not 2 <= len(options) <= 6:
        raise InvalidInputError(f'question {idx}: expected 2-6 options')
    if not any(o.get('is_correct') for o in options):
        raise InvalidInputError(f'question {idx}: each question must have at least one correct answer')
    try:
        return Question.model_validate(q)
    except ValueError as e:
        raise InvalidInputError(f'question {idx}: {e}')


class CatalogService:
    """Courses, lessons and quizzes, including deletion cascades."""
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.course_repo = repositories.CourseRepository(session)
        self.lesson_repo = repositories.LessonRepository(session)
        self.quiz_repo = repositories.QuizRepository(session)
        self.enrollment_repo = repositories.EnrollmentRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)
        self.clock = clock

    def require_course(self, course_id: int) -> models.Course:
        course = self.course_repo.get(course_id)
        if not course:
            raise NotFoundError(f'course not found: {course_id}')
        return course

    def require_lesson(self, lesson_id: int) -> models.Lesson:
        lesson = self.lesson_repo.get(lesson_id)
        if not lesson:
            raise NotFoundError(f'lesson not found: {lesson_id}')
        return lesson

    def require_quiz(self, quiz_id: int) -> models.Quiz:
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFoundError(f'quiz not found: {quiz_id}')
        return quiz

    def create_course(self, title: str, description: Optional[str] = None, category: Optional[str] = None,
                      level: Optional[str] = None) -> models.Course:
        return self.course_repo.create(models.Course(title=title, description=description,
                                                     category=category, level=level))

    def create_lesson(self, course_id: int, title: str, content: Optional[str] = None,
                      duration_minutes: int = 0, order: int = 1) -> models.Lesson:
        self.require_course(course_id)
        lesson = models.Lesson(course_id=course_id, title=title, content=content,
                               duration_minutes=duration_minutes, order=order)
        return self.lesson_repo.create(lesson)

    def create_quiz(self, course_id: int, title: str, questions: List[dict], description: Optional[str] = None,
                    passing_score: int = 70, max_attempts: int = 0, time_limit_minutes: int = 0,
                    is_active: bool = True, order: int = 1) -> models.Quiz:
        """Validate and store a quiz.

        Every question needs 2-6 options with at least one marked correct.
        Question and option ids are generated when not supplied.
        """
        self.require_course(course_id)
        if not questions:
            raise InvalidInputError('quiz must have at least one question')
        parsed = [_validate_question(q, i) for i, q in enumerate(questions)]
        quiz = models.Quiz(
            course_id=course_id,
            title=title,
            description=description,
            questions=[q.model_dump() for q in parsed],
            passing_score=passing_score,
            max_attempts=max_attempts,
            time_limit_minutes=time_limit_minutes,
            is_active=is_active,
            order=order,
        )
        return self.quiz_repo.create(quiz)

    def import_course(self, data: dict) -> dict:
        """Create a course with its lessons and quizzes from one document.

        Expected shape: `{title, description?, category?, level?, lessons: [...],
        quizzes: [...]}` where lessons and quizzes use the API request fields.
        The whole document is validated before anything is stored; unknown
        keys are ignored.
        """
        if not isinstance(data, dict):
            raise InvalidInputError('course document must be an object')
        try:
            course_in = schemas.CourseIn.model_validate(data)
            lessons_in = [schemas.LessonIn.model_validate(l) for l in data.get('lessons') or []]
            quizzes_in = [schemas.QuizIn.model_validate(q) for q in data.get('quizzes') or []]
        except ValidationError as e:
            raise InvalidInputError(f'invalid course document: {e}')
        for quiz_in in quizzes_in:
            for idx, q in enumerate(quiz_in.questions):
                _validate_question(q.model_dump(), idx)

        course = self.create_course(**course_in.model_dump())
        for lesson_in in lessons_in:
            self.create_lesson(course.id, **lesson_in.model_dump())
        for quiz_in in quizzes_in:
            self.create_quiz(course.id, **quiz_in.model_dump())
        logger.info("course imported course_id=%s lessons=%s quizzes=%s", course.id, len(lessons_in), len(quizzes_in))
        return {'course_id': course.id, 'lessons': len(lessons_in), 'quizzes': len(quizzes_in)}

    def list_courses(self) -> List[dict]:
        out = []
        for c in self.course_repo.list_all():
            out.append({
                'id': c.id,
                'title': c.title,
                'description': c.description,
                'category': c.category,
                'level': c.level,
                'lesson_count': self.lesson_repo.count_for_course(c.id),
                'quiz_count': self.quiz_repo.count_for_course(c.id),
            })
        return out

    def course_detail(self, course_id: int) -> dict:
        """Course with its lessons and quizzes; answer keys are not included."""
        c = self.require_course(course_id)
        return {
            'id': c.id,
            'title': c.title,
            'description': c.description,
            'category': c.category,
            'level': c.level,
            'lessons': [
                {'id': l.id, 'title': l.title, 'duration_minutes': l.duration_minutes, 'order': l.order}
                for l in self.lesson_repo.list_for_course(course_id)
            ],
            'quizzes': [
                {'id': q.id, 'title': q.title, 'question_count': len(q.questions or []),
                 'passing_score': q.passing_score, 'is_active': q.is_active, 'order': q.order}
                for q in self.quiz_repo.list_for_course(course_id)
            ],
        }

    def delete_lesson(self, lesson_id: int) -> int:
        """Delete a lesson and prune it from every learner's progress.

        Returns the number of progress records touched.
        Progress is pruned before the lesson row goes away, so a failed
        prune leaves the lesson in place and the delete can be retried.
        """
        lesson = self.require_lesson(lesson_id)
        progress_svc = ProgressService(self.session, clock=self.clock)
        touched = progress_svc.apply_to_course(
            lesson.course_id,
            lambda agg, r: agg.remove_lesson_entries(r, lesson_id),
            removed_lessons=1,
        )
        self.lesson_repo.delete(lesson)
        return touched

    def delete_quiz(self, quiz_id: int) -> int:
        """Delete a quiz and every attempt at it. Returns records touched."""
        quiz = self.require_quiz(quiz_id)
        progress_svc = ProgressService(self.session, clock=self.clock)
        touched = progress_svc.apply_to_course(
            quiz.course_id,
            lambda agg, r: agg.remove_quiz_attempts(r, quiz_id),
            removed_quizzes=1,
        )
        self.quiz_repo.delete(quiz)
        return touched

    def delete_course(self, course_id: int) -> None:
        course = self.require_course(course_id)
        for row in self.progress_repo.list_for_course(course_id):
            self.progress_repo.delete(row)
        for e in self.enrollment_repo.list_for_course(course_id):
            self.enrollment_repo.delete(e)
        for q in self.quiz_repo.list_for_course(course_id):
            self.quiz_repo.delete(q)
        for l in self.lesson_repo.list_for_course(course_id):
            self.lesson_repo.delete(l)
        self.course_repo.delete(course)
        logger.info("course deleted course_id=%s", course_id)


class ProgressService:
    """Load -> engine -> save orchestration for learner progress.

    Writes go through `_mutate`, which reloads and reapplies the operation
    when another writer got there first.
    """
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.catalog = CatalogService(session, clock=clock)
        self.enrollment_repo = repositories.EnrollmentRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)

    def aggregator(self, course_id: int, removed_lessons: int = 0, removed_quizzes: int = 0) -> progress.ProgressAggregator:
        """Aggregator for the course as it will be once the given items are deleted."""
        return progress.ProgressAggregator(
            total_lessons=self.catalog.lesson_repo.count_for_course(course_id) - removed_lessons,
            total_quizzes=self.catalog.quiz_repo.count_for_course(course_id) - removed_quizzes,
            clock=self.clock,
        )

    def _require_enrollment(self, user_id: int, course_id: int) -> models.Enrollment:
        enrollment = self.enrollment_repo.get(user_id, course_id)
        if not enrollment:
            raise NotEnrolledError('you must be enrolled in this course')
        return enrollment

    def _load(self, user_id: int, course_id: int, create: bool):
        row = self.progress_repo.find(user_id, course_id)
        if row is None:
            if not create:
                raise NotFoundError('no progress found for this course')
            self._require_enrollment(user_id, course_id)
            record = ProgressRecord(user_id=user_id, course_id=course_id, enrolled_at=self.clock())
            row = self.progress_repo.insert(record)
        return row

    def _mutate(self, user_id: int, course_id: int, operation, create: bool = True, agg=None):
        """Apply `operation(aggregator, record) -> (record', extra)` and save it."""
        for attempt in range(settings.PROGRESS_WRITE_RETRIES):
            row = self._load(user_id, course_id, create)
            record = self.progress_repo.to_record(row)
            updated, extra = operation(agg or self.aggregator(course_id), record)
            try:
                self.progress_repo.replace(row.id, row.version, updated)
            except ConcurrentUpdateError:
                logger.warning("progress write conflict user_id=%s course_id=%s attempt=%s",
                               user_id, course_id, attempt + 1)
                self.session.expire_all()
                continue
            return updated, extra
        raise ConcurrentUpdateError('progress was modified concurrently; please retry')

    def apply_to_course(self, course_id: int, operation, removed_lessons: int = 0, removed_quizzes: int = 0) -> int:
        """Run `operation(aggregator, record) -> record'` on every record of a course."""
        agg = self.aggregator(course_id, removed_lessons, removed_quizzes)
        user_ids = [row.user_id for row in self.progress_repo.list_for_course(course_id)]
        for user_id in user_ids:
            self._mutate(user_id, course_id, lambda a, r: (operation(a, r), None), create=False, agg=agg)
        return len(user_ids)

    def get_record(self, user_id: int, course_id: int) -> ProgressRecord:
        return self.progress_repo.to_record(self._load(user_id, course_id, create=False))

    def enroll(self, user_id: int, course_id: int) -> ProgressRecord:
        """Enroll a user and create an empty progress record (idempotent)."""
        self.catalog.require_course(course_id)
        if not self.enrollment_repo.get(user_id, course_id):
            self.enrollment_repo.create(models.Enrollment(user_id=user_id, course_id=course_id, enrolled_at=self.clock()))
            logger.info("enrolled user_id=%s course_id=%s", user_id, course_id)
        return self.progress_repo.to_record(self._load(user_id, course_id, create=True))

    def unenroll(self, user_id: int, course_id: int) -> None:
        enrollment = self._require_enrollment(user_id, course_id)
        row = self.progress_repo.find(user_id, course_id)
        if row is not None:
            self.progress_repo.delete(row)
        self.enrollment_repo.delete(enrollment)
        logger.info("unenrolled user_id=%s course_id=%s", user_id, course_id)

    def complete_lesson(self, user_id: int, lesson_id: int, time_spent: float = 0,
                        watched_percentage: float = 100) -> ProgressRecord:
        lesson = self.catalog.require_lesson(lesson_id)
        self._require_enrollment(user_id, lesson.course_id)
        updated, _ = self._mutate(user_id, lesson.course_id, lambda agg, r: (
            agg.record_lesson_completion(r, lesson_id, time_spent, watched_percentage), None))
        return updated

    def update_lesson_progress(self, user_id: int, lesson_id: int, time_spent: float = 0,
                               watched_percentage: float = 0) -> ProgressRecord:
        lesson = self.catalog.require_lesson(lesson_id)
        self._require_enrollment(user_id, lesson.course_id)
        updated, _ = self._mutate(user_id, lesson.course_id, lambda agg, r: (
            agg.record_lesson_watch_progress(r, lesson_id, time_spent, watched_percentage), None))
        return updated

    def quiz_for_taking(self, user_id: int, quiz_id: int) -> dict:
        """Quiz questions without the answer key, plus the learner's attempt state."""
        quiz = self.catalog.require_quiz(quiz_id)
        definition = repositories.QuizRepository.to_definition(quiz)
        row = self.progress_repo.find(user_id, quiz.course_id)
        count = 0
        best = None
        if row is not None:
            record = self.progress_repo.to_record(row)
            count = progress.attempt_count(record, quiz_id)
            best = progress.best_score_for_quiz(record, quiz_id)
        return {
            'id': quiz.id,
            'course_id': quiz.course_id,
            'title': quiz.title,
            'description': quiz.description,
            'time_limit_minutes': quiz.time_limit_minutes,
            'passing_score': quiz.passing_score,
            'max_attempts': quiz.max_attempts,
            'is_active': quiz.is_active,
            'total_points': definition.total_points,
            'questions': [
                {
                    'id': q.id,
                    'text': q.text,
                    'points': q.points,
                    'options': [{'id': o.id, 'text': o.text} for o in q.options],
                }
                for q in definition.questions
            ],
            'attempt_count': count,
            'can_attempt': grading.attempts_allowed(definition, count),
            'best_score': best.model_dump() if best else None,
        }

    def submit_quiz(self, user: models.User, quiz_id: int, answers: list, time_spent: float = 0) -> dict:
        """Grade a submission and record it as a new attempt."""
        quiz = self.catalog.require_quiz(quiz_id)
        definition = repositories.QuizRepository.to_definition(quiz)
        if not definition.is_active:
            raise QuizInactiveError('quiz is not active')
        self._require_enrollment(user.id, quiz.course_id)

        def _submit(agg, record):
            previous = progress.attempt_count(record, quiz_id)
            if not grading.attempts_allowed(definition, previous):
                raise AttemptLimitError('maximum attempts reached for this quiz')
            updated, result = agg.record_quiz_attempt(record, definition, quiz_id, answers, time_spent)
            return updated, (previous + 1, result)

        updated, (attempt_number, result) = self._mutate(user.id, quiz.course_id, _submit)
        detailed = None
        if user.role == 'admin' or result.passed:
            submitted = grading.normalize_answers(answers)
            detailed = [item.model_dump() for item in grading.review(definition, submitted)]
        return {
            'message': 'Quiz completed successfully!' if result.passed else 'Quiz completed. Better luck next time!',
            'score': result.model_dump(),
            'attempt_number': attempt_number,
            'max_attempts': definition.max_attempts,
            'remaining_attempts': definition.max_attempts - attempt_number if definition.max_attempts > 0 else None,
            'detailed_results': detailed,
            'overall_progress': updated.overall_progress_percent,
        }

    def issue_certificate(self, user_id: int, course_id: int) -> ProgressRecord:
        self.catalog.require_course(course_id)
        updated, _ = self._mutate(user_id, course_id, lambda agg, r: (agg.issue_certificate(r), None), create=False)
        return updated

    def course_summary(self, user_id: int, course_id: int) -> dict:
        course = self.catalog.require_course(course_id)
        record = self.get_record(user_id, course_id)
        agg = self.aggregator(course_id)
        summary = reports.course_summary(record, agg.total_lessons, agg.total_quizzes)
        summary['course'] = {'id': course.id, 'title': course.title}
        return summary

    def overview(self, user_id: int) -> dict:
        return reports.learner_overview(self._records_for_user(user_id))

    def certificates(self, user_id: int) -> List[dict]:
        return reports.certificates(self._records_for_user(user_id))

    def quiz_results(self, user_id: int, quiz_id: int) -> dict:
        quiz = self.catalog.require_quiz(quiz_id)
        self._require_enrollment(user_id, quiz.course_id)
        record = self.get_record(user_id, quiz.course_id)
        out = reports.quiz_results(record, quiz_id)
        out['quiz'] = {'id': quiz.id, 'title': quiz.title, 'passing_score': quiz.passing_score}
        return out

    def quiz_stats(self, quiz_id: int) -> dict:
        quiz = self.catalog.require_quiz(quiz_id)
        records = [self.progress_repo.to_record(r) for r in self.progress_repo.list_for_course(quiz.course_id)]
        return reports.quiz_statistics(records, quiz_id)

    def course_report(self, course_id: int) -> dict:
        """Per-learner progress, lesson completion and quiz performance for a course."""
        course = self.catalog.require_course(course_id)
        records = [self.progress_repo.to_record(r) for r in self.progress_repo.list_for_course(course_id)]
        users = repositories.UserRepository(self.session)
        usernames = {}
        for r in records:
            user = users.get(r.user_id)
            usernames[r.user_id] = user.username if user else None
        lessons = [{'id': l.id, 'title': l.title, 'order': l.order}
                   for l in self.catalog.lesson_repo.list_for_course(course_id)]
        quizzes = [{'id': q.id, 'title': q.title, 'order': q.order}
                   for q in self.catalog.quiz_repo.list_for_course(course_id)]
        out = reports.course_report(records, lessons, quizzes, usernames)
        out['course'] = {'id': course.id, 'title': course.title}
        return out

    def learner_stats(self, user_id: int, timeframe: str = 'all') -> dict:
        records = self._records_for_user(user_id)
        courses = {}
        for r in records:
            course = self.catalog.course_repo.get(r.course_id)
            if course:
                courses[course.id] = {'title': course.title, 'category': course.category, 'level': course.level}
        return reports.learner_statistics(records, courses, timeframe, now=self.clock())

    def _records_for_user(self, user_id: int) -> List[ProgressRecord]:
        return [self.progress_repo.to_record(r) for r in self.progress_repo.list_for_user(user_id)]
