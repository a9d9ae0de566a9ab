"""Per-learner course progress.

`ProgressAggregator` applies lesson and quiz events to a `ProgressRecord`
and keeps the derived fields (overall percentage, completion time,
certificate state) consistent. It is bound to the content counts of one
course, which the caller loads; the aggregator itself never looks anything
up.

Every mutator copies the record, applies the change to the copy and
returns it. The record passed in is left untouched, so an operation that
raises leaves no partial update behind.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, Tuple

from . import grading
from .domain import (
    LessonProgressEntry,
    ProgressRecord,
    QuizAttempt,
    QuizDefinition,
    ScoreResult,
    utcnow,
)
from .errors import AlreadyIssuedError, InvalidInputError, NotEligibleError, NotFoundError

logger = logging.getLogger("coursetrack.progress")

AUTO_COMPLETE_PERCENT = 80


def _recompute_in_place(record: ProgressRecord, total_lessons: int, total_quizzes: int, now: datetime) -> None:
    if total_lessons == 0 and total_quizzes == 0:
        # A course without content can never be completed.
        record.overall_progress_percent = 0
        return
    completed_items = 0
    total_items = 0
    if total_lessons > 0:
        completed_items += min(record.completed_lessons_count, total_lessons)
        total_items += total_lessons
    if total_quizzes > 0:
        completed_items += min(record.passed_quizzes_count, total_quizzes)
        total_items += total_quizzes
    record.overall_progress_percent = grading.percent(completed_items, total_items)
    if record.overall_progress_percent == 100 and record.completed_at is None:
        record.completed_at = now
        logger.info("course completed user_id=%s course_id=%s", record.user_id, record.course_id)


def recompute_overall_progress(
    record: ProgressRecord,
    total_lessons: int,
    total_quizzes: int,
    now: Optional[datetime] = None,
) -> ProgressRecord:
    """Return a copy of `record` with `overall_progress_percent` recomputed.

    Completed lessons and distinct passed quizzes (a single pass counts
    for good) are weighed against the course's lesson and quiz counts;
    empty categories are left out. `completed_at` is set the first time
    the result is 100 and is never cleared. Calling this twice in a row
    yields the same record.
    """
    updated = record.model_copy(deep=True)
    _recompute_in_place(updated, total_lessons, total_quizzes, now or utcnow())
    return updated


def lesson_entry(record: ProgressRecord, lesson_id: int) -> Optional[LessonProgressEntry]:
    for entry in record.lessons_progress:
        if entry.lesson_id == lesson_id:
            return entry
    return None


def require_lesson_entry(record: ProgressRecord, lesson_id: int) -> LessonProgressEntry:
    """Like `lesson_entry`, but a missing entry is an error."""
    entry = lesson_entry(record, lesson_id)
    if entry is None:
        raise NotFoundError(f"no progress for lesson {lesson_id}")
    return entry


def attempts_for_quiz(record: ProgressRecord, quiz_id: int):
    return [a for a in record.quiz_attempts if a.quiz_id == quiz_id]


def attempt_count(record: ProgressRecord, quiz_id: int) -> int:
    return len(attempts_for_quiz(record, quiz_id))


def best_attempt_for_quiz(record: ProgressRecord, quiz_id: int) -> Optional[QuizAttempt]:
    """Highest-percentage attempt for `quiz_id`; the earliest one wins ties."""
    best = None
    for attempt in attempts_for_quiz(record, quiz_id):
        if best is None or attempt.score.percentage > best.score.percentage:
            best = attempt
    return best


def best_score_for_quiz(record: ProgressRecord, quiz_id: int) -> Optional[ScoreResult]:
    best = best_attempt_for_quiz(record, quiz_id)
    return best.score if best is not None else None


def latest_quiz_attempt(record: ProgressRecord, quiz_id: int) -> Optional[QuizAttempt]:
    attempts = attempts_for_quiz(record, quiz_id)
    return attempts[-1] if attempts else None


def issue_certificate(record: ProgressRecord, now: Optional[datetime] = None) -> ProgressRecord:
    """Latch the certificate on a fully completed record."""
    if record.overall_progress_percent != 100:
        raise NotEligibleError("course must be 100% completed to issue a certificate")
    if record.certificate_issued:
        raise AlreadyIssuedError("certificate already issued for this course")
    updated = record.model_copy(deep=True)
    updated.certificate_issued = True
    updated.certificate_issued_at = now or utcnow()
    logger.info("certificate issued user_id=%s course_id=%s", record.user_id, record.course_id)
    return updated


def _check_activity(time_spent_minutes: float, watched_percentage: Optional[float] = None) -> None:
    if not time_spent_minutes >= 0:
        raise InvalidInputError("time_spent_minutes must be >= 0")
    if watched_percentage is not None and not 0 <= watched_percentage <= 100:
        raise InvalidInputError("watched_percentage must be between 0 and 100")


class ProgressAggregator:
    """Apply learner events to progress records of one course."""

    def __init__(self, total_lessons: int, total_quizzes: int, clock: Callable[[], datetime] = utcnow):
        if total_lessons < 0 or total_quizzes < 0:
            raise InvalidInputError("content counts must be >= 0")
        self.total_lessons = total_lessons
        self.total_quizzes = total_quizzes
        self.clock = clock

    def recompute(self, record: ProgressRecord) -> ProgressRecord:
        return recompute_overall_progress(record, self.total_lessons, self.total_quizzes, self.clock())

    def _finish(self, record: ProgressRecord, now: datetime, started: bool = True) -> ProgressRecord:
        if started and record.started_at is None:
            record.started_at = now
        record.updated_at = now
        _recompute_in_place(record, self.total_lessons, self.total_quizzes, now)
        return record

    def _apply_lesson(self, record, lesson_id, time_spent_minutes, watched_percentage, explicit):
        _check_activity(time_spent_minutes, watched_percentage)
        now = self.clock()
        updated = record.model_copy(deep=True)
        entry = lesson_entry(updated, lesson_id)
        if entry is None:
            entry = LessonProgressEntry(
                lesson_id=lesson_id,
                time_spent_minutes=time_spent_minutes,
                watched_percentage=watched_percentage,
            )
            updated.lessons_progress.append(entry)
        else:
            entry.time_spent_minutes += time_spent_minutes
            entry.watched_percentage = max(entry.watched_percentage, watched_percentage)
        if explicit or entry.watched_percentage >= AUTO_COMPLETE_PERCENT:
            if not entry.completed:
                logger.debug("lesson completed user_id=%s lesson_id=%s", record.user_id, lesson_id)
            entry.completed = True
            if entry.completed_at is None:
                entry.completed_at = now
        return self._finish(updated, now)

    def record_lesson_completion(
        self,
        record: ProgressRecord,
        lesson_id: int,
        time_spent_minutes: float = 0,
        watched_percentage: float = 100,
    ) -> ProgressRecord:
        """Mark a lesson completed, accumulating time and watch percentage."""
        return self._apply_lesson(record, lesson_id, time_spent_minutes, watched_percentage, explicit=True)

    def record_lesson_watch_progress(
        self,
        record: ProgressRecord,
        lesson_id: int,
        time_spent_minutes: float = 0,
        watched_percentage: float = 0,
    ) -> ProgressRecord:
        """Accumulate viewing activity; completes the lesson at 80% watched."""
        return self._apply_lesson(record, lesson_id, time_spent_minutes, watched_percentage, explicit=False)

    def record_quiz_attempt(
        self,
        record: ProgressRecord,
        quiz: QuizDefinition,
        quiz_id: int,
        raw_answers: Iterable,
        time_spent_minutes: float = 0,
        started_at: Optional[datetime] = None,
    ) -> Tuple[ProgressRecord, ScoreResult]:
        """Grade a submission and append it as a new attempt.

        Enrollment, quiz activity and the attempt limit are the caller's
        gates (see `grading.attempts_allowed`); they are not re-checked
        here. Returns the updated record and the fresh score.
        """
        _check_activity(time_spent_minutes)
        answers = grading.normalize_answers(raw_answers)
        result = grading.score(quiz, answers)
        now = self.clock()
        attempt = QuizAttempt(
            quiz_id=quiz_id,
            answers={q.id: sorted(a.selected_option_ids) for q, a in zip(quiz.questions, answers)},
            score=result,
            started_at=started_at or now,
            completed_at=now,
            time_spent_minutes=time_spent_minutes,
        )
        updated = record.model_copy(deep=True)
        updated.quiz_attempts.append(attempt)
        logger.debug(
            "quiz attempt user_id=%s quiz_id=%s percentage=%s passed=%s",
            record.user_id, quiz_id, result.percentage, result.passed,
        )
        return self._finish(updated, now), result

    def remove_lesson_entries(self, record: ProgressRecord, lesson_id: int) -> ProgressRecord:
        """Drop a deleted lesson's entry. The aggregator's counts must already exclude it."""
        now = self.clock()
        updated = record.model_copy(deep=True)
        updated.lessons_progress = [lp for lp in updated.lessons_progress if lp.lesson_id != lesson_id]
        if len(updated.lessons_progress) != len(record.lessons_progress):
            logger.info("pruned lesson entries user_id=%s lesson_id=%s", record.user_id, lesson_id)
        return self._finish(updated, now, started=False)

    def remove_quiz_attempts(self, record: ProgressRecord, quiz_id: int) -> ProgressRecord:
        """Drop every attempt of a deleted quiz. The aggregator's counts must already exclude it."""
        now = self.clock()
        updated = record.model_copy(deep=True)
        updated.quiz_attempts = [a for a in updated.quiz_attempts if a.quiz_id != quiz_id]
        if len(updated.quiz_attempts) != len(record.quiz_attempts):
            logger.info("pruned quiz attempts user_id=%s quiz_id=%s", record.user_id, quiz_id)
        return self._finish(updated, now, started=False)

    def issue_certificate(self, record: ProgressRecord) -> ProgressRecord:
        return issue_certificate(record, self.clock())
