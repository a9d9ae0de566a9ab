"""Read-side summaries built from progress records.

Nothing in here mutates a record. Percentages use the same half-up
rounding as grading.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from . import progress
from .domain import ProgressRecord, utcnow
from .errors import InvalidInputError, NotFoundError
from .grading import percent

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _aware(value):
    # SQLite hands back naive datetimes; treat them as UTC for sorting.
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _score_dict(score) -> Dict:
    return {
        'percentage': score.percentage,
        'passed': score.passed,
        'earned_points': score.earned_points,
        'total_points': score.total_points,
    }


def course_summary(record: ProgressRecord, total_lessons: int, total_quizzes: int) -> Dict:
    """Progress of one learner in one course."""
    completed_lessons = record.completed_lessons_count
    passed_quizzes = record.passed_quizzes_count
    total_items = total_lessons + total_quizzes
    quiz_ids = []
    for attempt in record.quiz_attempts:
        if attempt.quiz_id not in quiz_ids:
            quiz_ids.append(attempt.quiz_id)
    quiz_progress = []
    for quiz_id in quiz_ids:
        best = progress.best_score_for_quiz(record, quiz_id)
        quiz_progress.append({
            'quiz_id': quiz_id,
            'best_score': _score_dict(best),
            'attempts': progress.attempt_count(record, quiz_id),
        })
    return {
        'course_id': record.course_id,
        'overall_progress': record.overall_progress_percent,
        'enrolled_at': record.enrolled_at,
        'started_at': record.started_at,
        'completed_at': record.completed_at,
        'stats': {
            'total_lessons': total_lessons,
            'completed_lessons': completed_lessons,
            'total_quizzes': total_quizzes,
            'passed_quizzes': passed_quizzes,
            'completion_rate': percent(completed_lessons + passed_quizzes, total_items) if total_items > 0 else 0,
        },
        'lesson_progress': [lp.model_dump() for lp in record.lessons_progress],
        'quiz_progress': quiz_progress,
        'certificate_issued': record.certificate_issued,
        'certificate_issued_at': record.certificate_issued_at,
    }


def learner_overview(records: Iterable[ProgressRecord]) -> Dict:
    """Totals across every course a learner is enrolled in."""
    records = list(records)
    completed = 0
    in_progress = 0
    courses = []
    for r in records:
        if r.overall_progress_percent == 100:
            completed += 1
        elif r.overall_progress_percent > 0:
            in_progress += 1
        courses.append({
            'course_id': r.course_id,
            'overall_progress': r.overall_progress_percent,
            'enrolled_at': r.enrolled_at,
            'completed_at': r.completed_at,
            'last_activity': r.updated_at or r.enrolled_at,
            'time_spent': r.total_time_spent_minutes,
            'lessons_completed': r.completed_lessons_count,
            'quizzes_passed': r.passed_quizzes_count,
        })
    total = len(records)
    recent = sorted(courses, key=lambda c: _aware(c['last_activity']), reverse=True)[:5]
    finished = sorted(
        (c for c in courses if c['completed_at']),
        key=lambda c: _aware(c['completed_at']),
        reverse=True,
    )
    return {
        'overview': {
            'total_courses_enrolled': total,
            'completed_courses': completed,
            'in_progress_courses': in_progress,
            'total_time_spent': sum(c['time_spent'] for c in courses),
            'total_lessons_completed': sum(c['lessons_completed'] for c in courses),
            'total_quizzes_passed': sum(c['quizzes_passed'] for c in courses),
            'average_progress': percent(sum(c['overall_progress'] for c in courses), total * 100) if total else 0,
        },
        'recent_courses': recent,
        'completed_courses': finished,
        'all_courses': courses,
    }


def quiz_results(record: ProgressRecord, quiz_id: int) -> Dict:
    """A learner's attempts at one quiz, newest first."""
    attempts = progress.attempts_for_quiz(record, quiz_id)
    if not attempts:
        raise NotFoundError(f"no attempts found for quiz {quiz_id}")
    best = progress.best_score_for_quiz(record, quiz_id)
    ordered = sorted(attempts, key=lambda a: _aware(a.completed_at), reverse=True)
    return {
        'quiz_id': quiz_id,
        'total_attempts': len(attempts),
        'best_score': best.model_dump(),
        'attempts': [
            {
                'attempt_date': a.completed_at,
                'score': a.score.model_dump(),
                'time_spent': a.time_spent_minutes,
            }
            for a in ordered
        ],
    }


def quiz_statistics(records: Iterable[ProgressRecord], quiz_id: int) -> Dict:
    """Aggregate performance on one quiz across learners who attempted it."""
    total_attempts = 0
    passed_users = 0
    total_best = 0
    users: List[Dict] = []
    for r in records:
        count = progress.attempt_count(r, quiz_id)
        if count == 0:
            continue
        best = progress.best_score_for_quiz(r, quiz_id)
        total_attempts += count
        total_best += best.percentage
        if best.passed:
            passed_users += 1
        users.append({
            'user_id': r.user_id,
            'attempts': count,
            'best_score': best.percentage,
            'passed': best.passed,
        })
    n = len(users)
    return {
        'quiz_id': quiz_id,
        'total_users': n,
        'total_attempts': total_attempts,
        'average_score': total_best / n if n else 0,
        'pass_rate': passed_users / n * 100 if n else 0,
        'average_attempts_per_user': total_attempts / n if n else 0,
        'users': users,
    }


def certificates(records: Iterable[ProgressRecord]) -> List[Dict]:
    """Issued certificates, most recently issued first."""
    issued = [r for r in records if r.certificate_issued]
    issued.sort(key=lambda r: _aware(r.certificate_issued_at), reverse=True)
    return [
        {
            'course_id': r.course_id,
            'completed_at': r.completed_at,
            'certificate_issued_at': r.certificate_issued_at,
            'final_progress': r.overall_progress_percent,
        }
        for r in issued
    ]


def course_report(
    records: Iterable[ProgressRecord],
    lessons: Sequence[Mapping],
    quizzes: Sequence[Mapping],
    usernames: Optional[Mapping[int, str]] = None,
) -> Dict:
    """Progress of every learner in one course, for instructors.

    `lessons` and `quizzes` are the course content as mappings with `id`,
    `title` and `order`. Rates and averages are taken over all enrolled
    learners, so a learner who never attempted a quiz counts as 0.
    """
    records = list(records)
    usernames = usernames or {}
    enrolled = len(records)
    completed_users = sum(1 for r in records if r.overall_progress_percent == 100)

    def _rate(count):
        return percent(count, enrolled) if enrolled else 0

    user_progress = [
        {
            'user_id': r.user_id,
            'username': usernames.get(r.user_id),
            'enrolled_at': r.enrolled_at,
            'overall_progress': r.overall_progress_percent,
            'completed_at': r.completed_at,
            'lessons_completed': r.completed_lessons_count,
            'total_lessons': len(lessons),
            'quizzes_passed': r.passed_quizzes_count,
            'total_quizzes': len(quizzes),
            'last_activity': r.updated_at or r.enrolled_at,
            'time_spent': r.total_time_spent_minutes,
        }
        for r in records
    ]

    lesson_stats = []
    for lesson in lessons:
        completions = 0
        for r in records:
            entry = progress.lesson_entry(r, lesson['id'])
            if entry is not None and entry.completed:
                completions += 1
        lesson_stats.append({
            'lesson_id': lesson['id'],
            'lesson': lesson['title'],
            'order': lesson['order'],
            'completions': completions,
            'completion_rate': _rate(completions),
        })

    quiz_stats = []
    for quiz in quizzes:
        attempts = 0
        passed = 0
        total_best = 0
        for r in records:
            attempts += progress.attempt_count(r, quiz['id'])
            best = progress.best_score_for_quiz(r, quiz['id'])
            if best is None:
                continue
            total_best += best.percentage
            if any(a.score.passed for a in progress.attempts_for_quiz(r, quiz['id'])):
                passed += 1
        quiz_stats.append({
            'quiz_id': quiz['id'],
            'quiz': quiz['title'],
            'order': quiz['order'],
            'total_attempts': attempts,
            'passed': passed,
            'pass_rate': _rate(passed),
            'average_score': percent(total_best, enrolled * 100) if enrolled else 0,
        })

    return {
        'statistics': {
            'total_enrolled': enrolled,
            'completed_users': completed_users,
            'completion_rate': _rate(completed_users),
            'average_progress': percent(sum(r.overall_progress_percent for r in records), enrolled * 100) if enrolled else 0,
        },
        'user_progress': user_progress,
        'lesson_stats': lesson_stats,
        'quiz_stats': quiz_stats,
    }


TIMEFRAMES = {
    'all': None,
    'week': timedelta(days=7),
    'month': timedelta(days=30),
    'year': timedelta(days=365),
}


def learner_statistics(
    records: Iterable[ProgressRecord],
    courses: Mapping[int, Mapping],
    timeframe: str = 'all',
    now: Optional[datetime] = None,
) -> Dict:
    """A learner's totals over the courses active within `timeframe`.

    `courses` maps course id to a mapping with `title`, `category` and
    `level`. Recent achievements always cover the last seven days.
    """
    if timeframe not in TIMEFRAMES:
        raise InvalidInputError(f"timeframe must be one of {', '.join(TIMEFRAMES)}")
    now = _aware(now or utcnow())
    window = TIMEFRAMES[timeframe]
    records = list(records)
    if window is not None:
        cutoff = now - window
        records = [r for r in records if _aware(r.updated_at or r.enrolled_at) >= cutoff]

    by_category: Dict[str, int] = {}
    by_level: Dict[str, int] = {}
    achievements = []
    week_ago = now - TIMEFRAMES['week']
    for r in records:
        course = courses.get(r.course_id) or {}
        title = course.get('title')
        if course:
            category = course.get('category') or 'uncategorized'
            level = course.get('level') or 'unspecified'
            by_category[category] = by_category.get(category, 0) + 1
            by_level[level] = by_level.get(level, 0) + 1
        for lp in r.lessons_progress:
            if lp.completed_at and _aware(lp.completed_at) >= week_ago:
                achievements.append({
                    'type': 'lesson',
                    'date': lp.completed_at,
                    'course_id': r.course_id,
                    'course': title,
                    'description': f'Completed lesson in {title}',
                })
        for a in r.quiz_attempts:
            if a.score.passed and _aware(a.completed_at) >= week_ago:
                achievements.append({
                    'type': 'quiz',
                    'date': a.completed_at,
                    'course_id': r.course_id,
                    'course': title,
                    'description': f'Passed quiz in {title} with {a.score.percentage}%',
                })
    achievements.sort(key=lambda item: _aware(item['date']), reverse=True)

    return {
        'timeframe': timeframe,
        'summary': {
            'total_time_spent': sum(r.total_time_spent_minutes for r in records),
            'total_lessons_completed': sum(r.completed_lessons_count for r in records),
            'total_quizzes_passed': sum(r.passed_quizzes_count for r in records),
            'courses_completed': sum(1 for r in records if r.overall_progress_percent == 100),
            'courses_enrolled': len(records),
        },
        'breakdown': {
            'by_category': by_category,
            'by_level': by_level,
        },
        'recent_achievements': achievements[:10],
    }
