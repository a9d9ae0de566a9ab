"""Quiz grading.

Grading is exact-match per question: a question counts as correct only
when the set of selected option ids equals the set of correct option ids.
There is no partial credit, and an empty selection is always wrong.

All functions here are pure; identical inputs give identical results.
"""

import math
from fractions import Fraction
from typing import Iterable, List, Sequence

from .domain import QuestionReview, QuizDefinition, ScoreResult, SubmittedAnswer
from .errors import InvalidInputError


def round_half_up(value) -> int:
    """Round to the nearest integer with halves going up (12.5 -> 13).

    `value` is converted to a `Fraction` first, so the half is compared
    exactly instead of after float rounding.
    """
    return int(math.floor(Fraction(value) + Fraction(1, 2)))


def percent(part, whole) -> int:
    """`part / whole` as a half-up rounded percentage, computed exactly."""
    return round_half_up(Fraction(part) * 100 / Fraction(whole))


def normalize_answers(raw: Iterable) -> List[SubmittedAnswer]:
    """Convert API-shaped answers into `SubmittedAnswer` objects.

    Each item may already be a `SubmittedAnswer`, a list of option ids, a
    single option id string, or `None` for an unanswered question.
    """
    out = []
    for item in raw:
        if isinstance(item, SubmittedAnswer):
            out.append(item)
        else:
            out.append(SubmittedAnswer(selected_option_ids=item))
    return out


def _check_alignment(quiz: QuizDefinition, answers: Sequence[SubmittedAnswer]) -> None:
    if not quiz.questions:
        raise InvalidInputError("quiz has no questions")
    if len(answers) != len(quiz.questions):
        raise InvalidInputError(
            f"expected {len(quiz.questions)} answers, got {len(answers)}"
        )


def _is_correct(correct_ids, selected_ids) -> bool:
    # A question without correct options can never be answered right.
    return bool(correct_ids) and set(selected_ids) == set(correct_ids)


def score(quiz: QuizDefinition, answers: Sequence[SubmittedAnswer]) -> ScoreResult:
    """Grade `answers` (positionally aligned with `quiz.questions`)."""
    _check_alignment(quiz, answers)
    correct_answers = 0
    total_points = 0
    earned_points = 0
    for question, answer in zip(quiz.questions, answers):
        total_points += question.points
        if _is_correct(question.correct_option_ids(), answer.selected_option_ids):
            correct_answers += 1
            earned_points += question.points
    percentage = percent(earned_points, total_points) if total_points > 0 else 0
    return ScoreResult(
        correct_answers=correct_answers,
        total_questions=len(quiz.questions),
        earned_points=earned_points,
        total_points=total_points,
        percentage=percentage,
        passed=percentage >= quiz.passing_score_percent,
    )


def attempts_allowed(quiz: QuizDefinition, attempt_count_so_far: int) -> bool:
    """Return True while the learner may submit another attempt."""
    return quiz.max_attempts == 0 or attempt_count_so_far < quiz.max_attempts


def review(quiz: QuizDefinition, answers: Sequence[SubmittedAnswer]) -> List[QuestionReview]:
    """Build per-question feedback for a submission.

    Correctness is decided per question with the same rule `score` uses,
    so the review always agrees with the score.
    """
    _check_alignment(quiz, answers)
    items = []
    for question, answer in zip(quiz.questions, answers):
        selected = answer.selected_option_ids
        known = {o.id for o in question.options}
        user_answers = [o.text for o in question.options if o.id in selected]
        user_answers.extend("Unknown answer" for _ in sorted(selected - known))
        items.append(QuestionReview(
            question_id=question.id,
            question=question.text,
            user_answers=user_answers,
            correct_answers=[o.text for o in question.options if o.is_correct],
            is_correct=_is_correct(question.correct_option_ids(), selected),
            explanation=question.explanation,
        ))
    return items
