"""
Expert Evaluator - Scoring
Deterministic MCQ scoring: percentage of correct answers, rounded half-up.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence, Tuple

AnswerPair = Tuple[Optional[str], Optional[str]]


def round_half_up(value: float) -> int:
    """Round to the nearest integer, ties away from zero (12.5 -> 13)."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def is_correct(submitted: Optional[str], expected: Optional[str]) -> bool:
    if submitted is None or expected is None:
        return False
    if not str(submitted).strip():
        return False
    return str(submitted).strip() == str(expected).strip()


def count_correct(pairs: Iterable[AnswerPair]) -> Tuple[int, int]:
    """Return (correct, total)."""
    correct = total = 0
    for submitted, expected in pairs:
        total += 1
        if is_correct(submitted, expected):
            correct += 1
    return correct, total


def score_answers(pairs: Iterable[AnswerPair]) -> int:
    """
    Percentage of correctly answered questions, rounded half-up.

    pairs : sequence of (submitted, expected). An unanswered question
            (None / blank) counts as incorrect. An empty sequence scores 0.
    """
    correct, total = count_correct(pairs)
    if total == 0:
        return 0
    score = round_half_up(100 * correct / total)
    return max(0, min(100, score))


def performance_metrics(pairs: Sequence[AnswerPair]) -> dict:
    correct, total = count_correct(pairs)
    return {
        "totalQuestions": total,
        "correctAnswers": correct,
        "incorrectAnswers": total - correct,
        "score": score_answers(pairs),
    }


def question_pairs(questions) -> list:
    """(user_answer, correct_answer) pairs from Question rows or dicts."""
    pairs = []
    for q in questions:
        if isinstance(q, dict):
            pairs.append((q.get("user_answer"), q.get("correct_answer")))
        else:
            pairs.append((q.user_answer, q.correct_answer))
    return pairs
