"""Answer reconciliation and score computation.

Correctness is always decided against the question catalog handed in by
the caller, never against the `is_correct` flag a client (or an older
stored attempt) believed. The functions here are pure: the same answers,
questions and marking scheme always produce the same result.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger("exam_analytics.scoring")

DEFAULT_MARKING_SCHEME = {"correct": 5, "incorrect": 0, "unattempted": 0}
NUMERICAL_TOLERANCE = 1e-9


def normalize_correct_options(value: Any) -> List[int]:
    """Return the correct-option set as a list.

    A scalar becomes a one-element list and a missing value an empty one.
    Non-integer entries that cannot be coerced are discarded.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        raw = list(value)
    else:
        raw = [value]
    out = []
    for v in raw:
        if isinstance(v, bool):
            continue
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            continue
    return out


def resolve_marking_scheme(scheme: Optional[dict]) -> Dict[str, float]:
    """Fill a possibly partial marking scheme with the defaults.

    Only missing (`None`) entries are defaulted; an explicit `0` is kept.
    """
    resolved = dict(DEFAULT_MARKING_SCHEME)
    for key in resolved:
        if scheme and scheme.get(key) is not None:
            resolved[key] = scheme[key]
    return resolved


def _question_field(question: Any, name: str, default: Any = None) -> Any:
    if isinstance(question, dict):
        return question.get(name, default)
    return getattr(question, name, default)


def has_response(question: Any, answer: dict) -> bool:
    """True when the answer carries a response for this kind of question."""
    if _question_field(question, "question_type") == "numerical":
        return answer.get("numerical_answer") is not None
    return answer.get("answer_option_index") is not None


def is_numerical_match(spec: Optional[dict], value: Any) -> bool:
    """Check a numerical response against `{exact_value, range{min,max}}`."""
    if not spec or value is None:
        return False
    try:
        value = float(value)
    except (TypeError, ValueError):
        return False
    rng = spec.get("range") or {}
    lo, hi = rng.get("min"), rng.get("max")
    if lo is not None and hi is not None:
        return float(lo) <= value <= float(hi)
    exact = spec.get("exact_value")
    if exact is None:
        return False
    return abs(float(exact) - value) <= NUMERICAL_TOLERANCE


def is_answer_correct(question: Any, answer: dict) -> bool:
    """Decide correctness of one answer against the current question.

    Single- and multiple-choice questions share the same membership test;
    the difference between them is enforced when questions are authored.
    """
    if not has_response(question, answer):
        return False
    if _question_field(question, "question_type") == "numerical":
        return is_numerical_match(_question_field(question, "numerical_answer"), answer.get("numerical_answer"))
    correct = normalize_correct_options(_question_field(question, "correct_options"))
    try:
        selected = int(answer.get("answer_option_index"))
    except (TypeError, ValueError):
        return False
    return selected in correct


def reconcile_answers(answers: Iterable[dict], question_map: Dict[int, Any], question_count: int) -> dict:
    """Recompute correctness for a list of answers.

    `question_map` maps question id to the current catalog entry and is
    built once per call by the caller. Answers whose question is not in
    the map are dropped (and logged) and never count as attempted. When a
    question id appears more than once, the last entry wins.
    `question_count` is the number of questions the counts are taken over;
    `unattempted` is what remains after the attempted answers.

    Returns a dict with the per-answer results (`answers`, each a copy of
    the input entry with `is_correct` replaced), the running counts
    `correct`, `wrong`, `attempted`, `unattempted` and the ids in `dropped`.
    """
    results = []
    dropped = []
    correct = 0
    wrong = 0
    attempted = 0
    latest: Dict[Any, dict] = {}
    for answer in answers:
        qid = answer.get("question_id")
        if qid in latest:
            logger.info("duplicate_answer %s", json.dumps({"question_id": qid}, default=str))
        latest[qid] = answer
    for qid, answer in latest.items():
        question = question_map.get(qid)
        if question is None:
            dropped.append(qid)
            logger.warning("answer_dropped %s", json.dumps({"question_id": qid, "reason": "question not in test catalog"}, default=str))
            continue
        answered = has_response(question, answer)
        ok = answered and is_answer_correct(question, answer)
        if answered:
            attempted += 1
            if ok:
                correct += 1
            else:
                wrong += 1
        entry = dict(answer)
        entry["is_correct"] = bool(ok)
        results.append(entry)

    # wrong + correct never exceeds attempted
    if correct + wrong > attempted:
        logger.info("wrong_count_clamped %s", json.dumps({"correct": correct, "wrong": wrong, "attempted": attempted}))
        wrong = attempted - correct

    return {
        "answers": results,
        "correct": correct,
        "wrong": wrong,
        "attempted": attempted,
        "unattempted": max(question_count - attempted, 0),
        "dropped": dropped,
    }


def compute_score(correct: int, wrong: int, unattempted: int, scheme: Optional[dict] = None) -> float:
    """Apply a marking scheme to reconciled counts.

    The result is a plain weighted sum and may be negative when negative
    marking dominates.
    """
    s = resolve_marking_scheme(scheme)
    return correct * s["correct"] + wrong * s["incorrect"] + unattempted * s["unattempted"]


def compute_percentage(correct: int, question_count: int, total_marks: float, scheme: Optional[dict] = None) -> float:
    """Percentage of marks earned by correct answers.

    Falls back to `correct / question_count` when the test has no positive
    `total_marks`; `question_count` is treated as at least 1.
    """
    s = resolve_marking_scheme(scheme)
    if total_marks and total_marks > 0:
        return (correct * s["correct"] / total_marks) * 100
    return (correct / max(question_count or 0, 1)) * 100


def score_summary(reconciled: dict, question_count: int, total_marks: float, scheme: Optional[dict] = None) -> dict:
    """Build the performance block shared by submission and analytics."""
    correct = reconciled["correct"]
    wrong = reconciled["wrong"]
    unattempted = reconciled["unattempted"]
    return {
        "total_questions": question_count,
        "correct": correct,
        "wrong": wrong,
        "unattempted": unattempted,
        "attempted": reconciled["attempted"],
        "score": compute_score(correct, wrong, unattempted, scheme),
        "percentage": compute_percentage(correct, question_count, total_marks, scheme),
    }
