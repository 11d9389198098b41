"""Derived analytics over one attempt's telemetry.

These helpers work on already-normalized data (see `telemetry`) and on
answers that have been through `scoring.reconcile_answers`, so every view
built from them agrees with the recomputed correctness.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .scoring import has_response, resolve_marking_scheme

WEAK_TOPIC_ACCURACY = 50.0
STRONG_TOPIC_ACCURACY = 80.0


def empty_time_distribution() -> Dict[str, list]:
    return {"less_than_30_sec": [], "between_30_to_60_sec": [], "between_1_to_2_min": [], "more_than_2_min": []}


def time_bucket(seconds: float) -> str:
    if seconds < 30:
        return "less_than_30_sec"
    if seconds < 60:
        return "between_30_to_60_sec"
    if seconds <= 120:
        return "between_1_to_2_min"
    return "more_than_2_min"


def build_time_analytics(answers: List[dict], total_time: float) -> dict:
    """Bucket each answer's `time_spent` (seconds) and summarise the attempt."""
    distribution = empty_time_distribution()
    for a in answers:
        distribution[time_bucket(a.get("time_spent") or 0)].append(a["question_id"])
    return {
        "total_time_spent": total_time,
        "average_time_per_question": total_time / len(answers) if answers else 0,
        "question_time_distribution": distribution,
    }


def build_subject_analytics(answers: List[dict], question_map: Dict[int, Any], scheme: Optional[dict]) -> dict:
    """Per-subject accuracy, timing and weak/strong chapters for one attempt.

    `answers` must already carry recomputed `is_correct` flags; answers
    whose question is missing from `question_map` are ignored.
    """
    s = resolve_marking_scheme(scheme)
    subjects: Dict[str, dict] = {}
    for a in answers:
        q = question_map.get(a["question_id"])
        if q is None or not has_response(q, a):
            continue
        bucket = subjects.setdefault(q.subject, {"attempted": 0, "correct": 0, "wrong": 0, "time": 0.0, "topics": {}})
        bucket["attempted"] += 1
        bucket["time"] += a.get("time_spent") or 0
        topic = q.chapter or q.topic or "general"
        t = bucket["topics"].setdefault(topic, {"attempted": 0, "correct": 0, "time": 0.0})
        t["attempted"] += 1
        t["time"] += a.get("time_spent") or 0
        if a.get("is_correct"):
            bucket["correct"] += 1
            t["correct"] += 1
        else:
            bucket["wrong"] += 1

    out = {}
    for subject, b in subjects.items():
        weak, strong, improvement = [], [], []
        for topic, t in b["topics"].items():
            acc = t["correct"] / t["attempted"] * 100
            if acc < WEAK_TOPIC_ACCURACY:
                weak.append(topic)
                improvement.append({"topic": topic, "accuracy": acc, "average_time": t["time"] / t["attempted"]})
            elif acc >= STRONG_TOPIC_ACCURACY:
                strong.append(topic)
        out[subject] = {
            "accuracy": b["correct"] / b["attempted"] * 100,
            "average_time_per_question": b["time"] / b["attempted"],
            "questions_attempted": b["attempted"],
            "score_obtained": b["correct"] * s["correct"] + b["wrong"] * s["incorrect"],
            "weak_topics": weak,
            "strong_topics": strong,
            "improvement_areas": improvement,
        }
    return out


def subject_breakdown(question_ids: Iterable[int], question_map: Dict[int, Any], answers: List[dict]) -> dict:
    """Subject-wise totals for the detailed analysis.

    Iterates the test's current questions in order, buckets them by
    subject and accumulates total/attempted/correct/time from the answers.
    """
    by_question = {}
    for a in answers:
        by_question.setdefault(a["question_id"], a)
    subjects: Dict[str, dict] = {}
    for qid in question_ids:
        q = question_map.get(qid)
        if q is None or not q.subject:
            continue
        bucket = subjects.setdefault(q.subject, {"total": 0, "attempted": 0, "correct": 0, "time_spent": 0.0})
        bucket["total"] += 1
        answer = by_question.get(qid)
        if answer is not None and has_response(q, answer):
            bucket["attempted"] += 1
            bucket["time_spent"] += answer.get("time_spent") or 0
            if answer.get("is_correct"):
                bucket["correct"] += 1
    return subjects


def question_visit_stats(navigation: List[dict], question_id: int) -> dict:
    """Visit count and first/last visit timestamps for one question."""
    stamps = [
        e.get("timestamp") for e in navigation
        if e.get("action") == "visit" and e.get("question_id") == question_id and e.get("timestamp") is not None
    ]
    return {
        "visits": len(stamps),
        "first_visit": min(stamps) if stamps else None,
        "last_visit": max(stamps) if stamps else None,
    }


def aggregate_subject_analytics(per_attempt: Iterable[Optional[dict]]) -> dict:
    """Average per-subject stats across attempts and union their topics.

    Each subject is averaged over the attempts that touched it; attempts
    without stored subject analytics are skipped.
    """
    acc: Dict[str, dict] = {}
    for subjects in per_attempt:
        if not subjects:
            continue
        for subject, data in subjects.items():
            data = data or {}
            entry = acc.setdefault(subject, {
                "total_attempts": 0,
                "average_accuracy": 0.0,
                "average_time_per_question": 0.0,
                "weak_topics": {},
                "strong_topics": {},
            })
            entry["total_attempts"] += 1
            entry["average_accuracy"] += data.get("accuracy") or 0
            entry["average_time_per_question"] += data.get("average_time_per_question") or 0
            for topic in data.get("weak_topics") or []:
                entry["weak_topics"][topic] = True
            for topic in data.get("strong_topics") or []:
                entry["strong_topics"][topic] = True
    for entry in acc.values():
        n = entry["total_attempts"]
        entry["average_accuracy"] /= n
        entry["average_time_per_question"] /= n
        entry["weak_topics"] = list(entry["weak_topics"])
        entry["strong_topics"] = list(entry["strong_topics"])
    return acc
