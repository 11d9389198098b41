"""Read-side analytics over stored attempts.

Every per-attempt view takes one snapshot (attempt, test, current
questions), reconciles the stored answers against that snapshot and
builds its output from the reconciled result. The attempt's stored
`total_*` counters and `score` are never returned as the authoritative
numbers; they are only compared against the recomputed values and the
difference is logged as `score_drift`.

Performance trends and the cross-test subject analysis are the
exception: they are historical views built from the stored snapshot.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from sqlmodel import Session
from . import models, repositories
from .errors import NotFoundError, ValidationError
from .utils import telemetry
from .utils.attempt_analytics import (
    aggregate_subject_analytics,
    build_subject_analytics,
    empty_time_distribution,
    question_visit_stats,
    subject_breakdown,
)
from .utils.response_cache import ResponseCache
from .utils.scoring import normalize_correct_options, reconcile_answers, resolve_marking_scheme, score_summary
from .utils.telemetry import stored_or_default

logger = logging.getLogger("exam_analytics.analytics")


class AttemptSnapshot:
    """One consistent read of an attempt, its test and the test's questions."""

    def __init__(self, attempt: models.AttemptedTest, test: models.Test, question_map: Dict[int, models.Question]):
        self.attempt = attempt
        self.test = test
        self.question_map = question_map
        self.reconciled = reconcile_answers(attempt.answers or [], question_map, len(question_map))
        self.performance = score_summary(self.reconciled, len(question_map), test.total_marks, test.marking_scheme)
        self.performance["recalculated_correct"] = self.reconciled["correct"]
        self.performance["recalculated_wrong"] = self.reconciled["wrong"]
        self.by_question = {a["question_id"]: a for a in self.reconciled["answers"]}

    def total_time_spent(self) -> float:
        """Stored duration in seconds, else end minus start."""
        a = self.attempt
        if a.total_time_taken:
            return a.total_time_taken
        if a.start_time and a.end_time:
            return max((a.end_time - a.start_time).total_seconds(), 0)
        return 0


class AnalyticsService:
    def __init__(self, session: Session, cache: Optional[ResponseCache] = None):
        self.session = session
        self.cache = cache
        self.a_repo = repositories.AttemptRepository(session)
        self.t_repo = repositories.TestRepository(session)
        self.q_repo = repositories.QuestionRepository(session)

    # -- snapshot helpers -------------------------------------------------

    def _snapshot(self, attempt: models.AttemptedTest) -> AttemptSnapshot:
        test = self.t_repo.get(attempt.test_id)
        if not test:
            raise NotFoundError("Original test definition not found for this attempt")
        snap = AttemptSnapshot(attempt, test, self.q_repo.get_many(test.questions or []))
        rec = snap.reconciled
        if rec["correct"] != attempt.total_correct_answers or rec["wrong"] != attempt.total_wrong_answers:
            logger.info(
                "score_drift %s",
                json.dumps({
                    "attempt_id": attempt.id,
                    "stored": {"correct": attempt.total_correct_answers, "wrong": attempt.total_wrong_answers},
                    "recomputed": {"correct": rec["correct"], "wrong": rec["wrong"]},
                }),
            )
        return snap

    def _resolve_attempt(self, user: models.User, test_id: Any, attempt_id: Any = None) -> models.AttemptedTest:
        """Pick the attempt a per-attempt view is about.

        An explicit `attempt_id` wins (and must belong to `test_id` when
        both are given); otherwise the caller's newest attempt at the test.
        """
        aid = telemetry.parse_id(attempt_id)
        tid = telemetry.parse_id(test_id)
        attempt = None
        if aid is not None:
            attempt = self.a_repo.get_owned(aid, user.id)
            if attempt and tid is not None and attempt.test_id != tid:
                attempt = None
        elif tid is not None:
            attempt = self.a_repo.latest_for_test(user.id, tid)
        if not attempt:
            raise NotFoundError("Attempt not found")
        return attempt

    # -- detailed analysis ------------------------------------------------

    def get_detailed_analysis(self, user: models.User, attempt_id: Any = None, paper_id: Any = None) -> dict:
        """Full recomputed analysis of one attempt.

        Looks up `attempt_id` first; when that yields nothing and a
        `paper_id` (test id) is given, falls back to the caller's most
        recent attempt at that test.
        """
        aid = telemetry.parse_id(attempt_id)
        pid = telemetry.parse_id(paper_id)
        if aid is None and pid is None:
            raise ValidationError("a valid attempt_id or paper_id is required")

        cache_key = (user.id, aid, pid)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        attempt = self.a_repo.get_owned(aid, user.id) if aid is not None else None
        if attempt is None and pid is not None:
            attempt = self.a_repo.latest_for_test(user.id, pid)
        if attempt is None:
            raise NotFoundError("Attempted test not found for this user")

        snap = self._snapshot(attempt)
        test = snap.test
        answers = []
        for a in attempt.answers or []:
            q = snap.question_map.get(a.get("question_id"))
            if q is None:
                answers.append({
                    "question_id": a.get("question_id"),
                    "selected_option": a.get("answer_option_index"),
                    "numerical_answer": a.get("numerical_answer"),
                    "time_spent": a.get("time_spent") or 0,
                    "is_correct": False,
                    "correct_answer": [],
                    "question_missing": True,
                })
                continue
            rec = snap.by_question.get(q.id, a)
            answers.append({
                "question_id": q.id,
                "selected_option": rec.get("answer_option_index"),
                "numerical_answer": rec.get("numerical_answer"),
                "time_spent": rec.get("time_spent") or 0,
                "is_correct": rec.get("is_correct", False),
                "correct_answer": normalize_correct_options(q.correct_options),
                "question_missing": False,
            })

        siblings = self.a_repo.list_for_test(user.id, attempt.test_id)
        attempts = [
            {"id": s.id, "number": len(siblings) - i, "attempt_number": s.attempt_number, "score": s.score, "date": s.created_at}
            for i, s in enumerate(siblings)
        ]

        total_time = snap.total_time_spent()
        stored_answers = attempt.answers or []
        ordered_questions = [snap.question_map[i] for i in (test.questions or []) if i in snap.question_map]
        performance = dict(snap.performance)
        performance["total_visited_questions"] = attempt.total_visited_questions
        performance["total_time_taken"] = total_time

        result = {
            "test_info": {
                "test_id": test.id,
                "attempt_id": attempt.id,
                "attempt_number": attempt.attempt_number,
                "test_title": test.title,
                "test_category": test.test_category,
                "language": attempt.language,
                "duration": attempt.total_time_taken or 0,
                "start_time": attempt.start_time,
                "end_time": attempt.end_time,
                "marking_scheme": resolve_marking_scheme(test.marking_scheme),
            },
            "attempts": attempts,
            "answers": answers,
            "metadata": dict(
                attempt.attempt_metadata or {},
                questions=[
                    {
                        "id": q.id,
                        "subject": q.subject or "General",
                        "topic": q.topic or "General",
                        "difficulty": q.difficulty,
                        "correct_options": normalize_correct_options(q.correct_options),
                    }
                    for q in ordered_questions
                ],
            ),
            "performance": performance,
            "time_analytics": {
                "total_time_spent": total_time,
                "average_time_per_question": total_time / len(stored_answers) if stored_answers else 0,
                "question_time_distribution": stored_or_default(
                    attempt.time_analytics, "question_time_distribution", empty_time_distribution()
                ),
            },
            "subject_wise": subject_breakdown(test.questions or [], snap.question_map, snap.reconciled["answers"]),
            "question_states": attempt.question_states or {},
            "navigation_history": attempt.navigation_history or [],
            "environment": attempt.environment or {},
        }
        if self.cache is not None:
            self.cache.set(cache_key, result)
        return result

    # -- per-attempt views ------------------------------------------------

    def get_time_analytics(self, user: models.User, test_id: Any, attempt_id: Any = None) -> dict:
        snap = self._snapshot(self._resolve_attempt(user, test_id, attempt_id))
        a = snap.attempt
        navigation = a.navigation_history or []
        question_wise = []
        for answer in a.answers or []:
            entry = {"question_id": answer.get("question_id"), "time_spent": answer.get("time_spent") or 0}
            entry.update(question_visit_stats(navigation, answer.get("question_id")))
            question_wise.append(entry)
        return {
            "attempt_id": a.id,
            "overall": {
                "total_duration": snap.total_time_spent(),
                "average_time_per_question": stored_or_default(a.time_analytics, "average_time_per_question", 0),
                "time_distribution": stored_or_default(a.time_analytics, "question_time_distribution", empty_time_distribution()),
            },
            "periods": {
                "peak_performance_periods": stored_or_default(a.time_analytics, "peak_performance_periods", []),
                "fatigue_periods": stored_or_default(a.time_analytics, "fatigue_periods", []),
            },
            "question_wise": question_wise,
            "performance": snap.performance,
        }

    def get_error_analysis(self, user: models.User, test_id: Any, attempt_id: Any = None) -> dict:
        snap = self._snapshot(self._resolve_attempt(user, test_id, attempt_id))
        a = snap.attempt
        recomputed = build_subject_analytics(snap.reconciled["answers"], snap.question_map, snap.test.marking_scheme)
        subject_wise = {
            subject: {
                "accuracy": data["accuracy"],
                "weak_topics": data["weak_topics"],
                "improvement_areas": data["improvement_areas"],
            }
            for subject, data in recomputed.items()
        }
        return {
            "attempt_id": a.id,
            "common_mistakes": stored_or_default(a.error_analytics, "common_mistakes", []),
            "patterns": stored_or_default(a.error_analytics, "error_patterns", {}),
            "subject_wise": subject_wise,
            "performance": snap.performance,
        }

    def get_navigation_patterns(self, user: models.User, test_id: Any, attempt_id: Any = None) -> dict:
        snap = self._snapshot(self._resolve_attempt(user, test_id, attempt_id))
        a = snap.attempt
        sequencing = stored_or_default(a.strategy_metrics, "question_sequencing", {})
        return {
            "attempt_id": a.id,
            "sequence": a.navigation_history or [],
            "patterns": {
                "backtracking": sequencing.get("backtracking") or 0,
                "subject_switching": sequencing.get("subject_switching") or 0,
                "optimal_choices": sequencing.get("optimal_choices") or 0,
            },
            "section_transitions": stored_or_default(a.behavioral_analytics, "section_transitions", []),
            "revisit_patterns": stored_or_default(a.behavioral_analytics, "revisit_patterns", []),
            "performance": snap.performance,
        }

    def get_difficulty_analysis(self, user: models.User, test_id: Any, attempt_id: Any = None) -> dict:
        snap = self._snapshot(self._resolve_attempt(user, test_id, attempt_id))
        a = snap.attempt
        perceived = stored_or_default(a.difficulty_metrics, "perceived_difficulty", {})
        joined = {}
        for qid, answer in snap.by_question.items():
            # JSON object keys come back as strings
            ratios = perceived.get(str(qid))
            if not ratios:
                continue
            joined[str(qid)] = {
                "time_spent_ratio": ratios.get("time_spent_ratio"),
                "changes_ratio": ratios.get("changes_ratio"),
                "hesitation_ratio": ratios.get("hesitation_ratio"),
                "response": answer.get("answer_option_index"),
                "is_correct": answer["is_correct"],
            }
        return {
            "attempt_id": a.id,
            "perceived": perceived,
            "distribution": stored_or_default(a.difficulty_metrics, "difficulty_distribution", {"easy": 0, "medium": 0, "hard": 0}),
            "question_wise": joined,
            "performance": snap.performance,
        }

    def get_interaction_metrics(self, user: models.User, test_id: Any, attempt_id: Any = None) -> dict:
        snap = self._snapshot(self._resolve_attempt(user, test_id, attempt_id))
        a = snap.attempt
        environment = a.environment or {}
        session = environment.get("session") or {}
        return {
            "attempt_id": a.id,
            "mouse": stored_or_default(a.interaction_metrics, "mouse_movements", []),
            "keyboard": stored_or_default(a.interaction_metrics, "keyboard_usage", []),
            "scroll": stored_or_default(a.interaction_metrics, "scroll_patterns", []),
            "environment": environment,
            "session_metrics": {
                "tab_switches": session.get("tab_switches") or 0,
                "disconnections": session.get("disconnections") or [],
                "browser_refreshes": session.get("browser_refreshes") or 0,
            },
            "performance": snap.performance,
        }

    # -- historical views -------------------------------------------------

    def get_performance_trends(self, user: models.User, test_id: Any = None) -> List[dict]:
        """Stored per-attempt summaries ordered by start time."""
        attempts = self.a_repo.list_for_user(user.id, telemetry.parse_id(test_id))
        if not attempts:
            raise NotFoundError("No attempts found")
        return [
            {
                "attempt_id": a.id,
                "test_id": a.test_id,
                "attempt_number": a.attempt_number,
                "start_time": a.start_time,
                "end_time": a.end_time,
                "score": a.score,
                "total_correct_answers": a.total_correct_answers,
                "total_wrong_answers": a.total_wrong_answers,
                "total_unattempted": a.total_unattempted,
                "time_analytics": {
                    "average_time_per_question": stored_or_default(a.time_analytics, "average_time_per_question", 0),
                    "peak_performance_periods": len(stored_or_default(a.time_analytics, "peak_performance_periods", [])),
                },
                "strategy_metrics": a.strategy_metrics or {},
            }
            for a in attempts
        ]

    def get_subject_analysis(self, user: models.User) -> dict:
        attempts = self.a_repo.list_for_user(user.id)
        return aggregate_subject_analytics(a.subject_analytics for a in attempts)

    # -- solutions --------------------------------------------------------

    def get_solutions(self, user: models.User, attempt_id: Any) -> dict:
        """Answered questions with the current correct answers and explanations.

        Answers whose question is no longer part of the test are skipped.
        """
        aid = telemetry.parse_id(attempt_id)
        if aid is None:
            raise ValidationError("a valid attempt id is required")
        attempt = self.a_repo.get_owned(aid, user.id)
        if not attempt:
            raise NotFoundError("Attempted test not found for this user")
        snap = self._snapshot(attempt)
        solutions = []
        for qid, answer in snap.by_question.items():
            q = snap.question_map[qid]
            solutions.append({
                "question_id": qid,
                "text": q.text,
                "image_url": q.image_url,
                "question_type": q.question_type,
                "options": q.options or [],
                "user_selected": answer.get("answer_option_index"),
                "user_numerical_answer": answer.get("numerical_answer"),
                "correct_options": normalize_correct_options(q.correct_options),
                "numerical_answer": q.numerical_answer,
                "is_correct": answer["is_correct"],
                "explanation": q.explanation or "No explanation provided.",
                "solution": q.solution,
                "subject": q.subject or "General",
                "topic": q.topic or "General",
                "difficulty": q.difficulty,
            })
        return {
            "attempt_id": attempt.id,
            "test_id": attempt.test_id,
            "test_title": snap.test.title or "Test",
            "solutions": solutions,
        }
