"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories and
the pure helpers in `utils`. Services perform validation, execute domain
logic and persist aggregates via repositories. They raise the exceptions
from `errors` and never return partial state: every multi-step write is
computed in full before the single commit.
"""

from datetime import datetime, timedelta, timezone
from passlib.context import CryptContext
import json
import jwt
import logging
from typing import List, Optional
from sqlmodel import Session
from . import models, repositories
from .config import settings
from .errors import (
    AuthenticationError,
    AuthorizationError,
    InternalError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from .utils import telemetry
from .utils.attempt_analytics import build_subject_analytics, build_time_analytics
from .utils.response_cache import ResponseCache
from .utils.scoring import normalize_correct_options, reconcile_answers, resolve_marking_scheme, score_summary

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ROLES = ("student", "admin", "superadmin")
QUESTION_TYPES = ("single", "multiple", "numerical")
DIFFICULTIES = ("easy", "medium", "hard")
TEST_CATEGORIES = ("PYQ", "Platform", "UserCustom")
TEST_STATUSES = ("draft", "published", "archived")
TEST_DIFFICULTIES = ("easy", "medium", "hard", "mixed")
SOLUTIONS_VISIBILITY = ("immediate", "after_submission", "after_deadline", "manual")
PLATFORM_TEST_TYPES = ("Mock", "Practice", "Chapter", "FullSyllabus", "TopicWise", "Diagnostic", "Sectional")

test_logger = logging.getLogger("exam_analytics.tests")
question_logger = logging.getLogger("exam_analytics.questions")
attempt_logger = logging.getLogger("exam_analytics.attempts")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_question(q: models.Question, include_answer: bool = True) -> dict:
    """Plain-dict view of a question; answers are omitted for exam clients."""
    out = {
        "id": q.id,
        "text": q.text,
        "image_url": q.image_url,
        "question_type": q.question_type,
        "options": q.options or [],
        "subject": q.subject,
        "chapter": q.chapter,
        "section": q.section,
        "topic": q.topic,
        "class_name": q.class_name,
        "exam_type": q.exam_type,
        "difficulty": q.difficulty,
        "marks": q.marks,
        "negative_marks": q.negative_marks,
    }
    if include_answer:
        out["correct_options"] = normalize_correct_options(q.correct_options)
        out["numerical_answer"] = q.numerical_answer
        out["explanation"] = q.explanation
        out["solution"] = q.solution
    return out


def serialize_test(t: models.Test) -> dict:
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "tags": t.tags or [],
        "test_category": t.test_category,
        "status": t.status,
        "instructions": t.instructions,
        "solutions_visibility": t.solutions_visibility,
        "attempts_allowed": t.attempts_allowed,
        "questions": t.questions or [],
        "question_count": t.question_count,
        "total_marks": t.total_marks,
        "duration": t.duration,
        "marking_scheme": t.marking_scheme,
        "subject": t.subject,
        "exam_type": t.exam_type,
        "class_name": t.class_name,
        "difficulty": t.difficulty,
        "year": t.year,
        "month": t.month,
        "day": t.day,
        "session": t.session,
        "platform_test_type": t.platform_test_type,
        "is_premium": t.is_premium,
        "syllabus": t.syllabus,
        "is_public": t.is_public,
        "generation_criteria": t.generation_criteria,
        "created_by": t.created_by,
        "last_modified_by": t.last_modified_by,
        "revision_history": t.revision_history or [],
        "created_at": t.created_at,
        "updated_at": t.updated_at,
    }


class AuthService:
    """Authentication related operations (register + authenticate + token lookup)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str, role: str = "student") -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        if role not in ROLES:
            raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed, role=role)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str) -> Optional[str]:
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = _utcnow() + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "role": user.role, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def user_from_token(self, token: str) -> models.User:
        """Decode a bearer token and return its user, or raise AuthenticationError."""
        try:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("token expired")
        except jwt.PyJWTError:
            raise AuthenticationError("invalid token")
        user_id = payload.get("user_id")
        if not user_id:
            raise AuthenticationError("invalid token payload")
        user = self.user_repo.get(user_id)
        if not user:
            raise AuthenticationError("user not found")
        return user


class QuestionService:
    """Minimal catalog maintenance: create, edit, delete and fetch questions."""
    def __init__(self, session: Session, cache: Optional[ResponseCache] = None):
        self.session = session
        self.cache = cache
        self.q_repo = repositories.QuestionRepository(session)
        self.t_repo = repositories.TestRepository(session)

    def get(self, question_id) -> models.Question:
        qid = telemetry.parse_id(question_id)
        q = self.q_repo.get(qid) if qid else None
        if not q:
            raise NotFoundError("Question not found")
        return q

    def create(self, author: models.User, data: dict) -> models.Question:
        self._validate(data)
        q = models.Question(author_id=author.id, **data)
        q = self.q_repo.save(q)
        question_logger.info("question_created %s", json.dumps({"question_id": q.id, "type": q.question_type}))
        return q

    def update(self, user: models.User, question_id, data: dict) -> models.Question:
        """Apply a partial update and keep dependent test totals in step.

        When `marks` changes, every test referencing the question gets its
        `total_marks` recomputed and is written in the same commit.
        """
        q = self.get(question_id)
        changes = data.pop("changes", None) or "Question updated"
        merged = serialize_question(q)
        merged.update(data)
        self._validate(merged)
        marks_changed = "marks" in data and data["marks"] != q.marks
        for key, value in data.items():
            setattr(q, key, value)
        q.updated_at = _utcnow()
        q.revision_history = list(q.revision_history or []) + [{
            "version": len(q.revision_history or []) + 1,
            "modified_by": user.id,
            "changes": changes,
            "timestamp": _utcnow().isoformat(),
        }]
        self.session.add(q)
        try:
            if marks_changed:
                self.session.flush()
                for t in self.t_repo.list_referencing(q.id):
                    TestService(self.session).recompute_totals(t)
                    self.session.add(t)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            question_logger.exception("question_update_failed %s", json.dumps({"question_id": q.id}))
            raise InternalError("Failed to update question", detail=str(exc)) from exc
        self.session.refresh(q)
        if self.cache is not None:
            self.cache.clear()
        return q

    def delete(self, question_id) -> int:
        q = self.get(question_id)
        qid = q.id
        self.q_repo.delete(q)
        if self.cache is not None:
            self.cache.clear()
        question_logger.info("question_deleted %s", json.dumps({"question_id": qid}))
        return qid

    def _validate(self, p: dict):
        """Validate a question document and raise ValidationError on error."""
        qtype = p.get("question_type") or "single"
        if qtype not in QUESTION_TYPES:
            raise ValidationError(f"question_type must be one of: {', '.join(QUESTION_TYPES)}")
        if not (p.get("text") or "").strip() and not (p.get("image_url") or "").strip():
            raise ValidationError("question must have either text or image content")
        if not p.get("subject"):
            raise ValidationError("subject is required")
        if p.get("difficulty") and p["difficulty"] not in DIFFICULTIES:
            raise ValidationError(f"difficulty must be one of: {', '.join(DIFFICULTIES)}")
        if (p.get("marks") or 0) < 0:
            raise ValidationError("marks cannot be negative")
        if (p.get("negative_marks") or 0) > 0:
            raise ValidationError("negative_marks must be zero or negative")
        if qtype == "numerical":
            spec = p.get("numerical_answer")
            if not spec or spec.get("exact_value") is None or not spec.get("range"):
                raise ValidationError("numerical_answer with exact_value and range is required for numerical questions")
            rng = spec["range"]
            if rng.get("min") is None or rng.get("max") is None or rng["min"] > rng["max"]:
                raise ValidationError("numerical_answer.range must have min <= max")
            return
        options = p.get("options") or []
        if len(options) < 2:
            raise ValidationError("options must contain at least two entries for choice questions")
        for o in options:
            if not (o.get("text") or "").strip() and not (o.get("image_url") or "").strip():
                raise ValidationError("each option must have either text or image content")
        correct = p.get("correct_options") or []
        if not isinstance(correct, list):
            correct = [correct]
        if qtype == "single" and len(correct) != 1:
            raise ValidationError("single choice questions must have exactly one correct option")
        if qtype == "multiple" and len(correct) < 1:
            raise ValidationError("multiple choice questions need at least one correct option")
        if len(set(correct)) != len(correct):
            raise ValidationError("correct_options contains duplicates")
        for idx in correct:
            if not isinstance(idx, int) or idx < 0 or idx >= len(options):
                raise ValidationError(f"correct option index out of range: {idx}")


class TestService:
    """Create, update and read test definitions.

    `question_count` and `total_marks` are derived here, synchronously,
    before any write that changes the question list.
    """
    def __init__(self, session: Session, cache: Optional[ResponseCache] = None):
        self.session = session
        self.cache = cache
        self.t_repo = repositories.TestRepository(session)
        self.q_repo = repositories.QuestionRepository(session)

    def recompute_totals(self, test: models.Test) -> models.Test:
        """Derive `question_count` and `total_marks` from `test.questions`."""
        ids = list(test.questions or [])
        questions = self.q_repo.get_many(ids)
        test.question_count = len(ids)
        test.total_marks = sum((questions[i].marks or 0) for i in ids if i in questions)
        test_logger.info(
            "test_totals_recomputed %s",
            json.dumps({"test_id": test.id, "question_count": test.question_count, "total_marks": test.total_marks}),
        )
        return test

    def create(self, user: models.User, data: dict) -> models.Test:
        data = dict(data)
        self._check_category_fields(data)
        self._check_common(data, creating=True)
        self._check_questions(data.get("questions"))
        t = models.Test(created_by=user.id, last_modified_by=user.id, **data)
        try:
            self.recompute_totals(t)
            t = self.t_repo.save(t)
        except ServiceError:
            raise
        except Exception as exc:
            self.session.rollback()
            test_logger.exception("test_create_failed %s", json.dumps({"title": data.get("title")}))
            raise InternalError("Failed to create the test", detail=str(exc)) from exc
        test_logger.info("test_created %s", json.dumps({"test_id": t.id, "category": t.test_category}))
        return t

    def update(self, user: models.User, test_id, data: dict) -> models.Test:
        t = self._get(test_id)
        data = dict(data)
        if not data:
            raise ValidationError("no update data provided")
        changes = data.pop("changes_description", None) or "Test details updated"
        for key in ("created_by", "test_category", "revision_history", "question_count", "total_marks"):
            data.pop(key, None)
        merged = serialize_test(t)
        merged.update(data)
        self._check_category_fields(merged)
        self._check_common(merged, creating=False)
        if "questions" in data:
            self._check_questions(data["questions"])
        for key, value in data.items():
            setattr(t, key, value)
        t.last_modified_by = user.id
        t.updated_at = _utcnow()
        history = list(t.revision_history or [])
        history.append({
            "version": len(history) + 1,
            "modified_by": user.id,
            "changes_description": changes,
            "timestamp": _utcnow().isoformat(),
        })
        t.revision_history = history
        try:
            if "questions" in data:
                self.recompute_totals(t)
            t = self.t_repo.save(t)
        except Exception as exc:
            self.session.rollback()
            test_logger.exception("test_update_failed %s", json.dumps({"test_id": t.id}))
            raise InternalError("Failed to update the test", detail=str(exc)) from exc
        if self.cache is not None and ("questions" in data or "marking_scheme" in data):
            self.cache.clear()
        return t

    def get(self, user: models.User, test_id) -> models.Test:
        """Fetch a test; non-privileged users only see published ones."""
        t = self._get(test_id)
        if not user.is_privileged and t.status != "published":
            raise AuthorizationError("You do not have permission to view this test")
        return t

    def get_for_attempt(self, user: models.User, test_id) -> dict:
        """Attempt-facing view of a test without answers or explanations."""
        t = self._get(test_id)
        if not user.is_privileged and t.status != "published":
            raise AuthorizationError("This test is not available for attempt")
        questions = self.q_repo.get_many(t.questions or [])
        ordered = [questions[i] for i in (t.questions or []) if i in questions]
        if not ordered:
            raise NotFoundError("Test has no questions")
        return {
            "id": t.id,
            "title": t.title,
            "description": t.description,
            "subject": t.subject,
            "exam_type": t.exam_type,
            "difficulty": t.difficulty,
            "duration": t.duration,
            "total_questions": len(ordered),
            "marking_scheme": resolve_marking_scheme(t.marking_scheme),
            "year": t.year,
            "platform_test_type": t.platform_test_type,
            "session": t.session or "",
            "questions": [serialize_question(q, include_answer=False) for q in ordered],
        }

    def _get(self, test_id) -> models.Test:
        tid = telemetry.parse_id(test_id)
        if tid is None:
            raise ValidationError("invalid test id")
        t = self.t_repo.get(tid)
        if not t:
            raise NotFoundError("Test not found")
        return t

    def _check_questions(self, question_ids: List[int]):
        if not question_ids:
            raise ValidationError("test must contain at least one question")
        if len(set(question_ids)) != len(question_ids):
            raise ValidationError("questions contains duplicate ids")
        found = self.q_repo.get_many(question_ids)
        missing = [i for i in question_ids if i not in found]
        if missing:
            raise ValidationError(f"questions contains unknown ids: {missing}")

    def _check_common(self, p: dict, creating: bool):
        for field in ("title", "test_category", "duration", "subject", "exam_type", "class_name"):
            if creating and not p.get(field):
                raise ValidationError(f"{field} is required")
        if p.get("duration") is not None and p["duration"] < 1:
            raise ValidationError("duration must be at least 1 minute")
        if p.get("status", "draft") not in TEST_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(TEST_STATUSES)}")
        if p.get("difficulty") and p["difficulty"] not in TEST_DIFFICULTIES:
            raise ValidationError(f"difficulty must be one of: {', '.join(TEST_DIFFICULTIES)}")
        if p.get("solutions_visibility") and p["solutions_visibility"] not in SOLUTIONS_VISIBILITY:
            raise ValidationError(f"solutions_visibility must be one of: {', '.join(SOLUTIONS_VISIBILITY)}")
        if p.get("attempts_allowed") is not None and p["attempts_allowed"] < 1:
            raise ValidationError("attempts_allowed must be at least 1")
        scheme = p.get("marking_scheme") or {}
        if (scheme.get("incorrect") or 0) > 0:
            raise ValidationError("marking_scheme.incorrect must be zero or negative")
        if (scheme.get("unattempted") or 0) > 0:
            raise ValidationError("marking_scheme.unattempted must be zero or negative")

    def _check_category_fields(self, p: dict):
        """Enforce the mutually exclusive per-category fields.

        Mismatched fields that only carry presentation data are cleared;
        year/month/day and platform_test_type on the wrong category are
        rejected.
        """
        category = p.get("test_category")
        if category not in TEST_CATEGORIES:
            raise ValidationError(f"test_category must be one of: {', '.join(TEST_CATEGORIES)}")
        if category == "PYQ":
            year = p.get("year")
            if year is None:
                raise ValidationError("year is required for PYQ tests")
            if year < 1900 or year > _utcnow().year + 1:
                raise ValidationError(f"{year} is not a valid year")
            if p.get("month") is not None and not 1 <= p["month"] <= 12:
                raise ValidationError("month must be between 1 and 12")
            if p.get("day") is not None and not 1 <= p["day"] <= 31:
                raise ValidationError("day must be between 1 and 31")
        else:
            for field in ("year", "month", "day"):
                if p.get(field) is not None:
                    raise ValidationError(f"{field} should only be set for PYQ tests")
            if "session" in p:
                p["session"] = None
        if category == "Platform":
            ptype = p.get("platform_test_type")
            if not ptype:
                raise ValidationError("platform_test_type is required for Platform tests")
            if ptype not in PLATFORM_TEST_TYPES:
                raise ValidationError(f"platform_test_type must be one of: {', '.join(PLATFORM_TEST_TYPES)}")
        else:
            if p.get("platform_test_type") is not None:
                raise ValidationError("platform_test_type should only be set for Platform tests")
            for field in ("is_premium", "syllabus"):
                if field in p:
                    p[field] = False if field == "is_premium" else None
        if category != "UserCustom":
            if "generation_criteria" in p:
                p["generation_criteria"] = None
            if "is_public" in p:
                p["is_public"] = False
        for field in ("is_premium", "is_public"):
            if field in p and p[field] is None:
                p[field] = False


class AttemptService:
    """Turn raw submissions into scored attempt records, and delete them."""
    def __init__(self, session: Session, cache: Optional[ResponseCache] = None):
        self.session = session
        self.cache = cache
        self.t_repo = repositories.TestRepository(session)
        self.q_repo = repositories.QuestionRepository(session)
        self.a_repo = repositories.AttemptRepository(session)

    def submit(self, user: models.User, payload: dict) -> dict:
        """Validate, score and persist one submission.

        Correctness is decided against the current catalog, not against
        anything the client sent. Malformed optional telemetry is coerced
        to empty shapes. The attempt number is assigned immediately before
        the insert (see `AttemptRepository.create_numbered`).
        """
        test_id = telemetry.parse_id(payload.get("test_id"))
        if test_id is None:
            raise ValidationError("test_id is required")
        raw_answers = payload.get("answers")
        if not isinstance(raw_answers, list):
            raise ValidationError("answers must be an array")
        attempt_logger.info(
            "submission_received %s",
            json.dumps({"user_id": user.id, "test_id": test_id, "answer_count": len(raw_answers)}),
        )
        test = self.t_repo.get(test_id)
        if not test:
            raise NotFoundError("Test definition not found")
        if not user.is_privileged and test.status != "published":
            raise AuthorizationError("This test is not available for attempt")
        if test.attempts_allowed is not None and self.a_repo.count_for_pair(user.id, test.id) >= test.attempts_allowed:
            raise AuthorizationError("No attempts remaining for this test")

        try:
            attempt = self._build_attempt(user, test, payload, raw_answers)
            attempt = self.a_repo.create_numbered(attempt, retries=settings.ATTEMPT_NUMBER_RETRIES)
        except ServiceError:
            raise
        except Exception as exc:
            self.session.rollback()
            attempt_logger.exception("submission_failed %s", json.dumps({"user_id": user.id, "test_id": test_id}))
            raise InternalError("Error submitting test", detail=str(exc)) from exc

        attempt_logger.info(
            "attempt_saved %s",
            json.dumps({
                "attempt_id": attempt.id,
                "attempt_number": attempt.attempt_number,
                "correct": attempt.total_correct_answers,
                "wrong": attempt.total_wrong_answers,
                "unattempted": attempt.total_unattempted,
                "score": attempt.score,
            }),
        )
        if self.cache is not None:
            self.cache.invalidate_user(user.id)
        return {
            "attempt_id": attempt.id,
            "attempt_number": attempt.attempt_number,
            "analysis_url": f"/results/{attempt.id}",
        }

    def _build_attempt(self, user: models.User, test: models.Test, payload: dict, raw_answers: list) -> models.AttemptedTest:
        question_map = self.q_repo.get_many(test.questions or [])
        answers = telemetry.normalize_answers(raw_answers)
        reconciled = reconcile_answers(answers, question_map, len(question_map))
        summary = score_summary(reconciled, len(question_map), test.total_marks, test.marking_scheme)

        end_time = telemetry.to_datetime(payload.get("end_time"), _utcnow())
        total_time = telemetry.as_number(payload.get("total_time_taken"), None)
        if total_time is None:
            if payload.get("start_time") is not None:
                start = telemetry.to_datetime(payload.get("start_time"), end_time)
                total_time = max((end_time - start).total_seconds(), 0)
            else:
                total_time = 0
        try:
            default_start = end_time - timedelta(seconds=total_time)
        except OverflowError:
            default_start = end_time
        start_time = telemetry.to_datetime(payload.get("start_time"), default_start)

        language = payload.get("language") or settings.DEFAULT_LANGUAGE
        stored_answers = reconciled["answers"]
        metadata = telemetry.normalize_metadata(payload.get("metadata"), stored_answers, len(question_map), language)

        return models.AttemptedTest(
            user_id=user.id,
            test_id=test.id,
            language=language,
            start_time=start_time,
            end_time=end_time,
            total_time_taken=total_time,
            attempt_metadata=metadata,
            answers=stored_answers,
            question_states=telemetry.normalize_question_states(payload.get("question_states"), stored_answers),
            navigation_history=telemetry.normalize_navigation_history(payload.get("navigation_history")),
            environment=telemetry.normalize_environment(payload.get("environment")),
            interaction_metrics=telemetry.normalize_interaction_metrics(payload.get("interaction_metrics")),
            time_analytics=build_time_analytics(stored_answers, total_time),
            subject_analytics=build_subject_analytics(stored_answers, question_map, test.marking_scheme),
            total_correct_answers=summary["correct"],
            total_wrong_answers=summary["wrong"],
            total_unattempted=summary["unattempted"],
            total_visited_questions=len(metadata["visited_questions"]),
            score=summary["score"],
        )

    def delete(self, user: models.User, attempt_id) -> dict:
        """Delete one of the caller's attempts.

        Another user's attempt is reported exactly like a missing one.
        """
        aid = telemetry.parse_id(attempt_id)
        if aid is None:
            raise ValidationError("Invalid attempt ID format")
        attempt = self.a_repo.get_owned(aid, user.id)
        if not attempt:
            raise NotFoundError("Test attempt not found")
        self.a_repo.delete(attempt)
        if self.cache is not None:
            self.cache.invalidate_user(user.id)
        attempt_logger.info("attempt_deleted %s", json.dumps({"attempt_id": aid, "user_id": user.id}))
        return {"deleted_id": aid}
