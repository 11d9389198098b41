"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
questions, tests, attempts). Repositories return SQLModel objects; the
ones that write commit and refresh. Attempt lookups always take the
owning `user_id` so callers cannot see other users' attempts.
"""

import json
import logging
from typing import Dict, Iterable, List, Optional
from sqlmodel import Session, select
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from . import models

logger = logging.getLogger("exam_analytics.attempts")


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


class QuestionRepository:
    """Read and write access to the question catalog."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, question_id: int) -> Optional[models.Question]:
        """Fetch a question by id."""
        return self.session.get(models.Question, question_id)

    def get_many(self, question_ids: Iterable[int]) -> Dict[int, models.Question]:
        """Batch-load questions and return them keyed by id.

        Ids with no catalog entry are simply absent from the result.
        """
        ids = list(dict.fromkeys(question_ids))
        if not ids:
            return {}
        stmt = select(models.Question).where(models.Question.id.in_(ids))
        return {q.id: q for q in self.session.exec(stmt).all()}

    def save(self, question: models.Question) -> models.Question:
        self.session.add(question)
        self.session.commit()
        self.session.refresh(question)
        return question

    def delete(self, question: models.Question) -> None:
        self.session.delete(question)
        self.session.commit()


class TestRepository:
    """Persistence for test definitions."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, test_id: int) -> Optional[models.Test]:
        return self.session.get(models.Test, test_id)

    def save(self, test: models.Test) -> models.Test:
        self.session.add(test)
        self.session.commit()
        self.session.refresh(test)
        return test

    def list_referencing(self, question_id: int) -> List[models.Test]:
        """Return tests whose question list contains `question_id`.

        The list lives in a JSON column, so the filter runs in Python.
        """
        tests = self.session.exec(select(models.Test)).all()
        return [t for t in tests if question_id in (t.questions or [])]


class AttemptRepository:
    """Persistence and owner-scoped queries for `AttemptedTest` records."""
    def __init__(self, session: Session):
        self.session = session

    def max_attempt_number(self, user_id: int, test_id: int) -> int:
        """Highest stored attempt number for the pair, or 0 when none exist."""
        stmt = select(func.max(models.AttemptedTest.attempt_number)).where(
            models.AttemptedTest.user_id == user_id,
            models.AttemptedTest.test_id == test_id
        )
        return self.session.exec(stmt).first() or 0

    def count_for_pair(self, user_id: int, test_id: int) -> int:
        stmt = select(func.count(models.AttemptedTest.id)).where(
            models.AttemptedTest.user_id == user_id,
            models.AttemptedTest.test_id == test_id
        )
        return self.session.exec(stmt).first() or 0

    def create_numbered(self, attempt: models.AttemptedTest, retries: int = 3) -> models.AttemptedTest:
        """Assign `max + 1` as the attempt number and persist the attempt.

        The number is read immediately before the insert. A concurrent
        submission for the same (user, test) pair that wins the race trips
        the unique index; the insert is then rolled back and retried with a
        fresh read, up to `retries` times.
        """
        for attempt_try in range(1, retries + 1):
            attempt.attempt_number = self.max_attempt_number(attempt.user_id, attempt.test_id) + 1
            self.session.add(attempt)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                logger.warning(
                    "attempt_number_conflict %s",
                    json.dumps({
                        "user_id": attempt.user_id,
                        "test_id": attempt.test_id,
                        "attempt_number": attempt.attempt_number,
                        "try": attempt_try,
                    }),
                )
                continue
            self.session.refresh(attempt)
            return attempt
        raise RuntimeError(f"could not assign an attempt number after {retries} tries")

    def get_owned(self, attempt_id: int, user_id: int) -> Optional[models.AttemptedTest]:
        stmt = select(models.AttemptedTest).where(
            models.AttemptedTest.id == attempt_id,
            models.AttemptedTest.user_id == user_id
        )
        return self.session.exec(stmt).first()

    def latest_for_test(self, user_id: int, test_id: int) -> Optional[models.AttemptedTest]:
        """Most recent attempt of `user_id` at `test_id`."""
        stmt = select(models.AttemptedTest).where(
            models.AttemptedTest.user_id == user_id,
            models.AttemptedTest.test_id == test_id
        ).order_by(models.AttemptedTest.created_at.desc(), models.AttemptedTest.id.desc())
        return self.session.exec(stmt).first()

    def list_for_test(self, user_id: int, test_id: int) -> List[models.AttemptedTest]:
        """All attempts of the pair, newest first."""
        stmt = select(models.AttemptedTest).where(
            models.AttemptedTest.user_id == user_id,
            models.AttemptedTest.test_id == test_id
        ).order_by(models.AttemptedTest.created_at.desc(), models.AttemptedTest.id.desc())
        return self.session.exec(stmt).all()

    def list_for_user(self, user_id: int, test_id: Optional[int] = None) -> List[models.AttemptedTest]:
        """All attempts of `user_id` (optionally for one test), oldest start first."""
        stmt = select(models.AttemptedTest).where(models.AttemptedTest.user_id == user_id)
        if test_id is not None:
            stmt = stmt.where(models.AttemptedTest.test_id == test_id)
        stmt = stmt.order_by(models.AttemptedTest.start_time, models.AttemptedTest.id)
        return self.session.exec(stmt).all()

    def delete(self, attempt: models.AttemptedTest) -> None:
        self.session.delete(attempt)
        self.session.commit()
