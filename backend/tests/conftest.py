from pathlib import Path
import os
import tempfile
import pytest

# settings are read at import time, so point them at a throwaway database first
_TMP_DIR = tempfile.mkdtemp(prefix="exam_analytics_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TMP_DIR) / 'test.db'}"
os.environ["ANALYSIS_CACHE_TTL_SECONDS"] = "0"
os.environ.setdefault("ENV", "dev")

from sqlmodel import Session  # noqa: E402
from exam_analytics import services  # noqa: E402
from exam_analytics.database import create_db_and_tables, drop_db_and_tables, engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test empty tables."""
    drop_db_and_tables()
    create_db_and_tables()
    yield


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


def make_user(username, role="student", password="pass123"):
    """Create a user directly through the service and return (user_id, auth headers)."""
    with Session(engine) as s:
        auth = services.AuthService(s)
        user = auth.register(username, password, role=role)
        token = auth.authenticate(username, password)
        return user.id, {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin():
    return make_user("admin", role="admin")


@pytest.fixture
def student():
    return make_user("student")


@pytest.fixture
def other_student():
    return make_user("student2")


def build_question_payload(**overrides):
    body = {
        "text": "Pick one",
        "question_type": "single",
        "options": [{"text": "a"}, {"text": "b"}, {"text": "c"}],
        "correct_options": [0],
        "subject": "Physics",
        "chapter": "Kinematics",
        "difficulty": "medium",
        "marks": 4,
    }
    body.update(overrides)
    return body


def build_test_payload(question_ids, **overrides):
    body = {
        "title": "Mock 1",
        "test_category": "Platform",
        "platform_test_type": "Mock",
        "status": "published",
        "questions": question_ids,
        "duration": 60,
        "subject": "Physics",
        "exam_type": "JEE",
        "class_name": "12",
        "marking_scheme": {"correct": 4, "incorrect": -1, "unattempted": 0},
    }
    body.update(overrides)
    return body


@pytest.fixture
def scored_test(client, admin):
    """Two-question published test: A (single, correct [1]) and B (multiple, correct [0, 2])."""
    _, headers = admin
    a = client.post("/questions", json=build_question_payload(text="A", correct_options=[1]), headers=headers)
    assert a.status_code == 201, a.text
    b = client.post(
        "/questions",
        json=build_question_payload(text="B", question_type="multiple", correct_options=[0, 2], subject="Chemistry", chapter="Bonding"),
        headers=headers,
    )
    assert b.status_code == 201, b.text
    qa, qb = a.json()["data"]["id"], b.json()["data"]["id"]
    t = client.post("/tests", json=build_test_payload([qa, qb]), headers=headers)
    assert t.status_code == 201, t.text
    return {"test_id": t.json()["data"]["id"], "qa": qa, "qb": qb}


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from exam_analytics.main import app
    return TestClient(app)
