"""FastAPI application entrypoint and HTTP controllers.

Controllers are intentionally thin: they accept requests, delegate to
services, and wrap results in the `{"status", "message", "data"}`
envelope. Every `ServiceError` raised below is rendered by one exception
handler with its HTTP status and stable `kind`.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- POST /questions, GET/PATCH/DELETE /questions/{id}
- POST /tests, GET/PATCH /tests/{id}, GET /tests/{id}/attempt
- POST /attempts
- GET /attempts/analysis, GET /attempts/{attempt_id}/analysis
- GET /attempts/analytics/{time,errors,navigation,difficulty,interaction}
- GET /attempts/trends, GET /attempts/subjects
- GET /attempts/{attempt_id}/solutions, DELETE /attempts/{attempt_id}
- GET /health
"""

from typing import Any, Optional
from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import analytics, models, repositories, services
from .auth import get_current_user, require_admin
from .config import settings
from .errors import AuthenticationError, ServiceError, ValidationError
from .schemas import AttemptSubmission, QuestionIn, QuestionUpdate, RegisterIn, TestIn, TestUpdate
from .utils.response_cache import ResponseCache

app = FastAPI(title="Exam Analytics API")
logger = logging.getLogger("exam_analytics.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_analysis_cache = ResponseCache(
    ttl_seconds=settings.ANALYSIS_CACHE_TTL_SECONDS,
    max_entries=settings.ANALYSIS_CACHE_MAX_ENTRIES,
)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error(
            "service_error %s",
            json.dumps({
                "request_id": getattr(request.state, "request_id", None),
                "kind": exc.kind,
                "message": exc.message,
                "detail": exc.detail,
            }),
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _ok(data: Any, message: str = "ok", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"status": "ok", "message": message, "data": data}),
    )


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new student account (idempotent).

    Returns the existing user if the username is already taken, so
    automation can call it repeatedly. Privileged accounts are provisioned
    through `AuthService.register` directly, never over this route.
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return _ok({'id': existing.id, 'username': existing.username, 'role': existing.role}, "User already registered")
    user = services.AuthService(db).register(payload.username, payload.password)
    return _ok({'id': user.id, 'username': user.username, 'role': user.role}, "User registered", 201)


@app.post('/auth/login')
def login(payload: RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a signed JWT token."""
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise AuthenticationError('invalid credentials')
    return _ok({'access_token': token, 'token_type': 'bearer'}, "Logged in")


# -- question catalog ------------------------------------------------------

@app.post('/questions')
def create_question(payload: QuestionIn, db: Session = Depends(get_session), user: models.User = Depends(require_admin)):
    q = services.QuestionService(db, _analysis_cache).create(user, payload.model_dump())
    return _ok(services.serialize_question(q), "Question created", 201)


@app.get('/questions/{question_id}')
def get_question(question_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    q = services.QuestionService(db).get(question_id)
    return _ok(services.serialize_question(q, include_answer=user.is_privileged), "Question fetched")


@app.patch('/questions/{question_id}')
def update_question(question_id: str, payload: QuestionUpdate, db: Session = Depends(get_session), user: models.User = Depends(require_admin)):
    data = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not data:
        raise ValidationError("no update data provided")
    q = services.QuestionService(db, _analysis_cache).update(user, question_id, data)
    return _ok(services.serialize_question(q), "Question updated")


@app.delete('/questions/{question_id}')
def delete_question(question_id: str, db: Session = Depends(get_session), user: models.User = Depends(require_admin)):
    deleted = services.QuestionService(db, _analysis_cache).delete(question_id)
    return _ok({'deleted_id': deleted}, "Question deleted")


# -- test definitions ------------------------------------------------------

@app.post('/tests')
def create_test(payload: TestIn, db: Session = Depends(get_session), user: models.User = Depends(require_admin)):
    t = services.TestService(db).create(user, payload.model_dump())
    return _ok(services.serialize_test(t), "Test created successfully", 201)


@app.get('/tests/{test_id}')
def get_test(test_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    t = services.TestService(db).get(user, test_id)
    return _ok(services.serialize_test(t), "Test fetched successfully")


@app.patch('/tests/{test_id}')
def update_test(test_id: str, payload: TestUpdate, db: Session = Depends(get_session), user: models.User = Depends(require_admin)):
    t = services.TestService(db, _analysis_cache).update(user, test_id, payload.model_dump(exclude_unset=True, exclude_none=True))
    return _ok(services.serialize_test(t), "Test updated successfully")


@app.get('/tests/{test_id}/attempt')
def get_test_for_attempt(test_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _ok(services.TestService(db).get_for_attempt(user, test_id), "Test fetched successfully")


# -- attempts and analytics ------------------------------------------------

@app.post('/attempts')
def submit_attempt(payload: AttemptSubmission, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    result = services.AttemptService(db, _analysis_cache).submit(user, payload.model_dump())
    return _ok(result, "Test submitted successfully", 201)


@app.get('/attempts/analysis')
def detailed_analysis(
    attempt_id: Optional[str] = None,
    paper_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    data = analytics.AnalyticsService(db, _analysis_cache).get_detailed_analysis(user, attempt_id, paper_id)
    return _ok(data, "Detailed test analysis fetched successfully")


@app.get('/attempts/analytics/time')
def time_analytics(test_id: Optional[str] = None, attempt_id: Optional[str] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = analytics.AnalyticsService(db).get_time_analytics(user, test_id, attempt_id)
    return _ok(data, "Time analytics fetched successfully")


@app.get('/attempts/analytics/errors')
def error_analysis(test_id: Optional[str] = None, attempt_id: Optional[str] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = analytics.AnalyticsService(db).get_error_analysis(user, test_id, attempt_id)
    return _ok(data, "Error analysis fetched successfully")


@app.get('/attempts/analytics/navigation')
def navigation_patterns(test_id: Optional[str] = None, attempt_id: Optional[str] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = analytics.AnalyticsService(db).get_navigation_patterns(user, test_id, attempt_id)
    return _ok(data, "Navigation patterns fetched successfully")


@app.get('/attempts/analytics/difficulty')
def difficulty_analysis(test_id: Optional[str] = None, attempt_id: Optional[str] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = analytics.AnalyticsService(db).get_difficulty_analysis(user, test_id, attempt_id)
    return _ok(data, "Difficulty analysis fetched successfully")


@app.get('/attempts/analytics/interaction')
def interaction_metrics(test_id: Optional[str] = None, attempt_id: Optional[str] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = analytics.AnalyticsService(db).get_interaction_metrics(user, test_id, attempt_id)
    return _ok(data, "Interaction metrics fetched successfully")


@app.get('/attempts/trends')
def performance_trends(test_id: Optional[str] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = analytics.AnalyticsService(db).get_performance_trends(user, test_id)
    return _ok(data, "Performance trends fetched successfully")


@app.get('/attempts/subjects')
def subject_analysis(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _ok(analytics.AnalyticsService(db).get_subject_analysis(user), "Subject analysis fetched successfully")


@app.get('/attempts/{attempt_id}/analysis')
def detailed_analysis_by_id(attempt_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = analytics.AnalyticsService(db, _analysis_cache).get_detailed_analysis(user, attempt_id)
    return _ok(data, "Detailed test analysis fetched successfully")


@app.get('/attempts/{attempt_id}/solutions')
def solutions(attempt_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _ok(analytics.AnalyticsService(db).get_solutions(user, attempt_id), "Solutions fetched successfully")


@app.delete('/attempts/{attempt_id}')
def delete_attempt(attempt_id: str, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    data = services.AttemptService(db, _analysis_cache).delete(user, attempt_id)
    return _ok(data, "Test attempt deleted successfully")


@app.get("/health")
def health():
    """Simple liveness endpoint."""
    return {"status": "ok"}
