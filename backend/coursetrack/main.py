"""FastAPI application entrypoint and HTTP controllers.

Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses. Engine errors are turned into HTTP
status codes by the exception handlers registered below.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- GET/POST /courses, GET/DELETE /courses/{id}
- POST /courses/{id}/lessons, DELETE /lessons/{id}
- POST /courses/{id}/quizzes, GET/DELETE /quizzes/{id}
- POST/DELETE /courses/{id}/enroll
- POST /lessons/{id}/complete, PUT /lessons/{id}/progress
- POST /quizzes/{id}/submit, GET /quizzes/{id}/results, GET /quizzes/{id}/stats
- GET /progress/course/{id}, GET /progress/course/{id}/detailed
- GET /progress/overview, GET /progress/stats
- POST /progress/course/{id}/certificate, GET /progress/certificates
"""

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
import os
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import services, repositories, models
from .auth import get_current_user, require_admin
from .schemas import CourseIn, LessonActivityIn, LessonIn, QuizIn, QuizSubmission, RegisterIn, TokenOut
from .config import settings
from .errors import (
    AlreadyIssuedError,
    AttemptLimitError,
    ConcurrentUpdateError,
    InvalidInputError,
    NotEligibleError,
    NotEnrolledError,
    NotFoundError,
    ProgressEngineError,
    QuizInactiveError,
)

app = FastAPI(title="Course Progress API")
logger = logging.getLogger("coursetrack.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()

_STATUS_BY_ERROR = [
    (NotFoundError, 404),
    (NotEnrolledError, 403),
    (ConcurrentUpdateError, 409),
    (InvalidInputError, 400),
    (NotEligibleError, 400),
    (AlreadyIssuedError, 400),
    (AttemptLimitError, 400),
    (QuizInactiveError, 400),
]


@app.exception_handler(ProgressEngineError)
async def engine_error_handler(request: Request, exc: ProgressEngineError):
    status = next((code for kind, code in _STATUS_BY_ERROR if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status, content={'detail': str(exc), 'error': type(exc).__name__})


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
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the username is taken, which keeps
    automation and tests simple.
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username, 'role': existing.role}
    user = services.AuthService(db).register(payload.username, payload.password)
    return {'id': user.id, 'username': user.username, 'role': user.role}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token."""
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


# -- catalog --

@app.get('/courses')
def list_courses(db: Session = Depends(get_session)):
    return services.CatalogService(db).list_courses()


@app.post('/courses', status_code=201)
def create_course(payload: CourseIn, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    course = services.CatalogService(db).create_course(**payload.model_dump())
    return {'id': course.id, 'title': course.title, 'description': course.description,
            'category': course.category, 'level': course.level}


@app.get('/courses/{course_id}')
def get_course(course_id: int, db: Session = Depends(get_session)):
    return services.CatalogService(db).course_detail(course_id)


@app.delete('/courses/{course_id}')
def delete_course(course_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """Delete a course together with its lessons, quizzes, enrollments and progress."""
    services.CatalogService(db).delete_course(course_id)
    return {'status': 'deleted'}


@app.post('/courses/{course_id}/lessons', status_code=201)
def create_lesson(course_id: int, payload: LessonIn, db: Session = Depends(get_session),
                  admin: models.User = Depends(require_admin)):
    lesson = services.CatalogService(db).create_lesson(course_id, **payload.model_dump())
    return {'id': lesson.id, 'course_id': lesson.course_id, 'title': lesson.title, 'order': lesson.order}


@app.delete('/lessons/{lesson_id}')
def delete_lesson(lesson_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """Delete a lesson and prune it from every learner's progress."""
    touched = services.CatalogService(db).delete_lesson(lesson_id)
    return {'status': 'deleted', 'progress_records_updated': touched}


@app.post('/courses/{course_id}/quizzes', status_code=201)
def create_quiz(course_id: int, payload: QuizIn, db: Session = Depends(get_session),
                admin: models.User = Depends(require_admin)):
    """Create a quiz; every question needs at least one correct option."""
    data = payload.model_dump()
    quiz = services.CatalogService(db).create_quiz(course_id, **data)
    return {'id': quiz.id, 'course_id': quiz.course_id, 'title': quiz.title, 'questions': quiz.questions}


@app.get('/quizzes/{quiz_id}')
def get_quiz(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Quiz for taking: no answer key, plus the caller's attempt count and best score."""
    return services.ProgressService(db).quiz_for_taking(user.id, quiz_id)


@app.delete('/quizzes/{quiz_id}')
def delete_quiz(quiz_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """Delete a quiz and every attempt at it."""
    touched = services.CatalogService(db).delete_quiz(quiz_id)
    return {'status': 'deleted', 'progress_records_updated': touched}


# -- enrollment and learner activity --

@app.post('/courses/{course_id}/enroll')
def enroll(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    record = services.ProgressService(db).enroll(user.id, course_id)
    return {'course_id': course_id, 'enrolled_at': record.enrolled_at, 'overall_progress': record.overall_progress_percent}


@app.delete('/courses/{course_id}/enroll')
def unenroll(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    services.ProgressService(db).unenroll(user.id, course_id)
    return {'status': 'unenrolled'}


@app.post('/lessons/{lesson_id}/complete')
def complete_lesson(lesson_id: int, payload: LessonActivityIn = LessonActivityIn(),
                    db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Mark a lesson as completed for the authenticated user."""
    watched = payload.watched_percentage if payload.watched_percentage is not None else 100
    record = services.ProgressService(db).complete_lesson(user.id, lesson_id, payload.time_spent, watched)
    return {
        'message': 'Lesson marked as completed',
        'overall_progress': record.overall_progress_percent,
        'completed_lessons': record.completed_lessons_count,
    }


@app.put('/lessons/{lesson_id}/progress')
def lesson_progress(lesson_id: int, payload: LessonActivityIn, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    """Record watching activity; the lesson completes itself at 80% watched."""
    watched = payload.watched_percentage if payload.watched_percentage is not None else 0
    record = services.ProgressService(db).update_lesson_progress(user.id, lesson_id, payload.time_spent, watched)
    entry = next(lp for lp in record.lessons_progress if lp.lesson_id == lesson_id)
    return {'lesson_progress': entry.model_dump(), 'overall_progress': record.overall_progress_percent}


@app.post('/quizzes/{quiz_id}/submit')
def submit_quiz(quiz_id: int, submission: QuizSubmission, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    """Grade a quiz submission and record the attempt.

    `answers` must hold one entry per question, in question order.
    """
    return services.ProgressService(db).submit_quiz(user, quiz_id, submission.answers, submission.time_spent)


@app.get('/quizzes/{quiz_id}/results')
def quiz_results(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ProgressService(db).quiz_results(user.id, quiz_id)


@app.get('/quizzes/{quiz_id}/stats')
def quiz_stats(quiz_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    return services.ProgressService(db).quiz_stats(quiz_id)


# -- progress --

@app.get('/progress/overview')
def progress_overview(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Progress across every course the authenticated user is enrolled in."""
    return services.ProgressService(db).overview(user.id)


@app.get('/progress/stats')
def learning_stats(timeframe: str = 'all', db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Learning totals for the authenticated user; `timeframe` is all, week, month or year."""
    return services.ProgressService(db).learner_stats(user.id, timeframe)


@app.get('/progress/course/{course_id}/detailed')
def course_report(course_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """Progress of every learner in a course (admin only)."""
    return services.ProgressService(db).course_report(course_id)


@app.get('/progress/certificates')
def list_certificates(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ProgressService(db).certificates(user.id)


@app.get('/progress/course/{course_id}')
def course_progress(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ProgressService(db).course_summary(user.id, course_id)


@app.post('/progress/course/{course_id}/certificate')
def issue_certificate(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Issue the course certificate once progress reaches 100%."""
    record = services.ProgressService(db).issue_certificate(user.id, course_id)
    return {
        'message': 'Certificate issued successfully',
        'course_id': course_id,
        'issued_at': record.certificate_issued_at,
        'completed_at': record.completed_at,
    }


def run():
    """Serve the API with uvicorn; installed as the `coursetrack-server` command."""
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    run()
