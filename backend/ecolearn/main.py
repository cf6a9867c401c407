"""FastAPI application entrypoint and HTTP controllers.

Controllers are intentionally thin: they authenticate the caller, ask
`policy.enforce` whether the action is allowed, delegate to a service and
wrap the serialized result in `{"success": true, "data": ...}`. Errors
raised anywhere below are rendered by the handlers in `errors.py`.

Endpoint groups (all under /api):
- auth: register, login, me
- users: listing, stats, leaderboards, admin management, points
- tasks: CRUD, submit, review
- quizzes: CRUD, attempt
- modules: list, create, delete
- students/performance
- games: start, daily challenge
"""

import json
import logging
import os
import time
import uuid
from typing import Dict, Iterable, List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles
from sqlmodel import Session

from . import models, policy, repositories, serializers, services
from .auth import get_current_user
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import RateLimited, ValidationFailed, register_exception_handlers
from .policy import Action
from .schemas import (
    AddPointsIn,
    AttemptIn,
    BadgeIn,
    LoginIn,
    ModuleIn,
    QuizIn,
    QuizUpdateIn,
    RegisterIn,
    ReviewIn,
    RoleIn,
    SetPointsIn,
    SubmissionIn,
    TaskCreateIn,
    TaskUpdateIn,
    UserCreateIn,
    parse_payload,
)
from .utils.rate_limit import LoginThrottle
from .utils.uploads import read_upload

app = FastAPI(title="EcoLearn API")
logger = logging.getLogger("ecolearn.api")
logging.basicConfig(level=settings.LOG_LEVEL)
_login_throttle = LoginThrottle(settings.LOGIN_RATE_LIMIT, settings.LOGIN_RATE_WINDOW_SECONDS)

register_exception_handlers(app)

# explicit CORS_ORIGINS win over the dev wildcard
if settings.ALLOW_DEV_CORS or settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS or ["*"],
        allow_credentials=bool(settings.CORS_ORIGINS),
        allow_methods=["*"],
        allow_headers=["*"],
    )

settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response = await call_next(request)
    response.headers["X-Request-ID"] = req_id
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
    return response


def _ok(data=None, message: Optional[str] = None, count: Optional[int] = None) -> dict:
    out = {"success": True}
    if message:
        out["message"] = message
    if count is not None:
        out["count"] = count
    if data is not None:
        out["data"] = data
    return out


def _users(db: Session, ids: Iterable[int]) -> Dict[int, models.User]:
    return repositories.UserRepository(db).get_many(i for i in ids if i is not None)


def _is_staff(user: models.User) -> bool:
    return user.role in policy.STAFF


def _present_tasks(db: Session, tasks: List[models.Task], viewer: models.User) -> List[dict]:
    """Serialize tasks; students only see their own submission."""
    ids = [t.id for t in tasks]
    assignments = repositories.TaskRepository(db).assignments_for(ids)
    submissions = repositories.SubmissionRepository(db).list_for_tasks(ids)
    if not _is_staff(viewer):
        submissions = {tid: [s for s in subs if s.student_id == viewer.id] for tid, subs in submissions.items()}
    user_ids = set()
    for t in tasks:
        user_ids.add(t.created_by)
        user_ids.update(assignments[t.id])
        user_ids.update(s.student_id for s in submissions[t.id])
    users = _users(db, user_ids)
    return [serializers.task_out(t, assignments[t.id], submissions[t.id], users) for t in tasks]


def _present_quizzes(db: Session, quizzes: List[models.Quiz], viewer: models.User) -> List[dict]:
    """Serialize quizzes; students see answers only for quizzes they attempted."""
    ids = [q.id for q in quizzes]
    questions = repositories.QuizRepository(db).questions_for(ids)
    attempts = repositories.AttemptRepository(db).list_for_quizzes(ids)
    staff = _is_staff(viewer)
    if not staff:
        attempts = {qid: [a for a in items if a.student_id == viewer.id] for qid, items in attempts.items()}
    user_ids = {q.created_by for q in quizzes}
    for items in attempts.values():
        user_ids.update(a.student_id for a in items)
    users = _users(db, user_ids)
    return [
        serializers.quiz_out(q, questions[q.id], attempts[q.id], users, include_answers=staff or bool(attempts[q.id]))
        for q in quizzes
    ]


# ---------------------------------------------------------------- health / auth

@app.get("/api/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"success": True, "message": "EcoLearn API is running", "timestamp": time.time()}


@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Self-register; the account can log in once an admin approves it."""
    user = services.AuthService(db).register(payload.name, payload.email, payload.password, payload.role)
    return _ok({"user": serializers.user_out(user)}, "Registration successful. Please wait for admin approval.")


@app.post("/api/auth/login")
def login(payload: LoginIn, request: Request, db: Session = Depends(get_session)):
    """Exchange e-mail and password for a bearer token."""
    client = request.client.host if request.client else "unknown"
    retry_after = _login_throttle.hit(f"{client}:{payload.email.lower()}")
    if retry_after is not None:
        raise RateLimited(f"Too many login attempts; retry after {retry_after}s", retry_after)
    token, user = services.AuthService(db).authenticate(payload.email, payload.password)
    return _ok({"token": token, "user": serializers.user_out(user)}, "Login successful")


@app.get("/api/auth/me")
def me(user: models.User = Depends(get_current_user)):
    return _ok({"user": serializers.user_out(user)})


# ---------------------------------------------------------------- users

@app.get("/api/users")
def list_users(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_list)
    users = repositories.UserRepository(db).list_active()
    return _ok([serializers.user_out(u) for u in users], count=len(users))


@app.post("/api/users", status_code=201)
def create_user(payload: UserCreateIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Admin creates an account; it is approved immediately."""
    policy.enforce(user, Action.user_create)
    created = services.AuthService(db).register(payload.name, payload.email, payload.password, payload.role, approved=True)
    return _ok(serializers.user_out(created), "User created successfully")


@app.get("/api/users/students")
def list_students(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_list)
    students = repositories.UserRepository(db).list_active(role=models.Role.student, by_points=True)
    return _ok([serializers.user_out(u) for u in students], count=len(students))


@app.get("/api/users/stats")
def user_stats(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_stats)
    return _ok(services.UserService(db).stats())


@app.get("/api/users/leaderboard")
def leaderboard(
    limit: Optional[int] = Query(None, ge=1, le=100),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Active students ranked by points."""
    ranked = services.ReportService(db).leaderboard(limit)
    return _ok([serializers.leaderboard_entry(u, i + 1) for i, u in enumerate(ranked)])


@app.get("/api/users/leaderboard/streaks")
def streak_leaderboard(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Top ten active students by streak."""
    ranked = services.ReportService(db).streak_leaderboard()
    return _ok([serializers.leaderboard_entry(u, i + 1) for i, u in enumerate(ranked)])


@app.put("/api/users/add-points")
def add_points(payload: AddPointsIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Credit the caller with points earned in a mini-game."""
    updated = services.PointsService(db).award(user.id, payload.points)
    return _ok(serializers.user_out(updated), f"Successfully added {payload.points} points")


@app.put("/api/users/{user_id}/points")
def set_points(user_id: int, payload: SetPointsIn, db: Session = Depends(get_session),
               user: models.User = Depends(get_current_user)):
    """Overwrite a user's raw points value."""
    policy.enforce(user, Action.points_set, user_id)
    updated = services.PointsService(db).set_points(user_id, payload.points)
    return _ok(serializers.user_out(updated), "User points updated successfully")


@app.put("/api/users/{user_id}/approve")
def approve_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_approve, user_id)
    approved = services.UserService(db).approve(user_id)
    return _ok(serializers.user_out(approved), "User approved successfully")


@app.put("/api/users/{user_id}/role")
def change_role(user_id: int, payload: RoleIn, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_change_role, user_id)
    updated = services.UserService(db).change_role(user, user_id, payload.role)
    return _ok(serializers.user_out(updated), "User role updated successfully")


@app.put("/api/users/{user_id}/deactivate")
def deactivate_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_set_active, user_id)
    updated = services.UserService(db).set_active(user, user_id, False)
    return _ok(serializers.user_out(updated), "User deactivated successfully")


@app.put("/api/users/{user_id}/activate")
def activate_user(user_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_set_active, user_id)
    updated = services.UserService(db).set_active(user, user_id, True)
    return _ok(serializers.user_out(updated), "User activated successfully")


@app.post("/api/users/{user_id}/badges", status_code=201)
def award_badge(user_id: int, payload: BadgeIn, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.user_award_badge, None)
    updated = services.UserService(db).award_badge(user_id, payload.name, payload.description)
    return _ok(serializers.user_out(updated), "Badge awarded successfully")


# ---------------------------------------------------------------- tasks

def _parse_id_list(raw: Optional[str]) -> List[int]:
    """`assignedTo` arrives as a JSON list, a comma list or a single id."""
    if raw is None or not raw.strip():
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = [part for part in raw.split(",") if part.strip()]
    if not isinstance(value, list):
        value = [value]
    try:
        return [int(v) for v in value]
    except (TypeError, ValueError):
        raise ValidationFailed("assignedTo must be a list of user ids")


@app.get("/api/tasks")
def list_tasks(
    category: Optional[models.Category] = None,
    difficulty: Optional[models.Difficulty] = None,
    status: Optional[models.SubmissionStatus] = None,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Active tasks; `status` filters a student's own submissions."""
    student_filter = status is not None and user.role == models.Role.student
    tasks = repositories.TaskRepository(db).list(
        category=category,
        difficulty=difficulty,
        submitted_by=user.id if student_filter else None,
        submission_status=status if student_filter else None,
    )
    data = _present_tasks(db, tasks, user)
    return _ok(data, count=len(data))


@app.get("/api/tasks/my-tasks")
def my_tasks(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Students: tasks open to them. Teachers: tasks they created. Admins: all."""
    repo = repositories.TaskRepository(db)
    if user.role == models.Role.student:
        tasks = repo.list(open_to=user.id)
    elif user.role == models.Role.teacher:
        tasks = repo.list(created_by=user.id)
    else:
        tasks = repo.list()
    data = _present_tasks(db, tasks, user)
    return _ok(data, count=len(data))


@app.get("/api/tasks/{task_id}")
def get_task(task_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    task = services.TaskService(db).get(task_id)
    return _ok(_present_tasks(db, [task], user)[0])


@app.post("/api/tasks", status_code=201)
def create_task(
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    difficulty: Optional[str] = Form(None),
    points: Optional[str] = Form(None),
    due_date: Optional[str] = Form(None, alias="dueDate"),
    assigned_to: Optional[str] = Form(None, alias="assignedTo"),
    resource_file: Optional[UploadFile] = File(None, alias="resourceFile"),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Create a task from a multipart form with an optional resource file."""
    policy.enforce(user, Action.task_create)
    fields = {
        "title": title,
        "description": description,
        "category": category,
        "difficulty": difficulty,
        "points": points,
        "dueDate": due_date,
    }
    raw = {k: v for k, v in fields.items() if v not in (None, "")}
    raw["assignedTo"] = _parse_id_list(assigned_to)
    data = parse_payload(TaskCreateIn, raw)
    resource = read_upload(resource_file)
    task = services.TaskService(db).create(user, data, resource)
    return _ok(_present_tasks(db, [task], user)[0], "Task created successfully")


@app.put("/api/tasks/{task_id}")
def update_task(task_id: int, payload: TaskUpdateIn, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    """Update a task; only its creator or an admin may do so."""
    svc = services.TaskService(db)
    task = svc.get(task_id)
    policy.enforce(user, Action.task_update, task)
    task = svc.update(task, payload)
    return _ok(_present_tasks(db, [task], user)[0], "Task updated successfully")


@app.delete("/api/tasks/{task_id}")
def delete_task(task_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Delete a task; any teacher or admin may do so, creator or not."""
    policy.enforce(user, Action.task_delete)
    svc = services.TaskService(db)
    svc.delete(svc.get(task_id))
    return _ok(message="Task deleted successfully")


@app.post("/api/tasks/{task_id}/submit", status_code=201)
def submit_task(
    task_id: int,
    description: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Submit (or, after a rejection, resubmit) evidence for a task."""
    policy.enforce(user, Action.task_submit)
    data = parse_payload(SubmissionIn, {"description": description or ""})
    upload = read_upload(file)
    submission = services.TaskService(db).submit(task_id, user, data.description, upload)
    users = _users(db, [submission.student_id])
    return _ok(serializers.submission_out(submission, users), "Task submitted successfully")


@app.put("/api/tasks/{task_id}/review")
def review_task(task_id: int, payload: ReviewIn, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    """Approve or reject a submission; approval credits the student."""
    policy.enforce(user, Action.task_review)
    submission = services.TaskService(db).review(task_id, user, payload)
    users = _users(db, [submission.student_id])
    return _ok(serializers.submission_out(submission, users), "Submission reviewed successfully")


# ---------------------------------------------------------------- quizzes

@app.get("/api/quizzes")
def list_quizzes(category: Optional[models.Category] = None, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    quizzes = repositories.QuizRepository(db).list(category=category)
    data = _present_quizzes(db, quizzes, user)
    return _ok(data, count=len(data))


@app.get("/api/quizzes/my-quizzes")
def my_quizzes(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Teachers: quizzes they created. Everyone else: all active quizzes."""
    created_by = user.id if user.role == models.Role.teacher else None
    quizzes = repositories.QuizRepository(db).list(created_by=created_by)
    data = _present_quizzes(db, quizzes, user)
    return _ok(data, count=len(data))


@app.get("/api/quizzes/{quiz_id}")
def get_quiz(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    quiz = services.QuizService(db).get(quiz_id)
    return _ok(_present_quizzes(db, [quiz], user)[0])


@app.post("/api/quizzes", status_code=201)
def create_quiz(payload: QuizIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.quiz_create)
    quiz = services.QuizService(db).create(user, payload)
    return _ok(_present_quizzes(db, [quiz], user)[0], "Quiz created successfully")


@app.put("/api/quizzes/{quiz_id}")
def update_quiz(quiz_id: int, payload: QuizUpdateIn, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    svc = services.QuizService(db)
    quiz = svc.get(quiz_id)
    policy.enforce(user, Action.quiz_update, quiz)
    quiz = svc.update(quiz, payload)
    return _ok(_present_quizzes(db, [quiz], user)[0], "Quiz updated successfully")


@app.delete("/api/quizzes/{quiz_id}")
def delete_quiz(quiz_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.QuizService(db)
    quiz = svc.get(quiz_id)
    policy.enforce(user, Action.quiz_delete, quiz)
    svc.delete(quiz)
    return _ok(message="Quiz deleted successfully")


@app.post("/api/quizzes/{quiz_id}/attempt", status_code=201)
def attempt_quiz(quiz_id: int, payload: AttemptIn, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    """Score the caller's single attempt and credit the points earned."""
    policy.enforce(user, Action.quiz_attempt)
    attempt = services.QuizService(db).attempt(quiz_id, user, payload)
    return _ok(serializers.attempt_out(attempt, {user.id: user}), "Quiz submitted successfully")


# ---------------------------------------------------------------- modules

@app.get("/api/modules")
def list_modules(category: Optional[models.Category] = None, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    modules = repositories.ModuleRepository(db).list(category=category)
    users = _users(db, {m.created_by for m in modules})
    return _ok([serializers.module_out(m, users) for m in modules], count=len(modules))


@app.post("/api/modules", status_code=201)
def create_module(payload: ModuleIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.module_create)
    module = services.ModuleService(db).create(
        user, payload.title, payload.description, str(payload.video_url), payload.category
    )
    return _ok(serializers.module_out(module, {user.id: user}), "Module created successfully")


@app.delete("/api/modules/{module_id}")
def delete_module(module_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    policy.enforce(user, Action.module_delete)
    services.ModuleService(db).delete(module_id)
    return _ok(message="Module deleted successfully")


# ---------------------------------------------------------------- reporting

@app.get("/api/students/performance")
def student_performance(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Task and quiz history per student; students only get their own."""
    scope = policy.performance_scope(user)
    return _ok(services.ReportService(db).performance(student_id=scope))


# ---------------------------------------------------------------- games

@app.post("/api/games/start")
def start_game(game_type: str = Query("generic", alias="gameType", max_length=50),
               db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _ok(services.GameService(db).start(user, game_type), "Game started")


@app.get("/api/games/daily-challenge")
def daily_challenge(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _ok(services.GameService(db).daily_challenge(user))


@app.post("/api/games/complete-challenge")
def complete_challenge(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Credit today's challenge points; only once per day."""
    policy.enforce(user, Action.challenge_complete)
    updated = services.GameService(db).complete_challenge(user)
    return _ok({"points": updated.points, "awarded": settings.DAILY_CHALLENGE_POINTS}, "Challenge completed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ecolearn.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=settings.ENV == "dev")
