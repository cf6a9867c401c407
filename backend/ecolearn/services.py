"""Business logic services used by HTTP controllers.

Services coordinate repositories: they check invariants, perform the
workflow transitions and decide what is committed together. Controllers
call `policy.enforce` before reaching a service, so the services assume
the caller is allowed and only check data-level rules (existence,
assignment scoping, duplicate submissions, self-modification).

Point accounting always goes through `UserRepository.increment`, an
atomic `points = points + n` update, never through a loaded `User`.
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import AuthError, Conflict, Forbidden, NotFound, ValidationFailed
from .schemas import AttemptIn, QuestionIn, QuizIn, QuizUpdateIn, ReviewIn, TaskCreateIn, TaskUpdateIn
from .utils.uploads import PendingUpload, StoredFile, discard

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("ecolearn.services")


def _log_event(name: str, **payload) -> None:
    logger.info("%s %s", name, json.dumps(payload, ensure_ascii=True, default=str))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Registration, credential checks and token issuing."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, name: str, email: str, password: str, role: str = "student",
                 approved: bool = False) -> models.User:
        """Create an account with a hashed password.

        Self-registered accounts stay unapproved until an admin approves
        them; admin-created accounts pass `approved=True`.
        """
        email = email.lower()
        if self.user_repo.get_by_email(email):
            raise Conflict("User already exists with this email")
        user = models.User(
            name=name,
            email=email,
            password_hash=PWD_CTX.hash(password),
            role=models.Role(role),
            is_approved=approved,
        )
        user = self.user_repo.create(user)
        _log_event("user_registered", user_id=user.id, role=user.role.value, approved=approved)
        return user

    def authenticate(self, email: str, password: str) -> Tuple[str, models.User]:
        """Verify credentials and return `(token, user)`.

        Raises AuthError for unknown e-mail or wrong password and
        Forbidden for deactivated or not yet approved accounts.
        """
        user = self.user_repo.get_by_email(email)
        if not user or not PWD_CTX.verify(password, user.password_hash):
            raise AuthError("Invalid credentials")
        if not user.is_active:
            raise Forbidden("Account is deactivated")
        if not user.is_approved:
            raise Forbidden("Account is awaiting admin approval")
        return self.issue_token(user), user

    def issue_token(self, user: models.User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "role": user.role.value, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def set_password(self, user_id: int, password: str) -> models.User:
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFound("User not found")
        user.password_hash = PWD_CTX.hash(password)
        return self.user_repo.save(user)


class PointsService:
    """The point-award primitive shared by reviews, quizzes and games."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def award(self, user_id: int, delta: int) -> models.User:
        """Atomically add `delta` (>= 0) points and return the fresh user."""
        if not isinstance(delta, int) or delta < 0:
            raise ValidationFailed("Points must be a non-negative integer")
        if not self.user_repo.increment(user_id, points=delta):
            raise NotFound("User not found")
        user = self.user_repo.get(user_id)
        self.session.refresh(user)
        _log_event("points_awarded", user_id=user_id, delta=delta, total=user.points)
        return user

    def set_points(self, user_id: int, value: int) -> models.User:
        """Overwrite the raw points value (admin/teacher correction)."""
        if value < 0:
            raise ValidationFailed("Points must be a non-negative integer")
        user = self.user_repo.update_fields(user_id, points=value)
        if not user:
            raise NotFound("User not found")
        _log_event("points_set", user_id=user_id, value=value)
        return user


class UserService:
    """Admin user management. Self-modification is blocked by the policy."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def _require(self, user_id: int) -> models.User:
        user = self.user_repo.get(user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def approve(self, user_id: int) -> models.User:
        user = self.user_repo.update_fields(user_id, is_approved=True)
        if not user:
            raise NotFound("User not found")
        _log_event("user_approved", user_id=user_id)
        return user

    def change_role(self, actor: models.User, user_id: int, role: models.Role) -> models.User:
        if user_id == actor.id:
            raise Conflict("Cannot change your own role")
        user = self.user_repo.update_fields(user_id, role=role)
        if not user:
            raise NotFound("User not found")
        _log_event("user_role_changed", user_id=user_id, role=role.value, by=actor.id)
        return user

    def set_active(self, actor: models.User, user_id: int, active: bool) -> models.User:
        if user_id == actor.id:
            raise Conflict("Cannot change the active status of your own account")
        user = self.user_repo.update_fields(user_id, is_active=active)
        if not user:
            raise NotFound("User not found")
        _log_event("user_activation_changed", user_id=user_id, active=active, by=actor.id)
        return user

    def award_badge(self, user_id: int, name: str, description: str = "") -> models.User:
        user = self._require(user_id)
        if any(b.get("name") == name for b in user.badges or []):
            raise Conflict("User already has this badge")
        user.badges = list(user.badges or []) + [{"name": name, "description": description}]
        user = self.user_repo.save(user)
        _log_event("badge_awarded", user_id=user_id, badge=name)
        return user

    def stats(self) -> dict:
        return {
            "totalStudents": self.user_repo.count_active(models.Role.student),
            "totalTeachers": self.user_repo.count_active(models.Role.teacher),
            "totalAdmins": self.user_repo.count_active(models.Role.admin),
        }


class TaskService:
    """Task CRUD plus the submit/review workflow."""
    def __init__(self, session: Session):
        self.session = session
        self.task_repo = repositories.TaskRepository(session)
        self.sub_repo = repositories.SubmissionRepository(session)
        self.user_repo = repositories.UserRepository(session)

    def get(self, task_id: int) -> models.Task:
        task = self.task_repo.get(task_id)
        if not task:
            raise NotFound("Task not found")
        return task

    def _validate_assignees(self, assigned_to: List[int]) -> List[int]:
        ids = sorted(set(assigned_to))
        if len(self.user_repo.find_active_students(ids)) != len(ids):
            raise ValidationFailed("Some assigned users are invalid or not students")
        return ids

    def create(self, actor: models.User, data: TaskCreateIn, resource: Optional[PendingUpload] = None) -> models.Task:
        assigned = self._validate_assignees(data.assigned_to)
        task = models.Task(
            title=data.title,
            description=data.description,
            category=data.category,
            difficulty=data.difficulty,
            points=data.points,
            due_date=data.due_date,
            created_by=actor.id,
        )
        stored = resource.save() if resource else None
        if stored:
            task.resource_filename = stored.filename
            task.resource_original_name = stored.original_name
            task.resource_path = stored.path
            task.resource_mimetype = stored.mimetype
        try:
            task = self.task_repo.create(task, assigned)
        except Exception:
            self.session.rollback()
            discard(stored)
            raise
        _log_event("task_created", task_id=task.id, by=actor.id, assigned=len(assigned))
        return task

    def update(self, task: models.Task, data: TaskUpdateIn) -> models.Task:
        fields = data.model_dump(exclude_unset=True, exclude={"assigned_to"})
        assigned = None
        if data.assigned_to is not None:
            assigned = self._validate_assignees(data.assigned_to)
        for key, value in fields.items():
            if value is None:
                raise ValidationFailed(f"{key} cannot be null")
            setattr(task, key, value)
        task.due_date = models.as_utc(task.due_date)
        task.updated_at = _utcnow()
        task = self.task_repo.update(task, assigned)
        _log_event("task_updated", task_id=task.id, fields=sorted(fields))
        return task

    def delete(self, task: models.Task) -> None:
        task_id = task.id
        self.task_repo.delete(task)
        _log_event("task_deleted", task_id=task_id)

    def submit(self, task_id: int, student: models.User, description: str,
               upload: Optional[PendingUpload] = None) -> models.TaskSubmission:
        """Create or (after a rejection) overwrite the student's submission.

        A pending or approved submission blocks any further attempt. User
        points are not touched here; they are credited on approval.
        """
        task = self.task_repo.get(task_id)
        if not task or not task.is_active:
            raise NotFound("Task not found")
        if not self.task_repo.is_open_to(task_id, student.id):
            raise Forbidden("You are not assigned to this task")
        existing = self.sub_repo.get_for_student(task_id, student.id)
        if existing and existing.status != models.SubmissionStatus.rejected:
            raise Conflict("You have already submitted this task")

        replaced = _attachment_of(existing) if existing else None
        stored: Optional[StoredFile] = upload.save() if upload else None
        file_fields = {
            "file_filename": stored.filename if stored else None,
            "file_original_name": stored.original_name if stored else None,
            "file_path": stored.path if stored else None,
            "file_mimetype": stored.mimetype if stored else None,
        }
        try:
            if existing:
                ok = self.sub_repo.overwrite_rejected(
                    existing.id, description=description, submitted_at=_utcnow(), **file_fields
                )
                if not ok:
                    raise Conflict("You have already submitted this task")
                submission = self.sub_repo.get(existing.id)
                event = "task_resubmitted"
            else:
                submission = self.sub_repo.add(models.TaskSubmission(
                    task_id=task_id, student_id=student.id, description=description, **file_fields
                ))
                event = "task_submitted"
        except Exception:
            discard(stored)
            raise
        if replaced and (stored is None or replaced.filename != stored.filename):
            discard(replaced)
        _log_event(event, task_id=task_id, submission_id=submission.id, student_id=student.id)
        return submission

    def review(self, task_id: int, reviewer: models.User, data: ReviewIn) -> models.TaskSubmission:
        """Record a review and, on approval, credit the student.

        Every review overwrites the previous one. The submission update and
        the counter increment are committed together.
        """
        if not self.task_repo.get(task_id):
            raise NotFound("Task not found")
        submission = self.sub_repo.get_in_task(task_id, data.submission_id)
        if not submission:
            raise NotFound("Submission not found")
        status = models.SubmissionStatus(data.status)
        try:
            self.sub_repo.set_review(
                submission.id,
                commit=False,
                status=status,
                feedback=data.feedback,
                points_awarded=data.points_awarded,
                reviewed_by=reviewer.id,
                reviewed_at=_utcnow(),
            )
            if status == models.SubmissionStatus.approved:
                credited = self.user_repo.increment(
                    submission.student_id,
                    points=data.points_awarded if data.points_awarded > 0 else 0,
                    tasks_completed=1,
                    commit=False,
                )
                if not credited:
                    raise NotFound("Student not found")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        _log_event(
            "submission_reviewed",
            task_id=task_id,
            submission_id=submission.id,
            status=status.value,
            points_awarded=data.points_awarded,
            reviewer_id=reviewer.id,
        )
        return self.sub_repo.get(submission.id)


def _attachment_of(submission: models.TaskSubmission) -> Optional[StoredFile]:
    if not submission.file_filename:
        return None
    return StoredFile(
        filename=submission.file_filename,
        original_name=submission.file_original_name,
        path=submission.file_path,
        mimetype=submission.file_mimetype,
    )


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer `round(numerator / denominator)` with halves rounded up."""
    return (2 * numerator + denominator) // (2 * denominator)


def score_answers(correct: List[int], answers: List[int], points_pool: int) -> dict:
    """Score index-aligned answers against the correct option indexes.

    Missing answers count as unanswered (-1). Returns the attempt figures:
    `score = round(100 * correct / total)` and
    `pointsEarned = round(points_pool * score / 100)`.
    """
    total = len(correct)
    if len(answers) > total:
        raise ValidationFailed("More answers than questions")
    padded = list(answers) + [-1] * (total - len(answers))
    matches = sum(1 for given, right in zip(padded, correct) if given == right)
    score = round_half_up_div(100 * matches, total) if total else 0
    points_earned = round_half_up_div(points_pool * score, 100)
    return {
        "answers": padded,
        "correct_answers": matches,
        "total_questions": total,
        "score": score,
        "points_earned": points_earned,
    }


class QuizService:
    """Quiz CRUD plus the single-attempt scoring workflow."""
    def __init__(self, session: Session):
        self.session = session
        self.quiz_repo = repositories.QuizRepository(session)
        self.attempt_repo = repositories.AttemptRepository(session)
        self.user_repo = repositories.UserRepository(session)

    def get(self, quiz_id: int) -> models.Quiz:
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz:
            raise NotFound("Quiz not found")
        return quiz

    @staticmethod
    def _questions(items: List[QuestionIn]) -> List[models.QuizQuestion]:
        return [
            models.QuizQuestion(
                position=i,
                question=q.question,
                options=list(q.options),
                correct_answer=q.correct_answer,
                explanation=q.explanation,
            )
            for i, q in enumerate(items)
        ]

    def create(self, actor: models.User, data: QuizIn) -> models.Quiz:
        quiz = models.Quiz(
            title=data.title,
            description=data.description,
            category=data.category,
            points=data.points,
            time_limit=data.time_limit,
            created_by=actor.id,
        )
        quiz = self.quiz_repo.create(quiz, self._questions(data.questions))
        _log_event("quiz_created", quiz_id=quiz.id, by=actor.id, questions=len(data.questions))
        return quiz

    def update(self, quiz: models.Quiz, data: QuizUpdateIn) -> models.Quiz:
        fields = data.model_dump(exclude_unset=True, exclude={"questions"})
        for key, value in fields.items():
            if value is None:
                raise ValidationFailed(f"{key} cannot be null")
            setattr(quiz, key, value)
        questions = self._questions(data.questions) if data.questions is not None else None
        quiz.updated_at = _utcnow()
        quiz = self.quiz_repo.update(quiz, questions)
        _log_event("quiz_updated", quiz_id=quiz.id, fields=sorted(fields), questions_replaced=questions is not None)
        return quiz

    def delete(self, quiz: models.Quiz) -> None:
        quiz_id = quiz.id
        self.quiz_repo.delete(quiz)
        _log_event("quiz_deleted", quiz_id=quiz_id)

    def has_attempted(self, quiz_id: int, student_id: int) -> bool:
        return self.attempt_repo.get_for_student(quiz_id, student_id) is not None

    def attempt(self, quiz_id: int, student: models.User, data: AttemptIn) -> models.QuizAttempt:
        """Score and store the student's only attempt, crediting the points.

        The attempt row and the user's `points`/`quizzes_taken` increments
        are committed together; even a zero score is recorded.
        """
        quiz = self.quiz_repo.get(quiz_id)
        if not quiz or not quiz.is_active:
            raise NotFound("Quiz not found")
        if self.attempt_repo.get_for_student(quiz_id, student.id):
            raise Conflict("You have already completed this quiz")
        questions = self.quiz_repo.questions(quiz_id)
        result = score_answers([q.correct_answer for q in questions], data.answers, quiz.points)
        attempt = models.QuizAttempt(
            quiz_id=quiz_id,
            student_id=student.id,
            time_taken=data.time_taken,
            **result,
        )
        try:
            self.attempt_repo.stage(attempt)
            if not self.user_repo.increment(student.id, points=result["points_earned"], quizzes_taken=1, commit=False):
                raise NotFound("User not found")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(attempt)
        _log_event(
            "quiz_attempted",
            quiz_id=quiz_id,
            student_id=student.id,
            score=result["score"],
            points_earned=result["points_earned"],
        )
        return attempt


class ModuleService:
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.ModuleRepository(session)

    def create(self, actor: models.User, title: str, description: str, video_url: str,
               category: models.Category) -> models.Module:
        module = self.repo.create(models.Module(
            title=title, description=description, video_url=video_url, category=category, created_by=actor.id
        ))
        _log_event("module_created", module_id=module.id, by=actor.id)
        return module

    def delete(self, module_id: int) -> None:
        module = self.repo.get(module_id)
        if not module:
            raise NotFound("Module not found")
        self.repo.delete(module)
        _log_event("module_deleted", module_id=module_id)


class ReportService:
    """Read-only projections: leaderboards and student performance."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.task_repo = repositories.TaskRepository(session)
        self.sub_repo = repositories.SubmissionRepository(session)
        self.quiz_repo = repositories.QuizRepository(session)
        self.attempt_repo = repositories.AttemptRepository(session)

    def leaderboard(self, limit: Optional[int] = None) -> List[models.User]:
        return self.user_repo.top_students(limit=limit)

    def streak_leaderboard(self, limit: int = 10) -> List[models.User]:
        return self.user_repo.top_students(limit=limit, by="streak")

    def performance(self, student_id: Optional[int] = None) -> List[dict]:
        """Per-student task and quiz history.

        `student_id` limits the report to one student (the policy passes
        the caller's own id for students); None covers every active student.
        """
        students = self.user_repo.list_active(role=models.Role.student, by_points=True, user_id=student_id)
        ids = [s.id for s in students]
        submissions = self.sub_repo.list_for_students(ids)
        attempts = self.attempt_repo.list_for_students(ids)
        tasks = self.task_repo.get_many(s.task_id for s in submissions)
        quizzes = self.quiz_repo.get_many(a.quiz_id for a in attempts)

        subs_by_student: Dict[int, List[models.TaskSubmission]] = {sid: [] for sid in ids}
        for sub in submissions:
            subs_by_student[sub.student_id].append(sub)
        attempts_by_student: Dict[int, List[models.QuizAttempt]] = {sid: [] for sid in ids}
        for att in attempts:
            attempts_by_student[att.student_id].append(att)

        out = []
        for student in students:
            task_rows = [
                {
                    "taskId": sub.task_id,
                    "taskTitle": tasks[sub.task_id].title if sub.task_id in tasks else None,
                    "status": sub.status.value,
                    "pointsAwarded": sub.points_awarded if sub.status == models.SubmissionStatus.approved else 0,
                    "submittedAt": sub.submitted_at,
                }
                for sub in subs_by_student[student.id]
            ]
            quiz_rows = [
                {
                    "quizId": att.quiz_id,
                    "quizTitle": quizzes[att.quiz_id].title if att.quiz_id in quizzes else None,
                    "score": att.score,
                    "pointsEarned": att.points_earned,
                    "completedAt": att.completed_at,
                }
                for att in attempts_by_student[student.id]
            ]
            scores = [row["score"] for row in quiz_rows]
            out.append({
                "id": student.id,
                "name": student.name,
                "email": student.email,
                "totalPoints": student.points,
                "totalTasks": len(task_rows),
                "completedTasks": sum(1 for r in task_rows if r["status"] == models.SubmissionStatus.approved.value),
                "pendingTasks": sum(1 for r in task_rows if r["status"] == models.SubmissionStatus.pending.value),
                "totalQuizzes": len(quiz_rows),
                "averageQuizScore": round(sum(scores) / len(scores), 1) if scores else 0.0,
                "taskSubmissions": task_rows,
                "quizAttempts": quiz_rows,
            })
        return out


DAILY_CHALLENGES = (
    ("Plastic-Free Day", "Avoid using single-use plastics for the entire day."),
    ("Lights Out Hour", "Switch off every light and device you are not using for one hour."),
    ("Walk or Cycle", "Make today's short trips on foot or by bike instead of by car."),
    ("Shorter Showers", "Keep every shower under five minutes today."),
    ("Zero Food Waste", "Plan your meals so no food ends up in the bin today."),
    ("Sort Your Waste", "Separate recyclables, compost and general waste at home."),
    ("Plant Something", "Plant a seed, a sapling or look after a plant in your area."),
)


class GameService:
    """Mini-game entry points and the once-a-day eco challenge."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.challenge_repo = repositories.ChallengeRepository(session)

    @staticmethod
    def today() -> date:
        return datetime.now(timezone.utc).date()

    def start(self, user: models.User, game_type: str) -> dict:
        _log_event("game_started", user_id=user.id, game_type=game_type)
        return {"gameType": game_type, "streak": user.streak, "canPlay": True}

    def daily_challenge(self, user: models.User, day: Optional[date] = None) -> dict:
        day = day or self.today()
        title, description = DAILY_CHALLENGES[day.toordinal() % len(DAILY_CHALLENGES)]
        return {
            "id": f"daily-{day.isoformat()}",
            "date": day.isoformat(),
            "title": title,
            "description": description,
            "points": settings.DAILY_CHALLENGE_POINTS,
            "completed": self.challenge_repo.get(user.id, day) is not None,
        }

    def complete_challenge(self, user: models.User, day: Optional[date] = None) -> models.User:
        """Credit today's challenge points once per user and UTC day."""
        day = day or self.today()
        if self.challenge_repo.get(user.id, day):
            raise Conflict("Daily challenge already completed today")
        points = settings.DAILY_CHALLENGE_POINTS
        try:
            self.challenge_repo.stage(models.ChallengeCompletion(user_id=user.id, challenge_date=day, points_awarded=points))
            if not self.user_repo.increment(user.id, points=points, commit=False):
                raise NotFound("User not found")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        _log_event("challenge_completed", user_id=user.id, day=day.isoformat(), points=points)
        fresh = self.user_repo.get(user.id)
        self.session.refresh(fresh)
        return fresh
