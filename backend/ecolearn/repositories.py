"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
tasks, submissions, quizzes, attempts, modules, challenges). Plain CRUD
methods commit on their own; methods used inside a workflow take
`commit=False` so the service can commit several changes at once.

Counters and submission state are changed with targeted `UPDATE`
statements (`points = points + n`, `... WHERE id = ? AND status = ?`)
instead of read-modify-write on loaded objects, so concurrent requests
touching the same user or task never overwrite each other.
"""

from datetime import date
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import models
from .errors import Conflict


class UserRepository:
    """CRUD and counter operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise Conflict("User already exists with this email")
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        stmt = select(models.User).where(models.User.email == email.lower())
        return self.session.exec(stmt).first()

    def get_many(self, user_ids: Iterable[int]) -> Dict[int, models.User]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        stmt = select(models.User).where(models.User.id.in_(ids))
        return {u.id: u for u in self.session.exec(stmt).all()}

    def list_active(self, role: Optional[models.Role] = None, by_points: bool = False,
                    user_id: Optional[int] = None) -> List[models.User]:
        """Active users, newest first, or by points descending. `user_id` narrows to one row."""
        stmt = select(models.User).where(models.User.is_active == True)  # noqa: E712
        if user_id is not None:
            stmt = stmt.where(models.User.id == user_id)
        if role is not None:
            stmt = stmt.where(models.User.role == role)
        if by_points:
            stmt = stmt.order_by(models.User.points.desc(), models.User.id)
        else:
            stmt = stmt.order_by(models.User.created_at.desc(), models.User.id.desc())
        return self.session.exec(stmt).all()

    def top_students(self, limit: Optional[int] = None, by: str = "points") -> List[models.User]:
        column = models.User.streak if by == "streak" else models.User.points
        stmt = (
            select(models.User)
            .where(models.User.role == models.Role.student, models.User.is_active == True)  # noqa: E712
            .order_by(column.desc(), models.User.points.desc(), models.User.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        return self.session.exec(stmt).all()

    def count_active(self, role: models.Role) -> int:
        stmt = select(func.count()).select_from(models.User).where(
            models.User.role == role, models.User.is_active == True  # noqa: E712
        )
        return self.session.exec(stmt).one()

    def find_active_students(self, user_ids: Iterable[int]) -> List[models.User]:
        ids = sorted(set(user_ids))
        if not ids:
            return []
        stmt = select(models.User).where(
            models.User.id.in_(ids),
            models.User.role == models.Role.student,
            models.User.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).all()

    def increment(self, user_id: int, *, points: int = 0, tasks_completed: int = 0, quizzes_taken: int = 0, commit: bool = True) -> bool:
        """Atomically add to the user's counters. Returns False if no such user."""
        values = {}
        if points:
            values["points"] = models.User.points + points
        if tasks_completed:
            values["tasks_completed"] = models.User.tasks_completed + tasks_completed
        if quizzes_taken:
            values["quizzes_taken"] = models.User.quizzes_taken + quizzes_taken
        if not values:
            return self.get(user_id) is not None
        stmt = (
            update(models.User)
            .where(models.User.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        if commit:
            self.session.commit()
        return result.rowcount > 0

    def update_fields(self, user_id: int, **fields) -> Optional[models.User]:
        """Targeted column overwrite (role, flags, raw points)."""
        stmt = (
            update(models.User)
            .where(models.User.id == user_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        self.session.commit()
        if result.rowcount == 0:
            return None
        user = self.get(user_id)
        self.session.refresh(user)
        return user

    def save(self, user: models.User) -> models.User:
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user


class TaskRepository:
    """Tasks and their assigned-to link rows."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, task: models.Task, assigned_to: Iterable[int]) -> models.Task:
        """Create a task and its assignments in one commit."""
        self.session.add(task)
        self.session.flush()
        for student_id in set(assigned_to):
            self.session.add(models.TaskAssignment(task_id=task.id, student_id=student_id))
        self.session.commit()
        self.session.refresh(task)
        return task

    def get(self, task_id: int) -> Optional[models.Task]:
        return self.session.get(models.Task, task_id)

    def get_many(self, task_ids: Iterable[int]) -> Dict[int, models.Task]:
        ids = sorted(set(task_ids))
        if not ids:
            return {}
        stmt = select(models.Task).where(models.Task.id.in_(ids))
        return {t.id: t for t in self.session.exec(stmt).all()}

    def list(self, category=None, difficulty=None, created_by: Optional[int] = None,
             submitted_by: Optional[int] = None, submission_status=None,
             open_to: Optional[int] = None) -> List[models.Task]:
        """Active tasks, newest first, with optional filters.

        `submitted_by`/`submission_status` keep tasks the student has a
        submission in (with that status). `open_to` keeps tasks that are
        unassigned or assigned to that student.
        """
        stmt = select(models.Task).where(models.Task.is_active == True)  # noqa: E712
        if category:
            stmt = stmt.where(models.Task.category == category)
        if difficulty:
            stmt = stmt.where(models.Task.difficulty == difficulty)
        if created_by is not None:
            stmt = stmt.where(models.Task.created_by == created_by)
        if submitted_by is not None:
            sub = select(models.TaskSubmission.task_id).where(models.TaskSubmission.student_id == submitted_by)
            if submission_status:
                sub = sub.where(models.TaskSubmission.status == submission_status)
            stmt = stmt.where(models.Task.id.in_(sub))
        if open_to is not None:
            assigned_any = select(models.TaskAssignment.task_id)
            assigned_me = select(models.TaskAssignment.task_id).where(models.TaskAssignment.student_id == open_to)
            stmt = stmt.where(models.Task.id.not_in(assigned_any) | models.Task.id.in_(assigned_me))
        stmt = stmt.order_by(models.Task.created_at.desc(), models.Task.id.desc())
        return self.session.exec(stmt).all()

    def assigned_ids(self, task_id: int) -> List[int]:
        stmt = select(models.TaskAssignment.student_id).where(models.TaskAssignment.task_id == task_id)
        return sorted(self.session.exec(stmt).all())

    def assignments_for(self, task_ids: Iterable[int]) -> Dict[int, List[int]]:
        ids = list(task_ids)
        out: Dict[int, List[int]] = {tid: [] for tid in ids}
        if not ids:
            return out
        stmt = select(models.TaskAssignment).where(models.TaskAssignment.task_id.in_(ids))
        for row in self.session.exec(stmt).all():
            out[row.task_id].append(row.student_id)
        for v in out.values():
            v.sort()
        return out

    def is_open_to(self, task_id: int, student_id: int) -> bool:
        """True if the task has no assignments or lists the student."""
        assigned = self.assigned_ids(task_id)
        return not assigned or student_id in assigned

    def update(self, task: models.Task, assigned_to: Optional[Iterable[int]] = None) -> models.Task:
        self.session.add(task)
        if assigned_to is not None:
            self.session.exec(delete(models.TaskAssignment).where(models.TaskAssignment.task_id == task.id))
            for student_id in set(assigned_to):
                self.session.add(models.TaskAssignment(task_id=task.id, student_id=student_id))
        self.session.commit()
        self.session.refresh(task)
        return task

    def delete(self, task: models.Task) -> None:
        """Delete a task together with its assignments and submissions."""
        self.session.exec(delete(models.TaskSubmission).where(models.TaskSubmission.task_id == task.id))
        self.session.exec(delete(models.TaskAssignment).where(models.TaskAssignment.task_id == task.id))
        self.session.delete(task)
        self.session.commit()


class SubmissionRepository:
    """Task submissions, one row per (task, student)."""
    def __init__(self, session: Session):
        self.session = session

    def get_for_student(self, task_id: int, student_id: int) -> Optional[models.TaskSubmission]:
        stmt = select(models.TaskSubmission).where(
            models.TaskSubmission.task_id == task_id,
            models.TaskSubmission.student_id == student_id,
        )
        return self.session.exec(stmt).first()

    def get_in_task(self, task_id: int, submission_id: int) -> Optional[models.TaskSubmission]:
        stmt = select(models.TaskSubmission).where(
            models.TaskSubmission.id == submission_id,
            models.TaskSubmission.task_id == task_id,
        )
        return self.session.exec(stmt).first()

    def add(self, submission: models.TaskSubmission) -> models.TaskSubmission:
        """Insert a new submission; a concurrent duplicate becomes a Conflict."""
        self.session.add(submission)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise Conflict("You have already submitted this task")
        self.session.refresh(submission)
        return submission

    def overwrite_rejected(self, submission_id: int, **fields) -> bool:
        """Reset a rejected submission in place. False if it is no longer rejected."""
        stmt = (
            update(models.TaskSubmission)
            .where(
                models.TaskSubmission.id == submission_id,
                models.TaskSubmission.status == models.SubmissionStatus.rejected,
            )
            .values(status=models.SubmissionStatus.pending, feedback="", points_awarded=0,
                    reviewed_by=None, reviewed_at=None, **fields)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount > 0

    def set_review(self, submission_id: int, *, commit: bool = True, **fields) -> None:
        stmt = (
            update(models.TaskSubmission)
            .where(models.TaskSubmission.id == submission_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        self.session.exec(stmt)
        if commit:
            self.session.commit()

    def get(self, submission_id: int) -> Optional[models.TaskSubmission]:
        sub = self.session.get(models.TaskSubmission, submission_id)
        if sub is not None:
            self.session.refresh(sub)
        return sub

    def list_for_tasks(self, task_ids: Iterable[int]) -> Dict[int, List[models.TaskSubmission]]:
        ids = list(task_ids)
        out: Dict[int, List[models.TaskSubmission]] = {tid: [] for tid in ids}
        if not ids:
            return out
        stmt = (
            select(models.TaskSubmission)
            .where(models.TaskSubmission.task_id.in_(ids))
            .order_by(models.TaskSubmission.id)
        )
        for sub in self.session.exec(stmt).all():
            out[sub.task_id].append(sub)
        return out

    def list_for_students(self, student_ids: Optional[Iterable[int]] = None) -> List[models.TaskSubmission]:
        stmt = select(models.TaskSubmission).order_by(models.TaskSubmission.submitted_at, models.TaskSubmission.id)
        if student_ids is not None:
            stmt = stmt.where(models.TaskSubmission.student_id.in_(list(student_ids)))
        return self.session.exec(stmt).all()


class QuizRepository:
    """Quizzes and their ordered questions."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, quiz: models.Quiz, questions: List[models.QuizQuestion]) -> models.Quiz:
        self.session.add(quiz)
        self.session.flush()
        for pos, q in enumerate(questions):
            q.quiz_id = quiz.id
            q.position = pos
            self.session.add(q)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        return self.session.get(models.Quiz, quiz_id)

    def get_many(self, quiz_ids: Iterable[int]) -> Dict[int, models.Quiz]:
        ids = sorted(set(quiz_ids))
        if not ids:
            return {}
        stmt = select(models.Quiz).where(models.Quiz.id.in_(ids))
        return {q.id: q for q in self.session.exec(stmt).all()}

    def list(self, category=None, created_by: Optional[int] = None) -> List[models.Quiz]:
        stmt = select(models.Quiz).where(models.Quiz.is_active == True)  # noqa: E712
        if category:
            stmt = stmt.where(models.Quiz.category == category)
        if created_by is not None:
            stmt = stmt.where(models.Quiz.created_by == created_by)
        stmt = stmt.order_by(models.Quiz.created_at.desc(), models.Quiz.id.desc())
        return self.session.exec(stmt).all()

    def questions(self, quiz_id: int) -> List[models.QuizQuestion]:
        stmt = (
            select(models.QuizQuestion)
            .where(models.QuizQuestion.quiz_id == quiz_id)
            .order_by(models.QuizQuestion.position)
        )
        return self.session.exec(stmt).all()

    def questions_for(self, quiz_ids: Iterable[int]) -> Dict[int, List[models.QuizQuestion]]:
        ids = list(quiz_ids)
        out: Dict[int, List[models.QuizQuestion]] = {qid: [] for qid in ids}
        if not ids:
            return out
        stmt = (
            select(models.QuizQuestion)
            .where(models.QuizQuestion.quiz_id.in_(ids))
            .order_by(models.QuizQuestion.quiz_id, models.QuizQuestion.position)
        )
        for q in self.session.exec(stmt).all():
            out[q.quiz_id].append(q)
        return out

    def update(self, quiz: models.Quiz, questions: Optional[List[models.QuizQuestion]] = None) -> models.Quiz:
        self.session.add(quiz)
        if questions is not None:
            self.session.exec(delete(models.QuizQuestion).where(models.QuizQuestion.quiz_id == quiz.id))
            for pos, q in enumerate(questions):
                q.quiz_id = quiz.id
                q.position = pos
                self.session.add(q)
        self.session.commit()
        self.session.refresh(quiz)
        return quiz

    def delete(self, quiz: models.Quiz) -> None:
        self.session.exec(delete(models.QuizAttempt).where(models.QuizAttempt.quiz_id == quiz.id))
        self.session.exec(delete(models.QuizQuestion).where(models.QuizQuestion.quiz_id == quiz.id))
        self.session.delete(quiz)
        self.session.commit()


class AttemptRepository:
    """Quiz attempts, one row per (quiz, student)."""
    def __init__(self, session: Session):
        self.session = session

    def get_for_student(self, quiz_id: int, student_id: int) -> Optional[models.QuizAttempt]:
        stmt = select(models.QuizAttempt).where(
            models.QuizAttempt.quiz_id == quiz_id,
            models.QuizAttempt.student_id == student_id,
        )
        return self.session.exec(stmt).first()

    def stage(self, attempt: models.QuizAttempt) -> models.QuizAttempt:
        """Insert without committing; a duplicate becomes a Conflict."""
        self.session.add(attempt)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            raise Conflict("You have already completed this quiz")
        return attempt

    def list_for_quizzes(self, quiz_ids: Iterable[int]) -> Dict[int, List[models.QuizAttempt]]:
        ids = list(quiz_ids)
        out: Dict[int, List[models.QuizAttempt]] = {qid: [] for qid in ids}
        if not ids:
            return out
        stmt = select(models.QuizAttempt).where(models.QuizAttempt.quiz_id.in_(ids)).order_by(models.QuizAttempt.id)
        for a in self.session.exec(stmt).all():
            out[a.quiz_id].append(a)
        return out

    def list_for_students(self, student_ids: Optional[Iterable[int]] = None) -> List[models.QuizAttempt]:
        stmt = select(models.QuizAttempt).order_by(models.QuizAttempt.completed_at, models.QuizAttempt.id)
        if student_ids is not None:
            stmt = stmt.where(models.QuizAttempt.student_id.in_(list(student_ids)))
        return self.session.exec(stmt).all()


class ModuleRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, module: models.Module) -> models.Module:
        self.session.add(module)
        self.session.commit()
        self.session.refresh(module)
        return module

    def get(self, module_id: int) -> Optional[models.Module]:
        return self.session.get(models.Module, module_id)

    def list(self, category=None) -> List[models.Module]:
        stmt = select(models.Module)
        if category:
            stmt = stmt.where(models.Module.category == category)
        stmt = stmt.order_by(models.Module.created_at.desc(), models.Module.id.desc())
        return self.session.exec(stmt).all()

    def delete(self, module: models.Module) -> None:
        self.session.delete(module)
        self.session.commit()


class ChallengeRepository:
    """Daily challenge completions keyed by user and UTC date."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int, day: date) -> Optional[models.ChallengeCompletion]:
        stmt = select(models.ChallengeCompletion).where(
            models.ChallengeCompletion.user_id == user_id,
            models.ChallengeCompletion.challenge_date == day,
        )
        return self.session.exec(stmt).first()

    def stage(self, completion: models.ChallengeCompletion) -> models.ChallengeCompletion:
        self.session.add(completion)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            raise Conflict("Daily challenge already completed today")
        return completion
