"""SQLModel data models.

Each class maps to a table. Submissions and quiz attempts live in their
own tables keyed by (parent id, student id) so that a review or an
attempt only ever touches its own row. Users are referenced by id and
never cascade.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (client input, values read back from SQLite)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Role(str, Enum):
    admin = "admin"
    teacher = "teacher"
    student = "student"


class Category(str, Enum):
    recycling = "recycling"
    energy = "energy"
    water = "water"
    biodiversity = "biodiversity"
    climate = "climate"
    waste = "waste"
    transport = "transport"
    other = "other"


class Difficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class SubmissionStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class User(SQLModel, table=True):
    """A platform account.

    `points`, `tasks_completed` and `quizzes_taken` are counters that are
    only changed through `UserRepository.increment` (atomic `col + n`),
    apart from the explicit admin overwrite of `points`.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: Role = Field(default=Role.student, index=True)
    points: int = Field(default=0)
    is_active: bool = Field(default=True)
    is_approved: bool = Field(default=False)
    badges: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    streak: int = Field(default=0)
    tasks_completed: int = Field(default=0)
    quizzes_taken: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)


class Task(SQLModel, table=True):
    """A hands-on activity students submit evidence for."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: str
    category: Category = Field(default=Category.other, index=True)
    difficulty: Difficulty = Field(default=Difficulty.easy, index=True)
    points: int
    due_date: datetime
    created_by: int = Field(foreign_key="user.id", index=True)
    is_active: bool = Field(default=True)
    resource_filename: Optional[str] = None
    resource_original_name: Optional[str] = None
    resource_path: Optional[str] = None
    resource_mimetype: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class TaskAssignment(SQLModel, table=True):
    """Restricts a task to a student. A task without rows is open to all."""
    task_id: int = Field(foreign_key="task.id", primary_key=True)
    student_id: int = Field(foreign_key="user.id", primary_key=True)


class TaskSubmission(SQLModel, table=True):
    """A student's single submission for a task."""
    __table_args__ = (UniqueConstraint("task_id", "student_id", name="uq_submission_task_student"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    task_id: int = Field(foreign_key="task.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    description: str
    file_filename: Optional[str] = None
    file_original_name: Optional[str] = None
    file_path: Optional[str] = None
    file_mimetype: Optional[str] = None
    status: SubmissionStatus = Field(default=SubmissionStatus.pending, index=True)
    feedback: str = ""
    points_awarded: int = 0
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    reviewed_at: Optional[datetime] = None
    submitted_at: datetime = Field(default_factory=utcnow)


class Quiz(SQLModel, table=True):
    """A timed multiple-choice quiz with a points reward pool."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: str = ""
    category: Category = Field(default=Category.other, index=True)
    points: int = 0
    time_limit: int = 10
    created_by: int = Field(foreign_key="user.id", index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class QuizQuestion(SQLModel, table=True):
    """One question of a quiz; `position` keeps the authored order."""
    id: Optional[int] = Field(default=None, primary_key=True)
    quiz_id: int = Field(foreign_key="quiz.id", index=True)
    position: int
    question: str
    options: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    correct_answer: int
    explanation: Optional[str] = None


class QuizAttempt(SQLModel, table=True):
    """The single scored attempt of a student at a quiz."""
    __table_args__ = (UniqueConstraint("quiz_id", "student_id", name="uq_attempt_quiz_student"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    quiz_id: int = Field(foreign_key="quiz.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    answers: List[int] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    score: int
    correct_answers: int
    total_questions: int
    points_earned: int
    time_taken: int = 0
    completed_at: datetime = Field(default_factory=utcnow)


class Module(SQLModel, table=True):
    """A learning video. Pure content, no workflow state."""
    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: str
    video_url: str
    category: Category = Field(default=Category.other, index=True)
    created_by: int = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)


class ChallengeCompletion(SQLModel, table=True):
    """Marks the daily challenge as done for a user on a UTC date."""
    __table_args__ = (UniqueConstraint("user_id", "challenge_date", name="uq_challenge_user_day"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    challenge_date: date
    points_awarded: int = 0
    completed_at: datetime = Field(default_factory=utcnow)
