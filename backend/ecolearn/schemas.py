"""Pydantic request schemas used by the API.

The client speaks camelCase (`submissionId`, `timeTaken`), so every
schema derives from `CamelModel`, which accepts either spelling.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import ValidationFailed
from .models import Category, Difficulty, Role, as_utc


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


def parse_payload(model, data: dict):
    """Validate `data` against `model`, raising `ValidationFailed` on error.

    Used for multipart forms, where FastAPI cannot validate a body model.
    """
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "invalid value")}
            for err in exc.errors()
        ]
        raise ValidationFailed("Validation errors", errors)


class RegisterIn(CamelModel):
    """Self-registration; the account waits for admin approval."""
    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6)
    role: Literal["student", "teacher"] = "student"


class LoginIn(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserCreateIn(CamelModel):
    """Admin-created account; auto-approved."""
    name: str = Field(min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6)
    role: Role = Role.student


class AddPointsIn(CamelModel):
    points: int = Field(ge=1)


class SetPointsIn(CamelModel):
    points: int = Field(ge=0)


class RoleIn(CamelModel):
    role: Role


class BadgeIn(CamelModel):
    name: str = Field(min_length=1, max_length=50)
    description: str = Field(default="", max_length=200)


class TaskCreateIn(CamelModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=1000)
    category: Category = Category.other
    difficulty: Difficulty = Difficulty.easy
    points: int = Field(ge=1)
    due_date: datetime
    assigned_to: List[int] = Field(default_factory=list)

    @field_validator("due_date")
    @classmethod
    def due_date_in_utc(cls, value):
        return as_utc(value)


class TaskUpdateIn(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    category: Optional[Category] = None
    difficulty: Optional[Difficulty] = None
    points: Optional[int] = Field(default=None, ge=1)
    due_date: Optional[datetime] = None
    assigned_to: Optional[List[int]] = None
    is_active: Optional[bool] = None

    @field_validator("due_date")
    @classmethod
    def due_date_in_utc(cls, value):
        return as_utc(value)


class SubmissionIn(CamelModel):
    description: str = Field(min_length=3, max_length=500)


class ReviewIn(CamelModel):
    submission_id: int
    status: Literal["approved", "rejected"]
    feedback: str = Field(default="", max_length=300)
    points_awarded: int = Field(default=0, ge=0)


class QuestionIn(CamelModel):
    question: str = Field(min_length=1)
    options: List[str] = Field(min_length=2)
    correct_answer: int = Field(ge=0)
    explanation: Optional[str] = None

    @model_validator(mode="after")
    def _answer_in_range(self):
        if self.correct_answer >= len(self.options):
            raise ValueError("correctAnswer must index one of the options")
        if any(not o.strip() for o in self.options):
            raise ValueError("options must not be empty")
        return self


class QuizIn(CamelModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    category: Category = Category.other
    points: int = Field(ge=0)
    time_limit: int = Field(default=10, ge=1)
    questions: List[QuestionIn] = Field(min_length=1)


class QuizUpdateIn(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    category: Optional[Category] = None
    points: Optional[int] = Field(default=None, ge=0)
    time_limit: Optional[int] = Field(default=None, ge=1)
    questions: Optional[List[QuestionIn]] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None


class AttemptIn(CamelModel):
    """Answers are index-aligned with the quiz questions; -1 = unanswered."""
    answers: List[int]
    time_taken: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _answers_are_indexes(self):
        if any(a < -1 for a in self.answers):
            raise ValueError("answers must be option indexes or -1")
        return self


class ModuleIn(CamelModel):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=500)
    video_url: HttpUrl
    category: Category = Category.other
