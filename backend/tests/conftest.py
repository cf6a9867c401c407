import itertools
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

# Settings are read at import time, so point them at a scratch dir first.
_TMP = Path(tempfile.mkdtemp(prefix="ecolearn-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["UPLOAD_DIR"] = str(_TMP / "uploads")
os.environ["LOGIN_RATE_LIMIT"] = "5"
os.environ["ENV"] = "dev"

import pytest  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from ecolearn import main  # noqa: E402
from ecolearn.database import engine  # noqa: E402
from ecolearn.repositories import UserRepository  # noqa: E402
from ecolearn.services import AuthService  # noqa: E402

PASSWORD = "secret123"


@dataclass
class Account:
    id: int
    email: str
    role: str
    token: str
    headers: dict = field(default_factory=dict)


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test empty tables and a fresh login throttle."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    main._login_throttle.reset()
    yield


@pytest.fixture()
def make_user():
    """Create an account directly in the database and return its token."""
    counter = itertools.count(1)

    def _make(role="student", name=None, approved=True, active=True) -> Account:
        n = next(counter)
        email = f"{role}{n}@example.com"
        with Session(engine) as session:
            user = AuthService(session).register(name or f"{role.title()} {n}", email, PASSWORD, role=role,
                                                 approved=approved)
            user_id = user.id
            token = AuthService(session).issue_token(user)
            if not active:
                UserRepository(session).update_fields(user_id, is_active=False)
        return Account(id=user_id, email=email, role=role, token=token,
                       headers={"Authorization": f"Bearer {token}"})

    return _make


@pytest.fixture()
def upload_dir() -> Path:
    return Path(os.environ["UPLOAD_DIR"])
