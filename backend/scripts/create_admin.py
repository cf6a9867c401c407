"""Create (or promote) an approved admin account.

Self-registration never grants the admin role, so the first admin of a
fresh database is bootstrapped from the command line:

    python scripts/create_admin.py --name "Site Admin" --email admin@example.com --password secret123
"""

import argparse
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlmodel import Session  # noqa: E402

from ecolearn import models  # noqa: E402
from ecolearn.database import create_db_and_tables, engine  # noqa: E402
from ecolearn.repositories import UserRepository  # noqa: E402
from ecolearn.services import AuthService  # noqa: E402


def create_admin(session: Session, name: str, email: str, password: str) -> models.User:
    """Create an approved admin, or promote and approve an existing account."""
    repo = UserRepository(session)
    existing = repo.get_by_email(email)
    if existing:
        user = repo.update_fields(existing.id, role=models.Role.admin, is_approved=True, is_active=True)
        AuthService(session).set_password(user.id, password)
        return user
    return AuthService(session).register(name, email, password, role=models.Role.admin.value, approved=True)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create an EcoLearn admin account")
    parser.add_argument("--name", default="Administrator")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    args = parser.parse_args(argv)
    if len(args.password) < 6:
        parser.error("password must be at least 6 characters")

    create_db_and_tables()
    with Session(engine) as session:
        user = create_admin(session, args.name, args.email, args.password)
    print(f"Admin ready: id={user.id} email={user.email}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
