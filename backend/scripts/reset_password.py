"""Reset the password of an existing account from the command line."""

import argparse
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlmodel import Session  # noqa: E402

from ecolearn.database import engine  # noqa: E402
from ecolearn.repositories import UserRepository  # noqa: E402
from ecolearn.services import AuthService  # noqa: E402


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reset an EcoLearn user's password")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    args = parser.parse_args(argv)
    if len(args.password) < 6:
        parser.error("password must be at least 6 characters")

    with Session(engine) as session:
        user = UserRepository(session).get_by_email(args.email)
        if not user:
            print(f"No user with email {args.email}", file=sys.stderr)
            return 1
        AuthService(session).set_password(user.id, args.password)
    print(f"Password updated for {args.email}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
