"""Create a user account from the command line.

Usage:
    python -m backend.create_user "Ada Lovelace" ada@example.com --role admin
"""
import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from backend.auth.passwords import hash_password
from backend.database import SessionLocal, engine, ensure_user_schema
from backend.models.user import Base, Role, User
from backend.routes.auth_routes import MIN_PASSWORD_LENGTH

MAX_PASSWORD_ATTEMPTS = 3


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user account")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address for login")
    parser.add_argument(
        "--role",
        choices=[role.value for role in Role],
        default=Role.user.value,
        help="Role to assign (default: user)",
    )
    return parser.parse_args(argv)


def prompt_for_password() -> str:
    for _ in range(MAX_PASSWORD_ATTEMPTS):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < MIN_PASSWORD_LENGTH:
            print(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def create_user(name: str, email: str, password: str, role: str, session_factory=None) -> User:
    db = (session_factory or SessionLocal)()
    try:
        user = User(name=name, email=email, password=hash_password(password), role=role)
        db.add(user)
        db.commit()
        db.refresh(user)
        db.expunge(user)
        return user
    except IntegrityError as exc:
        db.rollback()
        raise ValueError(f"A user with email {email} already exists") from exc
    finally:
        db.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    password = prompt_for_password()

    Base.metadata.create_all(bind=engine)
    ensure_user_schema()

    try:
        user = create_user(args.name.strip(), args.email.strip().lower(), password, args.role)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}> ({user.role})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
