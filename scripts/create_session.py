#!/usr/bin/env python3
"""Create (or reuse) a user and print a fresh session token.

Sessions are normally issued by the external auth service; this is for local
development against the configured database.

Usage:
  python scripts/create_session.py --email dev@example.com --name Dev --ttl-hours 24

Environment fallbacks:
  LAMPCHAT_EMAIL, LAMPCHAT_NAME
"""
from __future__ import annotations

import argparse
import os
import sys

from lampchat.auth import create_session
from lampchat.db import get_session_factory, verify_database_connection
from lampchat.db.repositories import create_user, get_user_by_email


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="LampChat dev session")
    parser.add_argument("--email", default=os.getenv("LAMPCHAT_EMAIL", "dev@example.com"))
    parser.add_argument("--name", default=os.getenv("LAMPCHAT_NAME", ""))
    parser.add_argument("--ttl-hours", type=int, default=24)
    parser.add_argument("--quiet", action="store_true")
    return parser.parse_args()


def exit_with(message: str, code: int = 1) -> None:
    print(message, file=sys.stderr)
    raise SystemExit(code)


def main() -> None:
    args = parse_args()
    if args.ttl_hours <= 0:
        exit_with("--ttl-hours must be positive")
    if not verify_database_connection():
        exit_with("Database unavailable - run 'alembic upgrade head' first")

    db = get_session_factory()()
    try:
        user = get_user_by_email(db, args.email)
        created = user is None
        if user is None:
            user = create_user(db, args.email, args.name)
        token = create_session(db, user, ttl_seconds=args.ttl_hours * 3600)
    finally:
        db.close()

    if args.quiet:
        print(token)
        return
    print(f"User: {user.email} ({'created' if created else 'existing'}) id={user.id}")
    print(f"Session token: {token}")
    print(f"Use it as 'Authorization: Bearer {token}'")


if __name__ == "__main__":
    main()
