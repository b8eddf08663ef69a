#!/usr/bin/env python3
"""
RotaGuard admin CLI -- user seeding and session maintenance.

Usage:
  python main.py create-user --email alice@example.com
  python main.py create-user --email alice@example.com --password 's3cret'
  python main.py deactivate-user --user-id 3
  python main.py logout-all --user-id 3
  python main.py purge-sessions
  python main.py --db-url sqlite:///other.db purge-sessions

Environment variables:
  DATABASE_URL  Database used when --db-url is not given (see core/config.py).

Registration is not part of the HTTP API; operators provision accounts here.
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.ledger import SessionLedger
from auth.models import User
from auth.passwords import hash_password
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("rotaguard.cli")

_MAX_PASSWORD_LENGTH = 255


def _resolve_db_url(cli_value: Optional[str]) -> str:
    if cli_value:
        return cli_value
    return get_settings().database_url


def _cmd_create_user(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if not password or len(password) > _MAX_PASSWORD_LENGTH:
        print(f"  [!] Password must be 1-{_MAX_PASSWORD_LENGTH} characters.")
        return 2
    store = UserStore(_resolve_db_url(args.db_url))
    try:
        user_id = store.create_user(User(email=args.email, hashed_password=hash_password(password)))
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created user {args.email} (id={user_id})")
    return 0


def _cmd_deactivate_user(args: argparse.Namespace) -> int:
    db_url = _resolve_db_url(args.db_url)
    store = UserStore(db_url)
    ledger = SessionLedger(db_url)
    try:
        if not store.set_active(args.user_id, False):
            print(f"  [!] No user with id={args.user_id}.")
            return 1
        revoked = ledger.revoke_all(args.user_id)
    finally:
        ledger.close()
        store.close()
    print(f"  Deactivated user id={args.user_id}; revoked {revoked} session(s)")
    return 0


def _cmd_logout_all(args: argparse.Namespace) -> int:
    ledger = SessionLedger(_resolve_db_url(args.db_url))
    try:
        revoked = ledger.revoke_all(args.user_id)
    finally:
        ledger.close()
    print(f"  Revoked {revoked} session(s) for user id={args.user_id}")
    return 0


def _cmd_purge_sessions(args: argparse.Namespace) -> int:
    ledger = SessionLedger(_resolve_db_url(args.db_url))
    try:
        purged = ledger.purge_expired()
    finally:
        ledger.close()
    print(f"  Purged {purged} expired session(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="RotaGuard admin CLI -- provision users and manage refresh sessions.",
    )
    parser.add_argument("--db-url", help="SQLAlchemy database URL (default: DATABASE_URL setting)")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a local user account")
    create.add_argument("--email", required=True)
    create.add_argument("--password", help="Password (prompted if omitted)")
    create.set_defaults(func=_cmd_create_user)

    deactivate = sub.add_parser("deactivate-user", help="Deactivate a user and revoke their sessions")
    deactivate.add_argument("--user-id", type=int, required=True)
    deactivate.set_defaults(func=_cmd_deactivate_user)

    logout_all = sub.add_parser("logout-all", help="Revoke every active session of a user")
    logout_all.add_argument("--user-id", type=int, required=True)
    logout_all.set_defaults(func=_cmd_logout_all)

    purge = sub.add_parser("purge-sessions", help="Delete expired session rows")
    purge.set_defaults(func=_cmd_purge_sessions)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
