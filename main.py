#!/usr/bin/env python3
"""
folio-auth -- Admin command line for the folio auth service.

Usage:
  python main.py create-admin
  python main.py create-admin --email me@example.com --name "Me"
  python main.py unlock me@example.com
  python main.py revoke-sessions me@example.com

create-admin prompts for anything not given on the command line; the password
is always read with getpass, never from argv (it would land in shell history).
Only one admin may exist.

Environment variables (see core/config.py):
  DATABASE_URL  Principal database (default: sqlite file next to this script)
  REDIS_URL     Session store, used by revoke-sessions
"""

import argparse
import asyncio
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Principal
from auth.passwords import hash_password, password_strength_errors
from auth.sessions import SessionStore
from auth.store import AdminExistsError, PrincipalStore
from cache.redis_client import create_client, ensure_connected
from core.config import get_settings


def _prompt(label: str, value: Optional[str]) -> str:
    return value if value else input(f"{label}: ").strip()


def _read_new_password() -> Optional[str]:
    """Prompt twice and enforce the strength rules. None means give up."""
    password = getpass.getpass("Password: ")
    problems = password_strength_errors(password)
    if problems:
        for problem in problems:
            print(f"  [!] {problem}")
        return None
    if getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return None
    return password


def cmd_create_admin(args: argparse.Namespace, store: PrincipalStore) -> int:
    if store.has_admin():
        print("  [!] An admin user already exists. Only one admin is allowed.")
        return 1
    email = _prompt("Email", args.email).lower()
    if "@" not in email:
        print(f"  [!] '{email}' doesn't look like an email address.")
        return 1
    name = _prompt("Name", args.name) or email.split("@")[0]
    password = _read_new_password()
    if password is None:
        return 1
    try:
        principal_id = store.create_principal(
            Principal(email=email, name=name, password_hash=hash_password(password), role="admin")
        )
    except AdminExistsError as exc:
        print(f"  [!] {exc}")
        return 1
    except IntegrityError:
        print(f"  [!] A user with email '{email}' already exists.")
        return 1
    print(f"Admin created: {email} (id {principal_id})")
    return 0


def cmd_unlock(args: argparse.Namespace, store: PrincipalStore) -> int:
    principal = store.find_by_email(args.email)
    if principal is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    store.reset_failed_attempts(principal.id)
    print(f"Unlocked {principal.email}: failed attempts cleared.")
    return 0


async def _revoke_all(user_id: str) -> Optional[int]:
    settings = get_settings()
    client = create_client(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    try:
        if not await ensure_connected(client):
            return None
        return await SessionStore.from_settings(client, settings).delete_all_for_user(user_id)
    finally:
        await client.aclose()


def cmd_revoke_sessions(args: argparse.Namespace, store: PrincipalStore) -> int:
    principal = store.find_by_email(args.email)
    if principal is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    revoked = asyncio.run(_revoke_all(principal.id))
    if revoked is None:
        print("  [!] Redis is unreachable; no sessions were revoked.")
        return 1
    print(f"Revoked {revoked} session(s) for {principal.email}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="folio-auth",
        description="Administer folio auth: bootstrap the admin, clear lockouts, revoke sessions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin
  python main.py unlock me@example.com
  DATABASE_URL=sqlite:////srv/folio/auth.db python main.py revoke-sessions me@example.com
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy URL of the principal database (default: DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-admin", help="Create the single admin user")
    create.add_argument("--email", help="Admin email (prompted if omitted)")
    create.add_argument("--name", help="Display name (prompted if omitted)")
    create.set_defaults(handler=cmd_create_admin)

    unlock = sub.add_parser("unlock", help="Clear failed sign-in attempts and any lock")
    unlock.add_argument("email")
    unlock.set_defaults(handler=cmd_unlock)

    revoke = sub.add_parser("revoke-sessions", help="Sign a user out everywhere")
    revoke.add_argument("email")
    revoke.set_defaults(handler=cmd_revoke_sessions)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2
    store = PrincipalStore(db_url=args.database_url or get_settings().database_url)
    try:
        return args.handler(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
