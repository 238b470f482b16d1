#!/usr/bin/env python3
"""Seed an admin account in the helpdesk identity store.

The server keeps identities in memory, so this is mostly useful from a
shell that then serves the app in the same process, or to print an access
token for poking the API by hand:

    JWT_SECRET=... python scripts/bootstrap_admin.py --email admin@example.com

The password comes from --password or ADMIN_PASSWORD. It must be at least
12 characters and mix three of: lowercase, uppercase, digits, symbols.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import string
import sys
from pathlib import Path
from typing import Optional, Sequence

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_PASSWORD_LENGTH = 12
_CHARACTER_CLASSES = (
    set(string.ascii_lowercase),
    set(string.ascii_uppercase),
    set(string.digits),
    set(string.punctuation),
)


def validate_password(password: str) -> bool:
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    chars = set(password)
    return sum(1 for cls in _CHARACTER_CLASSES if chars & cls) >= 3


async def bootstrap_admin(
    email: str,
    password: str,
    *,
    display_name: Optional[str] = None,
    department: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Create the admin, or promote an existing account of that email.

    ``status`` in the result is ``created``, ``promoted``,
    ``already_admin`` or ``dry_run``; a created account also carries a
    freshly issued ``access_token``.
    """
    # Deferred so the environment is read after argument parsing
    from helpdesk.config import Role
    from helpdesk.service.runtime import get_runtime

    runtime = get_runtime()
    admin = Role.ADMIN.value
    user = runtime.store.get_user_by_email(email)

    if user is not None:
        result = {"user_id": user.id, "email": email}
        if user.role == admin:
            return {**result, "status": "already_admin"}
        if dry_run:
            return {**result, "status": "dry_run"}
        runtime.store.update_user_role(user.id, admin)
        return {**result, "status": "promoted"}

    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.auth.create_user(
        email, password, display_name=display_name, role=admin, department=department
    )
    _, tokens = await runtime.auth.login(email, password)
    return {
        "user_id": user.id,
        "email": user.email,
        "status": "created",
        "access_token": tokens.access_token,
    }


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed a helpdesk admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", dest="display_name", default=None)
    parser.add_argument("--department", default=None)
    parser.add_argument("--dry-run", action="store_true")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if not args.email or not args.password:
        print("error: --email and --password (or ADMIN_EMAIL/ADMIN_PASSWORD) are required", file=sys.stderr)
        return 2
    if not validate_password(args.password):
        print(
            f"error: password needs {MIN_PASSWORD_LENGTH}+ characters from 3 character classes",
            file=sys.stderr,
        )
        return 2

    result = asyncio.run(
        bootstrap_admin(
            args.email,
            args.password,
            display_name=args.display_name,
            department=args.department,
            dry_run=args.dry_run,
        )
    )
    print(f"{result['status']}: {result['email']} (id: {result['user_id']})")
    if result.get("access_token"):
        print(f"access token: {result['access_token']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
