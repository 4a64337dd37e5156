#!/usr/bin/env python3
"""
SessionGuard -- credential and session authority.

Usage:
  python main.py create-admin admin@example.com --name "Site Admin"
  python main.py create-admin                 # uses FIRST_ADMIN_EMAIL / FIRST_ADMIN_NAME
  python main.py serve --host 0.0.0.0 --port 8000

Environment variables (see core/config.py for the full list):
  SECRET_KEY     Required outside DEBUG mode. At least 32 characters.
  DATABASE_URL   SQLAlchemy URL. Defaults to sqlite:///sessionguard.db
  EMAIL_API_KEY  Email provider key. Empty = emails go to the operator log.
  PROXY_HEADERS  true behind a reverse proxy; FORWARDED_ALLOW_IPS lists the
                 proxy addresses whose X-Forwarded-For uvicorn will honour.
"""

import argparse
import asyncio
import logging
import sys

from auth.audit import AuditLog
from auth.devices import DeviceRegistry
from auth.errors import AuthError
from auth.models import ROLE_ADMIN
from auth.reset import PasswordResetFlow
from auth.service import AuthService
from auth.store import UserStore
from core.config import get_settings
from mailer.dispatch import EmailDispatcher


def _create_admin(email: str, name: str | None) -> int:
    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        audit_log = AuditLog(store)
        mailer = EmailDispatcher.from_settings(settings)
        registry = DeviceRegistry(store)
        reset_flow = PasswordResetFlow(store, mailer, audit_log, settings)
        service = AuthService(store, registry, reset_flow, mailer, audit_log, settings)
        try:
            created = asyncio.run(service.create_user(email, name, ROLE_ADMIN))
        except AuthError as e:
            print(f"  [!] {e.message}")
            return 1
    finally:
        store.close()

    user = created["user"]
    print(f"  Admin created: {user['email']} (id {user['id']})")
    print(f"  Temporary password: {created['temporary_password']}")
    print("  This password is shown once. It must be changed at first sign-in.")
    if not created["email_sent"]:
        print("  [!] Welcome email was not delivered.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="SessionGuard -- credential and session authority",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    admin = sub.add_parser("create-admin", help="Create an admin account with a temporary password")
    admin.add_argument("email", nargs="?", help="Admin email (default: FIRST_ADMIN_EMAIL)")
    admin.add_argument("--name", default=None, help="Display name (default: FIRST_ADMIN_NAME)")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development)")

    args = parser.parse_args(argv)

    if args.command == "create-admin":
        logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
        settings = get_settings()
        email = args.email or settings.first_admin_email
        if not email:
            parser.error("EMAIL is required (or set FIRST_ADMIN_EMAIL)")
        return _create_admin(email.strip().lower(), args.name or settings.first_admin_name or None)

    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        proxy_headers=settings.proxy_headers,
        forwarded_allow_ips=settings.forwarded_allow_ips,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
