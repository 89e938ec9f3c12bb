#!/usr/bin/env python3
"""
Marketplace auth -- operator command line.

Usage:
  python main.py create-admin admin@example.com --name "Site Admin"
  python main.py unlock user@example.com
  python main.py revoke-sessions user@example.com
  python main.py purge-sessions
  python main.py serve --host 0.0.0.0 --port 8000

Environment variables:
  SECRET_KEY     Required. JWT signing key, at least 32 bytes.
  DATABASE_URL   SQLAlchemy URL of the account database
                 (default: sqlite:///marketplace_auth.db).
"""

import argparse
import getpass
import sys

from auth.errors import AuthError
from auth.mailer import SmtpMailer
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import utcnow
from core.config import get_settings


def _prompt_password() -> str:
    """Read the new admin password twice from the terminal without echo."""
    password = getpass.getpass("  Password: ")
    if password != getpass.getpass("  Confirm password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return password


def _cmd_create_admin(service: AuthService, args: argparse.Namespace) -> None:
    account = service.create_admin(args.email, _prompt_password(), args.name)
    print(f"  Admin account created: {account.email} (id {account.id})")


def _cmd_unlock(service: AuthService, args: argparse.Namespace) -> None:
    account = service.unlock_account(args.email)
    print(f"  Unlocked {account.email}. Failed login counter reset.")


def _cmd_revoke_sessions(service: AuthService, args: argparse.Namespace) -> None:
    account = service.revoke_all_tokens(args.email)
    print(f"  Revoked every token and session of {account.email}.")


def _cmd_purge_sessions(service: AuthService, args: argparse.Namespace) -> None:
    removed = service.store.purge_expired_sessions(utcnow())
    print(f"  Purged {removed} expired session(s).")


def _cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="marketplace-auth",
        description="Administer the marketplace auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin admin@example.com
  python main.py unlock user@example.com
  SECRET_KEY=... python main.py serve --port 8080
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-admin", help="Create a verified admin account (password is prompted)")
    p.add_argument("email", help="Admin email address")
    p.add_argument("--name", default=None, help="Display name (max 50 characters)")

    p = sub.add_parser("unlock", help="Clear the lockout and failed login counter of an account")
    p.add_argument("email")

    p = sub.add_parser("revoke-sessions", help="Invalidate every access and refresh token of an account")
    p.add_argument("email")

    sub.add_parser("purge-sessions", help="Delete expired refresh sessions")

    p = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development)")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        _cmd_serve(args)
        return

    try:
        settings = get_settings()
    except ValueError as e:
        print(f"  [!] Configuration error: {e}")
        sys.exit(1)

    store = AccountStore(settings.database_url)
    service = AuthService.from_settings(settings, store, SmtpMailer.from_settings(settings))
    handlers = {
        "create-admin": _cmd_create_admin,
        "unlock": _cmd_unlock,
        "revoke-sessions": _cmd_revoke_sessions,
        "purge-sessions": _cmd_purge_sessions,
    }
    try:
        handlers[args.command](service, args)
    except AuthError as e:
        print(f"  [!] {e.message}")
        sys.exit(1)
    finally:
        store.close()


if __name__ == "__main__":
    main()
