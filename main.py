#!/usr/bin/env python3
"""
StaffGate -- administrator command line.

Bootstraps the first administrator and works the approval queue without the
HTTP API. Uses the same settings (environment / .env) and database as the
server.

Usage:
  python main.py create-admin admin@example.com --name "Ada Admin"
  python main.py list --status pending
  python main.py approve <profile-id> --actor admin@example.com
  python main.py reject <profile-id> --actor admin@example.com --reason "Not an employee"

The password for create-admin comes from the STAFFGATE_ADMIN_PASSWORD setting
(environment or .env) when set, otherwise it is prompted for interactively.
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from auth.errors import AuthError
from auth.facade import AuthFacade
from auth.models import EmployeeProfile, ProfileStatus, Role
from auth.notifier import NotificationDispatcher, build_notifier
from auth.store import SqlStore, Store
from core.config import Settings, get_settings


def _read_password(settings: Settings, prompt_twice: bool = True) -> str:
    """Return the configured admin password, or prompt for one."""
    if settings.staffgate_admin_password:
        return settings.staffgate_admin_password
    password = getpass.getpass("Password: ")
    if prompt_twice and getpass.getpass("Repeat password: ") != password:
        raise SystemExit("  [!] Passwords do not match.")
    return password


def _print_profiles(profiles: list[EmployeeProfile]) -> None:
    if not profiles:
        print("  No employees found.")
        return
    print(f"  {'ID':<32}  {'STATUS':<8}  {'ROLE':<8}  NAME")
    for p in profiles:
        print(f"  {p.id:<32}  {p.status.value:<8}  {p.role.value:<8}  {p.full_name}")


def _resolve_actor(facade: AuthFacade, email: str) -> str:
    """Return the account id of an active administrator, or exit."""
    account = facade.store.get_account_by_email(email.strip().lower())
    profile = facade.store.get_profile_by_account(account.id) if account else None
    if profile is None or profile.role != Role.admin or profile.status != ProfileStatus.active:
        raise SystemExit(f"  [!] '{email}' is not an active administrator.")
    return account.id


def run(args: argparse.Namespace, facade: AuthFacade) -> int:
    """Execute one parsed command against ``facade``. Returns the exit code."""
    try:
        if args.command == "create-admin":
            result = facade.create_admin(args.email, _read_password(facade.settings), args.name)
            print(f"  Administrator created: {result.account.email} (profile {result.profile.id})")
        elif args.command == "list":
            status = ProfileStatus(args.status) if args.status else None
            _print_profiles(facade.list_profiles(status=status))
        elif args.command == "approve":
            profile = facade.admin_approve(args.profile_id, _resolve_actor(facade, args.actor))
            print(f"  Approved {profile.full_name} ({profile.id}).")
        elif args.command == "reject":
            profile = facade.admin_reject(args.profile_id, _resolve_actor(facade, args.actor), args.reason)
            print(f"  Rejected {profile.full_name} ({profile.id}).")
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="staffgate",
        description="StaffGate administrator tools.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin admin@example.com --name "Ada Admin"
  python main.py list --status pending
  python main.py approve 3f2a... --actor admin@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create an active, verified administrator")
    create.add_argument("email", help="Administrator email address")
    create.add_argument("--name", required=True, help="Full name shown in the directory")

    listing = sub.add_parser("list", help="List employee profiles")
    listing.add_argument(
        "--status",
        choices=[s.value for s in ProfileStatus],
        default=None,
        help="Only show profiles with this status",
    )

    for name, verb in (("approve", "Approve"), ("reject", "Reject")):
        cmd = sub.add_parser(name, help=f"{verb} a pending employee")
        cmd.add_argument("profile_id", help="Employee profile id (see `list`)")
        cmd.add_argument("--actor", required=True, metavar="EMAIL", help="Email of the reviewing administrator")
        if name == "reject":
            cmd.add_argument("--reason", default=None, help="Reason sent to the employee")
    return parser


def main(
    argv: Optional[list[str]] = None,
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)-5s %(name)s %(message)s")

    settings = settings or get_settings()
    owns_store = store is None
    store = store or SqlStore(settings.database_url)
    dispatcher = NotificationDispatcher(build_notifier(settings), max_workers=1)
    try:
        return run(args, AuthFacade(store, settings, dispatcher))
    finally:
        # Drain pending approval/rejection emails before exiting.
        dispatcher.close()
        if owns_store:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
