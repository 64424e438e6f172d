"""Command line access to the FitSheets data layer."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Callable, Optional

from fitsheets import google_client
from fitsheets.errors import StoreError
from fitsheets.logging_config import configure_logging
from fitsheets.permissions import ROLES, PermissionRegistry
from fitsheets.retry import RetryExecutor
from fitsheets.session import Session
from fitsheets.settings import DEFAULT_SETTINGS_PATH, load_database_settings
from fitsheets.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class CliContext:
    session: Session
    registry: PermissionRegistry


def open_context(args: argparse.Namespace) -> CliContext:
    settings = load_database_settings(args.settings)
    credentials = google_client.load_credentials(settings.client_secret_path, settings.token_path)
    services = google_client.build_services(credentials)
    user = google_client.fetch_user(services.oauth2)

    store = RecordStore(services.sheets, services.drive, user.email, spreadsheet_name=settings.spreadsheet_name)
    retry = RetryExecutor(max_attempts=settings.retry_attempts, delay=settings.retry_delay_seconds)
    session = Session(store, user, retry=retry)
    session.start()
    registry = PermissionRegistry(
        services.drive, store, session.bus, settle_delay=settings.permission_settle_seconds
    )
    if args.student_sheet:
        session.view_student(args.student_sheet, args.student_email)
    return CliContext(session=session, registry=registry)


def command_init(args: argparse.Namespace, context: CliContext) -> int:
    store = context.session.store
    print(f"Spreadsheet   : {store.original_spreadsheet_id}")
    profile = context.session.profile
    if profile is not None:
        print(f"Profile       : {profile.display_name or profile.id} ({profile.role})")
    else:
        print("Profile       : not loaded")
    return 0


def command_weight_add(args: argparse.Namespace, context: CliContext) -> int:
    result = context.session.record_weight(args.kg)
    print(f"Recorded {result.entry.weight_kg:g} kg ({result.entry.id})")
    if not result.projection_synced:
        print("Warning: profile weight could not be updated; it will catch up on the next save.", file=sys.stderr)
    return 0


def command_weight_latest(args: argparse.Namespace, context: CliContext) -> int:
    summary = context.session.latest_weight()
    if summary.latest is None:
        print("No weight recorded yet.")
        return 0
    print(f"Latest weight : {summary.latest:g} kg")
    if summary.previous is not None:
        print(f"Previous      : {summary.previous:g} kg ({summary.difference:+.1f} kg)")
    return 0


def command_weight_list(args: argparse.Namespace, context: CliContext) -> int:
    entries = context.session.weight_history()
    if not entries:
        print("No weight recorded yet.")
        return 0
    for entry in entries:
        print(f"{entry.id}\t{entry.created_at or ''}\t{entry.weight_kg:g}")
    return 0


def command_weight_edit(args: argparse.Namespace, context: CliContext) -> int:
    result = context.session.update_weight(args.entry_id, args.kg)
    print(f"Updated {result.entry.id} to {result.entry.weight_kg:g} kg")
    if not result.projection_synced:
        print("Warning: profile weight could not be updated; it will catch up on the next save.", file=sys.stderr)
    return 0


def command_weight_delete(args: argparse.Namespace, context: CliContext) -> int:
    context.session.delete_weight(args.entry_id)
    print(f"Deleted {args.entry_id}")
    return 0


def command_share_list(args: argparse.Namespace, context: CliContext) -> int:
    grants = context.registry.list_permissions()
    if not grants:
        print("Not shared with anyone.")
        return 0
    for grant in grants:
        label = grant.display_name or grant.email_address
        print(f"{grant.id}\t{grant.email_address}\t{grant.role}\t{label}")
    return 0


def command_share_grant(args: argparse.Namespace, context: CliContext) -> int:
    grant = context.registry.grant_access(args.email, args.role)
    print(f"Granted {grant.role} access to {grant.email_address} ({grant.id})")
    return 0


def command_share_revoke(args: argparse.Namespace, context: CliContext) -> int:
    context.registry.revoke_permission(args.permission_id)
    print(f"Revoked {args.permission_id}")
    return 0


def command_students(args: argparse.Namespace, context: CliContext) -> int:
    students = context.registry.list_students()
    if not students:
        print("No spreadsheets are shared with you.")
        return 0
    for student in students:
        print(f"{student.id}\t{student.owner_name or ''}\t{student.owner_email or ''}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FitSheets spreadsheet database tool")
    parser.add_argument("--settings", default=DEFAULT_SETTINGS_PATH, help="Path to the settings JSON file")
    parser.add_argument("--verbose", action="store_true", help="Log debug details")
    parser.add_argument("--student-sheet", help="Work on a student's shared spreadsheet")
    parser.add_argument("--student-email", help="Email of the student owning --student-sheet")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Locate or create the APP_DB spreadsheet")
    init_parser.set_defaults(func=command_init)

    weight_parser = subparsers.add_parser("weight", help="Record and read body weight")
    weight_commands = weight_parser.add_subparsers(dest="weight_command", required=True)
    add_parser = weight_commands.add_parser("add", help="Record a new weight sample")
    add_parser.add_argument("kg", type=float, help="Weight in kilograms")
    add_parser.set_defaults(func=command_weight_add)
    latest_parser = weight_commands.add_parser("latest", help="Show the latest and previous weight")
    latest_parser.set_defaults(func=command_weight_latest)
    history_parser = weight_commands.add_parser("list", help="List weight samples, newest first")
    history_parser.set_defaults(func=command_weight_list)
    edit_parser = weight_commands.add_parser("edit", help="Correct a weight sample")
    edit_parser.add_argument("entry_id")
    edit_parser.add_argument("kg", type=float, help="Weight in kilograms")
    edit_parser.set_defaults(func=command_weight_edit)
    delete_parser = weight_commands.add_parser("delete", help="Delete a weight sample")
    delete_parser.add_argument("entry_id")
    delete_parser.set_defaults(func=command_weight_delete)

    share_parser = subparsers.add_parser("share", help="Manage access to the spreadsheet")
    share_commands = share_parser.add_subparsers(dest="share_command", required=True)
    list_parser = share_commands.add_parser("list", help="List people with access")
    list_parser.set_defaults(func=command_share_list)
    grant_parser = share_commands.add_parser("grant", help="Share the spreadsheet with someone")
    grant_parser.add_argument("email")
    grant_parser.add_argument("--role", choices=ROLES, default="writer")
    grant_parser.set_defaults(func=command_share_grant)
    revoke_parser = share_commands.add_parser("revoke", help="Remove access by permission id")
    revoke_parser.add_argument("permission_id")
    revoke_parser.set_defaults(func=command_share_revoke)

    students_parser = subparsers.add_parser("students", help="List spreadsheets shared with you")
    students_parser.set_defaults(func=command_students)

    return parser


def main(
    argv: list[str] | None = None,
    context_factory: Optional[Callable[[argparse.Namespace], CliContext]] = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    factory = context_factory or open_context
    try:
        context = factory(args)
    except (StoreError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        return args.func(args, context)
    except StoreError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        context.session.close()


if __name__ == "__main__":
    sys.exit(main())
