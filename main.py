#!/usr/bin/env python3
"""
CredGuard -- credential hygiene administration from the command line.

Runs the same CredentialSecurityService the web app uses, against the
database in DATABASE_URL.

Usage:
  python main.py reverify 12 15 40 --reason "Mailbox provider breach"
  python main.py reverify --file ids.txt
  python main.py reverify --all-expired
  python main.py password-reset 7 --type staff
  python main.py expired --kind password
  python main.py expired --kind all --as-of 2026-01-31 --json
  python main.py audit 12 --view password_changes

Exit status is 1 when a bulk operation failed for any principal.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from auth.models import Principal
from auth.registry import PrincipalRegistry
from core.clock import Clock, FixedClock, utc_now
from core.config import ConfigurationError, Settings, get_settings
from core.database import make_engine
from ledger.models import LedgerView
from ledger.store import AuditLedger
from security.notifier import build_notifier
from security.policy import PolicyConfig
from security.resolver import ByIds, Many, PrincipalSelection
from security.service import BulkOutcome, CredentialSecurityService


def _load_file(path: str) -> list[str]:
    """Read principal IDs from a file -- one per line, # comments and blank lines ignored.

    Resolves symlinks and verifies the path is a regular file before reading.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        print(f"  [!] '{path}' is not a readable file.")
        return []
    try:
        lines = file_path.read_text().splitlines()
    except OSError as e:
        print(f"  [!] Could not read file '{path}': {e}")
        return []
    return [line.strip() for line in lines if line.strip() and not line.strip().startswith("#")]


def _parse_ids(raw: list[str]) -> list[int]:
    ids: list[int] = []
    seen: set[int] = set()
    for value in raw:
        if not value.isdigit():
            raise ValueError(f"'{value}' is not a principal ID.")
        n = int(value)
        if n not in seen:
            seen.add(n)
            ids.append(n)
    return ids


def _parse_as_of(value: str) -> datetime:
    """Parse --as-of. A bare date means the end of that day (UTC)."""
    try:
        if len(value) == 10:
            day = datetime.strptime(value, "%Y-%m-%d")
            return day.replace(hour=23, minute=59, second=59, tzinfo=timezone.utc)
        dt = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not an ISO date or datetime.") from None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def build_service(settings: Settings, clock: Clock = utc_now) -> CredentialSecurityService:
    """Wire a service from settings, the same way the web app's lifespan does."""
    engine = make_engine(settings.database_url)
    registry = PrincipalRegistry(engine, settings.principal_types, default=settings.default_principal_type, clock=clock)
    ledger = AuditLedger(engine, clock=clock)
    return CredentialSecurityService(
        registry,
        ledger,
        build_notifier(settings),
        PolicyConfig.from_settings(settings),
        clock=clock,
    )


def _principal_row(p: Principal) -> dict:
    return {
        "id": p.id,
        "principal_type": p.principal_type,
        "email": p.email,
        "email_verified_at": p.email_verified_at.isoformat() if p.email_verified_at else None,
    }


def _print_outcome(outcome: BulkOutcome) -> None:
    print(f"  {outcome.action}: {len(outcome.succeeded)} succeeded, {len(outcome.failed)} failed.")
    for principal, error in outcome.failed:
        print(f"  [!] {principal.principal_type}#{principal.id} <{principal.email}>: {error}")


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _bulk(args: argparse.Namespace, service: CredentialSecurityService, action: str) -> int:
    selection: PrincipalSelection
    if args.all_expired:
        if action == "reverify":
            selection = Many(service.get_expired_verification())
        else:
            selection = Many(service.get_expired_passwords())
    else:
        raw = list(args.ids)
        if args.file:
            raw.extend(_load_file(args.file))
        ids = _parse_ids(raw)
        if not ids:
            print("  Nothing to do: pass principal IDs, --file, or --all-expired.")
            return 0
        selection = ByIds(ids)

    if action == "reverify":
        outcome = service.request_reverification(selection, reason=args.reason)
    else:
        outcome = service.request_password_change(selection, reason=args.reason)
    _print_outcome(outcome)
    return 0 if outcome.ok else 1


def _expired(args: argparse.Namespace, service: CredentialSecurityService) -> int:
    if args.kind == "verification":
        principals = service.get_expired_verification()
    elif args.kind == "password":
        principals = service.get_expired_passwords()
    else:
        principals = service.get_requiring_action()

    as_of = service.clock().isoformat()
    if args.json:
        print(
            json.dumps(
                {
                    "kind": args.kind,
                    "principal_type": service.config.default_principal_type,
                    "as_of": as_of,
                    "principals": [_principal_row(p) for p in principals],
                },
                indent=2,
            )
        )
        return 0

    print(f"\n  Expired ({args.kind}) as of {as_of}: {len(principals)} principal(s)")
    print("  " + "─" * 60)
    for p in principals:
        verified = p.email_verified_at.strftime("%Y-%m-%d") if p.email_verified_at else "never"
        print(f"  {p.id:>6}  {p.email:<40} verified: {verified}")
    print()
    return 0


def _audit(args: argparse.Namespace, service: CredentialSecurityService) -> int:
    subject = service.registry.get(service.config.default_principal_type).get_by_id(args.principal_id)
    if subject is None:
        print(f"  [!] No {service.config.default_principal_type} with ID {args.principal_id}.")
        return 1
    records = service.ledger.list_for(subject, view=LedgerView(args.view), recent_days=args.recent_days)
    if args.json:
        rows = [
            {
                "id": r.id,
                "created_at": r.created_at.isoformat(),
                "reason": r.reason,
                "triggered_by": r.trigger.label() if r.trigger else None,
                "verified_at": r.verified_at.isoformat() if r.verified_at else None,
                "password_changed_at": r.password_changed_at.isoformat() if r.password_changed_at else None,
            }
            for r in records
        ]
        print(json.dumps(rows, indent=2))
        return 0

    print(f"\n  Audit trail for {subject.principal_type}#{subject.id} <{subject.email}>: {len(records)} record(s)")
    print("  " + "─" * 60)
    for r in records:
        by = r.trigger.label() if r.trigger else "-"
        print(f"  {r.created_at:%Y-%m-%d %H:%M}  {by:<12} {r.reason or '-'}")
    print()
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credguard",
        description="Credential hygiene administration: re-verification, password expiry, audits.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py reverify 12 15 40 --reason "Mailbox provider breach"
  python main.py password-reset --all-expired
  python main.py expired --kind all --as-of 2026-01-31
  python main.py audit 12 --recent-days 30
        """,
    )
    # Shared by every subcommand so --type can follow the subcommand name.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--type",
        dest="principal_type",
        metavar="KEY",
        help="Principal type key from PRINCIPAL_TYPES (default: DEFAULT_PRINCIPAL_TYPE)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    for name, help_text in (
        ("reverify", "Clear email verification and send new verification links"),
        ("password-reset", "Request a password change and send reset links"),
    ):
        p = sub.add_parser(name, help=help_text, parents=[common])
        p.add_argument("ids", nargs="*", metavar="ID", help="Principal IDs")
        p.add_argument("--file", metavar="PATH", help="File with one principal ID per line (# comments supported)")
        p.add_argument("--all-expired", action="store_true", help="Target every principal whose credential expired")
        p.add_argument("--reason", default=None, help="Reason stored in the audit ledger")

    p = sub.add_parser("expired", help="List principals with expired credentials", parents=[common])
    p.add_argument(
        "--kind",
        choices=["verification", "password", "all"],
        default="all",
        help="Which expiry to report (default: all)",
    )
    p.add_argument(
        "--as-of",
        type=_parse_as_of,
        default=None,
        metavar="DATE",
        help="Evaluate expiry at this ISO date/datetime instead of now",
    )
    p.add_argument("--json", action="store_true", help="Output structured JSON")

    p = sub.add_parser("audit", help="Show the audit trail of one principal", parents=[common])
    p.add_argument("principal_id", type=int, metavar="ID")
    p.add_argument("--view", choices=[v.value for v in LedgerView], default=LedgerView.ALL.value)
    p.add_argument("--recent-days", type=int, default=None, metavar="N")
    p.add_argument("--json", action="store_true", help="Output structured JSON")
    return parser


def main(argv: Optional[list[str]] = None, service: Optional[CredentialSecurityService] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    if service is None:
        as_of = getattr(args, "as_of", None)
        service = build_service(get_settings(), clock=FixedClock(as_of) if as_of else utc_now)

    try:
        if args.principal_type:
            service = service.use_principal_type(args.principal_type)
        if args.command == "reverify":
            return _bulk(args, service, "reverify")
        if args.command == "password-reset":
            return _bulk(args, service, "password-reset")
        if args.command == "expired":
            return _expired(args, service)
        return _audit(args, service)
    except (ConfigurationError, ValueError) as e:
        print(f"  [!] {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
