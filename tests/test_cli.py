"""
tests/test_cli.py -- Tests for the command-line entry point in main.py.

main() accepts an injected service so these tests run against the in-memory
fixtures instead of DATABASE_URL.
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from ledger.store import AuditLedger
from main import _parse_as_of, _parse_ids, main
from security.service import CredentialSecurityService


class LockedLedger(AuditLedger):
    locked_ids: set[int] = set()

    def record(self, subject, entry):
        if subject.id in self.locked_ids:
            raise OperationalError("INSERT INTO credential_audits", {}, Exception("database is locked"))
        return super().record(subject, entry)


class TestBulkCommands:
    def test_reverify_ids(self, service, ledger, notifier, make_principal, capsys) -> None:
        a, b = make_principal(), make_principal()
        code = main(["reverify", str(a.id), str(b.id), "--reason", "Mailbox provider breach"], service=service)

        assert code == 0
        assert "reverification: 2 succeeded, 0 failed." in capsys.readouterr().out
        assert ledger.list_for(a)[0].reason == "Mailbox provider breach"
        assert sorted(p.id for p in notifier.verifications) == sorted([a.id, b.id])

    def test_reverify_from_file(self, service, make_principal, tmp_path, capsys) -> None:
        a, b = make_principal(), make_principal()
        ids_file = tmp_path / "ids.txt"
        ids_file.write_text(f"# incident 42\n{a.id}\n\n{b.id}\n{a.id}\n")

        assert main(["reverify", "--file", str(ids_file)], service=service) == 0
        assert "2 succeeded" in capsys.readouterr().out

    def test_password_reset_all_expired(self, service, notifier, make_principal, clock) -> None:
        stale = make_principal(verified_at=clock())
        make_principal(verified_at=clock(), password_changed_at=clock())
        assert main(["password-reset", "--all-expired"], service=service) == 0
        assert [p.id for p, _ in notifier.resets] == [stale.id]

    def test_password_reset_with_type_after_subcommand(self, service, notifier, make_principal) -> None:
        staff = make_principal(principal_type="staff")
        assert main(["password-reset", str(staff.id), "--type", "staff"], service=service) == 0
        assert [(p.principal_type, p.id) for p, _ in notifier.resets] == [("staff", staff.id)]

    def test_nothing_to_do(self, service, capsys) -> None:
        assert main(["reverify"], service=service) == 0
        assert "Nothing to do" in capsys.readouterr().out

    def test_bad_id_exits_2(self, service, capsys) -> None:
        assert main(["reverify", "12", "abc"], service=service) == 2
        assert "'abc' is not a principal ID." in capsys.readouterr().out

    def test_unknown_type_exits_2(self, service, capsys) -> None:
        assert main(["expired", "--type", "robot"], service=service) == 2
        assert "robot" in capsys.readouterr().out

    def test_partial_failure_exits_1(self, engine, registry, notifier, config, clock, make_principal, capsys) -> None:
        a, b = make_principal(), make_principal()
        ledger = LockedLedger(engine, clock=clock)
        ledger.locked_ids = {b.id}
        service = CredentialSecurityService(registry, ledger, notifier, config, clock=clock)

        assert main(["reverify", str(a.id), str(b.id)], service=service) == 1
        out = capsys.readouterr().out
        assert "1 succeeded, 1 failed" in out
        assert f"user#{b.id}" in out


class TestReports:
    def test_expired_table(self, service, make_principal, capsys) -> None:
        make_principal(email="never@example.com")
        assert main(["expired", "--kind", "verification"], service=service) == 0
        out = capsys.readouterr().out
        assert "Expired (verification)" in out
        assert "never@example.com" in out

    def test_expired_json(self, service, make_principal, clock, capsys) -> None:
        stale = make_principal(verified_at=clock() - timedelta(days=40), password_changed_at=clock())
        make_principal(verified_at=clock(), password_changed_at=clock())

        assert main(["expired", "--kind", "all", "--json"], service=service) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["kind"] == "all"
        assert data["principal_type"] == "user"
        assert data["as_of"] == clock().isoformat()
        assert [p["id"] for p in data["principals"]] == [stale.id]

    def test_audit_json(self, service, make_principal, clock, capsys) -> None:
        p = make_principal(password_changed_at=clock())
        assert main(["audit", str(p.id), "--json"], service=service) == 0
        rows = json.loads(capsys.readouterr().out)
        assert [r["reason"] for r in rows] == ["seed"]
        assert rows[0]["password_changed_at"] == clock().isoformat()

    def test_audit_view_filter(self, service, make_principal, clock, capsys) -> None:
        p = make_principal(password_changed_at=clock())
        assert main(["audit", str(p.id), "--view", "verifications", "--json"], service=service) == 0
        assert json.loads(capsys.readouterr().out) == []

    def test_audit_missing_principal(self, service, capsys) -> None:
        assert main(["audit", "9999"], service=service) == 1
        assert "No user with ID 9999" in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys) -> None:
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestParsing:
    def test_bare_date_means_end_of_day_utc(self) -> None:
        assert _parse_as_of("2026-01-31") == datetime(2026, 1, 31, 23, 59, 59, tzinfo=timezone.utc)

    def test_naive_datetime_is_utc(self) -> None:
        assert _parse_as_of("2026-01-31T08:30:00") == datetime(2026, 1, 31, 8, 30, tzinfo=timezone.utc)

    def test_offset_is_kept(self) -> None:
        parsed = _parse_as_of("2026-01-31T08:30:00+02:00")
        assert parsed.utcoffset() == timedelta(hours=2)

    def test_garbage_rejected(self) -> None:
        with pytest.raises(argparse.ArgumentTypeError):
            _parse_as_of("last tuesday")

    def test_parse_ids_dedupes_in_order(self) -> None:
        assert _parse_ids(["5", "3", "5"]) == [5, 3]
