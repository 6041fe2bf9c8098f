"""
tests/test_enforcement_gate.py -- Unit tests for EnforcementGate.

Covers:
  - Pass-through: unauthenticated, exempt route, fresh credentials
  - Expired verification: record + notification + message
  - Expired password: record + message, no notification
  - Both expired: both messages in order, two records, one notification
  - Per-call config override
  - Storage failure propagates instead of allowing
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from ledger.models import Trigger
from ledger.store import AuditLedger
from security.gate import (
    MSG_PASSWORD_EXPIRED,
    MSG_VERIFICATION_EXPIRED,
    EnforcementGate,
    VerificationRequired,
)


class BrokenLedger(AuditLedger):
    def record(self, subject, entry):
        raise OperationalError("INSERT INTO credential_audits", {}, Exception("disk I/O error"))


def test_messages_are_the_user_facing_text() -> None:
    assert MSG_VERIFICATION_EXPIRED == "Your email verification expired. Please verify your email address."
    assert MSG_PASSWORD_EXPIRED == "Your password expired. Please change your password."


class TestPassThrough:
    def test_unauthenticated_is_allowed(self, gate, ledger) -> None:
        assert gate.evaluate(None, "account").allowed
        assert ledger.list_recent() == []

    def test_exempt_route_is_allowed_even_when_stale(self, gate, ledger, notifier, make_principal) -> None:
        p = make_principal()  # never verified, never changed
        assert gate.evaluate(p, "verification.notice").allowed
        assert ledger.count_for(p) == 0
        assert notifier.verifications == []

    def test_fresh_principal_is_allowed_without_records(self, gate, ledger, make_principal, clock) -> None:
        p = make_principal(verified_at=clock(), password_changed_at=clock())
        decision = gate.evaluate(p, "account")
        assert decision.allowed
        assert decision.messages == []
        assert ledger.count_for(p) == 1  # the seed record only


class TestDenial:
    def test_expired_verification_only(self, gate, ledger, notifier, make_principal, clock) -> None:
        p = make_principal(
            verified_at=clock() - timedelta(days=31),
            password_changed_at=clock() - timedelta(days=1),
        )
        decision = gate.evaluate(p, "dashboard")

        assert not decision.allowed
        assert decision.messages == [MSG_VERIFICATION_EXPIRED]
        newest = ledger.list_for(p)[0]
        assert newest.reason == "Email verification expired"
        assert newest.trigger == Trigger.system()
        assert ledger.count_for(p) == 2
        assert [n.id for n in notifier.verifications] == [p.id]

    def test_expired_password_only(self, gate, ledger, notifier, make_principal, clock) -> None:
        p = make_principal(verified_at=clock(), password_changed_at=clock() - timedelta(days=30))
        decision = gate.evaluate(p, "account")

        assert decision.messages == [MSG_PASSWORD_EXPIRED]
        assert ledger.list_for(p)[0].reason == "Password expired"
        assert notifier.verifications == []

    def test_both_expired(self, gate, ledger, notifier, make_principal, clock) -> None:
        p = make_principal(verified_at=None)
        decision = gate.evaluate(p, "account")

        assert not decision.allowed
        assert decision.messages == [MSG_VERIFICATION_EXPIRED, MSG_PASSWORD_EXPIRED]
        reasons = sorted(r.reason for r in ledger.list_for(p))
        assert reasons == ["Email verification expired", "Password expired"]
        assert len(notifier.verifications) == 1

    def test_repeat_requests_append_duplicate_records(self, gate, ledger, make_principal) -> None:
        p = make_principal()
        gate.evaluate(p, "account")
        gate.evaluate(p, "account")
        assert ledger.count_for(p) == 4

    def test_unknown_route_name_is_not_exempt(self, gate, make_principal) -> None:
        assert not gate.evaluate(make_principal(), None).allowed

    def test_enforce_raises_with_messages(self, gate, make_principal) -> None:
        with pytest.raises(VerificationRequired) as excinfo:
            gate.enforce(make_principal(), "account")
        assert excinfo.value.messages == [MSG_VERIFICATION_EXPIRED, MSG_PASSWORD_EXPIRED]

    def test_enforce_returns_quietly_on_allow(self, gate, make_principal, clock) -> None:
        gate.enforce(make_principal(verified_at=clock(), password_changed_at=clock()), "account")


class TestOverrides:
    def test_per_call_window_override(self, gate, config, make_principal, clock) -> None:
        p = make_principal(verified_at=clock(), password_changed_at=clock() - timedelta(days=45))
        assert not gate.evaluate(p, "account").allowed
        assert gate.evaluate(p, "account", config.with_overrides(password_expiry_days=60)).allowed

    def test_per_call_exempt_override(self, gate, config, make_principal) -> None:
        p = make_principal()
        relaxed = config.with_overrides(exempt_routes=config.exempt_routes | {"account"})
        assert gate.evaluate(p, "account", relaxed).allowed
        assert not gate.evaluate(p, "account").allowed


def test_storage_failure_propagates(engine, notifier, config, clock, make_principal) -> None:
    gate = EnforcementGate(BrokenLedger(engine, clock=clock), notifier, config, clock=clock)
    with pytest.raises(OperationalError):
        gate.evaluate(make_principal(), "account")
    assert notifier.verifications == []


def test_credentials_inside_both_windows_pass_untouched(gate, ledger, notifier, make_principal, clock) -> None:
    p = make_principal(
        verified_at=clock() - timedelta(days=15),
        password_changed_at=clock() - timedelta(days=15),
    )
    before = ledger.count_for(p)
    assert gate.evaluate(p, "account").allowed
    assert ledger.count_for(p) == before
    assert notifier.verifications == []
