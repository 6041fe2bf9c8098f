"""
security/service.py -- Credential security service: bulk actions, reports, event hooks.

The one object the rest of the system talks to. It owns no storage itself;
it composes the principal registry, the audit ledger, the expiry policy and a
notifier:

    is_verification_expired / is_password_expired   -- policy queries
    request_reverification / request_password_change -- bulk administrative actions
    get_expired_verification / get_expired_passwords / get_requiring_action
                                                     -- set queries (one SQL query each)
    on_verification_completed / on_password_reset_completed
                                                     -- completion hooks; the only place
                                                        real timestamps enter the ledger

Bulk semantics: every principal in a batch is processed on its own. There is
no transaction around the batch, so a failure on the fourth principal leaves
the first three done. Failures are logged and returned in BulkOutcome.failed
-- never dropped -- and BulkOutcome.raise_for_failures() turns them into an
exception for callers that want all-or-error behaviour.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from auth.models import Principal
from auth.registry import PrincipalRegistry
from auth.tokens import create_password_reset_token
from core.clock import Clock, utc_now
from ledger.models import AuditEntry, AuditRecord, Trigger
from ledger.store import AuditLedger
from security.notifier import Notifier
from security.policy import ExpiryPolicy, PolicyConfig
from security.resolver import PrincipalSelection, resolve_principals

logger = logging.getLogger("credguard.security")

REASON_VERIFICATION_COMPLETED = "Email verification completed"
REASON_PASSWORD_RESET_COMPLETED = "Password reset completed"


@dataclass
class BulkOutcome:
    """Per-principal result of a bulk action."""

    action: str
    succeeded: list[Principal] = field(default_factory=list)
    failed: list[tuple[Principal, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        if self.failed:
            raise BulkOperationError(self)


class BulkOperationError(RuntimeError):
    def __init__(self, outcome: BulkOutcome) -> None:
        self.outcome = outcome
        refs = ", ".join(f"{p.principal_type}#{p.id}" for p, _ in outcome.failed)
        super().__init__(f"{outcome.action} failed for {len(outcome.failed)} principal(s): {refs}")


class CredentialSecurityService:
    """Usage:
    service = CredentialSecurityService(registry, ledger, LoggingNotifier(), PolicyConfig())
    outcome = service.request_reverification(ByIds([1, 2, 3]), reason="Security policy")
    stale = service.get_requiring_action()
    """

    def __init__(
        self,
        registry: PrincipalRegistry,
        ledger: AuditLedger,
        notifier: Notifier,
        config: PolicyConfig,
        clock: Clock = utc_now,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.notifier = notifier
        self.config = config
        self.clock = clock
        # Fail fast on a default type the registry does not know.
        self.registry.get(config.default_principal_type)
        self.policy = ExpiryPolicy.from_config(ledger, config, clock=clock)

    def use_principal_type(self, key: str) -> CredentialSecurityService:
        """Return a service whose default principal type is key.

        Raises ConfigurationError if key is not a configured principal type.
        """
        self.registry.get(key)
        return CredentialSecurityService(
            self.registry,
            self.ledger,
            self.notifier,
            self.config.with_overrides(default_principal_type=key),
            clock=self.clock,
        )

    # ------------------------------------------------------------------
    # Policy queries
    # ------------------------------------------------------------------

    def is_verification_expired(self, principal: Principal) -> bool:
        return self.policy.is_verification_expired(principal)

    def is_password_expired(self, principal: Principal) -> bool:
        return self.policy.is_password_expired(principal)

    # ------------------------------------------------------------------
    # Bulk actions
    # ------------------------------------------------------------------

    def resolve(self, selection: PrincipalSelection) -> list[Principal]:
        return resolve_principals(selection, self.registry, default_type=self.config.default_principal_type)

    def request_reverification(
        self,
        selection: PrincipalSelection,
        reason: str | None = None,
        triggered_by: Trigger | None = None,
    ) -> BulkOutcome:
        """Clear each principal's verification, audit it, and send a new verification email."""
        entry = AuditEntry(trigger=triggered_by or Trigger.system(), reason=reason)
        outcome = BulkOutcome(action="reverification")
        for principal in self.resolve(selection):
            try:
                self.registry.for_principal(principal).set_verified_at(principal.id, None)
                principal.email_verified_at = None
                self.ledger.record(principal, entry)
            except (SQLAlchemyError, ValueError) as e:
                logger.exception("Reverification failed for %s#%s", principal.principal_type, principal.id)
                outcome.failed.append((principal, e))
                continue
            self.notifier.send_verification_notification(principal)
            outcome.succeeded.append(principal)
        logger.info(
            "Reverification requested: %d ok, %d failed (reason=%r)",
            len(outcome.succeeded),
            len(outcome.failed),
            reason,
        )
        return outcome

    def request_password_change(
        self,
        selection: PrincipalSelection,
        reason: str | None = None,
        triggered_by: Trigger | None = None,
    ) -> BulkOutcome:
        """Audit a password-change request for each principal and send a reset link.

        The principal's own fields are untouched; the password-change timestamp
        is recorded later, when the reset completes.
        """
        entry = AuditEntry(trigger=triggered_by or Trigger.system(), reason=reason)
        outcome = BulkOutcome(action="password change")
        for principal in self.resolve(selection):
            try:
                self.ledger.record(principal, entry)
            except (SQLAlchemyError, ValueError) as e:
                logger.exception("Password change request failed for %s#%s", principal.principal_type, principal.id)
                outcome.failed.append((principal, e))
                continue
            self.notifier.send_password_reset_notification(principal, create_password_reset_token(principal))
            outcome.succeeded.append(principal)
        logger.info(
            "Password change requested: %d ok, %d failed (reason=%r)",
            len(outcome.succeeded),
            len(outcome.failed),
            reason,
        )
        return outcome

    # ------------------------------------------------------------------
    # Set queries
    # ------------------------------------------------------------------

    def get_expired_verification(self, principal_type: str | None = None) -> list[Principal]:
        """Principals never verified or verified at/before the verification cutoff."""
        store = self.registry.get(principal_type or self.config.default_principal_type)
        return store.list_verification_expired(self.policy.verification_cutoff())

    def get_expired_passwords(self, principal_type: str | None = None) -> list[Principal]:
        """Principals whose latest password change is missing or at/before the cutoff."""
        store = self.registry.get(principal_type or self.config.default_principal_type)
        latest = self.ledger.latest_password_changes(store.principal_type)
        return store.list_password_expired(latest, self.policy.password_cutoff())

    def get_requiring_action(self, principal_type: str | None = None) -> list[Principal]:
        """Union of both expired sets, one entry per principal, ordered by id."""
        merged: dict[tuple, Principal] = {}
        for principal in self.get_expired_verification(principal_type) + self.get_expired_passwords(principal_type):
            merged.setdefault(principal.reference, principal)
        return sorted(merged.values(), key=lambda p: p.id)

    # ------------------------------------------------------------------
    # Completion hooks
    # ------------------------------------------------------------------

    def on_verification_completed(self, principal: Principal, triggered_by: Trigger | None = None) -> AuditRecord:
        """Record a completed email verification (verified_at = now)."""
        entry = AuditEntry(
            trigger=triggered_by or Trigger.user(),
            reason=REASON_VERIFICATION_COMPLETED,
        ).as_verification(self.clock())
        return self.ledger.record(principal, entry)

    def on_password_reset_completed(self, principal: Principal, triggered_by: Trigger | None = None) -> AuditRecord:
        """Record a completed password reset (password_changed_at = now)."""
        entry = AuditEntry(
            trigger=triggered_by or Trigger.user(),
            reason=REASON_PASSWORD_RESET_COMPLETED,
        ).as_password_change(self.clock())
        return self.ledger.record(principal, entry)

    def mark_verified(self, principal: Principal, triggered_by: Trigger | None = None) -> AuditRecord:
        """Stamp the principal as verified now, then fire the completion hook."""
        now = self.clock()
        self.registry.for_principal(principal).set_verified_at(principal.id, now)
        principal.email_verified_at = now
        return self.on_verification_completed(principal, triggered_by)

    def complete_password_reset(
        self,
        principal: Principal,
        hashed_password: str,
        triggered_by: Trigger | None = None,
    ) -> AuditRecord:
        """Store the new password hash, then fire the completion hook."""
        self.registry.for_principal(principal).set_password_hash(principal.id, hashed_password)
        principal.hashed_password = hashed_password
        return self.on_password_reset_completed(principal, triggered_by)
