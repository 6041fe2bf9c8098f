"""
ledger/models.py -- Domain dataclasses for the credential audit ledger.

Pattern: Data class. AuditRecord is write-once: frozen here, and the store in
ledger/store.py exposes inserts and reads only.

Who caused an event is modelled as a tagged union (Trigger) instead of a pair
of nullable type/id columns, so "type set but id missing" cannot be expressed:

    Trigger.system()        -- the policy engine itself (expiry detection, bulk jobs)
    Trigger.user()          -- the subject acting on their own account
    Trigger.principal(p)    -- another principal (an admin, a support agent)
    None                    -- unspecified

Layer rule: no imports from api/, web/, auth/, or security/.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum


class TriggerKind(str, Enum):
    SYSTEM = "system"
    USER = "user"
    PRINCIPAL = "principal"


class LedgerView(str, Enum):
    """Read-only projections over one subject's records."""

    ALL = "all"
    PASSWORD_CHANGES = "password_changes"  # password_changed_at is set
    VERIFICATIONS = "verifications"  # verified_at is set


@dataclass(frozen=True)
class Trigger:
    kind: TriggerKind
    principal_type: str | None = None
    principal_id: int | None = None

    def __post_init__(self) -> None:
        is_principal = self.kind is TriggerKind.PRINCIPAL
        has_ref = self.principal_type is not None and self.principal_id is not None
        has_any_ref = self.principal_type is not None or self.principal_id is not None
        if is_principal and not has_ref:
            raise ValueError("A principal trigger needs both principal_type and principal_id.")
        if not is_principal and has_any_ref:
            raise ValueError(f"A {self.kind.value} trigger cannot reference a principal.")

    @classmethod
    def system(cls) -> Trigger:
        return cls(TriggerKind.SYSTEM)

    @classmethod
    def user(cls) -> Trigger:
        return cls(TriggerKind.USER)

    @classmethod
    def principal(cls, principal) -> Trigger:
        """Trigger pointing at another principal (anything with principal_type and id)."""
        return cls(TriggerKind.PRINCIPAL, principal.principal_type, principal.id)

    def label(self) -> str:
        """Human-readable form for reports: "system", "user", or "staff#4"."""
        if self.kind is TriggerKind.PRINCIPAL:
            return f"{self.principal_type}#{self.principal_id}"
        return self.kind.value


@dataclass(frozen=True)
class AuditEntry:
    """Caller-supplied fields of a record that has not been written yet.

    A record may carry verified_at, password_changed_at, both, or neither.
    One with neither is a plain audit note ("reverification requested").
    """

    verified_at: datetime | None = None
    password_changed_at: datetime | None = None
    trigger: Trigger | None = None
    reason: str | None = None

    def as_verification(self, at: datetime) -> AuditEntry:
        return replace(self, verified_at=at)

    def as_password_change(self, at: datetime) -> AuditEntry:
        return replace(self, password_changed_at=at)


@dataclass(frozen=True)
class AuditRecord:
    """Immutable ledger entry for one verification / password event.

    subject_type + subject_id is the polymorphic reference to the principal
    the event is about. email is a snapshot taken when the record was
    written; it does not follow later email changes.
    """

    id: int
    subject_type: str
    subject_id: int
    email: str
    created_at: datetime
    updated_at: datetime
    verified_at: datetime | None = None
    password_changed_at: datetime | None = None
    trigger: Trigger | None = None
    reason: str | None = None

    @property
    def is_password_change(self) -> bool:
        return self.password_changed_at is not None

    @property
    def is_verification(self) -> bool:
        return self.verified_at is not None
