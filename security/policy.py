"""
security/policy.py -- Credential expiry rules.

Both predicates are pure functions of (stored state, clock, window). Nothing
here writes: recording what a predicate found is the gate's and the
service's job.

Boundary rule, shared by the per-principal predicates and the set queries:
a credential stamped at T with a window of N days is expired once
T + N days <= now. Exactly N days old counts as expired. The set queries
use the equivalent form T <= now - N days (see verification_cutoff()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from auth.models import Principal
from core.clock import Clock, as_utc, utc_now
from core.config import Settings
from ledger.store import AuditLedger

DEFAULT_EXPIRY_DAYS = 30


@dataclass(frozen=True)
class PolicyConfig:
    """Enforcement settings for one gate / service instance.

    Built once (usually from Settings) and never mutated. Per-call variations
    go through with_overrides(), which returns a new instance.
    """

    verification_expiry_days: int = DEFAULT_EXPIRY_DAYS
    password_expiry_days: int = DEFAULT_EXPIRY_DAYS
    default_principal_type: str = "user"
    exempt_routes: frozenset[str] = field(default_factory=frozenset)
    redirect_route: str = "verification.notice"

    def __post_init__(self) -> None:
        _check_window("verification_expiry_days", self.verification_expiry_days)
        _check_window("password_expiry_days", self.password_expiry_days)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        verification_expiry_days: int | None = None,
        password_expiry_days: int | None = None,
    ) -> PolicyConfig:
        """Build from Settings. An explicit window (not None) always wins."""
        return cls(
            verification_expiry_days=(
                settings.verification_expiry_days if verification_expiry_days is None else verification_expiry_days
            ),
            password_expiry_days=(
                settings.password_expiry_days if password_expiry_days is None else password_expiry_days
            ),
            default_principal_type=settings.default_principal_type,
            exempt_routes=frozenset(settings.exempt_routes),
            redirect_route=settings.redirect_route,
        )

    def with_overrides(self, **changes) -> PolicyConfig:
        """Copy with the given fields replaced; fields passed as None are left alone."""
        explicit = {k: v for k, v in changes.items() if v is not None}
        if "exempt_routes" in explicit:
            explicit["exempt_routes"] = frozenset(explicit["exempt_routes"])
        return PolicyConfig(**{**self.__dict__, **explicit})


def _check_window(name: str, days: int) -> None:
    if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
        raise ValueError(f"{name} must be a positive integer, got {days!r}.")


def is_past_window(stamp: datetime | None, days: int, now: datetime) -> bool:
    """True if stamp is absent or stamp + days <= now. Naive datetimes count as UTC."""
    if stamp is None:
        return True
    return as_utc(stamp) + timedelta(days=days) <= as_utc(now)


class ExpiryPolicy:
    """Decides whether a principal's verification or password is stale.

    Usage:
        policy = ExpiryPolicy(ledger, verification_expiry_days=30, password_expiry_days=90)
        if policy.is_password_expired(principal): ...
    """

    def __init__(
        self,
        ledger: AuditLedger,
        verification_expiry_days: int = DEFAULT_EXPIRY_DAYS,
        password_expiry_days: int = DEFAULT_EXPIRY_DAYS,
        clock: Clock = utc_now,
    ) -> None:
        _check_window("verification_expiry_days", verification_expiry_days)
        _check_window("password_expiry_days", password_expiry_days)
        self.ledger = ledger
        self.verification_expiry_days = verification_expiry_days
        self.password_expiry_days = password_expiry_days
        self.clock = clock

    @classmethod
    def from_config(cls, ledger: AuditLedger, config: PolicyConfig, clock: Clock = utc_now) -> ExpiryPolicy:
        return cls(
            ledger,
            verification_expiry_days=config.verification_expiry_days,
            password_expiry_days=config.password_expiry_days,
            clock=clock,
        )

    def is_verification_expired(self, principal: Principal) -> bool:
        """True if the email was never verified or the window has elapsed."""
        _require(principal)
        return is_past_window(principal.email_verified_at, self.verification_expiry_days, self.clock())

    def is_password_expired(self, principal: Principal) -> bool:
        """True if the password was never changed or the window has elapsed.

        "Never changed" means no ledger record with password_changed_at set,
        and is treated as maximally stale.
        """
        _require(principal)
        latest = self.ledger.most_recent_password_change(principal)
        stamp = latest.password_changed_at if latest is not None else None
        return is_past_window(stamp, self.password_expiry_days, self.clock())

    def verification_cutoff(self) -> datetime:
        """Verified at or before this instant means expired."""
        return self.clock() - timedelta(days=self.verification_expiry_days)

    def password_cutoff(self) -> datetime:
        """Password changed at or before this instant means expired."""
        return self.clock() - timedelta(days=self.password_expiry_days)


def _require(principal: Principal | None) -> None:
    if principal is None:
        raise ValueError("principal is required")
