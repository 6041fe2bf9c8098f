"""
security/gate.py -- Per-request credential enforcement.

The gate runs in front of every protected route. For an authenticated
principal on a non-exempt route it checks both expiry predicates; each
expired credential is written to the ledger (and, for verification, a fresh
link is sent) before the request is denied with the collected messages.

Transport-agnostic: evaluate() returns a GateDecision and enforce() raises
VerificationRequired. Turning that into a redirect or a 403 is the HTTP
adapter's job (api/enforcement.py).

A ledger write failure propagates out of evaluate(). It is never converted
into an allow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from auth.models import Principal
from core.clock import Clock, utc_now
from ledger.models import AuditEntry, Trigger
from ledger.store import AuditLedger
from security.notifier import Notifier
from security.policy import ExpiryPolicy, PolicyConfig

logger = logging.getLogger("credguard.security")

MSG_VERIFICATION_EXPIRED = "Your email verification expired. Please verify your email address."
MSG_PASSWORD_EXPIRED = "Your password expired. Please change your password."

REASON_VERIFICATION_EXPIRED = "Email verification expired"
REASON_PASSWORD_EXPIRED = "Password expired"


class VerificationRequired(Exception):
    """Raised by EnforcementGate.enforce() when a principal must re-verify."""

    def __init__(self, messages: list[str]) -> None:
        super().__init__("; ".join(messages))
        self.messages = list(messages)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    messages: list[str] = field(default_factory=list)

    @classmethod
    def allow(cls) -> GateDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, messages: list[str]) -> GateDecision:
        return cls(allowed=False, messages=list(messages))


class EnforcementGate:
    """Usage:
    gate = EnforcementGate(ledger, notifier, PolicyConfig(exempt_routes=frozenset({"logout"})))
    decision = gate.evaluate(principal, "account")
    gate.enforce(principal, "account")          # raises VerificationRequired on deny
    """

    def __init__(
        self,
        ledger: AuditLedger,
        notifier: Notifier,
        config: PolicyConfig,
        clock: Clock = utc_now,
    ) -> None:
        self.ledger = ledger
        self.notifier = notifier
        self.config = config
        self.clock = clock
        self._policy = ExpiryPolicy.from_config(ledger, config, clock=clock)

    def evaluate(
        self,
        principal: Principal | None,
        route_name: str | None,
        config: PolicyConfig | None = None,
    ) -> GateDecision:
        """Decide whether principal may proceed to route_name.

        config, when given, replaces the gate's own configuration for this
        call only (different windows or exempt routes for one route group).
        """
        if principal is None:
            return GateDecision.allow()

        cfg = config or self.config
        if route_name is not None and route_name in cfg.exempt_routes:
            return GateDecision.allow()

        policy = self._policy if config is None else ExpiryPolicy.from_config(self.ledger, cfg, clock=self.clock)
        messages: list[str] = []

        if policy.is_verification_expired(principal):
            self.ledger.record(principal, AuditEntry(trigger=Trigger.system(), reason=REASON_VERIFICATION_EXPIRED))
            self.notifier.send_verification_notification(principal)
            messages.append(MSG_VERIFICATION_EXPIRED)

        if policy.is_password_expired(principal):
            self.ledger.record(principal, AuditEntry(trigger=Trigger.system(), reason=REASON_PASSWORD_EXPIRED))
            messages.append(MSG_PASSWORD_EXPIRED)

        if messages:
            logger.info(
                "Gate denied %s#%s on %s: %s",
                principal.principal_type,
                principal.id,
                route_name,
                " | ".join(messages),
            )
            return GateDecision.deny(messages)
        return GateDecision.allow()

    def enforce(
        self,
        principal: Principal | None,
        route_name: str | None,
        config: PolicyConfig | None = None,
    ) -> None:
        decision = self.evaluate(principal, route_name, config)
        if not decision.allowed:
            raise VerificationRequired(decision.messages)
