"""
auth/models.py -- Domain dataclass for authenticatable principals.

Pattern: Data class (pure data container, zero logic). Stores own persistence
and the security/ package owns policy; this module only owns shape.

Layer rule: no imports from api/, web/, ledger/, or security/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class Principal:
    """An authenticatable identity (a user, a staff member, ...).

    principal_type is the logical registry key ("user", "staff") rather than a
    class or table name. Together with id it forms the polymorphic reference
    that audit records point at.

    email_verified_at is None when the email was never verified or when a
    re-verification was requested (the timestamp is cleared).

    hashed_password is None for principals without a local password.
    """

    email: str
    principal_type: str = "user"
    role: str = "member"  # "admin", "member"
    id: int | None = None
    email_verified_at: datetime | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True

    @property
    def reference(self) -> tuple[str, int | None]:
        """(principal_type, id) -- identity across principal types."""
        return (self.principal_type, self.id)
