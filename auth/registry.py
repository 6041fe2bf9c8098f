"""
auth/registry.py -- Startup-time registry of authenticatable principal types.

Maps a logical key ("user", "staff", ...) to the PrincipalStore that loads and
saves principals of that kind. The mapping is built once from Settings at
startup, so an unknown key is a configuration error raised by get(), not a
class-name lookup that fails somewhere deep inside a request.

Layer rule: no imports from api/, web/, ledger/, or security/.
"""

from __future__ import annotations

from sqlalchemy import MetaData
from sqlalchemy.engine import Engine

from auth.models import Principal
from auth.store import PrincipalStore
from core.clock import Clock, utc_now
from core.config import ConfigurationError


class PrincipalRegistry:
    """Key -> PrincipalStore mapping with one designated default.

    Usage:
        registry = PrincipalRegistry(engine, {"user": "users", "staff": "staff_members"}, default="user")
        registry.get().create(Principal(email="a@example.com"))
        registry.get("staff").get_by_id(3)
    """

    def __init__(
        self,
        engine: Engine,
        principal_types: dict[str, str],
        default: str,
        clock: Clock = utc_now,
    ) -> None:
        if not principal_types:
            raise ConfigurationError("At least one principal type must be configured.")
        if default not in principal_types:
            raise ConfigurationError(
                f"Default principal type {default!r} is not one of {sorted(principal_types)!r}."
            )
        self.engine = engine
        self.default_key = default
        self._metadata = MetaData()
        self._stores: dict[str, PrincipalStore] = {
            key: PrincipalStore(engine, key, table_name, metadata=self._metadata, clock=clock)
            for key, table_name in principal_types.items()
        }

    def get(self, key: str | None = None) -> PrincipalStore:
        """Return the store for key (default type when key is None)."""
        resolved = key or self.default_key
        try:
            return self._stores[resolved]
        except KeyError:
            raise ConfigurationError(
                f"Unknown principal type {resolved!r}. Configured types: {sorted(self._stores)!r}."
            ) from None

    def for_principal(self, principal: Principal) -> PrincipalStore:
        """Return the store that owns principal."""
        return self.get(principal.principal_type)

    def keys(self) -> list[str]:
        return list(self._stores)

    def refresh(self, principal: Principal) -> Principal | None:
        """Reload principal from its store (None if it no longer exists)."""
        if principal.id is None:
            return None
        return self.for_principal(principal).get_by_id(principal.id)
