"""
auth/store.py -- SQLAlchemy Core persistence layer for principals.

Pattern: Repository + Data Mapper. PrincipalStore is the repository for one
principal type (one table); _row_to_principal is the mapper. Route and
service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Each principal type lives in its own table with an identical column layout,
so several authenticatable kinds (users, staff, ...) can coexist. The table
is built by _principal_table() against a MetaData owned by the registry.

Layer rule: no imports from api/, web/, ledger/, or security/.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import (
    Column,
    ColumnElement,
    Integer,
    MetaData,
    String,
    Subquery,
    Table,
    Text,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Principal
from core.clock import Clock, from_iso, to_iso, utc_now

# A deferred filter: given the principal table, return a SQL boolean clause.
Criteria = Callable[[Table], ColumnElement]

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def _principal_table(name: str, metadata: MetaData) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("email", String(255), nullable=False, unique=True),
        Column("hashed_password", Text),  # NULL = no local password
        Column("role", String(30), nullable=False, server_default="member"),
        Column("email_verified_at", String(32)),  # NULL = never verified / reverification requested
        Column("created_at", String(32), nullable=False),
        Column("is_active", Integer, nullable=False, server_default="1"),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for the principals of one type.

    Usage:
        store = PrincipalStore(engine, "user", "users")
        pid = store.create(Principal(email="a@example.com"))
        principal = store.get_by_id(pid)
        store.set_verified_at(pid, None)
    """

    def __init__(
        self,
        engine: Engine,
        principal_type: str,
        table_name: str,
        metadata: MetaData | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.engine = engine
        self.principal_type = principal_type
        self._clock = clock
        self.table: Table = _principal_table(table_name, metadata if metadata is not None else MetaData())
        self.table.create(self.engine, checkfirst=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, principal: Principal) -> int:
        """Insert a new principal and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                self.table.insert().values(
                    email=principal.email,
                    hashed_password=principal.hashed_password,
                    role=principal.role,
                    email_verified_at=to_iso(principal.email_verified_at),
                    created_at=to_iso(self._clock()),
                    is_active=1 if principal.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def set_verified_at(self, principal_id: int, verified_at: datetime | None) -> bool:
        """Write the verification timestamp (None clears it).

        This is a plain in-place update: concurrent writers race and the last
        write wins. Returns True if a row was updated.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                self.table.update()
                .where(self.table.c.id == principal_id)
                .values(email_verified_at=to_iso(verified_at))
            )
            conn.commit()
        return result.rowcount > 0

    def set_password_hash(self, principal_id: int, hashed_password: str) -> bool:
        """Replace the stored bcrypt hash. Returns True if a row was updated."""
        with self.engine.connect() as conn:
            result = conn.execute(
                self.table.update().where(self.table.c.id == principal_id).values(hashed_password=hashed_password)
            )
            conn.commit()
        return result.rowcount > 0

    def set_active(self, principal_id: int, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                self.table.update().where(self.table.c.id == principal_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, principal_id: int) -> Principal | None:
        """Look up a principal by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(self.table.select().where(self.table.c.id == principal_id)).fetchone()
        return self._map(row) if row is not None else None

    def get_by_email(self, email: str) -> Principal | None:
        """Look up a principal by exact email (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(self.table.select().where(self.table.c.email == email)).fetchone()
        return self._map(row) if row is not None else None

    def get_many(self, principal_ids: Iterable[int]) -> list[Principal]:
        """Fetch principals by ID, in the order the IDs were given.

        Unknown IDs are skipped; duplicates collapse to one entry.
        """
        ids = list(dict.fromkeys(principal_ids))
        if not ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(self.table.select().where(self.table.c.id.in_(ids))).fetchall()
        by_id = {row.id: self._map(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def find(self, criteria: Criteria) -> list[Principal]:
        """Execute a deferred filter against this table, ordered by ID."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                self.table.select().where(criteria(self.table)).order_by(self.table.c.id)
            ).fetchall()
        return [self._map(r) for r in rows]

    def list_all(self) -> list[Principal]:
        """Return every principal of this type, ordered by ID."""
        with self.engine.connect() as conn:
            rows = conn.execute(self.table.select().order_by(self.table.c.id)).fetchall()
        return [self._map(r) for r in rows]

    def count(self) -> int:
        """Return the number of principals of this type."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(self.table)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Set queries
    # ------------------------------------------------------------------

    def list_verification_expired(self, cutoff: datetime) -> list[Principal]:
        """Principals never verified, or verified at or before cutoff."""
        col = self.table.c.email_verified_at
        return self.find(lambda t: or_(col.is_(None), col <= to_iso(cutoff)))

    def list_password_expired(self, latest_changes: Subquery, cutoff: datetime) -> list[Principal]:
        """Principals whose latest password change is absent or at/before cutoff.

        latest_changes is a (subject_id, last_changed) subquery built by the
        audit ledger. One LEFT OUTER JOIN evaluates the whole set; a principal
        with no password-change record joins to NULL and is included.
        """
        last_changed = latest_changes.c.last_changed
        stmt = (
            select(self.table)
            .select_from(
                self.table.outerjoin(latest_changes, latest_changes.c.subject_id == self.table.c.id)
            )
            .where(or_(last_changed.is_(None), last_changed <= to_iso(cutoff)))
            .order_by(self.table.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [self._map(r) for r in rows]

    # ------------------------------------------------------------------
    # Mapper
    # ------------------------------------------------------------------

    def _map(self, row) -> Principal:
        return _row_to_principal(row, self.principal_type)


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row, principal_type: str) -> Principal:
    return Principal(
        id=row.id,
        principal_type=principal_type,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        email_verified_at=from_iso(row.email_verified_at),
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
