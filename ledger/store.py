"""
ledger/store.py -- Append-only audit ledger on SQLAlchemy Core.

Pattern: Repository + Data Mapper (same as auth/store.py). AuditLedger is the
repository; _row_to_record is the mapper.

Append-only: the only write is record(). There is no update or delete --
retention is an external data-lifecycle concern. Because every write is an
independent INSERT, concurrent requests never contend for a row; two requests
that both detect the same expiry simply produce two records, and every query
that needs "the current state" takes the most recent one.

Subjects are duck-typed: anything with principal_type, id and email can be
recorded (auth.models.Principal in practice). That keeps ledger/ free of
imports from auth/.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, web/, auth/, or security/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Subquery,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.engine import Engine

from core.clock import Clock, from_iso, to_iso, utc_now
from ledger.models import AuditEntry, AuditRecord, LedgerView, Trigger, TriggerKind

logger = logging.getLogger("credguard.ledger")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_audits = Table(
    "credential_audits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subject_type", String(50), nullable=False),
    Column("subject_id", Integer, nullable=False),
    Column("email", String(255), nullable=False),  # snapshot at event time
    Column("verified_at", String(32)),
    Column("password_changed_at", String(32)),
    Column("trigger_kind", String(20)),  # NULL = unspecified; "system" | "user" | "principal"
    Column("trigger_type", String(50)),  # set only when trigger_kind = "principal"
    Column("trigger_id", Integer),  # set only when trigger_kind = "principal"
    Column("reason", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("ix_audits_subject_verified", "subject_type", "subject_id", "verified_at"),
    Index("ix_audits_subject_password", "subject_type", "subject_id", "password_changed_at"),
    Index("ix_audits_trigger", "trigger_type", "trigger_id"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditLedger:
    """Repository for AuditRecord entries.

    Usage:
        ledger = AuditLedger(engine)
        ledger.record(principal, AuditEntry(trigger=Trigger.system(), reason="Password expired"))
        latest = ledger.most_recent_password_change(principal)
        n = ledger.count_for(principal, view=LedgerView.VERIFICATIONS, recent_days=7)
    """

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def record(self, subject, entry: AuditEntry) -> AuditRecord:
        """Append a record about subject and return it.

        The subject's email is copied at call time. Storage errors
        (sqlalchemy.exc.SQLAlchemyError) propagate to the caller.
        """
        if subject is None or subject.id is None:
            raise ValueError("Cannot audit a principal that has not been persisted.")
        now_iso = to_iso(self._clock())
        trigger_kind, trigger_type, trigger_id = _trigger_columns(entry.trigger)
        with self.engine.connect() as conn:
            result = conn.execute(
                _audits.insert().values(
                    subject_type=subject.principal_type,
                    subject_id=subject.id,
                    email=subject.email,
                    verified_at=to_iso(entry.verified_at),
                    password_changed_at=to_iso(entry.password_changed_at),
                    trigger_kind=trigger_kind,
                    trigger_type=trigger_type,
                    trigger_id=trigger_id,
                    reason=entry.reason,
                    created_at=now_iso,
                    updated_at=now_iso,
                )
            )
            conn.commit()
            record_id = result.inserted_primary_key[0]
        logger.debug(
            "Audit #%d %s#%d reason=%r trigger=%s",
            record_id,
            subject.principal_type,
            subject.id,
            entry.reason,
            entry.trigger.label() if entry.trigger else None,
        )
        return self.get(record_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> AuditRecord | None:
        """Fetch one record by ID. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_audits.select().where(_audits.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def most_recent_password_change(self, subject) -> AuditRecord | None:
        """Latest record with password_changed_at set.

        Ordered by password_changed_at descending; ties go to the record
        created last (highest id).
        """
        stmt = (
            _audits.select()
            .where(*self._subject_clause(subject), _audits.c.password_changed_at.is_not(None))
            .order_by(_audits.c.password_changed_at.desc(), _audits.c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_for(
        self,
        subject,
        view: LedgerView = LedgerView.ALL,
        recent_days: int | None = None,
    ) -> list[AuditRecord]:
        """Records about subject, newest first, filtered by view and age."""
        stmt = (
            _audits.select()
            .where(*self._filters(subject, view, recent_days))
            .order_by(_audits.c.created_at.desc(), _audits.c.id.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_record(r) for r in rows]

    def count_for(
        self,
        subject,
        view: LedgerView = LedgerView.ALL,
        recent_days: int | None = None,
    ) -> int:
        """Number of records about subject matching view and age."""
        stmt = select(func.count()).select_from(_audits).where(*self._filters(subject, view, recent_days))
        with self.engine.connect() as conn:
            result = conn.execute(stmt).scalar()
        return result or 0

    def list_triggered_by(self, actor) -> list[AuditRecord]:
        """Records whose trigger is actor (back-reference; actor owns nothing)."""
        stmt = (
            _audits.select()
            .where(
                _audits.c.trigger_kind == TriggerKind.PRINCIPAL.value,
                _audits.c.trigger_type == actor.principal_type,
                _audits.c.trigger_id == actor.id,
            )
            .order_by(_audits.c.id.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_recent(self, days: int = 30, limit: int = 100) -> list[AuditRecord]:
        """Records created in the last `days` days across all subjects, newest first."""
        cutoff = to_iso(self._clock() - timedelta(days=days))
        stmt = (
            _audits.select()
            .where(_audits.c.created_at >= cutoff)
            .order_by(_audits.c.created_at.desc(), _audits.c.id.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_record(r) for r in rows]

    def latest_password_changes(self, subject_type: str) -> Subquery:
        """(subject_id, last_changed) for every subject of subject_type.

        Consumed by PrincipalStore.list_password_expired() as the right side
        of a LEFT OUTER JOIN. last_changed is MAX(password_changed_at), the
        same value most_recent_password_change() orders by.
        """
        return (
            select(
                _audits.c.subject_id.label("subject_id"),
                func.max(_audits.c.password_changed_at).label("last_changed"),
            )
            .where(
                _audits.c.subject_type == subject_type,
                _audits.c.password_changed_at.is_not(None),
            )
            .group_by(_audits.c.subject_id)
            .subquery("latest_password_changes")
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _subject_clause(subject) -> list:
        return [
            _audits.c.subject_type == subject.principal_type,
            _audits.c.subject_id == subject.id,
        ]

    def _filters(self, subject, view: LedgerView, recent_days: int | None) -> list:
        clauses = self._subject_clause(subject)
        if view is LedgerView.PASSWORD_CHANGES:
            clauses.append(_audits.c.password_changed_at.is_not(None))
        elif view is LedgerView.VERIFICATIONS:
            clauses.append(_audits.c.verified_at.is_not(None))
        if recent_days is not None:
            clauses.append(_audits.c.created_at >= to_iso(self._clock() - timedelta(days=recent_days)))
        return clauses


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _trigger_columns(trigger: Trigger | None) -> tuple[str | None, str | None, int | None]:
    if trigger is None:
        return None, None, None
    return trigger.kind.value, trigger.principal_type, trigger.principal_id


def _row_to_trigger(row) -> Trigger | None:
    if row.trigger_kind is None:
        return None
    return Trigger(TriggerKind(row.trigger_kind), row.trigger_type, row.trigger_id)


def _row_to_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        email=row.email,
        verified_at=from_iso(row.verified_at),
        password_changed_at=from_iso(row.password_changed_at),
        trigger=_row_to_trigger(row),
        reason=row.reason,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
