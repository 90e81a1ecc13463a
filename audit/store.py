"""
audit/store.py -- SQLAlchemy Core persistence layer for the audit trail.

Pattern: Repository + Data Mapper. AuditStore is append-only: there is an
append() and a purge_older_than() for the retention window, and nothing that
edits a stored record.

before / after snapshots are stored as JSON text. Timestamps are ISO-8601 UTC
strings, which sort lexically in chronological order, so range filters and
ORDER BY work on the string column directly.

Usage:
    store = AuditStore("sqlite:///:memory:")
    store.append(AuditRecord(action=AuditAction.LOGIN, resource=AuditResource.AUTH, user_id=1))
    records, total = store.query(AuditFilter(user_id=1), page=1, limit=20)
    store.purge_older_than(datetime.now(timezone.utc) - timedelta(days=90))
    store.close()

Layer rule: no imports from auth/ or api/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.engine import Engine

from audit.models import AuditAction, AuditFilter, AuditRecord, AuditResource
from core.db import build_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # actor; NULL for anonymous events
    Column("action", String(32), nullable=False),
    Column("resource", String(16), nullable=False),
    Column("resource_id", String(64)),
    Column("before", Text),  # JSON
    Column("after", Text),  # JSON
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("timestamp", String(32), nullable=False),
)

Index("ix_audit_logs_user_id", _audit_logs.c.user_id)
Index("ix_audit_logs_action", _audit_logs.c.action)
Index("ix_audit_logs_resource", _audit_logs.c.resource)
Index("ix_audit_logs_timestamp", _audit_logs.c.timestamp)


def _iso(moment: datetime) -> str:
    """UTC ISO string; naive datetimes are taken to be UTC already."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _dump(snapshot) -> str | None:
    if snapshot is None:
        return None
    return json.dumps(snapshot, default=str)


class AuditStore:
    """Repository for AuditRecord entries."""

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = build_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, record: AuditRecord) -> AuditRecord:
        """Persist a record and return it with id and timestamp filled in."""
        stamp = record.timestamp or datetime.now(timezone.utc).isoformat()
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    user_id=record.user_id,
                    action=record.action.value,
                    resource=record.resource.value,
                    resource_id=record.resource_id,
                    before=_dump(record.before),
                    after=_dump(record.after),
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    timestamp=stamp,
                )
            )
            conn.commit()
            new_id = result.inserted_primary_key[0]
        return AuditRecord(
            id=new_id,
            user_id=record.user_id,
            action=record.action,
            resource=record.resource,
            resource_id=record.resource_id,
            before=record.before,
            after=record.after,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            timestamp=stamp,
        )

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete records stamped before cutoff. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_audit_logs.delete().where(_audit_logs.c.timestamp < _iso(cutoff)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> AuditRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_logs.select().where(_audit_logs.c.id == record_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def query(self, filters: AuditFilter | None = None, page: int = 1, limit: int = 20) -> tuple[list[AuditRecord], int]:
        """Return one page of matching records, newest first, plus the total."""
        conditions = _conditions(filters or AuditFilter())
        query = _audit_logs.select()
        count_query = select(func.count()).select_from(_audit_logs)
        for condition in conditions:
            query = query.where(condition)
            count_query = count_query.where(condition)
        query = (
            query.order_by(_audit_logs.c.timestamp.desc(), _audit_logs.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
            total = conn.execute(count_query).scalar() or 0
        return [_row_to_record(r) for r in rows], total

    def count(self, filters: AuditFilter | None = None) -> int:
        count_query = select(func.count()).select_from(_audit_logs)
        for condition in _conditions(filters or AuditFilter()):
            count_query = count_query.where(condition)
        with self.engine.connect() as conn:
            return conn.execute(count_query).scalar() or 0

    def statistics(self, filters: AuditFilter | None = None) -> dict:
        """Aggregate counts over the matching records.

        Returns total, unique actor count, per-action and per-resource counts
        (sorted by count, highest first) and the earliest/latest timestamps.
        """
        conditions = _conditions(filters or AuditFilter())

        def _scoped(query):
            for condition in conditions:
                query = query.where(condition)
            return query

        with self.engine.connect() as conn:
            summary = conn.execute(
                _scoped(
                    select(
                        func.count(),
                        func.count(func.distinct(_audit_logs.c.user_id)),
                        func.min(_audit_logs.c.timestamp),
                        func.max(_audit_logs.c.timestamp),
                    ).select_from(_audit_logs)
                )
            ).fetchone()
            by_action = conn.execute(
                _scoped(select(_audit_logs.c.action, func.count().label("n")).select_from(_audit_logs))
                .group_by(_audit_logs.c.action)
                .order_by(func.count().desc())
            ).fetchall()
            by_resource = conn.execute(
                _scoped(select(_audit_logs.c.resource, func.count().label("n")).select_from(_audit_logs))
                .group_by(_audit_logs.c.resource)
                .order_by(func.count().desc())
            ).fetchall()

        total, unique_users, earliest, latest = summary
        return {
            "total": total or 0,
            "unique_users": unique_users or 0,
            "by_action": [{"action": row.action, "count": row.n} for row in by_action],
            "by_resource": [{"resource": row.resource, "count": row.n} for row in by_resource],
            "date_range": {"earliest": earliest, "latest": latest},
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _conditions(filters: AuditFilter) -> list:
    conditions = []
    if filters.user_id is not None:
        conditions.append(_audit_logs.c.user_id == filters.user_id)
    if filters.action is not None:
        conditions.append(_audit_logs.c.action == AuditAction(filters.action).value)
    if filters.resource is not None:
        conditions.append(_audit_logs.c.resource == AuditResource(filters.resource).value)
    if filters.resource_id is not None:
        conditions.append(_audit_logs.c.resource_id == str(filters.resource_id))
    if filters.start is not None:
        conditions.append(_audit_logs.c.timestamp >= _iso(filters.start))
    if filters.end is not None:
        conditions.append(_audit_logs.c.timestamp <= _iso(filters.end))
    return conditions


def _row_to_record(row) -> AuditRecord:
    return AuditRecord(
        id=row.id,
        user_id=row.user_id,
        action=AuditAction(row.action),
        resource=AuditResource(row.resource),
        resource_id=row.resource_id,
        before=json.loads(row.before) if row.before else None,
        after=json.loads(row.after) if row.after else None,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=row.timestamp,
    )
