"""
gymquota/features/usage/store_sql.py

SQL-backed usage store.

Increments are a single statement executed by the database:
    INSERT ... ON CONFLICT (organization_id, resource_kind, period_start)
    DO UPDATE SET count = usage_counters.count + excluded.count
    RETURNING count
so parallel requests for the same organization never lose updates. Only
PostgreSQL and SQLite are supported; other dialects raise UsageStoreError.
"""

from datetime import date, datetime, time, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from gymquota.core.database import get_db_session, organizations, usage_counters
from gymquota.core.errors import NotFoundError, UsageStoreError
from gymquota.features.plans.catalog import ResourceKind
from gymquota.features.usage.periods import UsagePeriod
from gymquota.features.usage.store import UsageCounter, UsageStore


_UPSERT_DIALECTS = ("postgresql", "sqlite")


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return datetime.fromisoformat(str(value)).replace(tzinfo=timezone.utc)


def _counter_filter(organization_id: str, resource: ResourceKind, period: UsagePeriod):
    return (
        usage_counters.c.organization_id == organization_id,
        usage_counters.c.resource_kind == ResourceKind(resource).value,
        usage_counters.c.period_start == period.start_date,
    )


class SqlUsageStore(UsageStore):
    """
    Usage store over the `usage_counters` table.

    Maintains identical interface to InMemoryUsageStore. Driver and connection
    failures surface as UsageStoreError so callers can fail closed.
    """

    def _load_anchor_day(self, organization_id: str) -> int:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(organizations.c.usage_anchor_day)
                    .where(organizations.c.organization_id == organization_id)
                ).first()
        except SQLAlchemyError as exc:
            raise UsageStoreError(f"Failed to load billing anchor for {organization_id}") from exc

        if not row:
            raise NotFoundError(f"Organization {organization_id} not found")
        return int(row.usage_anchor_day or 1)

    def get_usage(self, organization_id: str, resource: ResourceKind, period: UsagePeriod) -> int:
        try:
            with get_db_session() as session:
                value = session.execute(
                    select(usage_counters.c.count).where(*_counter_filter(organization_id, resource, period))
                ).scalar()
        except SQLAlchemyError as exc:
            raise UsageStoreError(f"Failed to read {ResourceKind(resource).value} usage") from exc
        return int(value or 0)

    def increment_usage(
        self,
        organization_id: str,
        resource: ResourceKind,
        period: UsagePeriod,
        amount: int,
    ) -> int:
        resource = ResourceKind(resource)
        now = datetime.now(timezone.utc)
        values = dict(
            organization_id=organization_id,
            resource_kind=resource.value,
            period_start=period.start_date,
            period_end=period.end_date,
            count=amount,
            created_at=now,
            updated_at=now,
        )

        try:
            with get_db_session() as session:
                dialect = session.get_bind().dialect.name
                if dialect not in _UPSERT_DIALECTS:
                    raise UsageStoreError(f"Atomic usage increments are not supported on {dialect}")
                return self._upsert(session, dialect, values)
        except SQLAlchemyError as exc:
            raise UsageStoreError(f"Failed to record {resource.value} usage") from exc

    @staticmethod
    def _upsert(session, dialect: str, values: dict) -> int:
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        else:
            from sqlalchemy.dialects.sqlite import insert as dialect_insert

        stmt = dialect_insert(usage_counters).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                usage_counters.c.organization_id,
                usage_counters.c.resource_kind,
                usage_counters.c.period_start,
            ],
            set_={
                "count": usage_counters.c.count + stmt.excluded.count,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(usage_counters.c.count)
        return int(session.execute(stmt).scalar_one())

    def list_counters(
        self,
        organization_id: str,
        resource: Optional[ResourceKind] = None,
    ) -> List[UsageCounter]:
        query = select(usage_counters).where(usage_counters.c.organization_id == organization_id)
        if resource is not None:
            query = query.where(usage_counters.c.resource_kind == ResourceKind(resource).value)
        query = query.order_by(usage_counters.c.period_start.desc(), usage_counters.c.resource_kind.desc())

        try:
            with get_db_session() as session:
                rows = session.execute(query).all()
        except SQLAlchemyError as exc:
            raise UsageStoreError("Failed to list usage counters") from exc

        return [
            UsageCounter(
                organization_id=row.organization_id,
                resource=ResourceKind(row.resource_kind),
                period_start=_as_datetime(row.period_start),
                period_end=_as_datetime(row.period_end),
                count=int(row._mapping["count"]),  # Row.count is the tuple method
            )
            for row in rows
        ]
