"""
SQLAlchemy-backed document store.

Each estimate aggregate is one row: a handful of indexed scalar columns used
for lookups and ordering, plus the full document in a JSON column. Writes are
conditional on the row version so two concurrent editors cannot both win.
"""
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..exceptions import ConcurrencyError, EstimateNotFoundError, ValidationError
from ..models.models import EstimateRecord
from ..schemas.estimates import Estimate
from .provider import EstimateStore


logger = structlog.get_logger(__name__)

ORDERABLE_COLUMNS = {
    "created_at": EstimateRecord.created_at,
    "updated_at": EstimateRecord.updated_at,
    "estimate_number": EstimateRecord.estimate_number,
    "customer_name": EstimateRecord.customer_name,
    "total": EstimateRecord.total,
}


def _enum_value(v):
    return getattr(v, "value", v)


def _to_document(estimate: Estimate) -> dict:
    return estimate.model_dump(mode="json", exclude={"version"})


def _from_record(row: EstimateRecord) -> Estimate:
    data = dict(row.data or {})
    data["version"] = row.version
    return Estimate.model_validate(data)


def _is_unique_violation(exc: IntegrityError) -> bool:
    # sqlite: "UNIQUE constraint failed", postgres: "duplicate key value violates unique constraint"
    return "unique" in str(exc.orig).lower()


def _rejected_document(estimate_id: str, exc: IntegrityError) -> ValidationError:
    logger.warning("estimate_write_rejected", estimate_id=estimate_id, error=str(exc.orig))
    return ValidationError(f"Estimate {estimate_id} could not be stored", errors={"estimate": str(exc.orig)})


def _indexed_columns(estimate: Estimate) -> dict:
    return {
        "estimate_number": estimate.estimate_number,
        "estimate_state": _enum_value(estimate.estimate_state),
        "client_state": _enum_value(estimate.client_state) if estimate.client_state else None,
        "email_token": estimate.email_token,
        "parent_estimate_id": estimate.parent_estimate_id,
        "project_id": estimate.project_id,
        "customer_name": estimate.customer_name,
        "total": estimate.total,
        "updated_at": estimate.updated_at,
    }


class SqlEstimateStore(EstimateStore):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    def create(self, estimate: Estimate) -> Estimate:
        row = EstimateRecord(
            id=estimate.id,
            created_at=estimate.created_at or datetime.now(timezone.utc),
            version=1,
            data=_to_document(estimate),
            **_indexed_columns(estimate),
        )
        with self._session() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if not _is_unique_violation(e):
                    raise _rejected_document(estimate.id, e) from e
                # Another writer took the same id or estimate number
                logger.warning("estimate_create_conflict", estimate_id=estimate.id, estimate_number=estimate.estimate_number)
                raise ConcurrencyError(estimate.id)
        estimate.version = 1
        return estimate

    def find(self, estimate_id: str) -> Optional[Estimate]:
        if not estimate_id:
            return None
        with self._session() as db:
            row = db.get(EstimateRecord, estimate_id)
            return _from_record(row) if row else None

    def get(self, estimate_id: str) -> Estimate:
        estimate = self.find(estimate_id)
        if estimate is None:
            raise EstimateNotFoundError(estimate_id)
        return estimate

    def get_by_token(self, token: str) -> Estimate:
        if not token:
            raise EstimateNotFoundError(None)
        with self._session() as db:
            row = db.execute(
                select(EstimateRecord).where(EstimateRecord.email_token == token)
            ).scalar_one_or_none()
            if row is None:
                raise EstimateNotFoundError(None)
            return _from_record(row)

    def save(self, estimate: Estimate) -> Estimate:
        expected = estimate.version
        with self._session() as db:
            try:
                result = db.execute(
                    update(EstimateRecord)
                    .where(EstimateRecord.id == estimate.id, EstimateRecord.version == expected)
                    .values(version=expected + 1, data=_to_document(estimate), **_indexed_columns(estimate))
                )
                if result.rowcount == 0:
                    db.rollback()
                    if db.get(EstimateRecord, estimate.id) is None:
                        raise EstimateNotFoundError(estimate.id)
                    logger.warning("estimate_version_conflict", estimate_id=estimate.id, expected_version=expected)
                    raise ConcurrencyError(estimate.id, expected)
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if not _is_unique_violation(e):
                    raise _rejected_document(estimate.id, e) from e
                raise ConcurrencyError(estimate.id, expected) from e
        estimate.version = expected + 1
        return estimate

    def delete(self, estimate_id: str) -> None:
        with self._session() as db:
            result = db.execute(delete(EstimateRecord).where(EstimateRecord.id == estimate_id))
            if result.rowcount == 0:
                db.rollback()
                raise EstimateNotFoundError(estimate_id)
            db.commit()

    def query(
        self,
        estimate_state: Optional[str] = None,
        client_state: Optional[str] = None,
        project_id: Optional[str] = None,
        parent_estimate_id: Optional[str] = None,
        customer_prefix: Optional[str] = None,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Estimate]:
        column = ORDERABLE_COLUMNS.get(order_by)
        if column is None:
            raise ValidationError(
                f"Cannot order estimates by '{order_by}'",
                errors={"order_by": f"must be one of {', '.join(sorted(ORDERABLE_COLUMNS))}"},
            )
        stmt = select(EstimateRecord)
        if estimate_state:
            stmt = stmt.where(EstimateRecord.estimate_state == _enum_value(estimate_state))
        if client_state:
            stmt = stmt.where(EstimateRecord.client_state == _enum_value(client_state))
        if project_id:
            stmt = stmt.where(EstimateRecord.project_id == project_id)
        if parent_estimate_id:
            stmt = stmt.where(EstimateRecord.parent_estimate_id == parent_estimate_id)
        if customer_prefix:
            stmt = stmt.where(EstimateRecord.customer_name.ilike(f"{customer_prefix}%"))
        # Secondary key keeps ties (same created_at) in a stable order
        if descending:
            stmt = stmt.order_by(column.desc(), EstimateRecord.estimate_number.desc())
        else:
            stmt = stmt.order_by(column.asc(), EstimateRecord.estimate_number.asc())
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as db:
            rows = db.execute(stmt).scalars().all()
            return [_from_record(r) for r in rows]

    def last_number_with_prefix(self, prefix: str) -> Optional[str]:
        col = EstimateRecord.estimate_number
        with self._session() as db:
            # Longer numbers sort after shorter ones so 1000 follows 999
            return db.execute(
                select(col)
                .where(col.like(f"{prefix}%"))
                .order_by(func.length(col).desc(), col.desc())
                .limit(1)
            ).scalar_one_or_none()
