"""
Purchase-order collaborator.

Only physical product lines are ordered. The estimate keeps a fingerprint of
the product set it last ordered so a repeat request for the same set returns
the existing purchase order instead of creating a duplicate.
"""
import hashlib
import json
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..exceptions import ExternalDependencyError
from ..models.models import PurchaseOrder, PurchaseOrderItem
from ..schemas.estimates import Estimate, LineItem, LineItemType
from .clock import Clock, IdGenerator
from .totals import line_total


logger = structlog.get_logger(__name__)


def purchasable_line_items(estimate: Estimate) -> List[LineItem]:
    return [li for li in estimate.line_items if li.item_type == LineItemType.product]


def line_item_fingerprint(items: Sequence[LineItem]) -> Optional[str]:
    if not items:
        return None
    canonical = sorted(
        ({"id": li.id, "quantity": li.quantity, "unit_price": li.unit_price} for li in items),
        key=lambda d: d["id"],
    )
    canonical_json = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(canonical_json.encode()).hexdigest()


class PurchaseOrderService:
    def create_purchase_order(self, estimate: Estimate, line_items: Sequence[LineItem]) -> str:
        """Create a purchase order for ``line_items`` and return its id."""
        raise NotImplementedError


class SqlPurchaseOrderService(PurchaseOrderService):
    def __init__(self, session_factory: sessionmaker, clock: Clock, ids: IdGenerator):
        self._session_factory = session_factory
        self.clock = clock
        self.ids = ids

    def _next_order_number(self, db, year: int) -> str:
        base = f"PO-{year}-"
        col = PurchaseOrder.order_number
        last = db.execute(
            select(col).where(col.like(f"{base}%")).order_by(func.length(col).desc(), col.desc()).limit(1)
        ).scalar_one_or_none()
        seq = int(last.split("-")[2]) + 1 if last else 1
        return f"{base}{seq:04d}"

    def create_purchase_order(self, estimate: Estimate, line_items: Sequence[LineItem]) -> str:
        now = self.clock.now()
        subtotal = round(sum(line_total(li.quantity, li.unit_price) for li in line_items), 2)
        tax_amount = round(subtotal * (estimate.tax_rate or 0.0) / 100, 2)
        order = PurchaseOrder(
            id=self.ids.new("po"),
            estimate_id=estimate.id,
            estimate_number=estimate.estimate_number,
            status="draft",
            subtotal=subtotal,
            tax_amount=tax_amount,
            total=round(subtotal + tax_amount, 2),
            created_at=now,
            created_by=estimate.created_by,
        )
        for li in line_items:
            order.items.append(
                PurchaseOrderItem(
                    line_item_id=li.id,
                    catalog_item_id=li.catalog_item_id,
                    description=li.description,
                    quantity=li.quantity,
                    unit_price=li.unit_price,
                    total_price=line_total(li.quantity, li.unit_price),
                )
            )
        try:
            with self._session_factory() as db:
                order.order_number = self._next_order_number(db, now.year)
                db.add(order)
                db.commit()
                order_id = order.id
                order_number = order.order_number
        except SQLAlchemyError as e:
            logger.error("purchase_order_create_failed", estimate_id=estimate.id, error=str(e))
            raise ExternalDependencyError("purchase_orders", str(e)) from e
        logger.info("purchase_order_created", estimate_id=estimate.id, purchase_order_id=order_id, order_number=order_number, items=len(line_items))
        return order_id

    def get(self, purchase_order_id: str) -> Optional[PurchaseOrder]:
        with self._session_factory() as db:
            order = db.get(PurchaseOrder, purchase_order_id)
            if order is not None:
                # Load items before the session closes
                _ = list(order.items)
            return order
