"""
Line item ledger: add, update, delete and reorder rows on an estimate.

Every successful mutation checks the lock and recomputes totals before
appending exactly one revision. A total that drops below a saved amount-mode
payment schedule is rejected. Callers run these inside a store transaction.
"""
import math
from typing import Dict, List, Optional, Sequence

import structlog

from ..exceptions import LineItemNotFoundError, ValidationError
from ..schemas.auth import Actor
from ..schemas.estimates import (
    Estimate,
    LineItem,
    RevisionChangeType,
    RevisionDetails,
)
from ..schemas.updates import AddLineItem, UpdateLineItem
from .clock import IdGenerator
from .revisions import RevisionRecorder
from .state_machine import ensure_line_items_editable
from .totals import apply_totals, line_total, validate_payment_schedule


logger = structlog.get_logger(__name__)


def _qty(value: float) -> str:
    return f"{value:g}"


def _money(value: float) -> str:
    return f"${value:.2f}"


def validate_line_item(description: Optional[str], quantity: Optional[float], unit_price: Optional[float]) -> None:
    errors: Dict[str, str] = {}
    if not description or not description.strip():
        errors["description"] = "Description is required"
    if quantity is None or not math.isfinite(quantity) or quantity <= 0:
        errors["quantity"] = "Quantity must be greater than 0"
    if unit_price is None or not math.isfinite(unit_price) or unit_price < 0:
        errors["unit_price"] = "Unit price must be 0 or greater"
    if errors:
        raise ValidationError("Invalid line item", errors=errors)


def validate_line_item_update(patch: UpdateLineItem) -> None:
    errors: Dict[str, str] = {}
    if patch.description is not None and not patch.description.strip():
        errors["description"] = "Description cannot be empty"
    if patch.quantity is not None and (not math.isfinite(patch.quantity) or patch.quantity <= 0):
        errors["quantity"] = "Quantity must be greater than 0"
    if patch.unit_price is not None and (not math.isfinite(patch.unit_price) or patch.unit_price < 0):
        errors["unit_price"] = "Unit price must be 0 or greater"
    if errors:
        raise ValidationError("Invalid line item update", errors=errors)


def find_line_item(estimate: Estimate, line_item_id: str) -> LineItem:
    for item in estimate.line_items:
        if item.id == line_item_id:
            return item
    raise LineItemNotFoundError(estimate.id, line_item_id)


def find_duplicate_line_items(line_items: Sequence[LineItem]) -> List[LineItem]:
    """Rows sharing description (case/whitespace-insensitive) and unit price. Warning only."""
    groups: Dict[tuple, List[LineItem]] = {}
    for item in line_items:
        key = (item.description.strip().lower(), round(item.unit_price, 2))
        groups.setdefault(key, []).append(item)
    return [item for group in groups.values() if len(group) > 1 for item in group]


class LineItemLedger:
    def __init__(self, ids: IdGenerator, recorder: RevisionRecorder):
        self.ids = ids
        self.recorder = recorder

    def build(self, payload: AddLineItem) -> LineItem:
        validate_line_item(payload.description, payload.quantity, payload.unit_price)
        return LineItem(
            id=self.ids.new("li"),
            description=payload.description.strip(),
            quantity=payload.quantity,
            unit_price=payload.unit_price,
            total=line_total(payload.quantity, payload.unit_price),
            item_type=payload.item_type,
            catalog_item_id=payload.catalog_item_id,
            notes=payload.notes,
            collection_id=payload.collection_id,
            collection_name=payload.collection_name,
        )

    def add(self, estimate: Estimate, payload: AddLineItem, actor: Optional[Actor] = None) -> LineItem:
        ensure_line_items_editable(estimate)
        item = self.build(payload)
        previous_total = estimate.total
        estimate.line_items.append(item)
        apply_totals(estimate)
        self.recorder.record(
            estimate,
            RevisionChangeType.line_item_added,
            f"Added line item: {item.description} ({_qty(item.quantity)}x @ {_money(item.unit_price)})",
            actor,
            previous_total,
            RevisionDetails(line_item_id=item.id),
        )
        logger.info("line_item_added", estimate_id=estimate.id, line_item_id=item.id, total=estimate.total)
        return item

    def update(self, estimate: Estimate, line_item_id: str, patch: UpdateLineItem, actor: Optional[Actor] = None) -> LineItem:
        ensure_line_items_editable(estimate)
        validate_line_item_update(patch)
        item = find_line_item(estimate, line_item_id)

        changed: Dict[str, Dict] = {}
        summary: List[str] = []
        if patch.description is not None and patch.description.strip() != item.description:
            new_description = patch.description.strip()
            changed["description"] = {"before": item.description, "after": new_description}
            summary.append(f'description: "{item.description}" -> "{new_description}"')
        if patch.quantity is not None and patch.quantity != item.quantity:
            changed["quantity"] = {"before": item.quantity, "after": patch.quantity}
            summary.append(f"quantity: {_qty(item.quantity)} -> {_qty(patch.quantity)}")
        if patch.unit_price is not None and patch.unit_price != item.unit_price:
            changed["unit_price"] = {"before": item.unit_price, "after": patch.unit_price}
            summary.append(f"price: {_money(item.unit_price)} -> {_money(patch.unit_price)}")
        if patch.notes is not None and patch.notes != (item.notes or ""):
            changed["notes"] = {"before": item.notes, "after": patch.notes}
            summary.append("notes updated")
        if not changed:
            return item

        old_description = item.description
        previous_total = estimate.total
        for field, values in changed.items():
            setattr(item, field, values["after"])
        item.total = line_total(item.quantity, item.unit_price)
        apply_totals(estimate)
        validate_payment_schedule(estimate.payment_schedule, estimate.total)
        self.recorder.record(
            estimate,
            RevisionChangeType.line_item_updated,
            f'Updated "{old_description}": {", ".join(summary)}',
            actor,
            previous_total,
            RevisionDetails(line_item_id=item.id, changed_fields=changed),
        )
        logger.info("line_item_updated", estimate_id=estimate.id, line_item_id=item.id, fields=sorted(changed))
        return item

    def delete(self, estimate: Estimate, line_item_id: str, actor: Optional[Actor] = None) -> LineItem:
        ensure_line_items_editable(estimate)
        item = find_line_item(estimate, line_item_id)
        previous_total = estimate.total
        estimate.line_items = [li for li in estimate.line_items if li.id != line_item_id]
        apply_totals(estimate)
        validate_payment_schedule(estimate.payment_schedule, estimate.total)
        self.recorder.record(
            estimate,
            RevisionChangeType.line_item_deleted,
            f"Deleted line item: {item.description} ({_qty(item.quantity)}x @ {_money(item.unit_price)})",
            actor,
            previous_total,
            RevisionDetails(line_item_id=item.id, deleted_item=item.model_copy(deep=True)),
        )
        logger.info("line_item_deleted", estimate_id=estimate.id, line_item_id=item.id, total=estimate.total)
        return item

    def reorder(self, estimate: Estimate, ordered_ids: Sequence[str], actor: Optional[Actor] = None) -> bool:
        """Returns False when the order is unchanged (nothing recorded)."""
        ensure_line_items_editable(estimate)
        current_ids = [li.id for li in estimate.line_items]
        if len(ordered_ids) != len(set(ordered_ids)) or sorted(ordered_ids) != sorted(current_ids):
            raise ValidationError(
                "Reorder must list every line item exactly once",
                errors={"ordered_ids": "must be a permutation of the current line item ids"},
            )
        if list(ordered_ids) == current_ids:
            return False
        by_id = {li.id: li for li in estimate.line_items}
        estimate.line_items = [by_id[i] for i in ordered_ids]
        self.recorder.record(
            estimate,
            RevisionChangeType.line_item_reordered,
            "Reordered line items",
            actor,
            estimate.total,
            RevisionDetails(ordered_ids=list(ordered_ids)),
        )
        logger.info("line_items_reordered", estimate_id=estimate.id, count=len(ordered_ids))
        return True
