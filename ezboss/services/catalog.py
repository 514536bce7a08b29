"""
Conversion of read-only inventory catalog entries into line items.

Catalog documents are plain dicts owned by the inventory side of the app;
nothing here writes back to them.
"""
from typing import Any, Dict, Iterable, List, Optional

from ..schemas.estimates import LineItem, LineItemType
from .clock import IdGenerator
from .totals import line_total


# Collection key holding the selections for each catalog type
SELECTION_KEYS = {
    LineItemType.product: "product_selections",
    LineItemType.labor: "labor_selections",
    LineItemType.tool: "tool_selections",
    LineItemType.equipment: "equipment_selections",
}


def _first(entries: Optional[list], key: str) -> Optional[float]:
    if entries:
        return entries[0].get(key)
    return None


def catalog_item_price(item: Dict[str, Any], item_type: LineItemType) -> float:
    if item_type == LineItemType.product:
        return float(_first(item.get("price_entries"), "price") or item.get("unit_price") or 0)
    if item_type == LineItemType.labor:
        # First flat rate wins over hourly
        return float(_first(item.get("flat_rates"), "rate") or _first(item.get("hourly_rates"), "hourly_rate") or 0)
    if item_type in (LineItemType.tool, LineItemType.equipment):
        return float(item.get("minimum_customer_charge") or 0)
    return 0.0


def catalog_item_name(item: Dict[str, Any]) -> str:
    return item.get("name") or item.get("description") or "Unnamed Item"


def convert_inventory_item_to_line_item(
    item: Dict[str, Any],
    item_type: LineItemType,
    quantity: float = 1,
    ids: Optional[IdGenerator] = None,
) -> LineItem:
    ids = ids or IdGenerator()
    unit_price = catalog_item_price(item, item_type)
    return LineItem(
        id=ids.new("li"),
        description=catalog_item_name(item),
        quantity=quantity,
        unit_price=unit_price,
        total=line_total(quantity, unit_price),
        item_type=item_type,
        catalog_item_id=item.get("id"),
        notes="",
    )


def convert_collection_to_line_items(
    collection: Dict[str, Any],
    include_types: Iterable[LineItemType],
    ids: Optional[IdGenerator] = None,
) -> List[LineItem]:
    """Selected entries of a collection, in catalog type order."""
    ids = ids or IdGenerator()
    wanted = set(include_types)
    items: List[LineItem] = []
    for item_type, key in SELECTION_KEYS.items():
        if item_type not in wanted:
            continue
        for catalog_id, selection in (collection.get(key) or {}).items():
            if not selection.get("is_selected"):
                continue
            quantity = selection.get("quantity") or 1
            unit_price = selection.get("unit_price") or 0
            description = selection.get("item_name") or ""
            if item_type == LineItemType.product:
                description = description or selection.get("product_name") or ""
            items.append(
                LineItem(
                    id=ids.new("li"),
                    description=description,
                    quantity=quantity,
                    unit_price=unit_price,
                    total=line_total(quantity, unit_price),
                    item_type=item_type,
                    catalog_item_id=catalog_id,
                    notes="",
                    collection_id=collection.get("id"),
                    collection_name=collection.get("name"),
                )
            )
    return items
