"""Read-only figures derived from sales, stock and the cash movement log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, Optional

from . import cash_drawer, catalog, data_manager, log, materials
from .constants import MovementType, SheetName
from .core_logic import RuntimeContext


ZERO = Decimal("0")


@dataclass(frozen=True)
class ProductSales:
    product_name: str
    quantity: Decimal
    revenue: Decimal
    profit: Decimal


def _within(moment_iso: str, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is None and end is None:
        return True
    moment = datetime.fromisoformat(moment_iso)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    if start is not None and moment < (start if start.tzinfo else start.replace(tzinfo=UTC)):
        return False
    if end is not None and moment > (end if end.tzinfo else end.replace(tzinfo=UTC)):
        return False
    return True


def sales_summary(
    context: RuntimeContext,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, object]:
    """Aggregate sales completed between ``start`` and ``end`` (inclusive).

    Stand-alone items count their subtotal as revenue. Items sold inside a
    combo add their list price to the per-product figures, while the totals
    count each combo instance once at the price the customer paid, minus the
    production cost of all its items.

    Returns:
        dict[str, object]: ``sale_count``, ``revenue``, ``profit``,
            ``average_ticket`` and ``products`` (a list of
            :class:`ProductSales` ordered by quantity sold, largest first).
    """

    sales = [
        sale
        for sale in data_manager.iter_records(context.workbook, SheetName.SALES)
        if _within(sale.completed_at, start, end)
    ]
    sale_ids = {sale.sale_id for sale in sales}
    items = [
        item
        for item in data_manager.iter_records(context.workbook, SheetName.SALE_ITEMS)
        if item.sale_id in sale_ids
    ]

    per_product: Dict[str, Dict[str, Decimal]] = {}
    revenue = ZERO
    profit = ZERO
    combo_instances: Dict[str, Dict[str, Decimal]] = {}

    for item in items:
        stats = per_product.setdefault(
            item.product_name, {"quantity": ZERO, "revenue": ZERO, "profit": ZERO}
        )
        item_profit = (item.product_price - item.production_cost) * item.quantity
        stats["quantity"] += item.quantity
        stats["profit"] += item_profit
        if item.combo_name is None:
            stats["revenue"] += item.subtotal
            revenue += item.subtotal
            profit += item_profit
            continue

        stats["revenue"] += item.product_price * item.quantity
        instance = combo_instances.setdefault(
            item.combo_instance_id or item.sale_item_id,
            {"price": item.combo_unit_price or ZERO, "cost": ZERO},
        )
        instance["cost"] += item.production_cost * item.quantity

    for instance in combo_instances.values():
        revenue += instance["price"]
        profit += instance["price"] - instance["cost"]

    products = sorted(
        (
            ProductSales(product_name=name, quantity=data["quantity"], revenue=data["revenue"], profit=data["profit"])
            for name, data in per_product.items()
        ),
        key=lambda entry: entry.quantity,
        reverse=True,
    )
    average = (revenue / len(sales)) if sales else ZERO
    log.debug("Summarized %d sales with %d items", len(sales), len(items))
    return {
        "sale_count": len(sales),
        "revenue": revenue,
        "profit": profit,
        "average_ticket": average,
        "products": products,
    }


def inventory_value(context: RuntimeContext) -> Dict[str, Decimal]:
    """Value stock at cost.

    Products that do not use raw materials count ``production_cost * stock``;
    raw materials count ``cost_per_unit * stock``. Recipe products hold no
    stock of their own and are valued through their raw materials.
    """

    products_value = sum(
        (
            product.production_cost * product.stock
            for product in catalog.list_products(context, include_inactive=True)
            if not product.uses_raw_materials
        ),
        ZERO,
    )
    materials_value = sum(
        (material.cost_per_unit * material.stock for material in materials.list_raw_materials(context)),
        ZERO,
    )
    return {
        "products": products_value,
        "raw_materials": materials_value,
        "total": products_value + materials_value,
    }


def cash_flow_summary(
    context: RuntimeContext,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Dict[str, int]]:
    """Return the value of bills in and out per movement type over a period."""

    movements = cash_drawer.filter_movements(
        cash_drawer.recent_movements(context, limit=None), start=start, end=end
    )
    summary: Dict[str, Dict[str, int]] = {
        kind.value: {"in": 0, "out": 0, "count": 0} for kind in MovementType
    }
    for movement in movements:
        bucket = summary.setdefault(movement.movement_type, {"in": 0, "out": 0, "count": 0})
        bucket["in"] += cash_drawer.bills_value(movement.bills_in)
        bucket["out"] += cash_drawer.bills_value(movement.bills_out)
        bucket["count"] += 1
    return summary

