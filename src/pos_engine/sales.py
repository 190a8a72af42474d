"""Sale completion: admission, pricing, tender and stock in one transaction.

:func:`complete_sale` follows a strict order. Everything is computed and
validated first (products, combo selections, aggregated raw-material and
product stock, tender and change). Only then are the sale, its items, the
stock decrements and the cash movements written, inside a single
:func:`core_logic.atomic` block. The kitchen display is notified after the
commit and its outcome never affects the sale.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from . import cash_drawer, catalog, combos, data_manager, kds, log, materials
from .cash_drawer import BillCount
from .combos import ComboSelection
from .constants import PaymentMethod, SheetName
from .core_logic import (
    BusinessRuleViolation,
    InsufficientStock,
    RuntimeContext,
    atomic,
    generate_id,
    require_positive_quantity,
    require_whole_amount,
    resolve_timestamp,
)
from .data_manager import ProductRow, SaleItemRow, SaleRow


@dataclass(frozen=True)
class SaleLine:
    """A product sold on its own.

    ``chosen_quantities`` maps the raw material id of a variable ingredient to
    the amount picked by the customer; ``removed_ingredients`` lists removable
    ingredients (by raw material id or name) to leave out.
    """

    product_id: str
    quantity: int = 1
    removed_ingredients: tuple[str, ...] = ()
    chosen_quantities: Mapping[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class ComboLine:
    """One or more copies of a combo; empty ``selections`` means the defaults."""

    combo_id: str
    quantity: int = 1
    selections: tuple[ComboSelection, ...] = ()


@dataclass(frozen=True)
class SaleCommand:
    lines: tuple[SaleLine, ...] = ()
    combos: tuple[ComboLine, ...] = ()
    payment_method: PaymentMethod = PaymentMethod.CASH
    tendered: tuple[int, ...] = ()
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleReceipt:
    sale: SaleRow
    items: tuple[SaleItemRow, ...]
    change: tuple[BillCount, ...]
    kitchen_notified: bool


@dataclass
class _Plan:
    items: List[SaleItemRow] = field(default_factory=list)
    materials: Dict[str, Decimal] = field(default_factory=dict)
    products: Dict[str, Decimal] = field(default_factory=dict)
    total: Decimal = Decimal("0")

    def consume(self, context: RuntimeContext, product: ProductRow, units: Decimal, *,
                chosen: Optional[Mapping[str, Decimal]] = None, removed: Sequence[str] = ()) -> None:
        if not product.uses_raw_materials:
            self.products[product.product_id] = self.products.get(product.product_id, Decimal("0")) + units
            return
        if materials.available_units(context, product.product_id) < 1:
            log.warning("Product '%s' cannot be made from current raw materials", product.product_id)
            raise InsufficientStock(f"product '{product.name}'", units, 0)
        usage = materials.consumption_for(
            context, product.product_id, units, chosen=chosen, removed=removed
        )
        for material_id, amount in usage.items():
            self.materials[material_id] = self.materials.get(material_id, Decimal("0")) + amount


def list_sales(context: RuntimeContext) -> List[SaleRow]:
    """Return every sale ordered by sale number."""

    return sorted(
        data_manager.iter_records(context.workbook, SheetName.SALES),
        key=lambda sale: sale.sale_number,
    )


def get_sale_items(context: RuntimeContext, sale_id: str) -> List[SaleItemRow]:
    return data_manager.get_records_by_index(context.workbook, SheetName.SALE_ITEMS, "sale_id", sale_id)


def next_sale_number(context: RuntimeContext) -> int:
    """Return one more than the highest sale number recorded so far."""

    numbers = [sale.sale_number for sale in data_manager.iter_records(context.workbook, SheetName.SALES)]
    return max(numbers, default=0) + 1


def _require_active(context: RuntimeContext, product_id: str) -> ProductRow:
    product = catalog.get_product(context, product_id)
    if not product.is_active:
        log.warning("Attempted sale on inactive product '%s'", product_id)
        raise BusinessRuleViolation(f"Product '{product.name}' is inactive")
    return product


def _plan_products(context: RuntimeContext, plan: _Plan, sale_id: str, lines: Sequence[SaleLine], created_at: str) -> None:
    for line in lines:
        require_positive_quantity(line.quantity)
        product = _require_active(context, line.product_id)
        units = Decimal(line.quantity)
        chosen = dict(line.chosen_quantities)
        plan.consume(context, product, units, chosen=chosen, removed=line.removed_ingredients)

        unit_price = product.price
        if chosen:
            recipe = materials.get_recipe(context, product.product_id)
            links = materials.kept_links(context, recipe, line.removed_ingredients)
            unit_price += materials.variable_surcharge(links, chosen)
        subtotal = unit_price * units
        plan.items.append(
            SaleItemRow(
                sale_item_id=generate_id("SI"),
                sale_id=sale_id,
                product_id=product.product_id,
                product_name=product.name,
                product_price=unit_price,
                production_cost=product.production_cost,
                quantity=units,
                subtotal=subtotal,
                removed_ingredients=tuple(line.removed_ingredients),
                created_at=created_at,
            )
        )
        plan.total += subtotal


def _plan_combos(context: RuntimeContext, plan: _Plan, sale_id: str, lines: Sequence[ComboLine], created_at: str) -> None:
    for line in lines:
        require_positive_quantity(line.quantity)
        combo = combos.get_combo(context, line.combo_id)
        if not combo.is_active:
            raise BusinessRuleViolation(f"Combo '{combo.name}' is inactive")
        selections = list(line.selections) or combos.default_selections(context, combo)
        combos.validate_selection(combo, selections)
        unit_price = combos.combo_price(context, combo, selections)

        for _ in range(line.quantity):
            instance_id = generate_id("CI")
            for selection in selections:
                product = _require_active(context, selection.product_id)
                units = Decimal(selection.quantity)
                plan.consume(context, product, units, removed=selection.removed_ingredients)
                plan.items.append(
                    SaleItemRow(
                        sale_item_id=generate_id("SI"),
                        sale_id=sale_id,
                        product_id=product.product_id,
                        product_name=product.name,
                        product_price=product.price,
                        production_cost=product.production_cost,
                        quantity=units,
                        subtotal=product.price * units,
                        removed_ingredients=tuple(selection.removed_ingredients),
                        combo_name=combo.name,
                        combo_instance_id=instance_id,
                        combo_unit_price=unit_price,
                        created_at=created_at,
                    )
                )
            plan.total += unit_price


def _check_stock(context: RuntimeContext, plan: _Plan) -> None:
    for material_id, required in plan.materials.items():
        material = materials.require_raw_material(context, material_id)
        if material.stock < required:
            log.warning("Sale needs %s of '%s', only %s in stock", required, material_id, material.stock)
            raise InsufficientStock(f"raw material '{material.name}'", required, material.stock)
    for product_id, required in plan.products.items():
        product = catalog.get_product(context, product_id)
        if product.stock < required:
            log.warning("Sale needs %s of '%s', only %s in stock", required, product_id, product.stock)
            raise InsufficientStock(f"product '{product.name}'", required, product.stock)


def complete_sale(context: RuntimeContext, command: SaleCommand) -> SaleReceipt:
    """Validate and record a sale with its stock and cash effects.

    Change is computed against the drawer as it stands before the tendered
    bills are added, so a customer's own bills are never handed back as
    change.

    Args:
        context (RuntimeContext): Active runtime context.
        command (SaleCommand): Products, combos and tender of the sale.

    Returns:
        SaleReceipt: The stored sale and items, the change handed out and
            whether the kitchen display accepted the order.

    Raises:
        BusinessRuleViolation: If the sale is empty, references inactive items
            or is paid with too little cash.
        InsufficientStock: If raw materials or product stock fall short.
        InsufficientChange: If the drawer cannot make exact change.
        StoreUnavailable: If the commit cannot be written.
    """

    if not command.lines and not command.combos:
        raise BusinessRuleViolation("A sale needs at least one product or combo")
    method = PaymentMethod(command.payment_method)

    timestamp = resolve_timestamp(command.timestamp)
    created_at = timestamp.isoformat()
    sale_id = generate_id("S")
    plan = _Plan()
    _plan_products(context, plan, sale_id, command.lines, created_at)
    _plan_combos(context, plan, sale_id, command.combos, created_at)
    _check_stock(context, plan)

    breakdown: List[BillCount] = []
    received_bills: Dict[int, int] = {}
    cash_received: Optional[Decimal] = None
    change_amount: Optional[Decimal] = None
    if method is PaymentMethod.CASH:
        require_whole_amount(plan.total, "Sale total")
        unknown = sorted(set(command.tendered) - set(context.settings.denominations))
        if unknown:
            raise BusinessRuleViolation(f"Unknown denominations tendered: {unknown}")
        received_bills = dict(sorted(Counter(command.tendered).items(), reverse=True))
        cash_received = Decimal(sum(command.tendered))
        if cash_received < plan.total:
            log.warning("Tender %s does not cover total %s", cash_received, plan.total)
            raise BusinessRuleViolation(f"Cash received {cash_received} is less than total {plan.total}")
        change_amount = cash_received - plan.total
        breakdown = cash_drawer.change_for(context, change_amount)
    elif command.tendered:
        raise BusinessRuleViolation("Online payments do not take cash")

    sale = SaleRow(
        sale_id=sale_id,
        sale_number=next_sale_number(context),
        total_amount=plan.total,
        payment_method=method.value,
        cash_received=cash_received,
        change_given=change_amount,
        bills_received=received_bills or None,
        bills_change=cash_drawer.breakdown_to_bills(breakdown) or None,
        customer_name=command.customer_name,
        notes=command.notes,
        completed_at=created_at,
    )

    with atomic(context):
        data_manager.add_record(context.workbook, SheetName.SALES, sale)
        for item in plan.items:
            data_manager.add_record(context.workbook, SheetName.SALE_ITEMS, item)
        for material_id, amount in plan.materials.items():
            materials.adjust_stock(context, material_id, -amount)
        for product_id, amount in plan.products.items():
            catalog.adjust_product_stock(context, product_id, -amount)
        if method is PaymentMethod.CASH:
            cash_drawer.receive_cash(context, command.tendered, sale_id)
            cash_drawer.give_change(context, breakdown, sale_id)

    log.info(
        "Completed sale #%d (%s) total %s via %s with %d items",
        sale.sale_number,
        sale_id,
        plan.total,
        method.value,
        len(plan.items),
    )
    notified = kds.notify_kitchen(context.settings, sale, plan.items)
    return SaleReceipt(sale=sale, items=tuple(plan.items), change=tuple(breakdown), kitchen_notified=notified)
