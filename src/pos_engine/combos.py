"""Combo definitions and the combo pricer."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, List, Optional, Sequence

from . import catalog, data_manager, log
from .constants import DiscountType, PriceType, SheetName
from .core_logic import (
    BusinessRuleViolation,
    MissingReferenceError,
    RuntimeContext,
    atomic,
    generate_id,
    require_nonnegative,
    require_whole_amount,
    resolve_timestamp,
)
from .data_manager import ComboRow, ComboSlot, ProductRow


WHOLE_UNIT = Decimal("1")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ComboSelection:
    """The product chosen for one position of a combo slot."""

    slot_id: str
    product_id: str
    quantity: int = 1
    removed_ingredients: tuple[str, ...] = ()


def get_combo(context: RuntimeContext, combo_id: str) -> ComboRow:
    """Resolve a combo by id.

    Raises:
        MissingReferenceError: If ``combo_id`` is unknown.
    """

    combo = data_manager.get_record(context.workbook, SheetName.COMBOS, combo_id)
    if combo is None:
        log.warning("Combo lookup failed for id '%s'", combo_id)
        raise MissingReferenceError(f"Unknown combo id: {combo_id}")
    return combo


def list_combos(context: RuntimeContext, *, include_inactive: bool = False) -> List[ComboRow]:
    combos = data_manager.iter_records(context.workbook, SheetName.COMBOS)
    return sorted(
        (combo for combo in combos if include_inactive or combo.is_active),
        key=lambda combo: combo.name.casefold(),
    )


def validate_slots(context: RuntimeContext, slots: Sequence[ComboSlot]) -> None:
    """Check that every slot offers known products and a valid default.

    Raises:
        BusinessRuleViolation: If a slot is empty, its default is not among
            its products or its quantity is below one.
        MissingReferenceError: If a slot references an unknown product.
    """

    if not slots:
        raise BusinessRuleViolation("A combo needs at least one slot")
    for slot in slots:
        if not slot.product_ids:
            raise BusinessRuleViolation(f"Slot '{slot.name}' offers no products")
        if slot.default_product_id not in slot.product_ids:
            raise BusinessRuleViolation(
                f"Default product of slot '{slot.name}' is not one of its products"
            )
        if slot.quantity < 1:
            raise BusinessRuleViolation(f"Slot '{slot.name}' needs a quantity of at least 1")
        for product_id in slot.product_ids:
            catalog.get_product(context, product_id)


def _validate_pricing(
    price_type: PriceType,
    fixed_price: Optional[Decimal],
    discount_type: Optional[DiscountType],
    discount_value: Optional[Decimal],
) -> None:
    if price_type is PriceType.FIXED:
        if fixed_price is None:
            raise BusinessRuleViolation("A fixed-price combo needs a fixed price")
        require_nonnegative(fixed_price, "Fixed price")
        require_whole_amount(fixed_price, "Fixed price")
        return
    if discount_value is not None:
        require_nonnegative(discount_value, "Discount")
        if discount_type is None:
            raise BusinessRuleViolation("A discount value needs a discount type")
        if discount_type is DiscountType.PERCENTAGE and discount_value > HUNDRED:
            raise BusinessRuleViolation("A percentage discount cannot exceed 100")
        if discount_type is DiscountType.FIXED:
            require_whole_amount(discount_value, "Discount")


def _with_slot_ids(slots: Iterable[ComboSlot]) -> tuple[ComboSlot, ...]:
    return tuple(slot if slot.slot_id else replace(slot, slot_id=generate_id("S")) for slot in slots)


def add_combo(
    context: RuntimeContext,
    name: str,
    slots: Sequence[ComboSlot],
    *,
    price_type: PriceType | str = PriceType.CALCULATED,
    fixed_price: Optional[Decimal] = None,
    discount_type: Optional[DiscountType | str] = None,
    discount_value: Optional[Decimal] = None,
    is_active: bool = True,
) -> ComboRow:
    """Create a combo after validating its slots and pricing."""

    if not name or not name.strip():
        raise ValueError("Combo name must not be blank")
    kind = PriceType(price_type)
    discount = DiscountType(discount_type) if discount_type is not None else None
    fixed_price = Decimal(fixed_price) if fixed_price is not None else None
    discount_value = Decimal(discount_value) if discount_value is not None else None
    validate_slots(context, slots)
    _validate_pricing(kind, fixed_price, discount, discount_value)

    combo = ComboRow(
        combo_id=generate_id("C"),
        name=name.strip(),
        price_type=kind.value,
        fixed_price=fixed_price,
        discount_type=discount.value if discount is not None else None,
        discount_value=discount_value,
        slots=_with_slot_ids(slots),
        is_active=is_active,
        updated_at=resolve_timestamp().isoformat(),
    )
    with atomic(context):
        data_manager.add_record(context.workbook, SheetName.COMBOS, combo)
    log.info("Added combo '%s' (%s) with %d slots", combo.name, combo.combo_id, len(combo.slots))
    return combo


def update_combo(context: RuntimeContext, combo_id: str, **changes: Any) -> ComboRow:
    """Replace fields of a combo and re-validate the result."""

    combo = get_combo(context, combo_id)
    if "slots" in changes:
        changes["slots"] = _with_slot_ids(changes["slots"])
    for money_field in ("fixed_price", "discount_value"):
        if changes.get(money_field) is not None:
            changes[money_field] = Decimal(changes[money_field])
    if changes.get("price_type") is not None:
        changes["price_type"] = PriceType(changes["price_type"]).value
    if changes.get("discount_type") is not None:
        changes["discount_type"] = DiscountType(changes["discount_type"]).value

    updated = replace(combo, **changes, updated_at=resolve_timestamp().isoformat())
    validate_slots(context, updated.slots)
    _validate_pricing(
        PriceType(updated.price_type),
        updated.fixed_price,
        DiscountType(updated.discount_type) if updated.discount_type else None,
        updated.discount_value,
    )
    with atomic(context):
        data_manager.put_record(context.workbook, SheetName.COMBOS, updated)
    log.info("Updated combo '%s': %s", combo_id, ", ".join(sorted(changes)))
    return updated


def delete_combo(context: RuntimeContext, combo_id: str) -> None:
    get_combo(context, combo_id)
    with atomic(context):
        data_manager.delete_record(context.workbook, SheetName.COMBOS, combo_id)
    log.info("Deleted combo '%s'", combo_id)


def combo_price(context: RuntimeContext, combo: ComboRow, selections: Sequence[ComboSelection]) -> Decimal:
    """Return the sale price of ``combo`` for the given selections.

    Fixed combos return ``fixed_price`` whatever was selected. Calculated
    combos add up ``price * quantity`` of the selected products, apply the
    discount (a percentage, or a fixed amount that never takes the price below
    zero) and round half up to whole currency units. Unknown products add
    nothing.
    """

    if combo.price_type == PriceType.FIXED.value:
        return combo.fixed_price if combo.fixed_price is not None else Decimal("0")

    total = Decimal("0")
    for selection in selections:
        product = catalog.find_product(context, selection.product_id)
        if product is None:
            log.warning("Combo '%s' priced without unknown product '%s'", combo.combo_id, selection.product_id)
            continue
        total += product.price * selection.quantity

    if combo.discount_value:
        if combo.discount_type == DiscountType.PERCENTAGE.value:
            total = total * (1 - combo.discount_value / HUNDRED)
        elif combo.discount_type == DiscountType.FIXED.value:
            total = max(Decimal("0"), total - combo.discount_value)

    return total.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def default_selections(context: RuntimeContext, combo: ComboRow) -> List[ComboSelection]:
    """Emit ``slot.quantity`` copies of each slot's default product.

    Slots whose default product no longer exists are left out.
    """

    selections: List[ComboSelection] = []
    for slot in combo.slots:
        if catalog.find_product(context, slot.default_product_id) is None:
            log.warning("Combo '%s' slot '%s' has a missing default product", combo.combo_id, slot.name)
            continue
        selections.extend(
            ComboSelection(slot_id=slot.slot_id, product_id=slot.default_product_id)
            for _ in range(slot.quantity)
        )
    return selections


def slot_products(context: RuntimeContext, slot: ComboSlot) -> List[ProductRow]:
    """Return the active products a slot offers, in slot order."""

    products = (catalog.find_product(context, product_id) for product_id in slot.product_ids)
    return [product for product in products if product is not None and product.is_active]


def validate_selection(combo: ComboRow, selections: Sequence[ComboSelection]) -> None:
    """Check that ``selections`` fill ``combo`` correctly.

    Every slot must receive exactly ``slot.quantity`` units. Substitutes are
    only allowed in dynamic slots and only among the slot's products.

    Raises:
        BusinessRuleViolation: On any mismatch.
    """

    slots = {slot.slot_id: slot for slot in combo.slots}
    filled: Counter[str] = Counter()
    for selection in selections:
        slot = slots.get(selection.slot_id)
        if slot is None:
            raise BusinessRuleViolation(f"Combo '{combo.name}' has no slot '{selection.slot_id}'")
        if selection.quantity < 1:
            raise BusinessRuleViolation("Selection quantity must be at least 1")
        if selection.product_id not in slot.product_ids:
            raise BusinessRuleViolation(
                f"Product '{selection.product_id}' is not offered in slot '{slot.name}'"
            )
        if not slot.is_dynamic and selection.product_id != slot.default_product_id:
            raise BusinessRuleViolation(f"Slot '{slot.name}' does not allow substitutions")
        filled[slot.slot_id] += selection.quantity

    for slot in combo.slots:
        if filled[slot.slot_id] != slot.quantity:
            raise BusinessRuleViolation(
                f"Slot '{slot.name}' needs {slot.quantity} item(s), got {filled[slot.slot_id]}"
            )
