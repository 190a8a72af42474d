"""Raw materials, recipes and the resolvers built on top of them.

A recipe is the set of :class:`~pos_engine.data_manager.RecipeLinkRow` edges
between one product and its raw materials. Links come in three shapes:

* fixed: consumes ``quantity`` per unit sold;
* variable: the customer picks an amount between ``min_quantity`` and
  ``max_quantity`` (``default_quantity`` when nothing is chosen);
* linked: follows a variable sibling, consuming
  ``parent_amount * linked_multiplier + quantity``.

``linked_to`` holds the raw material id of the variable sibling. Links never
chain: a linked link cannot itself be the parent of another link. This is
checked by :func:`set_recipe` when the recipe is edited, so the resolvers only
ever walk a graph of depth one.

The stock resolver and the cost resolver share the same two-pass walk but use
different baselines for variable links: availability assumes the minimum
amount (the guaranteed sellable floor), cost assumes the default amount.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from . import catalog, data_manager, log
from .constants import MaterialUnit, SheetName
from .core_logic import (
    BusinessRuleViolation,
    InUse,
    InsufficientStock,
    MissingReferenceError,
    RuntimeContext,
    atomic,
    generate_id,
    get_cache_bucket,
    invalidate_cache,
    require_nonnegative,
    require_whole_amount,
    resolve_timestamp,
)
from .data_manager import RawMaterialRow, RecipeLinkRow


ONE = Decimal("1")
ZERO = Decimal("0")


@dataclass(frozen=True)
class Ingredient:
    """One entry of a recipe as submitted to :func:`set_recipe`."""

    raw_material_id: str
    quantity: Decimal = ZERO
    removable: bool = False
    is_variable: bool = False
    min_quantity: Optional[Decimal] = None
    max_quantity: Optional[Decimal] = None
    default_quantity: Optional[Decimal] = None
    price_per_extra_unit: Optional[Decimal] = None
    linked_to: Optional[str] = None
    linked_multiplier: Optional[Decimal] = None


def _optional_decimal(value: Optional[Decimal | int | str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


def _min_baseline(link: RecipeLinkRow) -> Decimal:
    return link.min_quantity if link.min_quantity is not None else ONE


def _default_baseline(link: RecipeLinkRow) -> Decimal:
    return link.default_quantity if link.default_quantity is not None else ONE


# ---------------------------------------------------------------------------
# Raw-material store
# ---------------------------------------------------------------------------


def get_raw_material(context: RuntimeContext, raw_material_id: str) -> Optional[RawMaterialRow]:
    return data_manager.get_record(context.workbook, SheetName.RAW_MATERIALS, raw_material_id)


def require_raw_material(context: RuntimeContext, raw_material_id: str) -> RawMaterialRow:
    """Return the raw material or raise :class:`MissingReferenceError`."""

    material = get_raw_material(context, raw_material_id)
    if material is None:
        log.warning("Raw material lookup failed for id '%s'", raw_material_id)
        raise MissingReferenceError(f"Unknown raw material id: {raw_material_id}")
    return material


def list_raw_materials(context: RuntimeContext) -> List[RawMaterialRow]:
    """Return every raw material sorted by name."""

    return sorted(
        data_manager.iter_records(context.workbook, SheetName.RAW_MATERIALS),
        key=lambda row: row.name.casefold(),
    )


def add_raw_material(
    context: RuntimeContext,
    name: str,
    *,
    unit: MaterialUnit | str = MaterialUnit.COUNT,
    stock: Decimal = ZERO,
    cost_per_unit: Decimal = ZERO,
) -> RawMaterialRow:
    """Create a raw material.

    Raises:
        ValueError: If the name is blank, the unit unknown or a figure negative.
    """

    if not name or not name.strip():
        raise ValueError("Raw material name must not be blank")
    stock = Decimal(stock)
    cost_per_unit = Decimal(cost_per_unit)
    require_nonnegative(stock, "Stock")
    require_nonnegative(cost_per_unit, "Cost per unit")

    material = RawMaterialRow(
        raw_material_id=generate_id("MP"),
        name=name.strip(),
        unit=MaterialUnit(unit).value,
        stock=stock,
        cost_per_unit=cost_per_unit,
        updated_at=resolve_timestamp().isoformat(),
    )
    with atomic(context):
        data_manager.add_record(context.workbook, SheetName.RAW_MATERIALS, material)
    log.info("Added raw material '%s' (%s)", material.name, material.raw_material_id)
    return material


def update_raw_material(
    context: RuntimeContext,
    raw_material_id: str,
    *,
    name: Optional[str] = None,
    unit: Optional[MaterialUnit | str] = None,
    cost_per_unit: Optional[Decimal] = None,
) -> RawMaterialRow:
    """Edit a raw material's descriptive fields or unit cost.

    A change of ``cost_per_unit`` recomputes the production cost of every
    dependent product in the same transaction. Stock is adjusted through
    :func:`adjust_stock` only.
    """

    material = require_raw_material(context, raw_material_id)
    changes: Dict[str, object] = {}
    if name is not None:
        if not name.strip():
            raise ValueError("Raw material name must not be blank")
        changes["name"] = name.strip()
    if unit is not None:
        changes["unit"] = MaterialUnit(unit).value
    if cost_per_unit is not None:
        cost_per_unit = Decimal(cost_per_unit)
        require_nonnegative(cost_per_unit, "Cost per unit")
        changes["cost_per_unit"] = cost_per_unit

    updated = replace(material, **changes, updated_at=resolve_timestamp().isoformat())
    with atomic(context):
        data_manager.put_record(context.workbook, SheetName.RAW_MATERIALS, updated)
        if cost_per_unit is not None and cost_per_unit != material.cost_per_unit:
            recalculate_affected(context, raw_material_id)
    log.info("Updated raw material '%s': %s", raw_material_id, ", ".join(sorted(changes)) or "no changes")
    return updated


def delete_raw_material(context: RuntimeContext, raw_material_id: str) -> None:
    """Delete a raw material that no recipe references.

    Raises:
        MissingReferenceError: If the material is unknown.
        InUse: If at least one recipe link still points at it.
    """

    material = require_raw_material(context, raw_material_id)
    links = data_manager.get_records_by_index(
        context.workbook, SheetName.RECIPE_LINKS, "raw_material_id", raw_material_id
    )
    if links:
        products = sorted({link.product_id for link in links})
        log.warning("Refusing to delete raw material '%s' used by %s", raw_material_id, products)
        raise InUse(
            f"Raw material '{material.name}' is used by {len(products)} product(s)"
        )

    with atomic(context):
        data_manager.delete_record(context.workbook, SheetName.RAW_MATERIALS, raw_material_id)
    log.info("Deleted raw material '%s'", raw_material_id)


def adjust_stock(context: RuntimeContext, raw_material_id: str, delta: Decimal) -> Decimal:
    """Apply a signed change to a raw material's stock.

    This is the only write path for raw-material stock.

    Returns:
        Decimal: The new stock level.

    Raises:
        MissingReferenceError: If the material is unknown.
        InsufficientStock: If the stock would drop below zero.
    """

    material = require_raw_material(context, raw_material_id)
    delta = Decimal(delta)
    new_stock = material.stock + delta
    if new_stock < 0:
        log.warning(
            "Raw material '%s' holds %s, cannot remove %s", raw_material_id, material.stock, -delta
        )
        raise InsufficientStock(f"raw material '{material.name}'", -delta, material.stock)

    with atomic(context):
        data_manager.put_record(
            context.workbook,
            SheetName.RAW_MATERIALS,
            replace(material, stock=new_stock, updated_at=resolve_timestamp().isoformat()),
        )
    log.info("Raw material '%s' stock %s -> %s", raw_material_id, material.stock, new_stock)
    return new_stock


# ---------------------------------------------------------------------------
# Recipe graph
# ---------------------------------------------------------------------------


def get_recipe(context: RuntimeContext, product_id: str) -> tuple[RecipeLinkRow, ...]:
    """Return the recipe links of ``product_id`` (empty if it has none)."""

    bucket = get_cache_bucket(context, "recipes")
    if product_id not in bucket:
        bucket[product_id] = tuple(
            data_manager.get_records_by_index(
                context.workbook, SheetName.RECIPE_LINKS, "product_id", product_id
            )
        )
    return bucket[product_id]


def _validate_recipe(context: RuntimeContext, ingredients: Sequence[Ingredient]) -> None:
    seen: Dict[str, Ingredient] = {}
    for item in ingredients:
        require_raw_material(context, item.raw_material_id)
        if item.raw_material_id in seen:
            raise BusinessRuleViolation(
                f"Raw material '{item.raw_material_id}' appears twice in the recipe"
            )
        seen[item.raw_material_id] = item

        if item.linked_to is None:
            require_nonnegative(Decimal(item.quantity), "Ingredient quantity")
        if item.is_variable and item.linked_to is not None:
            raise BusinessRuleViolation("An ingredient cannot be both variable and linked")
        if item.is_variable:
            low = _optional_decimal(item.min_quantity)
            low = ONE if low is None else low
            default = _optional_decimal(item.default_quantity)
            default = ONE if default is None else default
            high = _optional_decimal(item.max_quantity)
            if low < 0 or default < low or (high is not None and high < default):
                raise BusinessRuleViolation(
                    f"Variable ingredient '{item.raw_material_id}' needs 0 <= min <= default <= max"
                )
            if item.price_per_extra_unit is not None:
                require_nonnegative(Decimal(item.price_per_extra_unit), "Price per extra unit")
                require_whole_amount(item.price_per_extra_unit, "Price per extra unit")
        elif item.linked_to is None and Decimal(item.quantity) <= 0:
            raise BusinessRuleViolation(
                f"Fixed ingredient '{item.raw_material_id}' needs a positive quantity"
            )

    for item in ingredients:
        if item.linked_to is None:
            continue
        parent = seen.get(item.linked_to)
        if parent is None or not parent.is_variable or parent.linked_to is not None:
            raise BusinessRuleViolation(
                f"Linked ingredient '{item.raw_material_id}' must follow a variable ingredient of the same product"
            )
        if item.linked_multiplier is None or Decimal(item.linked_multiplier) <= 0:
            raise BusinessRuleViolation(
                f"Linked ingredient '{item.raw_material_id}' needs a positive multiplier"
            )


def set_recipe(context: RuntimeContext, product_id: str, ingredients: Sequence[Ingredient]) -> tuple[RecipeLinkRow, ...]:
    """Replace the recipe of ``product_id`` and recompute its production cost.

    The whole ingredient list is validated before anything is written: every
    raw material must exist, variable bounds must be ordered and linked
    ingredients must follow a variable, non-linked sibling.

    Args:
        context (RuntimeContext): Active runtime context.
        product_id (str): Product whose recipe is replaced.
        ingredients (Sequence[Ingredient]): The new recipe. An empty sequence
            clears it and marks the product as not using raw materials.

    Returns:
        tuple[RecipeLinkRow, ...]: The stored links.

    Raises:
        MissingReferenceError: If the product or a raw material is unknown.
        BusinessRuleViolation: If the recipe graph is malformed.
    """

    catalog.get_product(context, product_id)
    _validate_recipe(context, ingredients)

    links = tuple(
        RecipeLinkRow(
            link_id=generate_id("L"),
            product_id=product_id,
            raw_material_id=item.raw_material_id,
            quantity=Decimal(item.quantity),
            removable=item.removable,
            is_variable=item.is_variable,
            min_quantity=_optional_decimal(item.min_quantity),
            max_quantity=_optional_decimal(item.max_quantity),
            default_quantity=_optional_decimal(item.default_quantity),
            price_per_extra_unit=_optional_decimal(item.price_per_extra_unit),
            linked_to=item.linked_to,
            linked_multiplier=_optional_decimal(item.linked_multiplier),
        )
        for item in ingredients
    )

    with atomic(context):
        for existing in get_recipe(context, product_id):
            data_manager.delete_record(context.workbook, SheetName.RECIPE_LINKS, existing.link_id)
        for link in links:
            data_manager.add_record(context.workbook, SheetName.RECIPE_LINKS, link)
        invalidate_cache(context, "recipes")
        catalog.set_uses_raw_materials(context, product_id, bool(links))
        if links:
            catalog.store_production_cost(context, product_id, production_cost(context, product_id))
    log.info("Stored recipe for product '%s' with %d ingredients", product_id, len(links))
    return links


def _split_links(links: Iterable[RecipeLinkRow]) -> tuple[List[RecipeLinkRow], List[RecipeLinkRow]]:
    base: List[RecipeLinkRow] = []
    linked: List[RecipeLinkRow] = []
    for link in links:
        (linked if link.is_linked else base).append(link)
    return base, linked


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def available_units(context: RuntimeContext, product_id: str) -> int:
    """Return how many units of ``product_id`` current raw-material stock allows.

    Fixed links consume ``quantity`` and variable links ``min_quantity``
    (default 1). Linked links consume ``parent_min * linked_multiplier +
    quantity`` and only constrain the result when that amount is positive.
    The scarcest ingredient wins.

    Each call reads current stock on its own; two products sharing a raw
    material are not reserved jointly, so callers re-resolve after every
    committed sale.

    Returns:
        int: Units sellable, 0 for a product without recipe links or with a
            broken reference (missing raw material, dangling ``linked_to``).
    """

    links = get_recipe(context, product_id)
    if not links:
        return 0

    base, linked = _split_links(links)
    limit: Optional[int] = None
    parent_amounts: Dict[str, Decimal] = {}

    for link in base:
        material = get_raw_material(context, link.raw_material_id)
        if material is None:
            log.warning(
                "Product '%s' references missing raw material '%s'; reporting 0 available",
                product_id,
                link.raw_material_id,
            )
            return 0
        amount = _min_baseline(link) if link.is_variable else link.quantity
        if link.is_variable:
            parent_amounts[link.raw_material_id] = amount
        if amount <= 0:
            continue
        units = int(material.stock // amount)
        limit = units if limit is None else min(limit, units)

    for link in linked:
        if not link.linked_multiplier:
            continue
        parent_amount = parent_amounts.get(link.linked_to)
        if parent_amount is None:
            log.warning(
                "Product '%s' has a link to '%s' without variable parent '%s'; reporting 0 available",
                product_id,
                link.raw_material_id,
                link.linked_to,
            )
            return 0
        material = get_raw_material(context, link.raw_material_id)
        if material is None:
            log.warning(
                "Product '%s' references missing raw material '%s'; reporting 0 available",
                product_id,
                link.raw_material_id,
            )
            return 0
        amount = parent_amount * link.linked_multiplier + link.quantity
        if amount > 0:
            units = int(material.stock // amount)
            limit = units if limit is None else min(limit, units)

    return limit if limit is not None else 0


def production_cost(context: RuntimeContext, product_id: str) -> Decimal:
    """Return the recipe cost of one unit of ``product_id``.

    Same walk as :func:`available_units` but summing ``cost_per_unit * amount``
    with ``default_quantity`` (default 1) as the variable baseline. Missing raw
    materials and dangling links contribute nothing and are logged.
    """

    base, linked = _split_links(get_recipe(context, product_id))
    total = ZERO
    parent_amounts: Dict[str, Decimal] = {}

    for link in base:
        material = get_raw_material(context, link.raw_material_id)
        if material is None:
            log.warning(
                "Product '%s' references missing raw material '%s'; skipped in cost",
                product_id,
                link.raw_material_id,
            )
            continue
        amount = _default_baseline(link) if link.is_variable else link.quantity
        total += material.cost_per_unit * amount
        if link.is_variable:
            parent_amounts[link.raw_material_id] = amount

    for link in linked:
        if not link.linked_multiplier:
            continue
        parent_amount = parent_amounts.get(link.linked_to)
        if parent_amount is None:
            log.warning(
                "Product '%s' has a dangling link to '%s'; skipped in cost", product_id, link.linked_to
            )
            continue
        material = get_raw_material(context, link.raw_material_id)
        if material is None:
            log.warning(
                "Product '%s' references missing raw material '%s'; skipped in cost",
                product_id,
                link.raw_material_id,
            )
            continue
        amount = parent_amount * link.linked_multiplier + link.quantity
        if amount > 0:
            total += material.cost_per_unit * amount

    return total


def recalculate_affected(context: RuntimeContext, raw_material_id: str) -> List[str]:
    """Recompute and store the cost of every product using ``raw_material_id``.

    Products are found through the recipe index and each one is recomputed
    once, synchronously, inside a single transaction. Products that do not
    use raw materials keep their hand-entered cost.

    Returns:
        list[str]: Ids of the products whose cost was stored.
    """

    links = data_manager.get_records_by_index(
        context.workbook, SheetName.RECIPE_LINKS, "raw_material_id", raw_material_id
    )
    product_ids = list(dict.fromkeys(link.product_id for link in links))

    updated: List[str] = []
    with atomic(context):
        for product_id in product_ids:
            product = catalog.find_product(context, product_id)
            if product is None or not product.uses_raw_materials:
                continue
            catalog.store_production_cost(context, product_id, production_cost(context, product_id))
            updated.append(product_id)
    log.info(
        "Recalculated production cost of %d products after change to '%s'",
        len(updated),
        raw_material_id,
    )
    return updated


# ---------------------------------------------------------------------------
# Sale-time consumption
# ---------------------------------------------------------------------------


def _is_removed(link: RecipeLinkRow, material: Optional[RawMaterialRow], removed: Sequence[str]) -> bool:
    if not link.removable or not removed:
        return False
    return link.raw_material_id in removed or (material is not None and material.name in removed)


def kept_links(
    context: RuntimeContext, links: Iterable[RecipeLinkRow], removed: Sequence[str] = ()
) -> List[RecipeLinkRow]:
    """Return ``links`` without the removable ones the customer left out."""

    return [
        link
        for link in links
        if not _is_removed(link, get_raw_material(context, link.raw_material_id), removed)
    ]


def consumption_for(
    context: RuntimeContext,
    product_id: str,
    units: Decimal | int = 1,
    *,
    chosen: Optional[Mapping[str, Decimal]] = None,
    removed: Sequence[str] = (),
) -> Dict[str, Decimal]:
    """Return the raw material each sold unit actually consumes, times ``units``.

    Args:
        context (RuntimeContext): Active runtime context.
        product_id (str): Product being sold.
        units (Decimal | int): Number of units sold.
        chosen (Mapping[str, Decimal] | None): Amount picked for variable
            ingredients, keyed by raw material id. Missing entries use the
            ingredient's default amount.
        removed (Sequence[str]): Removable ingredients left out, by raw
            material id or name. Non-removable ingredients are never skipped.

    Returns:
        dict[str, Decimal]: Positive consumption per raw material id.

    Raises:
        MissingReferenceError: If a referenced raw material no longer exists.
        BusinessRuleViolation: If a chosen amount is outside its bounds or
            targets a non-variable ingredient.
    """

    chosen = dict(chosen or {})
    base, linked = _split_links(get_recipe(context, product_id))
    variable_ids = {link.raw_material_id for link in base if link.is_variable}
    stray = set(chosen) - variable_ids
    if stray:
        raise BusinessRuleViolation(
            f"Ingredients {sorted(stray)} are not adjustable on product '{product_id}'"
        )

    per_unit: Dict[str, Decimal] = {}
    parent_amounts: Dict[str, Decimal] = {}
    for link in base:
        material = require_raw_material(context, link.raw_material_id)
        if link.is_variable:
            amount = Decimal(chosen.get(link.raw_material_id, _default_baseline(link)))
            low = _min_baseline(link)
            if amount < low or (link.max_quantity is not None and amount > link.max_quantity):
                raise BusinessRuleViolation(
                    f"Amount {amount} of '{material.name}' is outside {low}..{link.max_quantity}"
                )
        else:
            amount = link.quantity
        if _is_removed(link, material, removed):
            amount = ZERO
        if link.is_variable:
            parent_amounts[link.raw_material_id] = amount
        if amount > 0:
            per_unit[link.raw_material_id] = per_unit.get(link.raw_material_id, ZERO) + amount

    for link in linked:
        if not link.linked_multiplier or link.linked_to not in parent_amounts:
            continue
        material = require_raw_material(context, link.raw_material_id)
        if _is_removed(link, material, removed):
            continue
        amount = parent_amounts[link.linked_to] * link.linked_multiplier + link.quantity
        if amount > 0:
            per_unit[link.raw_material_id] = per_unit.get(link.raw_material_id, ZERO) + amount

    units = Decimal(units)
    return {material_id: amount * units for material_id, amount in per_unit.items()}


def variable_surcharge(links: Iterable[RecipeLinkRow], chosen: Mapping[str, Decimal]) -> Decimal:
    """Price the amount chosen above each variable ingredient's default.

    Only variable links with a ``price_per_extra_unit`` add to the surcharge;
    choosing less than the default never discounts.
    """

    total = ZERO
    for link in links:
        if not link.is_variable or link.price_per_extra_unit is None:
            continue
        if link.raw_material_id not in chosen:
            continue
        extra = Decimal(chosen[link.raw_material_id]) - _default_baseline(link)
        if extra > 0:
            total += extra * link.price_per_extra_unit
    return total
