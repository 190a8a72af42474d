"""Product catalog: sellable items, their prices and finished-goods stock."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import data_manager, log
from .constants import SheetName
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
from .data_manager import ProductRow


_EDITABLE_FIELDS = frozenset({"name", "category", "price", "is_active", "production_cost"})


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate and return the memoized product bucket.

    The bucket stores three views: ``all`` in sheet order, ``active`` and
    ``by_id``. Writes through this module evict it.
    """

    bucket = get_cache_bucket(context, "products")
    if "all" not in bucket:
        rows = list(data_manager.iter_records(context.workbook, SheetName.PRODUCTS))
        bucket["all"] = rows
        bucket["active"] = [row for row in rows if row.is_active]
        bucket["by_id"] = {row.product_id: row for row in rows}
        log.debug("Cached %d products", len(rows))
    return bucket


def list_products(
    context: RuntimeContext,
    *,
    include_inactive: bool = False,
    category: Optional[str] = None,
) -> List[ProductRow]:
    """Return products ordered by category then name.

    Args:
        context (RuntimeContext): Active runtime context.
        include_inactive (bool): Include products that are switched off.
        category (str | None): Only return products of this category.

    Returns:
        list[ProductRow]: A new list the caller may reorder freely.
    """

    cache = _ensure_products_cache(context)
    source = cache["all"] if include_inactive else cache["active"]
    if category is not None:
        source = [row for row in source if row.category == category]
    return sorted(source, key=lambda row: (row.category.casefold(), row.name.casefold()))


def find_product(context: RuntimeContext, product_id: str) -> Optional[ProductRow]:
    return _ensure_products_cache(context)["by_id"].get(product_id)


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """

    product = find_product(context, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def add_product(
    context: RuntimeContext,
    name: str,
    price: Decimal,
    *,
    category: str = "",
    stock: Decimal = Decimal("0"),
    production_cost: Decimal = Decimal("0"),
    uses_raw_materials: bool = False,
    is_active: bool = True,
) -> ProductRow:
    """Create a product.

    Products that use raw materials derive ``production_cost`` from their
    recipe, so any value passed here is replaced once a recipe is set.

    Raises:
        ValueError: If the name is blank or a figure is negative.
        BusinessRuleViolation: If the price is not a whole number of units.
    """

    if not name or not name.strip():
        raise ValueError("Product name must not be blank")
    price = Decimal(price)
    stock = Decimal(stock)
    production_cost = Decimal(production_cost)
    require_nonnegative(price, "Price")
    require_whole_amount(price, "Price")
    require_nonnegative(stock, "Stock")
    require_nonnegative(production_cost, "Production cost")

    product = ProductRow(
        product_id=generate_id("P"),
        name=name.strip(),
        category=category.strip(),
        price=price,
        production_cost=production_cost,
        uses_raw_materials=uses_raw_materials,
        stock=stock,
        is_active=is_active,
        updated_at=resolve_timestamp().isoformat(),
    )
    with atomic(context):
        data_manager.add_record(context.workbook, SheetName.PRODUCTS, product)
        invalidate_cache(context, "products")
    log.info("Added product '%s' (%s) priced %s", product.name, product.product_id, price)
    return product


def update_product(context: RuntimeContext, product_id: str, **changes: Any) -> ProductRow:
    """Edit the descriptive fields of a product.

    Stock moves through :func:`adjust_product_stock`. ``production_cost`` is
    only editable for products that do not use raw materials.

    Raises:
        MissingReferenceError: If the product is unknown.
        BusinessRuleViolation: If a derived cost is edited by hand or the
            price is not a whole number of units.
        ValueError: On unknown fields or negative figures.
    """

    unknown = set(changes) - _EDITABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot edit product fields: {', '.join(sorted(unknown))}")

    product = get_product(context, product_id)
    if "production_cost" in changes and product.uses_raw_materials:
        raise BusinessRuleViolation(
            f"Production cost of '{product.name}' is derived from its recipe"
        )
    for money_field in ("price", "production_cost"):
        if money_field in changes:
            changes[money_field] = Decimal(changes[money_field])
            require_nonnegative(changes[money_field], money_field.replace("_", " ").capitalize())
    if "price" in changes:
        require_whole_amount(changes["price"], "Price")

    updated = replace(product, **changes, updated_at=resolve_timestamp().isoformat())
    with atomic(context):
        data_manager.put_record(context.workbook, SheetName.PRODUCTS, updated)
        invalidate_cache(context, "products")
    log.info("Updated product '%s': %s", product_id, ", ".join(sorted(changes)))
    return updated


def store_production_cost(context: RuntimeContext, product_id: str, cost: Decimal) -> ProductRow:
    """Persist a recomputed recipe cost on a raw-material product."""

    product = get_product(context, product_id)
    updated = replace(product, production_cost=cost, updated_at=resolve_timestamp().isoformat())
    with atomic(context):
        data_manager.put_record(context.workbook, SheetName.PRODUCTS, updated)
        invalidate_cache(context, "products")
    log.debug("Production cost of '%s': %s -> %s", product_id, product.production_cost, cost)
    return updated


def set_uses_raw_materials(context: RuntimeContext, product_id: str, flag: bool) -> ProductRow:
    product = get_product(context, product_id)
    if product.uses_raw_materials == flag:
        return product
    updated = replace(product, uses_raw_materials=flag, updated_at=resolve_timestamp().isoformat())
    with atomic(context):
        data_manager.put_record(context.workbook, SheetName.PRODUCTS, updated)
        invalidate_cache(context, "products")
    return updated


def adjust_product_stock(context: RuntimeContext, product_id: str, delta: Decimal) -> Decimal:
    """Apply a signed change to a product's finished-goods stock.

    Raises:
        InsufficientStock: If the stock would drop below zero.
    """

    product = get_product(context, product_id)
    new_stock = product.stock + Decimal(delta)
    if new_stock < 0:
        log.warning("Product '%s' holds %s, cannot remove %s", product_id, product.stock, -delta)
        raise InsufficientStock(f"product '{product.name}'", -Decimal(delta), product.stock)

    with atomic(context):
        data_manager.put_record(
            context.workbook,
            SheetName.PRODUCTS,
            replace(product, stock=new_stock, updated_at=resolve_timestamp().isoformat()),
        )
        invalidate_cache(context, "products")
    log.info("Product '%s' stock %s -> %s", product_id, product.stock, new_stock)
    return new_stock


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product together with its recipe links.

    Raises:
        MissingReferenceError: If the product is unknown.
        InUse: If a combo slot still offers the product.
    """

    product = get_product(context, product_id)
    for combo in data_manager.iter_records(context.workbook, SheetName.COMBOS):
        if any(product_id in slot.product_ids for slot in combo.slots):
            raise InUse(f"Product '{product.name}' is offered by combo '{combo.name}'")

    links = data_manager.get_records_by_index(
        context.workbook, SheetName.RECIPE_LINKS, "product_id", product_id
    )
    with atomic(context):
        for link in links:
            data_manager.delete_record(context.workbook, SheetName.RECIPE_LINKS, link.link_id)
        data_manager.delete_record(context.workbook, SheetName.PRODUCTS, product_id)
        invalidate_cache(context, "products", "recipes")
    log.info("Deleted product '%s' and %d recipe links", product_id, len(links))
