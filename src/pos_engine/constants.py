"""Enumerations and fixed values shared across the POS engine modules.

The data layer, the cash drawer, the recipe resolvers and the CLI all refer to
these identifiers, so they live in one place instead of being repeated as
string literals.
"""

from __future__ import annotations

from enum import Enum


# Version of the workbook layout this code reads and writes.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Physical bills and coins tracked by the cash drawer, in currency units.
DEFAULT_DENOMINATIONS: tuple[int, ...] = (
    10,
    20,
    50,
    100,
    200,
    500,
    1000,
    2000,
    10000,
    20000,
)

RECENT_MOVEMENTS_LIMIT = 100


class MovementType(str, Enum):
    """Kinds of cash movements written to the audit log."""

    SALE = "sale"
    MANUAL_ADD = "manual_add"
    MANUAL_REMOVE = "manual_remove"
    CHANGE_GIVEN = "change_given"
    CASH_CLOSING = "cash_closing"


class MaterialUnit(str, Enum):
    """How a raw material is measured."""

    COUNT = "count"
    WEIGHT = "weight"


class PriceType(str, Enum):
    """How a combo's sale price is obtained."""

    FIXED = "fixed"
    CALCULATED = "calculated"


class DiscountType(str, Enum):
    """Discount applied to a calculated combo price."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PaymentMethod(str, Enum):
    """Supported tender types for a sale."""

    CASH = "cash"
    ONLINE = "online"


class SheetName(str, Enum):
    """Workbook sheets, one per record collection."""

    PRODUCTS = "Products"
    RAW_MATERIALS = "RawMaterials"
    RECIPE_LINKS = "RecipeLinks"
    COMBOS = "Combos"
    CASH_DRAWER = "CashDrawer"
    CASH_MOVEMENTS = "CashMovements"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_DENOMINATIONS",
    "RECENT_MOVEMENTS_LIMIT",
    "MovementType",
    "MaterialUnit",
    "PriceType",
    "DiscountType",
    "PaymentMethod",
    "SheetName",
]
