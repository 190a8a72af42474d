"""Data access layer for the POS engine.

This module provides low-level helpers that read from and write to the
outlet workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Record collections: one worksheet per collection, exposed as a small keyed
   store (``get_record``, ``iter_records``, ``get_records_by_index``,
   ``add_record``, ``put_record``, ``delete_record``).

Workbooks created by older releases may lack some sheets. Reads against a
missing sheet behave as an empty collection; writes create the sheet with its
header row on demand.
"""


from __future__ import annotations

import configparser
import json
import os
import zipfile
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import DEFAULT_DENOMINATIONS, SheetName


CONFIG_FILE_NAME = "config.ini"


class StoreUnavailable(RuntimeError):
    """Raised when the backing workbook cannot be opened or written."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    outlet_name: str
    schema_version: str
    denominations: tuple[int, ...] = DEFAULT_DENOMINATIONS
    kds_enabled: bool = False
    kds_url: Optional[str] = None
    kds_timeout: float = 5.0


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: str
    price: Decimal
    production_cost: Decimal
    uses_raw_materials: bool
    stock: Decimal
    is_active: bool
    updated_at: str = ""


@dataclass(frozen=True)
class RawMaterialRow:
    """In-memory view of a row from the ``RawMaterials`` sheet."""

    raw_material_id: str
    name: str
    unit: str
    stock: Decimal
    cost_per_unit: Decimal
    updated_at: str = ""


@dataclass(frozen=True)
class RecipeLinkRow:
    """One ingredient edge between a product and a raw material."""

    link_id: str
    product_id: str
    raw_material_id: str
    quantity: Decimal
    removable: bool = False
    is_variable: bool = False
    min_quantity: Optional[Decimal] = None
    max_quantity: Optional[Decimal] = None
    default_quantity: Optional[Decimal] = None
    price_per_extra_unit: Optional[Decimal] = None
    linked_to: Optional[str] = None
    linked_multiplier: Optional[Decimal] = None

    @property
    def is_linked(self) -> bool:
        return self.linked_to is not None


@dataclass(frozen=True)
class ComboSlot:
    """A position inside a combo that is filled by one of several products."""

    slot_id: str
    name: str
    product_ids: tuple[str, ...]
    default_product_id: str
    quantity: int = 1
    is_dynamic: bool = False


@dataclass(frozen=True)
class ComboRow:
    """In-memory view of a row from the ``Combos`` sheet."""

    combo_id: str
    name: str
    price_type: str
    fixed_price: Optional[Decimal]
    discount_type: Optional[str]
    discount_value: Optional[Decimal]
    slots: tuple[ComboSlot, ...]
    is_active: bool = True
    updated_at: str = ""


@dataclass(frozen=True)
class DenominationRow:
    """Counter for a single bill or coin denomination in the drawer."""

    bill_id: str
    denomination: int
    quantity: int
    updated_at: str = ""


@dataclass(frozen=True)
class CashMovementRow:
    """Append-only audit entry for a cash drawer mutation."""

    movement_id: str
    movement_type: str
    bills_in: Optional[Dict[int, int]]
    bills_out: Optional[Dict[int, int]]
    sale_id: Optional[str]
    notes: Optional[str]
    timestamp_iso: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    sale_number: int
    total_amount: Decimal
    payment_method: str
    cash_received: Optional[Decimal]
    change_given: Optional[Decimal]
    bills_received: Optional[Dict[int, int]]
    bills_change: Optional[Dict[int, int]]
    customer_name: Optional[str]
    notes: Optional[str]
    completed_at: str


@dataclass(frozen=True)
class SaleItemRow:
    """One sold product line; combo lines share a ``combo_instance_id``."""

    sale_item_id: str
    sale_id: str
    product_id: str
    product_name: str
    product_price: Decimal
    production_cost: Decimal
    quantity: Decimal
    subtotal: Decimal
    removed_ingredients: tuple[str, ...] = ()
    combo_name: Optional[str] = None
    combo_instance_id: Optional[str] = None
    combo_unit_price: Optional[Decimal] = None
    created_at: str = ""


@dataclass(frozen=True)
class CollectionSchema:
    """Describe how one record collection maps onto a worksheet.

    The first column is always the primary key. ``indexes`` lists the record
    attributes that :func:`get_records_by_index` accepts.
    """

    sheet: SheetName
    columns: tuple[str, ...]
    serialize: Callable[[Any], List[object]]
    deserialize: Callable[[Sequence[object]], Any]
    indexes: frozenset[str] = field(default_factory=frozenset)

    @property
    def key_column(self) -> str:
        return self.columns[0]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_denominations(raw: Optional[str]) -> tuple[int, ...]:
    """Parse a comma separated denomination list into a sorted tuple.

    ``None`` or a blank value yields :data:`DEFAULT_DENOMINATIONS`.

    Raises:
        ValueError: If an entry is not a positive integer or is repeated.
    """

    if raw is None or not raw.strip():
        return DEFAULT_DENOMINATIONS

    values: List[int] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            value = int(chunk)
        except ValueError as exc:
            raise ValueError(f"Invalid denomination: {chunk!r}") from exc
        if value <= 0:
            raise ValueError(f"Denominations must be positive: {value}")
        if value in values:
            raise ValueError(f"Duplicate denomination: {value}")
        values.append(value)
    return tuple(sorted(values))


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` is mandatory. ``[Cash]`` and ``[KDS]`` are optional and fall
    back to the default denomination universe and a disabled kitchen display.
    Relative ``DataFile`` entries are anchored at ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If the denomination list or KDS options are malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        outlet_name = parser.get("System", "OutletName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    denominations = parse_denominations(parser.get("Cash", "Denominations", fallback=None))
    kds_enabled = parser.getboolean("KDS", "Enabled", fallback=False)
    kds_url = parser.get("KDS", "Url", fallback="").strip() or None
    kds_timeout = parser.getfloat("KDS", "Timeout", fallback=5.0)

    return ConfigSettings(
        data_file=data_file_path,
        outlet_name=outlet_name,
        schema_version=schema_version,
        denominations=denominations,
        kds_enabled=kds_enabled,
        kds_url=kds_url.rstrip("/") if kds_url else None,
        kds_timeout=kds_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the outlet workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook backed by the provided file.

    Raises:
        StoreUnavailable: If the file does not exist or cannot be parsed as a
            workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise StoreUnavailable(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (InvalidFileException, zipfile.BadZipFile, OSError) as exc:
        raise StoreUnavailable(f"Unable to open workbook {data_file}: {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` in a single rename.

    The workbook is first written next to the target and then moved over it
    with :func:`os.replace`, so readers never observe a half-written file and a
    crash leaves the previous version intact.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.

    Raises:
        StoreUnavailable: If the file cannot be written.
    """

    dest = Path(destination).expanduser().resolve()
    temp = dest.with_name(f".{dest.name}.tmp")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(temp)
        os.replace(temp, dest)
    except OSError as exc:
        temp.unlink(missing_ok=True)
        raise StoreUnavailable(f"Unable to write workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Cell conversion helpers
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric cell value: {raw!r}") from exc


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return _to_decimal(raw)


def _to_optional_str(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes", "y"}
    return bool(raw)


def _to_int(raw: object, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def dump_bills(bills: Optional[Mapping[int, int]]) -> Optional[str]:
    """Encode a denomination->count mapping as JSON text for a single cell."""

    if bills is None:
        return None
    ordered = sorted(bills.items(), key=lambda item: item[0], reverse=True)
    return json.dumps({str(denomination): int(count) for denomination, count in ordered})


def load_bills(raw: object) -> Optional[Dict[int, int]]:
    """Decode the JSON produced by :func:`dump_bills`."""

    if raw is None or raw == "":
        return None
    payload = json.loads(str(raw))
    return {int(denomination): int(count) for denomination, count in payload.items()}


def _dump_strings(values: Sequence[str]) -> Optional[str]:
    return json.dumps(list(values)) if values else None


def _load_strings(raw: object) -> tuple[str, ...]:
    if raw is None or raw == "":
        return ()
    return tuple(str(value) for value in json.loads(str(raw)))


# ---------------------------------------------------------------------------
# Row serializers
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> List[object]:
    return [
        record.product_id,
        record.name,
        record.category,
        record.price,
        record.production_cost,
        record.uses_raw_materials,
        record.stock,
        record.is_active,
        record.updated_at,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    return ProductRow(
        product_id=str(raw_row[0]),
        name=str(raw_row[1] or ""),
        category=str(raw_row[2] or ""),
        price=_to_decimal(raw_row[3]),
        production_cost=_to_decimal(raw_row[4]),
        uses_raw_materials=_to_bool(raw_row[5]),
        stock=_to_decimal(raw_row[6]),
        is_active=_to_bool(raw_row[7]),
        updated_at=str(raw_row[8] or ""),
    )


def serialize_raw_material(record: RawMaterialRow) -> List[object]:
    return [
        record.raw_material_id,
        record.name,
        record.unit,
        record.stock,
        record.cost_per_unit,
        record.updated_at,
    ]


def deserialize_raw_material(raw_row: Sequence[object]) -> RawMaterialRow:
    return RawMaterialRow(
        raw_material_id=str(raw_row[0]),
        name=str(raw_row[1] or ""),
        unit=str(raw_row[2] or ""),
        stock=_to_decimal(raw_row[3]),
        cost_per_unit=_to_decimal(raw_row[4]),
        updated_at=str(raw_row[5] or ""),
    )


def serialize_recipe_link(record: RecipeLinkRow) -> List[object]:
    return [
        record.link_id,
        record.product_id,
        record.raw_material_id,
        record.quantity,
        record.removable,
        record.is_variable,
        record.min_quantity,
        record.max_quantity,
        record.default_quantity,
        record.price_per_extra_unit,
        record.linked_to,
        record.linked_multiplier,
    ]


def deserialize_recipe_link(raw_row: Sequence[object]) -> RecipeLinkRow:
    return RecipeLinkRow(
        link_id=str(raw_row[0]),
        product_id=str(raw_row[1]),
        raw_material_id=str(raw_row[2]),
        quantity=_to_decimal(raw_row[3]),
        removable=_to_bool(raw_row[4]),
        is_variable=_to_bool(raw_row[5]),
        min_quantity=_to_optional_decimal(raw_row[6]),
        max_quantity=_to_optional_decimal(raw_row[7]),
        default_quantity=_to_optional_decimal(raw_row[8]),
        price_per_extra_unit=_to_optional_decimal(raw_row[9]),
        linked_to=_to_optional_str(raw_row[10]),
        linked_multiplier=_to_optional_decimal(raw_row[11]),
    )


def _slot_to_dict(slot: ComboSlot) -> Dict[str, Any]:
    return {
        "slot_id": slot.slot_id,
        "name": slot.name,
        "product_ids": list(slot.product_ids),
        "default_product_id": slot.default_product_id,
        "quantity": slot.quantity,
        "is_dynamic": slot.is_dynamic,
    }


def _slot_from_dict(payload: Mapping[str, Any]) -> ComboSlot:
    return ComboSlot(
        slot_id=str(payload["slot_id"]),
        name=str(payload.get("name", "")),
        product_ids=tuple(str(value) for value in payload.get("product_ids", [])),
        default_product_id=str(payload["default_product_id"]),
        quantity=int(payload.get("quantity", 1)),
        is_dynamic=bool(payload.get("is_dynamic", False)),
    )


def serialize_combo(record: ComboRow) -> List[object]:
    return [
        record.combo_id,
        record.name,
        record.price_type,
        record.fixed_price,
        record.discount_type,
        record.discount_value,
        json.dumps([_slot_to_dict(slot) for slot in record.slots]),
        record.is_active,
        record.updated_at,
    ]


def deserialize_combo(raw_row: Sequence[object]) -> ComboRow:
    slots_raw = raw_row[6]
    slots = tuple(_slot_from_dict(item) for item in json.loads(str(slots_raw))) if slots_raw else ()
    return ComboRow(
        combo_id=str(raw_row[0]),
        name=str(raw_row[1] or ""),
        price_type=str(raw_row[2] or ""),
        fixed_price=_to_optional_decimal(raw_row[3]),
        discount_type=_to_optional_str(raw_row[4]),
        discount_value=_to_optional_decimal(raw_row[5]),
        slots=slots,
        is_active=_to_bool(raw_row[7]),
        updated_at=str(raw_row[8] or ""),
    )


def serialize_denomination(record: DenominationRow) -> List[object]:
    return [record.bill_id, record.denomination, record.quantity, record.updated_at]


def deserialize_denomination(raw_row: Sequence[object]) -> DenominationRow:
    return DenominationRow(
        bill_id=str(raw_row[0]),
        denomination=_to_int(raw_row[1]),
        quantity=_to_int(raw_row[2]),
        updated_at=str(raw_row[3] or ""),
    )


def serialize_movement(record: CashMovementRow) -> List[object]:
    return [
        record.movement_id,
        record.movement_type,
        dump_bills(record.bills_in),
        dump_bills(record.bills_out),
        record.sale_id,
        record.notes,
        record.timestamp_iso,
    ]


def deserialize_movement(raw_row: Sequence[object]) -> CashMovementRow:
    return CashMovementRow(
        movement_id=str(raw_row[0]),
        movement_type=str(raw_row[1] or ""),
        bills_in=load_bills(raw_row[2]),
        bills_out=load_bills(raw_row[3]),
        sale_id=_to_optional_str(raw_row[4]),
        notes=_to_optional_str(raw_row[5]),
        timestamp_iso=str(raw_row[6] or ""),
    )


def serialize_sale(record: SaleRow) -> List[object]:
    return [
        record.sale_id,
        record.sale_number,
        record.total_amount,
        record.payment_method,
        record.cash_received,
        record.change_given,
        dump_bills(record.bills_received),
        dump_bills(record.bills_change),
        record.customer_name,
        record.notes,
        record.completed_at,
    ]


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    return SaleRow(
        sale_id=str(raw_row[0]),
        sale_number=_to_int(raw_row[1]),
        total_amount=_to_decimal(raw_row[2]),
        payment_method=str(raw_row[3] or ""),
        cash_received=_to_optional_decimal(raw_row[4]),
        change_given=_to_optional_decimal(raw_row[5]),
        bills_received=load_bills(raw_row[6]),
        bills_change=load_bills(raw_row[7]),
        customer_name=_to_optional_str(raw_row[8]),
        notes=_to_optional_str(raw_row[9]),
        completed_at=str(raw_row[10] or ""),
    )


def serialize_sale_item(record: SaleItemRow) -> List[object]:
    return [
        record.sale_item_id,
        record.sale_id,
        record.product_id,
        record.product_name,
        record.product_price,
        record.production_cost,
        record.quantity,
        record.subtotal,
        _dump_strings(record.removed_ingredients),
        record.combo_name,
        record.combo_instance_id,
        record.combo_unit_price,
        record.created_at,
    ]


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    return SaleItemRow(
        sale_item_id=str(raw_row[0]),
        sale_id=str(raw_row[1]),
        product_id=str(raw_row[2]),
        product_name=str(raw_row[3] or ""),
        product_price=_to_decimal(raw_row[4]),
        production_cost=_to_decimal(raw_row[5]),
        quantity=_to_decimal(raw_row[6]),
        subtotal=_to_decimal(raw_row[7]),
        removed_ingredients=_load_strings(raw_row[8]),
        combo_name=_to_optional_str(raw_row[9]),
        combo_instance_id=_to_optional_str(raw_row[10]),
        combo_unit_price=_to_optional_decimal(raw_row[11]),
        created_at=str(raw_row[12] or ""),
    )


COLLECTIONS: Mapping[SheetName, CollectionSchema] = {
    SheetName.PRODUCTS: CollectionSchema(
        sheet=SheetName.PRODUCTS,
        columns=(
            "ProductID", "Name", "Category", "Price", "ProductionCost",
            "UsesRawMaterials", "Stock", "IsActive", "UpdatedAt",
        ),
        serialize=serialize_product,
        deserialize=deserialize_product,
        indexes=frozenset({"category"}),
    ),
    SheetName.RAW_MATERIALS: CollectionSchema(
        sheet=SheetName.RAW_MATERIALS,
        columns=("RawMaterialID", "Name", "Unit", "Stock", "CostPerUnit", "UpdatedAt"),
        serialize=serialize_raw_material,
        deserialize=deserialize_raw_material,
    ),
    SheetName.RECIPE_LINKS: CollectionSchema(
        sheet=SheetName.RECIPE_LINKS,
        columns=(
            "LinkID", "ProductID", "RawMaterialID", "Quantity", "Removable",
            "IsVariable", "MinQuantity", "MaxQuantity", "DefaultQuantity",
            "PricePerExtraUnit", "LinkedTo", "LinkedMultiplier",
        ),
        serialize=serialize_recipe_link,
        deserialize=deserialize_recipe_link,
        indexes=frozenset({"product_id", "raw_material_id"}),
    ),
    SheetName.COMBOS: CollectionSchema(
        sheet=SheetName.COMBOS,
        columns=(
            "ComboID", "Name", "PriceType", "FixedPrice", "DiscountType",
            "DiscountValue", "Slots", "IsActive", "UpdatedAt",
        ),
        serialize=serialize_combo,
        deserialize=deserialize_combo,
    ),
    SheetName.CASH_DRAWER: CollectionSchema(
        sheet=SheetName.CASH_DRAWER,
        columns=("BillID", "Denomination", "Quantity", "UpdatedAt"),
        serialize=serialize_denomination,
        deserialize=deserialize_denomination,
        indexes=frozenset({"denomination"}),
    ),
    SheetName.CASH_MOVEMENTS: CollectionSchema(
        sheet=SheetName.CASH_MOVEMENTS,
        columns=("MovementID", "MovementType", "BillsIn", "BillsOut", "SaleID", "Notes", "Timestamp"),
        serialize=serialize_movement,
        deserialize=deserialize_movement,
        indexes=frozenset({"sale_id", "movement_type"}),
    ),
    SheetName.SALES: CollectionSchema(
        sheet=SheetName.SALES,
        columns=(
            "SaleID", "SaleNumber", "TotalAmount", "PaymentMethod", "CashReceived",
            "ChangeGiven", "BillsReceived", "BillsChange", "CustomerName", "Notes",
            "CompletedAt",
        ),
        serialize=serialize_sale,
        deserialize=deserialize_sale,
    ),
    SheetName.SALE_ITEMS: CollectionSchema(
        sheet=SheetName.SALE_ITEMS,
        columns=(
            "SaleItemID", "SaleID", "ProductID", "ProductName", "ProductPrice",
            "ProductionCost", "Quantity", "Subtotal", "RemovedIngredients",
            "ComboName", "ComboInstanceID", "ComboUnitPrice", "CreatedAt",
        ),
        serialize=serialize_sale_item,
        deserialize=deserialize_sale_item,
        indexes=frozenset({"sale_id", "product_id"}),
    ),
}


# ---------------------------------------------------------------------------
# Keyed record store
# ---------------------------------------------------------------------------


def get_schema(collection: SheetName) -> CollectionSchema:
    """Return the schema registered for ``collection``.

    Raises:
        KeyError: If the collection is unknown.
    """

    try:
        return COLLECTIONS[SheetName(collection)]
    except (KeyError, ValueError) as exc:
        raise KeyError(f"Unknown collection: {collection}") from exc


def has_collection(workbook: Workbook, collection: SheetName) -> bool:
    """Report whether the workbook already contains the collection's sheet."""

    return get_schema(collection).sheet.value in workbook.sheetnames


def ensure_collection(workbook: Workbook, collection: SheetName) -> Worksheet:
    """Return the collection's worksheet, creating it with headers if missing."""

    schema = get_schema(collection)
    sheet_name = schema.sheet.value
    if sheet_name in workbook.sheetnames:
        return workbook[sheet_name]

    log.info("Creating missing sheet '%s' in workbook", sheet_name)
    sheet = workbook.create_sheet(title=sheet_name)
    for column_index, column_name in enumerate(schema.columns, start=1):
        sheet.cell(row=1, column=column_index, value=column_name)
    return sheet


def iter_records(workbook: Workbook, collection: SheetName) -> Iterator[Any]:
    """Iterate over every record of ``collection`` in sheet order.

    Header and fully empty rows are skipped. A collection whose sheet does not
    exist yields nothing.
    """

    schema = get_schema(collection)
    sheet_name = schema.sheet.value
    if sheet_name not in workbook.sheetnames:
        log.debug("Sheet '%s' not present; treating as empty", sheet_name)
        return

    width = len(schema.columns)
    for raw in workbook[sheet_name].iter_rows(min_row=2, max_col=width, values_only=True):
        if any(cell is not None for cell in raw):
            padded = tuple(raw) + (None,) * (width - len(raw))
            yield schema.deserialize(padded)


def get_record(workbook: Workbook, collection: SheetName, record_id: str) -> Optional[Any]:
    """Return the record whose primary key equals ``record_id`` or ``None``."""

    schema = get_schema(collection)
    row_index = locate_row(workbook, schema.sheet.value, schema.key_column, record_id)
    if row_index is None:
        return None
    sheet = workbook[schema.sheet.value]
    raw = [sheet.cell(row=row_index, column=idx).value for idx in range(1, len(schema.columns) + 1)]
    return schema.deserialize(raw)


def get_records_by_index(workbook: Workbook, collection: SheetName, index: str, value: object) -> List[Any]:
    """Return all records whose ``index`` attribute equals ``value``.

    Raises:
        KeyError: If ``index`` is not declared for the collection.
    """

    schema = get_schema(collection)
    if index not in schema.indexes:
        raise KeyError(f"Unknown index '{index}' for collection {schema.sheet.value}")
    return [record for record in iter_records(workbook, collection) if getattr(record, index) == value]


def add_record(workbook: Workbook, collection: SheetName, record: Any) -> None:
    """Append a new record.

    Raises:
        ValueError: If a record with the same primary key already exists.
    """

    schema = get_schema(collection)
    values = schema.serialize(record)
    sheet = ensure_collection(workbook, collection)
    if locate_row(workbook, schema.sheet.value, schema.key_column, values[0]) is not None:
        raise ValueError(f"Duplicate key '{values[0]}' in {schema.sheet.value}")
    sheet.append(values)


def put_record(workbook: Workbook, collection: SheetName, record: Any) -> None:
    """Insert ``record`` or overwrite the row that shares its primary key."""

    schema = get_schema(collection)
    values = schema.serialize(record)
    sheet = ensure_collection(workbook, collection)
    row_index = locate_row(workbook, schema.sheet.value, schema.key_column, values[0])
    if row_index is None:
        sheet.append(values)
        return
    for column_index, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column_index, value=value)


def delete_record(workbook: Workbook, collection: SheetName, record_id: str) -> bool:
    """Remove the record with ``record_id``; return whether a row was deleted."""

    schema = get_schema(collection)
    row_index = locate_row(workbook, schema.sheet.value, schema.key_column, record_id)
    if row_index is None:
        return False
    workbook[schema.sheet.value].delete_rows(row_index)
    return True


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: object) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the key column.
        key_value (object): Value to match; compared as text.

    Returns:
        int | None: 1-based row index of the first match, or ``None`` when the
            sheet is missing or has no match.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    if sheet_name not in workbook.sheetnames:
        return None

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    target = str(key_value)
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if key_col_index >= len(row):
            continue
        cell_value = row[key_col_index]
        if cell_value is not None and str(cell_value) == target:
            return row_idx

    return None
