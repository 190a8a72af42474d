"""Cash drawer: denomination ledger, change calculator and movement log.

The ledger owns the physical count of every bill or coin denomination. Its only
write path is :func:`apply_delta`; the ledger itself never logs. Operations
that move cash in or out of the drawer (:func:`add_bills`,
:func:`remove_bills`, :func:`receive_cash`, :func:`give_change`,
:func:`close_drawer`) pair every delta with a :class:`CashMovementRow` inside a
single :func:`core_logic.atomic` block so the counts and the audit trail are
committed together.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence

from . import data_manager, log
from .constants import RECENT_MOVEMENTS_LIMIT, MovementType, SheetName
from .core_logic import (
    BusinessRuleViolation,
    InsufficientChange,
    InsufficientStock,
    RuntimeContext,
    atomic,
    generate_id,
    require_nonnegative,
    require_positive_quantity,
    resolve_timestamp,
)
from .data_manager import CashMovementRow, DenominationRow


class _Countable(Protocol):
    denomination: int
    quantity: int


@dataclass(frozen=True)
class BillCount:
    """A number of bills of one denomination, as used in a change breakdown."""

    denomination: int
    quantity: int

    @property
    def value(self) -> int:
        return self.denomination * self.quantity


def bills_value(bills: Optional[Mapping[int, int]]) -> int:
    """Return the currency value of a denomination->count mapping."""

    if not bills:
        return 0
    return sum(int(denomination) * int(count) for denomination, count in bills.items())


def breakdown_to_bills(breakdown: Iterable[BillCount]) -> dict[int, int]:
    """Convert a breakdown into the mapping stored on movements and sales."""

    return {item.denomination: item.quantity for item in breakdown}


def _require_denomination(context: RuntimeContext, denomination: int) -> int:
    if denomination not in context.settings.denominations:
        log.error("Rejected unknown denomination %s", denomination)
        raise BusinessRuleViolation(f"Unknown denomination: {denomination}")
    return int(denomination)


def _whole_units(amount: Decimal | int) -> int:
    whole = int(amount)
    if whole != amount:
        raise ValueError(f"Amount must be a whole number of currency units: {amount}")
    return whole


# ---------------------------------------------------------------------------
# Denomination ledger
# ---------------------------------------------------------------------------


def get_bill(context: RuntimeContext, denomination: int) -> Optional[DenominationRow]:
    """Return the stored counter for ``denomination`` or ``None`` if never used."""

    rows = data_manager.get_records_by_index(
        context.workbook, SheetName.CASH_DRAWER, "denomination", int(denomination)
    )
    return rows[0] if rows else None


def list_bills(context: RuntimeContext) -> List[DenominationRow]:
    """Return one counter per configured denomination, largest first.

    Denominations that have no stored row yet are reported with a zero
    quantity and an empty ``bill_id``; nothing is written.
    """

    stored = {
        row.denomination: row
        for row in data_manager.iter_records(context.workbook, SheetName.CASH_DRAWER)
    }
    bills = [
        stored.get(denomination, DenominationRow(bill_id="", denomination=denomination, quantity=0))
        for denomination in context.settings.denominations
    ]
    return sorted(bills, key=lambda row: row.denomination, reverse=True)


def ensure_denominations(context: RuntimeContext) -> int:
    """Create zero-count rows for configured denominations that lack one.

    Returns:
        int: Number of rows created.
    """

    created = 0
    timestamp = resolve_timestamp().isoformat()
    with atomic(context):
        for denomination in context.settings.denominations:
            if get_bill(context, denomination) is None:
                data_manager.add_record(
                    context.workbook,
                    SheetName.CASH_DRAWER,
                    DenominationRow(
                        bill_id=generate_id("BILL"),
                        denomination=denomination,
                        quantity=0,
                        updated_at=timestamp,
                    ),
                )
                created += 1
    if created:
        log.info("Initialized %d denomination counters", created)
    return created


def apply_delta(context: RuntimeContext, denomination: int, signed_count: int) -> int:
    """Add ``signed_count`` bills of ``denomination`` to the drawer.

    The row for the denomination is created on first use. This is the only
    function that changes drawer quantities.

    Args:
        context (RuntimeContext): Active runtime context.
        denomination (int): One of the configured denominations.
        signed_count (int): Positive to add bills, negative to remove them.

    Returns:
        int: The new quantity for ``denomination``.

    Raises:
        BusinessRuleViolation: If the denomination is not configured.
        InsufficientStock: If the result would be negative. Nothing is written.
    """

    denomination = _require_denomination(context, denomination)
    if int(signed_count) != signed_count:
        raise ValueError(f"Bill counts must be whole numbers: {signed_count}")

    existing = get_bill(context, denomination)
    current = existing.quantity if existing is not None else 0
    new_quantity = current + int(signed_count)
    if new_quantity < 0:
        log.warning(
            "Drawer has %d x %d, cannot remove %d", current, denomination, -signed_count
        )
        raise InsufficientStock(f"denomination {denomination}", -int(signed_count), current)

    with atomic(context):
        data_manager.put_record(
            context.workbook,
            SheetName.CASH_DRAWER,
            DenominationRow(
                bill_id=existing.bill_id if existing is not None else generate_id("BILL"),
                denomination=denomination,
                quantity=new_quantity,
                updated_at=resolve_timestamp().isoformat(),
            ),
        )
    log.debug("Denomination %d: %d -> %d", denomination, current, new_quantity)
    return new_quantity


def total_value(context: RuntimeContext) -> int:
    """Return the value of all cash currently in the drawer."""

    return sum(row.denomination * row.quantity for row in list_bills(context))


def snapshot(context: RuntimeContext) -> Mapping[int, int]:
    """Return a read-only mapping of non-zero denominations, largest first."""

    return MappingProxyType(
        {row.denomination: row.quantity for row in list_bills(context) if row.quantity > 0}
    )


# ---------------------------------------------------------------------------
# Change calculator
# ---------------------------------------------------------------------------


def compute_change(amount_due: Decimal | int, available_bills: Iterable[_Countable]) -> List[BillCount]:
    """Break ``amount_due`` into bills from ``available_bills``.

    Greedy, largest denomination first: for each denomination take
    ``min(remaining // denomination, available)`` bills. This reaches the
    optimum for canonical currency sets such as the default universe; for
    arbitrary sets it may fail where another combination would succeed.

    The function is advisory and never touches the ledger.

    Args:
        amount_due (Decimal | int): Non-negative whole amount to return.
        available_bills (Iterable): Objects exposing ``denomination`` and
            ``quantity``, typically :func:`list_bills` rows.

    Returns:
        list[BillCount]: Breakdown ordered from the largest denomination. Empty
            when ``amount_due`` is zero.

    Raises:
        ValueError: If ``amount_due`` is negative or fractional.
        InsufficientChange: If the available bills cannot reach the amount
            exactly.
    """

    amount = _whole_units(amount_due)
    if amount < 0:
        raise ValueError("Change amount must be zero or positive")
    if amount == 0:
        return []

    pool: Counter[int] = Counter()
    for bill in available_bills:
        if bill.quantity > 0:
            pool[int(bill.denomination)] += int(bill.quantity)

    remaining = amount
    breakdown: List[BillCount] = []
    for denomination in sorted(pool, reverse=True):
        take = min(remaining // denomination, pool[denomination])
        if take > 0:
            breakdown.append(BillCount(denomination=denomination, quantity=take))
            remaining -= take * denomination
        if remaining == 0:
            break

    if remaining:
        log.info("Cannot make change for %d; %d unreachable", amount, remaining)
        raise InsufficientChange(amount, remaining)
    return breakdown


def change_for(context: RuntimeContext, amount_due: Decimal | int) -> List[BillCount]:
    """Compute change for ``amount_due`` against the drawer's current counts."""

    return compute_change(amount_due, list_bills(context))


# ---------------------------------------------------------------------------
# Cash movement log
# ---------------------------------------------------------------------------


def _clean_bills(bills: Optional[Mapping[int, int]]) -> Optional[dict[int, int]]:
    if bills is None:
        return None
    cleaned: dict[int, int] = {}
    for denomination, count in bills.items():
        if int(count) < 0:
            raise ValueError(f"Bill counts must not be negative: {denomination}={count}")
        if int(count):
            cleaned[int(denomination)] = int(count)
    return cleaned


def record_movement(
    context: RuntimeContext,
    movement_type: MovementType | str,
    *,
    bills_in: Optional[Mapping[int, int]] = None,
    bills_out: Optional[Mapping[int, int]] = None,
    sale_id: Optional[str] = None,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CashMovementRow:
    """Append a movement to the audit log.

    Exactly one of ``bills_in`` and ``bills_out`` must be given. Movements are
    never updated or deleted afterwards.

    Raises:
        ValueError: If the type is unknown or the bill maps are inconsistent.
        StoreUnavailable: If the commit cannot be written.
    """

    kind = MovementType(movement_type)
    if (bills_in is None) == (bills_out is None):
        raise ValueError("A movement records either bills_in or bills_out, not both")

    movement = CashMovementRow(
        movement_id=generate_id("MOV"),
        movement_type=kind.value,
        bills_in=_clean_bills(bills_in),
        bills_out=_clean_bills(bills_out),
        sale_id=sale_id,
        notes=notes,
        timestamp_iso=resolve_timestamp(timestamp).isoformat(),
    )
    with atomic(context):
        data_manager.add_record(context.workbook, SheetName.CASH_MOVEMENTS, movement)
    log.info(
        "Recorded %s movement '%s' (in=%s, out=%s, sale=%s)",
        kind.value,
        movement.movement_id,
        movement.bills_in,
        movement.bills_out,
        sale_id,
    )
    return movement


def movement_time(movement: CashMovementRow) -> datetime:
    """Parse a movement's timestamp as an aware UTC datetime."""

    return _as_utc(datetime.fromisoformat(movement.timestamp_iso))


def _as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


def recent_movements(context: RuntimeContext, limit: Optional[int] = RECENT_MOVEMENTS_LIMIT) -> List[CashMovementRow]:
    """Return movements ordered most recent first, at most ``limit`` of them."""

    movements = sorted(
        data_manager.iter_records(context.workbook, SheetName.CASH_MOVEMENTS),
        key=movement_time,
        reverse=True,
    )
    return movements if limit is None else movements[:limit]


def filter_movements(
    movements: Iterable[CashMovementRow],
    *,
    movement_type: Optional[MovementType | str] = None,
    denomination: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[CashMovementRow]:
    """Filter movements in memory by type, denomination and inclusive date range.

    Naive ``start``/``end`` values are interpreted as UTC.
    """

    kind = MovementType(movement_type).value if movement_type is not None else None
    lower = _as_utc(start) if start is not None else None
    upper = _as_utc(end) if end is not None else None

    selected: List[CashMovementRow] = []
    for movement in movements:
        if kind is not None and movement.movement_type != kind:
            continue
        if denomination is not None:
            touched = set(movement.bills_in or {}) | set(movement.bills_out or {})
            if int(denomination) not in touched:
                continue
        if lower is not None or upper is not None:
            moment = movement_time(movement)
            if lower is not None and moment < lower:
                continue
            if upper is not None and moment > upper:
                continue
        selected.append(movement)
    return selected


# ---------------------------------------------------------------------------
# Drawer operations pairing ledger deltas with movements
# ---------------------------------------------------------------------------


def _check_available(context: RuntimeContext, bills: Mapping[int, int]) -> None:
    for denomination, count in bills.items():
        _require_denomination(context, denomination)
        existing = get_bill(context, denomination)
        current = existing.quantity if existing is not None else 0
        if current < count:
            raise InsufficientStock(f"denomination {denomination}", count, current)


def add_bills(
    context: RuntimeContext,
    denomination: int,
    quantity: int,
    *,
    sale_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> CashMovementRow:
    """Put bills into the drawer; logged as ``sale`` when tied to a sale."""

    require_positive_quantity(quantity)
    movement_type = MovementType.SALE if sale_id else MovementType.MANUAL_ADD
    with atomic(context):
        apply_delta(context, denomination, quantity)
        return record_movement(
            context, movement_type, bills_in={denomination: quantity}, sale_id=sale_id, notes=notes
        )


def remove_bills(
    context: RuntimeContext,
    denomination: int,
    quantity: int,
    *,
    sale_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> CashMovementRow:
    """Take bills out of the drawer; logged as ``change_given`` when tied to a sale.

    Raises:
        InsufficientStock: If the drawer holds fewer bills than requested.
    """

    require_positive_quantity(quantity)
    movement_type = MovementType.CHANGE_GIVEN if sale_id else MovementType.MANUAL_REMOVE
    with atomic(context):
        apply_delta(context, denomination, -quantity)
        return record_movement(
            context, movement_type, bills_out={denomination: quantity}, sale_id=sale_id, notes=notes
        )


def set_bill_quantity(
    context: RuntimeContext,
    denomination: int,
    quantity: int,
    *,
    notes: Optional[str] = None,
) -> Optional[CashMovementRow]:
    """Correct a denomination's count after a manual recount.

    The difference is logged as ``manual_add`` or ``manual_remove``; an
    unchanged count writes nothing and returns ``None``.
    """

    require_nonnegative(quantity, "Bill quantity")
    existing = get_bill(context, _require_denomination(context, denomination))
    current = existing.quantity if existing is not None else 0
    difference = int(quantity) - current
    if difference == 0:
        return None
    if difference > 0:
        return add_bills(context, denomination, difference, notes=notes)
    return remove_bills(context, denomination, -difference, notes=notes)


def receive_cash(context: RuntimeContext, tendered: Sequence[int], sale_id: str) -> dict[int, int]:
    """Add the bills handed over by a customer and log one ``sale`` movement.

    Args:
        context (RuntimeContext): Active runtime context.
        tendered (Sequence[int]): Face value of every bill received, in the
            order they were counted.
        sale_id (str): Sale the cash belongs to.

    Returns:
        dict[int, int]: Count of received bills per denomination.
    """

    counts = Counter(int(value) for value in tendered)
    for denomination in counts:
        _require_denomination(context, denomination)
    received = dict(sorted(counts.items(), reverse=True))
    if not received:
        return received

    with atomic(context):
        for denomination, count in received.items():
            apply_delta(context, denomination, count)
        record_movement(context, MovementType.SALE, bills_in=received, sale_id=sale_id)
    return received


def give_change(context: RuntimeContext, breakdown: Sequence[BillCount], sale_id: str) -> Optional[CashMovementRow]:
    """Remove a change breakdown from the drawer and log ``change_given``.

    All denominations are checked before anything is written.

    Raises:
        InsufficientStock: If any denomination no longer holds enough bills.
    """

    bills = breakdown_to_bills(breakdown)
    if not bills:
        return None
    _check_available(context, bills)
    with atomic(context):
        for denomination, count in bills.items():
            apply_delta(context, denomination, -count)
        return record_movement(context, MovementType.CHANGE_GIVEN, bills_out=bills, sale_id=sale_id)


def close_drawer(context: RuntimeContext, *, notes: Optional[str] = None) -> CashMovementRow:
    """Empty the drawer and record the pre-closing snapshot as ``cash_closing``.

    After a successful close :func:`total_value` is zero and the returned
    movement's ``bills_out`` is worth exactly what the drawer held.
    """

    before = dict(snapshot(context))
    total = bills_value(before)
    with atomic(context):
        for denomination, count in before.items():
            apply_delta(context, denomination, -count)
        movement = record_movement(
            context,
            MovementType.CASH_CLOSING,
            bills_out=before,
            notes=notes or f"Cash closing - total: {total}",
        )
    log.info("Closed cash drawer holding %d", total)
    return movement
