"""Runtime context, transactions and shared rules for the POS engine.

Every business module (cash drawer, materials, catalog, combos, sales) takes a
:class:`RuntimeContext` as its first argument and performs its writes inside
:func:`atomic`. The data access layer is consumed for all I/O.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION
from .data_manager import StoreUnavailable


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, material, combo, or link is unknown."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a decrement would drive a counter below zero."""

    def __init__(self, subject: str, requested: Decimal | int, available: Decimal | int) -> None:
        self.subject = subject
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {subject}: requested {requested}, available {available}"
        )


class InsufficientChange(BusinessRuleViolation):
    """Raised when the drawer cannot make exact change for an amount."""

    def __init__(self, amount_due: int, remaining: int) -> None:
        self.amount_due = amount_due
        self.remaining = remaining
        super().__init__(
            f"Cannot give exact change for {amount_due}: {remaining} unreachable with available bills"
        )


class InUse(BusinessRuleViolation):
    """Raised when a record cannot be deleted because others reference it."""


@dataclass
class RuntimeContext:
    """Configuration, the live workbook and per-context caches.

    ``workbook`` is replaced when a failed transaction rolls back, so the
    dataclass is intentionally mutable.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _depth: int = field(default=0, repr=False, compare=False)


def resolve_timestamp(candidate: Optional[datetime] = None) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(prefix: str) -> str:
    """Return a random identifier such as ``"MP-3f2a9c0d1e4b"``."""

    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return the mutable cache bucket dedicated to ``name``, creating it."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write; no names means evict everything."""

    if not names:
        context._cache.clear()
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for ``config.ini``.
            When omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Context ready for the business modules.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        StoreUnavailable: If the workbook cannot be opened.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to operate on a workbook declared with another schema version.

    Raises:
        RuntimeError: If ``config.ini`` declares a different version than
            :data:`EXPECTED_SCHEMA_VERSION`.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Write the in-memory workbook to the configured data file."""

    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def rollback_context(context: RuntimeContext) -> None:
    """Discard in-memory edits by reloading the workbook from disk.

    Raises:
        StoreUnavailable: If the data file cannot be reopened.
    """

    context.workbook = data_manager.refresh_workbook(context.settings.data_file)
    invalidate_cache(context)
    log.warning("Rolled back uncommitted changes to '%s'", context.settings.data_file)


@contextmanager
def atomic(context: RuntimeContext) -> Iterator[RuntimeContext]:
    """Group workbook writes into one all-or-nothing unit.

    The outermost block saves the workbook once when it exits cleanly and
    reloads it from disk when an exception escapes, so a ledger update and its
    movement entry are always persisted together. Nested blocks join the
    enclosing one.

    Raises:
        StoreUnavailable: If the commit cannot be written.
    """

    context._depth += 1
    try:
        yield context
    except Exception:
        context._depth -= 1
        if context._depth == 0:
            try:
                rollback_context(context)
            except StoreUnavailable:
                log.exception("Rollback failed; in-memory workbook may hold partial changes")
        raise
    context._depth -= 1
    if context._depth == 0:
        try:
            persist_context(context)
        except StoreUnavailable:
            log.error("Commit failed for '%s'; discarding in-memory changes", context.settings.data_file)
            context.workbook = data_manager.refresh_workbook(context.settings.data_file)
            invalidate_cache(context)
            raise


def require_positive_quantity(quantity: Decimal | int) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """

    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative(amount: Decimal | int, label: str = "Amount") -> None:
    """Validate that a monetary value or stock figure is not negative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """

    if amount < 0:
        log.error("%s validation failed: %s", label, amount)
        raise ValueError(f"{label} must be zero or positive")


def require_whole_amount(amount: Decimal | int, label: str = "Amount") -> None:
    """Validate that a selling price is a whole number of currency units.

    Cash is tendered and changed in whole units only.

    Raises:
        BusinessRuleViolation: If ``amount`` has a fractional part.
    """

    if Decimal(amount) != Decimal(amount).to_integral_value():
        log.error("%s validation failed: %s", label, amount)
        raise BusinessRuleViolation(f"{label} must be a whole number of currency units")
