"""Command-line entry points for the POS engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business modules and printing their
results. Every write command commits through the business layer's own
transaction, so nothing is persisted here.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import cash_drawer, catalog, core_logic, log, materials, reports, sales
from .constants import RECENT_MOVEMENTS_LIMIT, MaterialUnit, MovementType, PaymentMethod
from .sales import ComboLine, SaleCommand, SaleLine


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the POS outlet workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upward).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _simple_spec(
    name: str,
    help_text: str,
    arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and drawer counts."""
    specs = {
        "add-product": register_add_product_command(),
        "add-material": register_add_material_command(),
        "material-cost": register_material_cost_command(),
        "material-stock": register_material_stock_command(),
        "delete-material": register_delete_material_command(),
        "cash-add": register_cash_command("cash-add", "Put bills into the drawer.", run_cash_add),
        "cash-remove": register_cash_command("cash-remove", "Take bills out of the drawer.", run_cash_remove),
        "cash-count": register_cash_command(
            "cash-count", "Correct a denomination after a manual recount.", run_cash_count
        ),
        "close-drawer": register_close_drawer_command(),
        "sale": register_sale_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "drawer": _simple_spec("drawer", "Show drawer counts and total.", lambda parser: None, run_drawer),
        "change": register_change_command(),
        "availability": register_product_query_command(
            "availability", "Units sellable from current raw materials.", run_availability
        ),
        "cost": register_product_query_command("cost", "Recipe production cost of a product.", run_cost),
        "movements": register_movements_command(),
        "report": register_report_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--price", required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--stock", default="0")
        parser.add_argument("--production-cost", default="0")
        parser.add_argument("--uses-raw-materials", action="store_true")
        parser.add_argument("--inactive", action="store_true", help="Mark the product as inactive on creation.")

    return _simple_spec("add-product", "Register a new product.", arguments, run_add_product)


def register_add_material_command() -> CommandSpec:
    """Register the parser and executor for ``add-material``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--unit", choices=[member.value for member in MaterialUnit], default=MaterialUnit.COUNT.value)
        parser.add_argument("--stock", default="0")
        parser.add_argument("--cost-per-unit", default="0")

    return _simple_spec("add-material", "Register a new raw material.", arguments, run_add_material)


def register_material_cost_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--raw-material-id", required=True)
        parser.add_argument("--cost-per-unit", required=True)

    return _simple_spec(
        "material-cost",
        "Change a raw material's unit cost and recompute dependent products.",
        arguments,
        run_material_cost,
    )


def register_material_stock_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--raw-material-id", required=True)
        parser.add_argument("--delta", required=True, help="Signed stock change.")

    return _simple_spec("material-stock", "Adjust a raw material's stock.", arguments, run_material_stock)


def register_delete_material_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--raw-material-id", required=True)

    return _simple_spec("delete-material", "Delete an unused raw material.", arguments, run_delete_material)


def register_cash_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--denomination", type=int, required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--notes", dest="notes", default=None)

    return _simple_spec(name, help_text, arguments, execute)


def register_close_drawer_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--notes", dest="notes", default=None)

    return _simple_spec("close-drawer", "Empty the drawer and record the closing.", arguments, run_close_drawer)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--item",
            action="append",
            default=[],
            metavar="PRODUCT_ID[:QTY]",
            help="Product to sell; repeat for several products.",
        )
        parser.add_argument(
            "--combo",
            action="append",
            default=[],
            metavar="COMBO_ID[:QTY]",
            help="Combo to sell with its default selections.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument(
            "--bill",
            action="append",
            type=int,
            default=[],
            help="Face value of a bill handed over; repeat per bill.",
        )
        parser.add_argument("--customer-name", default=None)
        parser.add_argument("--notes", dest="notes", default=None)

    return _simple_spec("sale", "Complete a sale.", arguments, run_sale)


def register_change_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--amount", type=int, required=True)

    return _simple_spec("change", "Compute change from the current drawer.", arguments, run_change)


def register_product_query_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)

    return _simple_spec(name, help_text, arguments, execute)


def register_movements_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--limit", type=int, default=RECENT_MOVEMENTS_LIMIT)
        parser.add_argument("--type", dest="movement_type", choices=[member.value for member in MovementType])
        parser.add_argument("--denomination", type=int, default=None)

    return _simple_spec("movements", "List recent cash movements.", arguments, run_movements)


def register_report_command() -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("kind", choices=["sales", "inventory", "cash"])

    return _simple_spec("report", "Print a sales, inventory or cash report.", arguments, run_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _split_quantity(raw: str) -> tuple[str, int]:
    identifier, _, quantity = raw.partition(":")
    if not identifier:
        raise ValueError(f"Missing identifier in '{raw}'")
    return identifier, int(quantity) if quantity else 1


def translate_sale(args: argparse.Namespace) -> SaleCommand:
    """Translate CLI args into a sale command object."""
    lines: List[SaleLine] = []
    for raw in args.item:
        product_id, quantity = _split_quantity(raw)
        lines.append(SaleLine(product_id=product_id, quantity=quantity))
    combo_lines: List[ComboLine] = []
    for raw in args.combo:
        combo_id, quantity = _split_quantity(raw)
        combo_lines.append(ComboLine(combo_id=combo_id, quantity=quantity))
    return SaleCommand(
        lines=tuple(lines),
        combos=tuple(combo_lines),
        payment_method=PaymentMethod(args.payment_method),
        tendered=tuple(args.bill),
        customer_name=args.customer_name,
        notes=args.notes,
    )


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = catalog.add_product(
        context,
        args.name,
        Decimal(args.price),
        category=args.category,
        stock=Decimal(args.stock),
        production_cost=Decimal(args.production_cost),
        uses_raw_materials=args.uses_raw_materials,
        is_active=not args.inactive,
    )
    print(product.product_id)
    return 0


def run_add_material(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    material = materials.add_raw_material(
        context,
        args.name,
        unit=args.unit,
        stock=Decimal(args.stock),
        cost_per_unit=Decimal(args.cost_per_unit),
    )
    print(material.raw_material_id)
    return 0


def run_material_cost(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    materials.update_raw_material(context, args.raw_material_id, cost_per_unit=Decimal(args.cost_per_unit))
    return 0


def run_material_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(materials.adjust_stock(context, args.raw_material_id, Decimal(args.delta)))
    return 0


def run_delete_material(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    materials.delete_raw_material(context, args.raw_material_id)
    return 0


def run_cash_add(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    cash_drawer.add_bills(context, args.denomination, args.quantity, notes=args.notes)
    return 0


def run_cash_remove(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    cash_drawer.remove_bills(context, args.denomination, args.quantity, notes=args.notes)
    return 0


def run_cash_count(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    cash_drawer.set_bill_quantity(context, args.denomination, args.quantity, notes=args.notes)
    return 0


def run_close_drawer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    movement = cash_drawer.close_drawer(context, notes=args.notes)
    print(f"Closed drawer: {cash_drawer.bills_value(movement.bills_out)}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    receipt = sales.complete_sale(context, translate_sale(args))
    print(f"Sale #{receipt.sale.sale_number} total {receipt.sale.total_amount}")
    for bill in receipt.change:
        print(f"  change {bill.denomination} x {bill.quantity}")
    return 0


def run_drawer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for bill in cash_drawer.list_bills(context):
        print(f"{bill.denomination:>8} x {bill.quantity}")
    print(f"Total: {cash_drawer.total_value(context)}")
    return 0


def run_change(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for bill in cash_drawer.change_for(context, args.amount):
        print(f"{bill.denomination} x {bill.quantity}")
    return 0


def run_availability(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    catalog.get_product(context, args.product_id)
    print(materials.available_units(context, args.product_id))
    return 0


def run_cost(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    catalog.get_product(context, args.product_id)
    print(materials.production_cost(context, args.product_id))
    return 0


def run_movements(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    movements = cash_drawer.recent_movements(context, limit=None)
    movements = cash_drawer.filter_movements(
        movements, movement_type=args.movement_type, denomination=args.denomination
    )
    for movement in movements[: args.limit]:
        bills = movement.bills_in if movement.bills_in is not None else movement.bills_out
        print(f"{movement.timestamp_iso} {movement.movement_type:<14} {bills} {movement.notes or ''}".rstrip())
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if args.kind == "sales":
        summary = reports.sales_summary(context)
        print(f"Sales: {summary['sale_count']}  Revenue: {summary['revenue']}  Profit: {summary['profit']}")
        for entry in summary["products"]:
            print(f"  {entry.product_name}: {entry.quantity} sold, revenue {entry.revenue}")
    elif args.kind == "inventory":
        for key, value in reports.inventory_value(context).items():
            print(f"{key}: {value}")
    else:
        for movement_type, figures in reports.cash_flow_summary(context).items():
            print(f"{movement_type:<14} in {figures['in']:>10} out {figures['out']:>10} ({figures['count']})")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, (FileNotFoundError, core_logic.StoreUnavailable)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
