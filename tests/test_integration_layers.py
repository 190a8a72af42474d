"""Integration tests describing end-to-end outlet workflows.

These scenarios exercise the data access layer, the business modules and the
CLI together against a real workbook on disk.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from pos_engine import cash_drawer, catalog, cli, combos, core_logic, kds, materials, reports, sales
from pos_engine.constants import MovementType
from pos_engine.data_manager import ComboSlot
from pos_engine.materials import Ingredient
from pos_engine.sales import ComboLine, SaleCommand, SaleLine


@pytest.fixture(autouse=True)
def _kitchen_offline(monkeypatch):
    monkeypatch.setattr(kds, "notify_kitchen", Mock(return_value=False))


def test_service_day_flow(runtime_context, reopen):
    """Open the drawer, sell burgers and combos, reprice, then close."""

    context = runtime_context
    bun = materials.add_raw_material(context, "Bun", stock=Decimal("10"), cost_per_unit=Decimal("100"))
    patty = materials.add_raw_material(context, "Patty", stock=Decimal("2000"), cost_per_unit=Decimal("2"), unit="weight")
    sauce = materials.add_raw_material(context, "Sauce", stock=Decimal("500"), cost_per_unit=Decimal("1"), unit="weight")
    burger = catalog.add_product(context, "Burger", Decimal("5000"), category="Food")
    soda = catalog.add_product(context, "Soda", Decimal("1500"), category="Drinks", stock=Decimal("10"), production_cost=Decimal("400"))
    materials.set_recipe(
        context,
        burger.product_id,
        [
            Ingredient(bun.raw_material_id, Decimal("1")),
            Ingredient(
                patty.raw_material_id,
                is_variable=True,
                min_quantity=Decimal("100"),
                default_quantity=Decimal("150"),
                max_quantity=Decimal("300"),
            ),
            Ingredient(
                sauce.raw_material_id,
                linked_to=patty.raw_material_id,
                linked_multiplier=Decimal("0.1"),
            ),
        ],
    )
    # 100 + 150 * 2 + (150 * 0.1) * 1
    assert catalog.get_product(context, burger.product_id).production_cost == Decimal("415")
    assert materials.available_units(context, burger.product_id) == 10

    combo = combos.add_combo(
        context,
        "Burger + Soda",
        [
            ComboSlot("", "Main", (burger.product_id,), burger.product_id),
            ComboSlot("", "Drink", (soda.product_id,), soda.product_id),
        ],
        discount_type="fixed",
        discount_value=Decimal("500"),
    )

    cash_drawer.add_bills(context, 1000, 5, notes="opening float")
    cash_drawer.add_bills(context, 500, 4, notes="opening float")

    first = sales.complete_sale(
        context,
        SaleCommand(lines=(SaleLine(burger.product_id, quantity=2),), tendered=(10000,)),
    )
    second = sales.complete_sale(
        context,
        SaleCommand(combos=(ComboLine(combo.combo_id),), tendered=(10000,)),
    )

    assert first.change == ()
    assert second.sale.total_amount == Decimal("6000")
    assert cash_drawer.breakdown_to_bills(second.change) == {1000: 4}
    assert materials.get_raw_material(context, bun.raw_material_id).stock == Decimal("7")
    assert materials.available_units(context, burger.product_id) == 7

    materials.update_raw_material(context, bun.raw_material_id, cost_per_unit=Decimal("200"))
    assert catalog.get_product(context, burger.product_id).production_cost == Decimal("515")

    expected_total = cash_drawer.total_value(context)
    closing = cash_drawer.close_drawer(context)

    observed = reopen(context)
    assert expected_total == 7000 + 10000 + 10000 - 4000
    assert cash_drawer.bills_value(closing.bills_out) == expected_total
    assert cash_drawer.total_value(observed) == 0
    assert reports.sales_summary(observed)["revenue"] == Decimal("16000")
    flow = reports.cash_flow_summary(observed)
    assert flow[MovementType.SALE.value]["in"] == 20000
    assert flow[MovementType.CHANGE_GIVEN.value]["out"] == 4000


def test_failed_sale_leaves_workbook_unchanged(runtime_context, reopen):
    """Stock that runs out mid-sale aborts every write of that sale."""

    context = runtime_context
    bun = materials.add_raw_material(context, "Bun", stock=Decimal("1"))
    burger = catalog.add_product(context, "Burger", Decimal("5000"), category="Food")
    soda = catalog.add_product(context, "Soda", Decimal("1500"), stock=Decimal("3"))
    materials.set_recipe(context, burger.product_id, [Ingredient(bun.raw_material_id, Decimal("1"))])

    with pytest.raises(core_logic.InsufficientStock):
        sales.complete_sale(
            context,
            SaleCommand(
                lines=(SaleLine(soda.product_id), SaleLine(burger.product_id, quantity=2)),
                tendered=(10000, 2000),
            ),
        )

    observed = reopen(context)
    assert sales.list_sales(observed) == []
    assert catalog.get_product(observed, soda.product_id).stock == Decimal("3")
    assert materials.get_raw_material(observed, bun.raw_material_id).stock == Decimal("1")
    assert cash_drawer.total_value(observed) == 0


def test_cli_sale_and_report_flow(config_file, capsys):
    """Register stock, sell and report through the CLI only."""

    base = ["--config", str(config_file)]

    assert cli.main([*base, "add-product", "--name", "Soda", "--price", "1500", "--stock", "4", "--production-cost", "400"]) == 0
    product_id = capsys.readouterr().out.strip()
    assert cli.main([*base, "cash-add", "--denomination", "500", "--quantity", "2"]) == 0

    assert cli.main([*base, "sale", "--item", f"{product_id}:2", "--bill", "2000", "--bill", "1000", "--bill", "500"]) == 0
    sale_output = capsys.readouterr().out
    assert "total 3000" in sale_output
    assert "change 500 x 1" in sale_output

    assert cli.main([*base, "report", "sales"]) == 0
    assert "Revenue: 3000" in capsys.readouterr().out

    assert cli.main([*base, "movements", "--type", "change_given"]) == 0
    movements = capsys.readouterr().out.strip().splitlines()
    assert len(movements) == 1 and "change_given" in movements[0]

    context = cli.load_runtime_context(config_file)
    assert catalog.get_product(context, product_id).stock == Decimal("2")
    assert dict(cash_drawer.snapshot(context)) == {2000: 1, 1000: 1, 500: 2}


def test_cli_material_lifecycle_flow(config_file, capsys):
    base = ["--config", str(config_file)]

    assert cli.main([*base, "add-material", "--name", "Cheese", "--unit", "weight", "--stock", "1.5", "--cost-per-unit", "900"]) == 0
    material_id = capsys.readouterr().out.strip()

    assert cli.main([*base, "material-stock", "--raw-material-id", material_id, "--delta", "-0.5"]) == 0
    assert capsys.readouterr().out.strip() == "1.0"
    assert cli.main([*base, "material-stock", "--raw-material-id", material_id, "--delta", "-5"]) == 2
    assert cli.main([*base, "material-cost", "--raw-material-id", material_id, "--cost-per-unit", "950"]) == 0
    assert cli.main([*base, "delete-material", "--raw-material-id", material_id]) == 0

    context = cli.load_runtime_context(config_file)
    assert materials.get_raw_material(context, material_id) is None
