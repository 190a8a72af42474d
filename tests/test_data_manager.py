"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from pos_engine import constants, data_manager
from pos_engine.constants import SheetName


def _product(product_id: str = "P1", **overrides) -> data_manager.ProductRow:
    values = dict(
        product_id=product_id,
        name="Burger",
        category="Food",
        price=Decimal("5000"),
        production_cost=Decimal("1800"),
        uses_raw_materials=True,
        stock=Decimal("0"),
        is_active=True,
        updated_at="2024-01-01T00:00:00+00:00",
    )
    values.update(overrides)
    return data_manager.ProductRow(**values)


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=outlet.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "OutletName") == "Test Outlet"
    assert parser.has_section("Cash")


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.outlet_name == "Test Outlet"
    assert settings.denominations == constants.DEFAULT_DENOMINATIONS
    assert settings.kds_enabled is False
    assert settings.kds_url is None


def test_parse_settings_defaults_optional_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = outlet.xlsx\nOutletName = Kiosk\nSchemaVersion = 1.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.denominations == constants.DEFAULT_DENOMINATIONS
    assert settings.kds_enabled is False
    assert settings.kds_timeout == 5.0


def test_parse_settings_reads_kitchen_display_options(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = outlet.xlsx\nOutletName = Kiosk\nSchemaVersion = 1.0.0\n"
        "[KDS]\nEnabled = yes\nUrl = http://kitchen.local:8080/\nTimeout = 1.5\n"
    )

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.kds_enabled is True
    assert settings.kds_url == "http://kitchen.local:8080"
    assert settings.kds_timeout == 1.5


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_denominations_sorts_values():
    assert data_manager.parse_denominations("500, 100,1000") == (100, 500, 1000)


def test_parse_denominations_blank_uses_defaults():
    assert data_manager.parse_denominations("  ") == constants.DEFAULT_DENOMINATIONS


@pytest.mark.parametrize("raw", ["100,abc", "100,-5", "100,0", "100,100"])
def test_parse_denominations_rejects_bad_entries(raw):
    with pytest.raises(ValueError):
        data_manager.parse_denominations(raw)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    assert isinstance(data_manager.open_workbook(master_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(data_manager.StoreUnavailable):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_rejects_corrupt_file(tmp_path):
    broken = tmp_path / "broken.xlsx"
    broken.write_text("not a workbook")
    with pytest.raises(data_manager.StoreUnavailable):
        data_manager.open_workbook(broken)


def test_save_workbook_persists_changes_without_leaving_temp_file(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.add_record(workbook, SheetName.PRODUCTS, _product("P100"))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    assert data_manager.get_record(reloaded, SheetName.PRODUCTS, "P100").name == "Burger"
    assert not (master_workbook_path.parent / f".{master_workbook_path.name}.tmp").exists()


def test_save_workbook_wraps_os_errors(master_workbook_path, tmp_path):
    """A destination that cannot be replaced surfaces StoreUnavailable."""

    workbook = data_manager.open_workbook(master_workbook_path)
    target = tmp_path / "occupied"
    target.mkdir()
    (target / "keep.txt").write_text("x")

    with pytest.raises(data_manager.StoreUnavailable):
        data_manager.save_workbook(workbook, target)
    assert not (tmp_path / ".occupied.tmp").exists()


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    original = data_manager.open_workbook(master_workbook_path)
    data_manager.add_record(original, SheetName.PRODUCTS, _product("P200"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)

    assert refreshed is not original
    assert data_manager.get_record(refreshed, SheetName.PRODUCTS, "P200") is None


def test_get_schema_rejects_unknown_collection():
    with pytest.raises(KeyError):
        data_manager.get_schema("Salesmen")


def test_iter_records_treats_missing_sheet_as_empty(master_workbook_path):
    """Older workbooks without a sheet read as an empty collection."""

    workbook = data_manager.open_workbook(master_workbook_path)
    workbook.remove(workbook[SheetName.COMBOS.value])

    assert data_manager.has_collection(workbook, SheetName.COMBOS) is False
    assert list(data_manager.iter_records(workbook, SheetName.COMBOS)) == []
    assert data_manager.get_record(workbook, SheetName.COMBOS, "C1") is None


def test_writes_create_missing_sheet_with_headers(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    workbook.remove(workbook[SheetName.RAW_MATERIALS.value])

    data_manager.add_record(
        workbook,
        SheetName.RAW_MATERIALS,
        data_manager.RawMaterialRow("MP-1", "Cheese", "weight", Decimal("2.5"), Decimal("900")),
    )

    sheet = workbook[SheetName.RAW_MATERIALS.value]
    header = [cell.value for cell in sheet[1]]
    assert header == list(data_manager.COLLECTIONS[SheetName.RAW_MATERIALS].columns)
    assert data_manager.get_record(workbook, SheetName.RAW_MATERIALS, "MP-1").stock == Decimal("2.5")


def test_add_record_rejects_duplicate_keys(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.add_record(workbook, SheetName.PRODUCTS, _product("P1"))

    with pytest.raises(ValueError):
        data_manager.add_record(workbook, SheetName.PRODUCTS, _product("P1"))


def test_put_record_overwrites_matching_row(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.put_record(workbook, SheetName.PRODUCTS, _product("P1"))
    data_manager.put_record(workbook, SheetName.PRODUCTS, _product("P1", name="Cheeseburger"))

    rows = list(data_manager.iter_records(workbook, SheetName.PRODUCTS))
    assert [row.name for row in rows] == ["Cheeseburger"]


def test_delete_record_reports_whether_a_row_was_removed(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.add_record(workbook, SheetName.PRODUCTS, _product("P1"))

    assert data_manager.delete_record(workbook, SheetName.PRODUCTS, "P1") is True
    assert data_manager.delete_record(workbook, SheetName.PRODUCTS, "P1") is False


def test_get_records_by_index_filters_on_attribute(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    link = data_manager.RecipeLinkRow("L1", "P1", "MP-1", Decimal("2"))
    other = data_manager.RecipeLinkRow("L2", "P2", "MP-1", Decimal("1"))
    data_manager.add_record(workbook, SheetName.RECIPE_LINKS, link)
    data_manager.add_record(workbook, SheetName.RECIPE_LINKS, other)

    by_product = data_manager.get_records_by_index(workbook, SheetName.RECIPE_LINKS, "product_id", "P1")
    by_material = data_manager.get_records_by_index(
        workbook, SheetName.RECIPE_LINKS, "raw_material_id", "MP-1"
    )

    assert [row.link_id for row in by_product] == ["L1"]
    assert {row.link_id for row in by_material} == {"L1", "L2"}


def test_get_records_by_index_rejects_undeclared_index(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.get_records_by_index(workbook, SheetName.PRODUCTS, "name", "Burger")


def test_seeded_workbook_has_a_counter_per_denomination(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    rows = list(data_manager.iter_records(workbook, SheetName.CASH_DRAWER))

    assert sorted(row.denomination for row in rows) == list(constants.DEFAULT_DENOMINATIONS)
    assert all(row.quantity == 0 for row in rows)


def test_dump_bills_orders_denominations_descending():
    assert data_manager.dump_bills({100: 2, 1000: 1, 500: 3}) == '{"1000": 1, "500": 3, "100": 2}'
    assert data_manager.dump_bills(None) is None


def test_movement_bills_survive_a_save(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    movement = data_manager.CashMovementRow(
        movement_id="MOV-1",
        movement_type=constants.MovementType.SALE.value,
        bills_in={1000: 2, 500: 1},
        bills_out=None,
        sale_id="S-1",
        notes=None,
        timestamp_iso="2024-05-01T12:00:00+00:00",
    )
    data_manager.add_record(workbook, SheetName.CASH_MOVEMENTS, movement)
    data_manager.save_workbook(workbook, master_workbook_path)

    stored = data_manager.get_record(
        data_manager.open_workbook(master_workbook_path), SheetName.CASH_MOVEMENTS, "MOV-1"
    )
    assert stored == movement


def test_combo_slots_are_stored_as_json(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    slot = data_manager.ComboSlot("S1", "Main", ("P1", "P2"), "P1", quantity=2, is_dynamic=True)
    combo = data_manager.ComboRow(
        combo_id="C1",
        name="Lunch",
        price_type=constants.PriceType.CALCULATED.value,
        fixed_price=None,
        discount_type=constants.DiscountType.PERCENTAGE.value,
        discount_value=Decimal("10"),
        slots=(slot,),
    )
    data_manager.add_record(workbook, SheetName.COMBOS, combo)

    assert data_manager.get_record(workbook, SheetName.COMBOS, "C1").slots == (slot,)


def test_locate_row_returns_row_index(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.add_record(workbook, SheetName.PRODUCTS, _product("P600"))

    assert data_manager.locate_row(workbook, SheetName.PRODUCTS.value, "ProductID", "P600") == 2
    assert data_manager.locate_row(workbook, SheetName.PRODUCTS.value, "ProductID", "NOPE") is None


def test_locate_row_rejects_unknown_column(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, SheetName.PRODUCTS.value, "Missing", "P1")
