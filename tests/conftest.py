"""Shared pytest fixtures and utilities for POS engine tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_engine import catalog, cli, constants, core_logic, data_manager, materials  # noqa: E402
from pos_engine.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_DENOMINATIONS = ",".join(str(value) for value in constants.DEFAULT_DENOMINATIONS)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "OutletName = {outlet_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Cash]\n"
    "Denominations = {denominations}\n\n"
    "[KDS]\n"
    "Enabled = {kds_enabled}\n"
    "Url = {kds_url}\n"
    "Timeout = 2\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    outlet_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized outlet workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        denominations: Sequence[int] = constants.DEFAULT_DENOMINATIONS,
        filename: str = "outlet.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, denominations=denominations, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh outlet workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        outlet_name: str = "Test Outlet",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        denominations: str = DEFAULT_DENOMINATIONS,
        kds_enabled: bool = False,
        kds_url: str = "",
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=bundle_dir.name,
            denominations=[int(value) for value in denominations.split(",")],
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                outlet_name=outlet_name,
                schema_version=schema_version,
                denominations=denominations,
                kds_enabled="true" if kds_enabled else "false",
                kds_url=kds_url,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            outlet_name=outlet_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def reopen() -> Callable[[core_logic.RuntimeContext], core_logic.RuntimeContext]:
    """Open a second context on the same workbook to observe what was committed."""

    def _reopen(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
        return core_logic.RuntimeContext(
            settings=context.settings,
            workbook=data_manager.open_workbook(context.settings.data_file),
        )

    return _reopen


# ---------------------------------------------------------------------------
# Catalog fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_material(runtime_context: core_logic.RuntimeContext) -> Callable[..., object]:
    def _make(name: str = "Bun", *, stock: str = "10", cost: str = "100", unit: str = "count"):
        return materials.add_raw_material(
            runtime_context,
            name,
            unit=unit,
            stock=Decimal(stock),
            cost_per_unit=Decimal(cost),
        )

    return _make


@pytest.fixture
def make_product(runtime_context: core_logic.RuntimeContext) -> Callable[..., object]:
    def _make(
        name: str = "Soda",
        *,
        price: str = "1500",
        stock: str = "0",
        category: str = "Drinks",
        production_cost: str = "0",
        is_active: bool = True,
    ):
        return catalog.add_product(
            runtime_context,
            name,
            Decimal(price),
            category=category,
            stock=Decimal(stock),
            production_cost=Decimal(production_cost),
            is_active=is_active,
        )

    return _make


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-cli", description="POS CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
