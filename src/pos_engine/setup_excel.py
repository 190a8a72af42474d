"""Utility for initializing the outlet workbook.

The module doubles as a script (``pos-setup`` / ``python -m
pos_engine.setup_excel``) and as a library used by tests. Sheet layouts come
from :data:`pos_engine.data_manager.COLLECTIONS` so the bootstrap and the data
layer never disagree about column order.
"""

from __future__ import annotations

import argparse
import configparser
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from .constants import DEFAULT_DENOMINATIONS, SheetName
from .data_manager import COLLECTIONS, CONFIG_FILE_NAME, parse_denominations


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    schema.sheet.value: schema.columns for schema in COLLECTIONS.values()
}


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    denominations: tuple[int, ...]


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(
        data_file=data_file_path,
        denominations=parse_denominations(parser.get("Cash", "Denominations", fallback=None)),
    )


def create_master_workbook(
    destination: Path,
    *,
    denominations: Sequence[int] = DEFAULT_DENOMINATIONS,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the outlet workbook at ``destination``.

    Every collection sheet is written with a bold header row and the cash
    drawer is seeded with an empty counter per denomination. When
    ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if SheetName.CASH_DRAWER.value in workbook.sheetnames:
        drawer = workbook[SheetName.CASH_DRAWER.value]
        created = datetime.now(UTC).isoformat()
        for denomination in sorted(denominations, reverse=True):
            drawer.append([f"BILL-{uuid.uuid4().hex[:12]}", denomination, 0, created])

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        denominations=settings.denominations,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the POS outlet workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- POS Engine Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
