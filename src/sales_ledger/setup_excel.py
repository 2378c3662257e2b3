"""Bootstrap a new sales ledger workbook.

Installed as ``ledger-setup``. The workbook gets one sheet per entity with a
bold header row, and the configuration sheets start out with the shop
defaults so the ledger is usable right away.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import log
from .data_manager import (
    CONFIG_FILE_NAME,
    SHEET_COLUMNS,
    LedgerConfig,
    default_ledger_config,
    read_config,
    resolve_data_file,
    write_ledger_config,
)

HEADER_FONT = Font(bold=True)


@dataclass(frozen=True)
class SetupSettings:
    """The only part of ``config.ini`` the bootstrap needs."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Resolve the workbook location declared in ``config_path``.

    Only ``[System] DataFile`` is required here, so a config that is still
    being filled in can already bootstrap its workbook. Relative paths are
    anchored to the config file's folder.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If ``DataFile`` is missing.
    """

    config_path = Path(config_path).expanduser().resolve()
    parser = read_config(config_path)
    try:
        raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    return SetupSettings(data_file=resolve_data_file(raw, config_path.parent))


def _add_sheet(workbook: openpyxl.Workbook, title: str, columns: Sequence[str]) -> None:
    sheet = workbook.create_sheet(title=title)
    sheet.append(list(columns))
    for cell in sheet[1]:
        cell.font = HEADER_FONT


def create_master_workbook(
    destination: Path,
    *,
    config: Optional[LedgerConfig] = None,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Write a fresh ledger workbook to ``destination`` and return its path.

    ``config`` seeds the configuration sheets and defaults to
    :func:`~sales_ledger.data_manager.default_ledger_config`.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing ledger workbook: {destination}")

    workbook = openpyxl.Workbook()
    # Replace the default empty sheet with the managed ones.
    workbook.remove(workbook.active)
    for title, columns in sheet_columns.items():
        _add_sheet(workbook, title, columns)

    write_ledger_config(
        workbook,
        config or default_ledger_config(),
        updated_at=datetime.now(UTC).isoformat(),
    )

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(destination)
    log.info("Created ledger workbook '%s'", destination)
    return destination


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ledger-setup",
        description="Create the sales ledger workbook declared in config.ini.",
    )
    parser.add_argument("--config", type=Path, default=Path(CONFIG_FILE_NAME),
                        help=f"Configuration file to read (default: {CONFIG_FILE_NAME}).")
    parser.add_argument("--force", action="store_true",
                        help="Replace the workbook when it already exists.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``ledger-setup``; returns the process exit code."""

    args = parse_args(argv)
    print(f"Sales ledger setup using {args.config}")

    try:
        settings = load_settings(args.config)
        created = create_master_workbook(settings.data_file, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}\nPass --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Could not write the workbook: {exc}")
        return 1

    print(f"[SUCCESS] Ledger workbook ready at {created}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
