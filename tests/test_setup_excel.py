"""Tests for the workbook bootstrap script."""

from __future__ import annotations

from pathlib import Path

import openpyxl
import pytest

from comandas import setup_excel
from comandas.constants import SheetName


def _write_config(directory: Path, data_file: str) -> Path:
    config_path = directory / "config.ini"
    config_path.write_text(f"[System]\nDataFile = {data_file}\n")
    return config_path


def test_load_settings_resolves_relative_data_file(tmp_path):
    config_path = _write_config(tmp_path, "data/comandas.xlsx")

    settings = setup_excel.load_settings(config_path)

    assert settings.data_file == (tmp_path / "data" / "comandas.xlsx").resolve()


def test_load_settings_requires_data_file_entry(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nBarName = Bar do Centro\n")

    with pytest.raises(KeyError):
        setup_excel.load_settings(config_path)


def test_main_creates_workbook_with_default_chart_of_accounts(tmp_path, capsys):
    config_path = _write_config(tmp_path, "comandas.xlsx")

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert "[SUCCESS]" in capsys.readouterr().out

    workbook = openpyxl.load_workbook(tmp_path / "comandas.xlsx")
    names = [row[1] for row in workbook[SheetName.ACCOUNT_CATEGORIES.value].iter_rows(min_row=2, values_only=True)]
    assert names == [name for name, _ in setup_excel.DEFAULT_ACCOUNT_CATEGORIES]


def test_main_refuses_to_overwrite_without_force(tmp_path, capsys):
    config_path = _write_config(tmp_path, "comandas.xlsx")
    assert setup_excel.main(["--config", str(config_path)]) == 0

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
