"""Tests for the ledger workbook bootstrap helpers."""

from __future__ import annotations

import openpyxl
import pytest

from shop_ledger import constants, data_manager, setup_workbook


def test_create_ledger_workbook_writes_headers(tmp_path):
    destination = setup_workbook.create_ledger_workbook(tmp_path / "ledger.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == list(constants.SHEET_COLUMNS)
    for sheet_name, columns in constants.SHEET_COLUMNS.items():
        header = next(workbook[sheet_name].iter_rows(min_row=1, max_row=1, values_only=True))
        assert header == columns
        assert workbook[sheet_name]["A1"].font.bold is True


def test_create_ledger_workbook_seeds_settings(tmp_path):
    destination = setup_workbook.create_ledger_workbook(tmp_path / "ledger.xlsx")

    workbook = data_manager.open_workbook(destination)
    settings = data_manager.read_settings(workbook)
    assert settings[constants.SettingKey.SCHEMA_VERSION.value] == constants.EXPECTED_SCHEMA_VERSION
    assert data_manager.is_setup_completed(workbook) is False


def test_create_ledger_workbook_refuses_to_overwrite(tmp_path):
    destination = tmp_path / "ledger.xlsx"
    setup_workbook.create_ledger_workbook(destination)
    with pytest.raises(FileExistsError):
        setup_workbook.create_ledger_workbook(destination)
    setup_workbook.create_ledger_workbook(destination, overwrite=True)


def test_create_ledger_workbook_creates_parent_directories(tmp_path):
    destination = setup_workbook.create_ledger_workbook(tmp_path / "data" / "nested" / "ledger.xlsx")
    assert destination.exists()


def test_main_uses_config_data_file(config_factory, capsys):
    bundle = config_factory(create_workbook=False)

    assert setup_workbook.main(["--config", str(bundle.config_path)]) == 0
    assert bundle.workbook_path.exists()
    assert "[SUCCESS]" in capsys.readouterr().out


def test_main_reports_existing_workbook(config_factory, capsys):
    bundle = config_factory()

    assert setup_workbook.main(["--config", str(bundle.config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_workbook.main(["--config", str(bundle.config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    assert setup_workbook.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
