"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from shop_ledger import constants, data_manager
from shop_ledger.data_manager import (
    ExpenseRow,
    LedgerSnapshot,
    PartnerRow,
    SaleRow,
    StockLotRow,
    WithdrawalRow,
)

MOMENT = datetime(2025, 3, 14, 15, 30, 0, tzinfo=timezone(timedelta(hours=-3)))


def _sample_snapshot() -> LedgerSnapshot:
    return LedgerSnapshot(
        stock_lots=(
            StockLotRow("L1", MOMENT, 10, Decimal("50"), Decimal("80"), Decimal("30")),
            StockLotRow("L2", MOMENT, 4, Decimal("2.5")),
        ),
        sales=(
            SaleRow(
                "S1",
                MOMENT,
                3,
                Decimal("80"),
                Decimal("50"),
                Decimal("10"),
                Decimal("230"),
                "Alice",
                False,
                "first sale",
            ),
        ),
        expenses=(ExpenseRow("E1", MOMENT, Decimal("15.5"), "Rent"),),
        withdrawals=(WithdrawalRow("W1", MOMENT, Decimal("40"), "Bob"),),
        partners=(PartnerRow("Alice"), PartnerRow("Bob"), PartnerRow("Gil", is_guest=True)),
        business_name="Corner Shop",
        default_sell_price=Decimal("80"),
        initial_cash=Decimal("1000"),
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("Defaults", "BusinessName") == "Test Shop"
    assert parser.get("System", "SchemaVersion") == constants.EXPECTED_SCHEMA_VERSION


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True, business_name="Kiosk")
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_business_name == "Kiosk"


def test_parse_settings_defaults_business_name(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\nSchemaVersion = 1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.default_business_name == constants.DEFAULT_BUSINESS_NAME
    assert settings.data_file == (tmp_path / "ledger.xlsx").resolve()


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(ledger_workbook_path):
    assert isinstance(data_manager.open_workbook(ledger_workbook_path), OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_creates_parent_directories(ledger_workbook_path, tmp_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    destination = tmp_path / "backups" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination)
    assert destination.exists()


def test_refresh_workbook_returns_new_instance(ledger_workbook_path):
    first = data_manager.open_workbook(ledger_workbook_path)
    second = data_manager.refresh_workbook(ledger_workbook_path)
    assert first is not second


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def test_fresh_workbook_has_no_completed_setup(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert data_manager.is_setup_completed(workbook) is False
    assert data_manager.load_snapshot(workbook) is None


def test_snapshot_survives_save_and_reload(ledger_workbook_path):
    snapshot = _sample_snapshot()
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.write_snapshot(workbook, snapshot, setup_completed=True)
    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = data_manager.load_snapshot(data_manager.open_workbook(ledger_workbook_path))
    assert reloaded == snapshot


def test_write_snapshot_replaces_previous_rows(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.write_snapshot(workbook, _sample_snapshot(), setup_completed=True)
    smaller = LedgerSnapshot(partners=(PartnerRow("Alice"),), business_name="Corner Shop")
    data_manager.write_snapshot(workbook, smaller, setup_completed=True)

    assert list(data_manager.iter_sales(workbook)) == []
    assert list(data_manager.iter_partners(workbook)) == [PartnerRow("Alice")]
    settings = data_manager.read_settings(workbook)
    assert settings[constants.SettingKey.SCHEMA_VERSION.value] == constants.EXPECTED_SCHEMA_VERSION


def test_write_snapshot_can_mark_setup_incomplete(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.write_snapshot(workbook, _sample_snapshot(), setup_completed=False)
    assert data_manager.load_snapshot(workbook) is None


def test_iter_sheet_skips_blank_rows(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    sheet = workbook[data_manager.PARTNERS_SHEET]
    sheet.append(["Alice", False])
    sheet.append([None, None])
    sheet.append(["Gil", "TRUE"])
    assert list(data_manager.iter_partners(workbook)) == [PartnerRow("Alice"), PartnerRow("Gil", is_guest=True)]


def test_read_settings_later_rows_win(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    sheet = workbook[data_manager.SETTINGS_SHEET]
    sheet.append([constants.SettingKey.SETUP_COMPLETED.value, "yes"])
    assert data_manager.is_setup_completed(workbook) is True


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def test_serialize_sale_preserves_column_order():
    sale = _sample_snapshot().sales[0]
    row = data_manager.serialize_sale(sale)
    assert len(row) == len(constants.SHEET_COLUMNS["Sales"])
    assert row[0] == "S1"
    assert row[1] == MOMENT.isoformat()
    assert row[7:] == ["Alice", False, "first sale"]


def test_serialize_stock_lot_leaves_missing_sell_price_blank():
    row = data_manager.serialize_stock_lot(_sample_snapshot().stock_lots[1])
    assert row[4:] == [None, None]


def test_deserialize_stock_lot_avoids_float_noise():
    lot = data_manager.deserialize_stock_lot(("L9", MOMENT.isoformat(), 3, 0.1, None, None))
    assert lot.cost_price == Decimal("0.1")
    assert lot.sell_price is None
    assert lot.timestamp == MOMENT


def test_deserialize_sale_constructs_dataclass():
    raw = ("S2", MOMENT.isoformat(), 2, 20, 10.5, 0, 40, "Gil", True, None)
    sale = data_manager.deserialize_sale(raw)
    assert sale == SaleRow("S2", MOMENT, 2, Decimal("20"), Decimal("10.5"), Decimal("0"), Decimal("40"), "Gil", True)


def test_deserialize_expense_and_withdrawal():
    expense = data_manager.deserialize_expense(("E2", MOMENT.isoformat(), 7, "Bags", False))
    withdrawal = data_manager.deserialize_withdrawal(("W2", MOMENT.isoformat(), 12.25, "Bob"))
    assert expense == ExpenseRow("E2", MOMENT, Decimal("7"), "Bags")
    assert withdrawal == WithdrawalRow("W2", MOMENT, Decimal("12.25"), "Bob")
