"""Integration tests describing end-to-end shop ledger workflows.

These scenarios document how the data access layer, the ledger engine, and
the reporting layer collaborate when every change is written to the workbook
and reloaded before the next step.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from logging.handlers import RotatingFileHandler

import pytest

from shop_ledger import cli, constants, core_logic, log, reporting
from shop_ledger.data_manager import PartnerRow


def _complete_setup(context: core_logic.RuntimeContext, **overrides) -> None:
    """Run first-run setup with two partners and a guest."""

    fields = {
        "partners": (PartnerRow("Alice"), PartnerRow("Bob"), PartnerRow("Gil", is_guest=True)),
        "business_name": "",
        "initial_cash": "500",
        "default_sell_price": "20",
        "initial_stock_quantity": "10",
        "initial_cost_price": "12",
    }
    fields.update(overrides)
    core_logic.run_first_time_setup(
        context.store,
        core_logic.SetupCommand(**fields),
        default_business_name=context.settings.default_business_name,
    )


def test_setup_sale_and_report_flow(runtime_context):
    """Walk through setup, a sale, reload from disk, and the daily report."""

    context = runtime_context
    _complete_setup(context)
    assert context.store.business_name == "Test Shop"

    # Reload so the rest of the flow reads what was written to disk.
    context = core_logic.refresh_context(context)
    store = context.store
    assert store.setup_completed is True
    assert core_logic.stock_on_hand(store) == 10
    assert core_logic.effective_sell_price(store) == Decimal("20")

    sale = core_logic.record_sale(store, core_logic.SaleCommand(quantity=4, seller="Gil", discount="5"))
    assert sale.total == Decimal("75")

    context = core_logic.refresh_context(context)
    report = reporting.build_report(context.store, constants.ReportMode.TODAY)
    assert report.total_sales == Decimal("75")
    assert report.cost_of_goods_sold == Decimal("48")
    assert report.stock_purchase_cost == Decimal("120")
    assert report.net_profit_by_partner == {"Alice": Decimal("13.5"), "Bob": Decimal("13.5")}
    assert context.store.sales[0].seller_is_guest is True

    position = core_logic.calculate_position(context.store)
    assert position.cash_on_hand == Decimal("455")
    assert position.inventory_value == Decimal("72")
    assert position.total_assets == Decimal("527")


def test_partner_changes_survive_reload(runtime_context):
    context = runtime_context
    _complete_setup(context)
    core_logic.add_partner(context.store, "Dana")
    core_logic.remove_partner(context.store, "Alice")

    context = core_logic.refresh_context(context)
    assert [partner.name for partner in context.store.partners] == ["Bob", "Gil", "Dana"]
    assert context.store.selected_seller == "Bob"
    assert context.store.withdrawal_target == "Bob"


def test_sale_cost_snapshot_survives_reload(runtime_context):
    context = runtime_context
    _complete_setup(context)
    core_logic.record_sale(context.store, core_logic.SaleCommand(quantity=2))
    core_logic.add_stock_lot(context.store, core_logic.StockCommand(quantity=10, cost_price="30"))

    context = core_logic.refresh_context(context)
    assert core_logic.average_cost_price(context.store) == Decimal("21")
    assert context.store.sales[0].cost_price == Decimal("12")


def test_rejected_withdrawal_leaves_workbook_untouched(runtime_context):
    context = runtime_context
    _complete_setup(context)
    before = core_logic.refresh_context(context).store.snapshot()

    with pytest.raises(core_logic.GuestWithdrawalForbidden):
        core_logic.record_withdrawal(context.store, core_logic.WithdrawalCommand(amount="10", person="Gil"))

    assert core_logic.refresh_context(context).store.snapshot() == before


def test_reset_returns_workbook_to_first_run_state(runtime_context):
    context = runtime_context
    _complete_setup(context)
    core_logic.record_expense(context.store, core_logic.ExpenseCommand(amount="10"))
    core_logic.reset_all(context.store, constants.RESET_CONFIRMATION_CODE)

    context = core_logic.refresh_context(context)
    assert context.store.setup_completed is False
    assert context.store.snapshot().expenses == ()

    # Setup can run again once the ledger has been reset.
    _complete_setup(context, partners=(PartnerRow("Zed"),), initial_stock_quantity=None)
    context = core_logic.refresh_context(context)
    assert [partner.name for partner in context.store.partners] == ["Zed"]
    assert context.store.stock_lots == []


def test_cli_commands_share_one_workbook(config_factory, capsys):
    """Each CLI invocation loads the workbook written by the previous one."""

    bundle = config_factory(business_name="Kiosk")
    base = ["--config", str(bundle.config_path)]

    assert cli.main([*base, "setup", "--partner", "Alice", "--partner", "Bob", "--initial-cash", "100"]) == 0
    assert cli.main([*base, "add-stock", "--quantity", "6", "--cost-price", "10", "--sell-price", "15"]) == 0
    assert cli.main([*base, "quick-sell", "2", "--seller", "Bob"]) == 0
    assert cli.main([*base, "withdraw", "--amount", "20", "--person", "Bob"]) == 0
    capsys.readouterr()

    assert cli.main([*base, "report", "--mode", "this-month", "--overall"]) == 0
    output = capsys.readouterr().out
    assert "Report: This Month (" in output
    assert "Remaining:        10.00" in output

    context = core_logic.load_runtime_context(bundle.config_path)
    assert context.store.business_name == "Kiosk"
    assert context.store.sales[0].notes == constants.QUICK_SALE_NOTES
    assert core_logic.cash_on_hand(context.store) == Decimal("50")


def test_package_logger_keeps_terminal_to_warnings():
    terminal = [handler for handler in log.handlers if type(handler) is logging.StreamHandler]
    assert [handler.level for handler in terminal] == [logging.WARNING]
    ledger_files = [handler for handler in log.handlers if isinstance(handler, RotatingFileHandler)]
    assert all(handler.level == logging.INFO for handler in ledger_files)
    assert log.level == logging.INFO
