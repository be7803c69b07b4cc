"""Period reports, activity listings, and CSV export for the shop ledger.

Everything here reads a :class:`~shop_ledger.core_logic.LedgerStore` and
never changes it. Reports are built against a :class:`ReportWindow` so the
caller decides what "today" means; :func:`resolve_window` derives the window
from a timezone-aware ``now`` whose offset stands in for the local calendar.
"""

from __future__ import annotations

import calendar
import csv
import io
from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple, Union

from . import log
from .constants import ReportMode
from .core_logic import LedgerStore
from .data_manager import ExpenseRow, SaleRow, StockLotRow, WithdrawalRow

ZERO = Decimal("0")

EXPORT_COLUMNS: Tuple[str, ...] = (
    "Date",
    "Time",
    "Type",
    "Quantity",
    "Price",
    "Cost",
    "Discount",
    "Total",
    "Person",
    "Notes",
)

ActivityRecord = Union[SaleRow, ExpenseRow, WithdrawalRow]


@dataclass(frozen=True)
class ReportWindow:
    """Inclusive ``[start, end]`` range a report covers."""

    mode: ReportMode
    start: datetime
    end: datetime
    title: str

    def contains(self, moment: datetime) -> bool:
        # Naive timestamps are read as wall-clock time in the window's zone.
        if moment.tzinfo is None and self.start.tzinfo is not None:
            moment = moment.replace(tzinfo=self.start.tzinfo)
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class OverallView:
    """Cash-flow view of a period that ignores the cost of goods sold."""

    remaining: Decimal
    per_partner_overall: Decimal
    by_partner: Dict[str, Decimal]


@dataclass(frozen=True)
class PeriodReport:
    """Figures for one reporting window, plus the records they came from."""

    window: ReportWindow
    total_sales: Decimal
    units_sold: int
    cost_of_goods_sold: Decimal
    stock_purchase_cost: Decimal
    gross_profit: Decimal
    profit_per_unit: Decimal
    total_expenses: Decimal
    net_profit_before_withdrawals: Decimal
    num_partners: int
    per_partner_share: Decimal
    withdrawals_by_person: Dict[str, Decimal]
    net_profit_by_partner: Dict[str, Decimal]
    total_withdrawals: Decimal
    sales_by_seller: Dict[str, Decimal]
    sales: Tuple[SaleRow, ...]
    expenses: Tuple[ExpenseRow, ...]
    withdrawals: Tuple[WithdrawalRow, ...]
    stock_lots: Tuple[StockLotRow, ...]

    def overall(self) -> OverallView:
        """Build the overall view of this report.

        ``remaining`` is sales minus expenses minus withdrawals, split equally
        between profit-sharing partners. Each partner's displayed share adds
        their own withdrawals back onto the equal split.
        """

        remaining = self.total_sales - self.total_expenses - self.total_withdrawals
        per_partner_overall = remaining / self.num_partners
        by_partner = {
            name: per_partner_overall + withdrawn
            for name, withdrawn in self.withdrawals_by_person.items()
        }
        return OverallView(remaining=remaining, per_partner_overall=per_partner_overall, by_partner=by_partner)


@dataclass(frozen=True)
class TodaySummary:
    """Headline numbers for the current day."""

    total_sales: Decimal
    total_expenses: Decimal
    total_withdrawals: Decimal
    units_sold: int
    sales: Tuple[SaleRow, ...]


@dataclass(frozen=True)
class ActivityItem:
    """One line of the recent activity feed."""

    kind: str
    timestamp: datetime
    amount: Decimal
    record: ActivityRecord


def month_name(month: int) -> str:
    """Return the English name of ``month`` (1-12)."""

    if not 1 <= month <= 12:
        raise ValueError(f"Month must be between 1 and 12, got {month}")
    return calendar.month_name[month]


def _end_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time(23, 59, 59), tzinfo=moment.tzinfo)


def _start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time(0, 0, 0), tzinfo=moment.tzinfo)


def _resolve_now(store: LedgerStore, now: Optional[datetime]) -> datetime:
    # A naive moment is read as wall-clock time on the store's clock.
    if now is None:
        return store.now()
    if now.tzinfo is None:
        return now.replace(tzinfo=store.now().tzinfo)
    return now


def resolve_window(
    mode: Union[ReportMode, str],
    *,
    now: datetime,
    month: Optional[int] = None,
    year: Optional[int] = None,
) -> ReportWindow:
    """Turn a report mode into an inclusive window.

    Windows start at midnight and end at 23:59:59 of their last day, in the
    timezone of ``now``.

    Args:
        mode (ReportMode | str): ``today``, ``this-month`` or ``custom``.
        now (datetime): Current moment; its tzinfo defines the calendar.
        month (int | None): 1-12, required for ``custom``.
        year (int | None): Four-digit year, required for ``custom``.

    Raises:
        ValueError: For a naive ``now``, an unknown mode, or a missing/invalid
            custom month.
    """

    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware; its offset decides which calendar day it falls on")
    mode = ReportMode(mode)
    if mode is ReportMode.TODAY:
        return ReportWindow(mode=mode, start=_start_of_day(now), end=_end_of_day(now), title="Today")

    if mode is ReportMode.THIS_MONTH:
        month, year = now.month, now.year
        title = f"This Month ({month_name(month)})"
    else:
        if month is None or year is None:
            raise ValueError("A custom report needs both a month and a year")
        title = f"{month_name(month)} {year}"

    last_day = calendar.monthrange(year, month)[1]
    first = now.replace(year=year, month=month, day=1)
    last = now.replace(year=year, month=month, day=last_day)
    return ReportWindow(mode=mode, start=_start_of_day(first), end=_end_of_day(last), title=title)


def build_period_report(store: LedgerStore, window: ReportWindow) -> PeriodReport:
    """Compute the profit and partner figures for ``window``.

    Cost of goods sold uses the cost price copied onto each sale, not the
    current average. Only non-guest partners share profit; with none the
    share is divided by one. Totals include records whose partner has since
    been removed, but such names get no per-partner entry.
    """

    sales = tuple(sale for sale in store.sales if window.contains(sale.timestamp))
    expenses = tuple(
        expense
        for expense in store.expenses
        if window.contains(expense.timestamp) and not expense.is_stock_purchase
    )
    withdrawals = tuple(withdrawal for withdrawal in store.withdrawals if window.contains(withdrawal.timestamp))
    stock_lots = tuple(lot for lot in store.stock_lots if window.contains(lot.timestamp))

    total_sales = sum((sale.total for sale in sales), ZERO)
    units_sold = sum(sale.quantity for sale in sales)
    cost_of_goods_sold = sum((sale.cost_price * sale.quantity for sale in sales), ZERO)
    stock_purchase_cost = sum((lot.cost_price * lot.quantity for lot in stock_lots), ZERO)
    gross_profit = total_sales - cost_of_goods_sold
    profit_per_unit = gross_profit / units_sold if units_sold > 0 else ZERO
    total_expenses = sum((expense.amount for expense in expenses), ZERO)
    net_profit_before_withdrawals = gross_profit - total_expenses

    sharing = [partner.name for partner in store.non_guest_partners()]
    num_partners = len(sharing) or 1
    per_partner_share = net_profit_before_withdrawals / num_partners

    withdrawals_by_person: Dict[str, Decimal] = {name: ZERO for name in sharing}
    for withdrawal in withdrawals:
        if withdrawal.person in withdrawals_by_person:
            withdrawals_by_person[withdrawal.person] += withdrawal.amount

    net_profit_by_partner = {
        name: per_partner_share - withdrawals_by_person[name] for name in sharing
    }
    total_withdrawals = sum((withdrawal.amount for withdrawal in withdrawals), ZERO)

    sales_by_seller: Dict[str, Decimal] = {partner.name: ZERO for partner in store.partners}
    for sale in sales:
        if sale.seller in sales_by_seller:
            sales_by_seller[sale.seller] += sale.total

    log.debug(
        "Built %s report: sales=%s cogs=%s expenses=%s withdrawals=%s",
        window.title,
        total_sales,
        cost_of_goods_sold,
        total_expenses,
        total_withdrawals,
    )
    return PeriodReport(
        window=window,
        total_sales=total_sales,
        units_sold=units_sold,
        cost_of_goods_sold=cost_of_goods_sold,
        stock_purchase_cost=stock_purchase_cost,
        gross_profit=gross_profit,
        profit_per_unit=profit_per_unit,
        total_expenses=total_expenses,
        net_profit_before_withdrawals=net_profit_before_withdrawals,
        num_partners=num_partners,
        per_partner_share=per_partner_share,
        withdrawals_by_person=withdrawals_by_person,
        net_profit_by_partner=net_profit_by_partner,
        total_withdrawals=total_withdrawals,
        sales_by_seller=sales_by_seller,
        sales=sales,
        expenses=expenses,
        withdrawals=withdrawals,
        stock_lots=stock_lots,
    )


def build_report(
    store: LedgerStore,
    mode: Union[ReportMode, str],
    *,
    now: Optional[datetime] = None,
    month: Optional[int] = None,
    year: Optional[int] = None,
) -> PeriodReport:
    """Resolve the window for ``mode`` using the store's clock and build the report."""

    window = resolve_window(mode, now=_resolve_now(store, now), month=month, year=year)
    return build_period_report(store, window)


def today_summary(store: LedgerStore, *, now: Optional[datetime] = None) -> TodaySummary:
    """Summarise today's sales, expenses, and withdrawals."""

    window = resolve_window(ReportMode.TODAY, now=_resolve_now(store, now))
    sales = tuple(sale for sale in store.sales if window.contains(sale.timestamp))
    return TodaySummary(
        total_sales=sum((sale.total for sale in sales), ZERO),
        total_expenses=sum(
            (
                expense.amount
                for expense in store.expenses
                if window.contains(expense.timestamp) and not expense.is_stock_purchase
            ),
            ZERO,
        ),
        total_withdrawals=sum(
            (withdrawal.amount for withdrawal in store.withdrawals if window.contains(withdrawal.timestamp)),
            ZERO,
        ),
        units_sold=sum(sale.quantity for sale in sales),
        sales=sales,
    )


def recent_activity(store: LedgerStore, *, now: Optional[datetime] = None) -> List[ActivityItem]:
    """Today's sales, expenses, and withdrawals, newest first."""

    window = resolve_window(ReportMode.TODAY, now=_resolve_now(store, now))
    items: List[ActivityItem] = []
    items.extend(
        ActivityItem("sale", sale.timestamp, sale.total, sale)
        for sale in store.sales
        if window.contains(sale.timestamp)
    )
    items.extend(
        ActivityItem("expense", expense.timestamp, expense.amount, expense)
        for expense in store.expenses
        if window.contains(expense.timestamp) and not expense.is_stock_purchase
    )
    items.extend(
        ActivityItem("withdrawal", withdrawal.timestamp, withdrawal.amount, withdrawal)
        for withdrawal in store.withdrawals
        if window.contains(withdrawal.timestamp)
    )
    items.sort(key=lambda item: item.timestamp, reverse=True)
    return items


def _cell(value: object) -> str:
    return "" if value is None else str(value)


def _export_row(timestamp: datetime, kind: str, values: Sequence[object]) -> List[str]:
    return [timestamp.strftime("%Y-%m-%d"), timestamp.strftime("%H:%M"), kind, *(_cell(value) for value in values)]


def export_csv(store: LedgerStore) -> str:
    """Render sales, then expenses, then withdrawals as comma-separated text.

    Columns that do not apply to a row type are left blank.
    """

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for sale in store.sales:
        writer.writerow(
            _export_row(
                sale.timestamp,
                "Sale",
                [
                    sale.quantity,
                    sale.price_per_unit,
                    sale.cost_price,
                    sale.discount,
                    sale.total,
                    sale.seller,
                    sale.notes,
                ],
            )
        )
    for expense in store.expenses:
        if expense.is_stock_purchase:
            continue
        writer.writerow(
            _export_row(expense.timestamp, "Expense", [None, None, None, None, expense.amount, None, expense.description])
        )
    for withdrawal in store.withdrawals:
        writer.writerow(
            _export_row(withdrawal.timestamp, "Withdrawal", [None, None, None, None, withdrawal.amount, withdrawal.person, None])
        )
    log.info(
        "Exported %d sales, %d expenses, %d withdrawals",
        len(store.sales),
        len([expense for expense in store.expenses if not expense.is_stock_purchase]),
        len(store.withdrawals),
    )
    return buffer.getvalue()
