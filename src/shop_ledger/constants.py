"""Enumerations and fixed values shared across the shop ledger modules.

Centralises domain constants so that the persistence layer, the ledger
engine, and the command-line front-end rely on a single source of truth for
sheet names, record kinds, and the fixed policy values of the ledger.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Workbook layout version expected by every layer.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_BUSINESS_NAME = "My Shop"
DEFAULT_EXPENSE_DESCRIPTION = "Business expense"
QUICK_SALE_NOTES = "Quick sale"
QUICK_SALE_QUANTITIES: tuple[int, ...] = (1, 2, 3, 5, 10)
RESET_CONFIRMATION_CODE = "999"

# Markup applied to the average cost when no sell price is known anywhere.
FALLBACK_MARKUP = Decimal("1.3")

# Finest precision kept for unit amounts copied onto a sale.
UNIT_AMOUNT_QUANTUM = Decimal("0.0001")


# Column layout of every worksheet in the ledger workbook.
SHEET_COLUMNS: dict[str, tuple[str, ...]] = {
    "StockLots": (
        "LotID",
        "Timestamp",
        "Quantity",
        "CostPrice",
        "SellPrice",
        "ProfitPerUnit",
    ),
    "Sales": (
        "SaleID",
        "Timestamp",
        "Quantity",
        "PricePerUnit",
        "CostPrice",
        "Discount",
        "Total",
        "Seller",
        "SellerIsGuest",
        "Notes",
    ),
    "Expenses": (
        "ExpenseID",
        "Timestamp",
        "Amount",
        "Description",
        "IsStockPurchase",
    ),
    "Withdrawals": (
        "WithdrawalID",
        "Timestamp",
        "Amount",
        "Person",
    ),
    "Partners": (
        "PartnerName",
        "IsGuest",
    ),
    "Settings": (
        "Key",
        "Value",
    ),
}


class RecordKind(str, Enum):
    """Enumerate the ledger record collections held by the store."""

    STOCK_LOT = "STOCK_LOT"
    SALE = "SALE"
    EXPENSE = "EXPENSE"
    WITHDRAWAL = "WITHDRAWAL"
    PARTNER = "PARTNER"
    SETTINGS = "SETTINGS"


class ReportMode(str, Enum):
    """Enumerate the reporting windows supported by the report builder."""

    TODAY = "today"
    THIS_MONTH = "this-month"
    CUSTOM = "custom"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the persistence layer."""

    STOCK_LOTS = "StockLots"
    SALES = "Sales"
    EXPENSES = "Expenses"
    WITHDRAWALS = "Withdrawals"
    PARTNERS = "Partners"
    SETTINGS = "Settings"


class SettingKey(str, Enum):
    """Enumerate the key/value rows stored on the ``Settings`` sheet."""

    BUSINESS_NAME = "BusinessName"
    DEFAULT_SELL_PRICE = "DefaultSellPrice"
    INITIAL_CASH = "InitialCash"
    SETUP_COMPLETED = "SetupCompleted"
    SCHEMA_VERSION = "SchemaVersion"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_BUSINESS_NAME",
    "DEFAULT_EXPENSE_DESCRIPTION",
    "QUICK_SALE_NOTES",
    "QUICK_SALE_QUANTITIES",
    "RESET_CONFIRMATION_CODE",
    "FALLBACK_MARKUP",
    "UNIT_AMOUNT_QUANTUM",
    "SHEET_COLUMNS",
    "RecordKind",
    "ReportMode",
    "SheetName",
    "SettingKey",
]
