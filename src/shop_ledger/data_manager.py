"""Data access layer for the shop ledger.

This module provides low-level helpers that read from and write to the
ledger workbook. Ledger rules and derived figures belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Snapshot operations: loading the whole ledger into typed records and
   replacing the stored ledger with a new snapshot.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_BUSINESS_NAME, EXPECTED_SCHEMA_VERSION, SheetName, SettingKey


CONFIG_FILE_NAME = "config.ini"
STOCK_LOTS_SHEET = SheetName.STOCK_LOTS.value
SALES_SHEET = SheetName.SALES.value
EXPENSES_SHEET = SheetName.EXPENSES.value
WITHDRAWALS_SHEET = SheetName.WITHDRAWALS.value
PARTNERS_SHEET = SheetName.PARTNERS.value
SETTINGS_SHEET = SheetName.SETTINGS.value

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    default_business_name: str = DEFAULT_BUSINESS_NAME


@dataclass(frozen=True)
class PartnerRow:
    """In-memory view of a row from the ``Partners`` sheet."""

    name: str
    is_guest: bool = False


@dataclass(frozen=True)
class StockLotRow:
    """One stock purchase batch from the ``StockLots`` sheet."""

    lot_id: str
    timestamp: datetime
    quantity: int
    cost_price: Decimal
    sell_price: Optional[Decimal] = None
    profit_per_unit: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleRow:
    """One sale from the ``Sales`` sheet.

    ``cost_price`` and ``seller_is_guest`` are copies taken when the sale was
    recorded; later stock lots or partner changes never touch them.
    """

    sale_id: str
    timestamp: datetime
    quantity: int
    price_per_unit: Decimal
    cost_price: Decimal
    discount: Decimal
    total: Decimal
    seller: str
    seller_is_guest: bool
    notes: Optional[str] = None


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    timestamp: datetime
    amount: Decimal
    description: str
    is_stock_purchase: bool = False


@dataclass(frozen=True)
class WithdrawalRow:
    """In-memory view of a row from the ``Withdrawals`` sheet."""

    withdrawal_id: str
    timestamp: datetime
    amount: Decimal
    person: str


@dataclass(frozen=True)
class LedgerSnapshot:
    """Complete serialisable state of the ledger handed to and from storage."""

    stock_lots: tuple[StockLotRow, ...] = ()
    sales: tuple[SaleRow, ...] = ()
    expenses: tuple[ExpenseRow, ...] = ()
    withdrawals: tuple[WithdrawalRow, ...] = ()
    partners: tuple[PartnerRow, ...] = ()
    business_name: str = ""
    default_sell_price: Decimal = Decimal("0")
    initial_cash: Decimal = Decimal("0")


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System] DataFile`` and ``[System] SchemaVersion`` are required.
    ``[Defaults] BusinessName`` is optional and falls back to
    :data:`DEFAULT_BUSINESS_NAME`. Relative data file paths are anchored to
    ``base_path`` (or the current working directory) and resolved.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    business_name = parser.get("Defaults", "BusinessName", fallback=DEFAULT_BUSINESS_NAME)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        default_business_name=business_name.strip() or DEFAULT_BUSINESS_NAME,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def iter_stock_lots(workbook: Workbook) -> Iterable[StockLotRow]:
    """Iterate over stock lots stored on the ``StockLots`` worksheet in sheet order."""

    return _iter_sheet(workbook, STOCK_LOTS_SHEET, deserialize_stock_lot)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Iterate over sales stored on the ``Sales`` worksheet in sheet order."""

    return _iter_sheet(workbook, SALES_SHEET, deserialize_sale)


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    """Iterate over expenses stored on the ``Expenses`` worksheet in sheet order."""

    return _iter_sheet(workbook, EXPENSES_SHEET, deserialize_expense)


def iter_withdrawals(workbook: Workbook) -> Iterable[WithdrawalRow]:
    """Iterate over withdrawals stored on the ``Withdrawals`` worksheet in sheet order."""

    return _iter_sheet(workbook, WITHDRAWALS_SHEET, deserialize_withdrawal)


def iter_partners(workbook: Workbook) -> Iterable[PartnerRow]:
    """Iterate over partners stored on the ``Partners`` worksheet in sheet order."""

    return _iter_sheet(workbook, PARTNERS_SHEET, deserialize_partner)


def read_settings(workbook: Workbook) -> dict[str, object]:
    """Return the raw key/value pairs of the ``Settings`` sheet.

    Rows without a key are ignored. Later duplicates win, matching the way a
    human editing the sheet would expect an appended override to behave.
    """

    settings: dict[str, object] = {}
    sheet = workbook[SETTINGS_SHEET]
    for key, value, *_ in sheet.iter_rows(min_row=2, values_only=True):
        if key is None:
            continue
        settings[str(key)] = value
    return settings


def is_setup_completed(workbook: Workbook) -> bool:
    """Report whether first-run setup has been completed for this workbook."""

    return _to_bool(read_settings(workbook).get(SettingKey.SETUP_COMPLETED.value))


def load_snapshot(workbook: Workbook) -> Optional[LedgerSnapshot]:
    """Read the whole ledger from ``workbook``.

    Returns:
        LedgerSnapshot | None: The stored ledger, or ``None`` when the
            workbook holds no completed setup ("no prior data").
    """

    if not is_setup_completed(workbook):
        log.info("Workbook has no completed setup; first-run setup is required")
        return None

    settings = read_settings(workbook)
    snapshot = LedgerSnapshot(
        stock_lots=tuple(iter_stock_lots(workbook)),
        sales=tuple(iter_sales(workbook)),
        expenses=tuple(iter_expenses(workbook)),
        withdrawals=tuple(iter_withdrawals(workbook)),
        partners=tuple(iter_partners(workbook)),
        business_name=_to_text(settings.get(SettingKey.BUSINESS_NAME.value)) or "",
        default_sell_price=_to_decimal(settings.get(SettingKey.DEFAULT_SELL_PRICE.value)),
        initial_cash=_to_decimal(settings.get(SettingKey.INITIAL_CASH.value)),
    )
    log.debug(
        "Loaded snapshot: %d lots, %d sales, %d expenses, %d withdrawals, %d partners",
        len(snapshot.stock_lots),
        len(snapshot.sales),
        len(snapshot.expenses),
        len(snapshot.withdrawals),
        len(snapshot.partners),
    )
    return snapshot


def write_snapshot(workbook: Workbook, snapshot: LedgerSnapshot, *, setup_completed: bool) -> None:
    """Replace every data row of ``workbook`` with the contents of ``snapshot``.

    Header rows are kept. The operation is a plain load/replace: no merging
    with what was previously stored.

    Args:
        workbook (Workbook): Workbook created by
            :func:`shop_ledger.setup_workbook.create_ledger_workbook`.
        snapshot (LedgerSnapshot): Ledger state to store.
        setup_completed (bool): Value written to the ``SetupCompleted`` key.
    """

    _replace_rows(workbook, STOCK_LOTS_SHEET, [serialize_stock_lot(row) for row in snapshot.stock_lots])
    _replace_rows(workbook, SALES_SHEET, [serialize_sale(row) for row in snapshot.sales])
    _replace_rows(workbook, EXPENSES_SHEET, [serialize_expense(row) for row in snapshot.expenses])
    _replace_rows(workbook, WITHDRAWALS_SHEET, [serialize_withdrawal(row) for row in snapshot.withdrawals])
    _replace_rows(workbook, PARTNERS_SHEET, [serialize_partner(row) for row in snapshot.partners])
    _replace_rows(
        workbook,
        SETTINGS_SHEET,
        [
            [SettingKey.BUSINESS_NAME.value, snapshot.business_name],
            [SettingKey.DEFAULT_SELL_PRICE.value, snapshot.default_sell_price],
            [SettingKey.INITIAL_CASH.value, snapshot.initial_cash],
            [SettingKey.SETUP_COMPLETED.value, setup_completed],
            [SettingKey.SCHEMA_VERSION.value, EXPECTED_SCHEMA_VERSION],
        ],
    )


def _replace_rows(workbook: Workbook, sheet_name: str, rows: list[list[object]]) -> None:
    sheet = workbook[sheet_name]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    # Explicit positions: append() keeps counting from the pre-delete last row.
    for row_index, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)


def serialize_partner(record: PartnerRow) -> list[object]:
    """Arrange a partner as ``[PartnerName, IsGuest]``."""

    return [record.name, record.is_guest]


def serialize_stock_lot(record: StockLotRow) -> list[object]:
    """Arrange a stock lot in the ``StockLots`` column order.

    Absent sell prices stay ``None`` so the cell is left blank.
    """

    return [
        record.lot_id,
        record.timestamp.isoformat(),
        record.quantity,
        record.cost_price,
        record.sell_price,
        record.profit_per_unit,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange a sale in the ``Sales`` column order."""

    return [
        record.sale_id,
        record.timestamp.isoformat(),
        record.quantity,
        record.price_per_unit,
        record.cost_price,
        record.discount,
        record.total,
        record.seller,
        record.seller_is_guest,
        record.notes,
    ]


def serialize_expense(record: ExpenseRow) -> list[object]:
    """Arrange an expense in the ``Expenses`` column order."""

    return [
        record.expense_id,
        record.timestamp.isoformat(),
        record.amount,
        record.description,
        record.is_stock_purchase,
    ]


def serialize_withdrawal(record: WithdrawalRow) -> list[object]:
    """Arrange a withdrawal in the ``Withdrawals`` column order."""

    return [
        record.withdrawal_id,
        record.timestamp.isoformat(),
        record.amount,
        record.person,
    ]


def deserialize_partner(raw_row: Sequence[object]) -> PartnerRow:
    """Convert a raw ``Partners`` row into a :class:`PartnerRow`."""

    name, is_guest, *_ = raw_row
    return PartnerRow(name=str(name).strip(), is_guest=_to_bool(is_guest))


def deserialize_stock_lot(raw_row: Sequence[object]) -> StockLotRow:
    """Convert a raw ``StockLots`` row into a :class:`StockLotRow`.

    Numeric cells come back from Excel as ``int``/``float``; they are routed
    through ``str`` before becoming :class:`~decimal.Decimal` so that binary
    floating point noise does not leak into the ledger. Blank sell price and
    profit cells stay ``None``.
    """

    lot_id, timestamp, quantity, cost_price, sell_price, profit_per_unit, *_ = raw_row
    return StockLotRow(
        lot_id=str(lot_id),
        timestamp=_to_datetime(timestamp),
        quantity=_to_int(quantity),
        cost_price=_to_decimal(cost_price),
        sell_price=_to_optional_decimal(sell_price),
        profit_per_unit=_to_optional_decimal(profit_per_unit),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row into a :class:`SaleRow`."""

    (
        sale_id,
        timestamp,
        quantity,
        price_per_unit,
        cost_price,
        discount,
        total,
        seller,
        seller_is_guest,
        notes,
        *_,
    ) = raw_row
    return SaleRow(
        sale_id=str(sale_id),
        timestamp=_to_datetime(timestamp),
        quantity=_to_int(quantity),
        price_per_unit=_to_decimal(price_per_unit),
        cost_price=_to_decimal(cost_price),
        discount=_to_decimal(discount),
        total=_to_decimal(total),
        seller=_to_text(seller) or "",
        seller_is_guest=_to_bool(seller_is_guest),
        notes=_to_text(notes),
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    """Convert a raw ``Expenses`` row into an :class:`ExpenseRow`."""

    expense_id, timestamp, amount, description, is_stock_purchase, *_ = raw_row
    return ExpenseRow(
        expense_id=str(expense_id),
        timestamp=_to_datetime(timestamp),
        amount=_to_decimal(amount),
        description=_to_text(description) or "",
        is_stock_purchase=_to_bool(is_stock_purchase),
    )


def deserialize_withdrawal(raw_row: Sequence[object]) -> WithdrawalRow:
    """Convert a raw ``Withdrawals`` row into a :class:`WithdrawalRow`."""

    withdrawal_id, timestamp, amount, person, *_ = raw_row
    return WithdrawalRow(
        withdrawal_id=str(withdrawal_id),
        timestamp=_to_datetime(timestamp),
        amount=_to_decimal(amount),
        person=_to_text(person) or "",
    )


def _to_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _to_int(raw: object) -> int:
    if raw is None:
        return 0
    return int(Decimal(str(raw)))


def _to_decimal(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal("0")


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None else None


def _to_bool(raw: object) -> bool:
    # Hand-edited sheets may hold the flag as text.
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def _to_datetime(raw: object) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))
