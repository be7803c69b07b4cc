"""Business logic layer for the shop ledger.

This module holds the in-memory :class:`LedgerStore` and every rule that
reads or changes it: the pricing resolver, the position calculator, and the
ledger mutators. All mutations go through the ``add_*``/``record_*``/
``remove_*``/``delete_*`` functions below; each validates first and only then
touches the store, so a rejected request never leaves a partial change
behind. Successful mutations emit a :class:`StoreChanged` event which the
persistence layer consumes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook

from . import data_manager, log, setup_workbook
from .constants import (
    DEFAULT_BUSINESS_NAME,
    DEFAULT_EXPENSE_DESCRIPTION,
    EXPECTED_SCHEMA_VERSION,
    FALLBACK_MARKUP,
    QUICK_SALE_NOTES,
    QUICK_SALE_QUANTITIES,
    RESET_CONFIRMATION_CODE,
    UNIT_AMOUNT_QUANTUM,
    RecordKind,
)
from .data_manager import (
    ExpenseRow,
    LedgerSnapshot,
    PartnerRow,
    SaleRow,
    StockLotRow,
    WithdrawalRow,
)


Quantity = Union[int, str]
Money = Union[Decimal, int, str]

ZERO = Decimal("0")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class LedgerRejection(BusinessRuleViolation):
    """A validation failure reported back to the caller.

    Rejections are always raised before the store is touched. ``reason`` is a
    stable, machine-readable name; ``str(error)`` is meant for humans.
    """

    reason = "LedgerRejection"
    default_message = "The ledger rejected the request"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class InvalidQuantity(LedgerRejection):
    reason = "InvalidQuantity"
    default_message = "Invalid quantity"


class InsufficientStock(LedgerRejection):
    reason = "InsufficientStock"
    default_message = "Not enough stock"


class NoSellerSelected(LedgerRejection):
    reason = "NoSellerSelected"
    default_message = "Select a seller"


class InvalidAmount(LedgerRejection):
    reason = "InvalidAmount"
    default_message = "Invalid amount"


class GuestWithdrawalForbidden(LedgerRejection):
    reason = "GuestWithdrawalForbidden"
    default_message = "Guests cannot withdraw money"


class DuplicatePartner(LedgerRejection):
    reason = "DuplicatePartner"
    default_message = "Partner already exists"


class LastPartnerRemoval(LedgerRejection):
    reason = "LastPartnerRemoval"
    default_message = "Must have at least one partner"


class InvalidResetCode(LedgerRejection):
    reason = "InvalidResetCode"
    default_message = "Invalid code"


class UnknownPartner(LedgerRejection):
    reason = "UnknownPartner"
    default_message = "Unknown partner"


class UnknownRecord(LedgerRejection):
    reason = "UnknownRecord"
    default_message = "Unknown record"


class InvalidPartnerName(LedgerRejection):
    reason = "InvalidPartnerName"
    default_message = "Enter a partner name"


class NoProfitSharingPartner(LedgerRejection):
    reason = "NoProfitSharingPartner"
    default_message = "Add at least 1 partner who is not a guest"


class SetupRequired(LedgerRejection):
    reason = "SetupRequired"
    default_message = "First-run setup has not been completed"


class SetupAlreadyCompleted(LedgerRejection):
    reason = "SetupAlreadyCompleted"
    default_message = "Setup has already been completed; reset the ledger first"


class InvalidText(LedgerRejection):
    reason = "InvalidText"
    default_message = "Text contains characters that cannot be stored"


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True)
class StoreChanged:
    """Notification emitted after every successful mutation of a store."""

    kind: RecordKind
    action: str
    snapshot: LedgerSnapshot
    setup_completed: bool
    record_id: Optional[str] = None


StoreListener = Callable[[StoreChanged], None]


@dataclass(eq=False)
class LedgerStore:
    """Sole owner of every ledger record and setting.

    ``selected_seller`` and ``withdrawal_target`` are session defaults used
    when a sale or withdrawal does not name a partner; they are not persisted
    and are re-derived from the partner list on load. ``clock`` supplies the
    current time (timezone-aware; its offset defines the local calendar).
    """

    stock_lots: List[StockLotRow] = field(default_factory=list)
    sales: List[SaleRow] = field(default_factory=list)
    expenses: List[ExpenseRow] = field(default_factory=list)
    withdrawals: List[WithdrawalRow] = field(default_factory=list)
    partners: List[PartnerRow] = field(default_factory=list)
    business_name: str = ""
    default_sell_price: Decimal = ZERO
    initial_cash: Decimal = ZERO
    setup_completed: bool = False
    selected_seller: Optional[str] = None
    withdrawal_target: Optional[str] = None
    clock: Callable[[], datetime] = field(default=_local_now, repr=False)
    _listeners: List[StoreListener] = field(default_factory=list, repr=False)

    @classmethod
    def from_snapshot(cls, snapshot: LedgerSnapshot, *, clock: Optional[Callable[[], datetime]] = None) -> "LedgerStore":
        """Build a set-up store from a persisted snapshot."""

        store = cls(
            stock_lots=list(snapshot.stock_lots),
            sales=list(snapshot.sales),
            expenses=list(snapshot.expenses),
            withdrawals=list(snapshot.withdrawals),
            partners=list(snapshot.partners),
            business_name=snapshot.business_name,
            default_sell_price=snapshot.default_sell_price,
            initial_cash=snapshot.initial_cash,
            setup_completed=True,
        )
        if clock is not None:
            store.clock = clock
        _repoint_defaults(store)
        return store

    def snapshot(self) -> LedgerSnapshot:
        """Return an immutable copy of the persisted part of the store."""

        return LedgerSnapshot(
            stock_lots=tuple(self.stock_lots),
            sales=tuple(self.sales),
            expenses=tuple(self.expenses),
            withdrawals=tuple(self.withdrawals),
            partners=tuple(self.partners),
            business_name=self.business_name,
            default_sell_price=self.default_sell_price,
            initial_cash=self.initial_cash,
        )

    def subscribe(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: StoreListener) -> None:
        self._listeners.remove(listener)

    def notify(self, kind: RecordKind, action: str, record_id: Optional[str] = None) -> None:
        """Emit a :class:`StoreChanged` event to every subscriber."""

        if not self._listeners:
            return
        event = StoreChanged(
            kind=kind,
            action=action,
            snapshot=self.snapshot(),
            setup_completed=self.setup_completed,
            record_id=record_id,
        )
        for listener in list(self._listeners):
            listener(event)

    def now(self) -> datetime:
        return self.clock()

    def find_partner(self, name: Optional[str]) -> Optional[PartnerRow]:
        for partner in self.partners:
            if partner.name == name:
                return partner
        return None

    def non_guest_partners(self) -> List[PartnerRow]:
        return [partner for partner in self.partners if not partner.is_guest]


@dataclass(frozen=True)
class StockCommand:
    """User intent for adding a stock lot."""

    quantity: Quantity
    cost_price: Money
    sell_price: Optional[Money] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a sale.

    ``seller`` falls back to the store's selected seller when omitted. The
    unit price is never supplied by the caller: it is always the current
    effective sell price.
    """

    quantity: Quantity
    seller: Optional[str] = None
    discount: Optional[Money] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ExpenseCommand:
    """User intent for recording a business expense."""

    amount: Money
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class WithdrawalCommand:
    """User intent for a partner taking cash out of the business."""

    amount: Money
    person: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SetupCommand:
    """Answers collected by the first-run setup wizard."""

    partners: Sequence[PartnerRow]
    business_name: Optional[str] = None
    initial_cash: Optional[Money] = None
    default_sell_price: Optional[Money] = None
    initial_stock_quantity: Optional[Quantity] = None
    initial_cost_price: Optional[Money] = None


@dataclass(frozen=True)
class Position:
    """Point-in-time aggregates of the whole ledger."""

    stock_on_hand: int
    average_cost_price: Decimal
    average_sell_price: Decimal
    effective_sell_price: Decimal
    profit_per_unit: Decimal
    inventory_value: Decimal
    cash_on_hand: Decimal
    total_assets: Decimal


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, and store used by front-ends."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: LedgerStore
    persistence: Optional["WorkbookPersistence"] = field(default=None, compare=False)


# ---------------------------------------------------------------------------
# Input normalisation
# ---------------------------------------------------------------------------


def _reject(error: LedgerRejection) -> LedgerRejection:
    log.warning("Rejected (%s): %s", error.reason, error)
    return error


def _to_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        value = raw
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    return value if value.is_finite() else None


def parse_quantity(raw: object) -> int:
    """Return ``raw`` as a strictly positive whole number of units.

    Raises:
        InvalidQuantity: For zero, negative, fractional, or non-numeric input.
    """

    value = _to_decimal(raw)
    if value is None:
        raise _reject(InvalidQuantity(f"Quantity is not a number: {raw!r}"))
    if value != value.to_integral_value() or value <= ZERO:
        raise _reject(InvalidQuantity(f"Quantity must be a whole number above zero: {raw!r}"))
    return int(value)


def parse_amount(raw: object, *, allow_zero: bool = False, label: str = "Amount") -> Decimal:
    """Return ``raw`` as a monetary :class:`~decimal.Decimal`.

    Blank input counts as zero, which is only accepted when ``allow_zero`` is
    set.

    Raises:
        InvalidAmount: For negative or non-numeric input, and for zero unless
            ``allow_zero`` is ``True``.
    """

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        value: Optional[Decimal] = ZERO
    else:
        value = _to_decimal(raw)
    if value is None:
        raise _reject(InvalidAmount(f"{label} is not a number: {raw!r}"))
    if value < ZERO or (value == ZERO and not allow_zero):
        qualifier = "zero or more" if allow_zero else "greater than zero"
        raise _reject(InvalidAmount(f"{label} must be {qualifier}: {raw!r}"))
    return value


def _optional_price(raw: object) -> Optional[Decimal]:
    # An unusable or non-positive sell price just means "no sell price".
    value = _to_decimal(raw)
    if value is None or value <= ZERO:
        return None
    return value


def check_text(raw: Optional[str], *, label: str = "Text") -> Optional[str]:
    """Return ``raw`` unchanged if the workbook can store it.

    Raises:
        InvalidText: If ``raw`` holds control characters Excel cells reject.
    """

    if raw is not None and ILLEGAL_CHARACTERS_RE.search(str(raw)):
        raise _reject(InvalidText(f"{label} contains characters that cannot be stored: {raw!r}"))
    return raw


def round_unit_amount(value: Decimal) -> Decimal:
    """Limit ``value`` to :data:`UNIT_AMOUNT_QUANTUM` places.

    Values with fewer places are returned as they are, so ``80`` stays ``80``
    rather than becoming ``80.0000``. The workbook keeps numbers as floats;
    four places read back exactly.
    """

    if value.as_tuple().exponent < UNIT_AMOUNT_QUANTUM.as_tuple().exponent:
        return value.quantize(UNIT_AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
    return value


def generate_record_id(prefix: str, *, when: datetime) -> str:
    """Generate a sortable record identifier such as ``S20250301142233000001``."""

    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _allocate_record_id(prefix: str, when: datetime, existing: Sequence[str]) -> str:
    candidate = generate_record_id(prefix, when=when)
    taken = set(existing)
    if candidate not in taken:
        return candidate
    suffix = 2
    while f"{candidate}-{suffix}" in taken:
        suffix += 1
    return f"{candidate}-{suffix}"


def _resolve_timestamp(store: LedgerStore, candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else store.now()


def _require_setup(store: LedgerStore) -> None:
    if not store.setup_completed:
        raise _reject(SetupRequired())


# ---------------------------------------------------------------------------
# Pricing resolver
# ---------------------------------------------------------------------------


def average_cost_price(store: LedgerStore) -> Decimal:
    """Quantity-weighted mean cost price over every stock lot (0 without lots)."""

    total_quantity = sum(lot.quantity for lot in store.stock_lots)
    if total_quantity <= 0:
        return ZERO
    total_cost = sum((lot.cost_price * lot.quantity for lot in store.stock_lots), ZERO)
    return total_cost / total_quantity


def average_sell_price(store: LedgerStore) -> Decimal:
    """Quantity-weighted mean sell price over lots that carry one.

    Falls back to the default sell-price setting when no lot has a positive
    sell price.
    """

    priced = [lot for lot in store.stock_lots if lot.sell_price is not None and lot.sell_price > ZERO]
    total_quantity = sum(lot.quantity for lot in priced)
    if total_quantity <= 0:
        return store.default_sell_price
    total_sell = sum((lot.sell_price * lot.quantity for lot in priced), ZERO)
    return total_sell / total_quantity


def effective_sell_price(store: LedgerStore) -> Decimal:
    """Unit price charged for a sale right now.

    Tries, in order: the average lot sell price, the default sell-price
    setting, and the average cost marked up by 30% and rounded to a whole
    unit. Returns 0 when nothing is known.
    """

    average = average_sell_price(store)
    if average > ZERO:
        return average
    if store.default_sell_price > ZERO:
        return store.default_sell_price
    cost = average_cost_price(store)
    if cost > ZERO:
        return (cost * FALLBACK_MARKUP).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return ZERO


def profit_per_unit(store: LedgerStore) -> Decimal:
    """Effective sell price minus average cost; negative when selling at a loss."""

    return effective_sell_price(store) - average_cost_price(store)


# ---------------------------------------------------------------------------
# Position calculator
# ---------------------------------------------------------------------------


def stock_on_hand(store: LedgerStore) -> int:
    """Units bought across all lots minus units sold across all sales."""

    added = sum(lot.quantity for lot in store.stock_lots)
    sold = sum(sale.quantity for sale in store.sales)
    return added - sold


def inventory_value(store: LedgerStore) -> Decimal:
    """Stock on hand valued at average cost."""

    return stock_on_hand(store) * average_cost_price(store)


def cash_on_hand(store: LedgerStore) -> Decimal:
    """Initial cash plus the net cash flow recorded in the ledger.

    Stock purchases are deducted once, from the stock lots. Expenses flagged
    as stock purchases are excluded so the same purchase is never subtracted
    twice.
    """

    sales_total = sum((sale.total for sale in store.sales), ZERO)
    expenses_total = sum((expense.amount for expense in store.expenses if not expense.is_stock_purchase), ZERO)
    withdrawals_total = sum((withdrawal.amount for withdrawal in store.withdrawals), ZERO)
    purchases_total = sum((lot.cost_price * lot.quantity for lot in store.stock_lots), ZERO)
    return store.initial_cash + sales_total - expenses_total - withdrawals_total - purchases_total


def total_assets(store: LedgerStore) -> Decimal:
    """Cash on hand plus inventory at average cost."""

    return cash_on_hand(store) + inventory_value(store)


def calculate_position(store: LedgerStore) -> Position:
    """Bundle the pricing and position figures for presentation."""

    position = Position(
        stock_on_hand=stock_on_hand(store),
        average_cost_price=average_cost_price(store),
        average_sell_price=average_sell_price(store),
        effective_sell_price=effective_sell_price(store),
        profit_per_unit=profit_per_unit(store),
        inventory_value=inventory_value(store),
        cash_on_hand=cash_on_hand(store),
        total_assets=total_assets(store),
    )
    log.debug("Calculated position: %s", position)
    return position


# ---------------------------------------------------------------------------
# Ledger mutators
# ---------------------------------------------------------------------------


def add_stock_lot(store: LedgerStore, command: StockCommand) -> StockLotRow:
    """Validate and append a stock lot.

    A positive sell price on the lot also becomes the new default sell price.

    Raises:
        InvalidQuantity: If the quantity is not a positive whole number.
        InvalidAmount: If the cost price is not positive.
    """

    _require_setup(store)
    quantity = parse_quantity(command.quantity)
    cost_price = parse_amount(command.cost_price, label="Cost price")
    sell_price = _optional_price(command.sell_price)

    timestamp = _resolve_timestamp(store, command.timestamp)
    lot = StockLotRow(
        lot_id=_allocate_record_id("L", timestamp, [row.lot_id for row in store.stock_lots]),
        timestamp=timestamp,
        quantity=quantity,
        cost_price=cost_price,
        sell_price=sell_price,
        profit_per_unit=sell_price - cost_price if sell_price is not None else None,
    )
    store.stock_lots.append(lot)
    if sell_price is not None:
        store.default_sell_price = sell_price
    log.info(
        "Added stock lot '%s' (quantity=%s, cost=%s, sell=%s)",
        lot.lot_id,
        quantity,
        cost_price,
        sell_price,
    )
    store.notify(RecordKind.STOCK_LOT, "added", lot.lot_id)
    return lot


def _resolve_seller(store: LedgerStore, requested: Optional[str]) -> PartnerRow:
    name = requested if requested is not None else store.selected_seller
    if name is None or not str(name).strip():
        raise _reject(NoSellerSelected())
    partner = store.find_partner(str(name).strip())
    if partner is None:
        raise _reject(UnknownPartner(f"Unknown seller: {name}"))
    return partner


def record_sale(store: LedgerStore, command: SaleCommand) -> SaleRow:
    """Validate and append a sale priced at the current effective sell price.

    The sale keeps a copy of the current average cost and of the seller's
    guest flag. ``total = price × quantity − discount``.

    Raises:
        InvalidQuantity: If the quantity is not a positive whole number.
        InsufficientStock: If the sale would take stock below zero.
        NoSellerSelected: If neither the command nor the store names a seller.
        UnknownPartner: If the seller is not a current partner.
        InvalidAmount: If the discount is negative, non-numeric, or larger
            than the subtotal.
    """

    _require_setup(store)
    quantity = parse_quantity(command.quantity)
    available = stock_on_hand(store)
    if available < quantity:
        raise _reject(InsufficientStock(f"Not enough stock: {available} on hand, {quantity} requested"))
    seller = _resolve_seller(store, command.seller)
    discount = parse_amount(command.discount, allow_zero=True, label="Discount")
    notes = check_text(command.notes, label="Notes")

    unit_price = round_unit_amount(effective_sell_price(store))
    subtotal = unit_price * quantity
    if discount > subtotal:
        raise _reject(InvalidAmount(f"Discount {discount} exceeds the sale subtotal {subtotal}"))

    timestamp = _resolve_timestamp(store, command.timestamp)
    sale = SaleRow(
        sale_id=_allocate_record_id("S", timestamp, [row.sale_id for row in store.sales]),
        timestamp=timestamp,
        quantity=quantity,
        price_per_unit=unit_price,
        cost_price=round_unit_amount(average_cost_price(store)),
        discount=discount,
        total=subtotal - discount,
        seller=seller.name,
        seller_is_guest=seller.is_guest,
        notes=notes,
    )
    store.sales.append(sale)
    log.info(
        "Recorded sale '%s' by '%s' (quantity=%s, total=%s)",
        sale.sale_id,
        sale.seller,
        quantity,
        sale.total,
    )
    store.notify(RecordKind.SALE, "added", sale.sale_id)
    return sale


def record_quick_sale(
    store: LedgerStore,
    quantity: int,
    *,
    seller: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Record one of the fixed-size quick sales (no discount, fixed notes).

    Raises:
        InvalidQuantity: If ``quantity`` is not one of the quick sale sizes.
    """

    if quantity not in QUICK_SALE_QUANTITIES:
        raise _reject(InvalidQuantity(f"Quick sale quantity must be one of {QUICK_SALE_QUANTITIES}"))
    return record_sale(
        store,
        SaleCommand(quantity=quantity, seller=seller, discount=ZERO, notes=QUICK_SALE_NOTES, timestamp=timestamp),
    )


def record_expense(store: LedgerStore, command: ExpenseCommand) -> ExpenseRow:
    """Validate and append a business expense.

    Expenses recorded here are never stock purchases; a blank description
    becomes :data:`DEFAULT_EXPENSE_DESCRIPTION`.
    """

    _require_setup(store)
    amount = parse_amount(command.amount)
    description = check_text((command.description or "").strip(), label="Description") or DEFAULT_EXPENSE_DESCRIPTION

    timestamp = _resolve_timestamp(store, command.timestamp)
    expense = ExpenseRow(
        expense_id=_allocate_record_id("E", timestamp, [row.expense_id for row in store.expenses]),
        timestamp=timestamp,
        amount=amount,
        description=description,
        is_stock_purchase=False,
    )
    store.expenses.append(expense)
    log.info("Recorded expense '%s' (amount=%s, description=%s)", expense.expense_id, amount, description)
    store.notify(RecordKind.EXPENSE, "added", expense.expense_id)
    return expense


def record_withdrawal(store: LedgerStore, command: WithdrawalCommand) -> WithdrawalRow:
    """Validate and append a partner withdrawal.

    Raises:
        InvalidAmount: If the amount is not positive.
        UnknownPartner: If no partner is named or the name is unknown.
        GuestWithdrawalForbidden: If the partner is a guest.
    """

    _require_setup(store)
    amount = parse_amount(command.amount)
    name = command.person if command.person is not None else store.withdrawal_target
    if name is None or not str(name).strip():
        raise _reject(UnknownPartner("Select who is withdrawing"))
    partner = store.find_partner(str(name).strip())
    if partner is None:
        raise _reject(UnknownPartner(f"Unknown partner: {name}"))
    if partner.is_guest:
        raise _reject(GuestWithdrawalForbidden(f"Guest '{partner.name}' cannot withdraw money"))

    timestamp = _resolve_timestamp(store, command.timestamp)
    withdrawal = WithdrawalRow(
        withdrawal_id=_allocate_record_id("W", timestamp, [row.withdrawal_id for row in store.withdrawals]),
        timestamp=timestamp,
        amount=amount,
        person=partner.name,
    )
    store.withdrawals.append(withdrawal)
    log.info("Recorded withdrawal '%s' by '%s' (amount=%s)", withdrawal.withdrawal_id, partner.name, amount)
    store.notify(RecordKind.WITHDRAWAL, "added", withdrawal.withdrawal_id)
    return withdrawal


def _repoint_defaults(store: LedgerStore) -> None:
    names = [partner.name for partner in store.partners]
    if store.selected_seller not in names:
        store.selected_seller = names[0] if names else None
    non_guests = [partner.name for partner in store.non_guest_partners()]
    if store.withdrawal_target not in non_guests:
        store.withdrawal_target = non_guests[0] if non_guests else None


def _validated_partner(store_partners: Sequence[PartnerRow], name: str, is_guest: bool) -> PartnerRow:
    clean = (name or "").strip()
    if not clean:
        raise _reject(InvalidPartnerName())
    check_text(clean, label="Partner name")
    if any(partner.name == clean for partner in store_partners):
        raise _reject(DuplicatePartner(f"Partner already exists: {clean}"))
    return PartnerRow(name=clean, is_guest=bool(is_guest))


def add_partner(store: LedgerStore, name: str, *, is_guest: bool = False) -> PartnerRow:
    """Append a partner (or guest seller) with a unique, non-blank name."""

    _require_setup(store)
    partner = _validated_partner(store.partners, name, is_guest)
    store.partners.append(partner)
    _repoint_defaults(store)
    log.info("Added %s '%s'", "guest" if partner.is_guest else "partner", partner.name)
    store.notify(RecordKind.PARTNER, "added", partner.name)
    return partner


def remove_partner(store: LedgerStore, name: str) -> PartnerRow:
    """Remove a partner, keeping at least one partner (guest or not) in place.

    Historical sales and withdrawals keep the removed name. Session defaults
    that pointed at the partner move to the first remaining partner (first
    remaining non-guest for the withdrawal target).

    Raises:
        LastPartnerRemoval: If this is the only partner.
        UnknownPartner: If no partner has this name.
    """

    _require_setup(store)
    if len(store.partners) <= 1:
        raise _reject(LastPartnerRemoval())
    partner = store.find_partner(name)
    if partner is None:
        raise _reject(UnknownPartner(f"Unknown partner: {name}"))

    store.partners.remove(partner)
    _repoint_defaults(store)
    log.info("Removed partner '%s'", partner.name)
    store.notify(RecordKind.PARTNER, "removed", partner.name)
    return partner


def select_seller(store: LedgerStore, name: str) -> PartnerRow:
    """Make ``name`` the default seller for sales that do not name one."""

    partner = store.find_partner(name)
    if partner is None:
        raise _reject(UnknownPartner(f"Unknown seller: {name}"))
    store.selected_seller = partner.name
    return partner


def select_withdrawal_target(store: LedgerStore, name: str) -> PartnerRow:
    """Make ``name`` the default partner for withdrawals that do not name one."""

    partner = store.find_partner(name)
    if partner is None:
        raise _reject(UnknownPartner(f"Unknown partner: {name}"))
    if partner.is_guest:
        raise _reject(GuestWithdrawalForbidden(f"Guest '{partner.name}' cannot withdraw money"))
    store.withdrawal_target = partner.name
    return partner


def update_default_sell_price(store: LedgerStore, price: Money) -> Decimal:
    """Replace the default sell-price setting with a positive price."""

    _require_setup(store)
    value = parse_amount(price, label="Sell price")
    store.default_sell_price = value
    log.info("Default sell price set to %s", value)
    store.notify(RecordKind.SETTINGS, "updated")
    return value


def _delete_record(store: LedgerStore, records: list, id_attribute: str, record_id: str, kind: RecordKind):
    _require_setup(store)
    for index, record in enumerate(records):
        if getattr(record, id_attribute) == record_id:
            del records[index]
            log.info("Deleted %s '%s'", kind.value.lower(), record_id)
            store.notify(kind, "removed", record_id)
            return record
    raise _reject(UnknownRecord(f"Unknown {kind.value.lower().replace('_', ' ')} id: {record_id}"))


def delete_sale(store: LedgerStore, sale_id: str) -> SaleRow:
    return _delete_record(store, store.sales, "sale_id", sale_id, RecordKind.SALE)


def delete_expense(store: LedgerStore, expense_id: str) -> ExpenseRow:
    return _delete_record(store, store.expenses, "expense_id", expense_id, RecordKind.EXPENSE)


def delete_withdrawal(store: LedgerStore, withdrawal_id: str) -> WithdrawalRow:
    return _delete_record(store, store.withdrawals, "withdrawal_id", withdrawal_id, RecordKind.WITHDRAWAL)


def delete_stock_lot(store: LedgerStore, lot_id: str) -> StockLotRow:
    return _delete_record(store, store.stock_lots, "lot_id", lot_id, RecordKind.STOCK_LOT)


def reset_all(store: LedgerStore, confirmation_code: str) -> None:
    """Erase the whole ledger and require first-run setup again.

    Raises:
        InvalidResetCode: Unless ``confirmation_code`` is exactly
            :data:`RESET_CONFIRMATION_CODE`.
    """

    if confirmation_code != RESET_CONFIRMATION_CODE:
        raise _reject(InvalidResetCode())

    store.stock_lots.clear()
    store.sales.clear()
    store.expenses.clear()
    store.withdrawals.clear()
    store.partners.clear()
    store.business_name = ""
    store.default_sell_price = ZERO
    store.initial_cash = ZERO
    store.setup_completed = False
    store.selected_seller = None
    store.withdrawal_target = None
    log.warning("All ledger data has been reset")
    store.notify(RecordKind.SETTINGS, "reset")


def run_first_time_setup(
    store: LedgerStore,
    command: SetupCommand,
    *,
    default_business_name: str = DEFAULT_BUSINESS_NAME,
) -> LedgerStore:
    """Populate an empty store from the first-run setup answers.

    The opening stock lot is only created when both its quantity and cost
    are positive; the default sell price, when positive, doubles as the lot's
    sell price.

    Raises:
        SetupAlreadyCompleted: If the store has already been set up.
        InvalidPartnerName, DuplicatePartner: For bad partner entries.
        NoProfitSharingPartner: If every partner is a guest.
        InvalidAmount: For negative or non-numeric cash or sell price.
    """

    if store.setup_completed:
        raise _reject(SetupAlreadyCompleted())

    partners: List[PartnerRow] = []
    for entry in command.partners:
        partners.append(_validated_partner(partners, entry.name, entry.is_guest))
    if not any(not partner.is_guest for partner in partners):
        raise _reject(NoProfitSharingPartner())

    initial_cash = parse_amount(command.initial_cash, allow_zero=True, label="Initial cash")
    sell_price = parse_amount(command.default_sell_price, allow_zero=True, label="Sell price")
    opening_quantity = _to_decimal(command.initial_stock_quantity)
    opening_cost = _to_decimal(command.initial_cost_price)
    business_name = check_text((command.business_name or "").strip(), label="Business name") or default_business_name

    timestamp = store.now()
    store.partners[:] = partners
    store.business_name = business_name
    store.initial_cash = initial_cash
    store.default_sell_price = sell_price
    store.stock_lots.clear()
    store.sales.clear()
    store.expenses.clear()
    store.withdrawals.clear()
    if opening_quantity is not None and opening_cost is not None and opening_quantity >= 1 and opening_cost > ZERO:
        lot_sell_price = sell_price if sell_price > ZERO else None
        store.stock_lots.append(
            StockLotRow(
                lot_id=generate_record_id("L", when=timestamp),
                timestamp=timestamp,
                quantity=int(opening_quantity),
                cost_price=opening_cost,
                sell_price=lot_sell_price,
                profit_per_unit=lot_sell_price - opening_cost if lot_sell_price is not None else None,
            )
        )
    store.setup_completed = True
    store.selected_seller = None
    store.withdrawal_target = None
    _repoint_defaults(store)
    log.info(
        "Completed first-run setup for '%s' with %d partners",
        store.business_name,
        len(partners),
    )
    store.notify(RecordKind.SETTINGS, "setup")
    return store


# ---------------------------------------------------------------------------
# Runtime context and persistence
# ---------------------------------------------------------------------------


class WorkbookPersistence:
    """Store listener that writes every change to the ledger workbook.

    Failures are logged and kept in :attr:`errors`; the in-memory store stays
    authoritative and nothing is retried.
    """

    def __init__(self, workbook: Workbook, destination: Path) -> None:
        self.workbook = workbook
        self.destination = destination
        self.errors: List[Exception] = []

    def __call__(self, event: StoreChanged) -> None:
        # Unstorable cell values surface as IllegalCharacterError or ValueError.
        try:
            data_manager.write_snapshot(self.workbook, event.snapshot, setup_completed=event.setup_completed)
            data_manager.save_workbook(self.workbook, self.destination)
        except (OSError, ValueError, IllegalCharacterError) as error:
            log.error("Failed to persist ledger after %s %s: %s", event.kind.value, event.action, error)
            self.errors.append(error)
            return
        log.debug("Persisted ledger to '%s' after %s %s", self.destination, event.kind.value, event.action)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> RuntimeContext:
    """Load configuration, the ledger workbook, and an attached store.

    A missing workbook is created empty. When the workbook holds no
    completed setup the returned store is empty with ``setup_completed``
    set to ``False``.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        RuntimeError: On a schema version mismatch.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    _check_schema_version(settings)

    if not settings.data_file.exists():
        log.info("Creating new ledger workbook at '%s'", settings.data_file)
        setup_workbook.create_ledger_workbook(settings.data_file)
    workbook = data_manager.open_workbook(settings.data_file)

    store = _build_store(data_manager.load_snapshot(workbook), clock)

    persistence = WorkbookPersistence(workbook, settings.data_file)
    store.subscribe(persistence)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, store=store, persistence=persistence)


def _check_schema_version(settings: data_manager.ConfigSettings) -> None:
    if settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, settings.schema_version)
        )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    _check_schema_version(context.settings)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the ledger from disk, dropping the in-memory store.

    The new store keeps the clock of the old one.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    store = _build_store(data_manager.load_snapshot(workbook), context.store.clock)
    persistence = WorkbookPersistence(workbook, context.settings.data_file)
    store.subscribe(persistence)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, store=store, persistence=persistence)


def _build_store(snapshot: Optional[LedgerSnapshot], clock: Optional[Callable[[], datetime]]) -> LedgerStore:
    if snapshot is not None:
        return LedgerStore.from_snapshot(snapshot, clock=clock)
    store = LedgerStore()
    if clock is not None:
        store.clock = clock
    return store
