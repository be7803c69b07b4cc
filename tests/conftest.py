"""Shared pytest fixtures and utilities for shop ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from shop_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from shop_ledger.data_manager import PartnerRow  # noqa: E402
from shop_ledger.setup_workbook import create_ledger_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
# Shop runs three hours behind UTC; the offset is the local calendar.
SHOP_TZ = timezone(timedelta(hours=-3))
FIXED_NOW = datetime(2025, 3, 14, 15, 30, 0, tzinfo=SHOP_TZ)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "BusinessName = {business_name}\n"
)


class FakeClock:
    """Callable clock returning a controllable, timezone-aware moment."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **delta: float) -> datetime:
        self.moment = self.moment + timedelta(**delta)
        return self.moment

    def set(self, moment: datetime) -> datetime:
        self.moment = moment
        return moment


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def clock() -> FakeClock:
    """Return a clock frozen at :data:`FIXED_NOW` that tests may advance."""

    return FakeClock(FIXED_NOW)


@pytest.fixture
def empty_store(clock: FakeClock) -> core_logic.LedgerStore:
    """Return a store that has not completed first-run setup."""

    return core_logic.LedgerStore(clock=clock)


@pytest.fixture
def setup_store(clock: FakeClock) -> Callable[..., core_logic.LedgerStore]:
    """Factory that returns a store after running first-run setup."""

    def _create(
        partners: tuple[PartnerRow, ...] = (PartnerRow("Alice"), PartnerRow("Bob")),
        *,
        business_name: str = "Corner Shop",
        initial_cash: str = "0",
        default_sell_price: str = "0",
        initial_stock_quantity: str | None = None,
        initial_cost_price: str | None = None,
    ) -> core_logic.LedgerStore:
        store = core_logic.LedgerStore(clock=clock)
        core_logic.run_first_time_setup(
            store,
            core_logic.SetupCommand(
                partners=partners,
                business_name=business_name,
                initial_cash=initial_cash,
                default_sell_price=default_sell_price,
                initial_stock_quantity=initial_stock_quantity,
                initial_cost_price=initial_cost_price,
            ),
        )
        return store

    return _create


@pytest.fixture
def store(setup_store: Callable[..., core_logic.LedgerStore]) -> core_logic.LedgerStore:
    """Return a set-up store with partners Alice and Bob and guest Gil."""

    return setup_store((PartnerRow("Alice"), PartnerRow("Bob"), PartnerRow("Gil", is_guest=True)))


@pytest.fixture
def stocked_store(store: core_logic.LedgerStore) -> core_logic.LedgerStore:
    """Return :func:`store` holding ten units bought at 50 to sell at 80."""

    core_logic.add_stock_lot(store, core_logic.StockCommand(quantity=10, cost_price="50", sell_price="80"))
    return store


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an empty ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_ledger_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        create_workbook: bool = True,
        business_name: str = "Test Shop",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        if create_workbook:
            workbook_path = workbook_factory(subdir=bundle_name)
        else:
            workbook_path = bundle_dir / "ledger.xlsx"
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                business_name=business_name,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path, clock: FakeClock) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file, clock=clock)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="shop-ledger", description="Shop ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
