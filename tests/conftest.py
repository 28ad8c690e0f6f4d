"""Shared pytest fixtures and utilities for caterer ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from caterer_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from caterer_ledger.pricing import LineItem  # noqa: E402
from caterer_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_CATERER_ID = "C001"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Receipts]\n"
    "Directory = {receipts_dir}\n"
    "MaxBytes = {max_bytes}\n\n"
    "[Billing]\n"
    "CurrencySymbol = ₹\n"
    "AllowOverpayment = {allow_overpayment}\n"
    "LockTimeoutSeconds = {lock_timeout}\n\n"
    "[Defaults]\n"
    "PaymentMethod = cash\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    receipts_dir: Path
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
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "ledger.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
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
        business_name: str = "Test Wholesale",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        allow_overpayment: bool = False,
        lock_timeout: float = 5.0,
        max_bytes: int = constants.DEFAULT_RECEIPT_MAX_BYTES,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        receipts_dir = bundle_dir / "receipts"
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=workbook_path.name if make_relative else str(workbook_path),
                business_name=business_name,
                schema_version=schema_version,
                receipts_dir="receipts" if make_relative else str(receipts_dir),
                max_bytes=max_bytes,
                allow_overpayment=str(allow_overpayment).lower(),
                lock_timeout=lock_timeout,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            receipts_dir=receipts_dir,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def caterer(runtime_context: core_logic.RuntimeContext) -> data_manager.CatererRow:
    """Register the default caterer in the runtime context's workbook."""

    return core_logic.add_caterer(
        runtime_context,
        core_logic.NewCatererCommand(
            caterer_id=DEFAULT_CATERER_ID,
            caterer_name="Annapurna Caterers",
            contact_person="Ravi",
            phone_number="9800000001",
            email="orders@annapurna.example",
        ),
    )


@pytest.fixture
def sale_factory(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.SaleRecord]:
    """Create single-line sales whose grand total equals ``amount``."""

    def _create_sale(
        amount: str = "1000.00",
        *,
        caterer_id: str = DEFAULT_CATERER_ID,
        sell_date: Optional[date] = None,
        bill_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> data_manager.SaleRecord:
        return core_logic.create_sale(
            runtime_context,
            core_logic.SaleCommand(
                caterer_id=caterer_id,
                line_items=[LineItem(product_name="Basmati Rice", quantity=Decimal("1"), rate=Decimal(amount))],
                bill_number=bill_number,
                sell_date=sell_date or date(2026, 10, 1),
                notes=notes,
            ),
        )

    return _create_sale


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="caterer-ledger", description="Caterer ledger CLI")


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


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
