"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import date
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from caterer_ledger import constants, data_manager
from caterer_ledger.aggregation import CatererSummary
from caterer_ledger.errors import StoreUnavailable
from caterer_ledger.money import ZERO, MoneyValue
from caterer_ledger.setup_excel import SHEET_COLUMNS


def _caterer(caterer_id: str = "C001", **overrides) -> data_manager.CatererRow:
    values = dict(
        caterer_id=caterer_id,
        caterer_name="Annapurna",
        contact_person=None,
        phone_number="9800000001",
        email=None,
        address=None,
        gst_number=None,
        balance_due=ZERO,
        total_orders=0,
        total_amount=ZERO,
        last_order_date=None,
        is_active=True,
    )
    values.update(overrides)
    return data_manager.CatererRow(**values)


def _sale(sale_id: str = "S1", caterer_id: str = "C001", total: str = "1000.00", status=None) -> data_manager.SaleRow:
    amount = MoneyValue.parse(total)
    return data_manager.SaleRow(
        sale_id=sale_id,
        caterer_id=caterer_id,
        bill_number="#0001",
        sell_date=date(2026, 3, 14),
        items_total=amount,
        other_charges_total=ZERO,
        discount_total=ZERO,
        grand_total=amount,
        payment_status=status,
        notes=None,
        created_at_iso="2026-03-14T10:00:00+00:00",
    )


def _payment(payment_id: str, sale_id: str = "S1", amount: str = "100.00") -> data_manager.PaymentRow:
    return data_manager.PaymentRow(
        payment_id=payment_id,
        sale_id=sale_id,
        paid_at_iso="2026-03-15T10:00:00+00:00",
        payment_method="upi",
        amount_paid=MoneyValue.parse(amount),
        reference_number="UTR123",
        notes=None,
        receipt_image=None,
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
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
    assert parser.get("System", "BusinessName") == "Test Wholesale"
    assert parser.get("Billing", "CurrencySymbol") == "₹"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile and receipt entries are anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.receipts_dir == (bundle.config_path.parent / "receipts").resolve()
    assert settings.lock_timeout_seconds == 5.0
    assert settings.allow_overpayment is False


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\nBusinessName = X\nSchemaVersion = 2.0.0\n")

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.receipt_max_bytes == constants.DEFAULT_RECEIPT_MAX_BYTES
    assert settings.currency_symbol == constants.DEFAULT_CURRENCY_SYMBOL
    assert settings.default_payment_method is constants.PaymentMethod.CASH
    assert settings.receipts_dir == (tmp_path / "receipts").resolve()


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


@pytest.mark.parametrize(
    "extra",
    [
        "[Receipts]\nMaxBytes = 0\n",
        "[Billing]\nLockTimeoutSeconds = -1\n",
        "[Defaults]\nPaymentMethod = barter\n",
    ],
)
def test_parse_settings_rejects_unusable_optional_values(tmp_path, extra):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = l.xlsx\nBusinessName = X\nSchemaVersion = 2.0.0\n" + extra)
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert workbook.sheetnames == list(SHEET_COLUMNS)


def test_open_workbook_unreadable_file_is_store_unavailable(monkeypatch, ledger_workbook_path):
    def denied(path):
        raise PermissionError(f"denied: {path}")

    monkeypatch.setattr(openpyxl, "load_workbook", denied)

    with pytest.raises(StoreUnavailable):
        data_manager.open_workbook(ledger_workbook_path)


def test_open_workbook_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_replaces_file_without_leftovers(ledger_workbook_path):
    """Atomic saves leave no temporary siblings behind."""

    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_caterer(workbook, _caterer())

    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = openpyxl.load_workbook(ledger_workbook_path)
    assert reloaded["Caterers"].max_row == 2
    assert [path.name for path in ledger_workbook_path.parent.iterdir()] == [ledger_workbook_path.name]


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def test_caterer_round_trip_through_disk(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    original = _caterer(
        balance_due=MoneyValue.parse("1100.50"),
        total_orders=2,
        total_amount=MoneyValue.parse("1500.50"),
        last_order_date=date(2026, 1, 5),
    )
    data_manager.append_caterer(workbook, original)
    data_manager.save_workbook(workbook, ledger_workbook_path)

    reloaded = data_manager.open_workbook(ledger_workbook_path)

    assert data_manager.find_caterer(reloaded, "C001") == original


def test_numeric_caterer_ids_are_read_back_as_text(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    workbook["Caterers"].append([1001, "Numeric", None, None, None, None, None, 0, 0, 0, None, True])

    caterer = data_manager.find_caterer(workbook, "1001")

    assert caterer is not None and caterer.caterer_id == "1001"


def test_sale_status_cells_map_unknown_to_unset(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_sale(workbook, _sale("S1"))
    data_manager.update_sale(workbook, "S1", field_values={"PaymentStatus": "unknown"})
    data_manager.append_sale(workbook, _sale("S2", status=constants.PaymentStatus.OVERDUE))

    statuses = {sale.sale_id: sale.payment_status for sale in data_manager.iter_sales(workbook)}

    assert statuses == {"S1": None, "S2": constants.PaymentStatus.OVERDUE}


def test_load_sales_with_payments_groups_by_sale(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_sale(workbook, _sale("S1"))
    data_manager.append_sale(workbook, _sale("S2"))
    data_manager.append_sale(workbook, _sale("S3", caterer_id="C002"))
    data_manager.append_payment(workbook, _payment("P1", "S1"))
    data_manager.append_payment(workbook, _payment("P2", "S1"))
    data_manager.append_payment(workbook, _payment("P3", "S3"))

    history = data_manager.load_sales_with_payments(workbook, "C001")

    assert [record.sale.sale_id for record in history] == ["S1", "S2"]
    assert [payment.payment_id for payment in history[0].payments] == ["P1", "P2"]
    assert history[1].payments == ()


def test_load_sales_with_payments_empty_for_unknown_caterer(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    assert data_manager.load_sales_with_payments(workbook, "nobody") == []


def test_load_sale_record_includes_items(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_sale(workbook, _sale("S1"))
    data_manager.append_sale_item(
        workbook,
        data_manager.SaleItemRow("S1", "Rice", Decimal("2.5"), "kg", Decimal("40"), Decimal("5"), MoneyValue.parse("105.00")),
    )

    record = data_manager.load_sale_record(workbook, "S1")

    assert record is not None
    assert record.items[0].quantity == Decimal("2.5")
    assert record.items[0].amount == MoneyValue.parse("105.00")
    assert data_manager.load_sale_record(workbook, "S404") is None


def test_save_caterer_summary_writes_only_derived_columns(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_caterer(workbook, _caterer(email="a@example.com"))

    data_manager.save_caterer_summary(
        workbook,
        "C001",
        CatererSummary(
            balance_due=MoneyValue.parse("-200.00"),
            total_orders=1,
            total_amount=MoneyValue.parse("1000.00"),
            last_order_date=date(2026, 3, 14),
        ),
    )

    caterer = data_manager.find_caterer(workbook, "C001")
    assert caterer.balance_due == MoneyValue.parse("-200.00")
    assert caterer.total_orders == 1
    assert caterer.last_order_date == date(2026, 3, 14)
    assert caterer.email == "a@example.com"


def test_update_row_rejects_unknown_row_or_column(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_caterer(workbook, _caterer())

    with pytest.raises(KeyError):
        data_manager.update_caterer(workbook, "C404", field_values={"CatererName": "x"})
    with pytest.raises(KeyError):
        data_manager.update_caterer(workbook, "C001", field_values={"Nickname": "x"})


def test_delete_caterer_row_removes_only_that_caterer(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    data_manager.append_caterer(workbook, _caterer("C001"))
    data_manager.append_caterer(workbook, _caterer("C002"))

    data_manager.delete_caterer_row(workbook, "C001")

    assert [caterer.caterer_id for caterer in data_manager.iter_caterers(workbook)] == ["C002"]
    with pytest.raises(KeyError):
        data_manager.delete_caterer_row(workbook, "C001")


def test_locate_row_unknown_column(ledger_workbook_path):
    workbook = data_manager.open_workbook(ledger_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, "Sales", "Nope", "S1")
