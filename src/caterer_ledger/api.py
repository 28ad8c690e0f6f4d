"""HTTP API for the caterer ledger.

A thin Flask front-end over :mod:`caterer_ledger.core_logic`. Routes translate
JSON (or multipart form) requests into command objects, and the registered
error handlers translate the ledger's exceptions into status codes:

* ``400`` malformed input and other business rule failures
* ``404`` unknown caterer, sale or receipt
* ``409`` settled bills, overpayments and blocked deletes
* ``413``/``415`` rejected receipt uploads
* ``503`` retryable failures, sent with ``Retry-After``
"""

from __future__ import annotations

import argparse
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from werkzeug.exceptions import RequestEntityTooLarge

from . import core_logic, log, receipts
from .aggregation import CatererSummary, SaleSummary
from .constants import ChargeType, PaymentOption, PaymentStatus
from .data_manager import CatererRow, PaymentRow, SaleRecord
from .errors import (
    RETRYABLE_ERRORS,
    BillAlreadySettled,
    BusinessRuleViolation,
    InvalidAmount,
    MissingReferenceError,
    PaymentExceedsBalance,
    ReferentialIntegrityError,
    StoreUnavailable,
    UnsupportedMedia,
)
from .money import MoneyValue
from .pricing import Adjustment, LineItem


api = Blueprint("api", __name__, url_prefix="/api")

CONTEXT_KEY = "caterer_ledger"
# Room for form fields and multipart framing around the receipt itself.
UPLOAD_OVERHEAD_BYTES = 64 * 1024


def ledger() -> core_logic.RuntimeContext:
    return current_app.extensions[CONTEXT_KEY]


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _date_or_none(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def caterer_to_json(caterer: CatererRow) -> Dict[str, Any]:
    return {
        "caterer_id": caterer.caterer_id,
        "caterer_name": caterer.caterer_name,
        "contact_person": caterer.contact_person,
        "phone_number": caterer.phone_number,
        "email": caterer.email,
        "address": caterer.address,
        "gst_number": caterer.gst_number,
        "balance_due": str(caterer.balance_due),
        "total_orders": caterer.total_orders,
        "total_amount": str(caterer.total_amount),
        "last_order_date": _date_or_none(caterer.last_order_date),
        "is_active": caterer.is_active,
    }


def summary_to_json(summary: CatererSummary) -> Dict[str, Any]:
    return {
        "balance_due": str(summary.balance_due),
        "total_orders": summary.total_orders,
        "total_amount": str(summary.total_amount),
        "last_order_date": _date_or_none(summary.last_order_date),
    }


def bill_to_json(summary: SaleSummary) -> Dict[str, Any]:
    return {
        "sale_id": summary.sale_id,
        "bill_number": summary.bill_number,
        "grand_total": str(summary.grand_total),
        "total_paid": str(summary.total_paid),
        "pending": str(summary.pending),
        "payment_count": summary.payment_count,
        "payment_status": summary.status.value,
    }


def payment_to_json(payment: PaymentRow) -> Dict[str, Any]:
    return {
        "payment_id": payment.payment_id,
        "sale_id": payment.sale_id,
        "paid_at": payment.paid_at_iso,
        "payment_method": payment.payment_method,
        "amount_paid": str(payment.amount_paid),
        "reference_number": payment.reference_number,
        "notes": payment.notes,
        "receipt_image": payment.receipt_image,
    }


def sale_to_json(record: SaleRecord, summary: Optional[SaleSummary] = None) -> Dict[str, Any]:
    """Serialize a sale with its items, payments and, when given, figures."""
    sale = record.sale
    body: Dict[str, Any] = {
        "sale_id": sale.sale_id,
        "caterer_id": sale.caterer_id,
        "bill_number": sale.bill_number,
        "sell_date": sale.sell_date.isoformat(),
        "items_total": str(sale.items_total),
        "other_charges_total": str(sale.other_charges_total),
        "discount_total": str(sale.discount_total),
        "grand_total": str(sale.grand_total),
        "notes": sale.notes,
        "created_at": sale.created_at_iso,
        "items": [
            {
                "product_name": item.product_name,
                "quantity": str(item.quantity),
                "unit": item.unit,
                "rate": str(item.rate),
                "gst_percentage": str(item.gst_percentage),
                "amount": str(item.amount),
            }
            for item in record.items
        ],
        "payments": [payment_to_json(payment) for payment in record.payments],
    }
    if summary is not None:
        body.update(bill_to_json(summary))
    return body


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def _json_body() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        raise BusinessRuleViolation("Request body must be a JSON object")
    return payload


def _money(raw: Any, label: str) -> MoneyValue:
    # JSON numbers arrive as floats; their shortest repr is the typed value.
    if isinstance(raw, float):
        raw = repr(raw)
    if raw is None:
        raise InvalidAmount(f"{label} is required")
    return MoneyValue.parse(raw)


def _decimal(raw: Any, label: str) -> Decimal:
    if isinstance(raw, bool) or raw is None:
        raise InvalidAmount(f"{label} must be a number")
    try:
        value = Decimal(repr(raw) if isinstance(raw, float) else str(raw).strip())
    except InvalidOperation as exc:
        raise InvalidAmount(f"{label} is not a number: {raw!r}") from exc
    if not value.is_finite():
        raise InvalidAmount(f"{label} must be a finite number: {raw!r}")
    return value


def _date(raw: Any, label: str) -> Optional[date]:
    if raw in (None, ""):
        return None
    try:
        return date.fromisoformat(str(raw))
    except ValueError as exc:
        raise BusinessRuleViolation(f"{label} must be an ISO date (YYYY-MM-DD)") from exc


def _adjustments(entries: Any, label: str) -> Tuple[Adjustment, ...]:
    if not entries:
        return ()
    parsed = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise BusinessRuleViolation(f"Each {label} entry must be an object")
        parsed.append(
            Adjustment(
                name=str(entry.get("name") or label),
                value=_decimal(entry.get("value"), f"{label} value"),
                charge_type=ChargeType(str(entry.get("type") or ChargeType.FIXED.value).lower()),
            )
        )
    return tuple(parsed)


def parse_sale_command(payload: Mapping[str, Any]) -> core_logic.SaleCommand:
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise BusinessRuleViolation("At least one item is required")
    line_items = []
    for entry in items:
        if not isinstance(entry, Mapping) or not str(entry.get("product_name") or "").strip():
            raise BusinessRuleViolation("Each item needs a product_name")
        line_items.append(
            LineItem(
                product_name=str(entry["product_name"]).strip(),
                quantity=_decimal(entry.get("quantity"), "quantity"),
                rate=_decimal(entry.get("rate"), "rate"),
                unit=str(entry.get("unit") or "kg"),
                gst_percentage=_decimal(entry.get("gst_percentage", 0), "gst_percentage"),
            )
        )
    return core_logic.SaleCommand(
        caterer_id=str(payload.get("caterer_id") or ""),
        line_items=line_items,
        charges=_adjustments(payload.get("other_charges"), "charge"),
        discounts=_adjustments(payload.get("discounts"), "discount"),
        bill_number=payload.get("bill_number") or None,
        sell_date=_date(payload.get("sell_date"), "sell_date"),
        notes=payload.get("notes") or None,
    )


def _payment_fields() -> Tuple[Mapping[str, Any], Optional[core_logic.ReceiptUpload]]:
    """Read payment fields and an optional receipt from JSON or multipart."""
    if request.mimetype == "multipart/form-data":
        upload = request.files.get("receipt_image")
        receipt = None
        if upload is not None and upload.filename:
            receipt = core_logic.ReceiptUpload(
                data=upload.read(),
                content_type=upload.mimetype or "",
                filename=upload.filename,
            )
        return request.form, receipt

    payload = _json_body()
    receipt = None
    if payload.get("receipt_image"):
        content_type, data = receipts.decode_data_url(str(payload["receipt_image"]))
        receipt = core_logic.ReceiptUpload(
            data=data,
            content_type=content_type,
            filename=payload.get("receipt_filename") or None,
        )
    return payload, receipt


def parse_payment_command(
    context: core_logic.RuntimeContext,
    fields: Mapping[str, Any],
    receipt: Optional[core_logic.ReceiptUpload],
) -> core_logic.PaymentCommand:
    """Build a payment command; ``full``/``half`` use the current pending amount."""
    sale_id = str(fields.get("sale_id") or "").strip()
    if not sale_id:
        raise BusinessRuleViolation("sale_id is required")

    option_raw = str(fields.get("payment_option") or "").strip().lower()
    if option_raw and option_raw != PaymentOption.CUSTOM.value:
        amount = core_logic.derive_payment_amount(option_raw, core_logic.payable_amount(context, sale_id))
    else:
        amount = _money(fields.get("amount", fields.get("custom_amount")), "amount")

    return core_logic.PaymentCommand(
        sale_id=sale_id,
        amount=amount,
        payment_method=fields.get("payment_method") or None,
        reference_number=fields.get("reference_number") or None,
        notes=fields.get("notes") or None,
        receipt=receipt,
    )


def parse_sale_filters(args: Mapping[str, Any]) -> core_logic.SaleFilters:
    try:
        page = int(args.get("page", 1))
        limit = int(args.get("limit", 20))
    except (TypeError, ValueError) as exc:
        raise BusinessRuleViolation("page and limit must be integers") from exc
    status_raw = args.get("status") or None
    return core_logic.SaleFilters(
        search=args.get("search") or None,
        status=PaymentStatus(status_raw.lower()) if status_raw else None,
        date_from=_date(args.get("date_from"), "date_from"),
        date_to=_date(args.get("date_to"), "date_to"),
        min_amount=_money(args["min_amount"], "min_amount") if args.get("min_amount") else None,
        max_amount=_money(args["max_amount"], "max_amount") if args.get("max_amount") else None,
        page=page,
        limit=limit,
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@api.route("/caterers", methods=["GET"])
def list_caterers():
    include_inactive = request.args.get("include_inactive", "").lower() in {"1", "true", "yes"}
    caterers = core_logic.list_caterers(ledger(), include_inactive=include_inactive)
    return jsonify({"success": True, "caterers": [caterer_to_json(caterer) for caterer in caterers]})


@api.route("/caterers", methods=["POST"])
def add_caterer():
    payload = _json_body()
    command = core_logic.NewCatererCommand(
        caterer_id=str(payload.get("caterer_id") or ""),
        caterer_name=str(payload.get("caterer_name") or ""),
        contact_person=payload.get("contact_person") or None,
        phone_number=payload.get("phone_number") or None,
        email=payload.get("email") or None,
        address=payload.get("address") or None,
        gst_number=payload.get("gst_number") or None,
        is_active=core_logic.parse_flag(payload.get("is_active", True), "is_active"),
    )
    caterer = core_logic.add_caterer(ledger(), command)
    return jsonify({"success": True, "caterer": caterer_to_json(caterer)}), 201


@api.route("/caterers/<caterer_id>", methods=["GET"])
def get_caterer(caterer_id: str):
    caterer = core_logic.get_caterer(ledger(), caterer_id)
    return jsonify({"success": True, "caterer": caterer_to_json(caterer)})


@api.route("/caterers/<caterer_id>", methods=["PATCH"])
def update_caterer(caterer_id: str):
    caterer = core_logic.update_caterer(ledger(), caterer_id, dict(_json_body()))
    return jsonify({"success": True, "caterer": caterer_to_json(caterer)})


@api.route("/caterers/<caterer_id>", methods=["DELETE"])
def delete_caterer(caterer_id: str):
    core_logic.delete_caterer(ledger(), caterer_id)
    return jsonify({"success": True})


@api.route("/caterers/<caterer_id>/summary", methods=["GET"])
def caterer_summary(caterer_id: str):
    refresh = request.args.get("refresh", "").lower() in {"1", "true", "yes"}
    summary = core_logic.get_caterer_summary(ledger(), caterer_id, refresh=refresh)
    return jsonify({"success": True, "caterer_id": caterer_id, "summary": summary_to_json(summary)})


@api.route("/caterers/<caterer_id>/sales", methods=["GET"])
def caterer_sales(caterer_id: str):
    page = core_logic.list_sales(ledger(), caterer_id, parse_sale_filters(request.args))
    return jsonify(
        {
            "success": True,
            "sales": [sale_to_json(details.record, details.summary) for details in page.entries],
            "pagination": {"page": page.page, "limit": page.limit, "total": page.total},
        }
    )


@api.route("/sales", methods=["POST"])
def create_sale():
    record = core_logic.create_sale(ledger(), parse_sale_command(_json_body()))
    details = core_logic.get_sale_details(ledger(), record.sale.sale_id)
    return jsonify({"success": True, "sale": sale_to_json(details.record, details.summary)}), 201


@api.route("/sales/next-bill-number", methods=["GET"])
def next_bill_number():
    return jsonify({"success": True, "bill_number": core_logic.next_bill_number(ledger())})


@api.route("/sales/<sale_id>", methods=["GET"])
def get_sale(sale_id: str):
    details = core_logic.get_sale_details(ledger(), sale_id)
    return jsonify({"success": True, "sale": sale_to_json(details.record, details.summary)})


@api.route("/sales/<sale_id>/status", methods=["GET"])
def bill_status(sale_id: str):
    status = core_logic.get_bill_status(ledger(), sale_id)
    return jsonify({"success": True, "sale_id": sale_id, "payment_status": status.value})


@api.route("/sales/<sale_id>/overdue", methods=["POST"])
def mark_overdue(sale_id: str):
    status = core_logic.mark_overdue(ledger(), sale_id)
    return jsonify({"success": True, "sale_id": sale_id, "payment_status": status.value})


@api.route("/payments", methods=["POST"])
def record_payment():
    context = ledger()
    fields, receipt = _payment_fields()
    outcome = core_logic.record_payment(context, parse_payment_command(context, fields, receipt))
    return (
        jsonify(
            {
                "success": True,
                "message": "Payment recorded successfully",
                "caterer_id": outcome.caterer_id,
                "payment": payment_to_json(outcome.payment),
                "sale": bill_to_json(outcome.sale),
                "caterer_summary": summary_to_json(outcome.caterer_summary),
            }
        ),
        201,
    )


@api.route("/payments/receipts/<path:filename>", methods=["GET"])
def receipt_image(filename: str):
    path = receipts.resolve_receipt_path(ledger().settings.receipts_dir, filename)
    return send_file(path)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def status_for_error(error: Exception) -> int:
    """Map a ledger exception to an HTTP status code."""
    if isinstance(error, RETRYABLE_ERRORS):
        return 503
    if isinstance(error, UnsupportedMedia):
        return 413 if error.too_large else 415
    if isinstance(error, MissingReferenceError):
        return 404
    if isinstance(error, (PaymentExceedsBalance, BillAlreadySettled, ReferentialIntegrityError)):
        return 409
    return 400


def handle_ledger_error(error: Exception):
    status = status_for_error(error)
    if status >= 500:
        log.error("Request %s %s failed: %s", request.method, request.path, error)
    else:
        log.warning("Request %s %s rejected (%d): %s", request.method, request.path, status, error)
    response = jsonify({"success": False, "error": str(error)})
    response.status_code = status
    if status == 503:
        response.headers["Retry-After"] = "1"
    return response


def handle_upload_too_large(error: RequestEntityTooLarge):
    limit = current_app.config.get("MAX_CONTENT_LENGTH")
    log.warning("Rejected request body over %s bytes", limit)
    return jsonify({"success": False, "error": f"File too large. Maximum request size is {limit} bytes"}), 413


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
    """Application factory for the ledger API.

    Args:
        test_config: Optional overrides. ``LEDGER_CONTEXT`` supplies a ready
            :class:`~caterer_ledger.core_logic.RuntimeContext`; otherwise one
            is loaded from ``LEDGER_CONFIG`` (a path to ``config.ini``) or by
            searching upward from the working directory.

    Returns:
        Flask: Configured application.
    """
    app = Flask(__name__)
    app.config.from_mapping(LEDGER_CONFIG=None, LEDGER_CONTEXT=None)
    if test_config:
        app.config.update(test_config)

    context = app.config["LEDGER_CONTEXT"]
    if context is None:
        config_path = app.config["LEDGER_CONFIG"]
        context = core_logic.load_runtime_context(Path(config_path) if config_path else None)
    core_logic.ensure_schema_version(context)
    app.extensions[CONTEXT_KEY] = context
    if app.config.get("MAX_CONTENT_LENGTH") is None:
        app.config["MAX_CONTENT_LENGTH"] = context.settings.receipt_max_bytes * 2 + UPLOAD_OVERHEAD_BYTES

    app.register_blueprint(api)
    app.register_error_handler(BusinessRuleViolation, handle_ledger_error)
    app.register_error_handler(StoreUnavailable, handle_ledger_error)
    app.register_error_handler(ValueError, handle_ledger_error)
    app.register_error_handler(RequestEntityTooLarge, handle_upload_too_large)

    log.info("Ledger API ready for '%s'", context.settings.business_name)
    return app


def main(argv: Sequence[str] | None = None) -> int:
    """Run the development server."""
    parser = argparse.ArgumentParser(prog="caterer-ledger-api", description="Serve the caterer ledger API.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.ini.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    args = parser.parse_args(argv)

    app = create_app({"LEDGER_CONFIG": args.config})
    app.run(host=args.host, port=args.port, threaded=True)
    return 0
