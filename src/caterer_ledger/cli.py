"""Command-line entry points for the caterer ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing the results. Every mutating call in the business layer
saves the workbook itself, so the CLI never persists anything on its own.
"""

from __future__ import annotations

import argparse
import mimetypes
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .aggregation import CatererSummary
from .constants import ChargeType, PaymentOption, PaymentStatus
from .errors import RETRYABLE_ERRORS, BusinessRuleViolation, InvalidAmount
from .money import MoneyValue
from .pricing import Adjustment, LineItem


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="caterer-ledger",
        description="Command-line tools for the caterer ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and payments."""
    specs = {
        "add-caterer": register_add_caterer_command(subparsers),
        "delete-caterer": register_delete_caterer_command(subparsers),
        "create-sale": register_create_sale_command(subparsers),
        "pay": register_pay_command(subparsers),
        "mark-overdue": register_mark_overdue_command(subparsers),
        "recompute": register_recompute_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as summaries."""
    specs = {
        "summary": register_summary_command(subparsers),
        "bill-status": register_bill_status_command(subparsers),
        "sales": register_sales_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_caterer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-caterer``."""
    name = "add-caterer"
    help_text = "Register a new caterer in the Caterers sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--caterer-id", required=True)
        parser.add_argument("--caterer-name", required=True)
        parser.add_argument("--contact-person", default=None)
        parser.add_argument("--phone-number", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--address", default=None)
        parser.add_argument("--gst-number", default=None)
        parser.add_argument("--inactive", action="store_true", help="Mark the caterer as inactive on creation.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_caterer)


def register_delete_caterer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-caterer``."""
    name = "delete-caterer"
    help_text = "Delete a caterer that has no sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--caterer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_caterer)


def register_create_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-sale``."""
    name = "create-sale"
    help_text = "Bill a caterer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--caterer-id", required=True)
        parser.add_argument(
            "--item",
            action="append",
            required=True,
            dest="items",
            help="Line item as NAME:QUANTITY:RATE[:UNIT[:GST%%]]; repeat for more lines.",
        )
        parser.add_argument(
            "--charge",
            action="append",
            default=[],
            dest="charges",
            help="Extra charge as NAME:VALUE or NAME:VALUE%%.",
        )
        parser.add_argument(
            "--discount",
            action="append",
            default=[],
            dest="discounts",
            help="Discount as NAME:VALUE or NAME:VALUE%%.",
        )
        parser.add_argument("--bill-number", default=None)
        parser.add_argument("--sell-date", type=date.fromisoformat, default=None, help="ISO date (YYYY-MM-DD).")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_sale)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against a bill."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument(
            "--option",
            choices=[member.value for member in PaymentOption],
            default=PaymentOption.CUSTOM.value,
        )
        parser.add_argument("--amount", default=None, help="Required for --option custom.")
        parser.add_argument("--method", default=None, help="Payment method; defaults to config.ini.")
        parser.add_argument("--reference-number", default=None)
        parser.add_argument("--receipt", type=Path, default=None, help="Receipt image to attach.")
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay)


def register_mark_overdue_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``mark-overdue``."""
    name = "mark-overdue"
    help_text = "Flag an unpaid bill as overdue."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_mark_overdue)


def register_recompute_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``recompute``."""
    name = "recompute"
    help_text = "Rebuild caterer summaries from the sale and payment history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--caterer-id", default=None, help="Only this caterer (default: all).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recompute)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Display a caterer's balance and order totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--caterer-id", required=True)
        parser.add_argument("--refresh", action="store_true", help="Recompute before displaying.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary)


def register_bill_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bill-status``."""
    name = "bill-status"
    help_text = "Display the payment status of a bill."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bill_status)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List a caterer's bills, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--caterer-id", required=True)
        parser.add_argument("--search", default=None)
        parser.add_argument("--status", choices=[member.value for member in PaymentStatus], default=None)
        parser.add_argument("--from", dest="date_from", type=date.fromisoformat, default=None)
        parser.add_argument("--to", dest="date_to", type=date.fromisoformat, default=None)
        parser.add_argument("--page", type=int, default=1)
        parser.add_argument("--limit", type=int, default=20)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _decimal(raw: str, label: str) -> Decimal:
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise InvalidAmount(f"{label} is not a number: {raw!r}") from exc
    if not value.is_finite():
        raise InvalidAmount(f"{label} must be a finite number: {raw!r}")
    return value


def parse_line_item(raw: str) -> LineItem:
    """Parse ``NAME:QUANTITY:RATE[:UNIT[:GST]]`` into a :class:`LineItem`."""
    parts = raw.split(":")
    if len(parts) < 3 or len(parts) > 5 or not parts[0].strip():
        raise BusinessRuleViolation(f"Line item must look like NAME:QUANTITY:RATE[:UNIT[:GST]], got {raw!r}")
    return LineItem(
        product_name=parts[0].strip(),
        quantity=_decimal(parts[1], "Quantity"),
        rate=_decimal(parts[2], "Rate"),
        unit=parts[3].strip() if len(parts) > 3 and parts[3].strip() else "kg",
        gst_percentage=_decimal(parts[4], "GST") if len(parts) > 4 else Decimal("0"),
    )


def parse_adjustment(raw: str) -> Adjustment:
    """Parse ``NAME:VALUE`` or ``NAME:VALUE%`` into an :class:`Adjustment`."""
    name, separator, value = raw.partition(":")
    if not separator or not name.strip() or not value.strip():
        raise BusinessRuleViolation(f"Adjustment must look like NAME:VALUE or NAME:VALUE%, got {raw!r}")
    value = value.strip()
    if value.endswith("%"):
        return Adjustment(name=name.strip(), value=_decimal(value[:-1], name), charge_type=ChargeType.PERCENTAGE)
    return Adjustment(name=name.strip(), value=_decimal(value, name))


def translate_add_caterer(args: argparse.Namespace) -> core_logic.NewCatererCommand:
    return core_logic.NewCatererCommand(
        caterer_id=args.caterer_id,
        caterer_name=args.caterer_name,
        contact_person=args.contact_person,
        phone_number=args.phone_number,
        email=args.email,
        address=args.address,
        gst_number=args.gst_number,
        is_active=not getattr(args, "inactive", False),
    )


def translate_create_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        caterer_id=args.caterer_id,
        line_items=[parse_line_item(raw) for raw in args.items],
        charges=[parse_adjustment(raw) for raw in args.charges],
        discounts=[parse_adjustment(raw) for raw in args.discounts],
        bill_number=args.bill_number,
        sell_date=args.sell_date,
        notes=args.notes,
    )


def _read_receipt(path: Path) -> core_logic.ReceiptUpload:
    content_type, _ = mimetypes.guess_type(path.name)
    return core_logic.ReceiptUpload(
        data=path.expanduser().read_bytes(),
        content_type=content_type or "application/octet-stream",
        filename=path.name,
    )


def translate_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object.

    ``full`` and ``half`` are resolved against the bill's outstanding amount
    at the time of the call.
    """
    option = PaymentOption(args.option)
    if option is PaymentOption.CUSTOM:
        if args.amount is None:
            raise InvalidAmount("--amount is required for a custom payment")
        amount = MoneyValue.parse(args.amount)
    else:
        amount = core_logic.derive_payment_amount(option, core_logic.payable_amount(context, args.sale_id))
    return core_logic.PaymentCommand(
        sale_id=args.sale_id,
        amount=amount,
        payment_method=args.method,
        reference_number=args.reference_number,
        notes=args.notes,
        receipt=_read_receipt(args.receipt) if args.receipt is not None else None,
    )


def format_summary(summary: CatererSummary, symbol: str) -> List[str]:
    last_order = summary.last_order_date.isoformat() if summary.last_order_date else "-"
    return [
        f"Balance due:  {summary.balance_due.to_display_string(symbol)}",
        f"Total orders: {summary.total_orders}",
        f"Total amount: {summary.total_amount.to_display_string(symbol)}",
        f"Last order:   {last_order}",
    ]


def run_add_caterer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    caterer = core_logic.add_caterer(context, translate_add_caterer(args))
    print(f"Added caterer {caterer.caterer_id} ({caterer.caterer_name})")
    return 0


def run_delete_caterer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_caterer(context, args.caterer_id)
    print(f"Deleted caterer {args.caterer_id}")
    return 0


def run_create_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the billing workflow via the BLL."""
    record = core_logic.create_sale(context, translate_create_sale(args))
    symbol = context.settings.currency_symbol
    print(f"Created sale {record.sale.sale_id} bill {record.sale.bill_number}")
    print(f"Grand total: {record.sale.grand_total.to_display_string(symbol)}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    receipt = core_logic.record_payment(context, translate_pay(context, args))
    symbol = context.settings.currency_symbol
    print(f"Recorded payment {receipt.payment.payment_id} of {receipt.payment.amount_paid.to_display_string(symbol)}")
    print(f"Bill {receipt.sale.bill_number}: {receipt.sale.status.value}, pending {receipt.sale.pending.to_display_string(symbol)}")
    for line in format_summary(receipt.caterer_summary, symbol):
        print(line)
    return 0


def run_mark_overdue(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    status = core_logic.mark_overdue(context, args.sale_id)
    print(f"Sale {args.sale_id}: {status.value}")
    return 0


def run_recompute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Recompute one caterer, or every caterer when none is named."""
    if args.caterer_id:
        caterer_ids = [args.caterer_id]
    else:
        caterer_ids = [caterer.caterer_id for caterer in core_logic.list_caterers(context, include_inactive=True)]
    for caterer_id in caterer_ids:
        summary = core_logic.recompute_caterer(context, caterer_id)
        print(f"{caterer_id}: balance due {summary.balance_due.to_display_string(context.settings.currency_symbol)}")
    return 0


def run_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.get_caterer_summary(context, args.caterer_id, refresh=args.refresh)
    for line in format_summary(summary, context.settings.currency_symbol):
        print(line)
    return 0


def run_bill_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(core_logic.get_bill_status(context, args.sale_id).value)
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one page of a caterer's bills."""
    filters = core_logic.SaleFilters(
        search=args.search,
        status=PaymentStatus(args.status) if args.status else None,
        date_from=args.date_from,
        date_to=args.date_to,
        page=args.page,
        limit=args.limit,
    )
    page = core_logic.list_sales(context, args.caterer_id, filters)
    symbol = context.settings.currency_symbol
    for details in page.entries:
        sale = details.record.sale
        print(
            f"{sale.bill_number}  {sale.sell_date.isoformat()}  "
            f"{sale.grand_total.to_display_string(symbol):>14}  "
            f"paid {details.summary.total_paid.to_display_string(symbol):>14}  "
            f"{details.summary.status.value}"
        )
    print(f"Page {page.page}, {len(page.entries)} of {page.total} bill(s)")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes.

    Retryable failures (a busy caterer or an unwritable workbook) exit with 4
    so scripts can try again; other business rule failures exit with 2.
    """
    if isinstance(error, RETRYABLE_ERRORS):
        log.error("%s (retry later)", error)
        return 4
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)

