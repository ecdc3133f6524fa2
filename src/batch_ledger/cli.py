"""Command-line entry points for the batch ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on :class:`~batch_ledger.ledger.LedgerService`.
Output is plain text on stdout; failures are logged and mapped to exit codes
by :func:`handle_cli_error`.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import log, runtime
from .constants import PaymentMethod
from .exceptions import BusinessRuleViolation
from .models import InvoiceData, InvoiceValidation, OperationalContext, Product, SaleItem


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[runtime.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cli",
        description="Batch inventory and invoice reconciliation for the ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory).",
    )
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Operational date as YYYY-MM-DD (defaults to today).",
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
    """Declare stock-affecting commands such as invoices and sales."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "sale": register_sale_command(subparsers),
        "return": register_return_command(subparsers),
        "damage": register_damage_command(subparsers),
        "decoration-use": register_decoration_use_command(subparsers),
        "decoration-restock": register_decoration_restock_command(subparsers),
        "price": register_price_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands such as previews and reports."""
    specs = {
        "preview-invoice": register_preview_invoice_command(subparsers),
        "stock": register_stock_command(subparsers),
        "losses": register_losses_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a product in the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--invoice-price", required=True)
        parser.add_argument("--mrp", default=None)
        parser.add_argument("--item-code", default=None)
        parser.add_argument("--shelf-life-days", type=int, default=None)
        parser.add_argument("--loss-fraction", default=None)
        parser.add_argument("--decoration", action="store_true", help="Track as a flat decoration counter.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_preview_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``preview-invoice``."""
    name = "preview-invoice"
    help_text = "Validate an invoice JSON file without recording it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("file", type=Path)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_preview_invoice)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Validate an invoice JSON file and create its stock batches."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("file", type=Path)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a sale of one or more products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--staff-id", default=None)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT:QTY:PRICE",
            help="Sale line; repeat for several products.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``return``."""
    name = "return"
    help_text = "Put returned units back into stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--batch-id", type=int, default=None)
        parser.add_argument("--staff-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_return)


def register_damage_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``damage``."""
    name = "damage"
    help_text = "Write off damaged units."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--reason", required=True)
        parser.add_argument("--batch-id", type=int, default=None)
        parser.add_argument("--staff-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_damage)


def register_decoration_use_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``decoration-use``."""
    name = "decoration-use"
    help_text = "Consume decoration units."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--reason", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_decoration_use)


def register_decoration_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``decoration-restock``."""
    name = "decoration-restock"
    help_text = "Top up a decoration counter."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_decoration_restock)


def register_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``price``."""
    name = "price"
    help_text = "Change the invoice price and/or MRP of a product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--invoice-price", default=None)
        parser.add_argument("--mrp", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_price)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display on-hand and sellable stock per product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_losses_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``losses``."""
    name = "losses"
    help_text = "Display the damage losses of the operational date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_losses_report)


def load_runtime_context(config_path: Optional[Path] = None) -> runtime.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return runtime.load_runtime_context(config_path)


def dispatch_command(
    context: runtime.RuntimeContext,
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


def _money_arg(raw: Optional[str], label: str) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid {label}: {raw!r}") from exc


def operational_context(context: runtime.RuntimeContext, args: argparse.Namespace) -> OperationalContext:
    """Wrap the ``--date`` option into the ledger's operational context."""
    return runtime.operational_context(context, today=getattr(args, "date", None))


def load_invoice_file(path: Path) -> InvoiceData:
    """Read a structured invoice JSON document from ``path``."""
    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Invoice file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return InvoiceData.from_mapping(payload)


def translate_add_product(args: argparse.Namespace) -> Product:
    """Translate CLI args into a catalog product."""
    loss = _money_arg(args.loss_fraction, "loss fraction")
    return Product(
        product_id=args.product_id,
        name=args.name,
        invoice_price=_money_arg(args.invoice_price, "invoice price"),
        mrp=_money_arg(args.mrp, "MRP"),
        item_code=args.item_code,
        shelf_life_days=args.shelf_life_days,
        loss_fraction=loss,
        is_decoration=args.decoration,
    )


def translate_sale_items(raw_items: Sequence[str]) -> List[SaleItem]:
    """Parse ``PRODUCT:QTY:PRICE`` tokens into sale lines."""
    items: List[SaleItem] = []
    for raw in raw_items:
        parts = raw.rsplit(":", 2)
        if len(parts) != 3:
            raise ValueError(f"Sale item must look like PRODUCT:QTY:PRICE, got {raw!r}")
        product_id, quantity, price = parts
        try:
            parsed_quantity = int(quantity)
        except ValueError as exc:
            raise ValueError(f"Invalid quantity in sale item {raw!r}") from exc
        items.append(
            SaleItem(
                product_id=product_id,
                quantity=parsed_quantity,
                unit_price=_money_arg(price, "unit price"),
            )
        )
    return items


def format_validation(validation: InvoiceValidation) -> str:
    lines = [
        f"  today:      {'ok' if validation.is_today else 'FAIL'}",
        f"  store:      {'ok' if validation.is_correct_store else 'FAIL'}",
        f"  arithmetic: {'ok' if validation.is_arithmetic_valid else 'FAIL'}",
        f"  structure:  {'ok' if validation.is_structurally_valid else 'FAIL'}",
    ]
    lines.extend(f"  - {failure}" for failure in validation.failures)
    return "\n".join(lines)


def run_add_product(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a product in the catalog and the Products sheet."""
    product = context.ledger.register_product(translate_add_product(args))
    print(f"Registered product {product.product_id} ({product.name})")
    return 0


def run_preview_invoice(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the validation outcome; exit 2 when the invoice would be rejected."""
    data = load_invoice_file(args.file)
    validation = context.ledger.preview_invoice(data, operational_context(context, args))
    verdict = "VALID" if validation.is_valid else "INVALID"
    print(f"Invoice {data.invoice_number}: {verdict}")
    print(format_validation(validation))
    return 0 if validation.is_valid else 2


def run_invoice(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Record an invoice and print the created batch ids."""
    data = load_invoice_file(args.file)
    invoice = context.ledger.record_invoice(data, operational_context(context, args))
    batches = ", ".join(str(batch_id) for batch_id in invoice.batch_ids) or "none"
    print(f"Recorded invoice {invoice.invoice_number} as {invoice.invoice_id}; batches: {batches}")
    return 0


def run_sale(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a sale through the ledger."""
    items = translate_sale_items(args.items)
    staff_id = args.staff_id or context.settings.default_staff_id
    sale = context.ledger.record_sale(
        items,
        staff_id,
        PaymentMethod(args.payment_method),
        context=operational_context(context, args),
    )
    print(f"Recorded sale {sale.sale_id}: total {sale.total_amount} ({sale.payment_method.value})")
    return 0


def run_return(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    record = context.ledger.record_return(
        args.product_id,
        args.quantity,
        args.reason,
        args.batch_id,
        staff_id=args.staff_id or context.settings.default_staff_id,
        context=operational_context(context, args),
    )
    target = "adjustment batch" if record.is_adjustment else "batch"
    print(f"Recorded return {record.return_id} into {target} {record.batch_id}")
    return 0


def run_damage(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    record = context.ledger.record_damage(
        args.product_id,
        args.quantity,
        args.reason,
        args.batch_id,
        staff_id=args.staff_id or context.settings.default_staff_id,
        context=operational_context(context, args),
    )
    print(f"Recorded damage {record.damage_id}: loss {record.loss_amount}")
    return 0


def run_decoration_use(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    record = context.ledger.record_decoration_use(
        args.product_id,
        args.quantity,
        args.reason,
        context=operational_context(context, args),
    )
    print(f"Recorded decoration use {record.use_id}; {record.remaining} left")
    return 0


def run_decoration_restock(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    level = context.ledger.restock_decoration(args.product_id, args.quantity)
    print(f"Decoration {args.product_id} now at {level}")
    return 0


def run_price(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    invoice_price = _money_arg(args.invoice_price, "invoice price")
    mrp = _money_arg(args.mrp, "MRP")
    if invoice_price is None and mrp is None:
        raise ValueError("Provide --invoice-price and/or --mrp")
    product = context.ledger.update_product_price(args.product_id, invoice_price=invoice_price, mrp=mrp)
    print(f"Product {product.product_id}: invoice price {product.invoice_price}, MRP {product.mrp}")
    return 0


def run_stock_report(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per active product."""
    as_of = operational_context(context, args).today
    for summary in context.ledger.stock_summary(as_of=as_of):
        expiry = summary.next_expiry.isoformat() if summary.next_expiry else "-"
        print(
            f"{summary.product_id:<12} {summary.name:<30} on hand {summary.on_hand:>6}"
            f"  sellable {summary.sellable:>6}  next expiry {expiry}"
        )
    return 0


def run_losses_report(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    day = operational_context(context, args).today
    summary = context.ledger.daily_loss_summary(day)
    print(
        f"{summary.day.isoformat()}: {summary.damage_count} damage(s), "
        f"{summary.total_quantity} unit(s), loss {summary.total_loss}"
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: runtime.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        runtime.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        runtime.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
