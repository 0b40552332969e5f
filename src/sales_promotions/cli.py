"""Command-line entry points for the promotion engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the calls and command objects consumed by the
business layer. Keeping the CLI thin means the same parser configuration can
be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO

from . import core_logic, log
from .models import Promotion, Sale


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def parse_order_line(raw: str) -> core_logic.OrderLine:
    """Parse ``PRODUCT_ID:QUANTITY`` (quantity defaults to 1)."""
    product_id, _, quantity_raw = raw.partition(":")
    if not product_id:
        raise argparse.ArgumentTypeError(f"Invalid item '{raw}': expected PRODUCT_ID[:QUANTITY]")
    try:
        quantity = int(quantity_raw) if quantity_raw else 1
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in item '{raw}'") from exc
    return product_id, quantity


def parse_money(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="promo-cli",
        description="Command-line tools for the sales promotion engine.",
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
    """Declare commands that modify the workbook."""
    specs = {
        "checkout": register_checkout_command(subparsers),
        "remove": register_remove_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "promotions": register_promotions_command(subparsers),
        "quote": register_quote_command(subparsers),
        "coupon": register_coupon_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_order_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--customer-id", default=None)
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_order_line,
        required=True,
        metavar="PRODUCT_ID[:QTY]",
        help="Order line; repeat for multiple products.",
    )


def register_checkout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Apply promotions to a sale and record them."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_order_arguments(parser)
        parser.add_argument("--coupon", dest="coupon_code", default=None)
        parser.add_argument("--tax-amount", type=parse_money, default=None)
        parser.add_argument("--shipping-cost", type=parse_money, default=None)
        parser.add_argument("--sale-id", default=None)
        parser.add_argument(
            "--no-auto-apply",
            dest="auto_apply",
            action="store_false",
            default=None,
            help="Skip automatically applied promotions.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_checkout, writes=True)


def register_remove_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove``."""
    name = "remove"
    help_text = "Withdraw a recorded promotion from a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.add_argument("--promotion-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove, writes=True)


def register_promotions_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``promotions``."""
    name = "promotions"
    help_text = "List available promotions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--all", dest="show_all", action="store_true", help="Include unavailable promotions.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_promotions)


def register_quote_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quote``."""
    name = "quote"
    help_text = "Show eligible promotions and their discounts for an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_order_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_quote)


def register_coupon_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``coupon``."""
    name = "coupon"
    help_text = "Check whether a coupon code applies to an order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--code", required=True)
        _add_order_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_coupon)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


def translate_checkout(args: argparse.Namespace) -> core_logic.CheckoutCommand:
    """Translate CLI args into a checkout command object."""
    return core_logic.CheckoutCommand(
        lines=tuple(args.items),
        customer_id=args.customer_id,
        coupon_code=args.coupon_code,
        tax_amount=args.tax_amount,
        shipping_cost=args.shipping_cost,
        sale_id=args.sale_id,
        auto_apply=args.auto_apply,
    )


def format_promotion(promotion: Promotion) -> str:
    code = f" [{promotion.coupon_code}]" if promotion.coupon_code else ""
    auto = " auto" if promotion.auto_apply else ""
    return (
        f"{promotion.promotion_id}  {promotion.name}{code}  "
        f"{promotion.type.value} {promotion.discount_value}  {promotion.status().value}{auto}"
    )


def format_sale(sale: Sale) -> str:
    lines = [f"Sale {sale.sale_id}", f"  Subtotal:  {sale.original_total}"]
    for applied in sale.applied_promotions:
        lines.append(f"  - {applied.display_text}: -{applied.discount_amount}")
    if sale.tax_amount is not None:
        lines.append(f"  Tax:       {sale.tax_amount}")
    if sale.shipping_cost is not None:
        lines.append(f"  Shipping:  {sale.shipping_cost}")
    lines.append(f"  Total:     {sale.final_total}")
    return "\n".join(lines)


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace, out: Optional[TextIO] = None) -> int:
    """Execute the checkout workflow via the BLL."""
    command = translate_checkout(args)
    sale = core_logic.checkout(context, command)
    print(format_sale(sale), file=out)
    return 0


def run_remove(context: core_logic.RuntimeContext, args: argparse.Namespace, out: Optional[TextIO] = None) -> int:
    """Withdraw a recorded promotion via the BLL."""
    removed = core_logic.remove_applied_promotion(context, args.sale_id, args.promotion_id)
    print(
        f"Removed {removed.promotion_id} ({removed.promotion_name}) from sale {removed.sale_id}: "
        f"+{removed.discount_amount}",
        file=out,
    )
    return 0


def run_promotions(context: core_logic.RuntimeContext, args: argparse.Namespace, out: Optional[TextIO] = None) -> int:
    """List promotions from the catalog."""
    if getattr(args, "show_all", False):
        promotions = core_logic.list_promotions(context, include_inactive=True)
    else:
        promotions = core_logic.list_available_promotions(context)
    for promotion in promotions:
        print(format_promotion(promotion), file=out)
    return 0


def run_quote(context: core_logic.RuntimeContext, args: argparse.Namespace, out: Optional[TextIO] = None) -> int:
    """Print every eligible promotion with the discount it would grant."""
    quotes = core_logic.quote_promotions(context, args.items, customer_id=args.customer_id)
    if not quotes:
        print("No eligible promotions.", file=out)
    for promotion, discount in quotes:
        print(f"{promotion.promotion_id}  {promotion.name}  -{discount}", file=out)
    return 0


def run_coupon(context: core_logic.RuntimeContext, args: argparse.Namespace, out: Optional[TextIO] = None) -> int:
    """Validate a coupon code against an order."""
    promotion = core_logic.validate_coupon(context, args.code, args.items, customer_id=args.customer_id)
    print(f"Coupon {args.code} is valid: {format_promotion(promotion)}", file=out)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
