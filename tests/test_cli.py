"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import io
from decimal import Decimal
from pathlib import Path

import pytest

from sales_promotions import cli, core_logic, data_manager


WRITE_COMMANDS = {"checkout", "remove"}

READ_COMMANDS = {"promotions", "quote", "coupon"}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "promo-cli"
    assert "promotion" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS
    assert {name for name, spec in command_table.items() if spec.writes} == WRITE_COMMANDS


def test_register_write_and_read_commands_return_specs(subparsers_action):
    write_specs = cli.register_write_commands(subparsers_action)
    read_specs = cli.register_read_commands(subparsers_action)

    assert set(write_specs) == WRITE_COMMANDS
    assert set(read_specs) == READ_COMMANDS
    for spec in [*write_specs.values(), *read_specs.values()]:
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name in subparsers_action.choices


def test_checkout_command_configures_arguments():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        [
            "checkout",
            "--item",
            "P-TV",
            "--item",
            "P-MUG:3",
            "--customer-id",
            "C-1",
            "--coupon",
            "SAVE",
            "--tax-amount",
            "1.50",
            "--no-auto-apply",
        ]
    )

    assert args.command == "checkout"
    assert args.items == [("P-TV", 1), ("P-MUG", 3)]
    assert args.customer_id == "C-1"
    assert args.coupon_code == "SAVE"
    assert args.tax_amount == Decimal("1.50")
    assert args.shipping_cost is None
    assert args.auto_apply is False


def test_checkout_auto_apply_defaults_to_configuration():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["checkout", "--item", "P-TV"])

    assert args.auto_apply is None


def test_read_commands_configure_arguments():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    assert parser.parse_args(["promotions", "--all"]).show_all is True
    assert parser.parse_args(["promotions"]).show_all is False
    coupon_args = parser.parse_args(["coupon", "--code", "X", "--item", "A:2"])
    assert (coupon_args.code, coupon_args.items) == ("X", [("A", 2)])


@pytest.mark.parametrize("raw", [":2", "P1:two"])
def test_parse_order_line_rejects_malformed_items(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_order_line(raw)


def test_parse_money_rejects_non_numbers():
    assert cli.parse_money("2.25") == Decimal("2.25")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_money("abc")


# ---------------------------------------------------------------------------
# Runtime context and dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == config_file
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_load_runtime_context_supports_defaults(monkeypatch, tmp_path):
    """load_runtime_context should resolve config.ini from the working directory."""

    sentinel_context = object()

    def fake_loader(path: Path | None) -> object:
        assert path == tmp_path / "config.ini"
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.chdir(tmp_path)
    assert cli.load_runtime_context() is sentinel_context


def test_dispatch_command_invokes_executor(runtime_context):
    called = {}

    def execute(context, args):
        called["context"] = context
        return 0

    spec = cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), execute)
    result = cli.dispatch_command(runtime_context, argparse.Namespace(command="alpha"), {"alpha": spec})

    assert result == 0
    assert called["context"] is runtime_context


def test_dispatch_command_handles_unknown_commands(runtime_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


def test_translate_checkout_returns_checkout_command():
    args = argparse.Namespace(
        items=[("P1", 2)],
        customer_id="C1",
        coupon_code="SAVE",
        tax_amount=Decimal("1.00"),
        shipping_cost=None,
        sale_id="S-9",
        auto_apply=None,
    )

    command = cli.translate_checkout(args)

    assert command == core_logic.CheckoutCommand(
        lines=(("P1", 2),),
        customer_id="C1",
        coupon_code="SAVE",
        tax_amount=Decimal("1.00"),
        sale_id="S-9",
    )


# ---------------------------------------------------------------------------
# Command executors
# ---------------------------------------------------------------------------


def test_run_checkout_invokes_bll(seeded_context, monkeypatch):
    command = core_logic.CheckoutCommand(lines=(("P-TV", 1),), sale_id="S-7")
    monkeypatch.setattr(cli, "translate_checkout", lambda value: command)
    out = io.StringIO()

    assert cli.run_checkout(seeded_context, argparse.Namespace(), out) == 0

    text = out.getvalue()
    assert "Sale S-7" in text
    assert "Ten percent off (10.0% off): -8.00" in text
    assert "Total:     72.00" in text


def test_run_promotions_lists_available_or_all(seeded_context):
    available, everything = io.StringIO(), io.StringIO()

    cli.run_promotions(seeded_context, argparse.Namespace(show_all=False), available)
    cli.run_promotions(seeded_context, argparse.Namespace(show_all=True), everything)

    assert "PR-EXPIRED" not in available.getvalue()
    assert "PR-EXPIRED" in everything.getvalue()
    assert "EXPIRED" in everything.getvalue()
    assert "[KITCHEN5]" in available.getvalue()


def test_run_quote_prints_discounts(seeded_context):
    out = io.StringIO()

    cli.run_quote(seeded_context, argparse.Namespace(items=[("P-MUG", 1)], customer_id=None), out)

    lines = [line.rsplit("  -", 1) for line in out.getvalue().splitlines()]
    assert [(label, Decimal(amount)) for label, amount in lines] == [
        ("PR-AUTO10  Ten percent off", Decimal("1.00")),
        ("PR-KITCHEN5  Kitchen five off", Decimal("5")),
    ]


def test_run_quote_reports_when_nothing_applies(seeded_context, monkeypatch):
    monkeypatch.setattr(cli.core_logic, "quote_promotions", lambda context, lines, customer_id=None: [])
    out = io.StringIO()

    cli.run_quote(seeded_context, argparse.Namespace(items=[("P-MUG", 1)], customer_id=None), out)

    assert out.getvalue().strip() == "No eligible promotions."


def test_run_coupon_confirms_valid_code(seeded_context):
    out = io.StringIO()

    args = argparse.Namespace(code="KITCHEN5", items=[("P-MUG", 1)], customer_id=None)

    assert cli.run_coupon(seeded_context, args, out) == 0
    assert out.getvalue().startswith("Coupon KITCHEN5 is valid: PR-KITCHEN5")


# ---------------------------------------------------------------------------
# Error handling, persistence and entry point
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.InvalidCouponError("Invalid coupon code: X"), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


def test_persist_workbook_wraps_permission_errors(runtime_context, monkeypatch):
    def fake_persist(context: core_logic.RuntimeContext) -> None:
        raise PermissionError("locked")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="locked"):
        cli.persist_workbook(runtime_context)


def test_main_checkout_persists_workbook(seeded_context, config_file, capsys):
    exit_code = cli.main(
        ["--config", str(config_file), "checkout", "--item", "P-MUG:2", "--coupon", "KITCHEN5", "--sale-id", "S-42"]
    )

    assert exit_code == 0
    assert "Sale S-42" in capsys.readouterr().out
    reloaded = data_manager.open_workbook(seeded_context.settings.data_file)
    rows = [row.promotion_id for row in data_manager.iter_applied_promotions(reloaded) if row.sale_id == "S-42"]
    assert rows == ["PR-AUTO10", "PR-KITCHEN5"]


def test_main_read_command_does_not_persist(seeded_context, config_file, monkeypatch):
    persisted = []
    monkeypatch.setattr(cli, "persist_workbook", lambda context: persisted.append(context))

    assert cli.main(["--config", str(config_file), "promotions"]) == 0
    assert persisted == []


def test_main_returns_business_rule_exit_code(seeded_context, config_file):
    exit_code = cli.main(["--config", str(config_file), "coupon", "--code", "NOPE", "--item", "P-MUG"])

    assert exit_code == 2


def test_main_returns_missing_file_exit_code(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "promotions"]) == 3


def test_remove_command_configures_arguments():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["remove", "--sale-id", "S-1", "--promotion-id", "PR-1"])

    assert (args.command, args.sale_id, args.promotion_id) == ("remove", "S-1", "PR-1")


def test_run_remove_invokes_bll(runtime_context, monkeypatch):
    row = data_manager.AppliedPromotionRow(
        sale_id="S-1",
        promotion_id="PR-1",
        promotion_name="Promo",
        promotion_type="PERCENTAGE",
        coupon_code=None,
        discount_amount=Decimal("2.00"),
        original_amount=Decimal("20.00"),
        final_amount=Decimal("18.00"),
        is_auto_applied=True,
        applied_at_iso="2025-06-01T12:00:00+00:00",
    )
    called = {}

    def fake_remove(context, sale_id, promotion_id):
        called["args"] = (context, sale_id, promotion_id)
        return row

    monkeypatch.setattr(cli.core_logic, "remove_applied_promotion", fake_remove)
    out = io.StringIO()

    assert cli.run_remove(runtime_context, argparse.Namespace(sale_id="S-1", promotion_id="PR-1"), out) == 0
    assert called["args"] == (runtime_context, "S-1", "PR-1")
    assert out.getvalue().strip() == "Removed PR-1 (Promo) from sale S-1: +2.00"


def test_main_remove_persists_withdrawal(seeded_context, config_file):
    base = ["--config", str(config_file)]
    assert cli.main([*base, "checkout", "--item", "P-MUG", "--coupon", "KITCHEN5", "--sale-id", "S-8"]) == 0

    assert cli.main([*base, "remove", "--sale-id", "S-8", "--promotion-id", "PR-KITCHEN5"]) == 0
    assert cli.main([*base, "remove", "--sale-id", "S-8", "--promotion-id", "PR-KITCHEN5"]) == 2

    reloaded = data_manager.open_workbook(seeded_context.settings.data_file)
    rows = [row.promotion_id for row in data_manager.iter_applied_promotions(reloaded) if row.sale_id == "S-8"]
    counts = {promotion.promotion_id: promotion.usage_count for promotion in data_manager.iter_promotions(reloaded)}
    assert rows == ["PR-AUTO10"]
    assert counts["PR-KITCHEN5"] == 0
