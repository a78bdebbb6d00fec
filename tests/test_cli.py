"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import json
from decimal import Decimal
from typing import Iterable, Mapping

import pytest

from invoice_synth import cli, core_logic, data_manager


GENERATION_COMMANDS = {
    "generate",
    "request",
}

READ_COMMANDS = {
    "catalog",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "invoice-synth"
    assert "invoice" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire every sub-command."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == GENERATION_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == GENERATION_COMMANDS | READ_COMMANDS


def test_register_generation_commands_returns_command_specs(subparsers_action):
    """register_generation_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_generation_commands(subparsers_action)
    assert set(specs) == GENERATION_COMMANDS
    for name, spec in specs.items():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    """register_read_commands should return a mapping of CommandSpec objects."""

    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert "catalog" in subparsers_action.choices


def test_request_command_does_not_require_workbook(subparsers_action):
    """The request command is stateless and runs without a workbook."""

    specs = cli.register_generation_commands(subparsers_action)
    assert specs["request"].requires_workbook is False
    assert specs["generate"].requires_workbook is True


def test_generate_parser_collects_repeatable_options():
    """The generate sub-command accepts repeated targets and rates."""

    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        [
            "generate",
            "--target",
            "19:200",
            "--target-incl",
            "7:107",
            "--allowed-rate",
            "19",
            "--allowed-rate",
            "7",
            "--seed",
            "4",
            "--foreign",
            "--export",
        ]
    )

    assert args.command == "generate"
    assert args.targets == ["19:200"]
    assert args.targets_incl == ["7:107"]
    assert args.allowed_rates == ["19", "7"]
    assert args.seed == 4
    assert args.foreign is True
    assert args.export is True
    assert args.no_stamp_duty is False


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should key specs by name."""

    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_rejects_duplicates(command_spec_iterable):
    """Duplicate command names are a configuration error."""

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_dispatch_command_invokes_executor(runtime_context):
    """dispatch_command should call the executor registered for the command."""

    called = {}

    def execute(context, args):
        called["context"] = context
        return 7

    table = {"alpha": cli.CommandSpec("alpha", "help", lambda _: None, execute)}
    exit_code = cli.dispatch_command(runtime_context, argparse.Namespace(command="alpha"), table)

    assert exit_code == 7
    assert called["context"] is runtime_context


def test_dispatch_command_rejects_unknown_command(runtime_context):
    """Unknown commands raise KeyError."""

    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="missing"), {})


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_parse_target_reads_exclusive_amount():
    """RATE:AMOUNT becomes an exclusive target."""

    target = cli.parse_target("19:1000.50")

    assert target.tax_rate == Decimal("19")
    assert target.amount_excl == Decimal("1000.50")
    assert target.amount_incl is None


def test_parse_target_reads_inclusive_amount():
    """Inclusive targets fill amount_incl."""

    target = cli.parse_target("7:107", inclusive=True)

    assert target.amount_incl == Decimal("107")
    assert target.amount_excl is None


@pytest.mark.parametrize("raw", ["19", "19:abc", "x:10"])
def test_parse_target_rejects_malformed_values(raw):
    """Malformed targets raise ValueError."""

    with pytest.raises(ValueError):
        cli.parse_target(raw)


def _generate_args(**overrides) -> argparse.Namespace:
    values = {
        "command": "generate",
        "targets": ["19:200"],
        "targets_incl": [],
        "max_lines": None,
        "min_price": None,
        "max_price": None,
        "allowed_rates": None,
        "foreign": False,
        "seed": 1,
        "no_stamp_duty": False,
        "export": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


def test_translate_generate_builds_parameters(runtime_context):
    """translate_generate should combine CLI values with configuration defaults."""

    args = _generate_args(targets_incl=["7:107"], max_price="500", no_stamp_duty=True)

    params = cli.translate_generate(runtime_context, args)

    assert [target.tax_rate for target in params.targets] == [Decimal("19"), Decimal("7")]
    assert params.allowed_rates == frozenset({Decimal("19"), Decimal("7")})
    assert params.max_price_incl == Decimal("500")
    assert params.max_lines == 10
    assert params.stamp_duty_enabled is False
    assert len(params.catalog) == 3


def test_translate_generate_requires_a_target(runtime_context):
    """At least one target must be supplied."""

    with pytest.raises(ValueError):
        cli.translate_generate(runtime_context, _generate_args(targets=[]))


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def test_run_generate_prints_lines_and_summary(runtime_context, capsys):
    """run_generate should render the generated lines."""

    exit_code = cli.run_generate(runtime_context, _generate_args())

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "P-100" in output
    assert "Net payable:   239.000" in output
    assert list(data_manager.iter_exported_lines(runtime_context.workbook)) == []


def test_run_generate_exports_when_requested(runtime_context, capsys):
    """--export appends the batch to the GeneratedLines sheet."""

    exit_code = cli.run_generate(runtime_context, _generate_args(export=True))

    rows = list(data_manager.iter_exported_lines(runtime_context.workbook))
    assert exit_code == 0
    assert len(rows) == 1
    assert rows[0].line.product_id == "P-100"
    assert rows[0].line.quantity == 2
    assert rows[0].run_id in capsys.readouterr().out


def test_run_generate_raises_on_failed_run(runtime_context):
    """A failed run is surfaced as a business rule violation."""

    with pytest.raises(core_logic.BusinessRuleViolation, match="no_eligible_products"):
        cli.run_generate(runtime_context, _generate_args(targets=["5:100"]))


def test_run_generate_uses_configured_policy(runtime_context, monkeypatch):
    """The synthesis context is built from the configured policy and seed."""

    captured = {}
    original = core_logic.build_context

    def fake_build_context(**kwargs):
        captured.update(kwargs)
        return original(**kwargs)

    monkeypatch.setattr(cli.core_logic, "build_context", fake_build_context)
    cli.run_generate(runtime_context, _generate_args(seed=42))

    assert captured == {"seed": 42, "policy": runtime_context.settings.policy}


def test_run_request_writes_json_response(tmp_path):
    """run_request should answer a JSON request file."""

    request = {
        "targets": [{"tax_rate": "19", "amount_excl": "200"}],
        "catalog": [
            {"product_id": "A", "unit_price_excl": "100", "tax_rate": "19", "unlimited_stock": True}
        ],
        "stamp_duty_enabled": False,
    }
    request_path = tmp_path / "request.json"
    request_path.write_text(json.dumps(request), encoding="utf-8")
    response_path = tmp_path / "response.json"

    exit_code = cli.run_request(None, argparse.Namespace(input=str(request_path), output=str(response_path)))

    response = json.loads(response_path.read_text(encoding="utf-8"))
    assert exit_code == 0
    assert response["success"] is True
    assert response["lines"][0]["quantity"] == 2
    assert Decimal(response["summary"]["net_payable"]) == Decimal("238")


def test_run_request_returns_two_on_failure(tmp_path, capsys):
    """Failed requests still print a response but exit with code 2."""

    request_path = tmp_path / "request.json"
    request_path.write_text(json.dumps({"targets": []}), encoding="utf-8")

    exit_code = cli.run_request(None, argparse.Namespace(input=str(request_path), output=None))

    response = json.loads(capsys.readouterr().out)
    assert exit_code == 2
    assert response["error"] == "generation_error"


def test_run_catalog_report_lists_entries(runtime_context, capsys):
    """run_catalog_report should list entries and eligible counts per rate."""

    exit_code = cli.run_catalog_report(runtime_context, argparse.Namespace(min_price=None, max_price="100"))

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "P-200" in output
    assert "Rate 19%: 0 eligible product(s)" in output
    assert "Rate 7%: 1 eligible product(s)" in output


def test_run_catalog_report_requires_context():
    """Workbook-backed commands refuse to run without a context."""

    with pytest.raises(RuntimeError):
        cli.run_catalog_report(None, argparse.Namespace(min_price=None, max_price=None))


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.NoLinesGeneratedError(), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_persist_workbook_saves_changes(runtime_context, monkeypatch):
    """persist_workbook should request the data layer to save the workbook."""

    called = {}

    def fake_persist(context: core_logic.RuntimeContext) -> None:
        called["context"] = context

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    cli.persist_workbook(runtime_context)
    assert called["context"] is runtime_context


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should convert permission errors."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, runtime_context):
    """main should execute the command parsed from argv."""

    parser = _stub_parser(command="generate", export=True)
    command_table = {"generate": cli.CommandSpec("generate", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: called.setdefault("persisted", ctx))

    exit_code = cli.main(["generate"])
    assert exit_code == 0
    assert called["context"] is runtime_context
    assert called["persisted"] is runtime_context
    assert called["args"].command == "generate"


def test_main_skips_persist_without_export(monkeypatch, runtime_context):
    """Read-only runs leave the workbook file untouched."""

    parser = _stub_parser(command="catalog")
    command_table = {"catalog": cli.CommandSpec("catalog", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: (_ for _ in ()).throw(AssertionError("should not persist")))

    assert cli.main(["catalog"]) == 0


def test_main_skips_context_for_stateless_commands(monkeypatch):
    """Commands that do not need a workbook never load configuration."""

    parser = _stub_parser(command="request")
    received = {}

    def execute(context, args):
        received["context"] = context
        return 0

    command_table = {"request": cli.CommandSpec("request", "help", lambda _: parser, execute, requires_workbook=False)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(
        cli,
        "load_runtime_context",
        lambda path=None: (_ for _ in ()).throw(AssertionError("should not load")),
    )

    assert cli.main(["request"]) == 0
    assert received["context"] is None


def test_main_handles_bll_errors(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits."""

    parser = _stub_parser(command="generate")
    command_table = {"generate": cli.CommandSpec("generate", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    exit_code = cli.main(["generate"])
    assert exit_code == 99
    assert isinstance(handled["error"], core_logic.BusinessRuleViolation)


def test_main_reports_missing_config(tmp_path):
    """A missing configuration file maps to exit code 3."""

    assert cli.main(["--config", str(tmp_path / "absent.ini"), "catalog"]) == 3


def test_main_generate_end_to_end(config_factory, capsys):
    """main should run, export, and persist a generation from argv."""

    bundle = config_factory()

    exit_code = cli.main(["--config", str(bundle.config_path), "generate", "--target", "19:200", "--export"])

    assert exit_code == 0
    workbook = data_manager.open_workbook(bundle.workbook_path)
    rows = list(data_manager.iter_exported_lines(workbook))
    assert [(row.line.product_id, row.line.quantity) for row in rows] == [("P-100", 2)]
    assert "Exported as run G" in capsys.readouterr().out


def test_main_request_uses_configured_tolerances(config_factory, tmp_path, capsys):
    """The request command honours [Generation] tolerances from config.ini."""

    bundle = config_factory(generation_options={"ShortfallThreshold": "0.90"})
    request = {
        "targets": [{"tax_rate": "19", "amount_excl": "250"}],
        "catalog": [{"product_id": "A", "unit_price_excl": "100", "tax_rate": "19", "stock_quantity": "1"}],
    }
    request_path = tmp_path / "request.json"
    request_path.write_text(json.dumps(request), encoding="utf-8")

    exit_code = cli.main(["--config", str(bundle.config_path), "request", str(request_path)])

    response = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert response["success"] is True
    assert [line["quantity"] for line in response["lines"]] == [1]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str, **extra: object) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            parsed = argparse.Namespace(command=command, **extra)
            return parsed

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
