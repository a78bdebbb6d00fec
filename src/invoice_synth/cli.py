"""Command-line entry points for the invoice line synthesizer.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the parameter objects consumed by the business
layer. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, TextIO

from . import core_logic, log


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    requires_workbook: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="invoice-synth",
        description="Synthesize invoice lines that approximate per-tax-rate targets.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to an upward search for config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    generation_specs = register_generation_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*generation_specs.values(), *read_specs.values()])


def register_generation_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that run the generation engine."""
    specs = {
        "generate": register_generate_command(subparsers),
        "request": register_request_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as the catalog report."""
    specs = {
        "catalog": register_catalog_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_generate_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``generate``."""
    name = "generate"
    help_text = "Generate invoice lines from the workbook catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--target",
            dest="targets",
            action="append",
            default=[],
            metavar="RATE:AMOUNT",
            help="Tax-exclusive target for a tax rate, e.g. 19:1000. Repeatable.",
        )
        parser.add_argument(
            "--target-incl",
            dest="targets_incl",
            action="append",
            default=[],
            metavar="RATE:AMOUNT",
            help="Tax-inclusive target for a tax rate, e.g. 19:1190. Repeatable.",
        )
        parser.add_argument("--max-lines", type=int, default=None)
        parser.add_argument("--min-price", default=None, help="Minimum tax-inclusive unit price.")
        parser.add_argument("--max-price", default=None, help="Maximum tax-inclusive unit price.")
        parser.add_argument(
            "--allowed-rate",
            dest="allowed_rates",
            action="append",
            default=None,
            help="Tax rate allowed in the catalog filter. Defaults to the target rates.",
        )
        parser.add_argument("--foreign", action="store_true", help="Generate for a foreign (tax-exempt) client.")
        parser.add_argument("--seed", type=int, default=None, help="Seed for reproducible runs.")
        parser.add_argument("--no-stamp-duty", action="store_true", help="Do not add the stamp duty.")
        parser.add_argument(
            "--export",
            action="store_true",
            help="Append the generated lines to the GeneratedLines sheet and save the workbook.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_generate)


def register_request_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``request``."""
    name = "request"
    help_text = "Answer a JSON generation request."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("input", help="Path to the JSON request, or '-' for standard input.")
        parser.add_argument("--output", default=None, help="Write the JSON response here instead of stdout.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        register=registrar,
        execute=run_request,
        requires_workbook=False,
    )


def register_catalog_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``catalog``."""
    name = "catalog"
    help_text = "Display the catalog and eligible product counts per tax rate."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--min-price", default=None)
        parser.add_argument("--max-price", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_catalog_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
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


def require_context(context: Optional[core_logic.RuntimeContext], command: str) -> core_logic.RuntimeContext:
    if context is None:
        raise RuntimeError(f"The {command} command needs a loaded workbook")
    return context


def parse_decimal(raw: str, *, option: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal for {option}: {raw!r}") from exc


def parse_target(raw: str, *, inclusive: bool = False) -> core_logic.TargetSpec:
    """Parse ``RATE:AMOUNT`` into a :class:`~invoice_synth.core_logic.TargetSpec`."""
    option = "--target-incl" if inclusive else "--target"
    rate_raw, separator, amount_raw = raw.partition(":")
    if not separator:
        raise ValueError(f"{option} expects RATE:AMOUNT, got {raw!r}")
    rate = parse_decimal(rate_raw.strip(), option=option)
    amount = parse_decimal(amount_raw.strip(), option=option)
    if inclusive:
        return core_logic.TargetSpec(tax_rate=rate, amount_incl=amount)
    return core_logic.TargetSpec(tax_rate=rate, amount_excl=amount)


def translate_generate(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> core_logic.GenerationParameters:
    """Translate CLI args into generation parameters."""
    targets = [parse_target(raw) for raw in args.targets]
    targets.extend(parse_target(raw, inclusive=True) for raw in args.targets_incl)
    if not targets:
        raise ValueError("At least one --target or --target-incl is required")

    allowed_rates: Optional[List[Decimal]] = None
    if args.allowed_rates:
        allowed_rates = [parse_decimal(raw, option="--allowed-rate") for raw in args.allowed_rates]

    return core_logic.prepare_parameters(
        context,
        targets,
        max_lines=args.max_lines,
        min_price_incl=parse_decimal(args.min_price, option="--min-price") if args.min_price is not None else None,
        max_price_incl=parse_decimal(args.max_price, option="--max-price") if args.max_price is not None else None,
        allowed_rates=allowed_rates,
        foreign_client=args.foreign,
        stamp_duty_enabled=False if args.no_stamp_duty else None,
    )


def render_lines(response: core_logic.GenerationResponse, stream: TextIO) -> None:
    """Write a plain-text table of generated lines and totals."""
    for index, line in enumerate(response.lines, start=1):
        stream.write(
            f"{index:>3}  {line.product_id:<12} {line.product_name[:30]:<30} "
            f"qty={line.quantity:<4} price={line.unit_price_excl} "
            f"disc={line.discount_percent}% rate={line.tax_rate}% excl={line.line_total_excl:.3f}\n"
        )
    summary = response.summary
    if summary is None:
        return
    stream.write(
        f"\nSubtotal excl: {summary.subtotal_excl:.3f}\n"
        f"Total tax:     {summary.total_tax:.3f}\n"
        f"Total incl:    {summary.total_incl:.3f}\n"
        f"Discount:      {summary.total_discount:.3f}\n"
        f"Stamp duty:    {summary.stamp_duty:.3f}\n"
        f"Net payable:   {summary.net_payable:.3f}\n"
    )
    for comparison in summary.targets:
        deviation = "n/a" if comparison.percent_deviation is None else f"{comparison.percent_deviation}%"
        stream.write(
            f"Rate {comparison.tax_rate}%: target {comparison.target_excl:.3f}, "
            f"actual {comparison.actual_excl:.3f}, deviation {deviation}\n"
        )


def run_generate(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the generation workflow via the BLL."""
    context = require_context(context, "generate")
    params = translate_generate(context, args)
    synthesis = core_logic.build_context(seed=args.seed, policy=context.settings.policy)
    response = core_logic.run_generation(synthesis, params)
    if not response.success:
        raise core_logic.BusinessRuleViolation(f"{response.error.value}: {response.message}")

    render_lines(response, sys.stdout)
    if args.export:
        run_id = core_logic.export_lines(context, response.lines)
        sys.stdout.write(f"\nExported as run {run_id}\n")
    return 0


def run_request(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute a JSON request through the stateless request handler."""
    if args.input == "-":
        payload = json.load(sys.stdin)
    else:
        with Path(args.input).expanduser().open("r", encoding="utf-8") as handle:
            payload = json.load(handle)

    defaults = context.settings.defaults if context is not None else None
    policy = context.settings.policy if context is not None else None
    result = core_logic.handle_request(payload, defaults=defaults, policy=policy)
    rendered = json.dumps(result, indent=2)
    if args.output is None:
        sys.stdout.write(rendered + "\n")
    else:
        Path(args.output).expanduser().write_text(rendered + "\n", encoding="utf-8")
    return 0 if result["success"] else 2


def run_catalog_report(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Execute the catalog reporting workflow."""
    context = require_context(context, "catalog")
    entries = core_logic.list_catalog(context)
    defaults = context.settings.defaults
    min_price = parse_decimal(args.min_price, option="--min-price") if args.min_price is not None else defaults.min_price_incl
    max_price = parse_decimal(args.max_price, option="--max-price") if args.max_price is not None else defaults.max_price_incl

    for entry in entries:
        stock = "unlimited" if not entry.is_stock_limited else entry.stock_quantity
        sys.stdout.write(
            f"{entry.product_id:<12} {entry.product_name[:30]:<30} excl={entry.unit_price_excl} "
            f"incl={entry.unit_price_incl} rate={entry.tax_rate}% max_disc={entry.max_discount} stock={stock}\n"
        )

    rates = {entry.tax_rate for entry in entries}
    eligible = core_logic.filter_catalog(
        entries,
        allowed_rates=rates,
        min_price_incl=min_price,
        max_price_incl=max_price,
    )
    counts: Dict[Any, int] = {rate: len(pool) for rate, pool in core_logic.group_by_rate(eligible).items()}
    sys.stdout.write("\n")
    for rate in sorted(rates):
        sys.stdout.write(f"Rate {rate}%: {counts.get(rate, 0)} eligible product(s)\n")
    log.info("Reported %d catalog entries (%d eligible)", len(entries), len(eligible))
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
    """Persist workbook changes after a successful export."""
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
        spec = command_table[args.command]
        config_path = getattr(args, "config", None)
        context: Optional[core_logic.RuntimeContext] = None
        if spec.requires_workbook or config_path is not None:
            context = load_runtime_context(config_path)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and context is not None and getattr(args, "export", False):
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
