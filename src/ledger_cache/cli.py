"""Command-line entry points for the ledger cache.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Keeping the CLI thin means the same parser
configuration can be reused by tests or scripts.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, log
from .constants import TransactionType
from .document_cache import DocumentSummary
from .errors import LockTimeoutError
from .locking import hold_data_file


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="ledger-cache",
        description="Invoice and payment tools backed by the ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to a search from the working directory).",
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
    """Declare mutating CLI commands."""
    specs = {
        "invoice": register_invoice_command(subparsers),
        "pay": register_pay_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "balance": register_balance_command(subparsers),
        "open": register_open_command(subparsers),
        "documents": register_documents_command(subparsers),
        "stats": register_stats_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Register a new document owed by an entity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", required=True)
        parser.add_argument("--document", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--date", dest="document_date", default=None, help="ISO date (defaults to today).")
        parser.add_argument("--origin", default="cli")
        parser.add_argument("--creator", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice, writes=True)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Record a payment against an outstanding document."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", required=True)
        parser.add_argument("--document", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--transaction-id", default=None)
        parser.add_argument(
            "--type",
            dest="transaction_type",
            choices=[member.value for member in TransactionType],
            default=TransactionType.PAYMENT.value,
        )
        parser.add_argument("--method", default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--origin", default="cli")
        parser.add_argument("--creator", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay, writes=True)


def register_balance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``balance``."""
    name = "balance"
    help_text = "Display the outstanding balance of an entity."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_balance)


def register_open_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``open``."""
    name = "open"
    help_text = "List the documents of an entity that still carry a balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_open)


def register_documents_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``documents``."""
    name = "documents"
    help_text = "List every document of an entity, tagged active or settled."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity", required=True)
        parser.add_argument("--open-only", action="store_true", help="Hide settled documents.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_documents)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display active/settled partition statistics."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats)


def load_settings(config_path: Optional[Path] = None) -> data_manager.ConfigSettings:
    """Resolve the configuration for CLI operations."""
    return core_logic.load_settings(Path(config_path) if config_path is not None else None)


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


def parse_amount(raw: str) -> Decimal:
    """Parse a monetary CLI argument, rejecting non-numeric input."""
    try:
        amount = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {raw}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {raw}")
    return amount


def translate_invoice(args: argparse.Namespace) -> core_logic.InvoiceCommand:
    """Translate CLI args into an invoice command object."""
    document_date = date.fromisoformat(args.document_date) if args.document_date else None
    return core_logic.InvoiceCommand(
        entity_name=args.entity,
        document_number=args.document,
        total_amount=parse_amount(args.amount),
        document_date=document_date,
        origin=args.origin,
        creator=args.creator,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PaymentCommand(
        entity_name=args.entity,
        document_number=args.document,
        amount=parse_amount(args.amount),
        transaction_id=args.transaction_id,
        transaction_type=TransactionType(args.transaction_type),
        method=args.method,
        reference=args.reference,
        origin=args.origin,
        creator=args.creator,
    )


def format_summary(summary: DocumentSummary) -> str:
    balance = "?" if summary.balance_due is None else f"{summary.balance_due}"
    return (
        f"{summary.document_number:<16} total={summary.total_amount} "
        f"due={balance} status={summary.status or '-'} [{summary.partition.value}]"
    )


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoice workflow via the BLL."""
    record = core_logic.record_invoice(context, translate_invoice(args))
    print(f"Recorded {record.entity_name}/{record.document_number} for {record.total_amount}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL."""
    transaction = core_logic.record_payment(context, translate_pay(args))
    print(f"Recorded {transaction.transaction_type} {transaction.transaction_id} for {transaction.amount}")
    return 0


def run_balance(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the outstanding balance of one entity."""
    print(f"{args.entity}: {core_logic.outstanding_balance(context, args.entity)}")
    return 0


def run_open(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the open documents of one entity."""
    for summary in core_logic.list_open_documents(context, args.entity):
        print(format_summary(summary))
    return 0


def run_documents(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every document of one entity."""
    summaries = core_logic.list_documents(context, args.entity, include_settled=not args.open_only)
    for summary in summaries:
        print(format_summary(summary))
    return 0


def run_stats(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print partition statistics."""
    stats = core_logic.partition_stats(context)
    print(f"active={stats.active_count} inactive={stats.inactive_count}")
    print(f"transitions={stats.transitions} tombstones={stats.tombstones}")
    print(f"memory_reduction_estimate={stats.memory_reduction_estimate:.1%}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, core_logic.BusinessRuleViolation):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, LockTimeoutError):
        return 4
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution.

    The workbook is loaded, used and (for write commands) saved while the
    data file lock is held, so concurrent invocations never work from a copy
    another invocation is about to overwrite.
    """
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        settings = load_settings(getattr(args, "config", None))
        with hold_data_file(settings.data_file, timeout=settings.lock_timeout_seconds):
            context = core_logic.open_runtime_context(settings)
            core_logic.ensure_schema_version(context)
            exit_code = dispatch_command(context, args, command_table)
            if exit_code == 0 and command_table[args.command].writes:
                persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
