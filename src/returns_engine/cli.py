"""Command-line entry points for the returns engine.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the requests consumed by the service layer.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end that wants to expose the package
capabilities.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, inventory, ledger, log, processing, reconciliation
from .constants import ItemType, ReturnStatus, ReturnType
from .saga import SagaCompensationError
from .validation import ReturnForm, ReturnFormItem


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="returns-cli",
        description="Command-line tools for the returns workbook.",
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
    """Declare mutating CLI commands such as confirmations and cancellations."""
    specs = {
        "create-return": register_create_return_command(subparsers),
        "confirm": register_confirm_command(subparsers),
        "cancel": register_cancel_command(subparsers),
        "delete": register_delete_command(subparsers),
        "update-return": register_update_return_command(subparsers),
        "reconcile": register_reconcile_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and statements."""
    specs = {
        "show": register_show_command(subparsers),
        "list": register_list_command(subparsers),
        "stock": register_stock_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "movements": register_movements_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_create_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-return``."""
    name = "create-return"
    help_text = "Create a draft return against an invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--type", dest="return_type", choices=[member.value for member in ReturnType], required=True)
        parser.add_argument("--invoice-id", required=True)
        parser.add_argument("--party-id", default=None)
        parser.add_argument("--date", dest="date_iso", default=None, help="Return date as YYYY-MM-DD.")
        parser.add_argument("--amount", default=None, help="Override the amount computed from the items.")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="TYPE:ID:QTY:PRICE[:MAX]",
            help="Returned line; repeat for several items.",
        )
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_create_return, mutates=True)


def _register_return_id_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    *,
    mutates: bool,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--return-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_confirm_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``confirm``."""
    return _register_return_id_command(
        "confirm", "Confirm a draft return and apply its stock and balance effects.", run_confirm, mutates=True
    )


def register_cancel_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel``."""
    return _register_return_id_command(
        "cancel", "Cancel a confirmed return and reverse its effects.", run_cancel, mutates=True
    )


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    return _register_return_id_command("delete", "Delete a draft return.", run_delete, mutates=True)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    return _register_return_id_command("show", "Display a return and its items.", run_show, mutates=False)


def register_update_return_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-return``."""
    name = "update-return"
    help_text = "Edit the date or notes of a draft return."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--return-id", required=True)
        parser.add_argument("--date", dest="date_iso", default=None)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_return, mutates=True)


def register_reconcile_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``reconcile``."""
    name = "reconcile"
    help_text = "Check cached balances and return-driven ledger entries."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--repair", action="store_true", help="Post missing entries and reset drifted balances.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile, mutates=True)


def register_list_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``list``."""
    name = "list"
    help_text = "List returns, optionally by status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--status", choices=[member.value for member in ReturnStatus], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels of one inventory category."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-type", choices=[member.value for member in ItemType], required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Display ledger entries and the cached balance of a party."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--party-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``movements``."""
    name = "movements"
    help_text = "Display the inventory movement history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-type", choices=[member.value for member in ItemType], default=None)
        parser.add_argument("--item-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_movements_report)


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
        return Decimal(raw)
    except InvalidOperation as exc:
        raise core_logic.ValidationError(f"Invalid {label}: {raw}") from exc


def parse_item_argument(raw: str) -> ReturnFormItem:
    """Parse a ``TYPE:ID:QTY:PRICE[:MAX]`` item argument.

    Raises:
        ValidationError: If the value does not have four or five parts or a
            numeric part cannot be parsed.
    """
    parts = raw.split(":")
    if len(parts) not in (4, 5):
        raise core_logic.ValidationError(f"Item must look like TYPE:ID:QTY:PRICE[:MAX], got '{raw}'")
    item_type, item_id, quantity, unit_price = parts[:4]
    return ReturnFormItem(
        item_id=item_id,
        item_type=item_type,
        quantity=_decimal(quantity, "quantity"),
        unit_price=_decimal(unit_price, "unit price"),
        max_quantity=_decimal(parts[4], "max quantity") if len(parts) == 5 else None,
    )


def translate_create_return(args: argparse.Namespace) -> ReturnForm:
    """Translate CLI args into a return form."""
    return ReturnForm(
        return_type=args.return_type,
        invoice_id=args.invoice_id,
        items=tuple(parse_item_argument(raw) for raw in args.items),
        party_id=args.party_id,
        date_iso=args.date_iso,
        notes=args.notes,
        amount=_decimal(args.amount, "amount") if args.amount is not None else None,
    )


def _with_item_names(context: core_logic.RuntimeContext, form: ReturnForm) -> ReturnForm:
    named: List[ReturnFormItem] = []
    for item in form.items:
        row = None
        if item.item_type in {member.value for member in ItemType}:
            row = data_manager.get_inventory_item(context.workbook, item.item_type, item.item_id)
        named.append(
            ReturnFormItem(
                item_id=item.item_id,
                item_type=item.item_type,
                quantity=item.quantity,
                unit_price=item.unit_price,
                item_name=row.item_name if row is not None else item.item_name,
                selected=item.selected,
                max_quantity=item.max_quantity,
            )
        )
    return ReturnForm(
        return_type=form.return_type,
        invoice_id=form.invoice_id,
        items=tuple(named),
        party_id=form.party_id,
        date_iso=form.date_iso,
        notes=form.notes,
        amount=form.amount,
    )


def _print_notification(message: str, success: bool) -> None:
    print(message, file=sys.stdout if success else sys.stderr)


def run_create_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-return workflow."""
    form = _with_item_names(context, translate_create_return(args))
    document = processing.create_return(context, form)
    print(document.return_id)
    return 0


def _run_lifecycle(
    operation: Callable[[core_logic.RuntimeContext, str], processing.TransitionOutcome],
    context: core_logic.RuntimeContext,
    return_id: str,
    *,
    success_message: str,
) -> int:
    """Run a confirm or cancel and map its outcome to an exit code.

    A ``BalanceSyncError`` leaves stock and status committed, so the workbook
    is saved before exiting with 2 and ``reconcile --repair`` can post the
    pending ledger entry later. Other failures leave nothing to save.
    """
    try:
        operation(context, return_id)
    except ledger.BalanceSyncError as error:
        persist_workbook(context)
        _print_notification(f"{error}. Run 'reconcile --repair' to post it.", False)
        return 2
    except (core_logic.BusinessRuleViolation, SagaCompensationError) as error:
        _print_notification(str(error), False)
        return 2
    _print_notification(success_message, True)
    return 0


def run_confirm(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the confirm workflow."""
    return _run_lifecycle(
        processing.perform_confirm, context, args.return_id, success_message=f"Return {args.return_id} confirmed"
    )


def run_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancel workflow."""
    return _run_lifecycle(
        processing.perform_cancel, context, args.return_id, success_message=f"Return {args.return_id} cancelled"
    )


def run_delete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete workflow."""
    processing.delete_return(context, args.return_id)
    return 0


def run_update_return(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-return workflow."""
    processing.update_return_details(context, args.return_id, date_iso=args.date_iso, notes=args.notes)
    return 0


def run_reconcile(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the reconciliation job; exits 2 when unrepaired findings remain."""
    report = reconciliation.reconcile(context, repair=args.repair)
    for missing in report.missing_entries:
        print(f"missing\t{missing.return_id}\t{missing.party_id}\t{missing.transaction_type}\t{missing.amount}")
    for drift in report.drifts:
        print(f"drift\t{drift.party_id}\tcached={drift.cached}\tledger={drift.replayed}")
    if report.is_clean or args.repair:
        return 0
    return 2


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a return header followed by its item lines."""
    document = processing.get_return(context, args.return_id)
    header = document.header
    print(
        f"{header.return_id}\t{header.return_type}\t{header.status}\tv{header.version}\t"
        f"invoice={header.invoice_id}\tparty={header.party_id}\t{header.date_iso}\t{header.amount}"
    )
    for item in document.items:
        print(f"  {item.line_no}\t{item.item_type}:{item.item_id}\t{item.item_name}\t{item.quantity}\t{item.unit_price}\t{item.total}")
    return 0


def run_list(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per return."""
    status = ReturnStatus(args.status) if args.status else None
    for row in processing.list_returns(context, status=status):
        print(f"{row.return_id}\t{row.return_type}\t{row.status}\t{row.date_iso}\t{row.amount}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print on-hand quantities for one inventory category."""
    for row in inventory.list_stock(context, ItemType(args.item_type)):
        print(f"{row.item_id}\t{row.item_name}\t{row.quantity}")
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print ledger entries, followed by the cached balance when a party is given."""
    for entry in ledger.list_ledger_entries(context, args.party_id):
        print(
            f"{entry.date_iso}\t{entry.party_id}\t{entry.transaction_type}\t{entry.transaction_id}\t"
            f"debit={entry.debit}\tcredit={entry.credit}\tbalance={entry.balance_after}"
        )
    if args.party_id:
        print(f"balance\t{ledger.get_party_balance(context, args.party_id)}")
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print movement history, optionally filtered by item."""
    item_type = ItemType(args.item_type) if args.item_type else None
    for row in inventory.list_movements(context, item_type=item_type, item_id=args.item_id):
        print(f"{row.timestamp_iso}\t{row.item_type}:{row.item_id}\t{row.direction}\t{row.quantity}\t{row.balance_after}\t{row.reason}")
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
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
