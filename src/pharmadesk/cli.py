"""Command-line entry points for pharmadesk.

All orchestration in this module is limited to argparse wiring, resolving the
acting user into a :class:`~pharmadesk.scope.Caller` and translating
arguments into calls on the domain modules. Every read goes through the scope
resolver, so the CLI shows a manager exactly what the dashboard would.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, directory, finance, insights, log, pos, reports
from .constants import StockSyncStatus, UserRole
from .scope import (
    ALL_BRANCHES,
    Caller,
    in_scope,
    narrow_to_branch,
    scope_branches,
    scope_products,
    scope_transactions,
    search_products,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, Caller, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pharmadesk",
        description="Command-line tools for the pharmadesk branch workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--user-id",
        required=True,
        help="Identifier of the user the command runs as.",
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


def _add_branch_filter(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--branch",
        default=ALL_BRANCHES,
        help="Restrict output to one branch id (default: ALL visible branches).",
    )


def _spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, Caller, argparse.Namespace], int],
    configure: Callable[[argparse.ArgumentParser], None],
    *,
    mutates: bool = False,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as branch changes and checkouts."""
    specs = {
        "add-branch": _spec("add-branch", "Create a new branch.", run_add_branch, _configure_add_branch, mutates=True),
        "delete-branch": _spec(
            "delete-branch",
            "Delete a branch and remove it from manager assignments.",
            run_delete_branch,
            _configure_branch_id,
            mutates=True,
        ),
        "assign-manager": _spec(
            "assign-manager", "Give a manager access to a branch.", run_assign_manager, _configure_assignment,
            mutates=True,
        ),
        "unassign-manager": _spec(
            "unassign-manager", "Revoke a manager's access to a branch.", run_unassign_manager,
            _configure_assignment, mutates=True,
        ),
        "issue-code": _spec(
            "issue-code", "Issue a fresh access code to a manager.", run_issue_code, _configure_manager_id,
            mutates=True,
        ),
        "add-product": _spec(
            "add-product", "Add a product to a branch's inventory.", run_add_product, _configure_add_product,
            mutates=True,
        ),
        "checkout": _spec(
            "checkout", "Sell items at the acting pharmacist's branch.", run_checkout, _configure_checkout,
            mutates=True,
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "products": _spec("products", "List visible products.", run_products, _configure_products),
        "transactions": _spec("transactions", "List visible transactions.", run_transactions, _add_branch_filter),
        "performance": _spec(
            "performance", "Show revenue, COGS and profit for visible branches.", run_performance,
            _add_branch_filter,
        ),
        "insights": _spec("insights", "Show rule-based business insights.", run_insights, _add_branch_filter),
        "export": _spec("export", "Export visible records to an .xlsx file.", run_export, _configure_export),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _configure_add_branch(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--location", default="")


def _configure_branch_id(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--branch-id", required=True)


def _configure_manager_id(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--manager-id", required=True)


def _configure_assignment(parser: argparse.ArgumentParser) -> None:
    _configure_manager_id(parser)
    _configure_branch_id(parser)


def _configure_add_product(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--sku", required=True)
    parser.add_argument("--category", default="General")
    parser.add_argument("--price", required=True)
    parser.add_argument("--cost", required=True)
    parser.add_argument("--stock", type=int, required=True)
    parser.add_argument("--min-stock", type=int, default=0)
    parser.add_argument("--expiry", required=True, help="Expiry date as YYYY-MM-DD.")
    parser.add_argument("--branch-id", required=True)


def _configure_checkout(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        action="append",
        required=True,
        metavar="CODE[:QTY]",
        help="SKU or product name, optionally followed by a quantity. Repeatable.",
    )


def _configure_products(parser: argparse.ArgumentParser) -> None:
    _add_branch_filter(parser)
    parser.add_argument("--search", default="", help="Filter by name or SKU.")


def _configure_export(parser: argparse.ArgumentParser) -> None:
    _add_branch_filter(parser)
    parser.add_argument("--kind", choices=["transactions", "inventory"], default="transactions")
    parser.add_argument("--output", type=Path, default=None, help="Destination .xlsx path.")


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def resolve_caller(context: core_logic.RuntimeContext, user_id: str) -> Caller:
    """Turn the ``--user-id`` option into the identity passed to every call."""
    return Caller.from_user(core_logic.get_user(context, user_id))


def dispatch_command(
    context: core_logic.RuntimeContext,
    caller: Caller,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, caller, args)


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


def _money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def translate_add_product(args: argparse.Namespace) -> directory.ProductCommand:
    """Translate CLI args into a product command object."""
    return directory.ProductCommand(
        name=args.name,
        sku=args.sku,
        category=args.category,
        price=Decimal(args.price),
        cost=Decimal(args.cost),
        stock=args.stock,
        min_stock_level=args.min_stock,
        expiry_date=date.fromisoformat(args.expiry),
        branch_id=args.branch_id,
    )


def parse_item(raw: str) -> Tuple[str, int]:
    """Split ``CODE[:QTY]`` into a lookup term and a quantity."""
    term, separator, quantity = raw.rpartition(":")
    if not separator:
        return raw, 1
    try:
        return term, int(quantity)
    except ValueError as exc:
        raise ValueError(f"Invalid quantity in item '{raw}'") from exc


def translate_checkout(
    context: core_logic.RuntimeContext,
    caller: Caller,
    args: argparse.Namespace,
) -> pos.Cart:
    """Build a cart from ``--item`` arguments using the caller's own products."""
    products = scope_products(context.store, caller)
    cart = pos.Cart()
    for raw in args.item:
        term, quantity = parse_item(raw)
        product = pos.identify_product(products, term, caller.branch_id)
        if product is None:
            raise core_logic.MissingReferenceError(f"No product matches '{term}'")
        cart.add(product, quantity)
    return cart


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_branch(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    core_logic.require_role(caller, UserRole.OWNER)
    branch = directory.create_branch(context, args.name, args.location)
    print(f"Created branch {branch.branch_id}: {branch.name}")
    return 0


def run_delete_branch(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    core_logic.require_role(caller, UserRole.OWNER)
    branch = directory.delete_branch(context, args.branch_id)
    print(f"Deleted branch {branch.branch_id}: {branch.name}")
    return 0


def run_assign_manager(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    core_logic.require_role(caller, UserRole.OWNER)
    manager = directory.assign_manager(context, args.manager_id, args.branch_id)
    print(f"{manager.name} now manages: {', '.join(manager.assigned_branch_ids)}")
    return 0


def run_unassign_manager(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    core_logic.require_role(caller, UserRole.OWNER)
    manager = directory.unassign_manager(context, args.manager_id, args.branch_id)
    print(f"{manager.name} now manages: {', '.join(manager.assigned_branch_ids) or '(none)'}")
    return 0


def run_issue_code(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    core_logic.require_role(caller, UserRole.OWNER)
    manager = directory.issue_access_code(context, args.manager_id)
    print(f"Access code for {manager.name}: {manager.access_code}")
    return 0


def run_add_product(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    """Add a product; managers may only stock their own branches."""
    core_logic.require_role(caller, UserRole.OWNER, UserRole.MANAGER)
    command = translate_add_product(args)
    if not in_scope(caller, command):
        raise core_logic.PermissionDeniedError(f"Branch '{command.branch_id}' is outside your assignments")
    product = directory.add_product(context, command)
    print(f"Added {product.name} ({product.sku}) as {product.product_id}")
    return 0


def run_checkout(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    cart = translate_checkout(context, caller, args)
    transaction = pos.checkout(context, cart, caller)
    for item in transaction.items:
        print(f"{item.quantity:>4} x {item.product_name:<30} {_money(item.price * item.quantity):>12}")
    print(f"Transaction {transaction.transaction_id} total {_money(transaction.total)}")
    if transaction.stock_sync is not StockSyncStatus.OK:
        print("Warning: stock levels could not be updated; flagged for reconciliation.")
    return 0


def run_products(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    products = search_products(narrow_to_branch(scope_products(context.store, caller), args.branch), args.search)
    for product in products:
        flag = " LOW" if product.stock <= product.min_stock_level else ""
        print(
            f"{product.product_id:<10} {product.sku:<10} {product.name:<30} "
            f"{product.stock:>6} {_money(product.price):>10} {product.branch_id}{flag}"
        )
    return 0


def run_transactions(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    transactions = narrow_to_branch(scope_transactions(context.store, caller), args.branch)
    for transaction in transactions:
        print(
            f"{transaction.transaction_id} {transaction.timestamp_iso[:19]} "
            f"{transaction.branch_id:<8} {_money(transaction.total):>12}"
        )
    return 0


def _print_performance(label: str, performance: finance.BranchPerformance) -> None:
    print(
        f"{label}: revenue {_money(performance.revenue)}, COGS {_money(performance.cogs)}, "
        f"gross profit {_money(performance.gross_profit)}, stock value {_money(performance.stock_value)}, "
        f"low stock {performance.low_stock_count}, transactions {performance.transaction_count}"
    )


def run_performance(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    """Print scoped totals and, for owners and managers, the branch ranking."""
    store = context.store
    _print_performance("Total", finance.scope_performance(store, caller, args.branch))
    if caller.role is UserRole.PHARMACIST:
        return 0

    policy = finance.OperatingExpensePolicy.from_settings(context.settings)
    for report in finance.rank_branches(store, caller, policy):
        if args.branch != ALL_BRANCHES and report.branch.branch_id != args.branch:
            continue
        print(
            f"{report.branch.name:<20} net profit {_money(report.net_profit):>12} "
            f"expenses {_money(report.total_expenses):>12} efficiency {report.efficiency_score}"
        )
    return 0


def run_insights(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    products = narrow_to_branch(scope_products(context.store, caller), args.branch)
    found = insights.evaluate_rules(products)
    if not found:
        print("No insights for the selected branches.")
    for insight in found:
        print(f"[{insight.metric}] {insight.message}")
    return 0


def run_export(context: core_logic.RuntimeContext, caller: Caller, args: argparse.Namespace) -> int:
    store = context.store
    branches = scope_branches(store, caller)
    destination = args.output or Path.cwd() / reports.default_filename(args.kind, args.branch)
    if args.kind == "inventory":
        products = narrow_to_branch(scope_products(store, caller), args.branch)
        path = reports.export_inventory(products, branches, destination)
    else:
        transactions = narrow_to_branch(scope_transactions(store, caller), args.branch)
        path = reports.export_transactions(
            transactions, branches, destination, label=reports.scope_label(branches, args.branch)
        )
    print(f"Wrote {path}")
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
        caller = resolve_caller(context, args.user_id)
        spec = command_table[args.command]
        exit_code = dispatch_command(context, caller, args, command_table)
        if exit_code == 0 and spec.mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
