"""
CoinTrail Command-Line Entry Point.

Bootstraps the entire dependency graph via constructor injection,
initialises the local SQLite schema, restores the cached session and
dispatches one subcommand.  Every subsystem is wired here; there are no
module-level globals.

Usage::

    python main.py login you@example.com
    python main.py add --amount 12.50 --description Lunch --category Food --type expense
    python main.py import bank.csv
    python main.py export --format xlsx
"""

from __future__ import annotations

import argparse
import atexit
import getpass
import sys
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

from cointrail import __version__
from cointrail.auth import AuthenticationError, SessionManager
from cointrail.config import AppConfig, get_config
from cointrail.database import DatabaseManager
from cointrail.guards import require_auth
from cointrail.logger import StructuredLogger, get_logger
from cointrail.models.auth_models import AuthResult
from cointrail.models.enums import ExportFormat, MappedField, Theme, TransactionType
from cointrail.models.service_models import ServiceResult
from cointrail.models.transaction import Transaction
from cointrail.schema import initialize_schema
from cointrail.services import ServiceContainer, create_services
from cointrail.services.csv_import import infer_mapping
from cointrail.services.session_cache import SessionCacheService
from cointrail.services.summary import monthly_totals

EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass
class AppContext:
    """Everything a command handler needs."""

    config: AppConfig
    db: DatabaseManager
    session: SessionManager
    services: ServiceContainer
    logger: StructuredLogger


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _report(result: ServiceResult, success_message: Optional[str] = None) -> int:
    if result.success:
        if success_message:
            print(success_message)
        return EXIT_OK
    print(f"Error: {result.error}", file=sys.stderr)
    return EXIT_FAILURE


def _report_auth(result: AuthResult) -> int:
    if result.success:
        if result.message:
            print(result.message)
        return EXIT_OK
    print(f"Error: {result.error_message}", file=sys.stderr)
    return EXIT_FAILURE


def _format_transaction(tx: Transaction, category_name: str) -> str:
    line = (
        f"{tx.transaction_date.isoformat()}  {tx.signed_amount:>+13}  "
        f"{tx.description:<30}  [{category_name}]  {tx.id}"
    )
    return f"{line}\n    {tx.notes}" if tx.notes else line


def _print_transactions(app: AppContext, transactions: list[Transaction]) -> None:
    if not transactions:
        print("No transactions found.")
        return
    categories = app.services["category_service"]
    for tx in transactions:
        print(_format_transaction(tx, categories.get_name(tx.category_id)))


def _parse_iso_date(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date '{text}', expected YYYY-MM-DD") from exc


# ---------------------------------------------------------------------------
# Auth commands
# ---------------------------------------------------------------------------

def cmd_login(app: AppContext, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    return _report_auth(app.services["auth_service"].login(args.email, password))


def cmd_logout(app: AppContext, args: argparse.Namespace) -> int:
    app.services["auth_service"].logout()
    app.services["transaction_store"].invalidate()
    app.services["category_service"].invalidate()
    print("Logged out.")
    return EXIT_OK


def cmd_register(app: AppContext, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    confirm = args.password or getpass.getpass("Confirm password: ")
    auth = app.services["auth_service"]
    print(f"Password strength: {auth.password_strength(password) or 'none'}")
    result = auth.register(args.full_name, args.email, password, confirm)
    if result.success and result.requires_confirmation:
        print("Check your inbox to confirm your email address.")
    return _report_auth(result)


def cmd_reset_password(app: AppContext, args: argparse.Namespace) -> int:
    return _report_auth(app.services["auth_service"].request_password_reset(args.email))


def cmd_whoami(app: AppContext, args: argparse.Namespace) -> int:
    user = app.session.get_current_user()
    mode = "online" if app.db.is_online else "offline"
    print(f"{user.display_name} <{user.email}> ({mode})")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Transaction commands
# ---------------------------------------------------------------------------

def cmd_summary(app: AppContext, args: argparse.Namespace) -> int:
    store = app.services["transaction_store"]
    store.ensure_loaded()
    summary = store.summary
    print(f"Income:   {summary.total_income:>14}  ({summary.income_change:+}% this month)")
    print(f"Expenses: {summary.total_expenses:>14}  ({summary.expense_change:+}% this month)")
    print(f"Balance:  {summary.balance:>14}")
    if args.monthly:
        print()
        for bucket in monthly_totals(store.transactions):
            print(f"{bucket.month}  +{bucket.income:<12} -{bucket.expenses:<12} = {bucket.net}")
    return EXIT_OK


def cmd_list(app: AppContext, args: argparse.Namespace) -> int:
    _print_transactions(app, app.services["transaction_store"].recent(args.limit))
    return EXIT_OK


def cmd_search(app: AppContext, args: argparse.Namespace) -> int:
    _print_transactions(app, app.services["transaction_store"].search(args.term))
    return EXIT_OK


def cmd_add(app: AppContext, args: argparse.Namespace) -> int:
    tx_type = TransactionType(args.type)
    category = app.services["category_service"].find(args.category, tx_type)
    if category is None:
        print(
            f"Error: no {tx_type} category named '{args.category}'. "
            "Create it with `categories add`.",
            file=sys.stderr,
        )
        return EXIT_FAILURE

    result = app.services["transaction_store"].add({
        "amount": args.amount,
        "description": args.description,
        "category_id": category.id,
        "transaction_date": args.date or date.today(),
        "type": tx_type,
        "notes": args.notes,
    })
    if result.success and args.attach:
        attached = app.services["attachment_service"].attach_to_transaction(
            result.data.id, Path(args.attach),
        )
        if not attached.success:
            print(f"Warning: attachment not saved: {attached.error}", file=sys.stderr)
    created = result.data.id if result.data is not None else ""
    return _report(result, f"Transaction added ({created}).")


def cmd_delete(app: AppContext, args: argparse.Namespace) -> int:
    store = app.services["transaction_store"]
    tx = store.get(args.transaction_id)
    result = store.delete(args.transaction_id)
    if result.success and tx is not None and tx.attachment_url and app.db.is_online:
        app.services["attachment_service"].delete(tx.attachment_url)
    return _report(result, "Transaction deleted.")


# ---------------------------------------------------------------------------
# Category commands
# ---------------------------------------------------------------------------

def cmd_categories(app: AppContext, args: argparse.Namespace) -> int:
    categories = app.services["category_service"]
    action = args.action or "list"

    if action == "add":
        result = categories.add(
            args.name, TransactionType(args.type), icon=args.icon, color=args.color,
        )
        return _report(result, f"Category '{args.name.strip()}' created.")
    if action == "rename":
        result = categories.update(args.category_id, name=args.name)
        return _report(result, "Category updated.")
    if action == "delete":
        return _report(categories.delete(args.category_id), "Category deleted.")

    category_type = TransactionType(args.type) if args.type else None
    listed = categories.list(category_type)
    if not listed:
        print("No categories yet.")
    for category in listed:
        print(f"{category.type:<8} {category.name:<24} {category.id}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Import / export
# ---------------------------------------------------------------------------

def cmd_import(app: AppContext, args: argparse.Namespace) -> int:
    importer = app.services["import_service"]
    try:
        table = importer.read_table(Path(args.file))
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    preview = importer.preview(table)
    mapping = preview.mapping
    if args.map:
        mapping = {**mapping, **_parse_mapping_overrides(args.map)}

    print(f"{preview.total_rows} rows found. Column mapping:")
    for header, field in mapping.items():
        print(f"  {header!r:>24} -> {field}")
    if args.preview:
        for row in preview.rows:
            print("  " + " | ".join(row.get(h, "") for h in preview.headers))
        return EXIT_OK

    result = importer.import_transactions(table, mapping, remember_mapping=not args.no_save_mapping)
    return _report(result, result.data.message if result.data is not None else None)


def _parse_mapping_overrides(pairs: list[str]) -> dict[str, MappedField]:
    overrides: dict[str, MappedField] = {}
    for pair in pairs:
        header, _, field = pair.partition("=")
        try:
            overrides[header] = MappedField(field.strip().lower())
        except ValueError as exc:
            raise SystemExit(f"Invalid mapping '{pair}': {exc}") from exc
    return overrides


def cmd_export(app: AppContext, args: argparse.Namespace) -> int:
    result = app.services["export_service"].export(args.format, start=args.start, end=args.end)
    if not result.success or result.data is None:
        return _report(result)
    target = Path(args.output) / result.data.filename
    target.write_bytes(result.data.content)
    print(f"Exported {result.data.row_count} transactions to {target}.")
    return EXIT_OK


def cmd_sample_csv(app: AppContext, args: argparse.Namespace) -> int:
    filename, text = app.services["import_service"].sample_csv()
    target = Path(args.output) / filename
    target.write_text(text, encoding="utf-8", newline="")
    print(f"Sample written to {target}. Detected mapping:")
    for header, field in infer_mapping(text.splitlines()[0].split(",")).items():
        print(f"  {header} -> {field}")
    return EXIT_OK


# ---------------------------------------------------------------------------
# Settings / maintenance
# ---------------------------------------------------------------------------

def cmd_reset_data(app: AppContext, args: argparse.Namespace) -> int:
    if not args.yes:
        answer = input("This permanently deletes all your transactions and categories. Type 'reset' to continue: ")
        if answer.strip().lower() != "reset":
            print("Aborted.")
            return EXIT_FAILURE
    return _report(
        app.services["data_reset_service"].reset_user_data(),
        "All your data has been reset.",
    )


def cmd_sync(app: AppContext, args: argparse.Namespace) -> int:
    worker = app.services["sync_worker_service"]
    if args.watch:
        worker.start()
        print("Syncing in the background. Press Ctrl+C to stop.")
        try:
            worker.wait(args.duration)
        except KeyboardInterrupt:
            pass
        finally:
            worker.stop()
        print(f"{app.db.get_pending_sync_count()} writes still pending.")
        return EXIT_OK

    synced = worker.run_once()
    pending = app.db.get_pending_sync_count()
    print(f"Synced {synced} queued writes; {pending} still pending.")
    return EXIT_OK


def cmd_theme(app: AppContext, args: argparse.Namespace) -> int:
    settings = app.services["app_settings_service"]
    if args.value == "toggle":
        theme = settings.toggle_theme()
    elif args.value:
        theme = Theme(args.value)
        settings.set_theme(theme)
    else:
        theme = settings.get_theme()
    print(f"Theme: {theme}")
    return EXIT_OK


COMMANDS: dict[str, Callable[[AppContext, argparse.Namespace], int]] = {
    "login": cmd_login,
    "logout": cmd_logout,
    "register": cmd_register,
    "reset-password": cmd_reset_password,
    "whoami": cmd_whoami,
    "summary": cmd_summary,
    "list": cmd_list,
    "search": cmd_search,
    "add": cmd_add,
    "delete": cmd_delete,
    "categories": cmd_categories,
    "import": cmd_import,
    "export": cmd_export,
    "sample-csv": cmd_sample_csv,
    "reset-data": cmd_reset_data,
    "sync": cmd_sync,
    "theme": cmd_theme,
}

# Commands that never need a restored session.
_NO_SESSION = frozenset({"login", "register", "reset-password", "sample-csv", "theme"})

# Commands that operate on the signed-in user's data.
_LOGIN_REQUIRED = frozenset({
    "whoami", "summary", "list", "search", "add", "delete",
    "categories", "import", "export", "reset-data",
})


def dispatch(app: AppContext, args: argparse.Namespace) -> int:
    """Run the handler for ``args.command``, gated on login where needed."""
    handler = COMMANDS[args.command]
    if args.command in _LOGIN_REQUIRED:
        handler = require_auth(app.session)(handler)
    try:
        return handler(app, args)
    except AuthenticationError as exc:
        print(f"Error: {exc} Run `login` first.", file=sys.stderr)
        return EXIT_FAILURE


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cointrail", description="Personal finance tracker.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login", help="Sign in with email and password")
    p.add_argument("email")
    p.add_argument("--password")

    sub.add_parser("logout", help="Sign out and forget the cached session")

    p = sub.add_parser("register", help="Create an account")
    p.add_argument("full_name")
    p.add_argument("email")
    p.add_argument("--password")

    p = sub.add_parser("reset-password", help="Email a password reset link")
    p.add_argument("email")

    sub.add_parser("whoami", help="Show the signed-in user")

    p = sub.add_parser("summary", help="Income, expenses and balance")
    p.add_argument("--monthly", action="store_true", help="Also print per-month totals")

    p = sub.add_parser("list", help="Most recent transactions")
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("search", help="Find transactions by description")
    p.add_argument("term")

    p = sub.add_parser("add", help="Record a transaction")
    p.add_argument("--amount", required=True)
    p.add_argument("--description", required=True)
    p.add_argument("--category", required=True, help="Category name")
    p.add_argument("--type", required=True, choices=[t.value for t in TransactionType])
    p.add_argument("--date", type=_parse_iso_date, help="YYYY-MM-DD (default: today)")
    p.add_argument("--notes")
    p.add_argument("--attach", help="File to upload as the receipt")

    p = sub.add_parser("delete", help="Delete a transaction")
    p.add_argument("transaction_id")

    p = sub.add_parser("categories", help="List or manage categories")
    cat_sub = p.add_subparsers(dest="action")
    lp = cat_sub.add_parser("list")
    lp.add_argument("--type", choices=[t.value for t in TransactionType])
    ap = cat_sub.add_parser("add")
    ap.add_argument("name")
    ap.add_argument("--type", required=True, choices=[t.value for t in TransactionType])
    ap.add_argument("--icon")
    ap.add_argument("--color")
    rp = cat_sub.add_parser("rename")
    rp.add_argument("category_id")
    rp.add_argument("name")
    dp = cat_sub.add_parser("delete")
    dp.add_argument("category_id")
    p.set_defaults(type=None)

    p = sub.add_parser("import", help="Import transactions from CSV or XLSX")
    p.add_argument("file")
    p.add_argument("--preview", action="store_true", help="Show mapping and first rows only")
    p.add_argument(
        "--map", action="append", metavar="HEADER=FIELD",
        help="Override the mapping of one column (repeatable)",
    )
    p.add_argument("--no-save-mapping", action="store_true")

    p = sub.add_parser("export", help="Export transactions")
    p.add_argument("--format", choices=[f.value for f in ExportFormat], default="csv")
    p.add_argument("--start", type=_parse_iso_date)
    p.add_argument("--end", type=_parse_iso_date)
    p.add_argument("--output", default=".")

    p = sub.add_parser("sample-csv", help="Write a sample import file")
    p.add_argument("--output", default=".")

    p = sub.add_parser("reset-data", help="Delete all transactions and categories")
    p.add_argument("--yes", action="store_true")

    p = sub.add_parser("sync", help="Send writes made while offline")
    p.add_argument(
        "--watch", action="store_true", help="Keep syncing in the background until interrupted",
    )
    p.add_argument(
        "--duration", type=float, default=None, help="Stop watching after this many seconds",
    )

    p = sub.add_parser("theme", help="Show or change the theme preference")
    p.add_argument("value", nargs="?", choices=["light", "dark", "toggle"])

    return parser


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

def bootstrap() -> AppContext:
    """Wire config, logging, database, schema, session and services."""
    logger = get_logger("cointrail.main")

    # 1. Configuration (from .env / environment variables)
    config = get_config()

    # 2. Database Manager (Supabase optional, SQLite always)
    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=config.LOCAL_DB_PATH,
        logger=StructuredLogger(name="cointrail.database"),
    )
    atexit.register(db.close)

    # 3. SQLite schema (idempotent)
    initialize_schema(db.sqlite, StructuredLogger(name="cointrail.schema"))

    # 4. Session and encrypted session cache
    session = SessionManager()
    session_cache = SessionCacheService(
        db=db,
        logger=StructuredLogger(name="cointrail.session_cache"),
        max_age_days=config.SESSION_MAX_AGE_DAYS,
    )

    # 5. Service container
    services = create_services(
        db=db,
        config=config,
        session=session,
        session_cache=session_cache,
    )
    return AppContext(config=config, db=db, session=session, services=services, logger=logger)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    app = bootstrap()
    try:
        if args.command not in _NO_SESSION:
            restored = app.services["auth_service"].restore_session()
            if not restored.success:
                app.logger.debug("No session restored: %s", restored.error_message)
        return dispatch(app, args)
    finally:
        app.db.close()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
    except Exception as exc:
        detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n{detail}")
        sys.exit(EXIT_FAILURE)
