import asyncio
import logging
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import typer

from campuslib.catalog import CatalogLookup
from campuslib.circulation import CirculationService
from campuslib.config import settings
from campuslib.errors import LibraryError
from campuslib.management import CatalogManager, ProfileRegistry
from campuslib.services.identity_service import build_authorizer
from campuslib.store import LibraryStore
from campuslib.ui_helpers import (
    print_audit_result,
    print_book,
    print_books_result,
    print_error,
    print_profile,
    print_receipt,
    print_stats_result,
    print_transactions,
    set_output_mode,
)

ACTOR_ENV = "LIBRARY_ACTOR"


@dataclass
class CliServices:
    store: LibraryStore
    catalog: CatalogLookup
    circulation: CirculationService
    manager: CatalogManager
    registry: ProfileRegistry


def build_services(db_file: str) -> CliServices:
    store = LibraryStore(db_file, busy_timeout=settings.store_busy_timeout, seed_file=settings.seed_file)
    authorizer = build_authorizer(settings)
    catalog = CatalogLookup(store)
    return CliServices(
        store=store,
        catalog=catalog,
        circulation=CirculationService(
            store, authorizer, catalog=catalog,
            loan_period_days=settings.loan_period_days,
            require_verified_profile=settings.require_verified_profile,
        ),
        manager=CatalogManager(store, authorizer),
        registry=ProfileRegistry(store, authorizer),
    )


def _run(ctx: typer.Context, fn: Callable[[CliServices], Awaitable[Any]]) -> Any:
    """Initialise the store, run one async operation, and turn library errors into exit code 1."""
    services: CliServices = ctx.obj

    async def main():
        await services.store.initialize()
        return await fn(services)

    try:
        return asyncio.run(main())
    except LibraryError as e:
        print_error(e)
        raise typer.Exit(code=1)


def _actor_option() -> Any:
    return typer.Option(None, "--actor", "-a", envvar=ACTOR_ENV, help="Operator id checked by the identity service")


# --- Typer CLI application ---
app = typer.Typer(help="Campus Library CLI")


@app.callback()
def _global_options(
    ctx: typer.Context,
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Output format: plain | json | rich (default: plain)"),
    db: Optional[str] = typer.Option(None, "--db", help="Library database file (default: LIBRARY_DB_FILE)"),
):
    """Global options for the CLI (output mode, database)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)
    ctx.obj = build_services(db or settings.database_file)


@app.command("init")
def cli_init(ctx: typer.Context):
    """Create the database schema (and seed the catalog if LIBRARY_SEED_FILE is set)."""
    services: CliServices = ctx.obj

    async def op(s: CliServices):
        return await s.circulation.statistics()

    stats = _run(ctx, op)
    print(f"Database ready at {services.store.db_file} ({stats['total_books']} books).")


@app.command("list")
def cli_list(
    ctx: typer.Context,
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search title, author or code"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
    available: Optional[bool] = typer.Option(None, "--available/--issued", help="Filter by availability"),
):
    """List catalogued books."""
    books = _run(ctx, lambda s: s.catalog.list_books(query, category, available))
    print_books_result(books)


@app.command("find")
def cli_find(ctx: typer.Context, code: str):
    """Find a book by its code (e.g. LIB001)."""
    print_book(_run(ctx, lambda s: s.catalog.find_book_by_code(code)))


@app.command("user")
def cli_user(ctx: typer.Context, serial: str):
    """Show a user profile by serial number."""
    print_profile(_run(ctx, lambda s: s.catalog.find_user_by_serial(serial)))


@app.command("add")
def cli_add(ctx: typer.Context, title: str, author: str, category: str, actor: Optional[str] = _actor_option()):
    """Add a book; the next LIBxxx code is assigned automatically."""
    book = _run(ctx, lambda s: s.manager.add_book(title, author, category, actor_id=actor))
    print(f"Added {book.code}: {book.title} by {book.author}")


@app.command("remove")
def cli_remove(ctx: typer.Context, code: str, actor: Optional[str] = _actor_option()):
    """Remove a book that is on the shelf and has never been issued."""
    book = _run(ctx, lambda s: s.manager.remove_book(code, actor_id=actor))
    print(f"Book {book.code} has been removed.")


@app.command("register")
def cli_register(
    ctx: typer.Context,
    name: str,
    serial: str,
    email: str,
    phone: Optional[str] = typer.Option(None, "--phone"),
    department: Optional[str] = typer.Option(None, "--department"),
):
    """Register a user profile (verification starts as pending)."""
    profile = _run(ctx, lambda s: s.registry.register(name, serial, email, phone=phone, department=department))
    print(f"Registered {profile.serial} ({profile.name}). Verification: {profile.verification_status.value}")


@app.command("verify")
def cli_verify(ctx: typer.Context, serial: str, status: str, actor: Optional[str] = _actor_option()):
    """Set a user's identity-document verification status."""
    profile = _run(ctx, lambda s: s.registry.set_verification_status(serial, status, actor_id=actor))
    print(f"{profile.serial} is now {profile.verification_status.value}.")


@app.command("issue")
def cli_issue(ctx: typer.Context, code: str, serial: str, actor: Optional[str] = _actor_option()):
    """Issue a book to a user for the loan period."""
    receipt = _run(ctx, lambda s: s.circulation.issue_by_code(code, serial, actor_id=actor))
    print_receipt(receipt, "issue")


@app.command("return")
def cli_return(
    ctx: typer.Context,
    code: str,
    actor: Optional[str] = _actor_option(),
    override: bool = typer.Option(False, "--override", help="Mark available even if no open transaction exists"),
):
    """Return an issued book."""
    receipt = _run(ctx, lambda s: s.circulation.return_by_code(code, actor_id=actor, override=override))
    print_receipt(receipt, "return")


@app.command("history")
def cli_history(
    ctx: typer.Context,
    book: Optional[str] = typer.Option(None, "--book", "-b", help="Only this book code"),
    serial: Optional[str] = typer.Option(None, "--serial", "-s", help="Only this user"),
    open_only: bool = typer.Option(False, "--open", help="Only books still out"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l"),
):
    """Show the transaction ledger, newest first."""
    print_transactions(_run(ctx, lambda s: s.circulation.history(book, serial, open_only, limit)))


@app.command("overdue")
def cli_overdue(ctx: typer.Context):
    """List issued books past their due date."""
    print_transactions(_run(ctx, lambda s: s.circulation.overdue()), title="Overdue")


@app.command("stats")
def cli_stats(ctx: typer.Context):
    """Show dashboard statistics."""
    print_stats_result(_run(ctx, lambda s: s.circulation.statistics()))


@app.command("audit")
def cli_audit(ctx: typer.Context):
    """Report books whose availability disagrees with the ledger (exit code 2 if any)."""
    books = _run(ctx, lambda s: s.circulation.audit())
    print_audit_result(books)
    if books:
        raise typer.Exit(code=2)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or settings.api_port
    print(f"Starting API on http://{host}:{port}")
    cmd = [sys.executable, "-m", "uvicorn", "campuslib.api:create_app", "--factory",
           "--host", host, "--port", str(port)]
    if reload:
        cmd.append("--reload")
    try:
        subprocess.run(cmd, check=False, env=os.environ.copy())
    except KeyboardInterrupt:
        print("Server stopped.")


if __name__ == "__main__":
    app()
