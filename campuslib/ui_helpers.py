import json
import os
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from campuslib.book import Book
from campuslib.errors import LibraryError
from campuslib.profile import UserProfile
from campuslib.transaction import CirculationReceipt, Transaction

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

# Keyed by LibraryError.code
RETRY_HINTS = {
    "store_unavailable": "The library store did not answer, so the change may or may not have been saved. "
                         "Look the record up again before retrying.",
    "lookup_failed": "The library store could not be reached. Nothing was changed; try again shortly.",
}


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _date(value: Optional[str]) -> str:
    return value[:10] if value else "-"


def print_books_result(books: List[Book]) -> None:
    """Print books in the current output mode.
    - plain: 'CODE - Title by Author [Status]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("Code", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="white")
        table.add_column("Status")
        for b in books:
            status = "[green]Available[/]" if b.available else "[yellow]Issued[/]"
            table.add_row(b.code, b.title, b.author, b.category.value, status)
        _console.print(table)
    else:
        for b in books:
            print(f"{b.code} - {b.title} by {b.author} [{b.status}]")


def print_book(book: Book) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(book.to_dict(), ensure_ascii=False))
        return
    lines = [
        f"Code: {book.code}",
        f"Title: {book.title}",
        f"Author: {book.author}",
        f"Category: {book.category.value}",
        f"Status: {book.status}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="Book Found", border_style="green"))
    else:
        print("Book Found")
        print("\n".join(lines))


def print_profile(profile: UserProfile) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(profile.to_dict(), ensure_ascii=False))
        return
    lines = [
        f"Serial: {profile.serial}",
        f"Name: {profile.name}",
        f"Email: {profile.email}",
        f"Phone: {profile.phone or '-'}",
        f"Department: {profile.department or '-'}",
        f"Verification: {profile.verification_status.value}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="User", border_style="blue"))
    else:
        print("\n".join(lines))


def print_receipt(receipt: CirculationReceipt, action: str) -> None:
    """Report a successful issue or return, with the new due/return date."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(receipt.to_dict(), ensure_ascii=False))
        return

    book = receipt.book
    if action == "issue":
        serial = receipt.transaction.user_serial if receipt.transaction else "-"
        message = f"Issued {book.code} ({book.title}) to {serial}. Due date: {_date(receipt.due_at)}"
    elif receipt.repaired:
        message = f"{book.code} ({book.title}) marked available by override; no open transaction was found."
    else:
        message = f"Returned {book.code} ({book.title}). Return date: {_date(receipt.returned_at)}"

    if mode == "rich":
        _console.print(f"[bold green]{message}[/]")
    else:
        print(message)


def print_transactions(transactions: List[Transaction], title: str = "Transactions") -> None:
    mode = get_output_mode()
    if not transactions:
        print("No transactions.")
        return

    if mode == "json":
        print(json.dumps([t.to_dict() for t in transactions], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, header_style="bold cyan")
        for column in ("#", "Book", "User", "Kind", "Issued", "Due", "Returned"):
            table.add_column(column)
        for t in transactions:
            table.add_row(str(t.id), t.book_code or str(t.book_id), t.user_serial or str(t.user_id),
                          t.kind.value, _date(t.issued_at), _date(t.due_at), _date(t.returned_at))
        _console.print(table)
    else:
        for t in transactions:
            print(f"#{t.id} {t.book_code} -> {t.user_serial} {t.kind.value} "
                  f"issued {_date(t.issued_at)} due {_date(t.due_at)} returned {_date(t.returned_at)}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard counters in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("total_books", "Total Books"),
        ("available", "Available"),
        ("issued", "Issued"),
        ("users", "Users"),
        ("open_transactions", "Open Transactions"),
        ("overdue", "Overdue"),
    ]
    if mode == "json":
        print(json.dumps({k: stats.get(k, 0) for k, _ in labels}, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(k, 0)}" for k, label in labels)
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
    else:
        for k, label in labels:
            print(f"{label}: {stats.get(k, 0)}")


def print_audit_result(books: List[Book]) -> None:
    if not books:
        print("No inconsistencies found.")
        return
    if get_output_mode() == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
        return
    for b in books:
        expected = "issued" if b.available else "available"
        print(f"{b.code}: flagged {b.status.lower()} but the ledger says {expected}")


def print_error(error: LibraryError) -> None:
    if get_output_mode() == "json":
        print(json.dumps(error.to_dict(), ensure_ascii=False))
        return
    print(f"Error: {error.message}")
    hint = RETRY_HINTS.get(error.code) if error.retryable else None
    if hint:
        print(hint)
