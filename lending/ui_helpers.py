import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lending.book import Book
from lending.title_request import TitleRequest

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LENDING_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def print_books(books: List[Book]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'id - Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _print_json([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="white")
        table.add_column("Available", justify="right")
        table.add_column("Issued", justify="right")
        table.add_column("Pending", justify="right")
        for b in books:
            table.add_row(b.id, b.title, b.author, b.category, f"{b.available}/{b.total}",
                          str(b.issued), str(len(b.pending_requests())))
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available}/{b.total}]")


def print_requests(summaries: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()

    if not summaries:
        print("No pending requests.")
        return

    if mode == "json":
        _print_json(summaries)
    elif mode == "rich":
        table = Table(title="⏳ Pending requests", header_style="bold cyan")
        table.add_column("Request", style="magenta", no_wrap=True)
        table.add_column("Book")
        table.add_column("Patron")
        table.add_column("Available", justify="right")
        table.add_column("Requested at")
        for s in summaries:
            table.add_row(s["request_id"], f"{s['title']} ({s['book_id']})",
                          f"{s['patron_name']} ({s['patron_id']})", str(s["available"]),
                          s["requested_at"] or "")
        _console.print(table)
    else:
        for s in summaries:
            print(f"{s['request_id']} - {s['title']} requested by {s['patron_name']} ({s['patron_id']})")


def print_issued(records: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()

    if not records:
        print("No issued books.")
        return

    if mode == "json":
        _print_json(records)
    elif mode == "rich":
        table = Table(title="📖 Issued books", header_style="bold cyan")
        table.add_column("Book", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Issued at")
        table.add_column("Return by")
        for r in records:
            table.add_row(r["book_id"], r["title"], r["issued_at"], r["return_by"])
        _console.print(table)
    else:
        for r in records:
            print(f"{r['book_id']} - {r['title']} (return by {r['return_by']})")


def print_title_requests(requests: List[TitleRequest]) -> None:
    mode = get_output_mode()

    if not requests:
        print("No pending title requests.")
        return

    if mode == "json":
        _print_json([r.to_dict() for r in requests])
    elif mode == "rich":
        table = Table(title="📝 Title requests", header_style="bold cyan")
        table.add_column("Request", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Author")
        table.add_column("Patron")
        table.add_column("Requested at")
        for r in requests:
            table.add_row(r.id, r.title, r.author, f"{r.patron_name} ({r.patron_id})", r.requested_at or "")
        _console.print(table)
    else:
        for r in requests:
            print(f"{r.id} - {r.title} by {r.author} requested by {r.patron_name} ({r.patron_id})")


def print_consistency(violations: List[str]) -> None:
    mode = get_output_mode()

    if mode == "json":
        _print_json({"consistent": not violations, "violations": violations})
    elif mode == "rich":
        if violations:
            body = "\n".join(f"[red]✗[/] {v}" for v in violations)
            _console.print(Panel.fit(body, title="Consistency", border_style="red"))
        else:
            _console.print(Panel.fit("[green]✓ All lending invariants hold[/]", title="Consistency",
                                     border_style="green"))
    else:
        if not violations:
            print("Consistent: all lending invariants hold.")
        for v in violations:
            print(f"Violation: {v}")
