import json
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from lending.book import CATEGORIES
from lending.config import configure_logging, settings
from lending.errors import LendingError
from lending.ledger import Ledger
from lending.ui_helpers import (
    get_output_mode,
    print_books,
    print_consistency,
    print_issued,
    print_requests,
    print_title_requests,
    set_output_mode,
)

console = Console()

app = typer.Typer(help="Library lending maintenance CLI")


class LedgerManager:
    """Holds the single Ledger used by one CLI invocation."""

    _instance: Optional[Ledger] = None
    _db_file: Optional[str] = None

    @classmethod
    def configure(cls, db_file: Optional[str]) -> None:
        if db_file != cls._db_file:
            cls.reset()
        cls._db_file = db_file

    @classmethod
    def get_instance(cls) -> Ledger:
        if cls._instance is None:
            cls._instance = Ledger(db_file=cls._db_file)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None


def _fail(error: LendingError) -> None:
    print(f"Error ({error.code}): {error.message}")
    raise typer.Exit(code=1)


def _emit(message: str, payload: dict) -> None:
    if get_output_mode() == "json":
        print(json.dumps(payload, ensure_ascii=False, default=str))
    else:
        print(message)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LENDING_DB_FILE)"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level"),
):
    """Global CLI options."""
    if output:
        set_output_mode(output)
    configure_logging(log_level or "WARNING")
    LedgerManager.configure(db)


@app.command("init-db")
def cli_init_db():
    """Create the database schema."""
    try:
        ledger = LedgerManager.get_instance()
    except LendingError as e:
        _fail(e)
    print(f"Database ready: {ledger.db_file}")


@app.command("add-book")
def cli_add_book(
    title: str,
    author: str,
    category: str = typer.Option(..., "--category", "-c", help=f"One of: {', '.join(CATEGORIES)}"),
    total: int = typer.Option(settings.default_book_copies, "--total", "-t", help="Number of copies"),
    rating: float = typer.Option(0, "--rating", help="Rating between 0 and 5"),
    cover: Optional[str] = typer.Option(None, "--cover"),
    pdf: Optional[str] = typer.Option(None, "--pdf"),
):
    """Add a book to the catalog."""
    try:
        book = LedgerManager.get_instance().add_book(title, author, category, total=total,
                                                     rating=rating, cover=cover, pdf=pdf)
    except LendingError as e:
        _fail(e)
    _emit(f"Added: {book.title} by {book.author} ({book.id})", book.to_dict())


@app.command("add-patron")
def cli_add_patron(name: str, admin: bool = typer.Option(False, "--admin", help="Grant admin rights")):
    """Register a patron."""
    try:
        patron = LedgerManager.get_instance().register_patron(name, is_admin=admin)
    except LendingError as e:
        _fail(e)
    _emit(f"Registered patron: {patron.name} ({patron.id})", patron.to_dict())


@app.command("list")
def cli_list():
    """List every book with its inventory counters."""
    try:
        books = LedgerManager.get_instance().list_books()
    except LendingError as e:
        _fail(e)
    print_books(books)


@app.command("pending")
def cli_pending(patron: Optional[str] = typer.Option(None, "--patron", help="Only this patron's requests")):
    """List pending lending requests."""
    try:
        summaries = LedgerManager.get_instance().pending_requests(patron_id=patron)
    except LendingError as e:
        _fail(e)
    print_requests(summaries)


@app.command("request")
def cli_request(book_id: str, patron_id: str):
    """Queue a request from PATRON_ID for BOOK_ID."""
    try:
        request = LedgerManager.get_instance().request_book(patron_id, book_id)
    except LendingError as e:
        _fail(e)
    _emit(f"Request submitted: {request.id}", request.to_dict())


@app.command("approve")
def cli_approve(book_id: str, request_id: str):
    """Approve a pending request and issue the book."""
    try:
        book = LedgerManager.get_instance().approve_request(book_id, request_id)
    except LendingError as e:
        _fail(e)
    _emit(f"Request approved: {book.title} [{book.available}/{book.total}]", book.to_dict())


@app.command("reject")
def cli_reject(book_id: str, request_id: str):
    """Reject a pending request."""
    try:
        book = LedgerManager.get_instance().reject_request(book_id, request_id)
    except LendingError as e:
        _fail(e)
    _emit(f"Request rejected: {book.title}", book.to_dict())


@app.command("issue")
def cli_issue(book_id: str, patron_id: str):
    """Issue BOOK_ID to PATRON_ID without a request."""
    try:
        book, patron = LedgerManager.get_instance().direct_issue(book_id, patron_id)
    except LendingError as e:
        _fail(e)
    _emit(f"Issued: {book.title} to {patron.name} [{book.available}/{book.total}]",
          {"book": book.to_dict(), "patron": patron.to_dict()})


@app.command("return")
def cli_return(book_id: str, patron_id: str):
    """Return BOOK_ID from PATRON_ID."""
    try:
        book, patron = LedgerManager.get_instance().return_book(book_id, patron_id)
    except LendingError as e:
        _fail(e)
    _emit(f"Returned: {book.title} from {patron.name} [{book.available}/{book.total}]",
          {"book": book.to_dict(), "patron": patron.to_dict()})


@app.command("issued")
def cli_issued(patron_id: str):
    """Show the books a patron currently holds."""
    try:
        records = LedgerManager.get_instance().issued_books(patron_id)
    except LendingError as e:
        _fail(e)
    print_issued(records)


@app.command("request-title")
def cli_request_title(
    patron_id: str,
    title: str,
    author: str,
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Why the library should get it"),
):
    """Ask the library to acquire a title it does not hold."""
    try:
        request = LedgerManager.get_instance().request_title(patron_id, title, author, description)
    except LendingError as e:
        _fail(e)
    _emit(f"Title request submitted: {request.id}", request.to_dict())


@app.command("title-requests")
def cli_title_requests():
    """List pending title requests, newest first."""
    try:
        requests = LedgerManager.get_instance().pending_title_requests()
    except LendingError as e:
        _fail(e)
    print_title_requests(requests)


@app.command("resolve-title")
def cli_resolve_title(request_id: str, status: str = typer.Argument(..., help="approved | rejected")):
    """Approve or reject a title request."""
    try:
        request = LedgerManager.get_instance().resolve_title_request(request_id, status)
    except LendingError as e:
        _fail(e)
    _emit(f"Title request {request.status.value}: {request.title} by {request.author}", request.to_dict())


@app.command("check")
def cli_check():
    """Verify the lending invariants over the whole database."""
    try:
        violations = LedgerManager.get_instance().check_consistency()
    except LendingError as e:
        _fail(e)
    print_consistency(violations)
    if violations:
        raise typer.Exit(code=2)


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    print(f"Starting API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "lending.api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    env = dict(os.environ)
    if LedgerManager._db_file:
        env["LENDING_DB_FILE"] = LedgerManager._db_file
    try:
        subprocess.run(args, check=False, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
