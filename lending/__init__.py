"""Library Lending - Core Application Package

This package contains the lending backend modules:
- Lending state machine (ledger.py)
- Durable storage for books and patrons (stores.py, database.py)
- Data models (book.py, patron.py)
- HTTP API (api.py)
- CLI interface (cli.py)
"""

__version__ = "1.0.0"
