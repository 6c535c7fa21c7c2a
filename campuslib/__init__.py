"""Campus Library - Circulation Core Package

This package contains the library's circulation modules including:
- Catalog lookups (catalog.py)
- Issue/return state machine and ledger queries (circulation.py)
- Catalog management and profile registration (management.py)
- Data models (book.py, profile.py, transaction.py)
- Database layer (database.py, store.py)
- API endpoints (api.py)
- CLI interface (main.py)
"""

__version__ = "1.0.0"
