"""
PHONEBOOTH - Call Billing and Balance Accounting Core

Prepaid voice calls, metered per destination rate and debited against an
append-only ledger.

Layout:
- core: rates, ledger, call state model, error taxonomy
- billing: call lifecycle driver, billing meter, lock registry
- persistence: SQLite / PostgreSQL storage collaborator
- api: thin FastAPI layer
"""

__version__ = "1.0.0"
