"""
Persistence Layer for Phonebooth

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import CallRecord
from .repository import CallRepository, RateRepository, TransactionRepository, UserRepository

__all__ = [
    "Database",
    "get_database",
    "CallRecord",
    "CallRepository",
    "RateRepository",
    "TransactionRepository",
    "UserRepository",
]
