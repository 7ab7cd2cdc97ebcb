"""
Phonebooth API

Thin FastAPI layer over the Accounting Service.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
