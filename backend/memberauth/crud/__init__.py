# backend/memberauth/crud/__init__.py
"""
CRUD operations package for the application.
This module re-exports the CRUD operations from the underlying modules.
"""

from .crud_account import account

__all__ = ["account"]
