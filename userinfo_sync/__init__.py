"""
User Info Sync - Reconcile user attributes in a multi-tenant user store against an external directory.

This package pages through each tenant's users, looks every user up in the
directory service with bounded concurrency, updates pre-existing attributes
whose values changed and invalidates sessions when sensitive attributes move.
"""

__version__ = "1.0.0"
__author__ = "User Info Sync Team"
