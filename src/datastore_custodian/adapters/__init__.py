"""Adapters - dialect-specific integrations for the custodian.

Contains:
- backends.py  - StorageBackend implementations for PostgreSQL and SQLite
"""

__all__: list[str] = []
