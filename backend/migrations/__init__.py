"""Alembic migration scripts for SQLiteStore."""
