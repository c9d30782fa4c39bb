"""
Model Engine Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies)
- integration/: Backend tests (mongomock, SQLite)
- e2e/: Live database tests (MongoDB, MySQL, PostgreSQL)
"""
