"""Persistence layer — SQLAlchemy tables and repositories."""
