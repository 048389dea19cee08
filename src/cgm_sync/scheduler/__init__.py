"""Periodic background sweep."""
