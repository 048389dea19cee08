"""Glucose reading synchronization."""
