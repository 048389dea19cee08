"""Dexcom HTTP API client."""
