"""Persistence layer for API Key Manager."""
