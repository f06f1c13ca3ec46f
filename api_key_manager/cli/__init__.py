"""Command-line interface for API Key Manager."""
