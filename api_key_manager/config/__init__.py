"""Configuration loading for API Key Manager."""
