"""
API Key Manager.

Rations a small pool of spend-limited API keys to remote peers and tracks
what each key costs by polling the billing API.
"""

__version__ = "0.1.0"
