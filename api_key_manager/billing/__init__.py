"""
Billing API client.

Provides access to the remote cost report and key administration endpoints.
"""

from .client import AnthropicAdminClient, CostReportPage, CostReportRow, RemoteApiKey

__all__ = ["AnthropicAdminClient", "CostReportPage", "CostReportRow", "RemoteApiKey"]
