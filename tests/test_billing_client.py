"""
Unit tests for the admin API client.

Requests are served by an in-process httpx transport; no network access.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from api_key_manager.billing.client import (
    AnthropicAdminClient,
    format_timestamp,
    parse_timestamp,
)
from api_key_manager.config.loader import BillingConfig
from api_key_manager.core.errors import RemoteRejected, RemoteTimeout, RemoteUnavailable

START = datetime(2025, 8, 1, tzinfo=timezone.utc)
END = datetime(2025, 8, 10, tzinfo=timezone.utc)

REPORT = {
    "data": [
        {
            "starting_at": "2025-08-09T00:00:00Z",
            "ending_at": "2025-08-10T00:00:00Z",
            "results": [
                {
                    "amount": "5.00",
                    "currency": "USD",
                    "description": "Input Tokens",
                    "api_key_id": "apikey_1",
                    "model": "claude-sonnet-4",
                },
                {
                    "amount": 1.25,
                    "currency": "USD",
                    "description": "Web Search",
                    "workspace_id": "wrkspc_1",
                },
            ],
        }
    ],
    "has_more": True,
    "next_page": "page_2",
}


def _client(handler, **config):
    transport = httpx.MockTransport(handler)
    return AnthropicAdminClient("sk-ant-admin01-secret", BillingConfig(**config), transport=transport)


class TestClientSetup:
    """Test construction and request headers."""

    def test_requires_admin_key(self):
        with pytest.raises(ValueError, match="admin_key is required"):
            AnthropicAdminClient("  ")

    def test_sends_auth_and_version_headers(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, json={"data": [], "has_more": False})

        with _client(handler) as client:
            client.fetch_cost_report(START, END)

        assert seen["x-api-key"] == "sk-ant-admin01-secret"
        assert seen["anthropic-version"] == "2023-06-01"


class TestCostReport:
    """Test cost report fetching and parsing."""

    def test_request_parameters(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = request.url.params
            return httpx.Response(200, json={"data": [], "has_more": False})

        client = _client(handler, page_limit=7)
        client.fetch_cost_report(START, END, page="abc")

        params = seen["params"]
        assert seen["path"] == "/v1/organizations/cost_report"
        assert params["starting_at"] == "2025-08-01T00:00:00Z"
        assert params["ending_at"] == "2025-08-10T00:00:00Z"
        assert params["bucket_width"] == "1d"
        assert params["limit"] == "7"
        assert params.get_list("group_by[]") == ["workspace_id", "description"]
        assert params["page"] == "abc"

    def test_default_grouping_in_query_string(self):
        """The cost report is grouped by workspace and description."""
        seen = {}

        def handler(request):
            seen["query"] = request.url.query.decode()
            return httpx.Response(200, json={"data": [], "has_more": False})

        _client(handler).fetch_cost_report(START, END)

        pairs = httpx.QueryParams(seen["query"]).multi_items()
        assert [v for k, v in pairs if k == "group_by[]"] == ["workspace_id", "description"]
        assert "api_key_id" not in seen["query"]

    def test_parses_rows(self):
        client = _client(lambda request: httpx.Response(200, json=REPORT))

        page = client.fetch_cost_report(START, END)

        assert page.has_more is True
        assert page.next_page == "page_2"
        first, second = page.rows
        assert first.amount == Decimal("5.00")
        assert first.credential_id == "apikey_1"
        assert first.model == "claude-sonnet-4"
        assert first.starting_at == datetime(2025, 8, 9, tzinfo=timezone.utc)
        assert second.amount == Decimal("1.25")
        assert second.credential_id == "wrkspc_1"

    def test_malformed_report_is_unavailable(self):
        body = {"data": [{"starting_at": "2025-08-09T00:00:00Z", "results": []}]}
        client = _client(lambda request: httpx.Response(200, json=body))

        with pytest.raises(RemoteUnavailable, match="Malformed cost report"):
            client.fetch_cost_report(START, END)


class TestErrorMapping:
    """Test mapping of transport and HTTP failures."""

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retriable_statuses(self, status):
        client = _client(lambda request: httpx.Response(status, text="busy"))

        with pytest.raises(RemoteUnavailable) as exc_info:
            client.fetch_cost_report(START, END)
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_rejected_statuses(self, status):
        client = _client(lambda request: httpx.Response(status, json={"error": "no"}))

        with pytest.raises(RemoteRejected) as exc_info:
            client.fetch_cost_report(START, END)
        assert exc_info.value.status_code == status

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(RemoteTimeout):
            _client(handler).fetch_cost_report(START, END)

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RemoteUnavailable):
            _client(handler).fetch_cost_report(START, END)

    def test_invalid_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(RemoteUnavailable, match="Failed to parse response"):
            client.fetch_cost_report(START, END)


class TestKeyManagement:
    """Test API key and workspace endpoints."""

    def test_update_api_key_status(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "apikey_1", "name": "k", "status": "inactive"})

        key = _client(handler).update_api_key_status("apikey_1", "inactive")

        assert seen == {
            "method": "POST",
            "path": "/v1/organizations/api_keys/apikey_1",
            "body": {"status": "inactive"},
        }
        assert key.status == "inactive"

    def test_update_rejects_unknown_status(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ValueError):
            client.update_api_key_status("apikey_1", "deleted")

    def test_list_api_keys_follows_pagination(self):
        pages = {
            None: {"data": [{"id": "apikey_1", "partial_key_hint": "sk-ant-api03-AAA...1111"}],
                   "has_more": True, "last_id": "apikey_1"},
            "apikey_1": {"data": [{"id": "apikey_2"}], "has_more": False, "last_id": "apikey_2"},
        }

        def handler(request):
            return httpx.Response(200, json=pages[request.url.params.get("after_id")])

        keys = _client(handler).list_api_keys()

        assert [k.id for k in keys] == ["apikey_1", "apikey_2"]
        assert keys[0].partial_key_hint == "sk-ant-api03-AAA...1111"

    def test_create_workspace(self):
        def handler(request):
            assert json.loads(request.content) == {"name": "peers"}
            return httpx.Response(200, json={"id": "wrkspc_9", "name": "peers"})

        assert _client(handler).create_workspace("peers") == "wrkspc_9"


class TestTimestamps:
    """Test timestamp helpers."""

    def test_format_naive_as_utc(self):
        assert format_timestamp(datetime(2025, 8, 1, 6, 30)) == "2025-08-01T06:30:00Z"

    def test_parse_trailing_z(self):
        assert parse_timestamp("2025-08-01T06:30:00Z") == datetime(2025, 8, 1, 6, 30, tzinfo=timezone.utc)
