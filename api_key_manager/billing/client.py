"""
Anthropic Admin API client.

Fetches cost reports and manages API keys and workspaces. Every call is
bounded by the configured timeout; transport and HTTP failures are mapped
onto the billing error taxonomy so callers can tell retriable failures
from rejected requests.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config.loader import BillingConfig
from ..core.errors import RemoteRejected, RemoteTimeout, RemoteUnavailable, mask_secret

logger = logging.getLogger(__name__)

COST_REPORT_PATH = "/v1/organizations/cost_report"
API_KEYS_PATH = "/v1/organizations/api_keys"
WORKSPACES_PATH = "/v1/organizations/workspaces"


@dataclass(frozen=True)
class CostReportRow:
    """One attributed line of a cost report bucket."""
    starting_at: datetime
    ending_at: datetime
    amount: Decimal
    currency: str
    description: str
    credential_id: Optional[str] = None
    cost_type: Optional[str] = None
    model: Optional[str] = None
    token_type: Optional[str] = None


@dataclass(frozen=True)
class CostReportPage:
    """One page of a cost report."""
    rows: List[CostReportRow]
    has_more: bool
    next_page: Optional[str] = None


@dataclass(frozen=True)
class RemoteApiKey:
    """An API key as listed by the admin API."""
    id: str
    name: str
    status: str
    partial_key_hint: Optional[str] = None
    workspace_id: Optional[str] = None


def format_timestamp(value: datetime) -> str:
    """RFC 3339 in UTC with a trailing Z, as the admin API expects."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class AnthropicAdminClient:
    """Synchronous client for the organization admin endpoints.

    Stateless apart from the underlying connection pool, so one instance
    can be shared between the aggregation and lifecycle timers.
    """

    def __init__(
        self,
        admin_key: str,
        config: Optional[BillingConfig] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the admin client.

        Args:
            admin_key: Organization admin API key (required)
            config: Connection settings, defaults if not given
            transport: Optional httpx transport, used by tests

        Raises:
            ValueError: If admin_key is missing/empty
        """
        if not admin_key or not admin_key.strip():
            raise ValueError("admin_key is required and cannot be empty")

        self.config = config or BillingConfig()
        self._client = httpx.Client(
            base_url=self.config.base_url.rstrip("/"),
            timeout=self.config.timeout_seconds,
            headers={
                "x-api-key": admin_key,
                "anthropic-version": self.config.api_version,
                "content-type": "application/json",
            },
            transport=transport,
        )
        logger.debug("Admin client created for %s with key %s", self.config.base_url, mask_secret(admin_key))

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AnthropicAdminClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def fetch_cost_report(
        self,
        starting_at: datetime,
        ending_at: datetime,
        group_by: Optional[Sequence[str]] = None,
        bucket_width: str = "1d",
        page: Optional[str] = None,
    ) -> CostReportPage:
        """Fetch one page of the cost report for ``[starting_at, ending_at)``.

        Args:
            starting_at: Window start (inclusive)
            ending_at: Window end (exclusive)
            group_by: Report grouping, defaults to the configured grouping
            bucket_width: Bucket size of the report
            page: Cursor from the previous page's ``next_page``

        Returns:
            The parsed page; callers loop while ``has_more`` is set

        Raises:
            RemoteUnavailable, RemoteTimeout, RemoteRejected
        """
        params: List[tuple] = [
            ("starting_at", format_timestamp(starting_at)),
            ("ending_at", format_timestamp(ending_at)),
            ("bucket_width", bucket_width),
            ("limit", self.config.page_limit),
        ]
        for field_name in (group_by or self.config.group_by):
            params.append(("group_by[]", field_name))
        if page:
            params.append(("page", page))

        logger.debug("Fetching cost report %s -> %s page=%s", params[0][1], params[1][1], page)
        body = self._request("GET", COST_REPORT_PATH, params=params)
        return self._parse_cost_report(body)

    def update_api_key_status(self, api_key_id: str, status: str) -> RemoteApiKey:
        """Set a remote key's status (``active``, ``inactive`` or ``archived``)."""
        if status not in ("active", "inactive", "archived"):
            raise ValueError(f"Unsupported API key status: {status}")
        body = self._request("POST", f"{API_KEYS_PATH}/{api_key_id}", json={"status": status})
        return self._parse_api_key(body)

    def list_api_keys(
        self,
        status: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> List[RemoteApiKey]:
        """List remote API keys, following pagination to the end."""
        keys: List[RemoteApiKey] = []
        after_id: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"limit": 100}
            if status:
                params["status"] = status
            if workspace_id:
                params["workspace_id"] = workspace_id
            if after_id:
                params["after_id"] = after_id
            body = self._request("GET", API_KEYS_PATH, params=params)
            keys.extend(self._parse_api_key(item) for item in body.get("data", []))
            if not body.get("has_more") or not body.get("last_id"):
                return keys
            after_id = body["last_id"]

    def create_workspace(self, name: str) -> str:
        """Create a workspace and return its id."""
        if not name or not name.strip():
            raise ValueError("name is required and cannot be empty")
        body = self._request("POST", WORKSPACES_PATH, json={"name": name})
        workspace_id = body.get("id")
        if not workspace_id:
            raise RemoteRejected("Workspace response missing id")
        return workspace_id

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteTimeout(f"{method} {path} timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise RemoteUnavailable(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status == httpx.codes.TOO_MANY_REQUESTS or status >= 500:
            raise RemoteUnavailable(
                f"API returned status {status}: {response.text[:200]}", status_code=status
            )
        if status >= 400:
            raise RemoteRejected(
                f"API returned status {status}: {response.text[:200]}", status_code=status
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteUnavailable(f"Failed to parse response: {exc}", status_code=status) from exc
        if not isinstance(body, dict):
            raise RemoteUnavailable("Unexpected response body", status_code=status)
        return body

    @staticmethod
    def _parse_cost_report(body: Dict[str, Any]) -> CostReportPage:
        rows: List[CostReportRow] = []
        try:
            for bucket in body.get("data", []):
                starting_at = parse_timestamp(bucket["starting_at"])
                ending_at = parse_timestamp(bucket["ending_at"])
                for result in bucket.get("results", []):
                    rows.append(CostReportRow(
                        starting_at=starting_at,
                        ending_at=ending_at,
                        amount=Decimal(str(result["amount"])),
                        currency=result.get("currency") or "USD",
                        description=result.get("description") or "",
                        credential_id=result.get("api_key_id") or result.get("workspace_id"),
                        cost_type=result.get("cost_type"),
                        model=result.get("model"),
                        token_type=result.get("token_type"),
                    ))
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise RemoteUnavailable(f"Malformed cost report: {exc}") from exc

        return CostReportPage(
            rows=rows,
            has_more=bool(body.get("has_more")),
            next_page=body.get("next_page"),
        )

    @staticmethod
    def _parse_api_key(item: Dict[str, Any]) -> RemoteApiKey:
        try:
            return RemoteApiKey(
                id=item["id"],
                name=item.get("name", ""),
                status=item.get("status", ""),
                partial_key_hint=item.get("partial_key_hint"),
                workspace_id=item.get("workspace_id"),
            )
        except (KeyError, TypeError) as exc:
            raise RemoteUnavailable(f"Malformed API key entry: {exc}") from exc
