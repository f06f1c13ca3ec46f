"""
Shared fixtures: a controllable clock, a scripted billing client and
temporary databases.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from api_key_manager.billing.client import CostReportPage, CostReportRow, RemoteApiKey
from api_key_manager.storage.repository import StateRepository

T0 = datetime(2025, 8, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeBillingClient:
    """Scripted stand-in for the admin API client.

    ``pages`` are served by cursor: page N links to page N+1 through
    ``next_page``. ``errors`` are raised, in order, before any page is served.
    """

    def __init__(self, pages=None, errors=None):
        self.pages = pages or [CostReportPage(rows=[], has_more=False)]
        self.errors = list(errors or [])
        self.calls = []
        self.status_updates = []
        self.revoke_errors = []
        self.remote_keys = []
        self.closed = False

    def fetch_cost_report(self, starting_at, ending_at, group_by=None, bucket_width="1d", page=None):
        self.calls.append((starting_at, ending_at, page))
        if self.errors:
            raise self.errors.pop(0)
        return self.pages[0 if page is None else int(page)]

    def update_api_key_status(self, api_key_id, status):
        if self.revoke_errors:
            raise self.revoke_errors.pop(0)
        self.status_updates.append((api_key_id, status))
        return RemoteApiKey(id=api_key_id, name="", status=status)

    def list_api_keys(self, status=None, workspace_id=None):
        return list(self.remote_keys)

    def create_workspace(self, name):
        return f"wrkspc_{name}"

    def close(self):
        self.closed = True


def make_row(credential_id, amount, start=None, description="Input Tokens", currency="USD"):
    """One report row covering the day that starts at ``start``."""
    start = start or datetime(2025, 8, 9, tzinfo=timezone.utc)
    return CostReportRow(
        starting_at=start,
        ending_at=start + timedelta(days=1),
        amount=Decimal(amount),
        currency=currency,
        description=description,
        credential_id=credential_id,
    )


def make_pages(*row_groups):
    """Chain row groups into pages linked by cursor."""
    pages = []
    for index, rows in enumerate(row_groups):
        last = index == len(row_groups) - 1
        pages.append(CostReportPage(
            rows=list(rows),
            has_more=not last,
            next_page=None if last else str(index + 1),
        ))
    return pages


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def billing():
    return FakeBillingClient()


@pytest.fixture
def row():
    return make_row


@pytest.fixture
def pages():
    return make_pages


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "test.db")


@pytest.fixture
def repository(db_path):
    repo = StateRepository(db_path)
    repo.initialize_schema()
    return repo
