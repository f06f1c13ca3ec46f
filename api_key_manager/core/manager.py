"""
Key manager.

Wires the credential pool, assignment registry, lifecycle manager and
cost aggregator around one repository, and exposes the calls the peer
transport and the admin surface need.
"""

import logging
import random
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from ..billing.client import AnthropicAdminClient
from ..config.loader import ManagerConfig
from ..storage.models import AssignmentRecord, CostSample, CredentialState, utc_now
from ..storage.repository import ADMIN_KEY_SETTING, StateRepository
from .aggregator import AggregationStatus, CostAggregator, CycleResult
from .errors import BillingNotConfigured, NoCredentialsAvailable, mask_secret
from .ledger import CostLedger
from .lifecycle import LifecycleManager, LifecyclePolicy, ScanReport
from .pool import CredentialPool
from .registry import AssignmentRegistry
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class CredentialResponse:
    """Answer to a peer's credential request, as handed to the transport."""
    granted: bool
    credential: Optional[str] = None
    retry_later: bool = False
    message: str = ""


@dataclass(frozen=True)
class CredentialInfo:
    """A credential with its derived peers and cost total."""
    value: str
    status: str
    total_cost: Decimal
    assigned_peers: List[str]
    created_at: datetime
    remote_id: Optional[str] = None


@dataclass(frozen=True)
class CostTotals:
    """Aggregate spend, optionally over a date range.

    ``by_currency`` always holds one total per currency seen. ``total`` and
    ``currency`` summarize it when there is at most one currency and are
    None otherwise.
    """
    total: Optional[Decimal]
    currency: Optional[str]
    by_currency: Dict[str, Decimal]
    by_credential: List[Tuple[str, str, Decimal]]
    stale: bool = False


@dataclass(frozen=True)
class CredentialCosts:
    """Cost series of one credential."""
    value: str
    samples: List[CostSample]
    total: Decimal


@dataclass(frozen=True)
class AdminKeyStatus:
    has_admin_key: bool
    key_prefix: Optional[str] = None


def _default_client_factory(config: ManagerConfig) -> Callable:
    def build(admin_key: str) -> AnthropicAdminClient:
        return AnthropicAdminClient(admin_key, config.billing)
    return build


class KeyManager:
    """Process-wide owner of the manager's state.

    State is loaded once at startup with :meth:`load` and every mutation
    is written through to the repository.
    """

    def __init__(
        self,
        config: Optional[ManagerConfig] = None,
        repository: Optional[StateRepository] = None,
        client_factory: Optional[Callable] = None,
        rng: Optional[random.Random] = None,
        clock: Callable = utc_now,
    ):
        """Build the components.

        Args:
            config: Manager configuration, defaults if not given
            repository: State repository, defaults to the configured database
            client_factory: Builds a billing client from the admin secret
            rng: Random source for issuance draws
            clock: Returns the current aware datetime
        """
        self.config = config or ManagerConfig.defaults()
        self.repository = repository or StateRepository(self.config.storage.db_path)
        self._client_factory = client_factory or _default_client_factory(self.config)
        self._clock = clock

        self._client_lock = threading.Lock()
        self._admin_key: Optional[str] = None
        self._client = None

        self.pool = CredentialPool(self.repository, rng=rng, clock=clock)
        self.registry = AssignmentRegistry(self.pool, self.repository, clock=clock)
        self.ledger = CostLedger(self.repository)
        self.lifecycle = LifecycleManager(
            self.pool,
            self.registry,
            LifecyclePolicy.from_config(self.config.lifecycle),
            client_provider=self._billing_client,
            clock=clock,
        )
        # Without its own cadence, the lifecycle scan follows every aggregation cycle.
        after_cycle = None
        if self.config.lifecycle.scan_interval_seconds is None:
            after_cycle = self._scan_after_cycle
        self.aggregator = CostAggregator(
            self.pool,
            self.ledger,
            self._billing_client,
            self.config.aggregation,
            self.repository,
            clock=clock,
            after_cycle=after_cycle,
        )
        self._tasks: List[PeriodicTask] = []

    @classmethod
    def open(cls, config: Optional[ManagerConfig] = None, **kwargs) -> "KeyManager":
        """Create a manager and load its persisted state."""
        manager = cls(config, **kwargs)
        manager.load()
        return manager

    def load(self) -> None:
        """Create the schema if needed and restore every entity set."""
        self.repository.initialize_schema()
        state = self.repository.load_state()
        self.pool.load(state.credentials)
        self.registry.load(state.assignments)
        self.ledger.load(state.cost_samples)
        self.aggregator.load(state.checkpoint)
        with self._client_lock:
            self._admin_key = state.admin_key
            self._client = None
        logger.info(
            "Loaded %d API keys, %d assignments, %d cost samples",
            len(state.credentials),
            len(state.assignments),
            len(state.cost_samples),
        )

    # Transport

    def on_credential_request(self, peer_id: str) -> CredentialResponse:
        """Serve a peer's request; exhaustion becomes a retry-later answer."""
        try:
            credential = self.registry.request_assignment(peer_id)
        except NoCredentialsAvailable as exc:
            logger.info("Peer %s denied: %s", peer_id, exc)
            return CredentialResponse(granted=False, retry_later=True, message=str(exc))
        return CredentialResponse(granted=True, credential=credential)

    def request_assignment(self, peer_id: str) -> str:
        return self.registry.request_assignment(peer_id)

    # Admin: credentials

    def add_credential(
        self,
        value: str,
        remote_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ):
        return self.pool.add(value, remote_id=remote_id, workspace_id=workspace_id)

    def retire_credential(self, value: str):
        return self.lifecycle.retire(value)

    def delete_credential(self, value: str):
        return self.lifecycle.delete(value)

    def list_credentials(self, include_retired: bool = True, include_deleted: bool = False) -> List[CredentialInfo]:
        """Credentials with assigned peers and cost totals, from one consistent snapshot."""
        states = {CredentialState.ACTIVE}
        if include_retired:
            states.add(CredentialState.RETIRED)
        if include_deleted:
            states.add(CredentialState.DELETED)

        with self.pool.lock:
            credentials = self.pool.snapshot()
            peers = self.registry.peer_map()
        totals = self.ledger.totals_by_credential()

        return [
            CredentialInfo(
                value=c.value,
                status=c.state.value,
                total_cost=totals.get(c.value, Decimal("0")),
                assigned_peers=peers.get(c.value, []),
                created_at=c.created_at,
                remote_id=c.remote_id,
            )
            for c in credentials
            if c.state in states
        ]

    def credential_status(self, value: str) -> str:
        credential = self.pool.get(value)
        return credential.state.value if credential is not None else "unknown"

    def node_history(self) -> List[AssignmentRecord]:
        return self.registry.history()

    # Admin: costs

    def total_costs(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> CostTotals:
        by_credential = [
            (value, currency, amount)
            for (value, currency), amount in self.ledger.totals_by_currency(start, end).items()
            if amount > 0
        ]
        by_currency: Dict[str, Decimal] = {}
        for _, currency, amount in by_credential:
            by_currency[currency] = by_currency.get(currency, Decimal("0")) + amount

        total: Optional[Decimal] = None
        currency: Optional[str] = None
        if not by_currency:
            total, currency = Decimal("0"), DEFAULT_CURRENCY
        elif len(by_currency) == 1:
            currency, total = next(iter(by_currency.items()))
        return CostTotals(
            total=total,
            currency=currency,
            by_currency=by_currency,
            by_credential=by_credential,
            stale=self.aggregator.status().stale,
        )

    def credential_costs(
        self,
        value: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CredentialCosts:
        samples = self.ledger.samples(value, start, end)
        return CredentialCosts(
            value=value,
            samples=samples,
            total=sum((s.amount for s in samples), Decimal("0")),
        )

    def all_costs(self) -> List[CostSample]:
        return self.ledger.samples()

    def refresh_costs(self) -> CycleResult:
        """Manual aggregation cycle."""
        self._billing_client()
        return self.aggregator.run_manual_cycle()

    def reset_costs(self) -> None:
        self.aggregator.reset_history()
        logger.info("Cost history cleared")

    def aggregation_status(self) -> AggregationStatus:
        return self.aggregator.status()

    # Admin: billing secret and provisioning

    def set_admin_key(self, admin_key: str) -> None:
        if not admin_key or not admin_key.strip():
            raise ValueError("admin_key is required and cannot be empty")
        with self._client_lock:
            self.repository.set_setting(ADMIN_KEY_SETTING, admin_key)
            old_client, self._client = self._client, None
            self._admin_key = admin_key
        if old_client is not None:
            old_client.close()
        logger.info("Admin key set: %s", mask_secret(admin_key))

    def admin_key_status(self) -> AdminKeyStatus:
        with self._client_lock:
            key = self._admin_key
        if key is None:
            return AdminKeyStatus(has_admin_key=False)
        return AdminKeyStatus(has_admin_key=True, key_prefix="sk-***" if key.startswith("sk-") else "invalid")

    def provision_workspace(self, name: str) -> str:
        workspace_id = self._billing_client().create_workspace(name)
        logger.info("Created workspace %s (%s)", name, workspace_id)
        return workspace_id

    def run_lifecycle_scan(self) -> ScanReport:
        return self.lifecycle.scan()

    def sync_remote_ids(self) -> int:
        return self.lifecycle.sync_remote_ids()

    # Timers

    def start(self) -> None:
        """Start the aggregation timer, and the lifecycle timer if it has its own cadence."""
        if self._tasks:
            return
        self.aggregator.resume()
        self._tasks.append(PeriodicTask(
            "cost-aggregation",
            self.config.aggregation.interval_seconds,
            self._aggregation_tick,
            run_immediately=True,
        ))
        scan_interval = self.config.lifecycle.scan_interval_seconds
        if scan_interval is not None:
            self._tasks.append(PeriodicTask("lifecycle-scan", scan_interval, self.lifecycle.scan))
        for task in self._tasks:
            task.start()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop timers and abandon an in-flight aggregation without advancing the checkpoint."""
        self.aggregator.stop()
        for task in self._tasks:
            task.stop(timeout)
        self._tasks = []
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()

    def _aggregation_tick(self) -> None:
        self.pool.refresh()
        self.lifecycle.sync_remote_ids()
        self.aggregator.run_cycle()

    def _scan_after_cycle(self, result: CycleResult) -> None:
        self.lifecycle.scan()

    def _billing_client(self):
        with self._client_lock:
            if self._admin_key is None:
                raise BillingNotConfigured()
            if self._client is None:
                self._client = self._client_factory(self._admin_key)
            return self._client
