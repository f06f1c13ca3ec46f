"""
Data models for storage layer.

Defines the persisted entities: credentials, assignments, cost samples
and the aggregation checkpoint.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class CredentialState(Enum):
    """Lifecycle position of a credential. Transitions only move forward."""
    ACTIVE = "active"
    RETIRED = "retired"
    DELETED = "deleted"


@dataclass(frozen=True)
class Credential:
    """A spend-limited API key managed by the pool.

    Identity is the secret value. ``remote_id`` is the admin API's id for
    the key and ``workspace_id`` the workspace it lives in, when known.
    ``revoked_at`` is set once the admin API confirmed deactivation of a
    deleted key.
    """
    value: str
    state: CredentialState
    created_at: datetime
    remote_id: Optional[str] = None
    retired_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    workspace_id: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @property
    def billing_ids(self) -> Tuple[str, ...]:
        """Identifiers a cost report row may carry for this key."""
        return tuple(i for i in (self.remote_id, self.workspace_id, self.value) if i)

    @property
    def revocation_pending(self) -> bool:
        """Deleted with a known remote id, but not yet deactivated remotely."""
        return (
            self.state == CredentialState.DELETED
            and self.remote_id is not None
            and self.revoked_at is None
        )


@dataclass(frozen=True)
class AssignmentRecord:
    """Permanent record binding a peer to the credential it was issued.

    Created once on the peer's first request. Never modified or removed,
    even after the credential is deleted.
    """
    peer_id: str
    credential: str
    issued_at: datetime


@dataclass(frozen=True)
class CostSample:
    """One dated, attributed spend entry reported by the billing API.

    Append-only; uniquely keyed by (credential, bucket_start, description).
    """
    credential: str
    bucket_start: datetime
    bucket_end: datetime
    amount: Decimal
    currency: str
    description: str

    @property
    def key(self) -> Tuple[str, datetime, str]:
        return (self.credential, self.bucket_start, self.description)


@dataclass(frozen=True)
class AggregationCheckpoint:
    """End of the last report window that was fully merged."""
    last_successful_bucket_end: Optional[datetime] = None


@dataclass
class StoredState:
    """Everything loaded from the database at startup."""
    credentials: List[Credential] = field(default_factory=list)
    assignments: List[AssignmentRecord] = field(default_factory=list)
    cost_samples: List[CostSample] = field(default_factory=list)
    checkpoint: AggregationCheckpoint = field(default_factory=AggregationCheckpoint)
    admin_key: Optional[str] = None
