"""
Assignment registry.

Maps peer identity to the credential it was issued and guarantees that a
peer is issued at most one credential for the lifetime of the registry.

The existence check, the pool draw and the record insertion all run under
the pool's lock, so duplicate or concurrent requests from the same peer
cannot both create a record, and no two peers can both draw from a pool
that is actually exhausted.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from ..storage.models import AssignmentRecord, utc_now
from ..storage.repository import StateRepository
from .errors import DuplicateAssignmentAttempt, NotFound, mask_secret
from .pool import CredentialPool

logger = logging.getLogger(__name__)


class AssignmentRegistry:
    """Permanent, append-only record of which peer holds which credential."""

    def __init__(
        self,
        pool: CredentialPool,
        repository: Optional[StateRepository] = None,
        clock: Callable = utc_now,
    ):
        self._pool = pool
        self._lock = pool.lock
        self._repository = repository
        self._clock = clock
        self._records: Dict[str, AssignmentRecord] = {}

    def load(self, records: Iterable[AssignmentRecord]) -> None:
        """Restore persisted assignments.

        Raises:
            DuplicateAssignmentAttempt: If a peer appears twice
            NotFound: If a record references a credential the pool never held
        """
        with self._lock:
            restored: Dict[str, AssignmentRecord] = {}
            for record in records:
                if record.peer_id in restored:
                    raise DuplicateAssignmentAttempt(record.peer_id)
                if self._pool.get(record.credential) is None:
                    raise NotFound(record.credential)
                restored[record.peer_id] = record
            self._records = restored

    def request_assignment(self, peer_id: str) -> str:
        """Return the credential for ``peer_id``, issuing one on first request.

        Repeat calls for the same peer return the same credential with no
        side effects, whatever the credential's current state.

        Args:
            peer_id: Identity of the requesting peer

        Returns:
            The credential value issued to the peer

        Raises:
            ValueError: If peer_id is empty
            NoCredentialsAvailable: If the peer has no credential and the pool is empty
        """
        if not peer_id or not peer_id.strip():
            raise ValueError("peer_id is required and cannot be empty")

        with self._lock:
            existing = self._records.get(peer_id)
            if existing is not None:
                return existing.credential
            stored = self._stored_assignment(peer_id)
            if stored is not None:
                return stored.credential

            # Keys retired or deleted by another process must not be issued.
            self._pool.refresh()
            # Propagates NoCredentialsAvailable without recording anything.
            value = self._pool.select_for_issuance()
            record = AssignmentRecord(peer_id=peer_id, credential=value, issued_at=self._clock())
            self._insert(record)

        logger.info("Issued API key %s to peer %s", mask_secret(value), peer_id)
        return value

    def _stored_assignment(self, peer_id: str) -> Optional[AssignmentRecord]:
        # Another process sharing the database may have issued to this peer.
        if self._repository is None:
            return None
        record = self._repository.get_assignment(peer_id)
        if record is not None:
            self._records[peer_id] = record
        return record

    def _insert(self, record: AssignmentRecord) -> None:
        if record.peer_id in self._records:
            raise DuplicateAssignmentAttempt(record.peer_id)
        if self._repository is not None:
            self._repository.insert_assignment(record)
        self._records[record.peer_id] = record

    def assignment_for(self, peer_id: str) -> Optional[AssignmentRecord]:
        with self._lock:
            return self._records.get(peer_id)

    def peers_for(self, credential: str) -> List[str]:
        """Peers issued ``credential``, in issuance order.

        Derived from the assignment records; there is no separate list.
        """
        with self._lock:
            return [r.peer_id for r in self._ordered() if r.credential == credential]

    def peer_map(self) -> Dict[str, List[str]]:
        """Credential value -> assigned peers, for every credential with at least one peer."""
        peers: Dict[str, List[str]] = {}
        with self._lock:
            for record in self._ordered():
                peers.setdefault(record.credential, []).append(record.peer_id)
        return peers

    def history(self) -> List[AssignmentRecord]:
        """Every assignment ever made, oldest first."""
        with self._lock:
            return self._ordered()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _ordered(self) -> List[AssignmentRecord]:
        # Insertion order is issuance order.
        return list(self._records.values())
