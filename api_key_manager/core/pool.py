"""
Credential pool.

Owns the set of issuable (active), retired and deleted credentials.
Transitions only move forward: active -> retired -> deleted.
"""

import logging
import random
import threading
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Type

from ..storage.models import Credential, CredentialState, utc_now
from ..storage.repository import StateRepository
from .errors import (
    AlreadyExists,
    KeyManagerError,
    NoCredentialsAvailable,
    NotActive,
    NotFound,
    mask_secret,
)

logger = logging.getLogger(__name__)


class CredentialPool:
    """Thread-safe pool of credentials.

    Every read and write goes through ``lock``. The assignment registry
    shares the same lock so that selection and recording of an
    assignment form one atomic step.
    """

    def __init__(
        self,
        repository: Optional[StateRepository] = None,
        rng: Optional[random.Random] = None,
        clock: Callable = utc_now,
        lock: Optional[threading.RLock] = None,
    ):
        """Create an empty pool.

        Args:
            repository: Where mutations are written through; None keeps state in memory only
            rng: Random source for issuance draws; seed it for deterministic tests
            clock: Returns the current aware datetime
            lock: Serialization lock, created if not given
        """
        self.lock = lock or threading.RLock()
        self._repository = repository
        self._rng = rng or random.Random()
        self._clock = clock
        # Insertion ordered; draws are made over this order.
        self._credentials: Dict[str, Credential] = {}

    def load(self, credentials: Iterable[Credential]) -> None:
        """Restore persisted credentials, keeping their insertion order."""
        with self.lock:
            self._credentials = {c.value: c for c in credentials}

    def add(
        self,
        value: str,
        remote_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> Credential:
        """Add a new active credential.

        Raises:
            ValueError: If value is empty
            AlreadyExists: If the value was ever added, in any state
        """
        if not value or not value.strip():
            raise ValueError("API key is required and cannot be empty")

        with self.lock:
            if value in self._credentials:
                raise AlreadyExists(value)
            credential = Credential(
                value=value,
                state=CredentialState.ACTIVE,
                created_at=self._clock(),
                remote_id=remote_id,
                workspace_id=workspace_id,
            )
            if self._repository is not None:
                self._repository.insert_credential(credential)
            self._credentials[value] = credential
        logger.info("API key %s added", mask_secret(value))
        return credential

    def retire(self, value: str) -> Credential:
        """Move an active credential to the retired set.

        Assignments referencing it are untouched.

        Raises:
            NotActive: If the credential is not currently active
        """
        with self.lock:
            current = self._credentials.get(value)
            if current is None or current.state != CredentialState.ACTIVE:
                raise NotActive(value)
            return self._transition(
                current, NotActive, state=CredentialState.RETIRED, retired_at=self._clock()
            )

    def delete(self, value: str) -> Credential:
        """Move an active or retired credential to the deleted set.

        The value stops being issuable and stops being queried for costs;
        existing assignments and cost samples are retained.

        Raises:
            NotFound: If the credential is neither active nor retired
        """
        with self.lock:
            current = self._credentials.get(value)
            if current is None or current.state == CredentialState.DELETED:
                raise NotFound(value)
            now = self._clock()
            return self._transition(
                current,
                NotFound,
                state=CredentialState.DELETED,
                retired_at=current.retired_at or now,
                deleted_at=now,
            )

    def set_remote_id(
        self,
        value: str,
        remote_id: str,
        workspace_id: Optional[str] = None,
    ) -> Credential:
        """Record the admin API's id (and workspace) for a known credential."""
        with self.lock:
            current = self._credentials.get(value)
            if current is None:
                raise NotFound(value)
            return self._transition(
                current,
                NotFound,
                remote_id=remote_id,
                workspace_id=workspace_id or current.workspace_id,
            )

    def mark_revoked(self, value: str) -> Credential:
        """Record that the admin API confirmed deactivation of a deleted credential."""
        with self.lock:
            current = self._credentials.get(value)
            if current is None or current.state != CredentialState.DELETED:
                raise NotFound(value)
            return self._transition(current, NotFound, revoked_at=self._clock())

    def refresh(self) -> None:
        """Re-read every credential from the repository.

        Picks up keys added, retired or deleted by another process sharing
        the database.
        """
        if self._repository is None:
            return
        with self.lock:
            self._credentials = {c.value: c for c in self._repository.load_credentials()}

    def select_for_issuance(self) -> str:
        """Draw one active credential uniformly at random.

        The snapshot and the draw happen under the pool lock, so two
        concurrent draws never disagree about whether the set is empty.

        Raises:
            NoCredentialsAvailable: If there are no active credentials
        """
        with self.lock:
            active = [c.value for c in self._credentials.values() if c.state == CredentialState.ACTIVE]
            if not active:
                raise NoCredentialsAvailable()
            return self._rng.choice(active)

    def get(self, value: str) -> Optional[Credential]:
        with self.lock:
            return self._credentials.get(value)

    def snapshot(self) -> List[Credential]:
        """All credentials in insertion order, as one consistent view."""
        with self.lock:
            return list(self._credentials.values())

    def active(self) -> List[Credential]:
        return self._in_states(CredentialState.ACTIVE)

    def historical(self) -> List[Credential]:
        return self._in_states(CredentialState.RETIRED)

    def deleted(self) -> List[Credential]:
        return self._in_states(CredentialState.DELETED)

    def queryable(self) -> List[Credential]:
        """Active and retired credentials: the ones billing is polled for."""
        return self._in_states(CredentialState.ACTIVE, CredentialState.RETIRED)

    def _in_states(self, *states: CredentialState) -> List[Credential]:
        with self.lock:
            return [c for c in self._credentials.values() if c.state in states]

    def _transition(
        self,
        current: Credential,
        conflict: Type[KeyManagerError],
        **changes,
    ) -> Credential:
        # Caller holds the lock. Persist first so a failed write leaves memory untouched.
        updated = replace(current, **changes)
        if self._repository is not None:
            if not self._repository.update_credential(updated, expected_state=current.state):
                self._adopt_stored(current.value)
                raise conflict(current.value)
        self._credentials[current.value] = updated
        if updated.state != current.state:
            logger.info(
                "API key %s moved %s -> %s",
                mask_secret(current.value),
                current.state.value,
                updated.state.value,
            )
        return updated

    def _adopt_stored(self, value: str) -> None:
        # The stored row moved on under another process; it wins over memory.
        stored = self._repository.get_credential(value)
        if stored is None:
            self._credentials.pop(value, None)
            logger.warning("API key %s is no longer stored", mask_secret(value))
            return
        self._credentials[value] = stored
        logger.warning(
            "API key %s was changed by another process; now %s",
            mask_secret(value),
            stored.state.value,
        )
