"""
Credential lifecycle policy.

Applies the retirement and deletion policy to credentials over time:

    ACTIVE --(retirement TTL or admin)--> RETIRED --(deletion grace or admin)--> DELETED

Deleting a credential also asks the billing API to deactivate the key.
That call is best-effort: the local transition is applied first. A key
stays pending until the API confirms deactivation, which is recorded in
the database, so a failed revocation is retried by the next scan of any
process sharing it.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional

from ..config.loader import LifecycleConfig
from ..storage.models import Credential, CredentialState, utc_now
from .errors import BillingError, KeyManagerError, mask_secret
from .pool import CredentialPool
from .registry import AssignmentRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecyclePolicy:
    """When credentials move on. ``None`` disables the automatic transition."""
    retirement_ttl: Optional[timedelta] = None
    deletion_grace: Optional[timedelta] = None

    @classmethod
    def from_config(cls, config: LifecycleConfig) -> "LifecyclePolicy":
        def seconds(value):
            return timedelta(seconds=value) if value is not None else None

        return cls(
            retirement_ttl=seconds(config.retirement_ttl_seconds),
            deletion_grace=seconds(config.deletion_grace_seconds),
        )


@dataclass
class ScanReport:
    """What one lifecycle scan did."""
    retired: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    revoked: List[str] = field(default_factory=list)
    revocation_failures: List[str] = field(default_factory=list)
    unrevocable: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class LifecycleManager:
    """Moves credentials through their lifecycle, one isolated transition at a time."""

    def __init__(
        self,
        pool: CredentialPool,
        registry: AssignmentRegistry,
        policy: Optional[LifecyclePolicy] = None,
        client_provider: Optional[Callable] = None,
        clock: Callable = utc_now,
    ):
        self.policy = policy or LifecyclePolicy()
        self._pool = pool
        self._registry = registry
        self._client_provider = client_provider
        self._clock = clock
        self._scan_lock = threading.Lock()

    @property
    def pending_revocations(self) -> List[str]:
        """Deleted credentials the admin API has not yet confirmed as deactivated."""
        return sorted(c.value for c in self._pool.deleted() if c.revocation_pending)

    def retire(self, value: str) -> Credential:
        """Admin retirement. Raises NotActive if the credential is not active."""
        credential = self._pool.retire(value)
        self._log_audit(credential, "retired by admin")
        return credential

    def delete(self, value: str) -> Credential:
        """Admin deletion. Raises NotFound if the credential is neither active nor retired."""
        credential = self._pool.delete(value)
        self._log_audit(credential, "deleted by admin")
        with self._scan_lock:
            self._revoke(credential, ScanReport())
        return credential

    def scan(self) -> ScanReport:
        """Evaluate every non-deleted credential against the policy.

        The pool is re-read from the database first, so transitions made by
        other processes are seen before anything is decided.

        Each transition is applied and fault-isolated on its own; a failure
        is recorded in the report and the scan moves on.
        """
        report = ScanReport()
        self._pool.refresh()
        with self._scan_lock:
            self._retry_revocations(report)
            for credential in self._pool.snapshot():
                if credential.state == CredentialState.DELETED:
                    continue
                try:
                    self._evaluate(credential, report)
                except KeyManagerError as exc:
                    # Typically an admin transition that raced the scan.
                    logger.warning(
                        "Lifecycle transition for %s skipped: %s", mask_secret(credential.value), exc
                    )
                    report.errors.append(f"{mask_secret(credential.value)}: {exc}")

        if report.retired or report.deleted or report.revocation_failures:
            logger.info(
                "Lifecycle scan retired %d, deleted %d, revocation failures %d",
                len(report.retired),
                len(report.deleted),
                len(report.revocation_failures),
            )
        return report

    def _evaluate(self, credential: Credential, report: ScanReport) -> None:
        now = self._clock()
        ttl = self.policy.retirement_ttl
        if credential.state == CredentialState.ACTIVE:
            if ttl is None or now - credential.created_at < ttl:
                return
            credential = self._pool.retire(credential.value)
            report.retired.append(credential.value)
            self._log_audit(credential, "retired after TTL")

        grace = self.policy.deletion_grace
        if credential.state == CredentialState.RETIRED and grace is not None:
            retired_at = credential.retired_at or credential.created_at
            if now - retired_at >= grace:
                credential = self._pool.delete(credential.value)
                report.deleted.append(credential.value)
                self._log_audit(credential, "deleted after grace period")
                self._revoke(credential, report)

    def _revoke(self, credential: Credential, report: ScanReport) -> None:
        # Caller holds _scan_lock. Runs outside the pool lock: network I/O.
        if not credential.remote_id:
            logger.warning(
                "API key %s has no remote id; it stays usable remotely until one is resolved",
                mask_secret(credential.value),
            )
            report.unrevocable.append(credential.value)
            return
        if self._client_provider is None:
            report.revocation_failures.append(credential.value)
            return
        try:
            client = self._client_provider()
            client.update_api_key_status(credential.remote_id, "inactive")
        except BillingError as exc:
            logger.warning(
                "Revocation of API key %s failed, will retry: %s", mask_secret(credential.value), exc
            )
            report.revocation_failures.append(credential.value)
            return
        try:
            self._pool.mark_revoked(credential.value)
        except KeyManagerError as exc:
            logger.warning("Could not record revocation of %s: %s", mask_secret(credential.value), exc)
        report.revoked.append(credential.value)
        logger.info("API key %s revoked remotely", mask_secret(credential.value))

    def _retry_revocations(self, report: ScanReport) -> None:
        for credential in self._pool.deleted():
            if credential.revocation_pending:
                self._revoke(credential, report)
            elif not credential.remote_id:
                report.unrevocable.append(credential.value)

    def sync_remote_ids(self) -> int:
        """Fill in missing remote ids by matching the admin API's partial key hints.

        Deleted credentials are included, so a key deleted before its id was
        known becomes revocable on the next scan. Best-effort; billing errors
        are logged and reported as zero matches.

        Returns:
            Number of credentials whose remote id was resolved
        """
        missing = [c for c in self._pool.snapshot() if not c.remote_id]
        if not missing or self._client_provider is None:
            return 0
        try:
            remote_keys = self._client_provider().list_api_keys()
        except BillingError as exc:
            logger.warning("Could not list remote API keys: %s", exc)
            return 0

        resolved = 0
        for credential in missing:
            matches = [k for k in remote_keys if hint_matches(k.partial_key_hint, credential.value)]
            if len(matches) != 1:
                continue
            try:
                self._pool.set_remote_id(credential.value, matches[0].id, matches[0].workspace_id)
            except KeyManagerError as exc:
                logger.warning("Could not record remote id: %s", exc)
                continue
            resolved += 1
        return resolved

    def _log_audit(self, credential: Credential, action: str) -> None:
        peers = self._registry.peers_for(credential.value)
        logger.info(
            "API key %s %s; %d peer(s) were issued it",
            mask_secret(credential.value),
            action,
            len(peers),
        )


def hint_matches(hint: Optional[str], value: str) -> bool:
    """Whether a partial key hint like ``sk-ant-api03-R2D...igAA`` fits ``value``."""
    if not hint or "..." not in hint:
        return False
    prefix, _, suffix = hint.partition("...")
    return (
        len(value) >= len(prefix) + len(suffix)
        and value.startswith(prefix)
        and value.endswith(suffix)
    )
