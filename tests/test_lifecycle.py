"""
Unit tests for lifecycle policy.

Tests TTL retirement, grace-period deletion, best-effort revocation and
remote id resolution.
"""

from datetime import timedelta

import pytest

from api_key_manager.core.errors import NotActive, NotFound, RemoteUnavailable
from api_key_manager.core.lifecycle import LifecycleManager, LifecyclePolicy, hint_matches
from api_key_manager.core.pool import CredentialPool
from api_key_manager.core.registry import AssignmentRegistry
from api_key_manager.billing.client import RemoteApiKey
from api_key_manager.storage.models import CredentialState


def _manager(clock, billing=None, ttl=None, grace=None):
    pool = CredentialPool(clock=clock)
    registry = AssignmentRegistry(pool, clock=clock)
    policy = LifecyclePolicy(
        retirement_ttl=timedelta(days=ttl) if ttl is not None else None,
        deletion_grace=timedelta(days=grace) if grace is not None else None,
    )
    provider = (lambda: billing) if billing is not None else None
    return pool, LifecycleManager(pool, registry, policy, client_provider=provider, clock=clock)


class TestScan:
    """Test policy-driven transitions."""

    def test_no_policy_changes_nothing(self, clock):
        pool, lifecycle = _manager(clock)
        pool.add("K1")
        clock.advance(days=365)

        report = lifecycle.scan()

        assert report.retired == [] and report.deleted == []
        assert pool.get("K1").state == CredentialState.ACTIVE

    def test_retires_after_ttl(self, clock):
        pool, lifecycle = _manager(clock, ttl=30)
        pool.add("old")
        clock.advance(days=20)
        pool.add("young")
        clock.advance(days=10)

        report = lifecycle.scan()

        assert report.retired == ["old"]
        assert pool.get("old").state == CredentialState.RETIRED
        assert pool.get("young").state == CredentialState.ACTIVE

    def test_deletes_after_grace(self, clock, billing):
        pool, lifecycle = _manager(clock, billing, ttl=30, grace=7)
        pool.add("K1", remote_id="apikey_1")
        clock.advance(days=30)
        lifecycle.scan()
        clock.advance(days=6)
        assert lifecycle.scan().deleted == []

        clock.advance(days=1)
        report = lifecycle.scan()

        assert report.deleted == ["K1"]
        assert report.revoked == ["K1"]
        assert billing.status_updates == [("apikey_1", "inactive")]
        assert pool.get("K1").state == CredentialState.DELETED

    def test_zero_grace_deletes_in_same_scan(self, clock, billing):
        pool, lifecycle = _manager(clock, billing, ttl=1, grace=0)
        pool.add("K1")
        clock.advance(days=1)

        report = lifecycle.scan()

        assert report.retired == ["K1"]
        assert report.deleted == ["K1"]

    def test_deleted_credentials_are_not_evaluated(self, clock, billing):
        pool, lifecycle = _manager(clock, billing, ttl=0, grace=0)
        pool.add("K1")
        pool.delete("K1")

        report = lifecycle.scan()

        assert report.retired == [] and report.deleted == []
        assert report.errors == []


class TestRevocation:
    """Test best-effort remote revocation."""

    def test_failed_revocation_still_deletes_locally_and_retries(self, clock, billing):
        pool, lifecycle = _manager(clock, billing, ttl=0, grace=0)
        pool.add("K1", remote_id="apikey_1")
        billing.revoke_errors = [RemoteUnavailable("down")]

        report = lifecycle.scan()

        assert pool.get("K1").state == CredentialState.DELETED
        assert report.revocation_failures == ["K1"]
        assert lifecycle.pending_revocations == ["K1"]

        retry = lifecycle.scan()

        assert retry.revoked == ["K1"]
        assert lifecycle.pending_revocations == []
        assert billing.status_updates == [("apikey_1", "inactive")]

    def test_one_failing_revocation_does_not_block_others(self, clock, billing):
        pool, lifecycle = _manager(clock, billing, ttl=0, grace=0)
        pool.add("K1", remote_id="apikey_1")
        pool.add("K2", remote_id="apikey_2")
        billing.revoke_errors = [RemoteUnavailable("down")]

        report = lifecycle.scan()

        assert sorted(report.deleted) == ["K1", "K2"]
        assert report.revocation_failures == ["K1"]
        assert report.revoked == ["K2"]

    def test_credential_without_remote_id_is_not_revoked(self, clock, billing):
        pool, lifecycle = _manager(clock, billing, ttl=0, grace=0)
        pool.add("K1")

        report = lifecycle.scan()

        assert report.deleted == ["K1"]
        assert billing.status_updates == []
        assert report.unrevocable == ["K1"]
        assert lifecycle.pending_revocations == []

    def test_no_billing_client_queues_revocation(self, clock):
        pool, lifecycle = _manager(clock, ttl=0, grace=0)
        pool.add("K1", remote_id="apikey_1")

        report = lifecycle.scan()

        assert report.revocation_failures == ["K1"]
        assert lifecycle.pending_revocations == ["K1"]


class TestAdminTransitions:
    """Test explicit admin retire/delete."""

    def test_admin_retire_twice_fails(self, clock):
        pool, lifecycle = _manager(clock)
        pool.add("K1")
        lifecycle.retire("K1")

        with pytest.raises(NotActive):
            lifecycle.retire("K1")

    def test_admin_delete_revokes(self, clock, billing):
        pool, lifecycle = _manager(clock, billing)
        pool.add("K1", remote_id="apikey_1")

        lifecycle.delete("K1")

        assert billing.status_updates == [("apikey_1", "inactive")]
        with pytest.raises(NotFound):
            lifecycle.delete("K1")


class TestRemoteIds:
    """Test resolving billing ids from partial key hints."""

    def test_hint_matches(self):
        assert hint_matches("sk-ant-api03-R2D...igAA", "sk-ant-REDACTED")
        assert not hint_matches("sk-ant-api03-R2D...igAA", "sk-ant-REDACTED")
        assert not hint_matches(None, "sk-ant")
        assert not hint_matches("sk-ant", "sk-ant")

    def test_sync_remote_ids(self, clock, billing):
        pool, lifecycle = _manager(clock, billing)
        pool.add("sk-ant-REDACTED")
        pool.add("sk-ant-REDACTED")
        billing.remote_keys = [
            RemoteApiKey(id="apikey_a", name="a", status="active", partial_key_hint="sk-ant-api03-AAA...1111"),
            RemoteApiKey(id="apikey_x", name="x", status="active", partial_key_hint="sk-ant-api03-ZZZ...9999"),
        ]

        assert lifecycle.sync_remote_ids() == 1
        assert pool.get("sk-ant-REDACTED").remote_id == "apikey_a"
        assert pool.get("sk-ant-REDACTED").remote_id is None

    def test_deleted_key_revoked_once_remote_id_resolved(self, clock, billing):
        value = "sk-ant-REDACTED"
        pool, lifecycle = _manager(clock, billing)
        pool.add(value)
        lifecycle.delete(value)
        assert lifecycle.scan().unrevocable == [value]
        billing.remote_keys = [
            RemoteApiKey(
                id="apikey_a",
                name="a",
                status="active",
                partial_key_hint="sk-ant-api03-AAA...1111",
                workspace_id="wrkspc_a",
            ),
        ]

        assert lifecycle.sync_remote_ids() == 1
        assert lifecycle.pending_revocations == [value]
        report = lifecycle.scan()

        assert report.revoked == [value]
        assert report.unrevocable == []
        assert billing.status_updates == [("apikey_a", "inactive")]
        assert pool.get(value).workspace_id == "wrkspc_a"
        assert lifecycle.pending_revocations == []
