"""
Unit tests for the assignment registry.

Tests at-most-once issuance, idempotent repeats and behaviour under
concurrent requests.
"""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from api_key_manager.core.errors import DuplicateAssignmentAttempt, NoCredentialsAvailable, NotFound
from api_key_manager.core.pool import CredentialPool
from api_key_manager.core.registry import AssignmentRegistry
from api_key_manager.storage.models import AssignmentRecord


def _registry(*values, seed=7, clock=None, repository=None):
    kwargs = {"clock": clock} if clock else {}
    pool = CredentialPool(rng=random.Random(seed), **kwargs)
    for value in values:
        pool.add(value)
    return pool, AssignmentRegistry(pool, repository=repository, **kwargs)


class TestIssuance:
    """Test single-threaded issuance semantics."""

    def test_first_request_issues_active_credential(self, clock):
        pool, registry = _registry("K1", "K2", clock=clock)

        credential = registry.request_assignment("alice.os")

        assert credential in {"K1", "K2"}
        record = registry.assignment_for("alice.os")
        assert record.credential == credential
        assert record.issued_at == clock.now

    def test_repeat_request_is_idempotent(self):
        """Scenario A: alice asks twice and keeps her key; bob may share it."""
        pool, registry = _registry("K1", "K2")

        first = registry.request_assignment("alice.os")
        second = registry.request_assignment("alice.os")
        bob = registry.request_assignment("bob.os")

        assert first == second
        assert len(registry) == 2
        assert "alice.os" in registry.peers_for(first)
        assert ("bob.os" in registry.peers_for(first)) == (bob == first)

    def test_empty_pool_creates_no_record(self):
        """Scenario C: carol is denied and nothing is recorded."""
        pool, registry = _registry()

        with pytest.raises(NoCredentialsAvailable):
            registry.request_assignment("carol.os")

        assert registry.assignment_for("carol.os") is None
        assert len(registry) == 0

    def test_last_credential_is_shared_then_exhausted(self):
        """Two peers share the last key; after it is retired a third is denied."""
        pool, registry = _registry("K1")

        assert registry.request_assignment("p1") == "K1"
        assert registry.request_assignment("p2") == "K1"
        assert registry.peers_for("K1") == ["p1", "p2"]

        pool.retire("K1")
        with pytest.raises(NoCredentialsAvailable):
            registry.request_assignment("p3")

    def test_retired_credential_still_returned_to_its_peer(self):
        """A peer is never re-issued a different key automatically."""
        pool, registry = _registry("K1", "K2")
        issued = registry.request_assignment("alice.os")
        pool.retire(issued)

        assert registry.request_assignment("alice.os") == issued

    def test_deleted_credential_keeps_assignment(self):
        pool, registry = _registry("K1")
        registry.request_assignment("alice.os")
        pool.delete("K1")

        assert registry.assignment_for("alice.os").credential == "K1"
        assert registry.peers_for("K1") == ["alice.os"]

    def test_empty_peer_id_fails(self):
        pool, registry = _registry("K1")
        with pytest.raises(ValueError, match="peer_id is required"):
            registry.request_assignment("")

    def test_history_and_peer_map(self, clock):
        pool, registry = _registry("K1", clock=clock)
        registry.request_assignment("p1")
        clock.advance(minutes=5)
        registry.request_assignment("p2")

        assert [r.peer_id for r in registry.history()] == ["p1", "p2"]
        assert registry.peer_map() == {"K1": ["p1", "p2"]}

    def test_failed_write_creates_no_record(self):
        repository = Mock()
        repository.get_assignment.return_value = None
        repository.insert_assignment.side_effect = OSError("disk full")
        pool, registry = _registry("K1", repository=repository)

        with pytest.raises(OSError):
            registry.request_assignment("alice.os")

        assert registry.assignment_for("alice.os") is None


class TestConcurrency:
    """Test the single serialization point under contention."""

    def test_concurrent_requests_same_peer_yield_one_record(self):
        pool, registry = _registry("K1", "K2", "K3", "K4")
        barrier = threading.Barrier(32)

        def request():
            barrier.wait()
            return registry.request_assignment("alice.os")

        with ThreadPoolExecutor(max_workers=32) as executor:
            results = list(executor.map(lambda _: request(), range(32)))

        assert len(set(results)) == 1
        assert len(registry) == 1
        assert registry.peers_for(results[0]) == ["alice.os"]

    def test_concurrent_requests_many_peers(self):
        pool, registry = _registry("K1", "K2")
        peers = [f"peer-{i}" for i in range(50)]
        barrier = threading.Barrier(len(peers))

        def request(peer):
            barrier.wait()
            return peer, registry.request_assignment(peer)

        with ThreadPoolExecutor(max_workers=len(peers)) as executor:
            results = dict(executor.map(request, peers))

        assert len(registry) == len(peers)
        peer_map = registry.peer_map()
        assert sorted(p for ps in peer_map.values() for p in ps) == sorted(peers)
        for peer, credential in results.items():
            assert peer in peer_map[credential]

    def test_concurrent_requests_against_retirement(self):
        """Requests racing the retirement of the last key either get it or are denied."""
        pool, registry = _registry("K1")
        barrier = threading.Barrier(21)
        outcomes = []

        def request(peer):
            barrier.wait()
            try:
                outcomes.append((peer, registry.request_assignment(peer)))
            except NoCredentialsAvailable:
                outcomes.append((peer, None))

        threads = [threading.Thread(target=request, args=(f"p{i}",)) for i in range(20)]
        for thread in threads:
            thread.start()
        barrier.wait()
        pool.retire("K1")
        for thread in threads:
            thread.join()

        granted = {peer for peer, credential in outcomes if credential is not None}
        assert set(registry.peers_for("K1")) == granted
        assert len(registry) == len(granted)


class TestLoad:
    """Test restoring persisted assignments."""

    def test_load_restores_records(self, clock):
        pool, registry = _registry("K1")
        registry.load([AssignmentRecord("alice.os", "K1", clock.now)])

        assert registry.request_assignment("alice.os") == "K1"
        assert len(registry) == 1

    def test_load_duplicate_peer_is_fatal(self, clock):
        pool, registry = _registry("K1", "K2")

        with pytest.raises(DuplicateAssignmentAttempt):
            registry.load([
                AssignmentRecord("alice.os", "K1", clock.now),
                AssignmentRecord("alice.os", "K2", clock.now),
            ])

    def test_load_unknown_credential_fails(self, clock):
        pool, registry = _registry("K1")

        with pytest.raises(NotFound):
            registry.load([AssignmentRecord("alice.os", "K9", clock.now)])
