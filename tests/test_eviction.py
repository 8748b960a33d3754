"""
Unit Tests for EvictionPolicy

Test coverage for:
- LRU victim selection and tie-breaking
- Soft cap enforcement before creating a new session
- Busy sessions are never evicted
- Removal failures are skipped, not raised
"""

from unittest.mock import patch

from ticket_worker.config import AppConfig, ConfigStore
from ticket_worker.errors import WorkspaceIOError
from ticket_worker.eviction import EvictionPolicy, lru_order_key
from ticket_worker.models import Session


def _fill(store, clock, *keys):
    for key in keys:
        store.get_or_create(key)
        clock.advance(minutes=1)


# -----------------------------------------------------------------------------
# Test Cases: Victim Selection
# -----------------------------------------------------------------------------
class TestSelectVictim:
    """Tests for choosing the least recently used session."""

    def test_oldest_last_used_wins(self, store, clock, small_config):
        _fill(store, clock, "A", "B")
        store.touch("A")

        victim = EvictionPolicy(store, small_config).select_victim(store.list(), set())

        assert victim.key == "B"

    def test_tie_broken_by_key(self, clock):
        sessions = [
            Session(key="b", created_at=clock.now, last_used=clock.now, has_session_data=False),
            Session(key="a", created_at=clock.now, last_used=clock.now, has_session_data=False),
        ]

        assert min(sessions, key=lru_order_key).key == "a"

    def test_excluded_and_busy_sessions_skipped(self, store, clock, small_config, active):
        _fill(store, clock, "A", "B", "C")
        policy = EvictionPolicy(store, small_config, active)

        with active.hold("B"):
            victim = policy.select_victim(store.list(), {"A"})

        assert victim.key == "C"

    def test_no_candidates(self, store, clock, small_config):
        _fill(store, clock, "A")

        assert EvictionPolicy(store, small_config).select_victim(store.list(), {"A"}) is None


# -----------------------------------------------------------------------------
# Test Cases: Capacity Enforcement
# -----------------------------------------------------------------------------
class TestEnforceCapacity:
    """Tests for keeping the resident count below the soft cap."""

    def test_below_cap_evicts_nothing(self, store, clock, small_config):
        _fill(store, clock, "A")

        assert EvictionPolicy(store, small_config).enforce_capacity("C") == []
        assert store.count() == 1

    def test_evicts_lru_to_make_room(self, store, clock, small_config):
        _fill(store, clock, "A", "B")

        evicted = EvictionPolicy(store, small_config).enforce_capacity("C")
        store.get_or_create("C")

        assert evicted == ["A"]
        assert {s.key for s in store.list()} == {"B", "C"}

    def test_shrunk_cap_evicts_several(self, store, clock):
        _fill(store, clock, "A", "B", "C", "D")
        config = ConfigStore(initial=AppConfig(max_sessions=2))

        evicted = EvictionPolicy(store, config).enforce_capacity("E")

        assert evicted == ["A", "B", "C"]
        assert [s.key for s in store.list()] == ["D"]

    def test_reads_cap_at_decision_time(self, store, clock, small_config):
        _fill(store, clock, "A", "B")
        policy = EvictionPolicy(store, small_config)
        small_config.update(max_sessions=5)

        assert policy.enforce_capacity("C") == []

    def test_busy_session_is_not_evicted(self, store, clock, small_config, active):
        _fill(store, clock, "A", "B")
        policy = EvictionPolicy(store, small_config, active)

        with active.hold("A"):
            evicted = policy.enforce_capacity("C")

        assert evicted == ["B"]
        assert store.exists("A")

    def test_all_busy_goes_over_soft_cap(self, store, clock, small_config, active):
        _fill(store, clock, "A", "B")
        policy = EvictionPolicy(store, small_config, active)

        with active.hold("A"), active.hold("B"):
            evicted = policy.enforce_capacity("C")

        assert evicted == []
        assert store.count() == 2

    def test_removal_failure_skips_victim(self, store, clock, small_config):
        _fill(store, clock, "A", "B")
        original_remove = store.remove

        def flaky_remove(key):
            if key == "A":
                raise WorkspaceIOError(key, "remove", PermissionError("denied"))
            return original_remove(key)

        with patch.object(store, "remove", side_effect=flaky_remove):
            evicted = EvictionPolicy(store, small_config).enforce_capacity("C")

        assert evicted == ["B"]
        assert store.exists("A")

    def test_listing_failure_is_handled_locally(self, store, clock, small_config):
        _fill(store, clock, "A", "B")
        error = WorkspaceIOError("*", "list", PermissionError("denied"))

        with patch.object(store, "list", side_effect=error):
            evicted = EvictionPolicy(store, small_config).enforce_capacity("C")

        assert evicted == []
        assert store.exists("A") and store.exists("B")
