import json

import pytest

from borgersync.core.state import FLOW_CACHE, FLOW_TARGETS, StateStore


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "state" / "borgersync_state.json"


class TestStateStoreLoad:
    def test_load_missing_file(self, state_file):
        store = StateStore(state_file)
        assert store.cursor == 0
        assert store.misses("www.borger.dk_42") == 0

    def test_load_corrupted_json(self, state_file):
        state_file.parent.mkdir()
        state_file.write_text("{invalid json", encoding="utf-8")
        assert StateStore(state_file).cursor == 0

    def test_load_not_a_dict(self, state_file):
        state_file.parent.mkdir()
        state_file.write_text(json.dumps([1, 2, 3]), encoding="utf-8")
        assert StateStore(state_file).state == {"cursor": 0, "misses": {}}


class TestStateStoreSave:
    def test_save_round_trip(self, state_file):
        store = StateStore(state_file)
        store.cursor = 3
        store.record_miss("www.borger.dk_42")
        store.save()

        reloaded = StateStore(state_file)
        assert reloaded.cursor == 3
        assert reloaded.misses("www.borger.dk_42") == 1
        assert not state_file.with_name(state_file.name + ".tmp").exists()

    def test_save_without_path_is_noop(self, tmp_path):
        store = StateStore()
        store.cursor = 2
        store.save()
        assert list(tmp_path.iterdir()) == []


class TestMisses:
    def test_warns_at_threshold(self):
        store = StateStore(skip_warning_threshold=3)
        assert [store.record_miss("www.borger.dk_42") for _ in range(4)] == [False, False, True, True]

    def test_clear_resets_count(self):
        store = StateStore(skip_warning_threshold=2)
        store.record_miss("www.borger.dk_42")
        store.clear_miss("www.borger.dk_42")
        assert store.misses("www.borger.dk_42") == 0
        assert store.record_miss("www.borger.dk_42") is False

    def test_flows_are_counted_separately(self):
        store = StateStore(skip_warning_threshold=2)
        assert store.record_miss("www.borger.dk_42", FLOW_TARGETS) is False
        assert store.record_miss("www.borger.dk_42", FLOW_CACHE) is False
        assert store.record_miss("www.borger.dk_42", FLOW_TARGETS) is True
        assert store.misses("www.borger.dk_42", FLOW_CACHE) == 1

    def test_clear_resets_every_flow(self):
        store = StateStore()
        store.record_miss("www.borger.dk_42", FLOW_TARGETS)
        store.record_miss("www.borger.dk_42", FLOW_CACHE)
        store.clear_miss("www.borger.dk_42")
        assert store.misses("www.borger.dk_42", FLOW_TARGETS) == 0
        assert store.misses("www.borger.dk_42", FLOW_CACHE) == 0

    def test_counts_without_flow_are_dropped(self, state_file):
        state_file.parent.mkdir()
        state_file.write_text(json.dumps({"cursor": 4, "misses": {"www.borger.dk_42": 2}}), encoding="utf-8")
        store = StateStore(state_file)
        assert store.cursor == 4
        assert store.misses("www.borger.dk_42") == 0
