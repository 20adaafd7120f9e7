import json

import pytest

from tagger.exceptions import RecordNotFoundError, StoreError
from tagger.storage import JsonFileStore, MemoryStore


# ---------------------------------------------------------
# Helpers
# ---------------------------------------------------------

def seed(store):
    match = store.create("matches", {"best_of": 5})
    s = store.create("sets", {"match_id": match["id"], "set_number": 1, "tagging_phase": "phase2_in_progress"})
    rally = store.create("rallies", {"set_id": s["id"], "rally_index": 1})
    shot = store.create("shots", {
        "rally_id": rally["id"], "shot_index": 1, "role": "serve",
        "shot_origin": "left", "serve_spin": "top", "shot_result": "in_play", "is_tagged": True,
    })
    return match, s, rally, shot


# ---------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------

def test_create_assigns_id_and_requires_parent():
    store = MemoryStore()
    match = store.create("matches", {"best_of": 3})

    assert match["id"]
    with pytest.raises(StoreError):
        store.create("sets", {"set_number": 1})


def test_reads_are_copies():
    store = MemoryStore()
    match = store.create("matches", {"best_of": 3})

    match["best_of"] = 7
    fetched = store.get_by_id("matches", match["id"])
    fetched["best_of"] = 9

    assert store.get_by_id("matches", match["id"])["best_of"] == 3


def test_update_missing_record():
    store = MemoryStore()

    with pytest.raises(RecordNotFoundError):
        store.update("rallies", "nope", {"winner": "player_a"})


def test_unknown_collection():
    store = MemoryStore()

    with pytest.raises(StoreError):
        store.get_by_parent_id("points", "x")


def test_delete_rally_cascades_to_shots():
    store = MemoryStore()
    _, s, rally, _ = seed(store)

    store.delete("rallies", rally["id"])

    assert store.get_by_parent_id("rallies", s["id"]) == []
    assert store.get_by_parent_id("shots", rally["id"]) == []


def test_delete_tagging_data_all():
    store = MemoryStore()
    _, s, rally, _ = seed(store)

    store.delete_tagging_data(s["id"], "all")

    record = store.get_by_id("sets", s["id"])
    assert record["tagging_phase"] == "not_started"
    assert store.get_by_parent_id("rallies", s["id"]) == []


def test_delete_tagging_data_phase2_only():
    store = MemoryStore()
    _, s, rally, shot = seed(store)

    store.delete_tagging_data(s["id"], "phase2_only")

    (kept,) = store.get_by_parent_id("shots", rally["id"])
    assert kept["shot_origin"] is None
    assert kept["serve_spin"] is None
    assert kept["is_tagged"] is False
    assert kept["role"] == "serve"
    assert kept["shot_result"] == "in_play"
    assert store.get_by_id("sets", s["id"])["tagging_phase"] == "phase1_complete"


def test_delete_tagging_data_bad_scope():
    store = MemoryStore()
    _, s, _, _ = seed(store)

    with pytest.raises(ValueError):
        store.delete_tagging_data(s["id"], "phase1_only")


# ---------------------------------------------------------
# JsonFileStore
# ---------------------------------------------------------

def test_json_store_survives_reload(tmp_path):
    path = tmp_path / "store.json"
    store = JsonFileStore(path)
    _, s, rally, _ = seed(store)

    reloaded = JsonFileStore(path)

    assert reloaded.get_by_id("sets", s["id"])["set_number"] == 1
    assert len(reloaded.get_by_parent_id("shots", rally["id"])) == 1


def test_json_store_rejects_other_schema(tmp_path):
    path = tmp_path / "store.json"
    path.write_text(json.dumps({"schema_version": 99}), encoding="utf-8")

    with pytest.raises(StoreError):
        JsonFileStore(path)


def test_json_store_write_failure_is_store_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = JsonFileStore(blocker / "store.json")

    with pytest.raises(StoreError):
        store.create("matches", {"best_of": 5})
