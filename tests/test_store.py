import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from custody.errors import PersistenceError
from custody.store import DocumentStore, DuplicateKeyError, Insert


def _emails(document):
    email = document.get("email")
    return [email] if email else []


@pytest.fixture()
def store(tmp_path):
    store = DocumentStore(tmp_path / "store.json")
    store.ensure_unique_index("users", "email", _emails)
    return store


def test_insert_and_lookup(store):
    store.insert("users", "alice", {"email": "a@example.com"})

    assert store.find_one("users", "alice") == {"email": "a@example.com"}
    assert store.find_by_index("users", "email", "a@example.com") == ("alice", {"email": "a@example.com"})
    assert store.find_one("users", "bob") is None
    assert store.count("users") == 1


def test_reads_return_copies(store):
    store.insert("users", "alice", {"email": "a@example.com", "tags": []})
    document = store.find_one("users", "alice")
    document["tags"].append("mutated")
    assert store.find_one("users", "alice")["tags"] == []


def test_documents_survive_reload(store, tmp_path):
    store.insert("users", "alice", {"email": "a@example.com"})

    reloaded = DocumentStore(tmp_path / "store.json")
    reloaded.ensure_unique_index("users", "email", _emails)

    assert reloaded.find_one("users", "alice") == {"email": "a@example.com"}
    assert reloaded.find_by_index("users", "email", "a@example.com")[0] == "alice"


def test_duplicate_primary_key_rejected(store):
    store.insert("users", "alice", {"email": "a@example.com"})
    with pytest.raises(DuplicateKeyError) as exc:
        store.insert("users", "alice", {"email": "other@example.com"})
    assert exc.value.index == "_key"


def test_duplicate_index_value_rejected(store):
    store.insert("users", "alice", {"email": "a@example.com"})
    with pytest.raises(DuplicateKeyError) as exc:
        store.insert("users", "bob", {"email": "a@example.com"})
    assert exc.value.index == "email"
    assert store.find_one("users", "bob") is None


def test_insert_many_is_all_or_nothing(store):
    store.insert("users", "alice", {"email": "a@example.com"})

    with pytest.raises(DuplicateKeyError):
        store.insert_many(
            [
                Insert("profiles", "bob", {"bio": "hi"}),
                Insert("users", "bob", {"email": "a@example.com"}),
            ]
        )

    assert store.find_one("profiles", "bob") is None
    assert store.find_one("users", "bob") is None


def test_insert_many_detects_duplicates_within_batch(store):
    with pytest.raises(DuplicateKeyError):
        store.insert_many(
            [
                Insert("users", "bob", {"email": "same@example.com"}),
                Insert("users", "carol", {"email": "same@example.com"}),
            ]
        )
    assert store.count("users") == 0


def test_failed_write_rolls_back(store):
    with patch.object(DocumentStore, "_persist", side_effect=PersistenceError("disk full")):
        with pytest.raises(PersistenceError):
            store.insert("users", "alice", {"email": "a@example.com"})

    assert store.find_one("users", "alice") is None
    # the index value was never claimed
    store.insert("users", "bob", {"email": "a@example.com"})


def test_update_in_place(store):
    store.insert("users", "alice", {"email": "a@example.com", "visits": 0})
    updated = store.update("users", "alice", {"visits": 1})
    assert updated == {"email": "a@example.com", "visits": 1}
    assert store.find_one("users", "alice")["visits"] == 1


def test_update_cannot_change_indexed_values(store):
    store.insert("users", "alice", {"email": "a@example.com"})
    with pytest.raises(ValueError):
        store.update("users", "alice", {"email": "b@example.com"})


def test_update_missing_document(store):
    with pytest.raises(KeyError):
        store.update("users", "ghost", {"visits": 1})


def test_corrupt_file_is_a_persistence_error(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(PersistenceError):
        DocumentStore(path)


def test_modify_is_atomic_under_concurrent_writers(tmp_path):
    store = DocumentStore(tmp_path / "store.json")
    store.insert("counters", "sign_ins", {"value": 0})

    def bump(document):
        value = document["value"]
        time.sleep(0.005)
        return {"value": value + 1}

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: store.modify("counters", "sign_ins", bump), range(8)))

    assert store.find_one("counters", "sign_ins") == {"value": 8}
    assert DocumentStore(tmp_path / "store.json").find_one("counters", "sign_ins") == {"value": 8}
