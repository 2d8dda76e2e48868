import json
import threading

import pytest

from custody.errors import DuplicateIdentityError
from custody.identities import CustodyKeyRecord, CustodyWallet, IdentityLedger
from custody.store import DocumentStore

ADDRESS_A = "0x" + "a" * 40
ADDRESS_B = "0x" + "b" * 40


@pytest.fixture()
def audit_path(tmp_path):
    return tmp_path / "audit" / "identities.log"


@pytest.fixture()
def ledger(tmp_path, audit_path):
    return IdentityLedger(DocumentStore(tmp_path / "custody.json"), audit_log_path=audit_path)


def _wallets():
    return [CustodyWallet("ETH", "0x" + "1" * 40), CustodyWallet("DAG", "DAG0" + "1" * 36)]


def _records():
    return [
        CustodyKeyRecord("ETH", "0x" + "1" * 40, "00" * 16 + ":abcd"),
        CustodyKeyRecord("DAG", "DAG0" + "1" * 36, "11" * 16 + ":ef01"),
    ]


def test_create_and_lookup(ledger):
    identity = ledger.create("Player_One", {"ETH": ADDRESS_A}, _wallets(), _records())

    assert identity.handle == "Player_One"
    assert identity.created_at.endswith("Z")
    assert ledger.exists("player_one").handle == "Player_One"
    assert ledger.exists_by_auth_address(ADDRESS_A.upper().replace("0X", "0x"), "ETH").handle == "Player_One"
    assert ledger.exists_by_auth_address(ADDRESS_A, "DAG") is None
    assert [w.as_dict() for w in ledger.exists("PLAYER_ONE").custody_wallets] == [
        w.as_dict() for w in _wallets()
    ]


def test_key_records_are_stored_with_identity(ledger):
    ledger.create("player", {"ETH": ADDRESS_A}, _wallets(), _records())
    assert ledger.key_records("PLAYER") == _records()
    assert ledger.key_records("nobody") == []


def test_duplicate_handle_rejected_case_insensitively(ledger):
    ledger.create("player", {"ETH": ADDRESS_A}, _wallets())
    with pytest.raises(DuplicateIdentityError) as exc:
        ledger.create("PLAYER", {"ETH": ADDRESS_B}, _wallets())
    assert exc.value.field == "handle"
    assert ledger.exists_by_auth_address(ADDRESS_B, "ETH") is None


def test_duplicate_auth_address_rejected_without_writing(ledger):
    ledger.create("first", {"ETH": ADDRESS_A}, _wallets())
    with pytest.raises(DuplicateIdentityError) as exc:
        ledger.create("second", {"ETH": ADDRESS_A}, _wallets(), _records())

    assert exc.value.field == "auth_address"
    assert ledger.exists("second") is None
    assert ledger.key_records("second") == []
    assert ledger.count() == 1


def test_same_address_on_other_chain_is_distinct(ledger):
    ledger.create("first", {"ETH": ADDRESS_A}, _wallets())
    ledger.create("second", {"BNB": ADDRESS_A}, _wallets())
    assert ledger.count() == 2


def test_invalid_handle_rejected(ledger):
    with pytest.raises(ValueError):
        ledger.create("a b", {"ETH": ADDRESS_A}, _wallets())
    with pytest.raises(ValueError):
        ledger.create("player", {}, _wallets())


def test_record_sign_in_only_touches_bookkeeping(ledger):
    created = ledger.create("player", {"ETH": ADDRESS_A}, _wallets())

    first = ledger.record_sign_in("player")
    second = ledger.record_sign_in("player")

    assert second.sign_in_count == 2
    assert second.last_seen_at is not None
    assert first.created_at == second.created_at == created.created_at
    assert second.auth_wallet == created.auth_wallet
    assert second.custody_wallets == created.custody_wallets


def test_record_sign_in_unknown_handle(ledger):
    with pytest.raises(KeyError):
        ledger.record_sign_in("ghost")


def test_audit_log_records_creation_and_rejection(ledger, audit_path):
    ledger.create("player", {"ETH": ADDRESS_A}, _wallets())
    with pytest.raises(DuplicateIdentityError):
        ledger.create("player", {"ETH": ADDRESS_B}, _wallets())

    entries = [json.loads(line) for line in audit_path.read_text(encoding="utf-8").splitlines()]
    assert [entry["event"] for entry in entries] == ["identity_created", "identity_rejected"]
    assert entries[0]["custody_chains"] == ["ETH", "DAG"]
    assert "encrypted_private_key" not in audit_path.read_text(encoding="utf-8")


def test_identities_survive_restart(tmp_path):
    path = tmp_path / "custody.json"
    IdentityLedger(DocumentStore(path)).create("player", {"ETH": ADDRESS_A}, _wallets())

    reopened = IdentityLedger(DocumentStore(path))
    assert reopened.exists_by_auth_address(ADDRESS_A, "ETH").handle == "player"
    with pytest.raises(DuplicateIdentityError):
        reopened.create("other", {"ETH": ADDRESS_A}, _wallets())


def test_concurrent_creates_for_one_address_yield_one_identity(ledger):
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def attempt(index):
        barrier.wait()
        try:
            ledger.create(f"player_{index}", {"ETH": ADDRESS_A}, _wallets())
            result = "created"
        except DuplicateIdentityError:
            result = "duplicate"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("created") == 1
    assert outcomes.count("duplicate") == 7
    assert ledger.count() == 1


def test_dag_auth_addresses_keep_their_case(ledger):
    address = "DAG0" + "abcd" * 9
    variant = "DAG0" + "Abcd" * 9
    ledger.create("first", {"DAG": address}, _wallets())

    assert ledger.exists_by_auth_address(variant, "DAG") is None
    ledger.create("second", {"DAG": variant}, _wallets())
    assert ledger.exists_by_auth_address(address, "DAG").handle == "first"
    assert ledger.exists_by_auth_address(variant, "DAG").handle == "second"


def test_concurrent_sign_ins_are_all_counted(ledger):
    ledger.create("player", {"ETH": ADDRESS_A}, _wallets())
    barrier = threading.Barrier(8)

    def sign_in():
        barrier.wait()
        for _ in range(5):
            ledger.record_sign_in("player")

    threads = [threading.Thread(target=sign_in) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert ledger.exists("player").sign_in_count == 40
