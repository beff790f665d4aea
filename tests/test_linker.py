import pytest

from conftest import CLUB, make_expense, make_tx, seed
from expense_reconciler.errors import EntityNotFoundError
from expense_reconciler.models import MatchedEntity
from expense_reconciler.state_store import TRANSACTIONS


@pytest.fixture
def pair(store):
    seed(store, make_tx("A", "-45"), make_tx("B", "-45"), make_expense("e1", "45", "Jean", "Dupont"))


def test_link_is_bidirectional(store, linker, pair):
    assert linker.link_manually(CLUB, "A", "e1", actor_id="alice") is True

    tx = store.load_transaction(CLUB, "A")
    assert tx.expense_ids() == ["e1"]
    assert tx.reconciled
    assert tx.matched_entities[0].matched_by == "manual"
    assert tx.matched_entities[0].entity_name == "Jean Dupont"
    exp = store.load_expense(CLUB, "e1")
    assert exp.transaction_id == "A"
    assert exp.linked_at is not None
    assert store.get_audit(CLUB)[-1]["action"] == "link:manual"


def test_link_twice_is_idempotent(store, linker, pair):
    linker.link_manually(CLUB, "A", "e1")
    once_tx = store.get(CLUB, TRANSACTIONS, "A")
    audit_len = len(store.get_audit(CLUB))

    assert linker.link_manually(CLUB, "A", "e1") is False
    assert store.get(CLUB, TRANSACTIONS, "A") == once_tx
    assert len(store.get_audit(CLUB)) == audit_len


def test_relink_moves_expense_to_new_transaction(store, linker, pair):
    linker.link_manually(CLUB, "A", "e1")
    linker.link_manually(CLUB, "B", "e1")

    a = store.load_transaction(CLUB, "A")
    b = store.load_transaction(CLUB, "B")
    assert a.expense_ids() == []
    assert not a.reconciled
    assert b.expense_ids() == ["e1"]
    assert store.load_expense(CLUB, "e1").transaction_id == "B"
    owners = [t.id for t in store.list_transactions(CLUB) if t.references_expense("e1")]
    assert owners == ["B"]


def test_auto_link_records_provenance(store, linker, pair):
    linker.auto_link_expense_to_transaction("e1", "Receipt", "A", CLUB, provenance="sequence:2025-00302")

    tx = store.load_transaction(CLUB, "A")
    assert tx.matched_entities[0].matched_by == "auto"
    assert tx.matched_entities[0].entity_name == "Receipt"
    assert tx.matched_entities[0].confidence == 100
    exp = store.load_expense(CLUB, "e1")
    assert exp.auto_linked
    assert exp.link_provenance == "sequence:2025-00302"


def test_unlink_removes_both_sides_and_tolerates_repeat(store, linker, pair):
    linker.link_manually(CLUB, "A", "e1")

    assert linker.unlink_expense_from_transaction("e1", "A", CLUB) is True
    assert store.load_transaction(CLUB, "A").expense_ids() == []
    assert store.load_expense(CLUB, "e1").transaction_id is None

    assert linker.unlink_expense_from_transaction("e1", "A", CLUB) is False


def test_unlink_keeps_other_entities_reconciled(store, linker, pair):
    linker.link_manually(CLUB, "A", "e1")
    tx = store.load_transaction(CLUB, "A")
    tx.matched_entities.append(MatchedEntity("member", "m1"))
    store.save_transaction(tx)

    linker.unlink_expense_from_transaction("e1", "A", CLUB)
    tx = store.load_transaction(CLUB, "A")
    assert [e.entity_id for e in tx.matched_entities] == ["m1"]
    assert tx.reconciled


def test_link_missing_entity_raises_and_writes_nothing(store, linker, pair):
    with pytest.raises(EntityNotFoundError):
        linker.link_manually(CLUB, "A", "nope")
    with pytest.raises(EntityNotFoundError):
        linker.link_manually(CLUB, "nope", "e1")
    assert store.load_transaction(CLUB, "A").expense_ids() == []
    assert store.load_expense(CLUB, "e1").transaction_id is None


def test_failed_expense_write_rolls_back_transaction(store, linker, pair, monkeypatch):
    def boom(expense):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "save_expense", boom)
    with pytest.raises(RuntimeError):
        linker.link_manually(CLUB, "A", "e1")
    monkeypatch.delattr(store, "save_expense")

    assert store.load_transaction(CLUB, "A").expense_ids() == []
    assert store.load_expense(CLUB, "e1").transaction_id is None


def test_legacy_demand_reference_is_recognised(store, linker):
    tx = make_tx("A", "-45")
    seed(store, tx, make_expense("e1", "45"))
    record = store.get(CLUB, TRANSACTIONS, "A")
    record["matched_entities"] = [{"entity_type": "demand", "entity_id": "e1"}]
    store.put(CLUB, TRANSACTIONS, "A", record)

    assert linker.unlink_expense_from_transaction("e1", "A", CLUB) is True
    assert store.load_transaction(CLUB, "A").matched_entities == []


def test_unlink_audit_names_the_actor(store, linker, pair):
    linker.link_manually(CLUB, "A", "e1", actor_id="alice")

    linker.unlink_expense_from_transaction("e1", "A", CLUB, actor_id="bob")

    row = store.get_audit(CLUB)[-1]
    assert (row["action"], row["actor"]) == ("unlink", "bob")
