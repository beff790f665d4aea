import sqlite3

import pytest

from conftest import CLUB, make_expense, make_tx, seed
from expense_reconciler.errors import EntityNotFoundError
from expense_reconciler.state_store import EXPENSES, TRANSACTIONS, StateStore


def test_db_path_from_environment(tmp_path, monkeypatch):
    db = tmp_path / "env.db"
    monkeypatch.setenv("RECON_STATE_DB", str(db))
    s = StateStore()
    s.init_db()
    assert s.db_path == str(db)
    assert db.exists()


def test_put_get_find_delete(store):
    store.put(CLUB, EXPENSES, "e1", {"status": "approved", "amount": "10"})
    store.put(CLUB, EXPENSES, "e2", {"status": "submitted", "amount": "12"})
    store.put("other", EXPENSES, "e3", {"status": "approved"})

    assert store.get(CLUB, EXPENSES, "e1") == {"id": "e1", "status": "approved", "amount": "10"}
    assert store.get(CLUB, EXPENSES, "e3") is None
    assert [d["id"] for d in store.find(CLUB, EXPENSES, status="approved")] == ["e1"]
    assert [d["id"] for d in store.all(CLUB, EXPENSES)] == ["e1", "e2"]

    assert store.delete(CLUB, EXPENSES, "e1")
    assert not store.delete(CLUB, EXPENSES, "e1")
    assert store.get(CLUB, EXPENSES, "e1") is None


def test_upsert_keeps_creation_order(store):
    store.put(CLUB, TRANSACTIONS, "t1", {"v": 1})
    store.put(CLUB, TRANSACTIONS, "t2", {"v": 1})
    store.put(CLUB, TRANSACTIONS, "t1", {"v": 2})

    assert [(d["id"], d["v"]) for d in store.all(CLUB, TRANSACTIONS)] == [("t1", 2), ("t2", 1)]


def test_atomic_rolls_back_every_write(store):
    with pytest.raises(RuntimeError):
        with store.atomic() as s:
            s.put(CLUB, EXPENSES, "e1", {"a": 1})
            with s.atomic():
                s.put(CLUB, EXPENSES, "e2", {"a": 2})
            raise RuntimeError("boom")
    assert store.all(CLUB, EXPENSES) == []

    with store.atomic() as s:
        s.put(CLUB, EXPENSES, "e1", {"a": 1})
    assert store.get(CLUB, EXPENSES, "e1")["a"] == 1


def test_atomic_closes_connection_when_begin_fails(store, monkeypatch):
    class LockedConnection:
        closed = False

        def execute(self, sql, *params):
            if sql.startswith("BEGIN"):
                raise sqlite3.OperationalError("database is locked")

        def close(self):
            self.closed = True

    con = LockedConnection()
    monkeypatch.setattr(sqlite3, "connect", lambda *a, **kw: con)

    with pytest.raises(sqlite3.OperationalError):
        with store.atomic():
            pass
    assert con.closed
    assert store._atomic_con is None


def test_audit_log(store):
    store.write_audit(CLUB, "INFO", "alice", "link:manual", ["t1", "e1"], 90, "linked")
    store.write_audit("other", "INFO", "bob", "unlink", ["t2", "e2"], 0, "unlinked")

    [row] = store.get_audit(CLUB)
    assert row["actor"] == "alice"
    assert row["target_ids"] == ["t1", "e1"]
    assert row["score"] == 90
    assert row["error"] is None


def test_typed_helpers_round_trip(store):
    seed(store, make_tx("t1", "-45.50", name="DUPONT"), make_expense("e1", "45.50", "Jean", "Dupont"))

    assert store.load_transaction(CLUB, "t1").counterparty_name == "DUPONT"
    assert store.load_expense(CLUB, "e1").requester_name == "Jean Dupont"
    assert [t.id for t in store.list_transactions(CLUB)] == ["t1"]
    with pytest.raises(EntityNotFoundError):
        store.load_expense(CLUB, "missing")
