import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from expense_reconciler.errors import EntityNotFoundError
from expense_reconciler.models import Expense, Transaction

logger = logging.getLogger(__name__)

TRANSACTIONS = "transactions"
EXPENSES = "expenses"
AI_MATCHES = "ai_expense_matches"
CATEGORIES = "categories"
ACCOUNT_CODES = "account_codes"


def _get_db_path() -> str:
    """Read the path on every call so tests can monkeypatch the environment."""
    return os.getenv("RECON_STATE_DB", "reconciliation_state.db")


class StateStore:
    """Club-scoped JSON document collections on top of SQLite.

    Every document lives under ``(club_id, collection, doc_id)``. The row id
    gives creation order, which the matchers use for stable tie-breaking.
    ``atomic()`` groups several reads and writes into one SQLite transaction.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _get_db_path()
        self._atomic_con: Optional[sqlite3.Connection] = None

    @contextmanager
    def _conn(self):
        if self._atomic_con is not None:
            yield self._atomic_con
            return
        con = sqlite3.connect(self.db_path)
        con.execute("PRAGMA journal_mode=WAL;")
        try:
            yield con
            con.commit()
        finally:
            con.close()

    @contextmanager
    def atomic(self):
        if self._atomic_con is not None:
            # nested block joins the outer transaction
            yield self
            return
        con = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            con.execute("BEGIN IMMEDIATE")
            self._atomic_con = con
            try:
                yield self
                con.execute("COMMIT")
            except BaseException:
                con.execute("ROLLBACK")
                raise
            finally:
                self._atomic_con = None
        finally:
            con.close()

    def init_db(self):
        with self._conn() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  club_id TEXT NOT NULL,
                  collection TEXT NOT NULL,
                  doc_id TEXT NOT NULL,
                  body TEXT NOT NULL,
                  updated_at TEXT,
                  UNIQUE (club_id, collection, doc_id)
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                  ts TEXT,
                  club_id TEXT,
                  level TEXT,
                  actor TEXT,
                  action TEXT,
                  target_ids TEXT,
                  score INTEGER,
                  result TEXT,
                  error TEXT
                );
                """
            )

    def get(self, club_id: str, collection: str, doc_id: str) -> Optional[Dict]:
        with self._conn() as con:
            cur = con.execute(
                "SELECT body FROM documents WHERE club_id=? AND collection=? AND doc_id=?",
                (club_id, collection, str(doc_id)),
            )
            row = cur.fetchone()
            return json.loads(row[0]) if row else None

    def put(self, club_id: str, collection: str, doc_id: str, body: Dict):
        body = dict(body, id=str(doc_id))
        with self._conn() as con:
            con.execute(
                """
                INSERT INTO documents(club_id, collection, doc_id, body, updated_at) VALUES (?,?,?,?,?)
                ON CONFLICT(club_id, collection, doc_id)
                DO UPDATE SET body=excluded.body, updated_at=excluded.updated_at
                """,
                (
                    club_id,
                    collection,
                    str(doc_id),
                    json.dumps(body, ensure_ascii=False),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )

    def find(self, club_id: str, collection: str, **equals) -> List[Dict]:
        sql = "SELECT body FROM documents WHERE club_id=? AND collection=?"
        params: list = [club_id, collection]
        for name, value in equals.items():
            sql += f" AND json_extract(body, '$.{name}') = ?"
            params.append(value)
        sql += " ORDER BY seq"
        with self._conn() as con:
            return [json.loads(row[0]) for row in con.execute(sql, params)]

    def all(self, club_id: str, collection: str) -> List[Dict]:
        return self.find(club_id, collection)

    def delete(self, club_id: str, collection: str, doc_id: str) -> bool:
        with self._conn() as con:
            cur = con.execute(
                "DELETE FROM documents WHERE club_id=? AND collection=? AND doc_id=?",
                (club_id, collection, str(doc_id)),
            )
            return cur.rowcount > 0

    def write_audit(self, club_id: str, level: str, actor: str, action: str, target_ids: list,
                    score: int, result: str, error: Optional[str] = None):
        with self._conn() as con:
            con.execute(
                "INSERT INTO audit_log(ts, club_id, level, actor, action, target_ids, score, result, error) "
                "VALUES (?,?,?,?,?,?,?,?,?)",
                (datetime.now(timezone.utc).isoformat(), club_id, level, actor, action,
                 json.dumps(target_ids), score, result, error),
            )

    def get_audit(self, club_id: str) -> List[Dict]:
        with self._conn() as con:
            cur = con.execute(
                "SELECT ts, level, actor, action, target_ids, score, result, error "
                "FROM audit_log WHERE club_id=? ORDER BY rowid",
                (club_id,),
            )
            return [
                {
                    "ts": ts, "level": level, "actor": actor, "action": action,
                    "target_ids": json.loads(target_ids or "[]"), "score": score,
                    "result": result, "error": error,
                }
                for ts, level, actor, action, target_ids, score, result, error in cur.fetchall()
            ]

    # typed helpers

    def load_transaction(self, club_id: str, transaction_id: str) -> Transaction:
        data = self.get(club_id, TRANSACTIONS, transaction_id)
        if data is None:
            raise EntityNotFoundError(TRANSACTIONS, transaction_id)
        return Transaction.from_record(data)

    def load_expense(self, club_id: str, expense_id: str) -> Expense:
        data = self.get(club_id, EXPENSES, expense_id)
        if data is None:
            raise EntityNotFoundError(EXPENSES, expense_id)
        return Expense.from_record(data)

    def save_transaction(self, tx: Transaction):
        self.put(tx.club_id, TRANSACTIONS, tx.id, tx.to_record())

    def save_expense(self, expense: Expense):
        self.put(expense.club_id, EXPENSES, expense.id, expense.to_record())

    def list_transactions(self, club_id: str) -> List[Transaction]:
        return [Transaction.from_record(d) for d in self.all(club_id, TRANSACTIONS)]

    def list_expenses(self, club_id: str) -> List[Expense]:
        return [Expense.from_record(d) for d in self.all(club_id, EXPENSES)]
