from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from expense_reconciler.config_loader import DEFAULTS
from expense_reconciler.linker import Linker
from expense_reconciler.models import Expense, Transaction
from expense_reconciler.state_store import StateStore

CLUB = "club-1"


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setenv("RECON_STATE_DB", str(tmp_path / "state.db"))
    s = StateStore()
    s.init_db()
    return s


@pytest.fixture
def linker(store):
    return Linker(store)


@pytest.fixture
def cfg():
    return {k: (dict(v) if isinstance(v, dict) else v) for k, v in DEFAULTS.items()}


def make_tx(tx_id, amount, day=date(2025, 3, 10), name="", communication="", sequence="", **kw):
    return Transaction(
        id=tx_id,
        club_id=CLUB,
        amount=Decimal(str(amount)),
        execution_date=day,
        counterparty_name=name,
        communication=communication,
        sequence_number=sequence,
        **kw,
    )


def make_expense(exp_id, amount, first="", last="", day=date(2025, 3, 1), description="",
                 status="approved", created=None, **kw):
    return Expense(
        id=exp_id,
        club_id=CLUB,
        amount=Decimal(str(amount)),
        requested_date=day,
        requester_first_name=first,
        requester_last_name=last,
        description=description,
        status=status,
        created_at=created or datetime(2025, 3, 1, tzinfo=timezone.utc),
        **kw,
    )


def seed(store, *items):
    for item in items:
        if isinstance(item, Transaction):
            store.save_transaction(item)
        else:
            store.save_expense(item)
