from datetime import date
from decimal import Decimal

from expense_reconciler.models import (
    AIMatch,
    Expense,
    MatchedEntity,
    MatchStatus,
    Transaction,
)


def test_transaction_from_legacy_record():
    tx = Transaction.from_record({
        "id": "t1",
        "amount": "-45.00",
        "execution_date": "2024-03-10T00:00:00Z",
        "counterparty_name": "DUPONT JEAN",
        "matched_entities": [{"entity_type": "demand", "entity_id": "e1"}],
        "expense_claim_id": "e2",
    })

    assert tx.amount == Decimal("-45.00")
    assert tx.execution_date == date(2024, 3, 10)
    assert tx.is_outflow
    assert tx.expense_ids() == ["e1", "e2"]
    assert tx.matched_entities[0].entity_type == "expense"
    assert tx.reconciled


def test_drop_expense_recomputes_reconciled():
    tx = Transaction("t1", "c", Decimal("-1"), date(2025, 1, 1),
                     matched_entities=[MatchedEntity("expense", "e1"), MatchedEntity("member", "m1")])
    assert tx.drop_expense("e1")
    assert tx.reconciled
    assert not tx.drop_expense("e1")
    tx.matched_entities = [MatchedEntity("expense", "e2")]
    assert tx.drop_expense("e2")
    assert not tx.reconciled


def test_expense_resolves_legacy_document_fields():
    exp = Expense.from_record({
        "id": "e1",
        "amount": 12.5,
        "requester_first_name": "Jean",
        "requester_last_name": "Dupont",
        "document_url": "https://blob/a.pdf?token=1",
        "urls_justificatifs": ["https://blob/b.pdf"],
        "document_hash": "abc",
    })

    assert exp.amount == Decimal("12.5")
    assert [d.original_name for d in exp.documents] == ["a.pdf", "b.pdf"]
    assert exp.documents[0].file_hash == "abc"
    assert exp.document_hashes() == ["abc"]
    assert exp.label == "Jean Dupont"
    assert exp.status == "submitted"


def test_expense_record_round_trip_keeps_link_fields():
    exp = Expense("e1", "c", Decimal("10.00"), date(2025, 1, 2), transaction_id="t1",
                  auto_linked=True, link_provenance="sequence:2025-1")
    again = Expense.from_record(exp.to_record())
    assert again.transaction_id == "t1"
    assert again.auto_linked
    assert again.link_provenance == "sequence:2025-1"
    assert again.amount == Decimal("10.00")


def test_ai_match_status():
    m = AIMatch.from_record({"id": "m1", "transaction_id": "t1", "expense_id": "e1", "confidence": 70})
    assert m.status is MatchStatus.PENDING
    assert not m.status.is_terminal
    assert MatchStatus.REJECTED.is_terminal
    assert AIMatch.from_record(m.to_record()).status is MatchStatus.PENDING
