import logging
from typing import Optional

from expense_reconciler.errors import require_club
from expense_reconciler.models import Expense, MatchedEntity, Transaction, utcnow
from expense_reconciler.state_store import EXPENSES, TRANSACTIONS, StateStore

logger = logging.getLogger(__name__)


class Linker:
    """Sole writer of the transaction <-> expense association.

    Both sides are written inside one ``StateStore.atomic()`` block: either the
    transaction gains its back-reference and the expense its
    ``transaction_id``, or neither changes. An expense points at no more than
    one transaction; linking it elsewhere moves the link.
    """

    def __init__(self, store: StateStore):
        self.store = store

    def link_manually(self, club_id: str, transaction_id: str, expense_id: str,
                      actor_id: Optional[str] = None, confidence: int = 100) -> bool:
        return self._link(
            club_id, transaction_id, expense_id,
            matched_by="manual", confidence=confidence, actor=actor_id or "user",
        )

    def auto_link_expense_to_transaction(self, expense_id: str, expense_label: str, transaction_id: str,
                                         club_id: str, confidence: int = 100,
                                         provenance: Optional[str] = None) -> bool:
        return self._link(
            club_id, transaction_id, expense_id,
            matched_by="auto", confidence=confidence, actor="system",
            entity_name=expense_label, provenance=provenance,
        )

    def _link(self, club_id: str, transaction_id: str, expense_id: str, *, matched_by: str,
              confidence: int, actor: str, entity_name: Optional[str] = None,
              provenance: Optional[str] = None) -> bool:
        require_club(club_id)
        with self.store.atomic() as store:
            tx = store.load_transaction(club_id, transaction_id)
            expense = store.load_expense(club_id, expense_id)
            changed = False

            previous = expense.transaction_id
            if previous and previous != transaction_id:
                old = store.get(club_id, TRANSACTIONS, previous)
                if old is not None:
                    old_tx = Transaction.from_record(old)
                    if old_tx.drop_expense(expense_id):
                        store.save_transaction(old_tx)
                logger.info("🔁 expense %s moved from transaction %s to %s", expense_id, previous, transaction_id)
                changed = True

            if not tx.references_expense(expense_id):
                tx.matched_entities.append(MatchedEntity(
                    entity_type="expense",
                    entity_id=expense_id,
                    entity_name=entity_name or expense.label,
                    confidence=confidence,
                    matched_at=utcnow(),
                    matched_by=matched_by,
                    notes=provenance or "",
                ))
                tx.reconciled = True
                store.save_transaction(tx)
                changed = True

            if expense.transaction_id != transaction_id:
                expense.transaction_id = transaction_id
                expense.linked_at = utcnow()
                expense.auto_linked = matched_by == "auto"
                if provenance:
                    expense.link_provenance = provenance
                store.save_expense(expense)
                changed = True

            if changed:
                store.write_audit(club_id, "INFO", actor, f"link:{matched_by}",
                                  [transaction_id, expense_id], confidence, "linked")
                if previous and previous != transaction_id:
                    store.write_audit(club_id, "INFO", actor, "unlink:replaced",
                                      [previous, expense_id], confidence, "unlinked")
        if changed:
            logger.info("🔗 expense %s ↔ transaction %s (%s, %d%%)", expense_id, transaction_id, matched_by, confidence)
        return changed

    def unlink_expense_from_transaction(self, expense_id: str, transaction_id: str, club_id: str,
                                        actor_id: Optional[str] = None) -> bool:
        """Remove both directions of the link. An unlinked pair is left as is."""
        require_club(club_id)
        with self.store.atomic() as store:
            tx = store.load_transaction(club_id, transaction_id)
            changed = False
            if tx.drop_expense(expense_id):
                store.save_transaction(tx)
                changed = True
            data = store.get(club_id, EXPENSES, expense_id)
            if data is not None:
                expense = Expense.from_record(data)
                if expense.transaction_id == transaction_id:
                    expense.transaction_id = None
                    expense.linked_at = None
                    expense.auto_linked = False
                    expense.link_provenance = None
                    store.save_expense(expense)
                    changed = True
            if changed:
                store.write_audit(club_id, "INFO", actor_id or "user", "unlink",
                                  [transaction_id, expense_id], 0, "unlinked")
        if changed:
            logger.info("🔓 expense %s unlinked from transaction %s", expense_id, transaction_id)
        return changed
