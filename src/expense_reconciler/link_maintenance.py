"""
Repairs for links between transactions and expenses.

Used after an expense is deleted, and by the ``repair`` command to bring old
data back in line with the one-transaction-per-expense rule.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List

from expense_reconciler.errors import require_club
from expense_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class CleanupStats:
    expense_id: str
    transactions_updated: int = 0
    links_removed: int = 0


@dataclass
class RepairStats:
    checked: int = 0
    fixed: int = 0
    fixed_ids: List[str] = field(default_factory=list)


@dataclass
class LinkIssue:
    kind: str  # multiple_transactions|missing_forward_link|missing_back_reference
    expense_id: str
    transaction_ids: List[str]

    def __str__(self) -> str:
        return f"{self.kind}: expense {self.expense_id} ↔ {', '.join(self.transaction_ids) or '-'}"


def clean_after_expense_delete(store: StateStore, club_id: str, expense_id: str) -> CleanupStats:
    """Drop every back-reference to a deleted expense."""
    require_club(club_id)
    stats = CleanupStats(expense_id=expense_id)
    with store.atomic():
        for tx in store.list_transactions(club_id):
            before = len(tx.matched_entities)
            if tx.drop_expense(expense_id):
                store.save_transaction(tx)
                stats.transactions_updated += 1
                stats.links_removed += before - len(tx.matched_entities)
        if stats.links_removed:
            store.write_audit(club_id, "INFO", "system", "cleanup:expense_deleted",
                              [expense_id], 0, f"{stats.links_removed} link(s) removed")
    logger.info("✅ cleanup after expense %s: %d transaction(s) updated", expense_id, stats.transactions_updated)
    return stats


def repair_reconciliation_status(store: StateStore, club_id: str) -> RepairStats:
    """Recompute each transaction's ``reconciled`` flag from its matched entities."""
    require_club(club_id)
    stats = RepairStats()
    with store.atomic():
        for tx in store.list_transactions(club_id):
            stats.checked += 1
            expected = bool(tx.matched_entities)
            if tx.reconciled != expected:
                tx.reconciled = expected
                store.save_transaction(tx)
                stats.fixed += 1
                stats.fixed_ids.append(tx.id)
    if stats.fixed:
        logger.warning("🔧 %d/%d transaction(s) had a wrong reconciled flag: %s",
                       stats.fixed, stats.checked, ", ".join(stats.fixed_ids))
    return stats


def find_link_inconsistencies(store: StateStore, club_id: str) -> List[LinkIssue]:
    require_club(club_id)
    back_refs: Dict[str, List[str]] = defaultdict(list)
    for tx in store.list_transactions(club_id):
        for expense_id in tx.expense_ids():
            back_refs[expense_id].append(tx.id)

    issues: List[LinkIssue] = []
    forward: Dict[str, str] = {}
    for expense in store.list_expenses(club_id):
        if expense.transaction_id:
            forward[expense.id] = expense.transaction_id

    for expense_id, tx_ids in back_refs.items():
        if len(tx_ids) > 1:
            issues.append(LinkIssue("multiple_transactions", expense_id, tx_ids))
        for tx_id in tx_ids:
            if forward.get(expense_id) != tx_id:
                issues.append(LinkIssue("missing_forward_link", expense_id, [tx_id]))
    for expense_id, tx_id in forward.items():
        if tx_id not in back_refs.get(expense_id, []):
            issues.append(LinkIssue("missing_back_reference", expense_id, [tx_id]))
    return issues
