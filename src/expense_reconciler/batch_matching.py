import logging
import sqlite3
from typing import Dict, List, Optional

from expense_reconciler.config_loader import load_matching_config
from expense_reconciler.errors import EntityNotFoundError, NothingToMatchError, require_club
from expense_reconciler.linker import Linker
from expense_reconciler.matcher import AUTO, decide_action, find_matches
from expense_reconciler.models import BatchMatchResult, Expense, Transaction
from expense_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)


def load_unlinked_transactions(store: StateStore, club_id: str) -> List[Transaction]:
    """Outflows not yet tied to an expense (split parents excluded)."""
    return [
        t for t in store.list_transactions(club_id)
        if t.is_outflow and not t.expense_ids() and not t.is_split_parent
    ]


def load_pending_expenses(store: StateStore, club_id: str, cfg: Dict) -> List[Expense]:
    statuses = set(cfg.get("eligible_statuses", ["approved"]))
    return [
        e for e in store.list_expenses(club_id)
        if e.status in statuses and not e.transaction_id
    ]


def perform_batch_matching(store: StateStore, linker: Linker, club_id: str, auto_link: bool = True,
                           cfg: Optional[Dict] = None) -> BatchMatchResult:
    require_club(club_id)
    cfg = cfg or load_matching_config()

    transactions = load_unlinked_transactions(store, club_id)
    expenses = load_pending_expenses(store, club_id, cfg)
    if not transactions or not expenses:
        raise NothingToMatchError(
            f"club {club_id}: {len(transactions)} unlinked transaction(s), {len(expenses)} pending expense(s)"
        )
    logger.info("[matching] %s: %d transactions x %d expenses", club_id, len(transactions), len(expenses))

    result = BatchMatchResult()
    for cand in find_matches(transactions, expenses, cfg):
        if decide_action(cand.confidence, cfg) != AUTO or not auto_link:
            result.suggested.append(cand)
            continue
        try:
            linker.auto_link_expense_to_transaction(
                cand.expense_id, cand.expense.label, cand.transaction_id, club_id,
                confidence=cand.confidence, provenance="matcher",
            )
        except (EntityNotFoundError, sqlite3.Error) as e:
            # the pair falls back to unmatched; a re-run will pick it up
            logger.error("❌ auto-link %s ↔ %s failed: %s", cand.transaction_id, cand.expense_id, e)
            result.errors.append(
                f"link failed for {cand.transaction.counterparty_name or cand.transaction_id}"
                f" / expense {cand.expense_id}: {e}"
            )
            continue
        result.auto_linked.append(cand)

    placed = result.auto_linked + result.suggested
    placed_tx = {c.transaction_id for c in placed}
    placed_exp = {c.expense_id for c in placed}
    result.unmatched_transactions = [t for t in transactions if t.id not in placed_tx]
    result.unmatched_expenses = [e for e in expenses if e.id not in placed_exp]

    logger.info("[matching] %s summary: %s", club_id, result.summary())
    return result
