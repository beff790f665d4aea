"""
Filename sequence numbers.

Treasurers name scanned receipts after the bank statement line they belong
to, e.g. ``2025-00302-00312_facture.pdf``. When that sequence resolves to a
stored transaction the expense can be linked without any scoring.
"""

import logging
import os
import re
import sqlite3
from typing import Dict, Iterable, List, Optional

from expense_reconciler.models import Expense, SequenceMatch, Transaction
from expense_reconciler.state_store import TRANSACTIONS, StateStore

logger = logging.getLogger(__name__)

# YYYY-NNN, optionally followed by a second number (range end or document index)
SEQUENCE_PATTERN = re.compile(r"^(\d{4})-(\d+)(?:-(\d+))?")


def extract_sequence(filename: str) -> Optional[str]:
    if not filename:
        return None
    m = SEQUENCE_PATTERN.match(os.path.basename(filename))
    if not m:
        logger.debug("no sequence number in %r", filename)
        return None
    return m.group(0)


def sequence_keys(sequence: str) -> List[str]:
    """Lookup keys for a sequence, most specific first.

    ``2025-00302-00312`` → ``2025-00302-00312``, ``00302-00312``, ``2025-00302``
    """
    m = SEQUENCE_PATTERN.match(sequence or "")
    if not m:
        return [sequence] if sequence else []
    year, first, second = m.groups()
    keys = [m.group(0)]
    if second is not None:
        keys.append(f"{first}-{second}")
        keys.append(f"{year}-{first}")
    return keys


def find_transaction_by_sequence(store: StateStore, sequence: str, club_id: str) -> Optional[Transaction]:
    for key in sequence_keys(sequence):
        try:
            found = store.find(club_id, TRANSACTIONS, sequence_number=key)
        except sqlite3.Error as e:
            logger.error("❌ sequence lookup %s failed: %s", key, e)
            return None
        if not found:
            continue
        if len(found) > 1:
            logger.warning("⚠️ %d transactions share sequence %s, using the first", len(found), key)
        tx = Transaction.from_record(found[0])
        logger.info("✅ sequence %s → transaction %s (%s, %s)", sequence, tx.id, tx.amount, tx.counterparty_name)
        return tx
    logger.info("no transaction with sequence %s", sequence)
    return None


def analyze_file_for_transaction_match(store: StateStore, filename: str, club_id: str) -> SequenceMatch:
    sequence = extract_sequence(filename)
    if not sequence:
        return SequenceMatch(filename=filename, sequence=None)
    return SequenceMatch(
        filename=filename,
        sequence=sequence,
        transaction=find_transaction_by_sequence(store, sequence, club_id),
    )


def analyze_batch_for_transaction_match(store: StateStore, filenames: Iterable[str],
                                        club_id: str) -> Dict[str, SequenceMatch]:
    results = {name: analyze_file_for_transaction_match(store, name, club_id) for name in filenames}
    matched = sum(1 for r in results.values() if r.matched)
    logger.info("%d/%d file(s) resolved by sequence number", matched, len(results))
    return results


def prefill_from_transaction(expense: Expense, transaction: Transaction, sequence: str) -> Expense:
    """Copy amount, date and description from the resolved transaction."""
    expense.amount = abs(transaction.amount)
    expense.requested_date = transaction.execution_date
    expense.description = transaction.communication or transaction.counterparty_name or expense.description
    expense.auto_linked = True
    expense.link_provenance = f"sequence:{sequence}"
    return expense
