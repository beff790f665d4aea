import re
import unicodedata
from decimal import Decimal
from typing import Dict, List, Set, Tuple

from rapidfuzz import fuzz
from rapidfuzz.distance import JaroWinkler

from expense_reconciler.models import Expense, MatchCandidate, Transaction

AUTO = "AUTO"
SUGGEST = "SUGGEST"
NONE = "NONE"

_STOPWORDS = {
    "les", "des", "pour", "une", "avec", "par", "sur", "the", "and", "for",
    "remboursement", "rembt", "refund", "virement", "note", "frais",
}


def _normalize_name(text: str) -> str:
    if not text:
        return ""
    s = unicodedata.normalize("NFKD", text)
    s = "".join(c for c in s if not unicodedata.combining(c))
    s = re.sub(r"[^0-9a-zA-Z]+", " ", s)
    return " ".join(s.lower().split())


def name_similarity(a: str, b: str) -> int:
    """0-100 similarity between a bank counterparty and a requester name.

    Word order is ignored ("DUPONT JEAN" == "Jean Dupont"); one name contained
    in the other scores at least 80.
    """
    n1, n2 = _normalize_name(a), _normalize_name(b)
    if not n1 or not n2:
        return 0
    if n1 == n2:
        return 100
    c1, c2 = n1.replace(" ", ""), n2.replace(" ", "")
    score = max(
        fuzz.token_sort_ratio(n1, n2),
        JaroWinkler.normalized_similarity(c1, c2) * 100,
    )
    if c1 in c2 or c2 in c1:
        score = max(score, 80)
    return int(round(score))


def amounts_match(tx_amount: Decimal, expense_amount: Decimal, epsilon: Decimal) -> bool:
    return abs(abs(tx_amount) - abs(expense_amount)) <= epsilon


def _keywords(text: str, min_len: int) -> Set[str]:
    return {w for w in _normalize_name(text).split() if len(w) >= min_len and w not in _STOPWORDS}


def description_overlap(communication: str, expense: Expense, cfg: Dict) -> float:
    """0.0-1.0 share of the expense's keywords found in the bank communication."""
    sim = cfg.get("similarity", {})
    if not communication:
        return 0.0
    comm = _normalize_name(communication)
    prefix = _normalize_name(expense.description)[: int(sim.get("description_prefix", 20))]
    if prefix and prefix in comm:
        return 1.0
    min_len = int(sim.get("keyword_min_length", 3))
    wanted = _keywords(f"{expense.title} {expense.description}", min_len)
    if not wanted:
        return 0.0
    found = wanted & _keywords(communication, min_len)
    return len(found) / len(wanted)


def score_match(tx: Transaction, expense: Expense, cfg: Dict) -> Tuple[int, List[str]]:
    reasons: List[str] = []
    weights = cfg.get("weights", {"amount": 50, "name": 25, "date": 15, "description": 10})
    tol = cfg.get("tolerances", {})
    epsilon = Decimal(str(tol.get("amount_epsilon", "0.01")))
    window = int(tol.get("date_window_days", 90))
    name_min = int(cfg.get("similarity", {}).get("name_min", 70))

    # amount is mandatory
    if not amounts_match(tx.amount, expense.amount, epsilon):
        diff = abs(abs(tx.amount) - expense.amount)
        return 0, [f"amount differs by {diff:.2f}"]
    total = float(weights.get("amount", 50))
    reasons.append(f"exact amount ({abs(tx.amount):.2f})")

    # name
    sim = name_similarity(tx.counterparty_name, expense.requester_name)
    if sim >= name_min:
        total += weights.get("name", 25) * sim / 100
        reasons.append(f"similar name ({sim}%)")

    # date
    if tx.execution_date and expense.requested_date:
        days = abs((tx.execution_date - expense.requested_date).days)
        if days <= window:
            total += weights.get("date", 15) * (1 - days / window)
            reasons.append(f"close date ({days} days)")

    # description / communication
    overlap = description_overlap(tx.communication, expense, cfg)
    if overlap > 0:
        total += weights.get("description", 10) * overlap
        reasons.append(f"description in communication ({int(overlap * 100)}%)")

    return max(0, min(100, int(round(total)))), reasons


def decide_action(score: int, cfg: Dict) -> str:
    th = cfg.get("thresholds", {"auto": 85, "suggest_min": 60})
    if score >= th["auto"]:
        return AUTO
    if score >= th["suggest_min"]:
        return SUGGEST
    return NONE


def _created_key(obj) -> str:
    return obj.created_at.isoformat() if obj.created_at else ""


def find_matches(transactions: List[Transaction], expenses: List[Expense], cfg: Dict) -> List[MatchCandidate]:
    """Greedy one-to-one assignment of expenses to transactions.

    Every pair at or above the suggestion threshold is ranked by confidence
    (descending), then transaction date, transaction load order, expense
    creation date and expense load order. Pairs are taken in that order while
    neither side is used yet, so identical input always gives identical output.
    """
    suggest_min = cfg.get("thresholds", {}).get("suggest_min", 60)
    ranked = []
    for ti, tx in enumerate(transactions):
        for ei, expense in enumerate(expenses):
            score, reasons = score_match(tx, expense, cfg)
            if score < suggest_min:
                continue
            key = (-score, tx.execution_date.isoformat() if tx.execution_date else "", ti,
                   _created_key(expense), ei)
            ranked.append((key, MatchCandidate(tx, expense, score, reasons)))
    ranked.sort(key=lambda item: item[0])

    used_tx: Set[str] = set()
    used_exp: Set[str] = set()
    chosen: List[MatchCandidate] = []
    for _, cand in ranked:
        if cand.transaction_id in used_tx or cand.expense_id in used_exp:
            continue
        used_tx.add(cand.transaction_id)
        used_exp.add(cand.expense_id)
        chosen.append(cand)
    return chosen
