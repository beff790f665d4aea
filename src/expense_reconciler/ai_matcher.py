"""
AI-assisted matching of bank outflows to expense claims.

Each unmatched transaction is sent to Claude together with the expense claims
still available in the run. A usable answer becomes a ``pending`` AIMatch for
a human to validate or reject; nothing is linked here.
"""
import json
import logging
import re
import time
from typing import Callable, Dict, List, Optional

import anthropic

from expense_reconciler.config_loader import AIProviderConfig
from expense_reconciler.errors import (
    AIUnavailableError,
    DuplicatePendingMatchError,
    PreconditionError,
    require_club,
)
from expense_reconciler.match_store import MatchStore
from expense_reconciler.models import AIMatch, AIMatchAnalysis, Expense, Transaction
from expense_reconciler.reference_cache import ReferenceDataCache

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

SYSTEM_PROMPT = """
You are an accountant for a sports club, specialised in bank reconciliation.
Your job is to pair one outgoing bank transaction (a reimbursement paid to a
member) with the expense claim it settles.

Take into account:
- the amount (must be very close; the transaction is negative, compare absolute values)
- the beneficiary name against the requester name (names may be misspelled or partial)
- keywords in the bank communication
- the date (reimbursements are often paid several weeks after approval)
- the claim description

Answer ONLY with valid JSON in exactly this shape:
{
  "expense_id": "id of the claim" or null,
  "confidence": 0-100,
  "reasoning": "short explanation of your analysis",
  "extracted_info": {
    "beneficiary": "name read from the transaction",
    "detected_amount": amount_as_number,
    "keywords": ["word1", "word2"]
  }
}

If no claim is an acceptable match (confidence < 50), return "expense_id": null.
"""

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")


def _fmt_date(value) -> str:
    return value.isoformat() if value else "N/A"


def build_matching_prompt(transaction: Transaction, candidates: List[Expense],
                          context: Optional[Dict] = None) -> str:
    lines = []
    for idx, e in enumerate(candidates, start=1):
        lines.append(
            f"{idx}. ID: {e.id}\n"
            f"   Requester: {e.requester_name or 'N/A'}\n"
            f"   Amount: {e.amount}€\n"
            f"   Description: {e.description or e.title or 'N/A'}\n"
            f"   Requested on: {_fmt_date(e.requested_date)}\n"
            f"   Category: {e.category or 'N/A'}"
        )

    prompt = f"""BANK TRANSACTION TO ANALYSE:
Date: {_fmt_date(transaction.execution_date)}
Amount: {transaction.amount}€ (outgoing)
Beneficiary: {transaction.counterparty_name or 'N/A'}
Beneficiary IBAN: {transaction.counterparty_iban or 'N/A'}
Communication: {transaction.communication or 'N/A'}
Details: {transaction.details or 'N/A'}

CANDIDATE EXPENSE CLAIMS (approved, not yet reimbursed):
{chr(10).join(lines)}
"""
    context = context or {}
    for key, title in (("events", "CLUB EVENTS"), ("members", "MEMBERS"),
                       ("categories", "EXPENSE CATEGORIES"), ("account_codes", "ACCOUNT CODES")):
        values = context.get(key)
        if values:
            prompt += f"\n{title}:\n" + "\n".join(f"- {v}" for v in values) + "\n"
    return prompt


def parse_analysis(text: str, candidates: List[Expense], min_confidence: int) -> Optional[AIMatchAnalysis]:
    """Turn the model's answer into an analysis, or None when there is no usable match."""
    found = _JSON_BLOCK.search(text or "")
    if not found:
        logger.warning("no JSON object in AI answer")
        return None
    try:
        parsed = json.loads(found.group(0))
        expense_id = parsed.get("expense_id")
        confidence = int(round(float(parsed.get("confidence", 0))))
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning("unreadable AI answer: %s", e)
        return None

    if expense_id is None or confidence < min_confidence:
        return None
    expense_id = str(expense_id)
    if expense_id not in {c.id for c in candidates}:
        logger.warning("AI proposed unknown expense %s, ignored", expense_id)
        return None
    extracted = parsed.get("extracted_info")
    return AIMatchAnalysis(
        expense_id=expense_id,
        confidence=max(0, min(100, confidence)),
        reasoning=str(parsed.get("reasoning") or ""),
        extracted_info=extracted if isinstance(extracted, dict) else {},
    )


class AIExpenseMatcher:
    def __init__(self, provider: AIProviderConfig, match_store: MatchStore, client=None,
                 reference_cache: Optional[ReferenceDataCache] = None):
        self.provider = provider
        self.match_store = match_store
        self.reference_cache = reference_cache
        self._client = client

    def is_available(self) -> bool:
        return self.provider.is_available

    @property
    def client(self):
        if self._client is None:
            if not self.is_available():
                raise AIUnavailableError("ANTHROPIC_API_KEY is not set")
            self._client = anthropic.Anthropic(
                api_key=self.provider.api_key,
                timeout=self.provider.timeout_seconds,
            )
        return self._client

    def analyze_transaction_match(self, transaction: Transaction, candidates: List[Expense],
                                  context: Optional[Dict] = None) -> Optional[AIMatchAnalysis]:
        if not candidates:
            return None
        prompt = build_matching_prompt(transaction, candidates, context)
        try:
            response = self.client.messages.create(
                model=self.provider.model,
                max_tokens=self.provider.max_tokens,
                temperature=self.provider.temperature,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
            text = response.content[0].text
        except anthropic.APIError as e:
            # timeouts included: treated as "no match" for this transaction
            logger.error("❌ AI call failed for transaction %s: %s", transaction.id, e)
            return None
        except (IndexError, AttributeError) as e:
            logger.error("❌ empty AI answer for transaction %s: %s", transaction.id, e)
            return None
        return parse_analysis(text, candidates, self.provider.min_confidence)

    def _context(self, club_id: str) -> Optional[Dict]:
        if self.reference_cache is None:
            return None
        ref = self.reference_cache.get(club_id)
        return {"categories": ref.category_labels(), "account_codes": ref.account_code_labels()}

    def _check(self, club_id: str, actor_id: str):
        require_club(club_id)
        if not actor_id:
            raise PreconditionError("actor_id is required")
        if not self.is_available():
            raise AIUnavailableError("AI matching is not configured (ANTHROPIC_API_KEY missing)")

    def hybrid_matching(self, club_id: str, actor_id: str, unmatched_transactions: List[Transaction],
                        unmatched_expenses: List[Expense], limit: int,
                        on_progress: Optional[ProgressCallback] = None) -> List[AIMatch]:
        """Propose one expense per transaction for at most ``limit`` transactions.

        Transactions that already have a pending proposal are skipped. An expense
        proposed once leaves the pool, so no expense is proposed twice in a run.
        A failing transaction is skipped; the run goes on.
        """
        self._check(club_id, actor_id)
        if limit <= 0:
            raise PreconditionError("limit must be positive")

        todo = [
            t for t in unmatched_transactions
            if not self.match_store.match_exists_for_transaction(club_id, t.id)
        ][:limit]
        pool = list(unmatched_expenses)
        context = self._context(club_id)
        created: List[AIMatch] = []
        total = len(todo)
        logger.info("🤖 AI matching %s: %d transaction(s), %d candidate expense(s)", club_id, total, len(pool))

        for current, tx in enumerate(todo, start=1):
            if on_progress:
                on_progress(current, total, f"AI analysis {current}/{total}: {tx.counterparty_name or tx.id}")
            if not pool:
                logger.info("candidate pool exhausted after %d transaction(s)", current - 1)
                break
            if current > 1 and self.provider.request_delay_seconds > 0:
                time.sleep(self.provider.request_delay_seconds)

            analysis = self.analyze_transaction_match(tx, pool, context)
            if analysis is None:
                continue
            try:
                match = self.match_store.save_match(club_id, tx.id, analysis.expense_id,
                                                    analysis.confidence, analysis.reasoning, actor_id)
            except DuplicatePendingMatchError as e:
                logger.warning("skipping transaction %s: %s", tx.id, e)
                continue
            pool = [e for e in pool if e.id != analysis.expense_id]
            created.append(match)

        logger.info("🤖 AI matching %s done: %d proposal(s)", club_id, len(created))
        return created

    def analyze_single_transaction(self, club_id: str, actor_id: str, transaction: Transaction,
                                   expenses: List[Expense]) -> Optional[AIMatch]:
        self._check(club_id, actor_id)
        analysis = self.analyze_transaction_match(transaction, expenses, self._context(club_id))
        if analysis is None:
            return None
        return self.match_store.save_match(club_id, transaction.id, analysis.expense_id,
                                           analysis.confidence, analysis.reasoning, actor_id)
