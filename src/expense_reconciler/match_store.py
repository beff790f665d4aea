import logging
import uuid
from typing import Dict, List, Optional, Union

from expense_reconciler.errors import (
    DuplicatePendingMatchError,
    InvalidTransitionError,
    MatchNotFoundError,
    require_club,
)
from expense_reconciler.models import AIMatch, MatchStatus, utcnow
from expense_reconciler.state_store import AI_MATCHES, StateStore

logger = logging.getLogger(__name__)


class MatchStore:
    """Persistence and lifecycle of AI match proposals.

    A match is created ``pending`` and moves once to ``validated`` or
    ``rejected``. Nothing here touches the transaction/expense link itself.
    """

    def __init__(self, store: StateStore):
        self.store = store

    def save_match(self, club_id: str, transaction_id: str, expense_id: str, confidence: int,
                   reasoning: str, created_by: str) -> AIMatch:
        require_club(club_id)
        with self.store.atomic() as store:
            if self._pending_for(store, club_id, transaction_id):
                raise DuplicatePendingMatchError(
                    f"transaction {transaction_id} already has a pending match"
                )
            match = AIMatch(
                id=uuid.uuid4().hex,
                club_id=club_id,
                transaction_id=transaction_id,
                expense_id=expense_id,
                confidence=max(0, min(100, int(confidence))),
                reasoning=reasoning,
                status=MatchStatus.PENDING,
                created_at=utcnow(),
                created_by=created_by,
            )
            store.put(club_id, AI_MATCHES, match.id, match.to_record())
        logger.info("💾 AI match %s saved: tx %s → expense %s (%d%%)",
                    match.id, transaction_id, expense_id, match.confidence)
        return match

    def get_match(self, club_id: str, match_id: str) -> AIMatch:
        data = self.store.get(club_id, AI_MATCHES, match_id)
        if data is None:
            raise MatchNotFoundError(f"AI match {match_id} not found")
        return AIMatch.from_record(data)

    def get_all_matches(self, club_id: str) -> List[AIMatch]:
        """All matches of a club, newest first."""
        matches = [AIMatch.from_record(d) for d in self.store.all(club_id, AI_MATCHES)]
        # all() is in creation order; reversing keeps ties stable
        matches.reverse()
        matches.sort(key=lambda m: m.created_at.isoformat() if m.created_at else "", reverse=True)
        return matches

    def get_matches_by_status(self, club_id: str, status: Union[MatchStatus, str]) -> List[AIMatch]:
        status = MatchStatus(status)
        return [m for m in self.get_all_matches(club_id) if m.status is status]

    def get_matches_stats(self, club_id: str) -> Dict[str, int]:
        stats = {s.value: 0 for s in MatchStatus}
        for m in self.get_all_matches(club_id):
            stats[m.status.value] += 1
        stats["total"] = sum(stats.values())
        return stats

    def update_match_status(self, club_id: str, match_id: str, status: Union[MatchStatus, str],
                            actor_id: str) -> AIMatch:
        status = MatchStatus(status)
        if status is MatchStatus.PENDING:
            raise InvalidTransitionError("a match cannot be moved back to pending")
        with self.store.atomic() as store:
            data = store.get(club_id, AI_MATCHES, match_id)
            if data is None:
                raise MatchNotFoundError(f"AI match {match_id} not found")
            match = AIMatch.from_record(data)
            if match.status.is_terminal:
                raise InvalidTransitionError(
                    f"AI match {match_id} is already {match.status.value}"
                )
            match.status = status
            match.validated_by = actor_id
            match.validated_at = utcnow()
            store.put(club_id, AI_MATCHES, match.id, match.to_record())
            store.write_audit(club_id, "INFO", actor_id, f"ai_match:{status.value}",
                              [match.transaction_id, match.expense_id], match.confidence, status.value)
        logger.info("AI match %s → %s by %s", match_id, status.value, actor_id)
        return match

    def match_exists_for_transaction(self, club_id: str, transaction_id: str) -> bool:
        return self.pending_match_for_transaction(club_id, transaction_id) is not None

    def pending_match_for_transaction(self, club_id: str, transaction_id: str) -> Optional[AIMatch]:
        return self._pending_for(self.store, club_id, transaction_id)

    @staticmethod
    def _pending_for(store: StateStore, club_id: str, transaction_id: str) -> Optional[AIMatch]:
        rows = store.find(club_id, AI_MATCHES, transaction_id=str(transaction_id),
                          status=MatchStatus.PENDING.value)
        return AIMatch.from_record(rows[0]) if rows else None
