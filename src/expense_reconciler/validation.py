import logging

from expense_reconciler.errors import InvalidTransitionError
from expense_reconciler.linker import Linker
from expense_reconciler.match_store import MatchStore
from expense_reconciler.models import AIMatch, MatchStatus

logger = logging.getLogger(__name__)


class MatchValidationService:
    """Human decisions on AI proposals: the status change and the link go together."""

    def __init__(self, match_store: MatchStore, linker: Linker):
        self.match_store = match_store
        self.linker = linker

    def _pending(self, club_id: str, match_id: str) -> AIMatch:
        match = self.match_store.get_match(club_id, match_id)
        if match.status is not MatchStatus.PENDING:
            raise InvalidTransitionError(f"AI match {match_id} is already {match.status.value}")
        return match

    def validate_match(self, club_id: str, match_id: str, actor_id: str) -> AIMatch:
        match = self._pending(club_id, match_id)
        # link first: a failed link leaves the proposal pending for a retry
        self.linker.link_manually(club_id, match.transaction_id, match.expense_id,
                                  actor_id=actor_id, confidence=match.confidence)
        return self.match_store.update_match_status(club_id, match_id, MatchStatus.VALIDATED, actor_id)

    def reject_match(self, club_id: str, match_id: str, actor_id: str) -> AIMatch:
        self._pending(club_id, match_id)
        return self.match_store.update_match_status(club_id, match_id, MatchStatus.REJECTED, actor_id)

    def reassign_match(self, club_id: str, match_id: str, new_transaction_id: str, actor_id: str) -> AIMatch:
        """Reject the proposal and link its expense to the transaction the user picked."""
        match = self._pending(club_id, match_id)
        # fail before rejecting when the chosen transaction does not exist
        self.linker.store.load_transaction(club_id, new_transaction_id)
        rejected = self.match_store.update_match_status(club_id, match_id, MatchStatus.REJECTED, actor_id)
        self.linker.link_manually(club_id, new_transaction_id, match.expense_id, actor_id=actor_id)
        logger.info("AI match %s reassigned: expense %s → transaction %s",
                    match_id, match.expense_id, new_transaction_id)
        return rejected
