class ReconciliationError(Exception):
    """Base class for every error raised by the reconciliation engine."""


class PreconditionError(ReconciliationError):
    """Raised before a run starts when its inputs or configuration are unusable."""


class MissingClubError(PreconditionError):
    pass


class AIUnavailableError(PreconditionError):
    """No usable AI provider credential is configured."""


class NothingToMatchError(PreconditionError):
    pass


class RunInProgressError(PreconditionError):
    pass


class EntityNotFoundError(ReconciliationError):
    def __init__(self, collection: str, entity_id: str):
        super().__init__(f"{collection}/{entity_id} not found")
        self.collection = collection
        self.entity_id = entity_id


class MatchNotFoundError(ReconciliationError):
    pass


class InvalidTransitionError(ReconciliationError):
    """A match in a terminal state was asked to change status."""


class DuplicatePendingMatchError(ReconciliationError):
    pass


def require_club(club_id: str) -> str:
    if not club_id or not str(club_id).strip():
        raise MissingClubError("club_id is required")
    return club_id
