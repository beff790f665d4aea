import logging
from dataclasses import dataclass, field
from typing import Dict, List

from expense_reconciler.state_store import ACCOUNT_CODES, CATEGORIES, StateStore

logger = logging.getLogger(__name__)


@dataclass
class ReferenceData:
    categories: List[Dict] = field(default_factory=list)
    account_codes: List[Dict] = field(default_factory=list)

    def category_labels(self) -> List[str]:
        return [c.get("label") or c.get("name") or c["id"] for c in self.categories]

    def account_code_labels(self) -> List[str]:
        out = []
        for a in self.account_codes:
            code = a.get("code") or a["id"]
            label = a.get("label") or a.get("name")
            out.append(f"{code} {label}" if label else code)
        return out


class ReferenceDataCache:
    """Per-club categories and account codes, loaded once and kept until invalidated.

    The cache belongs to whoever constructs it; there is no shared module state.
    """

    def __init__(self, store: StateStore):
        self.store = store
        self._data: Dict[str, ReferenceData] = {}

    def get(self, club_id: str) -> ReferenceData:
        if club_id not in self._data:
            return self.reload(club_id)
        return self._data[club_id]

    def reload(self, club_id: str) -> ReferenceData:
        data = ReferenceData(
            categories=self.store.all(club_id, CATEGORIES),
            account_codes=self.store.all(club_id, ACCOUNT_CODES),
        )
        self._data[club_id] = data
        logger.debug("reference data for %s: %d categories, %d account codes",
                     club_id, len(data.categories), len(data.account_codes))
        return data

    def invalidate(self, club_id: str = None):
        if club_id is None:
            self._data.clear()
        else:
            self._data.pop(club_id, None)
