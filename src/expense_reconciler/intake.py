import logging
import os
import sqlite3
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from expense_reconciler.config_loader import load_matching_config
from expense_reconciler.errors import ReconciliationError, require_club
from expense_reconciler.fingerprint import check_batch
from expense_reconciler.linker import Linker
from expense_reconciler.models import DuplicateCheck, Expense, JustificationDocument, UploadedFile, utcnow
from expense_reconciler.sequence_lookup import analyze_file_for_transaction_match, prefill_from_transaction
from expense_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)


class LocalBlobStorage:
    """Justification documents on the local disk, one folder per club and expense."""

    def __init__(self, root: str):
        self.root = root

    def upload(self, club_id: str, expense_id: str, filename: str, content: bytes, mime_type: str) -> str:
        folder = os.path.join(self.root, "clubs", club_id, "justificatifs", expense_id)
        os.makedirs(folder, exist_ok=True)
        path = os.path.join(folder, os.path.basename(filename))
        with open(path, "wb") as f:
            f.write(content)
        return path


@dataclass
class ImportReport:
    created: List[Expense] = field(default_factory=list)
    linked: Dict[str, str] = field(default_factory=dict)  # expense_id -> transaction_id
    skipped: List[DuplicateCheck] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "linked": len(self.linked),
            "skipped": len(self.skipped),
            "errors": len(self.errors),
        }


class DocumentIntake:
    """Turns uploaded receipts into expense claims.

    Files already known (same content in the store or earlier in the batch)
    are skipped unless forced. A filename carrying a bank sequence number that
    resolves to a transaction gives a pre-filled, linked expense.
    """

    def __init__(self, store: StateStore, linker: Linker, blob_storage: LocalBlobStorage,
                 cfg: Optional[Dict] = None):
        self.store = store
        self.linker = linker
        self.blob_storage = blob_storage
        self.cfg = cfg or load_matching_config()

    def import_files(self, club_id: str, files: Iterable[UploadedFile], actor_id: str,
                     force: Iterable[str] = ()) -> ImportReport:
        require_club(club_id)
        files = list(files)
        forced = set(force)
        report = ImportReport()
        checks = check_batch(self.store, club_id, files)

        for f, check in zip(files, checks):
            if check.flagged and f.filename not in forced:
                report.skipped.append(check)
                continue
            try:
                self._import_one(club_id, f, check.hash, actor_id, report)
            except (ReconciliationError, sqlite3.Error, OSError) as e:
                logger.error("❌ import of %s failed: %s", f.filename, e)
                report.errors.append(f"{f.filename}: {e}")

        logger.info("📥 import for %s: %s", club_id, report.summary())
        return report

    def _import_one(self, club_id: str, f: UploadedFile, file_hash: str, actor_id: str, report: ImportReport):
        expense_id = uuid.uuid4().hex
        url = self.blob_storage.upload(club_id, expense_id, f.filename, f.content, f.mime_type)
        now = utcnow()
        expense = Expense(
            id=expense_id,
            club_id=club_id,
            amount=Decimal("0"),
            requested_date=now.date(),
            requester_id=actor_id,
            title=f"Receipt {f.filename}",
            status=self.cfg.get("intake", {}).get("status", "submitted"),
            documents=[JustificationDocument(
                url=url,
                original_name=f.filename,
                display_name=f.filename,
                mime_type=f.mime_type,
                size=f.size,
                uploaded_at=now,
                uploaded_by=actor_id,
                file_hash=file_hash,
            )],
            created_at=now,
        )

        seq = analyze_file_for_transaction_match(self.store, f.filename, club_id)
        with self.store.atomic() as store:
            if seq.matched:
                prefill_from_transaction(expense, seq.transaction, seq.sequence)
            store.save_expense(expense)
            if seq.matched:
                self.linker.auto_link_expense_to_transaction(
                    expense.id, expense.label, seq.transaction.id, club_id,
                    provenance=expense.link_provenance,
                )
                expense = store.load_expense(club_id, expense.id)
        report.created.append(expense)
        if seq.matched:
            report.linked[expense.id] = seq.transaction.id
