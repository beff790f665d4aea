"""
Content fingerprints for justification documents.

A fingerprint is the SHA-256 of the file bytes, so a renamed copy of a file is
still recognised. Fingerprints are stored on the expense's document records
and compared for equality only.
"""

import hashlib
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterable, List

import requests

from expense_reconciler.models import DuplicateCheck, JustificationDocument, UploadedFile
from expense_reconciler.state_store import StateStore

logger = logging.getLogger(__name__)

_CHUNK = 64 * 1024


def hash_bytes(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def hash_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def check_document_exists(store: StateStore, club_id: str, file_hash: str) -> bool:
    """True when any expense of the club already stores a document with this hash."""
    for expense in store.list_expenses(club_id):
        if file_hash in expense.document_hashes():
            return True
    return False


def analyze_batch(store: StateStore, club_id: str, files: Iterable[UploadedFile]) -> Dict[str, DuplicateCheck]:
    """Flag the files of one upload batch that are already known, keyed by filename.

    When two files share a name the later check wins; use ``check_batch``
    to keep one result per submitted file.
    """
    return {c.filename: c for c in check_batch(store, club_id, files)}


def check_batch(store: StateStore, club_id: str, files: Iterable[UploadedFile]) -> List[DuplicateCheck]:
    """One ``DuplicateCheck`` per file, in submission order.

    Only the second and later occurrences of a hash inside the batch get
    ``duplicate_in_batch``. Nothing is written.
    """
    results: List[DuplicateCheck] = []
    seen: Dict[str, str] = {}  # hash -> first filename in this batch
    try:
        stored = {h for e in store.list_expenses(club_id) for h in e.document_hashes()}
    except sqlite3.Error as e:
        # a duplicate is preferable to blocking the upload
        logger.warning("duplicate lookup failed for club %s, treating batch as new: %s", club_id, e)
        stored = set()

    for f in files:
        digest = hash_bytes(f.content)
        first = seen.get(digest)
        check = DuplicateCheck(
            filename=f.filename,
            hash=digest,
            is_duplicate=digest in stored,
            duplicate_in_batch=first is not None,
            duplicate_of=first,
        )
        if first is None:
            seen[digest] = f.filename
        if check.is_duplicate:
            logger.info("⚠️ %s already stored (hash %s…)", f.filename, digest[:12])
        if check.duplicate_in_batch:
            logger.info("⚠️ %s repeats %s in this batch", f.filename, first)
        results.append(check)

    flagged = sum(1 for c in results if c.flagged)
    logger.info("%d/%d file(s) flagged as duplicates", flagged, len(results))
    return results


def normalize_filename(filename: str) -> str:
    stem = filename.rsplit(".", 1)[0] if "." in filename else filename
    stem = re.sub(r"\s*\(\d+\)\s*$", "", stem)
    stem = re.sub(r"^[\d-]+\s*-\s*", "", stem)
    stem = re.sub(r"_copy\d*$", "", stem, flags=re.IGNORECASE)
    stem = re.sub(r"_edit\d*$", "", stem, flags=re.IGNORECASE)
    stem = re.sub(r"[-_\s]+", "", stem)
    return stem.lower().strip()


@dataclass
class DuplicateInfo:
    filename: str
    expense_id: str
    expense_description: str
    expense_amount: str
    existing_document: JustificationDocument
    match_kind: str  # hash|legacy


def _legacy_equal(doc: JustificationDocument, f: UploadedFile) -> bool:
    return (
        normalize_filename(doc.original_name) == normalize_filename(f.filename)
        and doc.size == f.size
        and doc.mime_type == f.mime_type
    )


def find_duplicates_in_expenses(store: StateStore, club_id: str, files: List[UploadedFile]) -> List[DuplicateInfo]:
    """Compare each file with every document of every expense of the club.

    Documents stored before hashing existed are compared on normalized name,
    size and MIME type instead.
    """
    hashes = {f.filename: hash_bytes(f.content) for f in files}
    duplicates: List[DuplicateInfo] = []
    for expense in store.list_expenses(club_id):
        for doc in expense.documents:
            for f in files:
                if doc.file_hash:
                    if doc.file_hash != hashes[f.filename]:
                        continue
                    kind = "hash"
                elif _legacy_equal(doc, f):
                    kind = "legacy"
                else:
                    continue
                duplicates.append(DuplicateInfo(
                    filename=f.filename,
                    expense_id=expense.id,
                    expense_description=expense.description or "(no description)",
                    expense_amount=str(expense.amount),
                    existing_document=doc,
                    match_kind=kind,
                ))
    logger.info("%d duplicate(s) found across stored expenses", len(duplicates))
    return duplicates


class DocumentFetcher:
    """Downloads stored justification documents from blob storage URLs."""

    def __init__(self, timeout: float = 30.0, session=None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        r = self.session.get(url, timeout=self.timeout)
        r.raise_for_status()
        return r.content


@dataclass
class BackfillStats:
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


def backfill_document_hashes(store: StateStore, club_id: str, fetcher: DocumentFetcher,
                             dry_run: bool = False) -> BackfillStats:
    """Compute and store the missing fingerprints of older documents."""
    stats = BackfillStats()
    for expense in store.list_expenses(club_id):
        changed = False
        for doc in expense.documents:
            stats.processed += 1
            if doc.file_hash or not doc.url:
                stats.skipped += 1
                continue
            try:
                doc.file_hash = hash_bytes(fetcher.fetch(doc.url))
            except requests.RequestException as e:
                logger.error("❌ could not download %s for expense %s: %s", doc.url, expense.id, e)
                stats.errors += 1
                continue
            stats.updated += 1
            changed = True
        if changed and not dry_run:
            store.save_expense(expense)
    logger.info("hash backfill for %s: %s", club_id, stats)
    return stats
