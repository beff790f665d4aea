import argparse
import mimetypes
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from expense_reconciler.ai_matcher import AIExpenseMatcher
from expense_reconciler.batch_matching import load_pending_expenses, load_unlinked_transactions, perform_batch_matching
from expense_reconciler.config_loader import configure_logging, load_matching_config, load_provider_config
from expense_reconciler.errors import ReconciliationError
from expense_reconciler.fingerprint import DocumentFetcher, backfill_document_hashes
from expense_reconciler.intake import DocumentIntake, LocalBlobStorage
from expense_reconciler.link_maintenance import (
    clean_after_expense_delete,
    find_link_inconsistencies,
    repair_reconciliation_status,
)
from expense_reconciler.linker import Linker
from expense_reconciler.match_store import MatchStore
from expense_reconciler.models import MatchStatus, UploadedFile
from expense_reconciler.reference_cache import ReferenceDataCache
from expense_reconciler.run_lock import ClubRunLock
from expense_reconciler.state_store import EXPENSES, StateStore
from expense_reconciler.validation import MatchValidationService


def _print_progress(current: int, total: int, message: str):
    print(f"  [{current}/{total}] {message}")


def cmd_init_db(args, store: StateStore, cfg: dict) -> int:
    store.init_db()
    print(f"✅ database ready: {store.db_path}")
    return 0


def cmd_match(args, store: StateStore, cfg: dict) -> int:
    with ClubRunLock(args.club, timeout=args.lock_timeout):
        result = perform_batch_matching(store, Linker(store), args.club, auto_link=not args.no_auto_link, cfg=cfg)
    print(f"🔗 auto-linked: {len(result.auto_linked)}")
    for c in result.auto_linked:
        print(f"   {c.transaction_id} ↔ {c.expense_id}  {c.reason}")
    print(f"💡 suggested: {len(result.suggested)}")
    for c in result.suggested:
        print(f"   {c.transaction_id} ↔ {c.expense_id}  {c.reason}")
    print(f"❔ unmatched: {len(result.unmatched_transactions)} transaction(s), "
          f"{len(result.unmatched_expenses)} expense(s)")
    for err in result.errors:
        print(f"❌ {err}")
    return 1 if result.errors else 0


def cmd_ai_match(args, store: StateStore, cfg: dict) -> int:
    matcher = AIExpenseMatcher(load_provider_config(cfg), MatchStore(store),
                               reference_cache=ReferenceDataCache(store))
    if not matcher.is_available():
        print("⚠️ AI matching is not configured: set ANTHROPIC_API_KEY")
        return 2
    limit = args.limit or int(cfg["ai"].get("default_limit", 20))
    with ClubRunLock(args.club, timeout=args.lock_timeout):
        created = matcher.hybrid_matching(
            args.club, args.actor,
            load_unlinked_transactions(store, args.club),
            load_pending_expenses(store, args.club, cfg),
            limit, on_progress=_print_progress,
        )
    print(f"🤖 {len(created)} proposal(s) waiting for validation")
    for m in created:
        print(f"   {m.id}: {m.transaction_id} → {m.expense_id} ({m.confidence}%) {m.reasoning}")
    return 0


def cmd_matches(args, store: StateStore, cfg: dict) -> int:
    ms = MatchStore(store)
    matches = ms.get_matches_by_status(args.club, args.status) if args.status else ms.get_all_matches(args.club)
    for m in matches:
        print(f"{m.id}  {m.status.value:9}  {m.transaction_id} → {m.expense_id}  {m.confidence}%  {m.reasoning}")
    if not matches:
        print("no AI matches")
    return 0


def cmd_stats(args, store: StateStore, cfg: dict) -> int:
    stats = MatchStore(store).get_matches_stats(args.club)
    print("  ".join(f"{k}={v}" for k, v in stats.items()))
    return 0


def _validation(store: StateStore) -> MatchValidationService:
    return MatchValidationService(MatchStore(store), Linker(store))


def cmd_validate(args, store: StateStore, cfg: dict) -> int:
    m = _validation(store).validate_match(args.club, args.match_id, args.actor)
    print(f"✅ {m.id} validated: {m.transaction_id} ↔ {m.expense_id}")
    return 0


def cmd_reject(args, store: StateStore, cfg: dict) -> int:
    m = _validation(store).reject_match(args.club, args.match_id, args.actor)
    print(f"🚫 {m.id} rejected")
    return 0


def cmd_reassign(args, store: StateStore, cfg: dict) -> int:
    m = _validation(store).reassign_match(args.club, args.match_id, args.transaction_id, args.actor)
    print(f"🔁 {m.id} rejected, expense {m.expense_id} linked to {args.transaction_id}")
    return 0


def cmd_link(args, store: StateStore, cfg: dict) -> int:
    changed = Linker(store).link_manually(args.club, args.transaction_id, args.expense_id, actor_id=args.actor)
    print("🔗 linked" if changed else "already linked")
    return 0


def cmd_unlink(args, store: StateStore, cfg: dict) -> int:
    changed = Linker(store).unlink_expense_from_transaction(args.expense_id, args.transaction_id, args.club,
                                                            actor_id=args.actor)
    print("🔓 unlinked" if changed else "not linked")
    return 0


def cmd_import(args, store: StateStore, cfg: dict) -> int:
    files = []
    for path in args.files:
        with open(path, "rb") as f:
            content = f.read()
        mime = mimetypes.guess_type(path)[0] or "application/octet-stream"
        files.append(UploadedFile(os.path.basename(path), content, mime))
    intake = DocumentIntake(store, Linker(store), LocalBlobStorage(args.blob_dir), cfg)
    report = intake.import_files(args.club, files, args.actor, force=args.force or ())
    for e in report.created:
        tx = report.linked.get(e.id)
        print(f"📄 {e.documents[0].original_name} → expense {e.id}" + (f" linked to {tx}" if tx else ""))
    for c in report.skipped:
        where = f"same as {c.duplicate_of}" if c.duplicate_in_batch else "already stored"
        print(f"⏭️  {c.filename} skipped ({where}); use --force {c.filename}")
    for err in report.errors:
        print(f"❌ {err}")
    return 1 if report.errors else 0


def cmd_delete_expense(args, store: StateStore, cfg: dict) -> int:
    with store.atomic():
        found = store.delete(args.club, EXPENSES, args.expense_id)
        stats = clean_after_expense_delete(store, args.club, args.expense_id)
    if not found:
        print(f"⚠️ expense {args.expense_id} not found")
    print(f"🧹 {stats.links_removed} link(s) removed from {stats.transactions_updated} transaction(s)")
    return 0


def cmd_repair(args, store: StateStore, cfg: dict) -> int:
    stats = repair_reconciliation_status(store, args.club)
    print(f"🔧 {stats.fixed}/{stats.checked} reconciled flag(s) fixed")
    issues = find_link_inconsistencies(store, args.club)
    for issue in issues:
        print(f"⚠️ {issue}")
    return 1 if issues else 0


def cmd_backfill_hashes(args, store: StateStore, cfg: dict) -> int:
    stats = backfill_document_hashes(store, args.club, DocumentFetcher(), dry_run=args.dry_run)
    print(f"#️⃣ processed={stats.processed} updated={stats.updated} skipped={stats.skipped} errors={stats.errors}")
    return 1 if stats.errors else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="expense-reconciler",
                                     description="Reconcile bank outflows with expense claims")
    parser.add_argument("--club", default=os.getenv("RECON_CLUB_ID"), help="club id (default $RECON_CLUB_ID)")
    parser.add_argument("--actor", default=os.getenv("USER", "cli"), help="who performs the action")
    parser.add_argument("--db", default=None, help="SQLite path (default $RECON_STATE_DB)")
    parser.add_argument("--config", default=None, help="matching.yml path (default $RECON_CONFIG)")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--lock-timeout", type=int, default=3600)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db").set_defaults(func=cmd_init_db)

    p = sub.add_parser("match", help="deterministic batch matching")
    p.add_argument("--no-auto-link", action="store_true", help="report high-confidence pairs as suggestions")
    p.set_defaults(func=cmd_match)

    p = sub.add_parser("ai-match", help="AI proposals for unmatched transactions")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=cmd_ai_match)

    p = sub.add_parser("matches")
    p.add_argument("--status", choices=[s.value for s in MatchStatus])
    p.set_defaults(func=cmd_matches)

    sub.add_parser("stats").set_defaults(func=cmd_stats)

    for name, func in (("validate", cmd_validate), ("reject", cmd_reject)):
        p = sub.add_parser(name)
        p.add_argument("match_id")
        p.set_defaults(func=func)

    p = sub.add_parser("reassign")
    p.add_argument("match_id")
    p.add_argument("transaction_id")
    p.set_defaults(func=cmd_reassign)

    for name, func in (("link", cmd_link), ("unlink", cmd_unlink)):
        p = sub.add_parser(name)
        p.add_argument("transaction_id")
        p.add_argument("expense_id")
        p.set_defaults(func=func)

    p = sub.add_parser("import", help="create expenses from receipt files")
    p.add_argument("files", nargs="+")
    p.add_argument("--force", action="append", metavar="NAME", help="import this file even if flagged as duplicate")
    p.add_argument("--blob-dir", default=os.getenv("RECON_BLOB_DIR", "blobs"))
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("delete-expense")
    p.add_argument("expense_id")
    p.set_defaults(func=cmd_delete_expense)

    sub.add_parser("repair").set_defaults(func=cmd_repair)

    p = sub.add_parser("backfill-hashes", help="fingerprint documents stored before hashing existed")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_backfill_hashes)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    cfg = load_matching_config(args.config)
    store = StateStore(args.db)
    if args.command != "init-db":
        if not args.club:
            print("❌ no club: pass --club or set RECON_CLUB_ID")
            return 2
        store.init_db()
    try:
        return args.func(args, store, cfg)
    except ReconciliationError as e:
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
