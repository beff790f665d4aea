"""
One reconciliation run per club at a time.

The lock is a small JSON file in ``RECON_LOCK_DIR``; a lock older than its
timeout is considered abandoned and taken over.
"""

import json
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from expense_reconciler.errors import RunInProgressError, require_club

logger = logging.getLogger(__name__)


class ClubRunLock:
    def __init__(self, club_id: str, lock_dir: Optional[str] = None, timeout: int = 3600):
        """
        Args:
            club_id: club whose runs are serialized
            lock_dir: directory holding lock files (default ``RECON_LOCK_DIR`` or cwd)
            timeout: seconds after which a held lock is treated as stale
        """
        self.club_id = require_club(club_id)
        self.timeout = timeout
        lock_dir = lock_dir or os.getenv("RECON_LOCK_DIR", ".")
        self.lock_file = os.path.join(lock_dir, f".reconcile_{club_id}_lock.json")
        self.process_id = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"

    def acquire(self, metadata: Optional[Dict[str, Any]] = None) -> bool:
        existing = self._load_lock()
        if existing:
            try:
                lock_time = datetime.fromisoformat(existing.get("timestamp", ""))
            except ValueError:
                lock_time = None
            if lock_time and datetime.now() - lock_time < timedelta(seconds=self.timeout):
                return False
            logger.warning("⏰ stale lock of %s taken over", existing.get("process_id"))
            self._remove_lock()

        self._save_lock({
            "process_id": self.process_id,
            "club_id": self.club_id,
            "timestamp": datetime.now().isoformat(),
            "timeout": self.timeout,
            "metadata": metadata or {},
        })
        logger.info("🔒 run lock acquired for %s", self.club_id)
        return True

    def release(self) -> bool:
        existing = self._load_lock()
        if not existing:
            return False
        if existing.get("process_id") != self.process_id:
            logger.warning("lock for %s is held by %s, not released", self.club_id, existing.get("process_id"))
            return False
        self._remove_lock()
        logger.info("🔓 run lock released for %s", self.club_id)
        return True

    def get_lock_info(self) -> Optional[Dict[str, Any]]:
        return self._load_lock()

    def __enter__(self):
        if not self.acquire():
            holder = (self._load_lock() or {}).get("process_id", "?")
            raise RunInProgressError(f"a reconciliation run for {self.club_id} is already in progress ({holder})")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def _load_lock(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return None

    def _save_lock(self, lock_data: Dict[str, Any]):
        with open(self.lock_file, "w", encoding="utf-8") as f:
            json.dump(lock_data, f, ensure_ascii=False, indent=2)

    def _remove_lock(self):
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            pass
