"""Background maintenance for the refresh token store."""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.core.clock import utcnow
from app.core.database import SessionLocal
from app.core.exceptions import AuthorityUnavailableError
from app.services.refresh_token_store import RefreshTokenStore, refresh_token_store

logger = logging.getLogger(__name__)


class TokenSweeper:
    """
    Periodically deletes refresh records whose expiry is older than the
    retention window, revoked or not. Records expired within the window stay
    for forensic queries.
    """

    def __init__(
        self,
        store: Optional[RefreshTokenStore] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self.store = store or refresh_token_store
        self._session_factory = session_factory
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._heartbeat: float = 0.0
        self._runs: int = 0
        self._purged_total: int = 0
        self._last_report: Optional[Dict] = None
        self._lock = threading.Lock()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="token-sweeper", daemon=True)
        self._thread.start()
        logger.info("Token sweeper started (interval=%ss)", settings.SWEEPER_INTERVAL_SECONDS)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logger.info("Token sweeper stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "last_heartbeat": self._heartbeat,
            "runs": self._runs,
            "purged_total": self._purged_total,
            "last_report": self._last_report,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            db = self._session_factory()
            try:
                self.run_once(db)
            except AuthorityUnavailableError:
                logger.error("Token sweep skipped: store unavailable")
            finally:
                db.close()
            self._heartbeat = time.time()
            self._stop_event.wait(max(1.0, settings.SWEEPER_INTERVAL_SECONDS))

    def run_once(self, db: Session, now: Optional[datetime] = None) -> Dict:
        """
        Purge once and build a maintenance report.

        Returns:
            dict: purged count, cutoff and post-purge record statistics
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=settings.TOKEN_RETENTION_DAYS)

        purged = self.store.purge_expired(db, cutoff)
        stats = self.store.statistics(db, now=now)
        report = {
            "purged": purged,
            "cutoff": cutoff.isoformat(),
            "ran_at": now.isoformat(),
            **stats,
        }

        with self._lock:
            self._runs += 1
            self._purged_total += purged
            self._last_report = report

        logger.info(
            "Token sweep: purged=%s active=%s revoked=%s total=%s",
            purged,
            stats["active"],
            stats["revoked"],
            stats["total"],
        )
        return report


token_sweeper = TokenSweeper()
