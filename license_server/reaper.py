import logging
import threading
from datetime import timedelta

logger = logging.getLogger(__name__)


class ExpiryReaper:
    """
    Flips lapsed licenses to expired and drops abandoned pending rows.

    Uses the store's conditional updates only, so it can run alongside
    request traffic without stepping on deactivated or already-expired rows.
    """

    def __init__(self, store, interval_seconds=0, pending_ttl=None):
        self.store = store
        self.interval_seconds = interval_seconds
        self.pending_ttl = pending_ttl
        self._stop = threading.Event()
        self._thread = None

    @classmethod
    def from_settings(cls, store, settings):
        ttl = timedelta(hours=settings.PENDING_TTL_HOURS) if settings.PENDING_TTL_HOURS > 0 else None
        return cls(store, interval_seconds=settings.REAPER_INTERVAL_SECONDS, pending_ttl=ttl)

    def run_once(self) -> dict:
        expired = self.store.sweep_expired()
        purged = 0
        if self.pending_ttl is not None:
            purged = self.store.purge_stale_pending(self.store.clock() - self.pending_ttl)
        if expired or purged:
            logger.info("Reaper: %d license(s) expired, %d stale pending purged", expired, purged)
        return {"expired": expired, "purged": purged}

    def _loop(self):
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Reaper pass failed: {e}", exc_info=True)

    def start(self) -> bool:
        if self.interval_seconds <= 0 or self._thread is not None:
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-reaper", daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout=5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
