"""Periodic board maintenance run alongside the HTTP server."""

import logging
import threading

from operator_hub.config import Config
from operator_hub.core import agents as agents_mod
from operator_hub.core import notifications as notifications_mod
from operator_hub.core import router
from operator_hub.db.engine import Database

logger = logging.getLogger(__name__)


def sweep(db: Database, config: Config) -> dict[str, int]:
    """Run every maintenance step once and report what each one changed."""
    result = {
        "unblocked": len(router.auto_unblock(db)),
        "released": len(router.release_orphaned_claims(db, stale_after=config.agent_stale_after)),
        "agents_pruned": agents_mod.prune_stale(db, retention=config.agent_retention),
        "notifications_pruned": notifications_mod.prune_old(db, retention=config.notification_retention),
    }
    if any(result.values()):
        logger.info("Housekeeping: %s", ", ".join(f"{k}={v}" for k, v in result.items() if v))
    return result


class Housekeeper:
    """Background thread running :func:`sweep` every ``config.sweep_interval`` seconds."""

    def __init__(self, db: Database, config: Config):
        self.db = db
        self.config = config
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="housekeeper", daemon=True)
        self._thread.start()
        logger.info("Housekeeper started (every %.0fs)", self.config.sweep_interval)

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Housekeeper stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                sweep(self.db, self.config)
            except Exception:
                logger.exception("Error in housekeeping sweep")
            self._stop_event.wait(self.config.sweep_interval)
