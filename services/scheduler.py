"""
Background scheduler for periodic source synchronization
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Optional

from models import Source, SourceMeta, db
from services.staleness import get_refresh_thresholds, is_epg_stale, is_vod_stale
from services.sync_service import SourceSyncService

logger = logging.getLogger(__name__)

DEFAULT_CHECK_SECONDS = 60
DEFAULT_WORKERS = 4
STARTUP_DELAY_SECONDS = 30


class SyncScheduler:
    """Refreshes stale sources on a fixed check interval, one worker per source"""

    def __init__(self, app, check_seconds=None, workers=None):
        """
        Initialize scheduler

        Args:
            app: Flask app instance
            check_seconds: Seconds between staleness checks
            workers: Max sources synced in parallel
        """
        self.app = app
        self.check_seconds = check_seconds or app.config.get("SCHEDULER_CHECK_SECONDS", DEFAULT_CHECK_SECONDS)
        self.workers = workers or app.config.get("SYNC_WORKERS", DEFAULT_WORKERS)
        self.running = False
        self.thread = None
        self.last_check: Optional[datetime] = None
        self.last_results: List[Dict] = []

    def start(self):
        """Start the scheduler"""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, daemon=True, name="sync-scheduler")
        self.thread.start()
        logger.info(f"Sync scheduler started (check every {self.check_seconds}s, {self.workers} workers)")

    def stop(self):
        """Stop the scheduler"""
        self.running = False
        if self.thread:
            self.thread.join(timeout=5)
        logger.info("Sync scheduler stopped")

    def get_status(self) -> dict:
        """Scheduler state plus per-source staleness"""
        with self.app.app_context():
            epg_hours, vod_hours = get_refresh_thresholds(self.app.config)
            sources = []
            for source in Source.query.filter_by(enabled=True).order_by(Source.created_at).all():
                meta = db.session.get(SourceMeta, source.id)
                sources.append(
                    {
                        "source_id": source.id,
                        "name": source.name,
                        "last_synced": meta.last_synced.isoformat() if meta and meta.last_synced else None,
                        "vod_last_synced": (
                            meta.vod_last_synced.isoformat() if meta and meta.vod_last_synced else None
                        ),
                        "epg_stale": is_epg_stale(meta, epg_hours),
                        "vod_stale": is_vod_stale(meta, vod_hours) if source.is_xtream else False,
                    }
                )

            return {
                "running": self.running,
                "check_seconds": self.check_seconds,
                "workers": self.workers,
                "epg_refresh_hours": epg_hours,
                "vod_refresh_hours": vod_hours,
                "last_check": self.last_check.isoformat() if self.last_check else None,
                "sources": sources,
            }

    def _run(self):
        """Main scheduler loop - checks periodically if sync is needed"""
        # Wait a bit before first check to let app start up
        for _ in range(STARTUP_DELAY_SECONDS):
            if not self.running:
                return
            time.sleep(1)

        while self.running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in sync scheduler: {e}")

            # Sleep in small intervals so we can stop quickly
            for _ in range(self.check_seconds):
                if not self.running:
                    break
                time.sleep(1)

    def _due_sources(self):
        """(source_id, needs_live, needs_vod) for every enabled source with stale data"""
        epg_hours, vod_hours = get_refresh_thresholds(self.app.config)
        due = []
        for source in Source.query.filter_by(enabled=True).order_by(Source.created_at).all():
            meta = db.session.get(SourceMeta, source.id)
            needs_live = is_epg_stale(meta, epg_hours)
            needs_vod = source.is_xtream and is_vod_stale(meta, vod_hours)
            if needs_live or needs_vod:
                due.append((source.id, needs_live, needs_vod))
        return due

    def _sync_one(self, source_id: str, needs_live: bool, needs_vod: bool) -> Dict:
        """Runs on a worker thread with its own app context and session"""
        result = {"source_id": source_id}
        with self.app.app_context():
            try:
                if needs_live:
                    result["live"] = SourceSyncService.sync_source(source_id)
                if needs_vod:
                    result["vod"] = SourceSyncService.sync_vod_for_source(source_id)
            except Exception as e:
                logger.error(f"Scheduled sync failed for source {source_id}: {e}")
                db.session.rollback()
                result["error"] = str(e)
        return result

    def run_once(self) -> List[Dict]:
        """Sync every stale source once, sources in parallel"""
        with self.app.app_context():
            due = self._due_sources()

        self.last_check = datetime.now(timezone.utc)
        if not due:
            logger.debug("No stale sources")
            self.last_results = []
            return []

        logger.info(f"{len(due)} source(s) due for sync")
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="source-sync") as executor:
            futures = [executor.submit(self._sync_one, *entry) for entry in due]
            results = [future.result() for future in futures]

        self.last_results = results
        return results
