"""
Source sync service - mirrors provider catalogs into the local database

Every write follows the same protocol:
1. fetch the complete candidate set first; a failure records the error and
   leaves stored rows untouched
2. an empty fetch while rows are stored is treated as a provider glitch and skipped
3. replace the source's rows in one transaction
4. re-check the deletion guard right before commit
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from flask import current_app

from error_handling import SourceDeletedError
from models import (
    Category,
    Channel,
    Episode,
    Movie,
    Program,
    Series,
    Source,
    SourceMeta,
    VodCategory,
    db,
)
from services.deletion_guard import deletion_guard
from services.enrichment_service import start_background_matching
from services.playlist_client import PlaylistClient
from services.preference_service import PreferenceService
from services.staleness import get_refresh_thresholds, is_epg_stale, is_vod_stale
from services.xmltv_parser import fetch_xmltv_urls
from services.xtream_client import XtreamClient

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS = "Sync already in progress"
EPG_ERROR_PREFIX = "EPG: "

# Provider metadata kept from the previous sync when a new fetch leaves it empty
CARRY_FORWARD_FIELDS = ("plot", "cast", "director", "genre", "release_date", "rating", "duration")

_source_locks: Dict[str, threading.Lock] = {}
_source_locks_guard = threading.Lock()


def get_source_lock(source_id: str) -> threading.Lock:
    """One lock per source id; syncs of different sources never block each other"""
    with _source_locks_guard:
        lock = _source_locks.get(source_id)
        if lock is None:
            lock = _source_locks[source_id] = threading.Lock()
        return lock


def is_sync_in_progress(source_id: str) -> bool:
    lock = _source_locks.get(source_id)
    return bool(lock and lock.locked())


def _config(key, default):
    return current_app.config.get(key, default)


def _dedupe_by(records: List[Dict], key: str) -> List[Dict]:
    """Keep the first record per key"""
    seen = set()
    result = []
    for record in records:
        value = record.get(key)
        if value in seen:
            continue
        seen.add(value)
        result.append(record)
    return result


def _program_id(stream_id: str, start: datetime) -> str:
    start_ms = int(start.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"{stream_id}_{start_ms}"


def _drop_overlaps(programs: List[Dict]) -> List[Dict]:
    """Per channel, drop programmes starting before the previous kept one ends"""
    by_stream: Dict[str, List[Dict]] = {}
    for program in programs:
        by_stream.setdefault(program["stream_id"], []).append(program)

    kept = []
    for stream_programs in by_stream.values():
        stream_programs.sort(key=lambda p: p["start"])
        last_end = None
        for program in stream_programs:
            if last_end is not None and program["start"] < last_end:
                continue
            kept.append(program)
            last_end = program["end"]
    return kept


class SourceSyncService:
    """Service for synchronizing sources (live, EPG, VOD) into the local store"""

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _xtream_client(source) -> XtreamClient:
        return XtreamClient.for_source(source, timeout=_config("PROVIDER_TIMEOUT", 30))

    @staticmethod
    def _get_meta(source_id: str) -> SourceMeta:
        meta = db.session.get(SourceMeta, source_id)
        if meta is None:
            meta = SourceMeta(source_id=source_id)
            db.session.add(meta)
        return meta

    @staticmethod
    def _source_gone(source_id: str) -> bool:
        """Deleted recently, or no longer in the database at all"""
        if deletion_guard.is_deleted(source_id):
            return True
        # The identity map can still hold a row another session deleted
        with db.session.no_autoflush:
            return Source.query.with_entities(Source.id).filter_by(id=source_id).first() is None

    @staticmethod
    def _commit_unless_deleted(source_id: str):
        """Commit, or roll back and raise if the source was deleted meanwhile"""
        if SourceSyncService._source_gone(source_id):
            db.session.rollback()
            raise SourceDeletedError(source_id)
        db.session.commit()

    @staticmethod
    def _record_error(source_id: str, message: str, field: str = "error"):
        """Store a failure on SourceMeta without touching sync timestamps"""
        db.session.rollback()
        if SourceSyncService._source_gone(source_id):
            return
        try:
            meta = SourceSyncService._get_meta(source_id)
            setattr(meta, field, message)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Could not record sync error for source {source_id}: {e}")

    @staticmethod
    def _load_source(source_id: str) -> Tuple[Optional[Source], Optional[Dict]]:
        source = db.session.get(Source, source_id)
        if not source:
            return None, {"success": False, "error": "Source not found"}
        if not source.enabled:
            return None, {"success": False, "error": "Source is disabled"}
        return source, None

    # ------------------------------------------------------------------
    # Live channels
    # ------------------------------------------------------------------

    @staticmethod
    def sync_source(source_id: str) -> Dict:
        """
        Sync live channels and categories of one source, then its EPG

        Returns:
            Dict with sync statistics
        """
        source, error = SourceSyncService._load_source(source_id)
        if error:
            return error

        lock = get_source_lock(source_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Sync for source {source.name} skipped, already running")
            return {"success": False, "source_id": source_id, "error": SYNC_IN_PROGRESS}

        try:
            return SourceSyncService._sync_live(source)
        finally:
            lock.release()

    @staticmethod
    def _fetch_live(source) -> Tuple[List[Dict], List[Dict], Optional[str]]:
        """Fetch (categories, channels, provider EPG URL) for a source"""
        if source.is_xtream:
            client = SourceSyncService._xtream_client(source)
            categories = client.get_live_categories()
            channels = client.get_live_streams()
            return categories, channels, client.get_epg_url()

        playlist = PlaylistClient.for_source(source, timeout=_config("PROVIDER_TIMEOUT", 30)).fetch()
        return playlist.categories, playlist.channels, playlist.epg_url

    @staticmethod
    def _sync_live(source) -> Dict:
        source_id = source.id
        logger.info(f"Starting sync for source {source.name} ({source_id})")

        stats = {
            "success": True,
            "source_id": source_id,
            "source_name": source.name,
            "channels": 0,
            "categories": 0,
            "skipped": False,
        }

        try:
            categories, channels, provider_epg_url = SourceSyncService._fetch_live(source)
        except Exception as e:
            logger.error(f"Error fetching channels for source {source_id}: {e}")
            SourceSyncService._record_error(source_id, str(e))
            return {**stats, "success": False, "error": str(e)}

        categories = _dedupe_by(categories, "category_id")
        channels = _dedupe_by(channels, "stream_id")

        if not channels:
            stored = Channel.query.filter_by(source_id=source_id).count()
            if stored:
                logger.warning(
                    f"Source {source.name} returned 0 channels but {stored} are stored, keeping existing data"
                )
                return {**stats, "skipped": True, "reason": "Empty result, existing data kept"}

        try:
            Category.query.filter_by(source_id=source_id).delete()
            Channel.query.filter_by(source_id=source_id).delete()
            db.session.add_all(Category(**c) for c in categories)
            db.session.add_all(Channel(**c) for c in channels)

            meta = SourceSyncService._get_meta(source_id)
            meta.channel_count = len(channels)
            meta.category_count = len(categories)
            meta.last_synced = datetime.now(timezone.utc)
            meta.error = None
            if provider_epg_url:
                meta.epg_url = provider_epg_url

            SourceSyncService._commit_unless_deleted(source_id)
        except SourceDeletedError:
            logger.warning(f"Source {source_id} deleted during sync, discarding channel write")
            return {**stats, "success": False, "error": "Source was deleted during sync"}
        except Exception as e:
            logger.error(f"Error writing channels for source {source_id}: {e}")
            SourceSyncService._record_error(source_id, f"Database error: {e}")
            return {**stats, "success": False, "error": str(e)}

        stats["channels"] = len(channels)
        stats["categories"] = len(categories)
        logger.info(f"Sync completed for source {source.name}: {len(channels)} channels, {len(categories)} categories")

        epg_url = SourceSyncService._resolve_epg_url(source, provider_epg_url)
        if epg_url:
            stats["epg"] = SourceSyncService.sync_epg(source, channels, epg_url)

        return stats

    @staticmethod
    def _resolve_epg_url(source, provider_epg_url: Optional[str]) -> Optional[str]:
        """Manual override first, then the provider's own guide when auto-load is on"""
        if source.epg_url:
            return source.epg_url
        if provider_epg_url and source.should_load_epg():
            return provider_epg_url
        return None

    # ------------------------------------------------------------------
    # EPG
    # ------------------------------------------------------------------

    @staticmethod
    def sync_epg(source, channels: List[Dict], epg_url: Optional[str]) -> Dict:
        """
        Replace the source's programmes with the guide at epg_url

        Channels are matched by epg_channel_id. EPG failures are recorded with
        an "EPG: " prefix and never affect channels.
        """
        source_id = source.id
        stats = {"success": True, "programs": 0, "skipped": False}
        if not epg_url:
            return {**stats, "skipped": True, "reason": "No EPG URL"}

        try:
            raw_programs = fetch_xmltv_urls(
                epg_url, user_agent=source.user_agent, timeout=_config("EPG_TIMEOUT", 120)
            )
        except Exception as e:
            logger.error(f"Error fetching EPG for source {source_id}: {e}")
            SourceSyncService._record_error(source_id, f"{EPG_ERROR_PREFIX}{e}")
            return {**stats, "success": False, "error": str(e)}

        if not raw_programs:
            logger.warning(f"EPG for source {source.name} contained no programmes")
            return {**stats, "skipped": True, "reason": "No programmes in guide"}

        streams_by_epg_id: Dict[str, List[str]] = {}
        for channel in channels:
            epg_channel_id = channel.get("epg_channel_id")
            if epg_channel_id:
                streams_by_epg_id.setdefault(epg_channel_id, []).append(channel["stream_id"])

        programs = []
        seen_ids = set()
        for raw in raw_programs:
            for stream_id in streams_by_epg_id.get(raw["channel_id"], []):
                program_id = _program_id(stream_id, raw["start"])
                if program_id in seen_ids:
                    continue
                seen_ids.add(program_id)
                programs.append(
                    {
                        "id": program_id,
                        "stream_id": stream_id,
                        "title": raw["title"],
                        "description": raw.get("description") or "",
                        "start": raw["start"],
                        "end": raw["stop"],
                        "source_id": source_id,
                    }
                )

        if not programs:
            logger.warning(
                f"None of {len(raw_programs)} EPG programmes matched a channel of source {source.name}, "
                f"keeping existing guide"
            )
            return {**stats, "skipped": True, "reason": "No programmes matched any channel"}

        programs = _drop_overlaps(programs)

        try:
            Program.query.filter_by(source_id=source_id).delete()
            db.session.add_all(Program(**p) for p in programs)

            meta = SourceSyncService._get_meta(source_id)
            meta.program_count = len(programs)
            meta.epg_last_synced = datetime.now(timezone.utc)
            if meta.error and meta.error.startswith(EPG_ERROR_PREFIX):
                meta.error = None

            SourceSyncService._commit_unless_deleted(source_id)
        except SourceDeletedError:
            logger.warning(f"Source {source_id} deleted during EPG sync, discarding write")
            return {**stats, "success": False, "error": "Source was deleted during sync"}
        except Exception as e:
            logger.error(f"Error writing EPG for source {source_id}: {e}")
            SourceSyncService._record_error(source_id, f"{EPG_ERROR_PREFIX}Database error: {e}")
            return {**stats, "success": False, "error": str(e)}

        logger.info(f"EPG synced for source {source.name}: {len(programs)} programmes")
        return {**stats, "programs": len(programs)}

    # ------------------------------------------------------------------
    # VOD
    # ------------------------------------------------------------------

    @staticmethod
    def sync_vod_for_source(source_id: str) -> Dict:
        """Sync movies and series of an Xtream source, then start catalog matching"""
        source, error = SourceSyncService._load_source(source_id)
        if error:
            return error
        if not source.is_xtream:
            return {"success": False, "source_id": source_id, "error": "VOD sync requires an Xtream source"}

        lock = get_source_lock(source_id)
        if not lock.acquire(blocking=False):
            return {"success": False, "source_id": source_id, "error": SYNC_IN_PROGRESS}

        try:
            stats = SourceSyncService._sync_vod(source)
        finally:
            lock.release()

        if stats.get("movies", {}).get("written") or stats.get("series", {}).get("written"):
            start_background_matching(current_app._get_current_object(), source_id)
        return stats

    @staticmethod
    def _sync_vod(source) -> Dict:
        source_id = source.id
        logger.info(f"Starting VOD sync for source {source.name} ({source_id})")
        client = SourceSyncService._xtream_client(source)

        parts = {}
        errors = []
        for kind, fetch_categories, fetch_items in (
            ("movie", client.get_vod_categories, client.get_vod_streams),
            ("series", client.get_series_categories, client.get_series),
        ):
            part_name = "movies" if kind == "movie" else "series"
            try:
                categories = fetch_categories()
                items = fetch_items()
            except Exception as e:
                logger.error(f"Error fetching {part_name} for source {source_id}: {e}")
                errors.append(f"{part_name}: {e}")
                parts[part_name] = {"written": False, "error": str(e)}
                continue

            try:
                parts[part_name] = SourceSyncService._write_vod_part(source, kind, categories, items)
            except SourceDeletedError:
                logger.warning(f"Source {source_id} deleted during VOD sync, discarding write")
                return {"success": False, "source_id": source_id, "error": "Source was deleted during sync"}
            except Exception as e:
                db.session.rollback()
                logger.error(f"Error writing {part_name} for source {source_id}: {e}")
                errors.append(f"{part_name}: Database error: {e}")
                parts[part_name] = {"written": False, "error": str(e)}

        movies, series = parts["movies"], parts["series"]
        try:
            meta = SourceSyncService._get_meta(source_id)
            if movies["written"]:
                meta.vod_movie_count = movies["count"]
            if series["written"]:
                meta.vod_series_count = series["count"]
            if movies["written"] and series["written"]:
                meta.vod_last_synced = datetime.now(timezone.utc)
            meta.vod_error = "; ".join(errors) if errors else None
            SourceSyncService._commit_unless_deleted(source_id)
        except SourceDeletedError:
            logger.warning(f"Source {source_id} deleted during VOD sync")
            return {"success": False, "source_id": source_id, "error": "Source was deleted during sync"}

        logger.info(
            f"VOD sync completed for source {source.name}: "
            f"{movies.get('count', 0)} movies, {series.get('count', 0)} series"
        )
        return {
            "success": not errors,
            "source_id": source_id,
            "source_name": source.name,
            "movies": movies,
            "series": series,
            "errors": errors,
        }

    @staticmethod
    def _write_vod_part(source, kind: str, categories: List[Dict], items: List[Dict]) -> Dict:
        """Upsert one VOD type, keeping enrichment of rows that persist"""
        source_id = source.id
        model, key = (Movie, "stream_id") if kind == "movie" else (Series, "series_id")
        items = _dedupe_by(items, key)
        categories = _dedupe_by(categories, "category_id")

        existing = {row.item_id: row for row in model.query.filter_by(source_id=source_id).all()}
        if not items and existing:
            logger.warning(
                f"Source {source.name} returned 0 {kind} items but {len(existing)} are stored, keeping existing data"
            )
            return {"written": False, "skipped": True, "count": len(existing)}

        added = updated = 0
        for data in items:
            row = existing.get(data[key])
            if row is None:
                db.session.add(model(**data))
                added += 1
                continue
            for field, value in data.items():
                if field in CARRY_FORWARD_FIELDS and value in (None, ""):
                    continue
                setattr(row, field, value)
            updated += 1

        incoming = {data[key] for data in items}
        removed_ids = [item_id for item_id in existing if item_id not in incoming]
        for item_id in removed_ids:
            db.session.delete(existing[item_id])
        if kind == "series" and removed_ids:
            Episode.query.filter(Episode.series_id.in_(removed_ids)).delete()

        VodCategory.query.filter_by(source_id=source_id, type=kind).delete()
        db.session.add_all(
            VodCategory(category_id=c["category_id"], type=kind, name=c["category_name"], source_id=source_id)
            for c in categories
        )

        SourceSyncService._commit_unless_deleted(source_id)
        return {
            "written": True,
            "count": len(items),
            "added": added,
            "updated": updated,
            "removed": len(removed_ids),
            "categories": len(categories),
        }

    @staticmethod
    def sync_series_episodes(source_id: str, series_id: str) -> Dict:
        """Fetch the episodes of one series and replace the stored ones"""
        source, error = SourceSyncService._load_source(source_id)
        if error:
            return error
        if not source.is_xtream:
            return {"success": False, "error": "Episodes require an Xtream source"}

        series = db.session.get(Series, series_id)
        if not series or series.source_id != source_id:
            return {"success": False, "error": "Series not found"}

        try:
            episodes = SourceSyncService._xtream_client(source).get_series_info(series_id)
        except Exception as e:
            logger.error(f"Error fetching episodes for series {series_id}: {e}")
            return {"success": False, "series_id": series_id, "error": str(e)}

        episodes = _dedupe_by(episodes, "id")
        if not episodes:
            stored = Episode.query.filter_by(series_id=series_id).count()
            if stored:
                logger.warning(f"Series {series_id} returned 0 episodes but {stored} are stored, keeping them")
                return {"success": True, "series_id": series_id, "skipped": True, "episodes": stored}

        try:
            Episode.query.filter_by(series_id=series_id).delete()
            db.session.add_all(Episode(**e) for e in episodes)
            SourceSyncService._commit_unless_deleted(source_id)
        except SourceDeletedError:
            logger.warning(f"Source {source_id} deleted during episode sync, discarding write")
            return {"success": False, "series_id": series_id, "error": "Source was deleted during sync"}

        logger.info(f"Synced {len(episodes)} episodes for series {series_id}")
        return {"success": True, "series_id": series_id, "skipped": False, "episodes": len(episodes)}

    # ------------------------------------------------------------------
    # Bulk
    # ------------------------------------------------------------------

    @staticmethod
    def sync_all_enabled() -> Dict:
        """Sync live channels for every enabled source, in insertion order"""
        sources = Source.query.filter_by(enabled=True).order_by(Source.created_at).all()
        results = [SourceSyncService.sync_source(source.id) for source in sources]
        return {"success": all(r.get("success") for r in results), "results": results}

    @staticmethod
    def sync_all_vod() -> Dict:
        """Sync VOD for every enabled Xtream source"""
        sources = (
            Source.query.filter_by(enabled=True, source_type="xtream").order_by(Source.created_at).all()
        )
        results = [SourceSyncService.sync_vod_for_source(source.id) for source in sources]
        return {"success": all(r.get("success") for r in results), "results": results}

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    @staticmethod
    def mark_source_deleted(source_id: str, window_seconds: Optional[int] = None):
        """Tell in-flight syncs and matching runs to discard their writes"""
        if window_seconds is None:
            window_seconds = _config("DELETION_GUARD_SECONDS", deletion_guard.window_seconds)
        deletion_guard.mark(source_id, window_seconds)

    @staticmethod
    def delete_source(source_id: str) -> Dict:
        """Delete a source and every row that references it"""
        source = db.session.get(Source, source_id)
        if not source:
            return {"success": False, "error": "Source not found"}

        SourceSyncService.mark_source_deleted(source_id)

        deleted = {}
        try:
            for name, model in (
                ("programs", Program),
                ("channels", Channel),
                ("categories", Category),
                ("episodes", Episode),
                ("movies", Movie),
                ("series", Series),
                ("vod_categories", VodCategory),
                ("meta", SourceMeta),
            ):
                deleted[name] = model.query.filter_by(source_id=source_id).delete()
            db.session.delete(source)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error deleting source {source_id}: {e}")
            raise

        with _source_locks_guard:
            _source_locks.pop(source_id, None)
        PreferenceService.forget_source(source_id)
        logger.info(f"Deleted source {source_id}: {deleted}")
        return {"success": True, "source_id": source_id, "deleted": deleted}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @staticmethod
    def get_source_status(source_id: str, thresholds=None) -> Optional[Dict]:
        source = db.session.get(Source, source_id)
        if not source:
            return None

        epg_hours, vod_hours = thresholds or get_refresh_thresholds(current_app.config)
        meta = db.session.get(SourceMeta, source_id)
        return {
            "source": source.to_dict(),
            "meta": meta.to_dict() if meta else None,
            "in_progress": is_sync_in_progress(source_id),
            "epg_stale": is_epg_stale(meta, epg_hours),
            "vod_stale": is_vod_stale(meta, vod_hours) if source.is_xtream else False,
        }

    @staticmethod
    def get_sync_status() -> List[Dict]:
        """Per-source status: last successful sync, counts, last error"""
        thresholds = get_refresh_thresholds(current_app.config)
        return [
            SourceSyncService.get_source_status(source.id, thresholds)
            for source in Source.query.order_by(Source.created_at).all()
        ]
