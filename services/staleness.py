"""
Staleness policy - decides when a source's cached catalog needs a refresh
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

# Default freshness thresholds (hours); overridable per user in Settings
DEFAULT_EPG_STALE_HOURS = 6
DEFAULT_VOD_STALE_HOURS = 24


def _as_utc(value: datetime) -> datetime:
    # Handle timezone-naive datetimes (SQLite drops tzinfo)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_stale(last_synced: Optional[datetime], threshold_hours: float, now: Optional[datetime] = None) -> bool:
    """
    Whether data last synced at `last_synced` should be refreshed.

    A threshold of 0 means manual refresh only, so nothing is ever stale.
    With no previous successful sync everything is stale.
    """
    if threshold_hours == 0:
        return False
    if last_synced is None:
        return True

    now = _as_utc(now) if now else datetime.now(timezone.utc)
    return now - _as_utc(last_synced) > timedelta(hours=threshold_hours)


def is_epg_stale(meta, threshold_hours: float = DEFAULT_EPG_STALE_HOURS, now: Optional[datetime] = None) -> bool:
    """Channel/EPG class staleness from a SourceMeta row (or None)"""
    return is_stale(meta.last_synced if meta else None, threshold_hours, now)


def is_vod_stale(meta, threshold_hours: float = DEFAULT_VOD_STALE_HOURS, now: Optional[datetime] = None) -> bool:
    """VOD class staleness from a SourceMeta row (or None)"""
    return is_stale(meta.vod_last_synced if meta else None, threshold_hours, now)


def get_refresh_thresholds(app_config=None):
    """
    Current (epg_hours, vod_hours), user settings first, then app config defaults.
    Must be called inside an app context.
    """
    from models import Settings

    app_config = app_config or {}
    epg_default = app_config.get("EPG_REFRESH_HOURS", DEFAULT_EPG_STALE_HOURS)
    vod_default = app_config.get("VOD_REFRESH_HOURS", DEFAULT_VOD_STALE_HOURS)
    return (
        Settings.get_int("epg_refresh_hours", epg_default),
        Settings.get_int("vod_refresh_hours", vod_default),
    )
