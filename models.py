"""
Database models for IPTV Catalog Sync
"""

import uuid
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _new_source_id():
    return uuid.uuid4().hex


class Source(db.Model):  # type: ignore[name-defined]
    """IPTV provider account - structured API (Xtream Codes) or M3U playlist"""

    __tablename__ = "sources"

    id = db.Column(db.String(36), primary_key=True, default=_new_source_id)
    name = db.Column(db.String(100), nullable=False)
    source_type = db.Column(db.String(20), nullable=False)  # 'xtream', 'm3u'
    url = db.Column(db.String(500), nullable=False)
    username = db.Column(db.String(100), nullable=True)
    password = db.Column(db.String(100), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    enabled = db.Column(db.Boolean, default=True)
    # None = default (xtream: on, m3u: on when the playlist advertises an EPG URL)
    auto_load_epg = db.Column(db.Boolean, nullable=True)
    epg_url = db.Column(db.String(2000), nullable=True)  # Manual EPG override, may be comma-separated
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_xtream(self):
        return self.source_type == "xtream"

    def should_load_epg(self):
        """Whether the provider's own EPG should be fetched after a channel sync."""
        if self.auto_load_epg is not None:
            return self.auto_load_epg
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "source_type": self.source_type,
            "url": self.url,
            "username": self.username,
            "user_agent": self.user_agent,
            "enabled": self.enabled,
            "auto_load_epg": self.auto_load_epg,
            "epg_url": self.epg_url,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Source {self.name} ({self.source_type})>"


class SourceMeta(db.Model):  # type: ignore[name-defined]
    """Per-source sync bookkeeping - the single source of truth for staleness decisions"""

    __tablename__ = "source_meta"

    source_id = db.Column(db.String(36), primary_key=True)
    epg_url = db.Column(db.String(2000))  # EPG URL advertised by the provider

    # Live channels / EPG class
    last_synced = db.Column(db.DateTime)  # Last successful channel sync
    channel_count = db.Column(db.Integer, default=0)
    category_count = db.Column(db.Integer, default=0)
    program_count = db.Column(db.Integer, default=0)
    epg_last_synced = db.Column(db.DateTime)
    error = db.Column(db.Text)

    # VOD class
    vod_last_synced = db.Column(db.DateTime)
    vod_movie_count = db.Column(db.Integer)
    vod_series_count = db.Column(db.Integer)
    vod_error = db.Column(db.Text)

    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        def iso(value):
            return value.isoformat() if value else None

        return {
            "source_id": self.source_id,
            "epg_url": self.epg_url,
            "last_synced": iso(self.last_synced),
            "channel_count": self.channel_count or 0,
            "category_count": self.category_count or 0,
            "program_count": self.program_count or 0,
            "epg_last_synced": iso(self.epg_last_synced),
            "error": self.error,
            "vod_last_synced": iso(self.vod_last_synced),
            "vod_movie_count": self.vod_movie_count,
            "vod_series_count": self.vod_series_count,
            "vod_error": self.vod_error,
        }

    def __repr__(self):
        return f"<SourceMeta {self.source_id} channels={self.channel_count}>"


class Category(db.Model):  # type: ignore[name-defined]
    """Live TV categories from an IPTV provider"""

    __tablename__ = "categories"

    category_id = db.Column(db.String(100), primary_key=True)  # "{source_id}_{provider category id}"
    category_name = db.Column(db.String(200), nullable=False)
    source_id = db.Column(db.String(36), nullable=False, index=True)
    parent_id = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            "category_id": self.category_id,
            "category_name": self.category_name,
            "source_id": self.source_id,
            "parent_id": self.parent_id,
        }

    def __repr__(self):
        return f"<Category {self.category_name} (source={self.source_id})>"


class Channel(db.Model):  # type: ignore[name-defined]
    """Live channels - one row per (source, provider stream), never merged at storage time"""

    __tablename__ = "channels"

    stream_id = db.Column(db.String(100), primary_key=True)  # "{source_id}_{provider stream id}"
    name = db.Column(db.String(500), nullable=False, index=True)
    stream_icon = db.Column(db.String(1000))
    epg_channel_id = db.Column(db.String(200), index=True)
    category_ids = db.Column(db.JSON, default=list)
    direct_url = db.Column(db.String(2000), nullable=False)
    source_id = db.Column(db.String(36), nullable=False, index=True)
    channel_num = db.Column(db.Integer, nullable=True)
    tv_archive = db.Column(db.Boolean, default=False)

    def to_dict(self):
        return {
            "stream_id": self.stream_id,
            "name": self.name,
            "stream_icon": self.stream_icon,
            "epg_channel_id": self.epg_channel_id,
            "category_ids": self.category_ids or [],
            "direct_url": self.direct_url,
            "source_id": self.source_id,
            "channel_num": self.channel_num,
            "tv_archive": bool(self.tv_archive),
        }

    def __repr__(self):
        return f"<Channel {self.name} (source={self.source_id})>"


class Program(db.Model):  # type: ignore[name-defined]
    """EPG programme entry mapped to a local channel"""

    __tablename__ = "programs"

    id = db.Column(db.String(150), primary_key=True)  # "{stream_id}_{start epoch}"
    stream_id = db.Column(db.String(100), nullable=False, index=True)
    title = db.Column(db.String(500), nullable=False)
    description = db.Column(db.Text)
    start = db.Column(db.DateTime, nullable=False, index=True)
    end = db.Column(db.DateTime, nullable=False, index=True)
    source_id = db.Column(db.String(36), nullable=False, index=True)

    __table_args__ = (db.Index("idx_program_stream_start", "stream_id", "start"),)

    def to_dict(self):
        return {
            "id": self.id,
            "stream_id": self.stream_id,
            "title": self.title,
            "description": self.description,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "source_id": self.source_id,
        }

    def __repr__(self):
        return f"<Program {self.title} ({self.stream_id} @ {self.start})>"


# ============================================================================
# VOD Models
# ============================================================================


class VodCategory(db.Model):  # type: ignore[name-defined]
    """Movie or series category from an Xtream provider"""

    __tablename__ = "vod_categories"

    category_id = db.Column(db.String(100), primary_key=True)
    type = db.Column(db.String(10), primary_key=True)  # 'movie', 'series'
    name = db.Column(db.String(200), nullable=False)
    source_id = db.Column(db.String(36), nullable=False, index=True)

    def to_dict(self):
        return {"category_id": self.category_id, "type": self.type, "name": self.name, "source_id": self.source_id}

    def __repr__(self):
        return f"<VodCategory {self.name} ({self.type})>"


class VodItemMixin:
    """Columns shared by movies and series: provider metadata plus catalog enrichment"""

    name = db.Column(db.String(500), nullable=False, index=True)
    title = db.Column(db.String(500))  # Clean title without year, when the provider sends one
    year = db.Column(db.String(10))
    category_ids = db.Column(db.JSON, default=list)
    source_id = db.Column(db.String(36), nullable=False, index=True)

    plot = db.Column(db.Text)
    cast = db.Column(db.Text)
    director = db.Column(db.String(500))
    genre = db.Column(db.String(500))
    release_date = db.Column(db.String(50))
    rating = db.Column(db.String(20))

    # Enrichment - preserved across resyncs
    catalog_id = db.Column(db.Integer, index=True)
    catalog_popularity = db.Column(db.Float, index=True)
    imdb_id = db.Column(db.String(20))
    backdrop_path = db.Column(db.String(500))
    match_attempted = db.Column(db.DateTime)
    added = db.Column(db.DateTime, default=datetime.utcnow)

    def _base_dict(self):
        return {
            "name": self.name,
            "title": self.title,
            "year": self.year,
            "category_ids": self.category_ids or [],
            "source_id": self.source_id,
            "plot": self.plot,
            "cast": self.cast,
            "director": self.director,
            "genre": self.genre,
            "release_date": self.release_date,
            "rating": self.rating,
            "catalog_id": self.catalog_id,
            "catalog_popularity": self.catalog_popularity,
            "imdb_id": self.imdb_id,
            "backdrop_path": self.backdrop_path,
            "match_attempted": self.match_attempted.isoformat() if self.match_attempted else None,
            "added": self.added.isoformat() if self.added else None,
        }


class Movie(VodItemMixin, db.Model):  # type: ignore[name-defined]
    """VOD movie"""

    __tablename__ = "vod_movies"

    stream_id = db.Column(db.String(100), primary_key=True)
    stream_icon = db.Column(db.String(1000))
    direct_url = db.Column(db.String(2000), nullable=False)
    container_extension = db.Column(db.String(10))
    duration = db.Column(db.Integer)  # seconds

    __table_args__ = (db.Index("idx_movie_source_catalog", "source_id", "catalog_id"),)

    @property
    def item_id(self):
        return self.stream_id

    def to_dict(self):
        data = self._base_dict()
        data.update(
            {
                "stream_id": self.stream_id,
                "stream_icon": self.stream_icon,
                "direct_url": self.direct_url,
                "container_extension": self.container_extension,
                "duration": self.duration,
            }
        )
        return data

    def __repr__(self):
        return f"<Movie {self.name} (source={self.source_id})>"


class Series(VodItemMixin, db.Model):  # type: ignore[name-defined]
    """VOD series"""

    __tablename__ = "vod_series"

    series_id = db.Column(db.String(100), primary_key=True)
    cover = db.Column(db.String(1000))

    __table_args__ = (db.Index("idx_series_source_catalog", "source_id", "catalog_id"),)

    @property
    def item_id(self):
        return self.series_id

    def to_dict(self):
        data = self._base_dict()
        data.update({"series_id": self.series_id, "cover": self.cover})
        return data

    def __repr__(self):
        return f"<Series {self.name} (source={self.source_id})>"


class Episode(db.Model):  # type: ignore[name-defined]
    """Series episode, fetched on demand per series"""

    __tablename__ = "vod_episodes"

    id = db.Column(db.String(100), primary_key=True)
    series_id = db.Column(db.String(100), nullable=False, index=True)
    source_id = db.Column(db.String(36), nullable=False, index=True)
    season_num = db.Column(db.Integer, nullable=False, index=True)
    episode_num = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(500))
    direct_url = db.Column(db.String(2000), nullable=False)
    container_extension = db.Column(db.String(10))
    plot = db.Column(db.Text)
    duration = db.Column(db.Integer)

    def to_dict(self):
        return {
            "id": self.id,
            "series_id": self.series_id,
            "source_id": self.source_id,
            "season_num": self.season_num,
            "episode_num": self.episode_num,
            "title": self.title,
            "direct_url": self.direct_url,
            "container_extension": self.container_extension,
            "plot": self.plot,
            "duration": self.duration,
        }

    def __repr__(self):
        return f"<Episode S{self.season_num}E{self.episode_num} ({self.series_id})>"


# ============================================================================
# Settings
# ============================================================================


class Settings(db.Model):  # type: ignore[name-defined]
    """
    User preferences.

    Stores refresh thresholds and source priority orders. Values are strings;
    source orders are JSON arrays of source ids.
    """

    __tablename__ = "settings"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Default configuration values
    DEFAULTS = {
        "epg_refresh_hours": ("6", "Hours before channels/EPG are refreshed automatically. 0 = manual only."),
        "vod_refresh_hours": ("24", "Hours before VOD catalogs are refreshed automatically. 0 = manual only."),
        "live_source_order": ("[]", "Live TV source priority (JSON list of source ids). Empty = insertion order."),
        "vod_source_order": ("[]", "VOD source priority (JSON list of source ids). Empty = insertion order."),
    }

    @staticmethod
    def get(key, default=None):
        """Get a setting value by key, with fallback to defaults."""
        record = Settings.query.filter_by(key=key).first()
        if record:
            return record.value
        if default is not None:
            return default
        if key in Settings.DEFAULTS:
            return Settings.DEFAULTS[key][0]
        return None

    @staticmethod
    def get_int(key, default=None):
        """Integer setting; an explicit default wins over the built-in one."""
        value = Settings.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def set(key, value, description=None):
        """Set a setting value."""
        record = Settings.query.filter_by(key=key).first()
        if record:
            record.value = str(value)
            record.updated_at = datetime.utcnow()
            if description:
                record.description = description
        else:
            desc = description
            if not desc and key in Settings.DEFAULTS:
                desc = Settings.DEFAULTS[key][1]
            record = Settings(key=key, value=str(value), description=desc)
            db.session.add(record)
        db.session.commit()
        return record

    @staticmethod
    def get_all():
        """Get all settings as a dict, including defaults."""
        result = {}
        for key, (value, description) in Settings.DEFAULTS.items():
            result[key] = {"value": value, "description": description}
        for record in Settings.query.all():
            result[record.key] = {"value": record.value, "description": record.description}
        return result

    def __repr__(self):
        return f"<Settings {self.key}={self.value}>"
