"""
Library routes - read access to the synced catalog

Live channels come back ordered by live source priority; movies and series
are deduplicated across sources by catalog id unless ?dedupe=false.
"""
import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request

from error_handling import ResourceNotFoundError, ValidationError, handle_errors
from models import Category, Channel, Episode, Movie, Program, Series, Source, VodCategory, db
from services.preference_service import PreferenceService, dedupe_movies, dedupe_series
from services.sync_service import SourceSyncService

logger = logging.getLogger(__name__)

library_bp = Blueprint("library", __name__)

DEFAULT_PROGRAM_WINDOW_LIMIT = 2000


def _enabled_source_ids():
    return [s.id for s in Source.query.filter_by(enabled=True).all()]


def _bool_arg(name, default=True):
    value = request.args.get(name)
    if value is None:
        return default
    return value.lower() not in ("0", "false", "no")


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _datetime_arg(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO 8601 datetime")
    # Stored times are naive UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _fetch_missing_episodes(copies):
    """Fetch episodes for every copy of a series that has none stored yet"""
    for series in copies:
        if Episode.query.filter_by(series_id=series.series_id).count():
            continue
        result = SourceSyncService.sync_series_episodes(series.source_id, series.series_id)
        if not result.get("success"):
            logger.warning(f"Could not fetch episodes for series {series.series_id}: {result.get('error')}")


def _paginate(items):
    offset = _int_arg("offset", 0)
    limit = _int_arg("limit")
    if limit is None:
        return items[offset:]
    return items[offset : offset + limit]


def _filter_vod(query, model):
    source_id = request.args.get("source_id")
    if source_id:
        query = query.filter(model.source_id == source_id)
    else:
        query = query.filter(model.source_id.in_(_enabled_source_ids()))

    search = request.args.get("search")
    if search:
        query = query.filter(model.name.ilike(f"%{search}%"))

    rows = query.order_by(model.name).all()
    category_id = request.args.get("category_id")
    if category_id:
        rows = [r for r in rows if category_id in (r.category_ids or [])]
    return rows


# ============================================================================
# API Routes - Live
# ============================================================================


@library_bp.route("/api/channels", methods=["GET"])
@handle_errors(default_message="Error fetching channels")
def get_channels():
    """Live channels across enabled sources, ordered by source priority"""
    query = Channel.query
    source_id = request.args.get("source_id")
    if source_id:
        query = query.filter(Channel.source_id == source_id)
    else:
        query = query.filter(Channel.source_id.in_(_enabled_source_ids()))

    search = request.args.get("search")
    if search:
        query = query.filter(Channel.name.ilike(f"%{search}%"))

    channels = query.order_by(Channel.channel_num, Channel.name).all()
    category_id = request.args.get("category_id")
    if category_id:
        channels = [c for c in channels if category_id in (c.category_ids or [])]

    channels = PreferenceService.order_channels(channels)
    return jsonify([c.to_dict() for c in _paginate(channels)])


@library_bp.route("/api/categories", methods=["GET"])
@handle_errors(default_message="Error fetching categories")
def get_categories():
    """Live categories, optionally for one source"""
    query = Category.query
    source_id = request.args.get("source_id")
    if source_id:
        query = query.filter(Category.source_id == source_id)
    else:
        query = query.filter(Category.source_id.in_(_enabled_source_ids()))
    return jsonify([c.to_dict() for c in query.order_by(Category.category_name).all()])


@library_bp.route("/api/programs", methods=["GET"])
@handle_errors(default_message="Error fetching programs")
def get_programs():
    """
    EPG programmes overlapping a time window

    Query params: stream_id or source_id (one required), start, end (ISO 8601)
    """
    stream_id = request.args.get("stream_id")
    source_id = request.args.get("source_id")
    if not stream_id and not source_id:
        raise ValidationError("stream_id or source_id is required")

    query = Program.query
    if stream_id:
        query = query.filter(Program.stream_id == stream_id)
    if source_id:
        query = query.filter(Program.source_id == source_id)

    start = _datetime_arg("start")
    end = _datetime_arg("end")
    if start:
        query = query.filter(Program.end > start)
    if end:
        query = query.filter(Program.start < end)

    limit = _int_arg("limit", DEFAULT_PROGRAM_WINDOW_LIMIT)
    programs = query.order_by(Program.stream_id, Program.start).limit(limit).all()
    return jsonify([p.to_dict() for p in programs])


# ============================================================================
# API Routes - VOD
# ============================================================================


@library_bp.route("/api/vod/categories", methods=["GET"])
@handle_errors(default_message="Error fetching VOD categories")
def get_vod_categories():
    """Movie and series categories; ?type=movie|series"""
    query = VodCategory.query
    vod_type = request.args.get("type")
    if vod_type:
        if vod_type not in ("movie", "series"):
            raise ValidationError("type must be 'movie' or 'series'")
        query = query.filter(VodCategory.type == vod_type)
    source_id = request.args.get("source_id")
    if source_id:
        query = query.filter(VodCategory.source_id == source_id)
    else:
        query = query.filter(VodCategory.source_id.in_(_enabled_source_ids()))
    return jsonify([c.to_dict() for c in query.order_by(VodCategory.name).all()])


@library_bp.route("/api/movies", methods=["GET"])
@handle_errors(default_message="Error fetching movies")
def get_movies():
    """Movies, one entry per title across sources unless ?dedupe=false"""
    movies = _filter_vod(Movie.query, Movie)
    if _bool_arg("dedupe"):
        result = dedupe_movies(movies, PreferenceService.get_source_order("vod"))
    else:
        result = [m.to_dict() for m in movies]
    return jsonify(_paginate(result))


@library_bp.route("/api/series", methods=["GET"])
@handle_errors(default_message="Error fetching series")
def get_series():
    """Series, one entry per title across sources unless ?dedupe=false"""
    series = _filter_vod(Series.query, Series)
    if _bool_arg("dedupe"):
        result = dedupe_series(series, PreferenceService.get_source_order("vod"))
    else:
        result = [s.to_dict() for s in series]
    return jsonify(_paginate(result))


@library_bp.route("/api/movies/<stream_id>/sources", methods=["GET"])
@handle_errors(default_message="Error fetching movie sources")
def get_movie_sources(stream_id):
    """Play URLs for a movie on every source carrying it, preferred first"""
    sources = PreferenceService.movie_play_sources(stream_id=stream_id)
    if not sources:
        raise ResourceNotFoundError(f"Movie {stream_id} not found")
    return jsonify(sources)


@library_bp.route("/api/series/<series_id>/episodes", methods=["GET"])
@handle_errors(default_message="Error fetching episodes")
def get_series_episodes(series_id):
    """Episodes merged across every copy of the series, fetching copies with none stored unless ?fetch=false"""
    related = PreferenceService.related_series(series_id)
    if not related:
        raise ResourceNotFoundError(f"Series {series_id} not found")

    if _bool_arg("fetch"):
        _fetch_missing_episodes(related)
    seasons = PreferenceService.merged_episodes(series_id)
    return jsonify(
        {
            "series_id": series_id,
            "related_series": [{"series_id": s.series_id, "source_id": s.source_id} for s in related],
            "seasons": {str(season): episodes for season, episodes in seasons.items()},
        }
    )


@library_bp.route("/api/series/<series_id>/episodes/<int:season>/<int:episode>/sources", methods=["GET"])
@handle_errors(default_message="Error fetching episode sources")
def get_episode_sources(series_id, season, episode):
    """Play URLs for one episode across every copy of the series, preferred first"""
    series = db.session.get(Series, series_id)
    if not series:
        raise ResourceNotFoundError(f"Series {series_id} not found")
    return jsonify(
        PreferenceService.episode_play_sources(series.catalog_id, season, episode, fallback_series_id=series_id)
    )
