"""
Source management and sync trigger routes
"""
import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from error_handling import ResourceNotFoundError, error_response, handle_db_error, handle_errors
from models import Source, db
from schemas import SourceCreateSchema, SourceUpdateSchema, validate_request_data
from services.enrichment_service import EnrichmentService, matching_tracker
from services.sync_service import SYNC_IN_PROGRESS, SourceSyncService
from services.xtream_client import XtreamClient

logger = logging.getLogger(__name__)

# Create blueprint
sources_bp = Blueprint("sources", __name__)


def _get_source_or_404(source_id):
    source = db.session.get(Source, source_id)
    if not source:
        raise ResourceNotFoundError(f"Source {source_id} not found")
    return source


def _sync_response(result):
    """Map a sync result dict to an HTTP status"""
    if result.get("success"):
        return jsonify(result)
    if result.get("error") == "Source not found":
        return jsonify(result), 404
    if result.get("error") == SYNC_IN_PROGRESS:
        return jsonify(result), 409
    return jsonify(result), 502


# ============================================================================
# API Routes - Source CRUD
# ============================================================================


@sources_bp.route("/api/sources", methods=["GET"])
@handle_errors(default_message="Error fetching sources")
def get_sources():
    """Get all sources with their sync status"""
    return jsonify(SourceSyncService.get_sync_status())


@sources_bp.route("/api/sources", methods=["POST"])
@validate_request_data(SourceCreateSchema)
@handle_errors(default_message="Error creating source")
def create_source():
    """Create a new source"""
    data = request.validated_data

    source = Source(
        name=data["name"],
        source_type=data["source_type"],
        url=data["url"].strip(),
        username=data.get("username"),
        password=data.get("password"),
        user_agent=data.get("user_agent"),
        enabled=data.get("enabled", True),
        auto_load_epg=data.get("auto_load_epg"),
        epg_url=data.get("epg_url"),
    )
    try:
        db.session.add(source)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        message, status_code = handle_db_error(e, "source creation")
        return error_response(message, status_code)

    logger.info(f"Created source {source.name} ({source.id})")
    return jsonify(source.to_dict()), 201


@sources_bp.route("/api/sources/<source_id>", methods=["GET"])
@handle_errors(default_message="Error fetching source")
def get_source(source_id):
    """Get a single source with its sync status"""
    _get_source_or_404(source_id)
    return jsonify(SourceSyncService.get_source_status(source_id))


@sources_bp.route("/api/sources/<source_id>", methods=["PUT"])
@validate_request_data(SourceUpdateSchema)
@handle_errors(default_message="Error updating source")
def update_source(source_id):
    """Update a source"""
    source = _get_source_or_404(source_id)
    data = request.validated_data

    for field, value in data.items():
        setattr(source, field, value)

    if source.is_xtream and not (source.username and source.password):
        db.session.rollback()
        return jsonify({"error": "Validation failed", "validation_errors": {"username": ["Required."]}}), 400

    db.session.commit()
    return jsonify(source.to_dict())


@sources_bp.route("/api/sources/<source_id>", methods=["DELETE"])
@handle_errors(default_message="Error deleting source")
def delete_source(source_id):
    """Delete a source and all of its data"""
    _get_source_or_404(source_id)
    return jsonify(SourceSyncService.delete_source(source_id))


@sources_bp.route("/api/sources/<source_id>/test", methods=["POST"])
@handle_errors(default_message="Error testing source")
def test_source(source_id):
    """Check Xtream credentials against the provider"""
    source = _get_source_or_404(source_id)
    if not source.is_xtream:
        raise ValueError("Connection test is only available for xtream sources")
    result = XtreamClient.for_source(source).test_connection()
    return jsonify({"success": result["success"], "error": result.get("error")})


# ============================================================================
# API Routes - Sync
# ============================================================================


@sources_bp.route("/api/sources/<source_id>/sync", methods=["POST"])
@handle_errors(default_message="Error syncing source")
def sync_source(source_id):
    """Sync live channels, categories and EPG for a source"""
    return _sync_response(SourceSyncService.sync_source(source_id))


@sources_bp.route("/api/sources/<source_id>/sync/vod", methods=["POST"])
@handle_errors(default_message="Error syncing VOD")
def sync_source_vod(source_id):
    """Sync movies and series for an Xtream source"""
    return _sync_response(SourceSyncService.sync_vod_for_source(source_id))


@sources_bp.route("/api/sources/<source_id>/series/<series_id>/episodes/sync", methods=["POST"])
@handle_errors(default_message="Error syncing episodes")
def sync_series_episodes(source_id, series_id):
    """Fetch episodes for one series"""
    result = SourceSyncService.sync_series_episodes(source_id, series_id)
    if not result.get("success") and result.get("error") == "Series not found":
        return jsonify(result), 404
    return _sync_response(result)


@sources_bp.route("/api/sources/<source_id>/matching/reset", methods=["POST"])
@handle_errors(default_message="Error resetting matching")
def reset_matching(source_id):
    """Clear catalog matches so the next VOD sync re-matches everything"""
    _get_source_or_404(source_id)
    return jsonify(EnrichmentService.reset_matching(source_id))


@sources_bp.route("/api/sync/all", methods=["POST"])
@handle_errors(default_message="Error syncing all sources")
def sync_all_sources():
    """Sync live channels for every enabled source"""
    return jsonify(SourceSyncService.sync_all_enabled())


@sources_bp.route("/api/sync/vod/all", methods=["POST"])
@handle_errors(default_message="Error syncing all VOD")
def sync_all_vod():
    """Sync VOD for every enabled Xtream source"""
    return jsonify(SourceSyncService.sync_all_vod())


@sources_bp.route("/api/sync/status", methods=["GET"])
@handle_errors(default_message="Error fetching sync status")
def get_sync_status():
    """Per-source sync status"""
    return jsonify({"sources": SourceSyncService.get_sync_status(), "matching": matching_tracker.is_active})
