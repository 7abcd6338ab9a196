"""
Settings, source priority and scheduler routes
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from error_handling import ServiceUnavailableError, handle_errors
from models import Settings
from schemas import SettingsUpdateSchema, SourceOrderSchema, validate_request_data
from services.preference_service import SOURCE_KINDS, PreferenceService
from services.staleness import get_refresh_thresholds

logger = logging.getLogger(__name__)

# Create blueprint
api_bp = Blueprint("api", __name__)

# Store scheduler reference (set by app.py)
_scheduler = None


def set_scheduler(scheduler):
    """Set the scheduler instance for use in API routes"""
    global _scheduler
    _scheduler = scheduler


def _check_kind(kind):
    if kind not in SOURCE_KINDS:
        raise ValueError(f"kind must be one of {', '.join(SOURCE_KINDS)}")


# ============================================================================
# API Routes - Settings
# ============================================================================


@api_bp.route("/api/settings", methods=["GET"])
@handle_errors(default_message="Error fetching settings")
def get_settings():
    """Get all settings, with effective refresh thresholds"""
    epg_hours, vod_hours = get_refresh_thresholds(current_app.config)
    return jsonify(
        {
            "settings": Settings.get_all(),
            "epg_refresh_hours": epg_hours,
            "vod_refresh_hours": vod_hours,
        }
    )


@api_bp.route("/api/settings", methods=["PUT"])
@validate_request_data(SettingsUpdateSchema)
@handle_errors(default_message="Error updating settings")
def update_settings():
    """Update refresh thresholds"""
    data = request.validated_data
    for key, value in data.items():
        Settings.set(key, value)
        logger.info(f"Setting {key} updated to {value}")

    epg_hours, vod_hours = get_refresh_thresholds(current_app.config)
    return jsonify({"success": True, "epg_refresh_hours": epg_hours, "vod_refresh_hours": vod_hours})


# ============================================================================
# API Routes - Source priority
# ============================================================================


@api_bp.route("/api/priority/<kind>", methods=["GET"])
@handle_errors(default_message="Error fetching source priority")
def get_priority(kind):
    """Effective source order for live or vod"""
    _check_kind(kind)
    return jsonify({"kind": kind, "source_ids": PreferenceService.get_source_order(kind)})


@api_bp.route("/api/priority/<kind>", methods=["PUT"])
@validate_request_data(SourceOrderSchema)
@handle_errors(default_message="Error updating source priority")
def set_priority(kind):
    """Persist a source order for live or vod"""
    _check_kind(kind)
    order = PreferenceService.set_source_order(kind, request.validated_data["source_ids"])
    return jsonify({"kind": kind, "source_ids": order})


# ============================================================================
# API Routes - Scheduler
# ============================================================================


@api_bp.route("/api/scheduler/status", methods=["GET"])
@handle_errors(default_message="Error fetching scheduler status")
def get_scheduler_status():
    """Get scheduler status and per-source staleness"""
    if _scheduler is None:
        raise ServiceUnavailableError("Scheduler not initialized")
    return jsonify(_scheduler.get_status())
