#!/usr/bin/env python3
"""
IPTV Catalog Sync - keeps a local catalog of live TV, EPG and VOD from several
IPTV providers, deduplicated across sources and enriched with TMDB ids

Application entry point with blueprint registration:
  - routes/sources.py - Source management and sync triggers
  - routes/library.py - Channels, programmes, movies, series
  - routes/api.py - Settings, source priority, scheduler status
"""

import logging
import os

from flask import Flask
from flask_cors import CORS

from error_handling import register_error_handlers
from models import db
from services.deletion_guard import deletion_guard
from services.enrichment_service import export_cache
from services.scheduler import SyncScheduler


def _env_bool(name, default):
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


# Initialize Flask app
app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL", "sqlite:////app/data/iptv_catalog.db")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
app.config["DEBUG"] = _env_bool("DEBUG", False)

# Sync and enrichment tuning
app.config["SCHEDULER_ENABLED"] = _env_bool("SCHEDULER_ENABLED", True)
app.config["SCHEDULER_CHECK_SECONDS"] = int(os.getenv("SCHEDULER_CHECK_SECONDS", "60"))
app.config["SYNC_WORKERS"] = int(os.getenv("SYNC_WORKERS", "4"))
app.config["EPG_REFRESH_HOURS"] = int(os.getenv("EPG_REFRESH_HOURS", "6"))
app.config["VOD_REFRESH_HOURS"] = int(os.getenv("VOD_REFRESH_HOURS", "24"))
app.config["DELETION_GUARD_SECONDS"] = int(os.getenv("DELETION_GUARD_SECONDS", "30"))
app.config["CATALOG_CACHE_TTL_HOURS"] = int(os.getenv("CATALOG_CACHE_TTL_HOURS", "24"))
app.config["CATALOG_MOVIE_EXPORT_URL"] = os.getenv("CATALOG_MOVIE_EXPORT_URL")
app.config["CATALOG_TV_EXPORT_URL"] = os.getenv("CATALOG_TV_EXPORT_URL")
app.config["ENRICH_ASYNC"] = _env_bool("ENRICH_ASYNC", True)
app.config["PROVIDER_TIMEOUT"] = int(os.getenv("PROVIDER_TIMEOUT", "30"))
app.config["EPG_TIMEOUT"] = int(os.getenv("EPG_TIMEOUT", "120"))

# SQLite configuration for better concurrency with background sync workers
# - timeout: Wait up to 30 seconds for locks (default is 5)
# - check_same_thread: Allow use across threads (required for scheduler)
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
    "connect_args": {
        "timeout": 30,
        "check_same_thread": False,
    },
    "pool_pre_ping": True,  # Verify connections before use
}

# Initialize extensions
CORS(app)
db.init_app(app)

deletion_guard.window_seconds = app.config["DELETION_GUARD_SECONDS"]
export_cache.ttl_hours = app.config["CATALOG_CACHE_TTL_HOURS"]

# Register error handlers
register_error_handlers(app)

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ============================================================================
# Register Blueprints
# ============================================================================

from routes.api import api_bp, set_scheduler  # noqa: E402
from routes.library import library_bp  # noqa: E402
from routes.sources import sources_bp  # noqa: E402

app.register_blueprint(sources_bp)
app.register_blueprint(library_bp)
app.register_blueprint(api_bp)

sync_scheduler = SyncScheduler(app)
set_scheduler(sync_scheduler)

# Start scheduler by default (works with both direct run and gunicorn)
if app.config["SCHEDULER_ENABLED"]:
    sync_scheduler.start()


# ============================================================================
# CLI Commands
# ============================================================================


@app.cli.command()
def init_db():
    """Initialize the database"""
    db.create_all()
    print("Database initialized!")


@app.cli.command()
def sync_all():
    """Sync live channels and VOD for every enabled source"""
    from services.sync_service import SourceSyncService

    live = SourceSyncService.sync_all_enabled()
    vod = SourceSyncService.sync_all_vod()
    print(f"Live: {len(live['results'])} source(s), VOD: {len(vod['results'])} source(s)")


# ============================================================================
# Application Entry Point
# ============================================================================


if __name__ == "__main__":
    with app.app_context():
        db.create_all()

    port = int(os.getenv("PORT", 8000))

    logger.info(f"Starting IPTV Catalog Sync on port {port}")

    try:
        app.run(host="0.0.0.0", port=port, debug=app.config["DEBUG"])
    finally:
        # Stop scheduler on shutdown
        sync_scheduler.stop()
