"""
Marshmallow schemas for input validation

Validates source, settings and priority payloads before they reach the
database or the sync services.
"""
from functools import wraps

from flask import jsonify, request
from marshmallow import EXCLUDE, Schema, ValidationError, fields, validate, validates, validates_schema

SOURCE_TYPES = ("xtream", "m3u")
STREAM_URL_PREFIXES = ("http://", "https://")
MAX_REFRESH_HOURS = 24 * 30


def _check_epg_urls(value):
    """Comma-separated list of http(s) URLs"""
    if not value:
        return
    for url in value.split(","):
        url = url.strip()
        if url and not url.startswith(STREAM_URL_PREFIXES):
            raise ValidationError(f"Invalid EPG URL: {url}")


# ============================================================================
# Source Schemas
# ============================================================================


class SourceCreateSchema(Schema):
    """Schema for creating a new source"""

    name = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    source_type = fields.Str(required=True, validate=validate.OneOf(SOURCE_TYPES))
    url = fields.Str(required=True, validate=validate.Length(min=1, max=500))
    username = fields.Str(validate=validate.Length(max=100), allow_none=True)
    password = fields.Str(validate=validate.Length(max=100), allow_none=True)
    user_agent = fields.Str(validate=validate.Length(max=255), allow_none=True)
    enabled = fields.Bool(load_default=True)
    auto_load_epg = fields.Bool(allow_none=True)
    epg_url = fields.Str(validate=validate.Length(max=2000), allow_none=True)

    @validates("epg_url")
    def validate_epg_url(self, value, **kwargs):
        _check_epg_urls(value)

    @validates_schema
    def validate_source(self, data, **kwargs):
        """Xtream needs credentials, a playlist needs a full URL"""
        if data.get("source_type") == "xtream":
            missing = [f for f in ("username", "password") if not data.get(f)]
            if missing:
                raise ValidationError({f: ["Required for xtream sources."] for f in missing})
        elif data.get("source_type") == "m3u":
            if not data.get("url", "").startswith(STREAM_URL_PREFIXES):
                raise ValidationError({"url": ["Playlist URL must start with http:// or https://"]})


class SourceUpdateSchema(Schema):
    """Schema for updating a source; source_type cannot change"""

    class Meta:
        unknown = EXCLUDE

    name = fields.Str(validate=validate.Length(min=1, max=100))
    url = fields.Str(validate=validate.Length(min=1, max=500))
    username = fields.Str(validate=validate.Length(max=100), allow_none=True)
    password = fields.Str(validate=validate.Length(max=100), allow_none=True)
    user_agent = fields.Str(validate=validate.Length(max=255), allow_none=True)
    enabled = fields.Bool()
    auto_load_epg = fields.Bool(allow_none=True)
    epg_url = fields.Str(validate=validate.Length(max=2000), allow_none=True)

    @validates("epg_url")
    def validate_epg_url(self, value, **kwargs):
        _check_epg_urls(value)


# ============================================================================
# Settings Schemas
# ============================================================================


class SettingsUpdateSchema(Schema):
    """Refresh thresholds in hours; 0 disables automatic refresh"""

    epg_refresh_hours = fields.Int(validate=validate.Range(min=0, max=MAX_REFRESH_HOURS))
    vod_refresh_hours = fields.Int(validate=validate.Range(min=0, max=MAX_REFRESH_HOURS))

    @validates_schema
    def validate_not_empty(self, data, **kwargs):
        if not data:
            raise ValidationError("At least one setting is required")


class SourceOrderSchema(Schema):
    """Priority order of source ids, highest first"""

    source_ids = fields.List(fields.Str(validate=validate.Length(min=1, max=36)), required=True)


# ============================================================================
# Validation Helper
# ============================================================================


def validate_request_data(schema_class):
    """
    Decorator to validate request data using a Marshmallow schema

    Usage:
        @sources_bp.route('/api/sources', methods=['POST'])
        @validate_request_data(SourceCreateSchema)
        def create_source():
            data = request.validated_data  # Access validated data
            # ... rest of handler

    Returns 400 Bad Request with validation errors if data is invalid.
    """

    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            try:
                schema = schema_class()
                validated_data = schema.load(request.get_json(silent=True) or {})
                request.validated_data = validated_data
                return f(*args, **kwargs)
            except ValidationError as err:
                return jsonify({"error": "Validation failed", "validation_errors": err.messages}), 400

        return wrapper

    return decorator
