"""
Pytest configuration and shared fixtures for test suite

Provides Flask app, database, and client fixtures for testing, plus small
factories for sources and provider payloads.
"""
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add parent directory to path so we can import app modules
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test configuration BEFORE importing app
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SCHEDULER_ENABLED'] = 'false'
os.environ['ENRICH_ASYNC'] = 'false'

# Import app and models AFTER setting environment
import app as app_module
from models import Source
from models import db as _db
from services.deletion_guard import deletion_guard
from services.enrichment_service import export_cache, matching_tracker


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app configured for testing

    Uses in-memory SQLite database that's reset between tests.
    """
    # Get the Flask app instance
    flask_app = app_module.app

    # Configure for testing
    flask_app.config['TESTING'] = True
    flask_app.config['ENRICH_ASYNC'] = False

    # Create all tables
    with flask_app.app_context():
        _db.create_all()
        yield flask_app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """
    Flask test client for making HTTP requests

    Use client.get(), client.post(), etc. to test routes.
    """
    return app.test_client()


@pytest.fixture(scope='function')
def db(app):
    """
    Database fixture

    Provides access to db.session for direct database operations.
    """
    yield _db


@pytest.fixture(autouse=True)
def reset_process_state():
    """Process-wide guard, cache and tracker must not leak between tests"""
    deletion_guard.clear()
    export_cache.clear()
    yield
    deletion_guard.clear()
    export_cache.clear()
    while matching_tracker.is_active:
        matching_tracker.end()


@pytest.fixture
def make_source(db):
    """Factory creating sources with increasing created_at, so insertion order is stable"""
    counter = {'n': 0}

    def _make(name=None, source_type='xtream', **kwargs):
        counter['n'] += 1
        n = counter['n']
        defaults = {
            'id': kwargs.pop('id', f'src{n}'),
            'name': name or f'Source {n}',
            'source_type': source_type,
            'url': 'http://provider.example:8080' if source_type == 'xtream' else 'http://lists.example/list.m3u',
            'username': 'user' if source_type == 'xtream' else None,
            'password': 'pass' if source_type == 'xtream' else None,
            'enabled': True,
            'created_at': datetime(2024, 1, 1) + timedelta(minutes=n),
        }
        defaults.update(kwargs)
        source = Source(**defaults)
        db.session.add(source)
        db.session.commit()
        return source

    return _make
