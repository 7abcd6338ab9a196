"""
Tests for source management and sync trigger routes
"""
from unittest.mock import Mock, patch

from models import Channel, Movie, Source, SourceMeta
from services.sync_service import get_source_lock


class TestSourceCrud:
    def test_create_xtream_source(self, client, db):
        """Test creating a source returns it with a generated id"""
        response = client.post(
            "/api/sources",
            json={
                "name": "Provider",
                "source_type": "xtream",
                "url": " http://provider.example:8080 ",
                "username": "user",
                "password": "pass",
            },
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data["id"]
        assert data["url"] == "http://provider.example:8080"
        assert "password" not in data
        assert db.session.get(Source, data["id"]).username == "user"

    def test_create_invalid_source(self, client):
        """Test validation errors are returned as 400"""
        response = client.post("/api/sources", json={"name": "Provider", "source_type": "xtream", "url": "http://x"})

        assert response.status_code == 400
        assert "username" in response.get_json()["validation_errors"]

    def test_list_sources_with_status(self, client, make_source):
        first = make_source()
        second = make_source(source_type="m3u")

        response = client.get("/api/sources")

        assert response.status_code == 200
        assert [s["source"]["id"] for s in response.get_json()] == [first.id, second.id]

    def test_get_unknown_source(self, client, app):
        response = client.get("/api/sources/missing")

        assert response.status_code == 404
        assert response.get_json()["success"] is False

    def test_update_source(self, client, make_source):
        source = make_source()

        response = client.put(f"/api/sources/{source.id}", json={"name": "Renamed", "enabled": False})

        assert response.status_code == 200
        assert response.get_json()["name"] == "Renamed"
        assert response.get_json()["enabled"] is False

    def test_update_cannot_clear_xtream_credentials(self, client, make_source):
        source = make_source()

        response = client.put(f"/api/sources/{source.id}", json={"password": None})

        assert response.status_code == 400

    def test_delete_source_cascades(self, client, db, make_source):
        source = make_source()
        db.session.add(Channel(stream_id=f"{source.id}_1", name="News", direct_url="http://x/1", source_id=source.id))
        db.session.add(SourceMeta(source_id=source.id, channel_count=1))
        db.session.commit()

        response = client.delete(f"/api/sources/{source.id}")

        assert response.status_code == 200
        assert response.get_json()["deleted"]["channels"] == 1
        assert Source.query.count() == 0
        assert Channel.query.count() == 0


class TestConnectionTest:
    def test_xtream_connection(self, client, make_source):
        source = make_source()

        with patch("routes.sources.XtreamClient") as client_cls:
            client_cls.for_source.return_value.test_connection.return_value = {"success": True, "info": {}}
            response = client.post(f"/api/sources/{source.id}/test")

        assert response.get_json() == {"success": True, "error": None}

    def test_playlist_connection_rejected(self, client, make_source):
        source = make_source(source_type="m3u")

        response = client.post(f"/api/sources/{source.id}/test")

        assert response.status_code == 400


class TestSyncRoutes:
    def test_sync_source(self, client, make_source):
        source = make_source()

        with patch("routes.sources.SourceSyncService.sync_source") as sync:
            sync.return_value = {"success": True, "source_id": source.id, "channels": 3}
            response = client.post(f"/api/sources/{source.id}/sync")

        assert response.status_code == 200
        assert response.get_json()["channels"] == 3
        sync.assert_called_once_with(source.id)

    def test_sync_failure_is_bad_gateway(self, client, make_source):
        source = make_source()

        with patch("routes.sources.SourceSyncService.sync_source") as sync:
            sync.return_value = {"success": False, "source_id": source.id, "error": "timeout"}
            response = client.post(f"/api/sources/{source.id}/sync")

        assert response.status_code == 502

    def test_sync_in_progress_is_conflict(self, client, make_source):
        source = make_source()
        lock = get_source_lock(source.id)
        lock.acquire()
        try:
            response = client.post(f"/api/sources/{source.id}/sync/vod")
        finally:
            lock.release()

        assert response.status_code == 409

    def test_sync_unknown_source(self, client, app):
        assert client.post("/api/sources/missing/sync").status_code == 404

    def test_episode_sync_unknown_series(self, client, make_source):
        source = make_source()

        response = client.post(f"/api/sources/{source.id}/series/{source.id}_s1/episodes/sync")

        assert response.status_code == 404

    def test_sync_all(self, client, app):
        with patch("routes.sources.SourceSyncService.sync_all_enabled") as sync_all:
            sync_all.return_value = {"success": True, "results": []}
            response = client.post("/api/sync/all")

        assert response.get_json() == {"success": True, "results": []}

    def test_sync_status_reports_matching(self, client, make_source):
        make_source()

        with patch("routes.sources.matching_tracker", Mock(is_active=True)):
            response = client.get("/api/sync/status")

        data = response.get_json()
        assert data["matching"] is True
        assert len(data["sources"]) == 1

    def test_reset_matching(self, client, db, make_source):
        source = make_source()
        db.session.add(
            Movie(stream_id=f"{source.id}_1", name="M", direct_url="http://x/1", source_id=source.id, catalog_id=5)
        )
        db.session.commit()

        response = client.post(f"/api/sources/{source.id}/matching/reset")

        assert response.get_json()["movies_reset"] == 1
        assert db.session.get(Movie, f"{source.id}_1").catalog_id is None
