"""
Tests for VOD sync - movies, series, episodes and enrichment preservation
"""

from datetime import datetime
from unittest.mock import Mock, patch

import pytest

from error_handling import ProviderFetchError
from models import Episode, Movie, Series, SourceMeta, VodCategory
from services.sync_service import SourceSyncService


def movie(source_id, n, **overrides):
    data = {
        "stream_id": f"{source_id}_{n}",
        "name": f"Movie {n} (2020)",
        "title": None,
        "year": None,
        "stream_icon": None,
        "category_ids": [f"{source_id}_10"],
        "direct_url": f"http://provider.example:8080/movie/user/pass/{n}.mp4",
        "container_extension": "mp4",
        "source_id": source_id,
        "plot": None,
        "cast": None,
        "director": None,
        "genre": None,
        "release_date": None,
        "rating": None,
        "duration": None,
    }
    data.update(overrides)
    return data


def series(source_id, n, **overrides):
    data = {
        "series_id": f"{source_id}_s{n}",
        "name": f"Show {n}",
        "title": None,
        "year": None,
        "cover": None,
        "category_ids": [],
        "source_id": source_id,
        "plot": None,
        "cast": None,
        "director": None,
        "genre": None,
        "release_date": None,
        "rating": None,
    }
    data.update(overrides)
    return data


def episode(source_id, series_id, season, number):
    return {
        "id": f"{series_id}_e{season}{number}",
        "series_id": series_id,
        "source_id": source_id,
        "season_num": season,
        "episode_num": number,
        "title": f"Episode {number}",
        "direct_url": f"http://provider.example:8080/series/user/pass/{season}{number}.mkv",
        "container_extension": "mkv",
        "plot": None,
        "duration": None,
    }


def vod_client(source_id, movies=(), shows=()):
    client = Mock()
    client.get_vod_categories.return_value = [
        {"category_id": f"{source_id}_10", "category_name": "Films", "source_id": source_id, "parent_id": None}
    ]
    client.get_vod_streams.return_value = list(movies)
    client.get_series_categories.return_value = [
        {"category_id": f"{source_id}_20", "category_name": "Shows", "source_id": source_id, "parent_id": None}
    ]
    client.get_series.return_value = list(shows)
    return client


@pytest.fixture
def xtream(app):
    with patch("services.sync_service.XtreamClient") as client_cls:
        yield client_cls


@pytest.fixture
def matching(app):
    with patch("services.sync_service.start_background_matching") as mock_start:
        yield mock_start


class TestSyncVod:
    def test_first_sync_writes_movies_series_and_categories(self, db, make_source, xtream, matching):
        source = make_source()
        xtream.for_source.return_value = vod_client(
            source.id, movies=[movie(source.id, 1), movie(source.id, 2)], shows=[series(source.id, 1)]
        )

        result = SourceSyncService.sync_vod_for_source(source.id)

        assert result["success"] is True
        assert result["movies"]["added"] == 2
        assert result["series"]["added"] == 1
        assert Movie.query.count() == 2
        assert Series.query.count() == 1
        assert {c.type for c in VodCategory.query.all()} == {"movie", "series"}
        meta = db.session.get(SourceMeta, source.id)
        assert meta.vod_movie_count == 2
        assert meta.vod_series_count == 1
        assert meta.vod_last_synced is not None
        assert meta.vod_error is None
        matching.assert_called_once()
        assert matching.call_args.args[1] == source.id

    def test_resync_preserves_enrichment_and_carries_metadata(self, db, make_source, xtream, matching):
        source = make_source()
        xtream.for_source.return_value = vod_client(
            source.id, movies=[movie(source.id, 1, plot="A heist.", rating="7.5")]
        )
        SourceSyncService.sync_vod_for_source(source.id)

        row = db.session.get(Movie, f"{source.id}_1")
        row.catalog_id = 603
        row.catalog_popularity = 64.2
        row.match_attempted = datetime(2024, 1, 1)
        db.session.commit()

        xtream.for_source.return_value = vod_client(
            source.id, movies=[movie(source.id, 1, name="Movie 1 Renamed", plot=None, rating="")]
        )
        result = SourceSyncService.sync_vod_for_source(source.id)

        assert result["movies"]["updated"] == 1
        row = db.session.get(Movie, f"{source.id}_1")
        assert row.name == "Movie 1 Renamed"
        assert row.catalog_id == 603
        assert row.catalog_popularity == 64.2
        assert row.match_attempted == datetime(2024, 1, 1)
        assert row.plot == "A heist."
        assert row.rating == "7.5"

    def test_removed_series_cascades_episodes(self, db, make_source, xtream, matching):
        source = make_source()
        xtream.for_source.return_value = vod_client(
            source.id, movies=[movie(source.id, 1)], shows=[series(source.id, 1), series(source.id, 2)]
        )
        SourceSyncService.sync_vod_for_source(source.id)
        db.session.add_all(
            [
                Episode(**episode(source.id, f"{source.id}_s1", 1, 1)),
                Episode(**episode(source.id, f"{source.id}_s2", 1, 1)),
            ]
        )
        db.session.commit()

        xtream.for_source.return_value = vod_client(
            source.id, movies=[movie(source.id, 1)], shows=[series(source.id, 2)]
        )
        result = SourceSyncService.sync_vod_for_source(source.id)

        assert result["series"]["removed"] == 1
        assert [s.series_id for s in Series.query.all()] == [f"{source.id}_s2"]
        assert [e.series_id for e in Episode.query.all()] == [f"{source.id}_s2"]

    def test_partial_failure_keeps_timestamp_and_records_error(self, db, make_source, xtream, matching):
        source = make_source()
        client = vod_client(source.id, movies=[movie(source.id, 1)])
        client.get_series.side_effect = ProviderFetchError("get_series failed: timeout")
        xtream.for_source.return_value = client

        result = SourceSyncService.sync_vod_for_source(source.id)

        assert result["success"] is False
        assert result["movies"]["written"] is True
        assert result["series"]["written"] is False
        meta = db.session.get(SourceMeta, source.id)
        assert meta.vod_movie_count == 1
        assert meta.vod_last_synced is None
        assert meta.vod_error == "series: get_series failed: timeout"
        matching.assert_called_once()

    def test_empty_part_keeps_existing_rows(self, db, make_source, xtream, matching):
        source = make_source()
        xtream.for_source.return_value = vod_client(
            source.id, movies=[movie(source.id, 1)], shows=[series(source.id, 1)]
        )
        SourceSyncService.sync_vod_for_source(source.id)
        matching.reset_mock()

        xtream.for_source.return_value = vod_client(source.id, movies=[], shows=[])
        result = SourceSyncService.sync_vod_for_source(source.id)

        assert result["movies"]["skipped"] is True
        assert result["series"]["skipped"] is True
        assert Movie.query.count() == 1
        assert Series.query.count() == 1
        matching.assert_not_called()

    def test_source_marked_deleted_during_fetch(self, db, make_source, xtream, matching):
        source = make_source()
        source_id = source.id
        client = vod_client(source_id, shows=[series(source_id, 1)])

        def delete_mid_fetch(*args, **kwargs):
            SourceSyncService.mark_source_deleted(source_id)
            return [movie(source_id, 1)]

        client.get_vod_streams.side_effect = delete_mid_fetch
        xtream.for_source.return_value = client

        result = SourceSyncService.sync_vod_for_source(source_id)

        assert result == {"success": False, "source_id": source_id, "error": "Source was deleted during sync"}
        for model in (Movie, Series, VodCategory, SourceMeta):
            assert model.query.count() == 0
        matching.assert_not_called()

    def test_source_deleted_between_movies_and_series(self, db, make_source, xtream, matching):
        source = make_source()
        source_id = source.id
        client = vod_client(source_id, movies=[movie(source_id, 1)])

        def delete_mid_fetch(*args, **kwargs):
            SourceSyncService.delete_source(source_id)
            return [series(source_id, 1)]

        client.get_series.side_effect = delete_mid_fetch
        xtream.for_source.return_value = client

        result = SourceSyncService.sync_vod_for_source(source_id)

        assert result["error"] == "Source was deleted during sync"
        for model in (Movie, Series, VodCategory, SourceMeta):
            assert model.query.count() == 0
        matching.assert_not_called()

    def test_m3u_source_rejected(self, make_source, xtream, matching):
        source = make_source(source_type="m3u")

        result = SourceSyncService.sync_vod_for_source(source.id)

        assert result["success"] is False
        xtream.for_source.assert_not_called()

    def test_sync_all_vod_only_xtream(self, make_source, xtream, matching):
        first = make_source()
        make_source(source_type="m3u")
        xtream.for_source.side_effect = lambda source, **kwargs: vod_client(source.id, movies=[movie(source.id, 1)])

        result = SourceSyncService.sync_all_vod()

        assert [r["source_id"] for r in result["results"]] == [first.id]


class TestSyncSeriesEpisodes:
    def test_replaces_episodes(self, db, make_source, xtream):
        source = make_source()
        series_id = f"{source.id}_s1"
        db.session.add(Series(**series(source.id, 1)))
        db.session.add(Episode(**episode(source.id, series_id, 9, 9)))
        db.session.commit()
        client = Mock()
        client.get_series_info.return_value = [
            episode(source.id, series_id, 1, 1),
            episode(source.id, series_id, 1, 2),
        ]
        xtream.for_source.return_value = client

        result = SourceSyncService.sync_series_episodes(source.id, series_id)

        assert result["success"] is True
        assert result["episodes"] == 2
        assert sorted(e.episode_num for e in Episode.query.all()) == [1, 2]
        client.get_series_info.assert_called_once_with(series_id)

    def test_empty_response_keeps_episodes(self, db, make_source, xtream):
        source = make_source()
        series_id = f"{source.id}_s1"
        db.session.add(Series(**series(source.id, 1)))
        db.session.add(Episode(**episode(source.id, series_id, 1, 1)))
        db.session.commit()
        xtream.for_source.return_value.get_series_info.return_value = []

        result = SourceSyncService.sync_series_episodes(source.id, series_id)

        assert result["skipped"] is True
        assert Episode.query.count() == 1

    def test_source_marked_deleted_during_fetch(self, db, make_source, xtream):
        source = make_source()
        source_id = source.id
        series_id = f"{source_id}_s1"
        db.session.add(Series(**series(source_id, 1)))
        db.session.commit()

        def delete_mid_fetch(*args, **kwargs):
            SourceSyncService.mark_source_deleted(source_id)
            return [episode(source_id, series_id, 1, 1)]

        xtream.for_source.return_value.get_series_info.side_effect = delete_mid_fetch

        result = SourceSyncService.sync_series_episodes(source_id, series_id)

        assert result["success"] is False
        assert result["error"] == "Source was deleted during sync"
        assert Episode.query.count() == 0

    def test_source_removed_during_fetch_after_guard_expires(self, db, make_source, xtream, app, monkeypatch):
        monkeypatch.setitem(app.config, "DELETION_GUARD_SECONDS", 0)
        source = make_source()
        source_id = source.id
        series_id = f"{source_id}_s1"
        db.session.add(Series(**series(source_id, 1)))
        db.session.add(Episode(**episode(source_id, series_id, 1, 1)))
        db.session.commit()

        def delete_mid_fetch(*args, **kwargs):
            SourceSyncService.delete_source(source_id)
            return [episode(source_id, series_id, 1, 1), episode(source_id, series_id, 1, 2)]

        xtream.for_source.return_value.get_series_info.side_effect = delete_mid_fetch

        result = SourceSyncService.sync_series_episodes(source_id, series_id)

        assert result["error"] == "Source was deleted during sync"
        assert Episode.query.count() == 0
        assert Series.query.count() == 0

    def test_series_of_another_source(self, db, make_source, xtream):
        source = make_source()
        other = make_source()
        db.session.add(Series(**series(other.id, 1)))
        db.session.commit()

        result = SourceSyncService.sync_series_episodes(source.id, f"{other.id}_s1")

        assert result == {"success": False, "error": "Series not found"}
