"""
Tests for catalog enrichment - title normalization, export parsing and matching
"""

import gzip
import io
import json
from datetime import date
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from error_handling import ProviderFetchError, SourceDeletedError
from models import Movie, Series
from services.deletion_guard import deletion_guard
from services.enrichment_service import (
    CatalogEntry,
    CatalogExportCache,
    CatalogIndex,
    EnrichmentService,
    MatchingTracker,
    download_catalog,
    export_cache,
    export_url,
    extract_match_params,
    find_best_match,
    matching_tracker,
    normalize_title,
    parse_export_lines,
    start_background_matching,
)

EXPORT_LINES = [
    {"adult": False, "id": 603, "original_title": "The Matrix", "popularity": 64.2, "video": False},
    {"adult": False, "id": 9999, "original_title": "The Matrix", "popularity": 0.6, "video": False},
    {"adult": True, "id": 1, "original_title": "Something Else", "popularity": 99.0, "video": False},
    {"adult": False, "id": 27205, "original_title": "Inception", "popularity": 80.1, "video": False},
]


class FakeRaw(io.BytesIO):
    """Stands in for a streamed urllib3 response body"""


def export_payload(lines):
    return "\n".join(json.dumps(line) for line in lines).encode("utf-8")


def streamed_response(body):
    """requests.get(..., stream=True) result usable as a context manager"""
    response = MagicMock()
    response.__enter__.return_value = response
    response.raw = FakeRaw(body)
    return response


def sample_index():
    return CatalogIndex(
        [
            CatalogEntry(id=603, title="The Matrix", year=1999, popularity=64.2),
            CatalogEntry(id=604, title="The Matrix", year=2021, popularity=10.0),
            CatalogEntry(id=27205, title="Inception", year=None, popularity=80.1),
            CatalogEntry(id=2316, title="The Office", year=2005, popularity=120.0),
        ]
    )


class TestNormalizeTitle:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("4K-ES - Avengers Endgame (2019) 2160p", "avengers endgame"),
            ("EN - The Matrix", "the matrix"),
            ("The.Matrix.1999.1080p.BluRay", "the matrix"),
            ("The Office (2005) (US)", "the office"),
            ("Show [EN] (US)", "show"),
            ("Spider-Man: No Way Home", "spider man no way home"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_title(raw) == expected

    def test_year_only_title_kept(self):
        assert normalize_title("1917") == "1917"


class TestExtractMatchParams:
    def test_structured_title_and_year(self):
        assert extract_match_params({"name": "EN - Matrix", "title": "The Matrix", "year": "1999"}) == {
            "title": "The Matrix",
            "year": 1999,
        }

    def test_year_from_name(self):
        assert extract_match_params({"name": "The Matrix (1999)", "title": "The Matrix"}) == {
            "title": "The Matrix",
            "year": 1999,
        }

    def test_title_and_year_from_name(self):
        assert extract_match_params({"name": "Inception [2010] 4K"}) == {"title": "Inception", "year": 2010}

    def test_bare_name(self):
        assert extract_match_params({"name": "Inception"}) == {"title": "Inception", "year": None}

    def test_implausible_year_ignored(self):
        assert extract_match_params({"name": "Movie", "title": "Movie", "year": "0"})["year"] is None


class TestFindBestMatch:
    def test_exact_year_wins(self):
        assert find_best_match(sample_index(), "The Matrix", 2021).id == 604

    def test_most_popular_without_year(self):
        assert find_best_match(sample_index(), "The Matrix").id == 603

    def test_unknown_year_falls_back_to_popularity(self):
        assert find_best_match(sample_index(), "The Matrix", 1980).id == 603

    def test_retry_without_article(self):
        assert find_best_match(sample_index(), "The Inception").id == 27205

    def test_no_match(self):
        assert find_best_match(sample_index(), "Unknown Film") is None
        assert find_best_match(sample_index(), "") is None


class TestExportParsing:
    def test_parse_skips_adult_and_malformed(self):
        lines = [json.dumps(line) for line in EXPORT_LINES] + ["not json", "", '{"id": "x"}']

        index = parse_export_lines(lines, "movie")

        assert len(index) == 3
        assert 1 not in index.by_id
        assert [e.id for e in index.lookup("the matrix")] == [603, 9999]

    def test_tv_uses_original_name(self):
        index = parse_export_lines([json.dumps({"id": 2316, "original_name": "The Office", "popularity": 1})], "tv")

        assert index.lookup("the office")[0].id == 2316

    def test_export_url_uses_previous_day(self):
        assert export_url("movie", today=date(2024, 3, 2)) == (
            "https://files.tmdb.org/p/exports/movie_ids_03_01_2024.json.gz"
        )
        assert export_url("tv", today=date(2024, 1, 1)).endswith("tv_series_ids_12_31_2023.json.gz")


class TestDownloadCatalog:
    @patch('requests.get')
    def test_gzipped_export(self, mock_get):
        mock_get.return_value = streamed_response(gzip.compress(export_payload(EXPORT_LINES)))

        index = download_catalog("movie", url="http://catalog.example/movie.json.gz")

        assert len(index) == 3
        assert mock_get.call_args.kwargs["stream"] is True

    @patch('requests.get')
    def test_plain_export(self, mock_get):
        mock_get.return_value = streamed_response(export_payload(EXPORT_LINES))

        assert len(download_catalog("movie", url="http://catalog.example/movie.json")) == 3

    @patch('requests.get')
    def test_network_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(ProviderFetchError):
            download_catalog("movie", url="http://catalog.example/movie.json.gz")

    @patch('requests.get')
    def test_http_error_closes_response(self, mock_get):
        response = streamed_response(b"")
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("404 Not Found")
        mock_get.return_value = response

        with pytest.raises(ProviderFetchError):
            download_catalog("movie", url="http://catalog.example/movie.json.gz")

        response.__exit__.assert_called_once()


class TestCatalogExportCache:
    def test_reuses_index_within_ttl(self):
        clock = Mock(return_value=0)
        cache = CatalogExportCache(ttl_hours=24, clock=clock)

        with patch("services.enrichment_service.download_catalog", return_value=sample_index()) as download:
            first = cache.get("movie")
            clock.return_value = 3600
            second = cache.get("movie")
            clock.return_value = 25 * 3600
            cache.get("movie")

        assert first is second
        assert download.call_count == 2

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            CatalogExportCache().get("radio")


class TestMatchSource:
    def _add_movies(self, db, source_id):
        db.session.add_all(
            [
                Movie(stream_id=f"{source_id}_1", name="EN - The Matrix (1999)", direct_url="http://x/1", source_id=source_id),
                Movie(stream_id=f"{source_id}_2", name="Unknown Film", direct_url="http://x/2", source_id=source_id),
            ]
        )
        db.session.commit()

    def test_matches_and_marks_attempted(self, db, make_source):
        source = make_source()
        self._add_movies(db, source.id)

        with patch.object(export_cache, "get", return_value=sample_index()):
            stats = EnrichmentService.match_source(source.id, "movie")

        assert stats["processed"] == 2
        assert stats["matched"] == 1
        assert stats["unmatched"] == 1
        matched = db.session.get(Movie, f"{source.id}_1")
        assert matched.catalog_id == 603
        assert matched.catalog_popularity == 64.2
        assert matched.match_attempted is not None
        unmatched = db.session.get(Movie, f"{source.id}_2")
        assert unmatched.catalog_id is None
        assert unmatched.match_attempted is not None

    def test_rows_are_attempted_once(self, db, make_source):
        source = make_source()
        self._add_movies(db, source.id)

        with patch.object(export_cache, "get", return_value=sample_index()) as get:
            EnrichmentService.match_source(source.id, "movie")
            stats = EnrichmentService.match_source(source.id, "movie")

        assert stats["processed"] == 0
        assert get.call_count == 1

    def test_existing_match_never_overwritten(self, db, make_source):
        source = make_source()
        db.session.add(
            Movie(
                stream_id=f"{source.id}_1",
                name="The Matrix",
                direct_url="http://x/1",
                source_id=source.id,
                catalog_id=42,
            )
        )
        db.session.commit()

        with patch.object(export_cache, "get", return_value=sample_index()):
            EnrichmentService.match_source(source.id, "movie")

        assert db.session.get(Movie, f"{source.id}_1").catalog_id == 42

    def test_series_use_tv_catalog(self, db, make_source):
        source = make_source()
        db.session.add(Series(series_id=f"{source.id}_s1", name="The Office (US)", year="2005", source_id=source.id))
        db.session.commit()

        with patch.object(export_cache, "get", return_value=sample_index()) as get:
            EnrichmentService.match_source(source.id, "series")

        assert get.call_args.args[0] == "tv"
        assert db.session.get(Series, f"{source.id}_s1").catalog_id == 2316

    def test_deleted_source_discards_batch(self, db, make_source):
        source = make_source()
        self._add_movies(db, source.id)
        deletion_guard.mark(source.id)

        with patch.object(export_cache, "get", return_value=sample_index()):
            with pytest.raises(SourceDeletedError):
                EnrichmentService.match_source(source.id, "movie")

        assert db.session.get(Movie, f"{source.id}_1").match_attempted is None

    def test_reset_matching(self, db, make_source):
        source = make_source()
        self._add_movies(db, source.id)
        with patch.object(export_cache, "get", return_value=sample_index()):
            EnrichmentService.match_source(source.id, "movie")

        result = EnrichmentService.reset_matching(source.id)

        assert result["movies_reset"] == 2
        row = db.session.get(Movie, f"{source.id}_1")
        assert row.catalog_id is None
        assert row.match_attempted is None


class TestBackgroundMatching:
    def test_inline_run_matches_and_clears_indicator(self, app, db, make_source):
        source = make_source()
        db.session.add(Movie(stream_id=f"{source.id}_1", name="Inception", direct_url="http://x/1", source_id=source.id))
        db.session.commit()

        with patch.object(export_cache, "get", return_value=sample_index()):
            start_background_matching(app, source.id)

        assert db.session.get(Movie, f"{source.id}_1").catalog_id == 27205
        assert matching_tracker.is_active is False

    def test_download_failure_leaves_rows_unattempted(self, app, db, make_source):
        source = make_source()
        db.session.add(Movie(stream_id=f"{source.id}_1", name="Inception", direct_url="http://x/1", source_id=source.id))
        db.session.commit()

        with patch.object(export_cache, "get", side_effect=ProviderFetchError("catalog down")):
            start_background_matching(app, source.id)

        assert db.session.get(Movie, f"{source.id}_1").match_attempted is None
        assert matching_tracker.is_active is False


class TestMatchingTracker:
    def test_counts_in_flight_tasks(self):
        tracker = MatchingTracker()
        tracker.begin()
        with tracker.tracking():
            assert tracker.active_count == 2
        assert tracker.is_active is True
        tracker.end()
        tracker.end()
        assert tracker.active_count == 0
