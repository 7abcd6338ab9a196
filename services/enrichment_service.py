"""
Catalog enrichment - matches provider VOD titles against the TMDB daily id exports

TMDB publishes a gzipped newline-delimited JSON dump of every movie and TV
series id each day:

    {"adult":false,"id":603,"original_title":"The Matrix","popularity":64.2,"video":false}

Matching is exact on a normalized title, year-aware when a year is known.
A row is attempted at most once; only reset_matching() makes it eligible again.
"""

import gzip
import io
import json
import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import requests
from flask import current_app, has_app_context

from error_handling import ProviderFetchError, SourceDeletedError
from models import Movie, Series, db
from services.deletion_guard import deletion_guard

logger = logging.getLogger(__name__)

EXPORT_BASE_URL = "https://files.tmdb.org/p/exports"
EXPORT_FILE_PREFIX = {"movie": "movie_ids", "tv": "tv_series_ids"}
DEFAULT_CACHE_TTL_HOURS = 24
MATCH_BATCH_SIZE = 500
GZIP_MAGIC = b"\x1f\x8b"

# "EN - ", "4K-ES - ", "HD | ", any dash style
PREFIX_RE = re.compile(r"^(?:(?:4K|UHD|FHD|HD|SD)-)?(?:[A-Z]{2,3}|4K|UHD|FHD|HD|SD)\s+[-–—|]\s+")
# "(US)", "[EN]" at the end
LANG_TAG_RE = re.compile(r"\s*[\(\[][A-Z]{2}[\)\]]\s*$")
BRACKET_YEAR_RE = re.compile(r"\s*[\(\[]\d{4}[\)\]]\s*")
QUALITY_RE = re.compile(
    r"\b(?:4k|uhd|fhd|hd|sd|2160p|1080p|720p|480p|bluray|blu-ray|web-dl|webrip|hdrip|dvdrip|hevc|x264|x265)\b"
)
TRAILING_YEAR_RE = re.compile(r"\s+\d{4}$")
NAME_YEAR_RE = re.compile(r"^(.*?)\s*[\(\[](\d{4})[\)\]]")

MIN_YEAR = 1870
MAX_YEAR = 2100


# ============================================================================
# Title normalization
# ============================================================================


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize a title for catalog lookup.

    "4K-ES - Avengers Endgame (2019) 2160p" -> "avengers endgame"
    "The.Matrix.1999.1080p.BluRay"          -> "the matrix"
    "The Office (2005) (US)"                -> "the office"
    """
    if not title:
        return ""

    value = PREFIX_RE.sub("", title.strip())

    # Language tags can stack: "Show (US) (EN)"
    while True:
        stripped = LANG_TAG_RE.sub("", value)
        if stripped == value:
            break
        value = stripped

    value = value.lower()
    value = re.sub(r"[._]", " ", value)
    value = BRACKET_YEAR_RE.sub(" ", value)
    value = QUALITY_RE.sub(" ", value)
    value = re.sub(r"[^\w\s]", " ", value)
    value = re.sub(r"\s+", " ", value).strip()
    value = TRAILING_YEAR_RE.sub("", value)
    return value


def _parse_year(value) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip()[:4]
    if not text.isdigit():
        return None
    year = int(text)
    if MIN_YEAR <= year <= MAX_YEAR:
        return year
    return None


def extract_match_params(item: Dict) -> Dict:
    """
    Pick the title and year to match with.

    Preference: structured title + year, then title with the year parsed from
    the name, then both parsed from "Name (YYYY)", then the bare name.
    """
    name = (item.get("name") or "").strip()
    title = (item.get("title") or "").strip()
    year = _parse_year(item.get("year"))

    name_match = NAME_YEAR_RE.match(name)
    name_year = _parse_year(name_match.group(2)) if name_match else None

    if title:
        return {"title": title, "year": year or name_year}
    if name_match and name_match.group(1).strip():
        return {"title": name_match.group(1).strip(), "year": name_year}
    return {"title": name, "year": year}


# ============================================================================
# Catalog index
# ============================================================================


@dataclass
class CatalogEntry:
    id: int
    title: str
    year: Optional[int]
    popularity: float


class CatalogIndex:
    """Normalized title -> candidate entries"""

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self.by_title: Dict[str, List[CatalogEntry]] = {}
        self.by_id: Dict[int, CatalogEntry] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: CatalogEntry):
        key = normalize_title(entry.title)
        if not key:
            return
        self.by_title.setdefault(key, []).append(entry)
        self.by_id[entry.id] = entry

    def lookup(self, normalized_title: str) -> List[CatalogEntry]:
        return self.by_title.get(normalized_title, [])

    def __len__(self):
        return len(self.by_id)


def find_best_match(index: CatalogIndex, title: str, year: Optional[int] = None) -> Optional[CatalogEntry]:
    """Exact normalized match; the most popular exact-year candidate wins, else the most popular overall"""
    normalized = normalize_title(title)
    if not normalized:
        return None

    candidates = index.lookup(normalized)
    if not candidates and normalized.startswith("the "):
        candidates = index.lookup(normalized[4:])
    if not candidates:
        return None

    if year:
        same_year = [c for c in candidates if c.year == year]
        if same_year:
            return max(same_year, key=lambda c: c.popularity)
    return max(candidates, key=lambda c: c.popularity)


def _entry_from_line(line: str, kind: str) -> Optional[CatalogEntry]:
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("adult"):
        return None

    entry_id = data.get("id")
    if kind == "movie":
        title = data.get("original_title") or data.get("title")
    else:
        title = data.get("original_name") or data.get("name") or data.get("title")
    if not isinstance(entry_id, int) or not title:
        return None

    try:
        popularity = float(data.get("popularity") or 0)
    except (TypeError, ValueError):
        popularity = 0.0
    year = _parse_year(data.get("year") or data.get("release_date") or data.get("first_air_date"))
    return CatalogEntry(id=entry_id, title=title, year=year, popularity=popularity)


def parse_export_lines(lines: Iterable[str], kind: str) -> CatalogIndex:
    """Build an index from export lines; adult and malformed lines are skipped"""
    index = CatalogIndex()
    for line in lines:
        line = line.strip()
        if not line:
            continue
        entry = _entry_from_line(line, kind)
        if entry:
            index.add(entry)
    return index


def export_url(kind: str, today: Optional[date] = None) -> str:
    """URL of yesterday's export (today's is published later in the day)"""
    today = today or datetime.now(timezone.utc).date()
    day = today - timedelta(days=1)
    return f"{EXPORT_BASE_URL}/{EXPORT_FILE_PREFIX[kind]}_{day.strftime('%m_%d_%Y')}.json.gz"


def download_catalog(kind: str, url: Optional[str] = None, timeout: int = 300) -> CatalogIndex:
    """Stream and index one export file (gzipped or plain)"""
    url = url or export_url(kind)
    logger.info(f"Downloading {kind} catalog export from {url}")

    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            response.raw.decode_content = True
            stream = io.BufferedReader(response.raw)
            if stream.peek(2)[:2] == GZIP_MAGIC:
                stream = gzip.GzipFile(fileobj=stream)
            index = parse_export_lines(io.TextIOWrapper(stream, encoding="utf-8", errors="replace"), kind)
    except requests.exceptions.RequestException as e:
        raise ProviderFetchError(f"Failed to download {kind} catalog export: {e}")
    except (OSError, EOFError) as e:
        raise ProviderFetchError(f"Corrupt {kind} catalog export: {e}")

    logger.info(f"Indexed {len(index)} {kind} catalog entries")
    return index


class CatalogExportCache:
    """In-memory export indexes per kind with a TTL; one download per kind at a time"""

    def __init__(self, ttl_hours=DEFAULT_CACHE_TTL_HOURS, clock=time.monotonic):
        self.ttl_hours = ttl_hours
        self._clock = clock
        self._entries: Dict[str, tuple] = {}
        self._locks = {kind: threading.Lock() for kind in EXPORT_FILE_PREFIX}

    def get(self, kind: str, url: Optional[str] = None, ttl_hours=None) -> CatalogIndex:
        if kind not in self._locks:
            raise ValueError(f"Unknown catalog kind: {kind}")
        ttl_seconds = (self.ttl_hours if ttl_hours is None else ttl_hours) * 3600

        # Waiters reuse the index the first caller downloaded
        with self._locks[kind]:
            cached = self._entries.get(kind)
            if cached and self._clock() - cached[0] < ttl_seconds:
                return cached[1]
            index = download_catalog(kind, url)
            self._entries[kind] = (self._clock(), index)
            return index

    def clear(self):
        self._entries.clear()


export_cache = CatalogExportCache()


# ============================================================================
# Matching indicator
# ============================================================================


class MatchingTracker:
    """Counts in-flight matching tasks so the UI can show a 'matching' indicator"""

    def __init__(self):
        self._count = 0
        self._lock = threading.Lock()

    def begin(self):
        with self._lock:
            self._count += 1

    def end(self):
        with self._lock:
            self._count = max(0, self._count - 1)

    @property
    def active_count(self):
        with self._lock:
            return self._count

    @property
    def is_active(self):
        return self.active_count > 0

    @contextmanager
    def tracking(self):
        self.begin()
        try:
            yield
        finally:
            self.end()


matching_tracker = MatchingTracker()


# ============================================================================
# Matching service
# ============================================================================

KIND_MODELS = {"movie": (Movie, "movie"), "series": (Series, "tv")}


class EnrichmentService:
    """Assigns catalog ids to a source's movies and series"""

    @staticmethod
    def match_source(source_id: str, kind: str) -> Dict:
        """
        Match every not-yet-attempted row of one kind for a source.

        Matched rows get catalog_id, catalog_popularity and match_attempted;
        unmatched rows only get match_attempted, so they are not retried.

        Raises:
            ProviderFetchError: if the catalog export cannot be downloaded
            SourceDeletedError: if the source was deleted mid-run
        """
        if kind not in KIND_MODELS:
            raise ValueError(f"Unknown VOD kind: {kind}")
        model, catalog_kind = KIND_MODELS[kind]

        stats = {"source_id": source_id, "kind": kind, "processed": 0, "matched": 0, "unmatched": 0}

        pending = model.query.filter(
            model.source_id == source_id,
            model.catalog_id.is_(None),
            model.match_attempted.is_(None),
        ).all()
        if not pending:
            return stats

        config = current_app.config if has_app_context() else {}
        url_key = "CATALOG_MOVIE_EXPORT_URL" if catalog_kind == "movie" else "CATALOG_TV_EXPORT_URL"
        index = export_cache.get(
            catalog_kind,
            url=config.get(url_key),
            ttl_hours=config.get("CATALOG_CACHE_TTL_HOURS"),
        )

        logger.info(f"Matching {len(pending)} {kind} rows for source {source_id}")

        for start in range(0, len(pending), MATCH_BATCH_SIZE):
            batch = pending[start : start + MATCH_BATCH_SIZE]
            now = datetime.now(timezone.utc)

            for row in batch:
                params = extract_match_params({"name": row.name, "title": row.title, "year": row.year})
                match = find_best_match(index, params["title"], params["year"])
                if match:
                    row.catalog_id = match.id
                    row.catalog_popularity = match.popularity
                    stats["matched"] += 1
                else:
                    stats["unmatched"] += 1
                row.match_attempted = now

            if deletion_guard.is_deleted(source_id):
                db.session.rollback()
                logger.info(f"Source {source_id} deleted during matching, discarding batch")
                raise SourceDeletedError(source_id)

            db.session.commit()
            stats["processed"] += len(batch)

        logger.info(
            f"Matching done for source {source_id} ({kind}): "
            f"{stats['matched']} matched, {stats['unmatched']} unmatched"
        )
        return stats

    @staticmethod
    def reset_matching(source_id: str) -> Dict:
        """Make every movie and series of a source eligible for matching again"""
        cleared = {"catalog_id": None, "catalog_popularity": None, "match_attempted": None}
        movies = Movie.query.filter_by(source_id=source_id).update(cleared, synchronize_session=False)
        series = Series.query.filter_by(source_id=source_id).update(cleared, synchronize_session=False)
        db.session.commit()
        logger.info(f"Reset matching for source {source_id}: {movies} movies, {series} series")
        return {"success": True, "source_id": source_id, "movies_reset": movies, "series_reset": series}


def _run_matching_task(app, source_id, kind):
    try:
        if has_app_context():
            EnrichmentService.match_source(source_id, kind)
        else:
            with app.app_context():
                EnrichmentService.match_source(source_id, kind)
    except SourceDeletedError:
        logger.info(f"Matching for source {source_id} ({kind}) stopped, source was deleted")
    except Exception as e:
        logger.error(f"Background matching failed for source {source_id} ({kind}): {e}")
        if has_app_context():
            db.session.rollback()
    finally:
        matching_tracker.end()


def start_background_matching(app, source_id):
    """
    Match movies and series of a source without blocking the caller.

    Runs in daemon threads when ENRICH_ASYNC is set, inline otherwise.
    Failures are logged; the rows stay unattempted and are picked up next time.
    """
    run_async = app.config.get("ENRICH_ASYNC", True)
    threads = []
    for kind in KIND_MODELS:
        matching_tracker.begin()
        if run_async:
            thread = threading.Thread(
                target=_run_matching_task, args=(app, source_id, kind), daemon=True, name=f"match-{kind}-{source_id}"
            )
            thread.start()
            threads.append(thread)
        else:
            _run_matching_task(app, source_id, kind)
    return threads
