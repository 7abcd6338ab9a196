"""
Source preference and cross-source identity resolution

The same movie or series can exist on several sources. Rows are never merged
in storage; grouping by catalog_id and picking the row on the highest-ranked
source happens at read time, so the result always follows the current order.
"""

import json
import logging
from typing import Dict, List, Optional

from models import Episode, Movie, Series, Settings, Source, db

logger = logging.getLogger(__name__)

SOURCE_KINDS = ("live", "vod")


def _order_key(kind):
    if kind not in SOURCE_KINDS:
        raise ValueError(f"Unknown source kind: {kind}")
    return f"{kind}_source_order"


def _source_of(row):
    if isinstance(row, dict):
        return row.get("source_id")
    return row.source_id


def resolve_preferred(candidates: List[str], order: List[str]) -> Optional[str]:
    """
    Pick the preferred source among candidates.

    First id of `order` present in `candidates`, else the first candidate.
    None only when there are no candidates.
    """
    if not candidates:
        return None
    present = set(candidates)
    for source_id in order:
        if source_id in present:
            return source_id
    return candidates[0]


def sort_by_preference(rows, order: List[str]):
    """Stable sort by source rank; sources missing from the order go last"""
    rank = {source_id: i for i, source_id in enumerate(order)}
    unranked = len(rank)
    return sorted(rows, key=lambda row: rank.get(_source_of(row), unranked))


def _dedupe(rows, order, id_field, include_url):
    groups: Dict[tuple, list] = {}
    for row in rows:
        key = ("catalog", row.catalog_id) if row.catalog_id is not None else ("item", row.item_id)
        groups.setdefault(key, []).append(row)

    result = []
    for members in groups.values():
        preferred = resolve_preferred([m.source_id for m in members], order)
        ranked = sort_by_preference(members, order)
        representative = next(m for m in ranked if m.source_id == preferred)

        data = representative.to_dict()
        sources = []
        for member in ranked:
            entry = {"source_id": member.source_id, id_field: member.item_id}
            if include_url:
                entry["direct_url"] = member.direct_url
            sources.append(entry)
        data["sources"] = sources
        result.append(data)
    return result


def dedupe_movies(movies, order: List[str]) -> List[Dict]:
    """One entry per catalog_id, represented by the row on the preferred source"""
    return _dedupe(movies, order, "stream_id", include_url=True)


def dedupe_series(series, order: List[str]) -> List[Dict]:
    return _dedupe(series, order, "series_id", include_url=False)


def merge_episodes(series_rows, episodes, order: List[str], primary_series_id: Optional[str] = None):
    """
    Union of episodes across copies of one series.

    Episodes are keyed by (season, episode); on collision the copy from the
    primary series wins, then the copy from the higher-ranked source.

    Returns:
        {season_num: [episode dicts sorted by episode_num]}
    """
    ranked = sort_by_preference(series_rows, order)
    if primary_series_id:
        ranked = [s for s in ranked if s.series_id == primary_series_id] + [
            s for s in ranked if s.series_id != primary_series_id
        ]
    series_rank = {s.series_id: i for i, s in enumerate(ranked)}

    chosen: Dict[tuple, Episode] = {}
    for episode in sorted(episodes, key=lambda e: series_rank.get(e.series_id, len(series_rank))):
        key = (episode.season_num, episode.episode_num)
        if key not in chosen:
            chosen[key] = episode

    seasons: Dict[int, List[Dict]] = {}
    for (season_num, _), episode in sorted(chosen.items()):
        seasons.setdefault(season_num, []).append(episode.to_dict())
    return seasons


class PreferenceService:
    """Source order persistence and preference-aware lookups"""

    @staticmethod
    def default_order(kind: str) -> List[str]:
        """Enabled sources in insertion order; VOD considers Xtream sources only"""
        _order_key(kind)
        query = Source.query.filter_by(enabled=True)
        if kind == "vod":
            query = query.filter_by(source_type="xtream")
        return [s.id for s in query.order_by(Source.created_at).all()]

    @staticmethod
    def get_source_order(kind: str) -> List[str]:
        """Persisted order filtered to current enabled sources, new sources appended"""
        key = _order_key(kind)
        valid = PreferenceService.default_order(kind)

        try:
            stored = json.loads(Settings.get(key) or "[]")
        except ValueError:
            logger.warning(f"Ignoring malformed {key} setting")
            stored = []
        if not isinstance(stored, list):
            stored = []

        ordered = []
        for source_id in stored:
            if source_id in valid and source_id not in ordered:
                ordered.append(source_id)
        return ordered + [source_id for source_id in valid if source_id not in ordered]

    @staticmethod
    def set_source_order(kind: str, source_ids: List[str]) -> List[str]:
        key = _order_key(kind)
        deduped = list(dict.fromkeys(source_ids))
        Settings.set(key, json.dumps(deduped))
        logger.info(f"{kind} source order set to {deduped}")
        return PreferenceService.get_source_order(kind)

    @staticmethod
    def forget_source(source_id: str):
        """Drop a deleted source from persisted orders"""
        for kind in SOURCE_KINDS:
            key = _order_key(kind)
            try:
                stored = json.loads(Settings.get(key) or "[]")
            except ValueError:
                continue
            if isinstance(stored, list) and source_id in stored:
                Settings.set(key, json.dumps([s for s in stored if s != source_id]))

    @staticmethod
    def _enabled_source_ids():
        return [s.id for s in Source.query.filter_by(enabled=True).all()]

    @staticmethod
    def related_series(series_id: str) -> List[Series]:
        """Every copy of a series on enabled sources, the given one first"""
        series = db.session.get(Series, series_id)
        if not series:
            return []
        if series.catalog_id is None:
            return [series]

        copies = Series.query.filter(
            Series.catalog_id == series.catalog_id,
            Series.source_id.in_(PreferenceService._enabled_source_ids()),
        ).all()
        ranked = sort_by_preference(copies, PreferenceService.get_source_order("vod"))
        return [series] + [s for s in ranked if s.series_id != series.series_id]

    @staticmethod
    def merged_episodes(series_id: str):
        """Episodes of a series merged across every copy of it"""
        copies = PreferenceService.related_series(series_id)
        if not copies:
            return None
        episodes = Episode.query.filter(Episode.series_id.in_([s.series_id for s in copies])).all()
        return merge_episodes(copies, episodes, PreferenceService.get_source_order("vod"), primary_series_id=series_id)

    @staticmethod
    def movie_play_sources(catalog_id: Optional[int] = None, stream_id: Optional[str] = None) -> List[Dict]:
        """Alternate play URLs for a movie, ordered by preference"""
        if catalog_id is None and stream_id:
            movie = db.session.get(Movie, stream_id)
            if not movie:
                return []
            if movie.catalog_id is None:
                return [_movie_source(movie)]
            catalog_id = movie.catalog_id
        if catalog_id is None:
            return []

        movies = Movie.query.filter(
            Movie.catalog_id == catalog_id,
            Movie.source_id.in_(PreferenceService._enabled_source_ids()),
        ).all()
        ranked = sort_by_preference(movies, PreferenceService.get_source_order("vod"))
        return [_movie_source(m) for m in ranked]

    @staticmethod
    def episode_play_sources(
        catalog_id: Optional[int], season: int, episode: int, fallback_series_id: Optional[str] = None
    ) -> List[Dict]:
        """Alternate play URLs for one episode across every copy of its series"""
        if catalog_id is not None:
            series = Series.query.filter(
                Series.catalog_id == catalog_id,
                Series.source_id.in_(PreferenceService._enabled_source_ids()),
            ).all()
            series = sort_by_preference(series, PreferenceService.get_source_order("vod"))
        else:
            series = []

        if not series and fallback_series_id:
            fallback = db.session.get(Series, fallback_series_id)
            series = [fallback] if fallback else []

        results = []
        for row in series:
            match = Episode.query.filter_by(series_id=row.series_id, season_num=season, episode_num=episode).first()
            if match:
                results.append(
                    {
                        "source_id": match.source_id,
                        "series_id": match.series_id,
                        "episode_id": match.id,
                        "direct_url": match.direct_url,
                    }
                )
        return results

    @staticmethod
    def order_channels(channels):
        """Live channels ordered by live source rank"""
        return sort_by_preference(channels, PreferenceService.get_source_order("live"))


def _movie_source(movie: Movie) -> Dict:
    return {
        "source_id": movie.source_id,
        "stream_id": movie.stream_id,
        "direct_url": movie.direct_url,
        "container_extension": movie.container_extension,
    }
