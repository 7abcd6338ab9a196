"""
Xtream Codes API client - structured-API provider for live, VOD and EPG data

Every method returns a complete list of records shaped for the local store
(ids namespaced as "{source_id}_{provider id}") or raises ProviderFetchError.
"""

import logging
from typing import Dict, List
from urllib.parse import urlencode

import requests

from error_handling import ProviderFetchError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "okhttp/3.14.9"


def normalize_base_url(url: str) -> str:
    """Accept "host:port" or a full URL, return "scheme://host:port" without trailing slash"""
    url = (url or "").strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url


def _to_int(value, default=None):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _clean(value):
    """Xtream panels send "" or "null" for missing fields"""
    if value is None:
        return None
    value = str(value).strip()
    if not value or value.lower() == "null":
        return None
    return value


class XtreamClient:
    """Client for the Xtream Codes player API"""

    def __init__(
        self,
        base_url,
        username,
        password,
        source_id,
        user_agent=DEFAULT_USER_AGENT,
        timeout=30,
    ):
        self.base_url = normalize_base_url(base_url)
        self.username = username
        self.password = password
        self.source_id = source_id
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.timeout = timeout

    @classmethod
    def for_source(cls, source, timeout=30):
        """Create a client from a Source row"""
        if not source.username or not source.password:
            raise ProviderFetchError("Xtream source requires username and password", source_id=source.id)
        return cls(
            source.url,
            source.username,
            source.password,
            source.id,
            user_agent=source.user_agent,
            timeout=timeout,
        )

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------

    def _ns(self, provider_id) -> str:
        return f"{self.source_id}_{provider_id}"

    def _raw_id(self, namespaced_id: str) -> str:
        prefix = f"{self.source_id}_"
        if namespaced_id.startswith(prefix):
            return namespaced_id[len(prefix) :]
        return namespaced_id

    def _make_request(self, action, params=None):
        """Make API request to the Xtream Codes server"""
        url = f"{self.base_url}/player_api.php"

        request_params = {"username": self.username, "password": self.password}
        if action:
            request_params["action"] = action
        if params:
            request_params.update(params)

        headers = {"User-Agent": self.user_agent}
        logger.debug(f"Making request to {url} with action={action}")

        try:
            response = requests.get(url, params=request_params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise ProviderFetchError(f"{action or 'authenticate'} failed: {e}", source_id=self.source_id)
        except ValueError as e:
            raise ProviderFetchError(
                f"{action or 'authenticate'} returned invalid JSON: {e}", source_id=self.source_id
            )

    def _request_list(self, action, params=None) -> List[Dict]:
        data = self._make_request(action, params)
        # Some panels answer an empty catalog with {} or null
        if data is None or data == {}:
            return []
        if not isinstance(data, list):
            raise ProviderFetchError(f"{action} returned unexpected payload", source_id=self.source_id)
        return data

    def stream_url(self, kind, stream_id, extension="ts") -> str:
        return f"{self.base_url}/{kind}/{self.username}/{self.password}/{stream_id}.{extension or 'ts'}"

    def get_epg_url(self) -> str:
        query = urlencode({"username": self.username, "password": self.password})
        return f"{self.base_url}/xmltv.php?{query}"

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def authenticate(self):
        """Authenticate and get server/user info"""
        return self._make_request(None)

    def test_connection(self) -> Dict:
        """Check credentials; never raises"""
        try:
            info = self.authenticate()
        except ProviderFetchError as e:
            return {"success": False, "error": str(e)}

        user_info = (info or {}).get("user_info") if isinstance(info, dict) else None
        if not user_info or str(user_info.get("auth", 1)) == "0":
            return {"success": False, "error": "Authentication failed"}
        status = user_info.get("status")
        if status and status != "Active":
            return {"success": False, "error": f"Account status: {status}"}
        return {"success": True, "info": info}

    # ------------------------------------------------------------------
    # Live
    # ------------------------------------------------------------------

    def _categories(self, action) -> List[Dict]:
        categories = []
        for cat in self._request_list(action):
            category_id = _clean(cat.get("category_id"))
            if not category_id:
                continue
            categories.append(
                {
                    "category_id": self._ns(category_id),
                    "category_name": cat.get("category_name") or "Unknown",
                    "source_id": self.source_id,
                    "parent_id": _to_int(cat.get("parent_id")),
                }
            )
        return categories

    def _category_ids(self, item) -> List[str]:
        raw_ids = item.get("category_ids") or []
        if not raw_ids and _clean(item.get("category_id")):
            raw_ids = [item.get("category_id")]
        return [self._ns(c) for c in raw_ids if _clean(c)]

    def get_live_categories(self) -> List[Dict]:
        """Get all live stream categories"""
        return self._categories("get_live_categories")

    def get_live_streams(self, category_id=None) -> List[Dict]:
        """Get all live streams, optionally filtered by category"""
        params = {}
        if category_id:
            params["category_id"] = self._raw_id(category_id)

        channels = []
        for stream in self._request_list("get_live_streams", params):
            stream_id = _clean(stream.get("stream_id"))
            if not stream_id:
                continue
            channels.append(
                {
                    "stream_id": self._ns(stream_id),
                    "name": stream.get("name") or f"Channel {stream_id}",
                    "stream_icon": _clean(stream.get("stream_icon")),
                    "epg_channel_id": _clean(stream.get("epg_channel_id")),
                    "category_ids": self._category_ids(stream),
                    "direct_url": self.stream_url("live", stream_id),
                    "source_id": self.source_id,
                    "channel_num": _to_int(stream.get("num")),
                    "tv_archive": bool(_to_int(stream.get("tv_archive"), 0)),
                }
            )
        return channels

    # ------------------------------------------------------------------
    # VOD
    # ------------------------------------------------------------------

    def get_vod_categories(self) -> List[Dict]:
        """Get all VOD categories"""
        return self._categories("get_vod_categories")

    def get_series_categories(self) -> List[Dict]:
        """Get all series categories"""
        return self._categories("get_series_categories")

    def get_vod_streams(self, category_id=None) -> List[Dict]:
        """Get all VOD movies"""
        params = {}
        if category_id:
            params["category_id"] = self._raw_id(category_id)

        movies = []
        for vod in self._request_list("get_vod_streams", params):
            stream_id = _clean(vod.get("stream_id"))
            if not stream_id:
                continue
            extension = _clean(vod.get("container_extension")) or "mp4"
            movies.append(
                {
                    "stream_id": self._ns(stream_id),
                    "name": vod.get("name") or f"Movie {stream_id}",
                    "title": _clean(vod.get("title")),
                    "year": _clean(vod.get("year")),
                    "stream_icon": _clean(vod.get("stream_icon")),
                    "category_ids": self._category_ids(vod),
                    "direct_url": self.stream_url("movie", stream_id, extension),
                    "container_extension": extension,
                    "source_id": self.source_id,
                    "plot": _clean(vod.get("plot")),
                    "cast": _clean(vod.get("cast")),
                    "director": _clean(vod.get("director")),
                    "genre": _clean(vod.get("genre")),
                    "release_date": _clean(vod.get("release_date") or vod.get("releaseDate")),
                    "rating": _clean(vod.get("rating")),
                    "duration": _to_int(vod.get("duration_secs")),
                }
            )
        return movies

    def get_series(self, category_id=None) -> List[Dict]:
        """Get all series"""
        params = {}
        if category_id:
            params["category_id"] = self._raw_id(category_id)

        series = []
        for item in self._request_list("get_series", params):
            series_id = _clean(item.get("series_id"))
            if not series_id:
                continue
            series.append(
                {
                    "series_id": self._ns(series_id),
                    "name": item.get("name") or f"Series {series_id}",
                    "title": _clean(item.get("title")),
                    "year": _clean(item.get("year")),
                    "cover": _clean(item.get("cover")),
                    "category_ids": self._category_ids(item),
                    "source_id": self.source_id,
                    "plot": _clean(item.get("plot")),
                    "cast": _clean(item.get("cast")),
                    "director": _clean(item.get("director")),
                    "genre": _clean(item.get("genre")),
                    "release_date": _clean(item.get("releaseDate") or item.get("release_date")),
                    "rating": _clean(item.get("rating")),
                }
            )
        return series

    def get_series_info(self, series_id) -> List[Dict]:
        """Get every episode of a series, flattened across seasons"""
        raw_series_id = self._raw_id(series_id)
        data = self._make_request("get_series_info", {"series_id": raw_series_id})
        if not isinstance(data, dict):
            raise ProviderFetchError("get_series_info returned unexpected payload", source_id=self.source_id)

        seasons = data.get("episodes") or {}
        if isinstance(seasons, list):
            # Some panels send a list of season lists
            seasons = {str(i + 1): eps for i, eps in enumerate(seasons)}

        episodes = []
        for season_key, season_episodes in seasons.items():
            for ep in season_episodes or []:
                episode_id = _clean(ep.get("id"))
                if not episode_id:
                    continue
                info = ep.get("info") if isinstance(ep.get("info"), dict) else {}
                extension = _clean(ep.get("container_extension")) or "mp4"
                episodes.append(
                    {
                        "id": self._ns(episode_id),
                        "series_id": series_id,
                        "source_id": self.source_id,
                        "season_num": _to_int(ep.get("season"), _to_int(season_key, 0)),
                        "episode_num": _to_int(ep.get("episode_num"), 0),
                        "title": ep.get("title") or "",
                        "direct_url": self.stream_url("series", episode_id, extension),
                        "container_extension": extension,
                        "plot": _clean(info.get("plot")),
                        "duration": _to_int(info.get("duration_secs")),
                    }
                )
        return episodes
