"""
M3U playlist client and parser

M3U format:
    #EXTM3U url-tvg="http://epg.url/xmltv.xml"
    #EXTINF:-1 tvg-id="cnn" tvg-name="CNN" tvg-logo="http://logo.png" group-title="News",CNN HD
    http://stream.url/live/123.ts
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from error_handling import ProviderFetchError

logger = logging.getLogger(__name__)

ATTR_RE = re.compile(r'([\w-]+)="([^"]*)"')
EPG_HEADER_RE = re.compile(r'(?:url-tvg|x-tvg-url)="([^"]+)"', re.IGNORECASE)
STREAM_SCHEMES = ("http://", "https://", "rtmp://", "rtsp://", "udp://")


@dataclass
class PlaylistResult:
    """Parsed playlist: channel and category records plus the advertised EPG URL"""

    channels: List[Dict] = field(default_factory=list)
    categories: List[Dict] = field(default_factory=list)
    epg_url: Optional[str] = None


def _parse_extinf(line: str) -> Dict:
    """
    Parse "#EXTINF:duration key="value" ...,Display Name".

    The display name is everything after the last comma outside quotes.
    """
    content = line[len("#EXTINF:") :]
    attrs = dict((k.lower(), v) for k, v in ATTR_RE.findall(content))

    # Drop quoted attribute values before looking for the name separator
    unquoted = ATTR_RE.sub("", content)
    display_name = unquoted.rsplit(",", 1)[1].strip() if "," in unquoted else ""

    chno = attrs.get("tvg-chno")
    return {
        "tvg_id": attrs.get("tvg-id", ""),
        "tvg_name": attrs.get("tvg-name", ""),
        "tvg_logo": attrs.get("tvg-logo", ""),
        "tvg_chno": int(chno) if chno and chno.isdigit() else None,
        "group_title": attrs.get("group-title", "").strip(),
        "display_name": display_name,
    }


def parse_m3u(content: str, source_id: str) -> PlaylistResult:
    """Parse M3U playlist text into channel/category records for one source"""
    result = PlaylistResult()
    categories: Dict[str, Dict] = {}
    metadata = None
    counter = 0

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith("#EXTM3U"):
            match = EPG_HEADER_RE.search(line)
            if match:
                result.epg_url = match.group(1)
            continue

        if line.startswith("#EXTINF:"):
            metadata = _parse_extinf(line)
            continue

        if line.startswith("#"):
            continue

        if metadata is None or not line.startswith(STREAM_SCHEMES):
            continue

        counter += 1
        category_ids = []
        group = metadata["group_title"]
        if group:
            category_id = f"{source_id}_{group}"
            if category_id not in categories:
                categories[category_id] = {
                    "category_id": category_id,
                    "category_name": group,
                    "source_id": source_id,
                    "parent_id": None,
                }
            category_ids.append(category_id)

        result.channels.append(
            {
                "stream_id": f"{source_id}_{counter}",
                "name": metadata["display_name"] or metadata["tvg_name"] or f"Channel {counter}",
                "stream_icon": metadata["tvg_logo"] or None,
                "epg_channel_id": metadata["tvg_id"] or None,
                "category_ids": category_ids,
                "direct_url": line,
                "source_id": source_id,
                "channel_num": metadata["tvg_chno"],
                "tv_archive": False,
            }
        )
        metadata = None

    result.categories = list(categories.values())
    return result


class PlaylistClient:
    """Fetches and parses an M3U playlist source"""

    def __init__(self, url, source_id, user_agent=None, timeout=30):
        self.url = url
        self.source_id = source_id
        self.user_agent = user_agent
        self.timeout = timeout

    @classmethod
    def for_source(cls, source, timeout=30):
        return cls(source.url, source.id, user_agent=source.user_agent, timeout=timeout)

    def fetch(self) -> PlaylistResult:
        headers = {"User-Agent": self.user_agent} if self.user_agent else {}
        logger.debug(f"Fetching M3U from {self.url}")
        try:
            response = requests.get(self.url, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProviderFetchError(f"Failed to fetch playlist: {e}", source_id=self.source_id)

        text = response.text
        if "#EXTINF" not in text and "#EXTM3U" not in text:
            raise ProviderFetchError("Response is not an M3U playlist", source_id=self.source_id)

        result = parse_m3u(text, self.source_id)
        logger.info(f"M3U parsed: {len(result.channels)} channels, {len(result.categories)} categories")
        return result
