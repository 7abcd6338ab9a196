"""
XMLTV fetching and parsing

Stateless helpers: raw XMLTV bytes in, programme records out. Programme
times are converted to naive UTC datetimes, which is how they are stored.

XMLTV time format: "YYYYMMDDHHmmss +ZZZZ" (offset optional, UTC assumed).
"""
import gzip
import logging
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import requests

from error_handling import ProviderFetchError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
XMLTV_TIME_RE = re.compile(r"^(\d{14}|\d{12})\s*([+-]\d{4})?$")


def decompress_content(content: bytes) -> bytes:
    """Gunzip content when it carries the gzip magic number, otherwise return it unchanged"""
    if content[:2] == GZIP_MAGIC:
        try:
            return gzip.decompress(content)
        except (OSError, EOFError) as e:
            raise ProviderFetchError(f"Corrupt gzip XMLTV data: {e}")
    return content


def normalize_xmltv_url(url: str) -> str:
    """
    Convert GitHub blob URLs to raw URLs so the XML itself is downloaded.

    https://github.com/user/repo/blob/main/guide.xml
        -> https://raw.githubusercontent.com/user/repo/main/guide.xml
    """
    match = re.match(r"^https?://github\.com/([^/]+)/([^/]+)/blob/(.+)$", url.strip())
    if match:
        user, repo, rest = match.groups()
        return f"https://raw.githubusercontent.com/{user}/{repo}/{rest}"
    return url.strip()


def parse_xmltv_time(time_str: Optional[str]) -> Optional[datetime]:
    """Parse an XMLTV timestamp into a naive UTC datetime"""
    if not time_str:
        return None

    match = XMLTV_TIME_RE.match(time_str.strip())
    if not match:
        return None

    stamp, offset = match.groups()
    fmt = "%Y%m%d%H%M%S" if len(stamp) == 14 else "%Y%m%d%H%M"
    try:
        value = datetime.strptime(stamp, fmt)
    except ValueError:
        return None

    if offset:
        sign = 1 if offset[0] == "+" else -1
        delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[3:5]))
        value = value.replace(tzinfo=timezone(sign * delta))
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_xmltv_programs(xml_content: bytes) -> List[Dict]:
    """
    Parse XMLTV content into programme records.

    Returns:
        List of dicts with channel_id, title, description, start, stop.
        Programmes missing a channel, title or valid time range are skipped.

    Raises:
        ProviderFetchError: if the document is not valid XML
    """
    try:
        root = ET.fromstring(decompress_content(xml_content))
    except ET.ParseError as e:
        logger.error(f"Failed to parse XMLTV: {e}")
        raise ProviderFetchError(f"Invalid XMLTV XML: {e}")

    programs = []
    for programme_elem in root.iter("programme"):
        channel_id = programme_elem.get("channel")
        start = parse_xmltv_time(programme_elem.get("start"))
        stop = parse_xmltv_time(programme_elem.get("stop"))
        if not channel_id or not start or not stop or stop <= start:
            continue

        title_elem = programme_elem.find("title")
        title = title_elem.text.strip() if title_elem is not None and title_elem.text else ""
        if not title:
            continue

        desc_elem = programme_elem.find("desc")
        description = desc_elem.text.strip() if desc_elem is not None and desc_elem.text else ""

        programs.append(
            {
                "channel_id": channel_id,
                "title": title,
                "description": description,
                "start": start,
                "stop": stop,
            }
        )

    return programs


def fetch_xmltv(url: str, user_agent: Optional[str] = None, timeout: int = 120) -> List[Dict]:
    """Download and parse one XMLTV document (plain or gzipped)"""
    url = normalize_xmltv_url(url)
    headers = {"User-Agent": user_agent} if user_agent else {}
    logger.debug(f"Fetching XMLTV from {url}")

    try:
        response = requests.get(url, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise ProviderFetchError(f"Failed to fetch XMLTV from {url}: {e}")

    programs = parse_xmltv_programs(response.content)
    logger.info(f"Parsed {len(programs)} programs from {url}")
    return programs


def split_epg_urls(epg_urls: Optional[str]) -> List[str]:
    """Split a comma-separated EPG URL setting into individual URLs"""
    if not epg_urls:
        return []
    return [u.strip() for u in epg_urls.split(",") if u.strip()]


def fetch_xmltv_urls(epg_urls: str, user_agent: Optional[str] = None, timeout: int = 120) -> List[Dict]:
    """
    Fetch programmes from one or more comma-separated XMLTV URLs.

    A failing URL is logged and skipped. If every URL fails the last error is
    raised, so callers can tell "provider down" apart from "no programmes".
    """
    urls = split_epg_urls(epg_urls)
    if not urls:
        return []

    all_programs: List[Dict] = []
    last_error: Optional[ProviderFetchError] = None
    failures = 0

    for url in urls:
        try:
            all_programs.extend(fetch_xmltv(url, user_agent=user_agent, timeout=timeout))
        except ProviderFetchError as e:
            logger.warning(f"Failed to fetch EPG from {url}: {e}")
            last_error = e
            failures += 1

    if failures == len(urls) and last_error is not None:
        raise last_error

    if len(urls) > 1:
        logger.info(f"Total programs from {len(urls) - failures}/{len(urls)} EPG URLs: {len(all_programs)}")
    return all_programs
