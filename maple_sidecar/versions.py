"""
Release version resolution.

A pinned version always wins. Otherwise the latest release tag is looked up
on GitHub and remembered in a `.latest-version` file for a day so repeated
startups do not hit the API.
"""

import logging
import re
import time

import httpx

from .config import settings
from .errors import VersionLookupError
from .net import http_client
from .platforms import get_cache_dir

logger = logging.getLogger(__name__)

LATEST_VERSION_FILE = ".latest-version"

_VERSION_RE = re.compile(r"^v?\d+(\.\d+)*(-[0-9A-Za-z.-]+)?$")
_LEADING_DIGITS_RE = re.compile(r"^\d+")


def is_version_name(name: str) -> bool:
    """Whether a cache directory name looks like a release tag, prereleases included."""
    return bool(_VERSION_RE.match(name))


def parse_version(tag: str) -> tuple[int, int, int]:
    """Parse 'v1.2.3' into (1, 2, 3). Missing or non-numeric parts are 0."""
    parts = tag.strip().lstrip("vV").split(".")
    numbers = []
    for part in parts[:3]:
        m = _LEADING_DIGITS_RE.match(part)
        numbers.append(int(m.group()) if m else 0)
    while len(numbers) < 3:
        numbers.append(0)
    return tuple(numbers)


def compare_versions_desc(a: str, b: str) -> int:
    """
    Three-way comparison ordering newer versions first.

    Use with functools.cmp_to_key. Components compare numerically, so
    v0.10.0 sorts before v0.9.0. Equal versions compare as 0.
    """
    va, vb = parse_version(a), parse_version(b)
    if va > vb:
        return -1
    if va < vb:
        return 1
    return 0


def get_latest_version(client: httpx.Client = None) -> str:
    """Ask the release index for the latest published tag."""
    url = settings.release_index_url
    try:
        with http_client(client, timeout=30.0) as c:
            response = c.get(url, headers={"Accept": "application/vnd.github.v3+json"})
    except httpx.HTTPError as e:
        raise VersionLookupError(f"Failed to fetch latest release from {url}: {e}", url=url) from e

    if not response.is_success:
        raise VersionLookupError(
            f"Failed to fetch latest release: {response.status_code} {response.reason_phrase} ({url})",
            url=url,
            status_code=response.status_code,
        )

    try:
        tag = response.json()["tag_name"]
    except (ValueError, KeyError, TypeError) as e:
        raise VersionLookupError(f"Malformed release index response from {url}: {e}", url=url) from e
    if not isinstance(tag, str) or not tag.strip():
        raise VersionLookupError(f"Release index at {url} returned an empty tag", url=url)
    return tag.strip()


def read_cached_version(now: float = None) -> str | None:
    """Return the cached latest version if it is younger than the TTL."""
    cache_file = get_cache_dir() / LATEST_VERSION_FILE
    now = time.time() if now is None else now
    try:
        age = now - cache_file.stat().st_mtime
        if age >= settings.version_check_ttl:
            return None
        cached = cache_file.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not cached:
        return None
    logger.info(f"Using cached latest version: {cached} (checked {round(age / 60)}m ago)")
    return cached


def write_cached_version(version: str) -> None:
    cache_dir = get_cache_dir()
    cache_dir.mkdir(parents=True, exist_ok=True)
    (cache_dir / LATEST_VERSION_FILE).write_text(version, encoding="utf-8")


def resolve_version(pinned: str = None, client: httpx.Client = None) -> str:
    """Pick the version to run: pinned, cached latest, or freshly fetched latest."""
    if pinned:
        return pinned

    cached = read_cached_version()
    if cached:
        return cached

    logger.info("Checking GitHub for latest maple-proxy release...")
    version = get_latest_version(client)
    write_cached_version(version)
    return version
