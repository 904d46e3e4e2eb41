"""
Cache cleanup for downloaded releases.

Keeps the current version plus the newest other one and removes the rest.
Cleanup is best-effort: failures are logged and never raised.
"""

import logging
import shutil
from functools import cmp_to_key
from pathlib import Path

from .config import settings
from .platforms import get_cache_dir
from .versions import compare_versions_desc, is_version_name

logger = logging.getLogger(__name__)


def list_cached_versions(cache_dir: Path = None) -> list[str]:
    """Version directories in the cache, newest first."""
    cache_dir = Path(cache_dir) if cache_dir else get_cache_dir()
    names = [p.name for p in cache_dir.iterdir() if p.is_dir() and is_version_name(p.name)]
    return sorted(names, key=cmp_to_key(compare_versions_desc))


def cleanup_old_versions(current_version: str, cache_dir: Path = None) -> list[str]:
    """Remove old version directories. Returns the names that were removed."""
    cache_dir = Path(cache_dir) if cache_dir else get_cache_dir()
    max_kept = settings.max_kept_versions

    try:
        version_dirs = list_cached_versions(cache_dir)
    except OSError as e:
        logger.debug(f"Skipping cache cleanup, cannot list {cache_dir}: {e}")
        return []

    if len(version_dirs) <= max_kept:
        return []

    to_keep = {current_version}
    for name in version_dirs:
        if len(to_keep) >= max_kept:
            break
        to_keep.add(name)

    removed = []
    for name in version_dirs:
        if name in to_keep:
            continue
        try:
            shutil.rmtree(cache_dir / name)
            removed.append(name)
            logger.info(f"Cleaned up old maple-proxy version: {name}")
        except OSError as e:
            logger.warning(f"Failed to remove old maple-proxy version {name}: {e}")
    return removed
