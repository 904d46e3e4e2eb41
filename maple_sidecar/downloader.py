"""
Download, verification and extraction of maple-proxy releases.

`ensure_binary` is the entry point: it resolves the version to run, reuses
a cached binary when one exists, and otherwise downloads the platform
archive, checks it against the published SHA-256, unpacks it and moves the
binary into place. The binary only appears at its final path once it has
been verified, extracted and made executable.
"""

import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from .errors import ChecksumMismatchError, DownloadError, ExtractionError
from .janitor import cleanup_old_versions
from .net import http_client
from .platforms import get_artifact, get_binary_path, get_checksum_url, get_release_url
from .versions import resolve_version

logger = logging.getLogger(__name__)


@dataclass
class DownloadResult:
    binary_path: Path
    version: str


def download(url: str, client: httpx.Client = None) -> bytes:
    """Fetch `url`, following redirects. Non-2xx responses raise DownloadError."""
    try:
        with http_client(client) as c:
            response = c.get(url, follow_redirects=True)
    except httpx.HTTPError as e:
        raise DownloadError(f"Download failed: {e} ({url})", url=url) from e

    if not response.is_success:
        raise DownloadError(
            f"Download failed: {response.status_code} {response.reason_phrase} ({url})",
            url=url,
            status_code=response.status_code,
        )
    return response.content


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(file_path: Path, checksum_url: str, client: httpx.Client = None) -> bool:
    """
    Verify `file_path` against the published .sha256 file.

    Returns True when the digest matched and False when verification was
    skipped because the release has no checksum file (HTTP 404). Any other
    failed fetch raises DownloadError. On mismatch the file is deleted and
    ChecksumMismatchError is raised.
    """
    file_path = Path(file_path)
    try:
        with http_client(client) as c:
            response = c.get(checksum_url, follow_redirects=True)
    except httpx.HTTPError as e:
        raise DownloadError(
            f"Failed to fetch checksum for {file_path.name}: {e} ({checksum_url})", url=checksum_url
        ) from e

    if response.status_code == 404:
        logger.warning(f"Checksum file not found (404), skipping verification for {file_path.name}")
        return False
    if not response.is_success:
        raise DownloadError(
            f"Failed to fetch checksum for {file_path.name}: {response.status_code} {response.reason_phrase}. "
            f"This may indicate GitHub rate limiting or a server error. ({checksum_url})",
            url=checksum_url,
            status_code=response.status_code,
        )

    tokens = response.text.split()
    expected = tokens[0].lower() if tokens else ""
    actual = sha256_file(file_path)

    if actual != expected:
        file_path.unlink(missing_ok=True)
        raise ChecksumMismatchError(file_path.name, expected or "<empty>", actual)

    logger.info(f"Checksum verified for {file_path.name}")
    return True


def _check_member_path(dest_dir: Path, name: str) -> None:
    target = (dest_dir / name).resolve()
    if target != dest_dir and dest_dir not in target.parents:
        raise ExtractionError(f"Archive member {name!r} would extract outside {dest_dir}")


def extract(archive_path: Path, dest_dir: Path, archive_type: str) -> None:
    """Unpack a tar.gz or zip archive into `dest_dir`."""
    archive_path = Path(archive_path)
    dest_dir = Path(dest_dir).resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        if archive_type == "tar.gz":
            with tarfile.open(archive_path, mode="r:gz") as tf:
                for member in tf.getmembers():
                    _check_member_path(dest_dir, member.name)
                if hasattr(tarfile, "data_filter"):
                    tf.extractall(dest_dir, filter="data")
                else:
                    tf.extractall(dest_dir)
        elif archive_type == "zip":
            with zipfile.ZipFile(archive_path) as zf:
                for name in zf.namelist():
                    _check_member_path(dest_dir, name)
                zf.extractall(dest_dir)
        else:
            raise ExtractionError(f"Unknown archive type {archive_type!r} for {archive_path.name}")
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
        raise ExtractionError(f"Failed to extract {archive_path.name}: {e}") from e


def _find_binary(root: Path, binary_name: str) -> Path:
    candidate = root / binary_name
    if candidate.is_file():
        return candidate
    for path in sorted(root.rglob(binary_name)):
        if path.is_file():
            return path
    raise ExtractionError(f"{binary_name} not found in extracted archive")


def ensure_binary(pinned_version: str = None, client: httpx.Client = None) -> DownloadResult:
    """Make sure the binary for the resolved version is on disk and verified."""
    with http_client(client) as c:
        version = resolve_version(pinned_version, client=c)
        binary_path = get_binary_path(version)

        if binary_path.exists():
            logger.info(f"maple-proxy {version} already cached at {binary_path}")
            cleanup_old_versions(version)
            return DownloadResult(binary_path=binary_path, version=version)

        artifact = get_artifact()
        version_dir = binary_path.parent
        created_dir = not version_dir.exists()
        version_dir.mkdir(parents=True, exist_ok=True)
        archive_path = version_dir / artifact.filename
        staging_dir = None

        try:
            logger.info(f"Downloading maple-proxy {version} for {artifact.name}...")
            data = download(get_release_url(version, artifact), client=c)
            archive_path.write_bytes(data)

            verify_checksum(archive_path, get_checksum_url(version, artifact), client=c)

            logger.info(f"Extracting to {version_dir}...")
            staging_dir = Path(tempfile.mkdtemp(prefix=".extract-", dir=version_dir))
            extract(archive_path, staging_dir, artifact.archive_type)
            archive_path.unlink()

            extracted = _find_binary(staging_dir, binary_path.name)
            if os.name != "nt":
                os.chmod(extracted, 0o755)
            os.replace(extracted, binary_path)
        except Exception:
            if created_dir and not binary_path.exists():
                shutil.rmtree(version_dir, ignore_errors=True)
            raise
        finally:
            archive_path.unlink(missing_ok=True)
            if staging_dir is not None:
                shutil.rmtree(staging_dir, ignore_errors=True)

    logger.info(f"maple-proxy {version} ready at {binary_path}")
    cleanup_old_versions(version)
    return DownloadResult(binary_path=binary_path, version=version)
