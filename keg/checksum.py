"""Artifact fetching and sha256 verification."""

from __future__ import annotations

import hashlib
import logging
import shutil
import urllib.error
import urllib.request
from collections.abc import Sequence
from pathlib import Path
from urllib.parse import unquote, urlparse

from keg.errors import FetchError, IntegrityError
from keg.logging_utils import log_event

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_INCOMPLETE_SUFFIX = ".incomplete"


def compute_sha256(path: Path) -> str:
    """Return the hex sha256 digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_artifact(path: Path, expected: str) -> str:
    """Verify ``path`` against ``expected``; delete it and raise on mismatch."""
    expected_digest = expected.strip().lower()
    actual = compute_sha256(path)
    if actual != expected_digest:
        path.unlink(missing_ok=True)
        log_event(
            logger,
            logging.ERROR,
            "checksum.mismatch",
            path=str(path),
            expected=expected_digest,
            actual=actual,
        )
        raise IntegrityError(
            f"sha256 mismatch for {path.name}: expected {expected_digest}, got {actual}",
            path=str(path),
            expected=expected_digest,
            actual=actual,
        )
    log_event(logger, logging.DEBUG, "checksum.verified", path=str(path), sha256=actual)
    return actual


def artifact_basename(url: str) -> str:
    """Return the file name a URL downloads to."""
    name = Path(unquote(urlparse(url).path)).name
    return name or "download"


def cached_artifact_path(cache_dir: Path, url: str, expected: str) -> Path:
    """Return the content-addressed cache location of an artifact."""
    return cache_dir / f"{expected.strip().lower()[:16]}--{artifact_basename(url)}"


def _download(url: str, destination: Path, *, timeout_seconds: float) -> None:
    with urllib.request.urlopen(url, timeout=timeout_seconds) as response:
        with destination.open("wb") as handle:
            shutil.copyfileobj(response, handle, _CHUNK_SIZE)


def fetch_artifact(
    url: str,
    expected: str,
    *,
    cache_dir: Path,
    mirrors: Sequence[str] = (),
    timeout_seconds: float = 60.0,
) -> Path:
    """Return a verified local copy of ``url``, downloading it when needed.

    A cached copy that still verifies is reused without network access. The
    primary URL and then each mirror are tried on transport failure only; a
    digest mismatch is fatal and never retried.
    """
    cache_dir.mkdir(parents=True, exist_ok=True)
    target = cached_artifact_path(cache_dir, url, expected)
    if target.exists():
        try:
            verify_artifact(target, expected)
        except IntegrityError:
            log_event(logger, logging.WARNING, "checksum.cache_invalid", path=str(target))
        else:
            log_event(logger, logging.INFO, "checksum.cache_hit", path=str(target), url=url)
            return target

    partial = target.with_name(target.name + _INCOMPLETE_SUFFIX)
    errors: list[str] = []
    for candidate in [url, *mirrors]:
        log_event(logger, logging.INFO, "checksum.fetch_started", url=candidate)
        try:
            _download(candidate, partial, timeout_seconds=timeout_seconds)
        except (OSError, urllib.error.URLError, ValueError) as exc:
            partial.unlink(missing_ok=True)
            errors.append(f"{candidate}: {exc}")
            log_event(
                logger,
                logging.WARNING,
                "checksum.fetch_failed",
                url=candidate,
                error=str(exc),
            )
            continue

        verify_artifact(partial, expected)
        partial.replace(target)
        log_event(logger, logging.INFO, "checksum.fetch_completed", url=candidate, path=str(target))
        return target

    raise FetchError("could not download artifact:\n  " + "\n  ".join(errors))
