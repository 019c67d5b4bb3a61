"""Unit tests for artifact digest verification and fetching."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import pytest

from keg import checksum
from keg.checksum import (
    artifact_basename,
    cached_artifact_path,
    compute_sha256,
    fetch_artifact,
    verify_artifact,
)
from keg.errors import FetchError, IntegrityError

PAYLOAD = b"keg source archive\n" * 1000
PAYLOAD_SHA = hashlib.sha256(PAYLOAD).hexdigest()


def _write(path: Path, data: bytes = PAYLOAD) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def test_compute_sha256_matches_hashlib(tmp_path: Path) -> None:
    artifact = _write(tmp_path / "a.tar.gz")

    assert compute_sha256(artifact) == PAYLOAD_SHA


def test_verify_artifact_accepts_uppercase_digest(tmp_path: Path) -> None:
    artifact = _write(tmp_path / "a.tar.gz")

    assert verify_artifact(artifact, PAYLOAD_SHA.upper()) == PAYLOAD_SHA
    assert artifact.exists()


def test_corrupted_artifact_is_deleted_and_raises(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    artifact = _write(tmp_path / "a.tar.gz", PAYLOAD[:-1] + b"X")

    with caplog.at_level(logging.ERROR, logger="keg.checksum"):
        with pytest.raises(IntegrityError) as exc_info:
            verify_artifact(artifact, PAYLOAD_SHA)

    assert not artifact.exists()
    assert exc_info.value.expected == PAYLOAD_SHA
    assert exc_info.value.actual != PAYLOAD_SHA
    assert exc_info.value.exit_code == 3
    assert any(getattr(record, "event", "") == "checksum.mismatch" for record in caplog.records)


def test_artifact_basename_and_cache_path(tmp_path: Path) -> None:
    url = "https://ftp.gnu.org/gnu/gcc/gcc-10.2.0/gcc-10.2.0.tar.xz"

    assert artifact_basename(url) == "gcc-10.2.0.tar.xz"
    assert artifact_basename("https://example.com/") == "download"
    assert cached_artifact_path(tmp_path, url, PAYLOAD_SHA) == (
        tmp_path / f"{PAYLOAD_SHA[:16]}--gcc-10.2.0.tar.xz"
    )


def test_fetch_artifact_downloads_file_url(tmp_path: Path) -> None:
    source = _write(tmp_path / "upstream" / "pkg-1.0.tar.gz")
    cache_dir = tmp_path / "cache"

    fetched = fetch_artifact(source.as_uri(), PAYLOAD_SHA, cache_dir=cache_dir)

    assert fetched.parent == cache_dir
    assert fetched.read_bytes() == PAYLOAD
    assert not list(cache_dir.glob("*.incomplete"))


def test_fetch_artifact_reuses_verified_cache(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cache_dir = tmp_path / "cache"
    url = "https://example.com/pkg-1.0.tar.gz"
    _write(cached_artifact_path(cache_dir, url, PAYLOAD_SHA))

    def _no_network(*args: object, **kwargs: object) -> None:
        raise AssertionError("download should not be attempted")

    monkeypatch.setattr(checksum, "_download", _no_network)

    fetched = fetch_artifact(url, PAYLOAD_SHA, cache_dir=cache_dir)

    assert fetched.read_bytes() == PAYLOAD


def test_fetch_artifact_replaces_corrupted_cache(tmp_path: Path) -> None:
    source = _write(tmp_path / "upstream" / "pkg-1.0.tar.gz")
    cache_dir = tmp_path / "cache"
    stale = _write(cached_artifact_path(cache_dir, source.as_uri(), PAYLOAD_SHA), b"truncated")

    fetched = fetch_artifact(source.as_uri(), PAYLOAD_SHA, cache_dir=cache_dir)

    assert fetched == stale
    assert fetched.read_bytes() == PAYLOAD


def test_fetch_artifact_falls_back_to_mirror(tmp_path: Path) -> None:
    mirror = _write(tmp_path / "mirror" / "pkg-1.0.tar.gz")
    missing = (tmp_path / "primary" / "pkg-1.0.tar.gz").as_uri()

    fetched = fetch_artifact(
        missing,
        PAYLOAD_SHA,
        cache_dir=tmp_path / "cache",
        mirrors=[mirror.as_uri()],
    )

    assert fetched.read_bytes() == PAYLOAD


def test_fetch_artifact_mismatch_is_not_retried_on_mirror(tmp_path: Path) -> None:
    corrupted = _write(tmp_path / "primary" / "pkg-1.0.tar.gz", b"tampered")
    mirror = _write(tmp_path / "mirror" / "pkg-1.0.tar.gz")
    cache_dir = tmp_path / "cache"

    with pytest.raises(IntegrityError):
        fetch_artifact(
            corrupted.as_uri(),
            PAYLOAD_SHA,
            cache_dir=cache_dir,
            mirrors=[mirror.as_uri()],
        )

    assert list(cache_dir.iterdir()) == []


def test_fetch_artifact_raises_when_all_urls_fail(tmp_path: Path) -> None:
    missing = [(tmp_path / name / "pkg.tar.gz").as_uri() for name in ("a", "b")]

    with pytest.raises(FetchError) as exc_info:
        fetch_artifact(missing[0], PAYLOAD_SHA, cache_dir=tmp_path / "cache", mirrors=missing[1:])

    assert exc_info.value.exit_code == 4
    assert "a/pkg.tar.gz" in exc_info.value.message
    assert "b/pkg.tar.gz" in exc_info.value.message
