"""Environment facts consumed by variant selection."""

from __future__ import annotations

import os
import platform
import re
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, field
from shutil import which

_NUMERIC_VERSION_PATTERN = re.compile(r"^\d+(?:\.\d+){0,2}$")
_ARCH_ALIASES = {
    "aarch64": "arm64",
    "arm64": "arm64",
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x64": "x86_64",
}
_TRIPLE_CPU = {"arm64": "aarch64", "x86_64": "x86_64"}


def parse_version(value: str | None) -> tuple[int, int, int] | None:
    """Parse ``major[.minor[.patch]]`` into a comparable tuple."""
    if value is None:
        return None
    normalized = value.strip()
    if not _NUMERIC_VERSION_PATTERN.match(normalized):
        return None
    parts = [int(part) for part in normalized.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return (parts[0], parts[1], parts[2])


def normalize_arch(machine: str) -> str:
    """Map ``platform.machine()`` spellings onto keg architecture tags."""
    lowered = machine.strip().lower()
    return _ARCH_ALIASES.get(lowered, lowered)


def _major_of(release: str) -> int | None:
    match = re.match(r"^(\d+)", release.strip())
    if match is None:
        return None
    return int(match.group(1))


@dataclass(frozen=True, slots=True)
class HostFacts:
    """The complete set of facts a recipe predicate may consult."""

    arch: str
    os: str
    os_major: int | None = None
    toolchain_version: str | None = None
    options: frozenset[str] = field(default_factory=frozenset)
    cc: str = "cc"
    jobs: int = 1

    @property
    def host_triple(self) -> str:
        """Return the GNU-style host triple, e.g. ``aarch64-apple-darwin20``."""
        cpu = _TRIPLE_CPU.get(self.arch, self.arch)
        if self.os == "darwin":
            return f"{cpu}-apple-darwin{self.os_major if self.os_major is not None else ''}"
        if self.os == "linux":
            return f"{cpu}-pc-linux-gnu"
        return f"{cpu}-unknown-{self.os}"

    def with_options(self, options: Iterable[str]) -> HostFacts:
        """Return a copy with the given caller option set."""
        return HostFacts(
            arch=self.arch,
            os=self.os,
            os_major=self.os_major,
            toolchain_version=self.toolchain_version,
            options=frozenset(option.strip() for option in options if option.strip()),
            cc=self.cc,
            jobs=self.jobs,
        )

    def as_dict(self) -> dict[str, object]:
        """Serialize facts with a stable option ordering."""
        return {
            "arch": self.arch,
            "os": self.os,
            "os_major": self.os_major,
            "toolchain_version": self.toolchain_version,
            "options": sorted(self.options),
            "cc": self.cc,
            "jobs": self.jobs,
            "host_triple": self.host_triple,
        }


def detect_toolchain_version(cc: str = "cc", *, timeout_seconds: float = 10.0) -> str | None:
    """Return the compiler version reported by ``cc -dumpversion``."""
    if which(cc) is None:
        return None
    try:
        proc = subprocess.run(
            [cc, "-dumpversion"],
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    version = proc.stdout.strip()
    return version or None


def detect_host_facts(
    options: Iterable[str] = (),
    *,
    probe_toolchain: bool = True,
) -> HostFacts:
    """Detect facts about the running host."""
    cc = os.environ.get("CC") or "cc"
    return HostFacts(
        arch=normalize_arch(platform.machine()),
        os=platform.system().lower(),
        os_major=_major_of(platform.release()),
        toolchain_version=detect_toolchain_version(cc) if probe_toolchain else None,
        options=frozenset(option.strip() for option in options if option.strip()),
        cc=cc,
        jobs=os.cpu_count() or 1,
    )
