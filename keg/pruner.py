"""Post-install pruning of an install prefix down to an allow-list."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from keg.logging_utils import log_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AllowRule:
    """Keep a file when its basename starts with ``prefix``."""

    prefix: str

    def matches(self, basename: str) -> bool:
        return basename.startswith(self.prefix)


@dataclass(slots=True)
class PruneResult:
    """Relative paths of files kept and removed by one pruning pass."""

    kept: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


def rules_from_prefixes(prefixes: Iterable[str]) -> list[AllowRule]:
    """Build allow-list rules from basename prefixes."""
    return [AllowRule(prefix) for prefix in prefixes]


def is_allowed(basename: str, rules: Sequence[AllowRule]) -> bool:
    """Return ``True`` when any rule keeps ``basename``."""
    return any(rule.matches(basename) for rule in rules)


def prune_tree(root: Path, rules: Sequence[AllowRule]) -> PruneResult:
    """Remove every non-directory entry under ``root`` that no rule allows.

    Directories are kept, even when pruning leaves them empty. Symlinks are
    never followed: a symlink, including one pointing at a directory, is
    judged by its own basename and unlinked without touching its target.
    """
    result = PruneResult()
    boundary = root.resolve()
    if not boundary.is_dir():
        return result

    log_event(logger, logging.INFO, "pruner.started", root=str(boundary), rules=len(rules))
    for dirpath, dirnames, filenames in os.walk(boundary, topdown=True, followlinks=False):
        current = Path(dirpath)
        linked_dirs = [name for name in dirnames if (current / name).is_symlink()]
        dirnames[:] = [name for name in dirnames if name not in linked_dirs]

        for name in sorted([*filenames, *linked_dirs]):
            entry = current / name
            relative = entry.relative_to(boundary).as_posix()
            if is_allowed(name, rules):
                result.kept.append(relative)
                continue
            # The entry itself must live under the boundary; its target may not.
            if not entry.parent.resolve().is_relative_to(boundary):
                log_event(
                    logger,
                    logging.WARNING,
                    "pruner.outside_boundary",
                    path=str(entry),
                )
                continue
            entry.unlink(missing_ok=True)
            result.removed.append(relative)

    log_event(
        logger,
        logging.INFO,
        "pruner.completed",
        root=str(boundary),
        kept=len(result.kept),
        removed=len(result.removed),
    )
    return result
