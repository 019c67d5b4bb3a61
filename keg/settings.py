"""Runtime settings resolved from arguments, environment and defaults."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from keg.errors import ConfigurationError

_PACKAGE_DIR = Path(__file__).resolve().parent
_PROJECT_RECIPES_DIR = _PACKAGE_DIR.parent / "recipes"


def _env_bool(environ: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(environ: Mapping[str, str], name: str, *, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number (got {raw!r})") from exc


def default_root() -> Path:
    """Return the default keg root directory."""
    return Path.home() / ".keg"


def resolve_recipes_dir(
    recipes_dir: Path | None, *, environ: Mapping[str, str] | None = None
) -> Path:
    """Resolve recipes directory from argument or environment."""
    if recipes_dir is not None:
        return recipes_dir
    env = os.environ if environ is None else environ
    env_value = env.get("KEG_RECIPES_DIR")
    if env_value:
        return Path(env_value)
    return _PROJECT_RECIPES_DIR


@dataclass(frozen=True, slots=True)
class PrefixLayout:
    """Directory layout rooted at one keg root."""

    root: Path
    cache_dir: Path
    system_prefix: Path

    @property
    def cellar(self) -> Path:
        return self.root / "Cellar"

    @property
    def opt(self) -> Path:
        return self.root / "opt"

    def install_prefix(self, name: str, pkg_version: str) -> Path:
        """Return the versioned install prefix for a package."""
        return self.cellar / name / pkg_version

    def opt_prefix(self, name: str) -> Path:
        """Return the stable, version-independent prefix for a package."""
        return self.opt / name


@dataclass(frozen=True, slots=True)
class Settings:
    """Effective configuration of one keg process."""

    recipes_dir: Path
    layout: PrefixLayout
    step_timeout: float = 3600.0
    fetch_timeout: float = 60.0
    keep_failed_builds: bool = False

    @classmethod
    def from_env(
        cls,
        *,
        recipes_dir: Path | None = None,
        root: Path | None = None,
        keep_failed_builds: bool | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Settings:
        """Build settings; explicit arguments win over ``KEG_*`` variables."""
        env = os.environ if environ is None else environ
        resolved_root = root or Path(env.get("KEG_ROOT") or default_root())
        cache_dir = Path(env["KEG_CACHE"]) if env.get("KEG_CACHE") else resolved_root / "cache"
        system_prefix = Path(env.get("KEG_SYSTEM_PREFIX") or "/usr")
        keep_failed = (
            keep_failed_builds
            if keep_failed_builds is not None
            else _env_bool(env, "KEG_KEEP_FAILED", default=False)
        )
        return cls(
            recipes_dir=resolve_recipes_dir(recipes_dir, environ=env),
            layout=PrefixLayout(
                root=resolved_root,
                cache_dir=cache_dir,
                system_prefix=system_prefix,
            ),
            step_timeout=_env_float(env, "KEG_STEP_TIMEOUT", default=3600.0),
            fetch_timeout=_env_float(env, "KEG_FETCH_TIMEOUT", default=60.0),
            keep_failed_builds=keep_failed,
        )
