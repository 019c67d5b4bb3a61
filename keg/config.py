"""Configuration models for declarative recipe definitions."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from keg.facts import parse_version

DependencyMode = Literal["runtime", "build", "system"]
StepType = Literal["run", "install", "inreplace", "mkdir"]

_ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_NAME_PATTERN = r"^[a-z0-9][a-z0-9@._+-]*$"


def _as_list(value: object) -> object:
    if isinstance(value, str):
        return [value]
    return value


def _validate_relative_path(value: str, *, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{label} must not be empty")
    if normalized.startswith("/") or ".." in normalized.replace("\\", "/").split("/"):
        raise ValueError(f"{label} must be a relative path inside its root (got {value!r})")
    return normalized


def _normalize_sha256(value: object) -> object:
    if isinstance(value, str):
        value = value.strip().lower()
        if not _SHA256_PATTERN.match(value):
            raise ValueError("sha256 must be 64 hexadecimal characters")
    return value


def _validate_command(value: list[str], *, label: str) -> list[str]:
    if not value:
        raise ValueError(f"{label} must contain at least one token")
    if not value[0].strip():
        raise ValueError(f"{label} executable must not be empty")
    return value


class PredicateConfig(BaseModel):
    """Conjunctive condition over host facts; an empty predicate always holds."""

    model_config = ConfigDict(extra="forbid")

    arch: list[str] | None = None
    not_arch: list[str] | None = None
    os: list[str] | None = None
    os_major_min: int | None = Field(default=None, ge=0)
    os_major_max: int | None = Field(default=None, ge=0)
    toolchain_min: str | None = None
    toolchain_max: str | None = None
    options: list[str] = Field(default_factory=list)
    without: list[str] = Field(default_factory=list)

    @field_validator("arch", "not_arch", "os", mode="before")
    @classmethod
    def _coerce_lists(cls, value: object) -> object:
        return _as_list(value)

    @field_validator("toolchain_min", "toolchain_max")
    @classmethod
    def _validate_toolchain_bound(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if parse_version(normalized) is None:
            raise ValueError("toolchain bounds must use numeric format (major.minor.patch)")
        return normalized

    @model_validator(mode="after")
    def validate_bounds(self) -> PredicateConfig:
        """Reject bounds that can never be satisfied."""
        if (
            self.os_major_min is not None
            and self.os_major_max is not None
            and self.os_major_min > self.os_major_max
        ):
            raise ValueError("os_major_min must not exceed os_major_max")
        overlap = set(self.options) & set(self.without)
        if overlap:
            raise ValueError(f"options both required and excluded: {', '.join(sorted(overlap))}")
        return self


class SourceConfig(BaseModel):
    """One candidate source descriptor; the first matching one is active."""

    model_config = ConfigDict(extra="forbid")

    url: str
    mirrors: list[str] = Field(default_factory=list)
    sha256: str
    version: str | None = None
    when: PredicateConfig | None = None

    @field_validator("sha256", mode="before")
    @classmethod
    def _normalize_digest(cls, value: object) -> object:
        return _normalize_sha256(value)


class PatchConfig(BaseModel):
    """A checksummed patch applied before the build steps."""

    model_config = ConfigDict(extra="forbid")

    url: str
    sha256: str
    strip: int = Field(default=1, ge=0)
    when: PredicateConfig | None = None

    @field_validator("sha256", mode="before")
    @classmethod
    def _normalize_digest(cls, value: object) -> object:
        return _normalize_sha256(value)


class DependencyConfig(BaseModel):
    """Dependency reference with its resolution mode."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=_NAME_PATTERN)
    mode: DependencyMode = "runtime"
    when: PredicateConfig | None = None


class VariableBranch(BaseModel):
    """One branch of a conditional scalar; a branch without ``when`` is the default."""

    model_config = ConfigDict(extra="forbid")

    value: str
    when: PredicateConfig | None = None


class EnvOverlay(BaseModel):
    """Environment variables to override and to delete for a subprocess."""

    model_config = ConfigDict(extra="forbid")

    set: dict[str, str] = Field(default_factory=dict)
    unset: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_names(self) -> EnvOverlay:
        """Require shell-compatible variable names."""
        for name in [*self.set, *self.unset]:
            if not _ENV_NAME_PATTERN.match(name):
                raise ValueError(f"invalid environment variable name: {name!r}")
        return self


class ArgFragment(BaseModel):
    """Command argument appended only when its predicate holds."""

    model_config = ConfigDict(extra="forbid")

    value: str
    when: PredicateConfig | None = None


class Replacement(BaseModel):
    """Regular-expression substitution applied by an ``inreplace`` step."""

    model_config = ConfigDict(extra="forbid")

    pattern: str
    replacement: str

    @field_validator("pattern")
    @classmethod
    def _validate_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value


class StepConfig(BaseModel):
    """One build or post-install step."""

    model_config = ConfigDict(extra="forbid")

    type: StepType = "run"
    command: list[str] = Field(default_factory=list)
    args: list[ArgFragment] = Field(default_factory=list)
    cwd: str | None = None
    env: EnvOverlay = Field(default_factory=EnvOverlay)
    capture: str | None = Field(default=None, pattern=r"^[a-z_][a-z0-9_]*$")
    timeout: float | None = Field(default=None, gt=0)
    source: str | None = None
    into: str | None = None
    rename: str | None = None
    path: str | None = None
    replacements: list[Replacement] = Field(default_factory=list)
    when: PredicateConfig | None = None

    @field_validator("cwd", "source", "into", "path", mode="after")
    @classmethod
    def _validate_paths(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _validate_relative_path(value, label="step path")

    @model_validator(mode="after")
    def validate_required_fields(self) -> StepConfig:
        """Validate step fields required by step type."""
        required: dict[StepType, tuple[str, ...]] = {
            "run": ("command",),
            "install": ("source", "into"),
            "inreplace": ("path", "replacements"),
            "mkdir": ("path",),
        }
        missing = [field for field in required[self.type] if getattr(self, field) in (None, "", [])]
        if missing:
            missing_list = ", ".join(missing)
            raise ValueError(f"step '{self.type}' is missing required field(s): {missing_list}")
        if self.type == "run":
            _validate_command(self.command, label="run step command")
        elif self.args or self.capture:
            raise ValueError(f"step '{self.type}' does not accept 'args' or 'capture'")
        return self


class BuildConfig(BaseModel):
    """Recipe-level environment overlay and ordered build steps."""

    model_config = ConfigDict(extra="forbid")

    env: EnvOverlay = Field(default_factory=EnvOverlay)
    steps: list[StepConfig] = Field(default_factory=list)


class PostInstallConfig(BaseModel):
    """Steps and pruning rules applied after the build steps."""

    model_config = ConfigDict(extra="forbid")

    mkdirs: list[str] = Field(default_factory=list)
    steps: list[StepConfig] = Field(default_factory=list)
    keep: list[str] | None = None

    @field_validator("mkdirs", mode="after")
    @classmethod
    def _validate_mkdirs(cls, value: list[str]) -> list[str]:
        return [_validate_relative_path(item, label="mkdirs entry") for item in value]

    @field_validator("keep", mode="after")
    @classmethod
    def _validate_keep(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        prefixes: list[str] = []
        for raw in value:
            prefix = raw.strip()
            if not prefix or "/" in prefix:
                raise ValueError(f"keep entries must be non-empty basename prefixes (got {raw!r})")
            if prefix not in prefixes:
                prefixes.append(prefix)
        if not prefixes:
            raise ValueError("keep must list at least one prefix")
        return prefixes


class ExpectConfig(BaseModel):
    """Expected-output matcher: exact stripped output or a regex search."""

    model_config = ConfigDict(extra="forbid")

    equals: str | None = None
    pattern: str | None = None

    @model_validator(mode="after")
    def validate_one_matcher(self) -> ExpectConfig:
        """Require exactly one matcher kind."""
        if (self.equals is None) == (self.pattern is None):
            raise ValueError("expect requires exactly one of 'equals' or 'pattern'")
        return self


class TestStepConfig(BaseModel):
    """A command run inside the test workspace."""

    __test__ = False
    model_config = ConfigDict(extra="forbid")

    command: list[str]
    expect: ExpectConfig | None = None
    exit_code: int = 0
    timeout: float = Field(default=60.0, gt=0)
    env: EnvOverlay = Field(default_factory=EnvOverlay)

    @field_validator("command", mode="after")
    @classmethod
    def _validate_command(cls, value: list[str]) -> list[str]:
        return _validate_command(value, label="test command")


class ReadinessConfig(BaseModel):
    """How to decide that a started service accepts queries."""

    model_config = ConfigDict(extra="forbid")

    path: str | None = None
    port: int | None = Field(default=None, gt=0, lt=65536)
    delay: float | None = Field(default=None, ge=0)
    timeout: float = Field(default=10.0, gt=0)
    interval: float = Field(default=0.1, gt=0)

    @field_validator("path", mode="after")
    @classmethod
    def _validate_path(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _validate_relative_path(value, label="ready.path")

    @model_validator(mode="after")
    def validate_probe(self) -> ReadinessConfig:
        """Require at most one probe; a bare ``delay`` is a plain grace period."""
        if self.path is not None and self.port is not None:
            raise ValueError("ready accepts either 'path' or 'port', not both")
        if self.path is None and self.port is None and self.delay is None:
            raise ValueError("ready requires one of 'path', 'port' or 'delay'")
        return self


class ServiceConfig(BaseModel):
    """A long-running process started for the duration of one query."""

    model_config = ConfigDict(extra="forbid")

    start: list[str]
    ready: ReadinessConfig
    query: list[str]
    expect: ExpectConfig | None = None
    exit_code: int = 0
    timeout: float = Field(default=60.0, gt=0)
    stop_timeout: float = Field(default=5.0, gt=0)

    @field_validator("start", "query", mode="after")
    @classmethod
    def _validate_commands(cls, value: list[str]) -> list[str]:
        return _validate_command(value, label="service command")


class TestConfig(BaseModel):
    """Embedded smoke test run against the installed prefix."""

    __test__ = False
    model_config = ConfigDict(extra="forbid")

    files: dict[str, str] = Field(default_factory=dict)
    steps: list[TestStepConfig] = Field(default_factory=list)
    service: ServiceConfig | None = None

    @model_validator(mode="after")
    def validate_has_checks(self) -> TestConfig:
        """Require at least one step or a service block."""
        if not self.steps and self.service is None:
            raise ValueError("test must define at least one step or a service")
        for name in self.files:
            _validate_relative_path(name, label="test file name")
        return self


class RecipeConfig(BaseModel):
    """Top-level recipe configuration loaded from ``recipe.yaml``."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(pattern=_NAME_PATTERN)
    description: str
    homepage: str | None = None
    license: list[str] = Field(default_factory=list)
    version: str
    revision: int = Field(default=0, ge=0)
    sources: list[SourceConfig] = Field(min_length=1)
    patches: list[PatchConfig] = Field(default_factory=list)
    dependencies: list[DependencyConfig] = Field(default_factory=list)
    variables: dict[str, list[VariableBranch]] = Field(default_factory=dict)
    build: BuildConfig = Field(default_factory=BuildConfig)
    post_install: PostInstallConfig | None = None
    test: TestConfig | None = None
    caveats: str | None = None

    @field_validator("license", mode="before")
    @classmethod
    def _coerce_license(cls, value: object) -> object:
        return _as_list(value)

    @field_validator("version")
    @classmethod
    def _validate_version(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("version must not be empty")
        return normalized

    @model_validator(mode="after")
    def validate_references(self) -> RecipeConfig:
        """Reject duplicate dependencies and malformed variable tables."""
        seen: set[tuple[str, str]] = set()
        for dependency in self.dependencies:
            key = (dependency.name, dependency.mode)
            if key in seen:
                raise ValueError(f"duplicate dependency: {dependency.name} ({dependency.mode})")
            seen.add(key)
            if dependency.name == self.name:
                raise ValueError("a recipe must not depend on itself")
        for variable, branches in self.variables.items():
            if not re.match(r"^[a-z_][a-z0-9_]*$", variable):
                raise ValueError(f"invalid variable name: {variable!r}")
            if not branches:
                raise ValueError(f"variable '{variable}' must define at least one branch")
        return self

    @property
    def pkg_version(self) -> str:
        """Return the default version including the revision suffix."""
        return self.version if self.revision == 0 else f"{self.version}_{self.revision}"

    def assert_name_matches_folder(self, folder_name: str) -> None:
        """Raise if the recipe name does not match the folder name."""
        if self.name != folder_name:
            raise ValueError(
                f"recipe name '{self.name}' does not match folder name '{folder_name}'"
            )


def parse_recipe_config(data: Mapping[str, object], folder_name: str | None = None) -> RecipeConfig:
    """Validate recipe config data and optionally enforce folder/name matching."""
    config = RecipeConfig.model_validate(data)
    if folder_name is not None:
        config.assert_name_matches_folder(folder_name)
    return config
