"""Pydantic models for concrete build plans and install reports."""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from keg.config import DependencyMode, EnvOverlay, Replacement, StepType, TestConfig


class ResolvedSource(BaseModel):
    """The single active source descriptor of a plan."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    mirrors: list[str] = Field(default_factory=list)
    sha256: str

    @property
    def urls(self) -> list[str]:
        return [self.url, *self.mirrors]


class ResolvedPatch(BaseModel):
    """A patch selected for the current host."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str
    sha256: str
    strip: int = 1


class ResolvedDependency(BaseModel):
    """A dependency reference bound to a filesystem prefix."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    mode: DependencyMode
    prefix: str


class PlanStep(BaseModel):
    """A conditional-free step; ``command`` already includes selected fragments."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: StepType
    command: list[str] = Field(default_factory=list)
    cwd: str | None = None
    env: EnvOverlay = Field(default_factory=EnvOverlay)
    capture: str | None = None
    timeout: float | None = None
    source: str | None = None
    into: str | None = None
    rename: str | None = None
    path: str | None = None
    replacements: list[Replacement] = Field(default_factory=list)

    @property
    def label(self) -> str:
        """Return a short human-readable description of the step."""
        if self.type == "run":
            return " ".join(self.command)
        if self.type == "install":
            return f"install {self.source} -> {self.into}"
        return f"{self.type} {self.path}"


class PlanPostInstall(BaseModel):
    """Post-install actions of a plan."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mkdirs: list[str] = Field(default_factory=list)
    steps: list[PlanStep] = Field(default_factory=list)
    keep: list[str] | None = None


class BuildPlan(BaseModel):
    """Concrete, immutable build plan derived from one recipe and one set of facts."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    version: str
    revision: int = 0
    license: list[str] = Field(default_factory=list)
    source: ResolvedSource
    patches: list[ResolvedPatch] = Field(default_factory=list)
    dependencies: list[ResolvedDependency] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict)
    env: EnvOverlay = Field(default_factory=EnvOverlay)
    steps: list[PlanStep] = Field(default_factory=list)
    post_install: PlanPostInstall | None = None
    test: TestConfig | None = None
    caveats: str | None = None
    facts: dict[str, Any] = Field(default_factory=dict)

    @property
    def pkg_version(self) -> str:
        return self.version if self.revision == 0 else f"{self.version}_{self.revision}"

    @property
    def version_major(self) -> str:
        return self.version.split(".", 1)[0]

    def runtime_dependencies(self) -> list[ResolvedDependency]:
        """Return dependencies needed after installation."""
        return [dep for dep in self.dependencies if dep.mode != "build"]

    def canonical_json(self) -> str:
        """Serialize the plan into its canonical byte-stable form."""
        return self.model_dump_json()

    def fingerprint(self) -> str:
        """Return the sha256 address of the plan."""
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()


class PruneSummary(BaseModel):
    """Counts reported by the artifact pruner."""

    model_config = ConfigDict(extra="forbid")

    kept: int = Field(ge=0)
    removed: int = Field(ge=0)


class InstallReport(BaseModel):
    """Outcome of one successful install invocation."""

    model_config = ConfigDict(extra="forbid")

    name: str
    pkg_version: str
    prefix: str
    fingerprint: str
    stages: list[str] = Field(default_factory=list)
    prune: PruneSummary | None = None
    tested: bool = False
    caveats: str | None = None
    started_at: datetime
    finished_at: datetime
