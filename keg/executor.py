"""Build plan execution: template expansion, scoped environments and ordered steps."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tarfile
import zipfile
from collections.abc import Mapping, Sequence
from pathlib import Path
from time import perf_counter
from typing import Any, NoReturn

from keg.config import EnvOverlay
from keg.errors import BuildStepError, ConfigurationError, Stage, output_tail
from keg.logging_utils import log_event
from keg.schemas import BuildPlan, PlanStep

logger = logging.getLogger(__name__)

LOG_DIRNAME = ".keg-logs"
PREFIX_SUBDIRS = ("bin", "sbin", "lib", "include", "share", "etc", "var", "libexec")
_LABEL_SAFE = re.compile(r"[^A-Za-z0-9._-]+")


def expand(template: str, context: Mapping[str, Any]) -> str:
    """Expand ``{placeholder}`` fields of ``template`` against ``context``."""
    try:
        return template.format_map(context)
    except KeyError as exc:
        raise ConfigurationError(
            f"unknown placeholder {{{exc.args[0]}}} in {template!r}",
            stage="build",
        ) from exc
    except (IndexError, AttributeError, ValueError) as exc:
        raise ConfigurationError(f"invalid template {template!r}: {exc}", stage="build") from exc


def build_context(
    plan: BuildPlan,
    *,
    prefix: Path,
    opt_prefix: Path | None = None,
    buildpath: Path | None = None,
    extra: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the values recipe templates may reference."""
    facts = plan.facts
    context: dict[str, Any] = {
        "name": plan.name,
        "version": plan.version,
        "version_major": plan.version_major,
        "pkg_version": plan.pkg_version,
        "revision": str(plan.revision),
        "prefix": str(prefix),
        "opt_prefix": str(opt_prefix or prefix),
        "arch": str(facts.get("arch", "")),
        "os": str(facts.get("os", "")),
        "os_major": "" if facts.get("os_major") is None else str(facts["os_major"]),
        "host_triple": str(facts.get("host_triple", "")),
        "toolchain_version": str(facts.get("toolchain_version") or ""),
        "cc": str(facts.get("cc") or "cc"),
        "jobs": str(facts.get("jobs") or 1),
        "options": " ".join(facts.get("options") or []),
        "deps": {dep.name: dep.prefix for dep in plan.dependencies},
    }
    for subdir in PREFIX_SUBDIRS:
        context[subdir] = str(prefix / subdir)
    if buildpath is not None:
        context["buildpath"] = str(buildpath)
    if extra:
        context.update(extra)

    for variable, template in plan.variables.items():
        if variable in context:
            raise ConfigurationError(
                f"variable '{variable}' shadows a built-in template value",
                stage="select",
            )
        context[variable] = expand(template, context).strip()
    return context


def scoped_environment(
    base: Mapping[str, str],
    overlays: Sequence[EnvOverlay],
    context: Mapping[str, Any],
) -> dict[str, str]:
    """Return a fresh environment: ``base`` with each overlay applied in order."""
    env = dict(base)
    for overlay in overlays:
        for name in overlay.unset:
            env.pop(name, None)
        for name, value in overlay.set.items():
            env[name] = expand(value, context)
    return env


def unpack_source(archive: Path, destination: Path, *, name: str | None = None) -> Path:
    """Extract ``archive`` into ``destination`` and return the source root.

    An archive holding a single top-level directory yields that directory.
    Files that are not tar or zip archives are copied as-is.
    """
    destination.mkdir(parents=True, exist_ok=True)
    if tarfile.is_tarfile(archive):
        with tarfile.open(archive) as bundle:
            bundle.extractall(destination, filter="data")
    elif zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as bundle:
            bundle.extractall(destination)
    else:
        shutil.copy2(archive, destination / (name or archive.name))
        return destination

    entries = [entry for entry in destination.iterdir() if entry.name != LOG_DIRNAME]
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return destination


def _inside(path: Path, root: Path) -> bool:
    return path.resolve().is_relative_to(root.resolve())


class BuildExecutor:
    """Run the steps of one build plan against one install prefix.

    Every step receives a freshly computed environment; values produced by
    a step reach later steps only through ``capture``.
    """

    def __init__(
        self,
        plan: BuildPlan,
        *,
        prefix: Path,
        buildpath: Path,
        opt_prefix: Path | None = None,
        base_env: Mapping[str, str] | None = None,
        step_timeout: float = 3600.0,
    ) -> None:
        self.plan = plan
        self.prefix = prefix
        self.buildpath = buildpath
        self.step_timeout = step_timeout
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.context = build_context(
            plan,
            prefix=prefix,
            opt_prefix=opt_prefix,
            buildpath=buildpath,
        )
        self.captured: dict[str, str] = {}
        self.executed: list[int] = []

    @property
    def log_dir(self) -> Path:
        return self.buildpath / LOG_DIRNAME

    def validate(self) -> None:
        """Expand every template of the plan once so errors surface before step 1."""
        declared: set[str] = set()
        all_steps = list(self.plan.steps)
        if self.plan.post_install is not None:
            all_steps.extend(self.plan.post_install.steps)
            for directory in self.plan.post_install.mkdirs:
                expand(directory, self.context)
        for value in self.plan.env.set.values():
            expand(value, self.context)
        for step in all_steps:
            context = {**self.context, **{capture: "" for capture in declared}}
            for template in self._templates(step):
                expand(template, context)
            if step.capture is not None:
                if step.capture in self.context:
                    raise ConfigurationError(
                        f"capture '{step.capture}' shadows a built-in template value",
                        stage="build",
                    )
                declared.add(step.capture)

    def run(self, patch_files: Sequence[Path] = ()) -> None:
        """Validate the plan, apply patches and run the build steps in order."""
        self.validate()
        self.prefix.mkdir(parents=True, exist_ok=True)
        for patch_path, patch in zip(patch_files, self.plan.patches, strict=True):
            command = ["patch", f"-p{patch.strip}", "-i", str(patch_path)]
            self._run_command(
                command,
                index=None,
                label=f"patch {patch_path.name}",
                cwd=self.buildpath,
                env=scoped_environment(self.base_env, [self.plan.env], self.context),
                timeout=self.step_timeout,
                stage="build",
            )
        self.run_steps(self.plan.steps, stage="build")

    def run_post_install(self) -> None:
        """Create declared directories and run the post-install steps."""
        post_install = self.plan.post_install
        if post_install is None:
            return
        for directory in post_install.mkdirs:
            target = self.prefix / expand(directory, self.context)
            if not _inside(target.parent, self.prefix):
                raise ConfigurationError(
                    f"post_install directory escapes the prefix: {directory}",
                    stage="post_install",
                )
            target.mkdir(parents=True, exist_ok=True)
        self.run_steps(post_install.steps, stage="post_install")

    def run_steps(self, steps: Sequence[PlanStep], *, stage: Stage) -> None:
        """Run ``steps`` strictly in order, stopping at the first failure."""
        for index, step in enumerate(steps, start=1):
            context = {**self.context, **self.captured}
            started = perf_counter()
            log_event(
                logger,
                logging.INFO,
                "executor.step_started",
                stage=stage,
                index=index,
                step_type=step.type,
                label=step.label,
            )
            if step.type == "run":
                self._run_step(index, step, context, stage=stage)
            elif step.type == "install":
                self._install_step(index, step, context, stage=stage)
            elif step.type == "inreplace":
                self._inreplace_step(index, step, context, stage=stage)
            elif step.type == "mkdir":
                self._mkdir_step(index, step, context, stage=stage)
            self.executed.append(index)
            log_event(
                logger,
                logging.INFO,
                "executor.step_completed",
                stage=stage,
                index=index,
                duration_ms=int((perf_counter() - started) * 1000),
            )

    def _templates(self, step: PlanStep) -> list[str]:
        templates = [*step.command, *step.env.set.values()]
        for value in (step.cwd, step.source, step.into, step.rename, step.path):
            if value is not None:
                templates.append(value)
        templates.extend(replacement.replacement for replacement in step.replacements)
        return templates

    def _step_cwd(self, step: PlanStep, context: Mapping[str, Any], *, stage: Stage) -> Path:
        if step.cwd is None:
            return self.buildpath
        cwd = self.buildpath / expand(step.cwd, context)
        if not _inside(cwd.parent, self.buildpath):
            raise ConfigurationError(f"step cwd escapes the build directory: {step.cwd}", stage=stage)
        cwd.mkdir(parents=True, exist_ok=True)
        return cwd

    def _run_step(
        self, index: int, step: PlanStep, context: Mapping[str, Any], *, stage: Stage
    ) -> None:
        command = [expand(token, context) for token in step.command]
        env = scoped_environment(self.base_env, [self.plan.env, step.env], context)
        stdout = self._run_command(
            command,
            index=index,
            label=step.label,
            cwd=self._step_cwd(step, context, stage=stage),
            env=env,
            timeout=step.timeout or self.step_timeout,
            stage=stage,
        )
        if step.capture is not None:
            self.captured[step.capture] = stdout.strip()
            log_event(
                logger,
                logging.DEBUG,
                "executor.value_captured",
                index=index,
                capture=step.capture,
                value=self.captured[step.capture],
            )

    def _run_command(
        self,
        command: list[str],
        *,
        index: int | None,
        label: str,
        cwd: Path,
        env: Mapping[str, str],
        timeout: float,
        stage: Stage,
    ) -> str:
        try:
            proc = subprocess.run(
                command,
                cwd=cwd,
                env=dict(env),
                check=False,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            self._fail(
                f"command not found: {exc.filename or command[0]}",
                index=index,
                label=label,
                command=command,
                stage=stage,
            )
        except OSError as exc:
            self._fail(
                f"could not run {command[0]}: {exc.strerror or exc}",
                index=index,
                label=label,
                command=command,
                stage=stage,
            )
        except subprocess.TimeoutExpired as exc:
            stderr = exc.stderr.decode(errors="replace") if isinstance(exc.stderr, bytes) else ""
            self._fail(
                f"step timed out after {timeout}s",
                index=index,
                label=label,
                command=command,
                stderr=stderr,
                stage=stage,
            )

        self._write_log(index, label, command, proc.stdout, proc.stderr)
        if proc.returncode != 0:
            self._fail(
                f"exited with status {proc.returncode}",
                index=index,
                label=label,
                command=command,
                returncode=proc.returncode,
                stderr=proc.stderr or proc.stdout,
                stage=stage,
            )
        return proc.stdout

    def _install_step(
        self, index: int, step: PlanStep, context: Mapping[str, Any], *, stage: Stage
    ) -> None:
        assert step.source is not None and step.into is not None
        source = self.buildpath / expand(step.source, context)
        target_dir = self.prefix / expand(step.into, context)
        if not _inside(source, self.buildpath) or not _inside(target_dir.parent, self.prefix):
            raise ConfigurationError(f"install step escapes its root: {step.label}", stage=stage)
        target = target_dir / (expand(step.rename, context) if step.rename else source.name)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(source, target)
        except OSError as exc:
            self._fail(str(exc), index=index, label=step.label, command=[], stage=stage)

    def _inreplace_step(
        self, index: int, step: PlanStep, context: Mapping[str, Any], *, stage: Stage
    ) -> None:
        assert step.path is not None
        path = self.buildpath / expand(step.path, context)
        if not _inside(path, self.buildpath):
            raise ConfigurationError(
                f"inreplace path escapes the build directory: {step.path}", stage=stage
            )
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            self._fail(str(exc), index=index, label=step.label, command=[], stage=stage)
        for replacement in step.replacements:
            value = expand(replacement.replacement, context)
            text, count = re.subn(
                replacement.pattern,
                lambda _match, value=value: value,
                text,
                flags=re.MULTILINE,
            )
            if count == 0:
                self._fail(
                    f"pattern {replacement.pattern!r} did not match in {step.path}",
                    index=index,
                    label=step.label,
                    command=[],
                    stage=stage,
                )
        path.write_text(text, encoding="utf-8")

    def _mkdir_step(
        self, index: int, step: PlanStep, context: Mapping[str, Any], *, stage: Stage
    ) -> None:
        assert step.path is not None
        target = self.prefix / expand(step.path, context)
        if not _inside(target.parent, self.prefix):
            raise ConfigurationError(f"mkdir path escapes the prefix: {step.path}", stage=stage)
        target.mkdir(parents=True, exist_ok=True)

    def _write_log(
        self, index: int | None, label: str, command: list[str], stdout: str, stderr: str
    ) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        slug = _LABEL_SAFE.sub("_", label)[:48].strip("_") or "step"
        number = f"{index:02d}" if index is not None else "00"
        log_path = self.log_dir / f"{number}.{slug}.log"
        log_path.write_text(
            f"$ {' '.join(command)}\n{stdout}{stderr}",
            encoding="utf-8",
        )

    def _fail(
        self,
        reason: str,
        *,
        index: int | None,
        label: str,
        command: list[str],
        stage: Stage,
        returncode: int | None = None,
        stderr: str = "",
    ) -> NoReturn:
        tail = output_tail(stderr)
        log_event(
            logger,
            logging.ERROR,
            "executor.step_failed",
            stage=stage,
            index=index,
            label=label,
            returncode=returncode,
            reason=reason,
        )
        position = f"step {index}" if index is not None else label
        raise BuildStepError(
            f"{position} ({label}) failed: {reason}",
            index=index,
            label=label,
            command=command,
            returncode=returncode,
            stderr_tail=tail,
            stage=stage,
        )
