"""Install pipeline: select, fetch, build, post-install, prune, test and link."""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any

from keg import __version__
from keg.checksum import artifact_basename, fetch_artifact
from keg.errors import ConfigurationError, KegError, Stage
from keg.executor import BuildExecutor, build_context, expand, unpack_source
from keg.facts import HostFacts
from keg.harness import CommandOutput, run_test_spec
from keg.logging_utils import install_context, log_event
from keg.pruner import prune_tree, rules_from_prefixes
from keg.registry import RecipeRegistry
from keg.schemas import BuildPlan, InstallReport, PruneSummary
from keg.selector import select_plan
from keg.settings import PrefixLayout, Settings

logger = logging.getLogger(__name__)

RECEIPT_FILENAME = "INSTALL_RECEIPT.json"


@contextmanager
def pipeline_stage(stage: Stage) -> Iterator[None]:
    """Tag any failure raised inside the block with ``stage``."""
    log_event(logger, logging.DEBUG, "installer.stage_started", stage=stage)
    try:
        yield
    except KegError as exc:
        exc.stage = stage
        log_event(logger, logging.ERROR, "installer.stage_failed", stage=stage, error=exc.message)
        raise
    except OSError as exc:
        log_event(logger, logging.ERROR, "installer.stage_failed", stage=stage, error=str(exc))
        raise KegError(str(exc), stage=stage) from exc


def write_receipt(plan: BuildPlan, prefix: Path, *, installed_at: datetime) -> Path:
    """Record what was installed and how, inside the install prefix."""
    receipt = {
        "name": plan.name,
        "version": plan.version,
        "pkg_version": plan.pkg_version,
        "fingerprint": plan.fingerprint(),
        "source": {"url": plan.source.url, "sha256": plan.source.sha256},
        "patches": [patch.model_dump() for patch in plan.patches],
        "runtime_dependencies": [dep.model_dump() for dep in plan.runtime_dependencies()],
        "facts": plan.facts,
        "installed_at": installed_at.isoformat(),
        "keg_version": __version__,
    }
    path = prefix / RECEIPT_FILENAME
    path.write_text(json.dumps(receipt, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return path


def load_receipt(prefix: Path) -> dict[str, Any] | None:
    """Load the install receipt of a prefix, if present and readable."""
    path = prefix / RECEIPT_FILENAME
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Ignoring invalid install receipt at %s", path)
        return None
    return raw if isinstance(raw, dict) else None


def _set_aside(prefix: Path) -> Path:
    """Move an existing prefix out of the way so a failed rebuild can restore it."""
    previous = prefix.with_name(f".{prefix.name}.previous")
    if previous.exists():
        shutil.rmtree(previous)
    prefix.rename(previous)
    return previous


def link_opt_prefix(prefix: Path, opt_prefix: Path) -> None:
    """Point the version-independent ``opt`` path at ``prefix``."""
    opt_prefix.parent.mkdir(parents=True, exist_ok=True)
    if opt_prefix.is_symlink():
        opt_prefix.unlink()
    elif opt_prefix.exists():
        raise KegError(f"{opt_prefix} exists and is not a symlink", stage="link")
    opt_prefix.symlink_to(prefix, target_is_directory=True)


class Installer:
    """Run install invocations against a read-only registry."""

    def __init__(
        self,
        registry: RecipeRegistry,
        settings: Settings,
        *,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.base_env = dict(base_env) if base_env is not None else None

    @property
    def layout(self) -> PrefixLayout:
        return self.settings.layout

    def plan(self, name: str, facts: HostFacts) -> BuildPlan:
        """Resolve the concrete build plan of ``name`` for ``facts``."""
        recipe = self.registry.require(name)
        with pipeline_stage("select"):
            return select_plan(
                recipe.config,
                facts,
                resolver=partial(self.registry.resolve_dependency, layout=self.layout),
            )

    def render_caveats(self, plan: BuildPlan) -> str | None:
        """Expand the caveats text of a plan against its install prefix."""
        if not plan.caveats:
            return None
        context = build_context(
            plan,
            prefix=self.layout.install_prefix(plan.name, plan.pkg_version),
            opt_prefix=self.layout.opt_prefix(plan.name),
        )
        return expand(plan.caveats, context).rstrip() + "\n"

    def install(self, name: str, facts: HostFacts, *, run_tests: bool = True) -> InstallReport:
        """Install one recipe; any failure aborts the pipeline with its stage tagged."""
        with install_context(name):
            started_at = datetime.now(UTC)
            log_event(logger, logging.INFO, "installer.started", recipe=name)
            plan = self.plan(name, facts)
            report = self._install_plan(plan, run_tests=run_tests, started_at=started_at)
            log_event(
                logger,
                logging.INFO,
                "installer.completed",
                recipe=name,
                prefix=report.prefix,
            )
            return report

    def install_many(
        self,
        names: Sequence[str],
        facts: HostFacts,
        *,
        max_workers: int = 1,
        run_tests: bool = True,
    ) -> dict[str, InstallReport | KegError]:
        """Install unrelated recipes, possibly in parallel; failures are collected."""
        if len(set(names)) != len(names):
            raise ConfigurationError("each recipe may only be installed once per invocation")

        def _run(name: str) -> InstallReport | KegError:
            try:
                return self.install(name, facts, run_tests=run_tests)
            except KegError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
            results = list(pool.map(_run, names))
        return dict(zip(names, results, strict=True))

    def test(self, name: str, facts: HostFacts) -> list[CommandOutput]:
        """Run the smoke test of an already installed recipe."""
        with install_context(name):
            plan = self.plan(name, facts)
            prefix = self.layout.install_prefix(plan.name, plan.pkg_version)
            if plan.test is None:
                raise ConfigurationError(f"recipe '{name}' does not define a test", stage="test")
            if not prefix.is_dir():
                raise ConfigurationError(
                    f"recipe '{name}' is not installed (expected {prefix})",
                    stage="test",
                )
            context = build_context(plan, prefix=prefix, opt_prefix=self.layout.opt_prefix(name))
            with pipeline_stage("test"):
                return run_test_spec(plan.test, context, base_env=self.base_env)

    def _install_plan(
        self, plan: BuildPlan, *, run_tests: bool, started_at: datetime
    ) -> InstallReport:
        layout = self.layout
        prefix = layout.install_prefix(plan.name, plan.pkg_version)
        opt_prefix = layout.opt_prefix(plan.name)
        workspace = Path(tempfile.mkdtemp(prefix=f"keg-{plan.name}-"))
        stages: list[str] = ["select"]
        prune_summary: PruneSummary | None = None
        previous: Path | None = None
        started_build = False
        succeeded = False
        try:
            with pipeline_stage("fetch"):
                archive = fetch_artifact(
                    plan.source.url,
                    plan.source.sha256,
                    cache_dir=layout.cache_dir,
                    mirrors=plan.source.mirrors,
                    timeout_seconds=self.settings.fetch_timeout,
                )
                patch_files = [
                    fetch_artifact(
                        patch.url,
                        patch.sha256,
                        cache_dir=layout.cache_dir,
                        timeout_seconds=self.settings.fetch_timeout,
                    )
                    for patch in plan.patches
                ]
            stages.append("fetch")

            with pipeline_stage("build"):
                buildpath = unpack_source(
                    archive,
                    workspace / "src",
                    name=artifact_basename(plan.source.url),
                )
                if prefix.exists():
                    previous = _set_aside(prefix)
                started_build = True
                executor = BuildExecutor(
                    plan,
                    prefix=prefix,
                    buildpath=buildpath,
                    opt_prefix=opt_prefix,
                    base_env=self.base_env,
                    step_timeout=self.settings.step_timeout,
                )
                executor.run(patch_files)
            stages.append("build")

            with pipeline_stage("post_install"):
                executor.run_post_install()
            stages.append("post_install")

            keep = plan.post_install.keep if plan.post_install is not None else None
            if keep:
                with pipeline_stage("prune"):
                    result = prune_tree(prefix, rules_from_prefixes(keep))
                prune_summary = PruneSummary(kept=len(result.kept), removed=len(result.removed))
                stages.append("prune")

            if run_tests and plan.test is not None:
                with pipeline_stage("test"):
                    run_test_spec(
                        plan.test,
                        executor.context,
                        base_env=self.base_env,
                        scratch_dir=workspace,
                    )
                stages.append("test")

            finished_at = datetime.now(UTC)
            with pipeline_stage("link"):
                write_receipt(plan, prefix, installed_at=finished_at)
                link_opt_prefix(prefix, opt_prefix)
            stages.append("link")
            succeeded = True
        finally:
            self._cleanup(
                plan,
                workspace=workspace,
                prefix=prefix,
                previous=previous,
                started_build=started_build,
                succeeded=succeeded,
            )

        return InstallReport(
            name=plan.name,
            pkg_version=plan.pkg_version,
            prefix=str(prefix),
            fingerprint=plan.fingerprint(),
            stages=stages,
            prune=prune_summary,
            tested="test" in stages,
            caveats=self.render_caveats(plan),
            started_at=started_at,
            finished_at=finished_at,
        )

    def _cleanup(
        self,
        plan: BuildPlan,
        *,
        workspace: Path,
        prefix: Path,
        previous: Path | None,
        started_build: bool,
        succeeded: bool,
    ) -> None:
        if succeeded:
            if previous is not None:
                shutil.rmtree(previous, ignore_errors=True)
            shutil.rmtree(workspace, ignore_errors=True)
            return
        if started_build:
            shutil.rmtree(prefix, ignore_errors=True)
            if previous is not None:
                previous.rename(prefix)
                log_event(logger, logging.INFO, "installer.prefix_restored", prefix=str(prefix))
        if self.settings.keep_failed_builds:
            log_event(
                logger,
                logging.WARNING,
                "installer.workspace_kept",
                recipe=plan.name,
                workspace=str(workspace),
            )
            logger.warning("Build directory of '%s' kept at %s", plan.name, workspace)
            return
        shutil.rmtree(workspace, ignore_errors=True)
