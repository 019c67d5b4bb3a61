"""Variant selection: resolve conditional recipe fields into a concrete plan."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Protocol, TypeVar

from keg.config import DependencyConfig, PredicateConfig, RecipeConfig, StepConfig
from keg.errors import ConfigurationError
from keg.facts import HostFacts, parse_version
from keg.logging_utils import log_event
from keg.schemas import (
    BuildPlan,
    PlanPostInstall,
    PlanStep,
    ResolvedDependency,
    ResolvedPatch,
    ResolvedSource,
)

logger = logging.getLogger(__name__)

DependencyResolver = Callable[[DependencyConfig], Path]


class _Guarded(Protocol):
    when: PredicateConfig | None


T = TypeVar("T", bound=_Guarded)


def evaluate_predicate(predicate: PredicateConfig | None, facts: HostFacts) -> bool:
    """Return ``True`` when every condition of ``predicate`` holds for ``facts``."""
    if predicate is None:
        return True
    if predicate.arch is not None and facts.arch not in predicate.arch:
        return False
    if predicate.not_arch is not None and facts.arch in predicate.not_arch:
        return False
    if predicate.os is not None and facts.os not in predicate.os:
        return False
    if predicate.os_major_min is not None or predicate.os_major_max is not None:
        if facts.os_major is None:
            return False
        if predicate.os_major_min is not None and facts.os_major < predicate.os_major_min:
            return False
        if predicate.os_major_max is not None and facts.os_major > predicate.os_major_max:
            return False
    if predicate.toolchain_min is not None or predicate.toolchain_max is not None:
        current = parse_version(facts.toolchain_version)
        if current is None:
            return False
        lower = parse_version(predicate.toolchain_min)
        upper = parse_version(predicate.toolchain_max)
        if lower is not None and current < lower:
            return False
        if upper is not None and current > upper:
            return False
    if any(option not in facts.options for option in predicate.options):
        return False
    if any(option in facts.options for option in predicate.without):
        return False
    return True


def select_first(branches: Sequence[T], facts: HostFacts, *, field: str) -> T:
    """Return the first branch whose predicate holds, in declaration order."""
    for branch in branches:
        if evaluate_predicate(branch.when, facts):
            return branch
    raise ConfigurationError(
        f"no branch of '{field}' matches host facts "
        f"(arch={facts.arch}, os={facts.os}, os_major={facts.os_major}, "
        f"toolchain={facts.toolchain_version}, options={sorted(facts.options)}) "
        "and no default is declared",
        stage="select",
    )


def select_all(items: Sequence[T], facts: HostFacts) -> list[T]:
    """Return every item whose predicate holds, preserving order."""
    return [item for item in items if evaluate_predicate(item.when, facts)]


def _plan_step(step: StepConfig, facts: HostFacts) -> PlanStep:
    command = list(step.command)
    command.extend(fragment.value for fragment in select_all(step.args, facts))
    return PlanStep(
        type=step.type,
        command=command,
        cwd=step.cwd,
        env=step.env,
        capture=step.capture,
        timeout=step.timeout,
        source=step.source,
        into=step.into,
        rename=step.rename,
        path=step.path,
        replacements=step.replacements,
    )


def _plan_steps(steps: Sequence[StepConfig], facts: HostFacts) -> list[PlanStep]:
    return [_plan_step(step, facts) for step in select_all(steps, facts)]


def select_plan(
    recipe: RecipeConfig,
    facts: HostFacts,
    *,
    resolver: DependencyResolver,
) -> BuildPlan:
    """Resolve ``recipe`` against ``facts`` into an immutable build plan.

    Sources and variables take the first matching branch. Patches,
    dependencies, steps and argument fragments keep every matching entry.
    Each active dependency is bound to a prefix through ``resolver``; an
    unresolvable reference aborts plan construction.
    """
    source = select_first(recipe.sources, facts, field="sources")
    variables = {
        name: select_first(branches, facts, field=f"variables.{name}").value
        for name, branches in recipe.variables.items()
    }

    dependencies: list[ResolvedDependency] = []
    for dependency in select_all(recipe.dependencies, facts):
        prefix = resolver(dependency)
        dependencies.append(
            ResolvedDependency(name=dependency.name, mode=dependency.mode, prefix=str(prefix))
        )

    post_install = None
    if recipe.post_install is not None:
        post_install = PlanPostInstall(
            mkdirs=recipe.post_install.mkdirs,
            steps=_plan_steps(recipe.post_install.steps, facts),
            keep=recipe.post_install.keep,
        )

    plan = BuildPlan(
        name=recipe.name,
        version=source.version or recipe.version,
        revision=recipe.revision,
        license=recipe.license,
        source=ResolvedSource(url=source.url, mirrors=source.mirrors, sha256=source.sha256),
        patches=[
            ResolvedPatch(url=patch.url, sha256=patch.sha256, strip=patch.strip)
            for patch in select_all(recipe.patches, facts)
        ],
        dependencies=dependencies,
        variables=variables,
        env=recipe.build.env,
        steps=_plan_steps(recipe.build.steps, facts),
        post_install=post_install,
        test=recipe.test,
        caveats=recipe.caveats,
        facts=facts.as_dict(),
    )
    log_event(
        logger,
        logging.INFO,
        "selector.plan_selected",
        recipe=plan.name,
        version=plan.pkg_version,
        source=plan.source.url,
        steps=len(plan.steps),
        patches=len(plan.patches),
        fingerprint=plan.fingerprint(),
    )
    return plan
