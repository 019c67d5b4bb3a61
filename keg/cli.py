"""Command line interface for evaluating and installing recipes."""

from __future__ import annotations

import dataclasses
import json
from pathlib import Path

import typer

from keg import __version__
from keg.checksum import compute_sha256
from keg.errors import IntegrityError, KegError
from keg.facts import HostFacts, detect_host_facts
from keg.installer import Installer
from keg.logging_utils import configure_logging
from keg.registry import RecipeRegistry
from keg.settings import Settings

app = typer.Typer(
    no_args_is_help=True,
    help="Evaluate declarative package recipes.",
    add_completion=False,
)

_RECIPES_DIR_HELP = "Recipe directory (defaults to KEG_RECIPES_DIR or the bundled recipes)."


def _settings(
    recipes_dir: Path | None,
    *,
    root: Path | None = None,
    keep_failed: bool | None = None,
) -> Settings:
    try:
        return Settings.from_env(
            recipes_dir=recipes_dir, root=root, keep_failed_builds=keep_failed
        )
    except KegError as exc:
        raise _fail(exc) from exc


def _registry(settings: Settings) -> RecipeRegistry:
    registry = RecipeRegistry()
    registry.discover(settings.recipes_dir)
    return registry


def _host_facts(
    *,
    arch: str | None,
    os_name: str | None,
    os_major: int | None,
    toolchain: str | None,
    options: list[str] | None,
) -> HostFacts:
    facts = detect_host_facts(options or (), probe_toolchain=toolchain is None)
    overrides: dict[str, object] = {}
    if arch is not None:
        overrides["arch"] = arch
    if os_name is not None:
        overrides["os"] = os_name.lower()
    if os_major is not None:
        overrides["os_major"] = os_major
    if toolchain is not None:
        overrides["toolchain_version"] = toolchain
    return dataclasses.replace(facts, **overrides) if overrides else facts


def _fail(exc: KegError) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=exc.exit_code)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline events."),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Evaluate declarative package recipes."""
    configure_logging(verbose=verbose)


@app.command("list")
def list_recipes(
    recipes_dir: Path | None = typer.Option(
        None,
        "--recipes-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help=_RECIPES_DIR_HELP,
    ),
    json_output: bool = typer.Option(False, "--json", help="Output JSON."),
) -> None:
    """List the recipes known to the registry."""
    settings = _settings(recipes_dir)
    registry = _registry(settings)
    payload = [
        {
            "name": recipe.name,
            "version": recipe.config.pkg_version,
            "description": recipe.config.description,
            "path": str(recipe.path),
        }
        for recipe in registry.list_all()
    ]

    if json_output:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return
    if not payload:
        typer.echo(f"No recipes found in {settings.recipes_dir}.")
        return
    for item in payload:
        line = f"{item['name']} {item['version']}"
        if item["description"]:
            line = f"{line}: {item['description']}"
        typer.echo(line)


@app.command("plan")
def plan_recipe(
    name: str = typer.Argument(help="Recipe name."),
    arch: str | None = typer.Option(None, "--arch", help="Override the detected architecture."),
    os_name: str | None = typer.Option(None, "--os", help="Override the detected OS family."),
    os_major: int | None = typer.Option(None, "--os-major", help="Override the OS major version."),
    toolchain: str | None = typer.Option(
        None, "--toolchain", help="Override the detected compiler version."
    ),
    options: list[str] | None = typer.Option(
        None, "--with", help="Enable a recipe option (repeatable)."
    ),
    recipes_dir: Path | None = typer.Option(
        None,
        "--recipes-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help=_RECIPES_DIR_HELP,
    ),
    json_output: bool = typer.Option(False, "--json", help="Output the full plan as JSON."),
) -> None:
    """Resolve and print the build plan for the given host facts."""
    settings = _settings(recipes_dir)
    installer = Installer(_registry(settings), settings)
    facts = _host_facts(
        arch=arch, os_name=os_name, os_major=os_major, toolchain=toolchain, options=options
    )
    try:
        plan = installer.plan(name, facts)
    except KegError as exc:
        raise _fail(exc) from exc

    if json_output:
        typer.echo(plan.canonical_json())
        return
    typer.echo(f"{plan.name} {plan.pkg_version} ({plan.facts['host_triple']})")
    typer.echo(f"  source: {plan.source.url}")
    for patch in plan.patches:
        typer.echo(f"  patch: {patch.url}")
    for dependency in plan.dependencies:
        typer.echo(f"  depends on: {dependency.name} ({dependency.mode}) at {dependency.prefix}")
    for index, step in enumerate(plan.steps, start=1):
        typer.echo(f"  step {index}: {step.label}")
    typer.echo(f"  fingerprint: {plan.fingerprint()}")


@app.command("install")
def install_recipes(
    names: list[str] = typer.Argument(help="Recipe names to install."),
    options: list[str] | None = typer.Option(
        None, "--with", help="Enable a recipe option (repeatable)."
    ),
    no_test: bool = typer.Option(False, "--no-test", help="Skip post-install smoke tests."),
    jobs: int = typer.Option(1, "--jobs", "-j", min=1, help="Recipes to install in parallel."),
    keep_failed: bool = typer.Option(
        False, "--keep-failed", help="Keep the build directory of a failed install."
    ),
    root: Path | None = typer.Option(
        None,
        "--root",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Install root (defaults to KEG_ROOT or ~/.keg).",
    ),
    recipes_dir: Path | None = typer.Option(
        None,
        "--recipes-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help=_RECIPES_DIR_HELP,
    ),
) -> None:
    """Fetch, build, prune, test and link one or more recipes."""
    settings = _settings(recipes_dir, root=root, keep_failed=keep_failed or None)
    installer = Installer(_registry(settings), settings)
    facts = detect_host_facts(options or ())

    try:
        results = installer.install_many(names, facts, max_workers=jobs, run_tests=not no_test)
    except KegError as exc:
        raise _fail(exc) from exc

    failures: list[KegError] = []
    for name, outcome in results.items():
        if isinstance(outcome, KegError):
            typer.echo(f"{name}: failed", err=True)
            typer.echo(f"Error: {outcome}", err=True)
            failures.append(outcome)
            continue
        tested = "tested" if outcome.tested else "untested"
        typer.echo(f"{name} {outcome.pkg_version}: installed to {outcome.prefix} ({tested})")
        if outcome.caveats:
            typer.echo(outcome.caveats, nl=False)
    if failures:
        raise typer.Exit(code=failures[0].exit_code)


@app.command("test")
def test_recipe(
    name: str = typer.Argument(help="Installed recipe to verify."),
    root: Path | None = typer.Option(
        None,
        "--root",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Install root (defaults to KEG_ROOT or ~/.keg).",
    ),
    recipes_dir: Path | None = typer.Option(
        None,
        "--recipes-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help=_RECIPES_DIR_HELP,
    ),
) -> None:
    """Run the smoke test of an installed recipe."""
    settings = _settings(recipes_dir, root=root)
    installer = Installer(_registry(settings), settings)
    try:
        outputs = installer.test(name, detect_host_facts())
    except KegError as exc:
        raise _fail(exc) from exc
    typer.echo(f"{name}: {len(outputs)} check(s) passed")


@app.command("verify")
def verify_file(
    path: Path = typer.Argument(exists=True, dir_okay=False, help="File to check."),
    sha256: str = typer.Argument(help="Expected SHA-256 hex digest."),
) -> None:
    """Check a local file against an expected digest without modifying it."""
    expected = sha256.strip().lower()
    actual = compute_sha256(path)
    if actual != expected:
        exc = IntegrityError(
            f"checksum mismatch for {path}: expected {expected}, got {actual}",
            path=str(path),
            expected=expected,
            actual=actual,
            stage="fetch",
        )
        raise _fail(exc)
    typer.echo(f"{path}: OK")


@app.command("caveats")
def show_caveats(
    name: str = typer.Argument(help="Recipe name."),
    root: Path | None = typer.Option(
        None,
        "--root",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help="Install root (defaults to KEG_ROOT or ~/.keg).",
    ),
    recipes_dir: Path | None = typer.Option(
        None,
        "--recipes-dir",
        file_okay=False,
        dir_okay=True,
        resolve_path=True,
        help=_RECIPES_DIR_HELP,
    ),
) -> None:
    """Print the post-install notes of a recipe."""
    settings = _settings(recipes_dir, root=root)
    installer = Installer(_registry(settings), settings)
    try:
        caveats = installer.render_caveats(installer.plan(name, detect_host_facts()))
    except KegError as exc:
        raise _fail(exc) from exc
    if caveats is None:
        typer.echo(f"{name} has no caveats.")
        return
    typer.echo(caveats, nl=False)


def main() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
