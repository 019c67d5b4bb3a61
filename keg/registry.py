"""Recipe discovery and dependency prefix lookups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from keg.config import DependencyConfig, RecipeConfig, parse_recipe_config
from keg.errors import ConfigurationError
from keg.logging_utils import log_event
from keg.settings import PrefixLayout

logger = logging.getLogger(__name__)

RECIPE_FILENAME = "recipe.yaml"


@dataclass(slots=True)
class Recipe:
    """A discovered recipe with validated config."""

    config: RecipeConfig
    path: Path

    @property
    def name(self) -> str:
        return self.config.name


def load_recipe_file(recipe_config_path: Path, *, folder_name: str | None = None) -> RecipeConfig:
    """Load and validate one ``recipe.yaml`` file."""
    raw_data = yaml.safe_load(recipe_config_path.read_text(encoding="utf-8"))
    if raw_data is None:
        raise ValueError(f"{recipe_config_path} is empty")
    if not isinstance(raw_data, dict):
        raise ValueError(f"{recipe_config_path} must contain a YAML mapping")

    recipe_data = {str(key): value for key, value in raw_data.items()}
    return parse_recipe_config(recipe_data, folder_name=folder_name)


class RecipeRegistry:
    """Registry of recipes discovered from the filesystem.

    The registry is populated once and is read-only afterwards, so it can be
    shared by concurrent installs of unrelated recipes.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory recipe registry."""
        self._recipes: dict[str, Recipe] = {}

    def discover(self, recipes_dir: Path) -> None:
        """Scan ``recipes_dir`` and register discovered recipes."""
        self._recipes.clear()
        if not recipes_dir.exists() or not recipes_dir.is_dir():
            log_event(
                logger,
                logging.WARNING,
                "registry.discover_skipped",
                recipes_dir=str(recipes_dir),
                reason="missing_or_not_directory",
            )
            return

        log_event(logger, logging.INFO, "registry.discover_started", recipes_dir=str(recipes_dir))
        for recipe_dir in sorted(path for path in recipes_dir.iterdir() if path.is_dir()):
            try:
                recipe = self._load_recipe(recipe_dir)
            except (OSError, ValueError, yaml.YAMLError) as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "registry.recipe_invalid",
                    recipe_dir=recipe_dir.name,
                    error=str(exc),
                )
                logger.warning("Skipping invalid recipe '%s': %s", recipe_dir.name, exc)
                continue

            if recipe is None:
                continue

            name = recipe.config.name
            if name in self._recipes:
                log_event(
                    logger,
                    logging.WARNING,
                    "registry.recipe_duplicate_name",
                    recipe_dir=recipe_dir.name,
                    recipe=name,
                )
                logger.warning(
                    "Skipping recipe '%s': duplicate name '%s'",
                    recipe_dir.name,
                    name,
                )
                continue
            self._recipes[name] = recipe
            log_event(
                logger,
                logging.INFO,
                "registry.recipe_loaded",
                recipe=name,
                version=recipe.config.version,
            )
        log_event(
            logger,
            logging.INFO,
            "registry.discover_completed",
            recipe_count=len(self._recipes),
        )

    def register(self, recipe: Recipe) -> None:
        """Add a recipe that was loaded outside of discovery."""
        if recipe.name in self._recipes:
            raise ConfigurationError(f"recipe '{recipe.name}' is already registered")
        self._recipes[recipe.name] = recipe

    def get(self, name: str) -> Recipe | None:
        """Get a discovered recipe by name."""
        return self._recipes.get(name)

    def require(self, name: str) -> Recipe:
        """Get a discovered recipe by name or raise ``ConfigurationError``."""
        recipe = self._recipes.get(name)
        if recipe is None:
            raise ConfigurationError(f"no recipe named '{name}'", stage="select")
        return recipe

    def list_all(self) -> list[Recipe]:
        """List all discovered recipes."""
        return list(self._recipes.values())

    @property
    def count(self) -> int:
        """Return the number of discovered recipes."""
        return len(self._recipes)

    def resolve_dependency(self, dependency: DependencyConfig, layout: PrefixLayout) -> Path:
        """Return the prefix a dependency reference resolves to."""
        opt_prefix = layout.opt_prefix(dependency.name)
        if dependency.mode == "system":
            if opt_prefix.is_dir():
                return opt_prefix
            if layout.system_prefix.is_dir():
                return layout.system_prefix
            raise ConfigurationError(
                f"system dependency '{dependency.name}' is not installed and "
                f"system prefix {layout.system_prefix} does not exist",
                stage="select",
            )

        if dependency.name not in self._recipes:
            raise ConfigurationError(
                f"unknown dependency '{dependency.name}': no such recipe",
                stage="select",
            )
        if not opt_prefix.is_dir():
            raise ConfigurationError(
                f"dependency '{dependency.name}' is not installed (expected {opt_prefix})",
                stage="select",
            )
        return opt_prefix

    def _load_recipe(self, recipe_dir: Path) -> Recipe | None:
        recipe_config_path = recipe_dir / RECIPE_FILENAME
        if not recipe_config_path.exists():
            return None
        config = load_recipe_file(recipe_config_path, folder_name=recipe_dir.name)
        return Recipe(config=config, path=recipe_dir)


def load_recipe(recipe_dir: Path) -> Recipe:
    """Load a single recipe folder, raising ``ConfigurationError`` when invalid."""
    recipe_config_path = recipe_dir / RECIPE_FILENAME
    if not recipe_config_path.exists():
        raise ConfigurationError(f"missing {RECIPE_FILENAME} in {recipe_dir}", stage="select")
    try:
        config = load_recipe_file(recipe_config_path, folder_name=recipe_dir.name)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid recipe {recipe_dir.name}: {exc}", stage="select") from exc
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(str(exc), stage="select") from exc
    return Recipe(config=config, path=recipe_dir)
