"""Structured logging helpers shared across the application."""

from __future__ import annotations

import contextvars
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

_INSTALL_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "keg_install_id",
    default="-",
)


def build_install_id(name: str | None = None) -> str:
    """Return a new install id, prefixed with the recipe name when given."""
    suffix = uuid4().hex[:12]
    candidate = (name or "").strip()
    if not candidate:
        return suffix
    return f"{candidate[:64]}-{suffix}"


def set_install_id(install_id: str) -> contextvars.Token[str]:
    """Store the install id in invocation-local context."""
    return _INSTALL_ID.set(install_id)


def reset_install_id(token: contextvars.Token[str]) -> None:
    """Reset invocation-local context to the previous install id."""
    _INSTALL_ID.reset(token)


def get_install_id() -> str:
    """Return the current install id from context."""
    return _INSTALL_ID.get()


@contextmanager
def install_context(name: str) -> Iterator[str]:
    """Bind a fresh install id for the duration of one install invocation."""
    install_id = build_install_id(name)
    token = set_install_id(install_id)
    try:
        yield install_id
    finally:
        reset_install_id(token)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc_info: Any | None = None,
    **fields: Any,
) -> None:
    """Emit a structured log event with install context fields."""
    payload: dict[str, Any] = {
        "event": event,
        "install_id": get_install_id(),
    }
    payload.update({key: value for key, value in fields.items() if value is not None})
    logger.log(level, event, extra=payload, exc_info=exc_info)


def configure_logging(*, verbose: bool = False) -> None:
    """Configure root logging for command line use."""
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(install_id)s] %(message)s",
            defaults={"install_id": "-"},
        )
    )
    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    logging.getLogger("keg").setLevel(logging.DEBUG if verbose else logging.WARNING)
