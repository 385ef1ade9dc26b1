"""Central logging configuration helpers for polystore."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping

from loguru import logger

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
) -> tuple[int, ...]:
    """Configure loguru with module-based debug filtering.

    ``debug_scopes`` enables DEBUG output for selected modules only, e.g.
    ``("core.federation",)`` while the main handler stays at ``level``.
    """
    logger.remove()

    handler_ids: list[int] = [
        logger.add(
            sys.stderr,
            level=level,
            format=DEFAULT_LOG_FORMAT,
            colorize=colorize,
        )
    ]

    level_upper = level.upper()
    scopes = tuple(scope.strip() for scope in debug_scopes if scope.strip())
    if scopes and level_upper != "DEBUG":
        handler_ids.append(
            logger.add(
                sys.stderr,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=debug_scope_filter(scopes),
            )
        )

    return tuple(handler_ids)


def debug_scope_filter(scopes: tuple[str, ...]):
    """Build a loguru filter that passes DEBUG records from the given scopes."""

    def _debug_filter(record: object) -> bool:
        if not isinstance(record, Mapping):
            return False
        level = record.get("level")
        if getattr(level, "name", None) != "DEBUG":
            return False
        record_name = record.get("name", "")

        for scope in scopes:
            if record_name.startswith(scope):
                return True
            if not scope.startswith("polystore.") and record_name.startswith(
                f"polystore.{scope}"
            ):
                return True
        return False

    return _debug_filter
