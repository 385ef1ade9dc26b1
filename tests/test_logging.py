import sys
from types import SimpleNamespace

from loguru import logger

from polystore.core.logging import configure_logging, debug_scope_filter


def _record(name: str, level: str) -> dict[str, object]:
    return {"name": name, "level": SimpleNamespace(name=level)}


def test_debug_scope_filter_matches_short_and_full_module_names() -> None:
    allow = debug_scope_filter(("core.federation",))
    assert allow(_record("polystore.core.federation", "DEBUG"))
    assert not allow(_record("polystore.core.federation", "INFO"))
    assert not allow(_record("polystore.core.registry", "DEBUG"))

    allow_full = debug_scope_filter(("polystore.core.realtime",))
    assert allow_full(_record("polystore.core.realtime.publisher", "DEBUG"))


def test_configure_logging_adds_scope_handler_only_when_needed() -> None:
    try:
        assert len(configure_logging("INFO")) == 1
        assert len(configure_logging("INFO", debug_scopes=["core.federation", " "])) == 2
        assert len(configure_logging("DEBUG", debug_scopes=["core.federation"])) == 1
    finally:
        logger.remove()
        logger.add(sys.stderr)
