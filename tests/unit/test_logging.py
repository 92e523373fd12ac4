"""Unit tests for agentflow logging module."""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator

import pytest

from agentflow.core.logging import ColoredFormatter, get_logger, set_default_level

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _restore_default_level() -> Iterator[None]:
    """Save and restore the module-level _default_level after each test."""
    from agentflow.core import logging as agentflow_logging

    original = agentflow_logging._default_level
    yield
    set_default_level(original)


def _unique_name() -> str:
    return f'test_{uuid.uuid4().hex[:8]}'


class TestGetLogger:
    def test_namespaced_under_agentflow(self) -> None:
        name = _unique_name()
        assert get_logger(name).name == f'agentflow.{name}'

    def test_new_logger_uses_default_level(self) -> None:
        set_default_level(logging.WARNING)
        logger = get_logger(_unique_name())
        assert logger.level == logging.WARNING
        assert all(handler.level == logging.WARNING for handler in logger.handlers)

    def test_default_level_by_name(self) -> None:
        set_default_level('debug')
        assert get_logger(_unique_name()).level == logging.DEBUG

    def test_unknown_level_name_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            set_default_level('chatty')

    def test_handler_added_once(self) -> None:
        name = _unique_name()
        get_logger(name)
        logger = get_logger(name)
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, ColoredFormatter)
        assert logger.propagate is False


class TestColoredFormatter:
    def _record(self, name: str, msg: str, level: int = logging.INFO) -> logging.LogRecord:
        return logging.LogRecord(name, level, __file__, 1, msg, None, None)

    def test_component_tag_drops_prefix(self) -> None:
        formatter = ColoredFormatter(use_colors=True)
        formatted = formatter.format(self._record('agentflow.workflow.engine', 'hi'))
        assert '[workflow.engine]' in formatted
        assert '[INFO]' in formatted
        assert formatted.endswith('hi' + ColoredFormatter.COLORS['RESET'])

    def test_plain_output_has_no_escape_codes(self) -> None:
        formatted = ColoredFormatter(use_colors=False).format(
            self._record('agentflow.worker', 'claimed', logging.WARNING)
        )
        assert '\033' not in formatted
        worker_tag = '[worker]'.ljust(ColoredFormatter.COMPONENT_WIDTH)
        assert formatted.endswith(worker_tag + '[WARNING] claimed')

    def test_no_color_env_disables_colors(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('NO_COLOR', '1')
        assert ColoredFormatter().use_colors is False

    def test_foreign_logger_name_kept(self) -> None:
        formatted = ColoredFormatter().format(self._record('sqlalchemy.engine', 'sql'))
        assert '[sqlalchemy.engine]' in formatted

    def test_exception_is_appended(self) -> None:
        try:
            raise RuntimeError('kaboom')
        except RuntimeError:
            record = logging.LogRecord(
                'agentflow.worker', logging.ERROR, __file__, 1, 'failed', None, sys.exc_info()
            )
        formatted = ColoredFormatter().format(record)
        assert 'RuntimeError: kaboom' in formatted
