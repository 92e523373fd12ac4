# agentflow/core/logging.py
import logging
import os
import sys
from datetime import datetime
from typing import Optional, Union

LOGGER_PREFIX = 'agentflow.'


def _level_from_env() -> int:
    name = os.environ.get('AGENTFLOW_LOG_LEVEL', 'INFO').upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


# Level applied to loggers created after set_default_level() is called
_default_level: int = _level_from_env()


def _stdout_supports_color() -> bool:
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()


class ColoredFormatter(logging.Formatter):
    """
    `[HH:MM:SS] [component] [LEVEL] message`, column aligned.

    Workers usually log to a file or a container runtime, so colors are
    only emitted on a terminal unless `use_colors` says otherwise.
    """

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    # [workflow.listeners] is the widest component tag we emit
    COMPONENT_WIDTH = 21
    LEVEL_WIDTH = 10

    def __init__(self, use_colors: Optional[bool] = None):
        super().__init__()
        self.use_colors = _stdout_supports_color() if use_colors is None else use_colors

    def _paint(self, color: str, text: str) -> str:
        if not self.use_colors:
            return text
        return f"{color}{text}{self.COLORS['RESET']}"

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'agentflow.workflow.engine' -> 'workflow.engine'
        component = record.name
        if component.startswith(LOGGER_PREFIX):
            component = component[len(LOGGER_PREFIX):]

        level_color = self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])
        formatted = (
            self._paint(self.COLORS['LIGHT_BLUE'], f'[{time_str}]')
            + ' '
            + self._paint(self.COLORS['WHITE'], f'[{component}]'.ljust(self.COMPONENT_WIDTH))
            + self._paint(level_color, f'[{record.levelname}]'.ljust(self.LEVEL_WIDTH))
            + self._paint(self.COLORS['WHITE'], record.getMessage())
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: Union[int, str]) -> None:
    """Set the default log level for new loggers ('DEBUG' or logging.DEBUG)."""
    global _default_level
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f'unknown log level: {level!r}')
        level = resolved
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Logger for an engine component, e.g. 'worker' or 'workflow.engine'."""
    logger = logging.getLogger(f'{LOGGER_PREFIX}{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Parent loggers would print every record twice
        logger.propagate = False

    return logger
