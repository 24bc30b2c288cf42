# mortiscope/core/logging.py
import logging
import os
import sys
from datetime import datetime
from typing import Any

# Module-level default log level, can be changed by setup_logging()
_default_level: int = logging.INFO


def _colors_enabled() -> bool:
    # NO_COLOR standard (https://no-color.org/)
    return os.environ.get('NO_COLOR') is None


class ColoredFormatter(logging.Formatter):
    """Colored formatter for mortiscope logging.

    Structured fields passed as ``extra={'context': {...}}`` are appended to the
    message as ``key=value`` pairs, e.g. ``case_id=case-1 attempt=2``.
    """

    # ANSI color codes
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

    def __init__(self, use_colors: bool | None = None) -> None:
        super().__init__()
        self.use_colors = _colors_enabled() if use_colors is None else use_colors

    def _c(self, name: str) -> str:
        return self.COLORS[name] if self.use_colors else ''

    @staticmethod
    def format_context(context: Any) -> str:
        """Render a context mapping as space separated key=value pairs."""
        if not isinstance(context, dict) or not context:
            return ''
        return ' '.join(f'{key}={value}' for key, value in context.items())

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # Component name from logger name (e.g., 'mortiscope.executor' -> 'executor')
        component = record.name.split('.')[-1] if '.' in record.name else record.name

        # [compensation] = 14 chars, [CRITICAL] = 10 chars
        component_padded = f'[{component}]'.ljust(16)
        level_padded = f'[{record.levelname}]'.ljust(11)

        level_color = (
            self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])
            if self.use_colors
            else ''
        )
        reset = self._c('RESET')

        formatted = (
            f"{self._c('LIGHT_BLUE')}[{time_str}]{reset} "
            f"{self._c('WHITE')}{component_padded}{reset}"
            f'{level_color}{level_padded}{reset}'
            f"{self._c('WHITE')}{record.getMessage()}{reset}"
        )

        context = self.format_context(getattr(record, 'context', None))
        if context:
            formatted += f" {self._c('GRAY')}{context}{reset}"

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger_name = f'mortiscope.{component_name}'
    logger = logging.getLogger(logger_name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger
