"""
Logging Utilities for the Chat Core

- Colour-coded, icon-tagged console output (ColoredFormatter)
- Root logger setup that quiets chatty client libraries (setup_logging)
- Message-plus-data logging for turn-level events (StructuredLogger)
"""

import json
import logging
import sys
from datetime import datetime
from pprint import pformat
from typing import Any, Dict, Optional


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    TIMESTAMP = '\033[90m'  # Dark Gray


LEVEL_COLORS = {
    'DEBUG': Colors.DEBUG,
    'INFO': Colors.INFO,
    'WARNING': Colors.WARNING,
    'ERROR': Colors.ERROR,
    'CRITICAL': Colors.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """Formatter with level colours and a per-component icon."""

    ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed by the last segment of the logger name
    COMPONENT_ICONS = {
        'orchestrator': '💬',
        'session_store': '💾',
        'retrieval': '📚',
        'vector_store': '📚',
        'memory_agent': '🧠',
        'llm_client': '🤖',
        'document_store': '🗄️',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.split('.')[-1]
        if record.levelno >= logging.WARNING:
            icon = self.ICONS.get(record.levelname, '•')
        else:
            icon = self.COMPONENT_ICONS.get(component, self.ICONS.get(record.levelname, '•'))

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level_color = LEVEL_COLORS.get(record.levelname, Colors.RESET)
            reset = Colors.RESET
            timestamp_color = Colors.TIMESTAMP
            bold = Colors.BOLD
        else:
            level_color = reset = timestamp_color = bold = ''

        message = record.getMessage()
        stripped = message.strip()
        if stripped.startswith('{') or stripped.startswith('['):
            try:
                message = f"\n{pformat(json.loads(stripped), indent=2, width=100)}"
            except (json.JSONDecodeError, ValueError):
                pass

        formatted = (
            f"{timestamp_color}[{timestamp}]{reset} "
            f"{icon} {level_color}{record.levelname:8s}{reset} "
            f"{bold}{record.name}{reset} "
            f"| {message}"
        )

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class StructuredLogger:
    """Logger wrapper that renders an optional data dict under the message."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)

    def _format_data(self, data: Any, indent: int = 2) -> str:
        if isinstance(data, dict):
            lines = [f"{' ' * indent}{key}: {self._format_data(value, indent + 2)}" for key, value in data.items()]
            return "{\n" + "\n".join(lines) + f"\n{' ' * (indent - 2)}}}"
        if isinstance(data, (list, tuple)):
            items = list(data)
            shown = items[:3] if len(items) > 5 else items
            rendered = ", ".join(self._format_data(item, indent + 2) for item in shown)
            if len(items) > len(shown):
                rendered += f", ... ({len(items)} items total)"
            return f"[{rendered}]"
        return str(data)

    def _with_data(self, message: str, data: Optional[Dict[str, Any]]) -> str:
        return f"{message}\n{self._format_data(data)}" if data else message

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._with_data(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(message, data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._with_data(message, data))

    def error(self, message: str, error: Optional[BaseException] = None, data: Optional[Dict[str, Any]] = None):
        """Log an error; the exception (if any) is summarised and its traceback attached."""
        error_info = f" Error: {type(error).__name__}: {error}" if error else ""
        self.logger.error(self._with_data(f"{message}{error_info}", data), exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(f"✅ {message}", data))


def setup_logging(level: int = logging.INFO, use_colors: bool = True) -> logging.Logger:
    """Replace the root handlers with one coloured console handler."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    for noisy in ('asyncio', 'httpx', 'httpcore', 'urllib3', 'chromadb'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name, logging.getLogger(name))
