"""
Logging for EdgeCache.

Every record carries the component and operation that emitted it and the id
of the HTTP request being served, so the cache lookups, fills and
invalidations of one request can be followed across modules. Output is JSON
in production and colored text during development.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4

# Id of the request being served; bound by RequestLoggingMiddleware
request_id: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

NO_REQUEST = 'no-request'

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


def _is_json(value: Any) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


class RequestContextFilter(logging.Filter):
    """Stamp records with the current request id and a component/operation pair."""

    def filter(self, record):
        record.request_id = request_id.get() or NO_REQUEST
        if not hasattr(record, 'component'):
            record.component = record.name.rsplit('.', 1)[-1]
        if not hasattr(record, 'operation'):
            record.operation = '-'
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, `extra` fields next to the standard ones."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record):
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'request_id': getattr(record, 'request_id', NO_REQUEST),
        }

        if record.exc_info:
            entry['exception'] = ''.join(traceback.format_exception(*record.exc_info))

        if self.include_extra:
            for key, value in record.__dict__.items():
                if key in entry or key in _RESERVED_ATTRS or key.startswith('_'):
                    continue
                entry[key] = value if _is_json(value) else str(value)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: level color, then component:operation and the short request id."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        color = self.COLORS.get(record.levelname, '')
        line = super().format(record)
        where = f"{getattr(record, 'component', '-')}:{getattr(record, 'operation', '-')}"
        return f"{color}{line}{self.RESET} [{where}] [{getattr(record, 'request_id', NO_REQUEST)[:8]}]"


class EdgeCacheLogger:
    """
    Logger wrapper taking ``operation=`` and keyword context.

    Keyword arguments become record attributes through ``extra``, so they
    must not reuse LogRecord attribute names such as ``name`` or ``module``.
    """

    def __init__(self, name: str, component: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.component = component or name.rsplit('.', 1)[-1]

    def _extra(self, operation: Optional[str], context: Dict[str, Any]) -> Dict[str, Any]:
        return {'component': self.component, 'operation': operation or '-', **context}

    def log(self, level: int, message: str, operation: Optional[str] = None, **context):
        if self.logger.isEnabledFor(level):
            self.logger.log(level, message, extra=self._extra(operation, context))

    def debug(self, message: str, operation: Optional[str] = None, **context):
        self.log(logging.DEBUG, message, operation, **context)

    def info(self, message: str, operation: Optional[str] = None, **context):
        self.log(logging.INFO, message, operation, **context)

    def warning(self, message: str, operation: Optional[str] = None, **context):
        self.log(logging.WARNING, message, operation, **context)

    def error(self, message: str, operation: Optional[str] = None, **context):
        self.log(logging.ERROR, message, operation, **context)

    def exception(self, message: str, operation: Optional[str] = None, **context):
        self.logger.exception(message, extra=self._extra(operation, context))


class LoggingConfig:
    """Root logger setup for the gateway process."""

    DEFAULT_FORMAT = '%(asctime)s %(levelname)-8s %(name)s - %(message)s'

    # Third-party loggers held above the application level
    QUIET_LOGGERS = {
        'uvicorn.access': 'WARNING',
        'httpx': 'WARNING',
        'redis': 'WARNING',
    }

    @classmethod
    def formatter(cls, format_type: str) -> logging.Formatter:
        if format_type == 'json':
            return JSONFormatter()
        if format_type == 'colored':
            return ColoredFormatter(cls.DEFAULT_FORMAT)
        return logging.Formatter(cls.DEFAULT_FORMAT)

    @classmethod
    def setup_logging(
        cls,
        level: Union[str, int] = logging.INFO,
        format_type: str = 'json',
        log_file: Optional[str] = None,
    ):
        """
        Replace the root handlers with a stdout handler and, optionally, a file.

        Args:
            level: Logging level
            format_type: 'json', 'colored' or 'standard' for stdout
            log_file: Optional path; the file always receives JSON
        """
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(cls.formatter(format_type))
        handlers = [console_handler]

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(JSONFormatter())
            handlers.append(file_handler)

        for handler in handlers:
            handler.setLevel(level)
            handler.addFilter(RequestContextFilter())
            root_logger.addHandler(handler)

        for name, quiet_level in cls.QUIET_LOGGERS.items():
            logging.getLogger(name).setLevel(quiet_level)

        get_logger(__name__, 'logging').info(
            "Logging configured",
            operation="setup_logging",
            format_type=format_type,
            log_file=log_file,
        )

    @classmethod
    def get_config_dict(cls, level: str = 'INFO', format_type: str = 'json') -> Dict[str, Any]:
        """dictConfig form of setup_logging(), handed to uvicorn as its log_config."""
        return {
            'version': 1,
            'disable_existing_loggers': False,
            'filters': {
                'request_context': {'()': RequestContextFilter},
            },
            'formatters': {
                'json': {'()': JSONFormatter, 'include_extra': True},
                'colored': {'()': ColoredFormatter, 'format': cls.DEFAULT_FORMAT},
                'standard': {'format': cls.DEFAULT_FORMAT},
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'level': level,
                    'formatter': format_type,
                    'filters': ['request_context'],
                    'stream': 'ext://sys.stdout',
                },
            },
            'loggers': {
                'edgecache': {'level': level},
                **{name: {'level': quiet_level} for name, quiet_level in cls.QUIET_LOGGERS.items()},
            },
            'root': {'level': level, 'handlers': ['console']},
        }


class RequestContext:
    """Bind a request id to every record logged inside the block."""

    def __init__(self, request_id_value: Optional[str] = None):
        self.request_id_value = request_id_value or str(uuid4())
        self.token = None

    def __enter__(self):
        self.token = request_id.set(self.request_id_value)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        request_id.reset(self.token)


def get_logger(name: str, component: Optional[str] = None) -> EdgeCacheLogger:
    """Get an EdgeCache logger instance."""
    return EdgeCacheLogger(name, component)


def get_request_id() -> Optional[str]:
    return request_id.get()


def initialize_logging():
    """Configure logging from the monitoring settings."""
    from .config import get_settings

    settings = get_settings()
    format_type = 'json' if settings.is_production() else settings.monitoring.log_format
    LoggingConfig.setup_logging(
        level=settings.monitoring.log_level.value,
        format_type=format_type,
        log_file=settings.monitoring.log_file,
    )


if not os.getenv('TESTING'):
    initialize_logging()
