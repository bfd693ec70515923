"""
Logging setup for the deal room service.

Every record carries the request context (request id, deal, acting
participant) set by the HTTP middleware, rendered either as JSON lines or as
a plain text suffix. Payment references and database credentials are masked
before any handler sees them.
"""
import json
import logging
import re
import sys
from contextvars import ContextVar
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from dealroom.core.config import get_settings

log_context: ContextVar[Dict[str, Any]] = ContextVar('log_context', default={})

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}

_QUIET_LOGGERS = ("sqlalchemy.pool", "uvicorn.access", "multipart")


class MaskingFilter(logging.Filter):
    """Masks payment references and credentials in messages and extra fields"""

    PATTERNS = [
        (re.compile(r'(payment[_ ]reference["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+', re.I), r'\1***'),
        (re.compile(r'(password["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+', re.I), r'\1***'),
        (re.compile(r'(postgresql(?:\+\w+)?://[^:/\s]+:)[^@\s]+@', re.I), r'\1***@'),
    ]
    MASKED_FIELDS = {'payment_reference', 'password'}

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        for field in self.MASKED_FIELDS:
            if getattr(record, field, None):
                setattr(record, field, '***')
        return True

    @classmethod
    def mask(cls, text: str) -> str:
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Context plus anything passed through extra="""
    fields = dict(log_context.get())
    for key, value in vars(record).items():
        if key not in _STANDARD_ATTRS and not key.startswith('_'):
            fields[key] = value
    return fields


class JsonFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        entry.update(_record_fields(record))
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Plain format with context appended as key=value pairs"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _record_fields(record)
        if fields:
            line += ' [' + ' '.join(f'{k}={v}' for k, v in sorted(fields.items())) + ']'
        return line


class LoggingConfig:
    """Process-wide logging setup; configured once, lazily"""

    _configured = False

    @classmethod
    def _levels(cls, overrides: Optional[Dict[str, str]]) -> Dict[str, str]:
        settings = get_settings()
        levels = {
            "dealroom": settings.log_level,
            "sqlalchemy.engine": "INFO" if settings.log_sqlalchemy else "WARNING",
        }
        levels.update({name: "WARNING" for name in _QUIET_LOGGERS})
        if settings.log_module_levels:
            try:
                levels.update(json.loads(settings.log_module_levels))
            except (json.JSONDecodeError, TypeError):
                sys.stderr.write(f"Ignoring malformed LOG_MODULE_LEVELS: {settings.log_module_levels!r}\n")
        if overrides:
            levels.update(overrides)
        return levels

    @classmethod
    def _handlers(cls) -> List[logging.Handler]:
        settings = get_settings()
        datefmt = '%Y-%m-%d %H:%M:%S'
        if settings.log_format == "json":
            formatter = JsonFormatter(datefmt=datefmt)
        else:
            formatter = TextFormatter('%(asctime)s %(levelname)-7s %(name)s: %(message)s', datefmt=datefmt)

        handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
        if settings.log_file_enabled:
            path = Path(settings.log_file_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(TimedRotatingFileHandler(
                filename=str(path),
                when='midnight',
                backupCount=settings.log_file_retention,
                encoding='utf-8'
            ))

        for handler in handlers:
            handler.setFormatter(formatter)
            if not settings.log_sensitive_data:
                handler.addFilter(MaskingFilter())
        return handlers

    @classmethod
    def configure(cls, module_levels: Optional[Dict[str, str]] = None):
        if cls._configured:
            return

        levels = cls._levels(module_levels)
        logging.basicConfig(
            level=getattr(logging, get_settings().log_level.upper()),
            handlers=cls._handlers(),
            force=True
        )
        for name, level in levels.items():
            logging.getLogger(name).setLevel(getattr(logging, str(level).upper()))

        cls._configured = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if not cls._configured:
            cls.configure()
        return logging.getLogger(name)

    @classmethod
    def set_context(cls, **kwargs):
        """Attach fields to every record logged in the current context"""
        ctx = dict(log_context.get())
        ctx.update({k: v for k, v in kwargs.items() if v is not None})
        log_context.set(ctx)

    @classmethod
    def clear_context(cls):
        log_context.set({})
