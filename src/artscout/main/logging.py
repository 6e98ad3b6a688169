import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from rich.logging import RichHandler

from artscout.main.config import get_loglevel
from artscout.main.job_context import get_job_context


JSON_LOGS_ENABLED = os.getenv("JSON_LOGS", "true").lower() in {"1", "true", "yes", "on"}


class ContextJSONFormatter(logging.Formatter):
    """Serialize log records with job context into JSON."""

    RESERVED_ATTRS = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "taskName",
    }

    DEFAULT_KEYS = ("job_id", "queue_name", "execution_id", "metric_name", "metric_value")

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - formatting logic
        log: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Attach job context values (job id, queue, execution)
        for key, value in get_job_context().items():
            if value is not None and key not in log:
                log[key] = value

        # Include extra attributes passed via logger(..., extra={})
        for key, value in record.__dict__.items():
            if key in self.RESERVED_ATTRS or key.startswith("_"):
                continue
            if value is None:
                continue
            log.setdefault(key, value)

        for key in self.DEFAULT_KEYS:
            if key not in log and getattr(record, key, None) is not None:
                log[key] = getattr(record, key)

        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            log["stack"] = record.stack_info

        return json.dumps(log, default=str)


# Keep third-party loggers quiet unless we are debugging
for _logger in logging.root.manager.loggerDict:
    if get_loglevel() <= logging.DEBUG:
        logging.getLogger(_logger).setLevel(logging.INFO)
    else:
        logging.getLogger(_logger).setLevel(logging.CRITICAL)

for logger_name in ("sqlalchemy.engine", "sqlalchemy.pool"):
    quiet_logger = logging.getLogger(logger_name)
    quiet_logger.setLevel(logging.WARNING)
    quiet_logger.propagate = False


class SimpleLogger(logging.Logger):
    FORMAT_STRING = "%(asctime)s | %(levelname)s | %(name)s : %(message)s"

    def __init__(
        self,
        name="main",
        fmt_string=FORMAT_STRING,
        level=logging.WARNING,
        console=True,
        files=None,
    ):
        logging.Logger.__init__(self, name, level)
        formatter_obj: logging.Formatter
        if JSON_LOGS_ENABLED:
            formatter_obj = ContextJSONFormatter()
        else:
            formatter_obj = logging.Formatter(fmt_string)

        if files is None:
            files = []
        elif isinstance(files, str):
            files = [files]

        def _add_stream(handler: type[logging.Handler], **kwargs):
            instance = handler(**kwargs)
            instance.setLevel(level)
            instance.setFormatter(formatter_obj)
            self.addHandler(instance)

        if console is True:
            if JSON_LOGS_ENABLED:
                _add_stream(logging.StreamHandler, stream=sys.stdout)
            else:
                # RichHandler does its own formatting
                rich_handler = RichHandler(rich_tracebacks=True, markup=True, show_path=True)
                rich_handler.setLevel(level)
                self.addHandler(rich_handler)

        for filepath in files:
            _add_stream(logging.FileHandler, filename=filepath)


_loggers: dict[str, SimpleLogger] = {}


def get_logger(module_name: str) -> SimpleLogger:
    # One logger per module; re-creating would stack duplicate handlers
    if module_name not in _loggers:
        _loggers[module_name] = SimpleLogger(name=module_name, level=get_loglevel())
    return _loggers[module_name]
