# integrations/core/logging.py
from __future__ import annotations

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

_request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

_RESERVED = frozenset((
    "args", "msg", "exc_info", "exc_text", "stack_info", "pathname", "lineno",
    "levelname", "levelno", "name", "created", "msecs", "relativeCreated",
    "thread", "threadName", "process", "processName", "module", "filename",
    "funcName", "taskName",
))

# bearer headers, slack tokens (xoxb-/xoxp-/xoxe-), long opaque JWT-ish blobs
_SECRET_PATTERNS = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"xox[abepr]-[A-Za-z0-9-]+"),
    re.compile(r"eyJ[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]+"),
]


def set_request_id(value: str) -> None:
    _request_id_ctx.set(value)


def get_request_id() -> str:
    return _request_id_ctx.get()


def redact(text: str) -> str:
    for pat in _SECRET_PATTERNS:
        if pat.groups:
            text = pat.sub(lambda m: m.group(1) + "***", text)
        else:
            text = pat.sub("***", text)
    return text


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


class SecretRedactionFilter(logging.Filter):
    """Masks token-looking values before a record reaches any handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.msg = redact(record.getMessage())
            record.args = None
        except Exception:
            # a broken %-format is the caller's bug; keep the record as-is
            pass
        return True


class JsonFormatter(logging.Formatter):
    def _ts(self, record: logging.LogRecord) -> str:
        return datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="seconds")

    def format(self, record: logging.LogRecord) -> str:
        try:
            out = {
                "ts": self._ts(record),
                "lvl": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "request_id": getattr(record, "request_id", "-"),
            }
            for k, v in record.__dict__.items():
                if k in _RESERVED or k in out:
                    continue
                try:
                    json.dumps(v)
                except (TypeError, ValueError):
                    v = str(v)
                out[k] = v
            if record.exc_info:
                out["exc"] = self.formatException(record.exc_info)
            return json.dumps(out, ensure_ascii=False)
        except Exception as e:  # never let logging crash a request
            return json.dumps({"ts": self._ts(record), "lvl": "ERROR", "logger": "logging",
                               "msg": f"formatting-error: {e!r}"}, ensure_ascii=False)


def setup_logging(log_dir: str | None = None, level: str | None = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    path = Path(log_dir or os.getenv("LOG_DIR", "logs"))
    path.mkdir(parents=True, exist_ok=True)

    max_bytes = int(os.getenv("LOG_MAX_BYTES", "1048576"))
    backups = int(os.getenv("LOG_BACKUPS", "7"))

    handlers: list[logging.Handler] = [
        RotatingFileHandler(path / "integrations.log", maxBytes=max_bytes,
                            backupCount=backups, encoding="utf-8"),
        logging.StreamHandler(),
    ]
    formatter = JsonFormatter()
    for h in handlers:
        h.setFormatter(formatter)
        h.addFilter(RequestIdFilter())
        h.addFilter(SecretRedactionFilter())

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging.getLogger(name).setLevel(level)
    # httpx logs full request URLs at INFO; keep it quieter
    logging.getLogger("httpx").setLevel("WARNING")
