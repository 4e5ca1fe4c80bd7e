from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar, Token
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping

from rich.console import Console
from rich.logging import RichHandler

_CONTEXT: Dict[str, ContextVar[str | None]] = {
    "request_id": ContextVar("request_id", default=None),
    "merchant_id": ContextVar("merchant_id", default=None),
}
# Per-call keyword arguments lifted into ``extra`` by the adapter.
_CALL_FIELDS = ("request_id", "merchant_id", "stage", "payload")
# Rendered suffix labels, in order.
_SUFFIX_LABELS = (("request_id", "rid"), ("merchant_id", "merchant"), ("stage", "stage"))
_QUIET_LOGGERS = ("httpx", "httpcore", "aiohttp.access", "PIL")
_LOG_FILE = "tryon.log"


class _PipelineAdapter(logging.LoggerAdapter):
    """Attach request scoped context and per-call stage/payload to every record."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        extra: Dict[str, Any] = dict(kwargs.get("extra") or {})
        extra.setdefault("module_name", self.extra.get("module_name") or self.logger.name)

        for name in _CALL_FIELDS:
            value = kwargs.pop(name, None)
            if value is None:
                value = extra.pop(name, None)
            if value is None and name in _CONTEXT:
                value = _CONTEXT[name].get()
            if value is not None:
                extra[name] = value

        kwargs["extra"] = extra
        return msg, kwargs


def _render_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)
    except TypeError:
        return str(payload)


class _PipelineFormatter(logging.Formatter):
    """``[time] [LEVEL] [module] message (rid=..., merchant=..., stage=..., {payload})``."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        record.message = message

        context = [
            f"{label}={getattr(record, field)}"
            for field, label in _SUFFIX_LABELS
            if getattr(record, field, None)
        ]
        payload = getattr(record, "payload", None)
        if payload:
            context.append(_render_payload(payload))

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message = f"{message}\n{record.exc_text}"

        suffix = f" ({', '.join(context)})" if context else ""
        module_name = getattr(record, "module_name", record.name)
        stamp = self.formatTime(record, self.datefmt)
        return f"[{stamp}] [{record.levelname}] [{module_name}] {message}{suffix}"


class _MilestoneFilter(logging.Filter):
    """Hide INFO records on the console unless they are pipeline milestones."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno == logging.INFO:
            return bool(getattr(record, "domain", False))
        return True


def _resolve_level() -> int:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _console_handler() -> logging.Handler:
    handler = RichHandler(
        console=Console(),
        rich_tracebacks=True,
        show_time=False,
        show_level=False,
        show_path=False,
        markup=False,
    )
    handler.setFormatter(_PipelineFormatter(datefmt="%H:%M:%S"))
    if (os.getenv("LOG_NOISE", "low").strip().lower() or "low") != "debug":
        handler.addFilter(_MilestoneFilter())
    return handler


def _file_handler(logs_dir: Path) -> logging.Handler:
    logs_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        logs_dir / _LOG_FILE, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    handler.setFormatter(_PipelineFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(logs_dir: Path | None = None) -> logging.Logger:
    """Install the console and rotating file handlers once per process.

    ``LOG_LEVEL`` sets the root level, ``LOG_NOISE=debug`` shows every INFO
    record on the console and ``LOG_DIR`` moves the log file.
    """

    root = logging.getLogger()
    if getattr(root, "_tryon_configured", False):
        return root

    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(_resolve_level())

    target = logs_dir or Path(os.getenv("LOG_DIR") or Path(__file__).resolve().parent / "logs")
    root.addHandler(_console_handler())
    root.addHandler(_file_handler(target))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root._tryon_configured = True  # type: ignore[attr-defined]
    return root


def get_logger(name: str) -> logging.LoggerAdapter:
    return _PipelineAdapter(logging.getLogger(name), {"module_name": name})


def info_domain(
    module: str,
    message: str,
    *,
    stage: str | None = None,
    merchant_id: str | None = None,
    **context: Any,
) -> None:
    """Log a pipeline milestone (cache hit, generation done, quota rejected)."""

    extra: Dict[str, Any] = {"domain": True}
    if context:
        extra["payload"] = context
    get_logger(module).info(message, extra=extra, stage=stage, merchant_id=merchant_id)


def log_event(
    level: str | int,
    module: str,
    message: str,
    *,
    merchant_id: str | None = None,
    stage: str | None = None,
    extra: Mapping[str, Any] | None = None,
    exc_info: Any | None = None,
) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    get_logger(module).log(
        level,
        message,
        exc_info=exc_info,
        merchant_id=merchant_id,
        stage=stage,
        payload=dict(extra) if extra else None,
    )


def bind_context(
    *, request_id: str | None = None, merchant_id: str | None = None
) -> Dict[str, Token]:
    """Scope ``request_id``/``merchant_id`` to the current task; undo with :func:`reset_context`."""

    values = {"request_id": request_id, "merchant_id": merchant_id}
    return {
        name: _CONTEXT[name].set(value) for name, value in values.items() if value is not None
    }


def reset_context(tokens: Mapping[str, Token]) -> None:
    for name, token in tokens.items():
        _CONTEXT[name].reset(token)


__all__ = [
    "bind_context",
    "get_logger",
    "info_domain",
    "log_event",
    "reset_context",
    "setup_logging",
]
