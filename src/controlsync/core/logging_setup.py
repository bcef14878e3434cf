"""
Central logging for controlsync.

- Console handler: INFO..CRITICAL on stderr
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation)
- Action-based file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Secret masking in both msg and % args
- UTC timestamps in ISO-8601

Library modules only call :func:`get_logger`; :func:`build_logger` is called
once by the CLI.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER = "controlsync"
_MASK = "[REDACTED]"


class MaskSecretsFilter(logging.Filter):
    """
    Redact common secrets (bearer tokens, API keys, passwords) from log records.
    """

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
        re.compile(r"(Bearer\s+)([A-Za-z0-9._~+/=-]{8,})"),
        re.compile(r"(api[_-]?key\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @staticmethod
    def _mask(text: str) -> str:
        masked = text
        for pat in MaskSecretsFilter._patterns:
            masked = pat.sub(r"\1" + _MASK, masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask(v) if isinstance(v, str) else v for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True


class _ContextDefaults(logging.Filter):
    """Fill context attributes for records that did not come through the adapter."""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr in ("run_id", "action", "org"):
            if not hasattr(record, attr):
                setattr(record, attr, "-")
        return True


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _utc_formatter(fmt: str) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _reset_handlers(base: logging.Logger, kind: type) -> None:
    for h in list(base.handlers):
        if type(h) is kind:
            try:
                base.removeHandler(h)
                h.close()
            except Exception:
                pass


def _add_handler(base: logging.Logger, handler: logging.Handler, level: str, formatter: logging.Formatter) -> None:
    handler.setLevel(getattr(logging, level.upper(), logging.DEBUG))
    handler.setFormatter(formatter)
    handler.addFilter(_ContextDefaults())
    handler.addFilter(MaskSecretsFilter())
    base.addHandler(handler)


def build_logger(
    *,
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
    name: str = ROOT_LOGGER,
) -> logging.LoggerAdapter:
    """
    Configure the ``controlsync`` logger tree and return a LoggerAdapter.

    A base logger holds the console and rotating file handlers (replaced on
    every call, so repeated calls never duplicate output). A child logger
    ``<name>.<action>.<run_id>`` holds the per-run file and propagates to the
    base logger.
    """
    fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "run=%(run_id)s action=%(action)s org=%(org)s | %(message)s"
    )
    formatter = _utc_formatter(fmt)

    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)

    _reset_handlers(base, logging.StreamHandler)
    _add_handler(base, logging.StreamHandler(stream=sys.stderr), console_level, formatter)

    _ensure_dir(base_dir)
    app_log = os.path.abspath(os.path.join(base_dir, "app.log"))
    _reset_handlers(base, logging.handlers.TimedRotatingFileHandler)
    _add_handler(
        base,
        logging.handlers.TimedRotatingFileHandler(
            app_log, when="midnight", backupCount=14, encoding="utf-8", utc=True
        ),
        file_level,
        formatter,
    )

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True
    if not getattr(child, "_cs_action_configured", False):
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir = os.path.join(base_dir, today)
        _ensure_dir(dated_dir)
        action_file = os.path.join(dated_dir, f"{action}_{run_id}.log")
        Path(action_file).touch(exist_ok=True)
        _add_handler(child, logging.FileHandler(action_file, encoding="utf-8"), file_level, formatter)
        child._cs_action_configured = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(
        child,
        {"run_id": run_id, "action": action, "org": (extra or {}).get("org") or "-"},
    )
    adapter.debug("Logger initialised")
    return adapter


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger under the ``controlsync`` tree."""
    if not name:
        return logging.getLogger(ROOT_LOGGER)
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
