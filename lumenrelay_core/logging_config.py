"""
Structured logging configuration for LumenRelay.

Supports two output formats:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

Every handler carries a redaction filter that masks anything shaped like a
Stellar secret seed, so a stray ``logger.info(f"... {secret}")`` never
reaches disk.

Usage:
    from lumenrelay_core.logging_config import setup_logging
    setup_logging(level="DEBUG", fmt="json", log_file="lumenrelay.log")
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Secret seeds are "S" + 55 base32 characters.
_SECRET_SEED_RE = re.compile(r"\bS[A-Z2-7]{55}\b")
REDACTED = "S***REDACTED***"


def redact(text: str) -> str:
    return _SECRET_SEED_RE.sub(REDACTED, text)


class _SecretRedactionFilter(logging.Filter):
    """Rewrite the record's message with secret seeds masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """Coloured, concise single-line format."""

    COLOURS = {
        "DEBUG": "\033[36m",     # cyan
        "INFO": "\033[32m",      # green
        "WARNING": "\033[33m",   # yellow
        "ERROR": "\033[31m",     # red
        "CRITICAL": "\033[1;31m",  # bold red
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{colour}{ts} [{record.levelname:<7}]{self.RESET} "
            f"{record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += "\n" + redact(self.formatException(record.exc_info))
        return line


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the root logger for the entire application.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    fmt : str
        ``"human"`` for coloured single-line output, ``"json"`` for
        newline-delimited JSON.
    log_file : str, optional
        If provided, logs are *also* written to this file (always in JSON
        format for machine parsing).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove any existing handlers (avoid duplicates on reload)
    root.handlers.clear()
    redaction = _SecretRedactionFilter()

    # --- Console handler ---
    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter())
    console.addFilter(redaction)
    root.addHandler(console)

    # --- Optional file handler ---
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())  # always JSON for files
        fh.addFilter(redaction)
        root.addHandler(fh)

    # aiohttp's access log is noisy at INFO; keep it at WARNING unless debugging.
    if root.level > logging.DEBUG:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
