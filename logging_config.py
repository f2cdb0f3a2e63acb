"""
Logging for the Orylis quote service.

Console: colored one-liners in dev, JSON lines when RAILWAY_ENVIRONMENT is set.
File:    DATA_DIR/logs/quotes.log, always JSON, rotated.

Lifecycle modules attach their identifiers with `extra=` (quote_id,
project_id, quote_number ...); both formatters surface them.
Call setup_logging() once, from create_app().
"""
import os
import json
import logging
import logging.handlers
from datetime import datetime, timezone

from src.core.paths import LOG_DIR

LOG_FILE = "quotes.log"
LOG_MAX_BYTES = 5_000_000
LOG_BACKUPS = 5
NOISY_LOGGERS = ("urllib3", "werkzeug", "PIL", "reportlab")

CONTEXT_KEYS = ("quote_id", "quote_number", "project_id", "user",
                "route", "method", "status", "duration_ms")


def _context(record) -> dict:
    return {k: getattr(record, k) for k in CONTEXT_KEYS
            if getattr(record, k, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""
    def format(self, record):
        entry = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(_context(record))
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class HumanFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m", logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m", logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        ctx = _context(record)
        # request lines already spell out route/method/status
        if "route" not in ctx:
            tail = " ".join(f"{k.split('_')[0]}={v}" for k, v in ctx.items()
                            if k in ("quote_id", "project_id"))
        else:
            tail = ""
        color = self.LEVEL_COLORS.get(record.levelno, "")
        stamp = datetime.now().strftime("%H:%M:%S")
        line = f"{color}{stamp} {record.levelname[:4]:<4} {record.name}: {record.getMessage()}{self.RESET}"
        if tail:
            line += f"  ({tail})"
        if record.exc_info and record.exc_info[0]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level=None, json_logs=None, log_dir=None):
    """
    Configure the root logger.

    Args:
        level: Log level name (default: LOG_LEVEL env, else INFO)
        json_logs: JSON on the console (default: on when RAILWAY_ENVIRONMENT is set)
        log_dir: Rotating file location (default: DATA_DIR/logs); "" disables the file
    """
    level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    if json_logs is None:
        json_logs = "RAILWAY_ENVIRONMENT" in os.environ
    log_dir = LOG_DIR if log_dir is None else log_dir

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if json_logs else HumanFormatter())
    root.addHandler(console)

    file_status = "off"
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                os.path.join(log_dir, LOG_FILE),
                maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
            )
        except OSError as e:
            file_status = f"unavailable ({e})"
        else:
            fh.setFormatter(JSONFormatter())
            root.addHandler(fh)
            file_status = os.path.join(log_dir, LOG_FILE)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("quotes").info("Logging initialized (level=%s, json=%s, file=%s)",
                                     level, json_logs, file_status)
