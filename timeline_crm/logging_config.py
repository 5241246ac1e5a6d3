"""
Logging setup for the Flask app.

- LOG_FORMAT=json: one JSON object per line (serverless log drains)
- otherwise: short colored lines for local development
- LOG_LEVEL controls the level (default INFO, DEBUG when app.debug)
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ("path", "method", "user_id", "projeto_id"):
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


class ReadableFormatter(logging.Formatter):

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now().strftime("%H:%M:%S")
        base = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def configure_logging(app):
    default_level = "DEBUG" if app.debug else "INFO"
    level_name = app.config.get("LOG_LEVEL") or os.getenv("LOG_LEVEL", default_level)
    level = getattr(logging, level_name.upper(), logging.INFO)

    use_json = (app.config.get("LOG_FORMAT") or os.getenv("LOG_FORMAT", "")).lower() == "json"

    root = logging.getLogger()
    # Only our own handler is replaced
    for existing in list(root.handlers):
        if getattr(existing, "timeline_crm", False):
            root.removeHandler(existing)
    handler = logging.StreamHandler(sys.stderr)
    handler.timeline_crm = True
    handler.setFormatter(JSONFormatter() if use_json else ReadableFormatter())
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("httpx", "httpcore", "hpack", "werkzeug", "websockets"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not app.config.get("TESTING"):
        app.logger.info("Logging configured: level=%s format=%s", level_name, "json" if use_json else "readable")
