"""
Root logging setup for the server and the CLI.

JSON lines by default so refresh and request events can be filtered by
dataset and version; plain text for local runs. Both formats carry the
structured ``extra`` keys the store and routers attach to their records.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "csv-server"

# extra= keys rendered by the plain formatter, in this order
CONTEXT_FIELDS = (
    "dataset", "version", "source", "upload_name", "template",
    "rows", "rows_skipped", "code", "path", "error",
)


class PlainFormatter(logging.Formatter):
    """Human-readable lines with the record's context keys appended."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        return f"{line} ({', '.join(context)})" if context else line


def json_formatter() -> jsonlogger.JsonFormatter:
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        static_fields={"service": SERVICE_NAME},
    )


def configure_logging(
        level: int = logging.INFO,
        force_format: Optional[str] = None,
) -> None:
    """
    Replace the root logger's handlers with one stderr handler.

    Format selection:
        1) force_format ("json" or "plain")
        2) env var CSV_SERVER_LOG_FORMAT
        3) "json"
    """
    if force_format is not None:
        format_mode = force_format
    else:
        format_mode = os.getenv("CSV_SERVER_LOG_FORMAT", "json").lower()

    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    handler.setFormatter(PlainFormatter() if format_mode == "plain" else json_formatter())

    root.handlers.clear()
    root.addHandler(handler)
