"""
Error taxonomy — every failure the service reports maps to one of these.

Each error carries a stable machine-readable ``code`` and the HTTP status the
router answers with. 500-class errors never expose their message to clients.
"""
from __future__ import annotations

from typing import Optional


class CsvServerError(Exception):
    """Base exception for all csv_server errors."""

    code = "internal_error"
    status = 500

    def __init__(self, message: str = "", parameter: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.parameter = parameter

    @property
    def public_message(self) -> str:
        if self.status >= 500:
            return "The server could not complete the request."
        return self.message

    def to_dict(self) -> dict:
        parameter = self.parameter if self.status < 500 else None
        return {"error": {"code": self.code, "message": self.public_message, "parameter": parameter}}


class ConfigError(CsvServerError):
    """Missing or invalid startup configuration."""
    code = "config_error"


class MalformedInput(CsvServerError):
    """A CSV row (or header) could not be parsed against the schema."""
    code = "malformed_input"
    status = 422

    def __init__(self, row: int, reason: str) -> None:
        super().__init__(f"row {row}: {reason}")
        self.row = row
        self.reason = reason


class UnknownColumn(CsvServerError):
    code = "unknown_column"
    status = 400

    def __init__(self, column: str, parameter: Optional[str] = None) -> None:
        super().__init__(f"Unknown column: {column}", parameter=parameter or column)
        self.column = column


class TypeMismatch(CsvServerError):
    code = "type_mismatch"
    status = 400


class InvalidQuery(CsvServerError):
    """Query parameters that cannot be parsed at all."""
    code = "invalid_query"
    status = 400


class RefreshInProgress(CsvServerError):
    code = "refresh_in_progress"
    status = 409

    def __init__(self, name: str, version: int) -> None:
        super().__init__(f"Refresh of '{name}' already in progress (version {version})", parameter=name)
        self.version = version


class UnknownTemplate(CsvServerError):
    code = "unknown_template"
    status = 404

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown template: {name}", parameter="template")
        self.name = name


class BindingError(CsvServerError):
    """A template referenced something the render context does not provide."""
    code = "binding_error"
    status = 500

    def __init__(self, template: str, missing: list[str]) -> None:
        super().__init__(f"Template '{template}' references unbound names: {', '.join(missing)}")
        self.template = template
        self.missing = missing


class NotFound(CsvServerError):
    code = "not_found"
    status = 404


class DatasetUnavailable(CsvServerError):
    """Dataset is configured but no version has been published yet."""
    code = "dataset_unavailable"
    status = 503

    @property
    def public_message(self) -> str:
        return self.message


class Internal(CsvServerError):
    code = "internal_error"
    status = 500
