"""
Configuration: server settings, dataset sources, built-in statement presets.

Loaded once at startup from a JSON file; never re-read at runtime.
"""
from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from csv_server.data.schemas import (
    DEFAULT_DATE_FORMAT, Column, ColumnType, ParseOptions, Schema, StatementKind,
)
from csv_server.errors import ConfigError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults; override the config path with CSV_SERVER_CONFIG
# ---------------------------------------------------------------------------
DEFAULT_PORT = 8000
CONFIG_PATH = Path(os.environ.get("CSV_SERVER_CONFIG", "config/server.json"))

# ---------------------------------------------------------------------------
# Built-in presets (raw InvestEngine exports)
# ---------------------------------------------------------------------------
# Trading statement: first line is a title ("Transaction Statement: ..."),
# money columns carry "£" and thousands commas.
INVESTENGINE_TRADING = {
    "statement": "trading",
    "skip_lines": 1,
    "currency_symbols": "£",
    "thousands_separator": ",",
    "date_format": "%d/%m/%y",
    "derive_security_isin": "Security / ISIN",
    "tag_account_type": True,
    "sort_by": "Trade Date/Time",
    "columns": [
        {"name": "Security / ISIN", "type": "string", "required": True},
        {"name": "Transaction Type", "type": "string", "required": True},
        {"name": "Quantity", "type": "float", "required": True},
        {"name": "Share Price", "type": "float"},
        {"name": "Total Trade Value", "type": "float"},
        {"name": "Trade Date/Time", "type": "date", "required": True, "date_format": "%d/%m/%y %H:%M:%S"},
        {"name": "Settlement Date", "type": "date"},
        {"name": "Broker", "type": "string"},
    ],
}

# Cash statement: one "Cash Statement: ... Portfolio: ..." section per
# portfolio, each with its own "Date,Activity,..." header. Only external
# flows (deposits, withdrawals, ISA transfers) are kept.
INVESTENGINE_CASH = {
    "statement": "cash",
    "currency_symbols": "£",
    "thousands_separator": ",",
    "date_format": "%d/%m/%y",
    "tag_account_type": True,
    "sort_by": "Date",
    "net_flow": ["Credit", "Debit"],
    "activity_column": "Activity",
    "keep_activities": ["PAYMENT RECEIVED", "WITHDRAWAL", "ISA TRANSFER IN"],
    "columns": [
        {"name": "Date", "type": "date", "required": True},
        {"name": "Activity", "type": "string", "required": True},
        {"name": "Credit", "type": "float"},
        {"name": "Debit", "type": "float"},
        {"name": "Balance", "type": "float"},
    ],
}

PRESETS: dict[str, dict[str, Any]] = {
    "investengine_trading": INVESTENGINE_TRADING,
    "investengine_cash": INVESTENGINE_CASH,
}

_NAME_CHARS = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_.-")


class RefreshPolicy(str, Enum):
    COALESCE = "coalesce"     # second caller shares the in-flight refresh
    REJECT = "reject"         # second caller gets RefreshInProgress


class ColumnConfig(BaseModel):
    name: str
    type: ColumnType = ColumnType.STRING
    required: bool = False
    date_format: Optional[str] = None


class DatasetConfig(BaseModel):
    """One named dataset: where it comes from and how to parse it.

    ``path`` names a single file; ``paths`` merges several statements (e.g.
    the GIA and ISA exports) into one dataset, each tagged with its own
    account type when ``tag_account_type`` is set.
    """
    name: str
    path: Optional[Path] = None
    paths: list[Path] = Field(default_factory=list)
    preset: Optional[str] = None
    statement: Optional[StatementKind] = None
    columns: list[ColumnConfig] = Field(default_factory=list)
    date_format: str = DEFAULT_DATE_FORMAT
    delimiter: str = ","
    decimal_separator: str = "."
    thousands_separator: Optional[str] = None
    currency_symbols: str = ""
    skip_lines: int = 0
    has_header: bool = True
    strict: bool = False
    encoding: str = "utf-8-sig"
    derive_security_isin: Optional[str] = None
    tag_account_type: bool = False
    tickers: dict[str, str] = Field(default_factory=dict)     # ISIN -> ticker
    net_flow: Optional[tuple[str, str]] = None                # (credit, debit)
    activity_column: Optional[str] = None
    keep_activities: list[str] = Field(default_factory=list)
    sort_by: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _apply_preset(cls, raw: Any) -> Any:
        if not isinstance(raw, dict) or not raw.get("preset"):
            return raw
        preset = PRESETS.get(raw["preset"])
        if preset is None:
            raise ValueError(f"Unknown preset '{raw['preset']}'. Valid: {sorted(PRESETS)}")
        return {**preset, **raw}

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if not v or not set(v) <= _NAME_CHARS:
            raise ValueError(f"Dataset name must match [A-Za-z0-9_.-]+ (got '{v}')")
        return v

    @model_validator(mode="after")
    def _check_columns(self) -> "DatasetConfig":
        if not self.columns:
            raise ValueError(f"Dataset '{self.name}' declares no columns")
        if (self.path is None) == (not self.paths):
            raise ValueError(f"Dataset '{self.name}' needs exactly one of 'path' or 'paths'")

        declared = {c.name: c for c in self.columns}
        referenced = {
            "derive_security_isin": [self.derive_security_isin],
            "sort_by": [self.sort_by],
            "net_flow": list(self.net_flow or ()),
            "activity_column": [self.activity_column],
        }
        for option, names in referenced.items():
            for col in names:
                if col is not None and col not in declared:
                    raise ValueError(f"Dataset '{self.name}': {option} names undeclared column '{col}'")
        for col in self.net_flow or ():
            if not declared[col].type.is_numeric:
                raise ValueError(f"Dataset '{self.name}': net_flow column '{col}' is not numeric")
        if self.keep_activities and self.activity_column is None:
            raise ValueError(f"Dataset '{self.name}': keep_activities needs activity_column")
        if self.tickers and self.derive_security_isin is None:
            raise ValueError(f"Dataset '{self.name}': tickers need derive_security_isin")

        clashes = [n for n in self.derived_columns() if n in declared]
        if clashes:
            raise ValueError(
                f"Dataset '{self.name}' declares derived column(s) {', '.join(clashes)}; "
                "rename them or turn the derivation off"
            )
        return self

    @property
    def source_paths(self) -> list[Path]:
        return [self.path] if self.path is not None else list(self.paths)

    def derived_columns(self) -> list[str]:
        """Names appended after the declared columns, in order."""
        names = []
        if self.derive_security_isin:
            names += ["security", "isin"]
        if self.tickers:
            names.append("ticker")
        if self.tag_account_type:
            names.append("account_type")
        if self.net_flow:
            names.append("net_flow")
        return names

    def schema(self) -> Schema:
        return Schema(
            tuple(Column(c.name, c.type, c.required, c.date_format) for c in self.columns),
            date_format=self.date_format,
        )

    def parse_options(self) -> ParseOptions:
        return ParseOptions(
            delimiter=self.delimiter,
            decimal_separator=self.decimal_separator,
            thousands_separator=self.thousands_separator,
            currency_symbols=self.currency_symbols,
            skip_lines=self.skip_lines,
            has_header=self.has_header,
            strict=self.strict,
            encoding=self.encoding,
        )


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    templates_dir: Path = Path("templates")
    refresh_policy: RefreshPolicy = RefreshPolicy.COALESCE
    refresh_workers: int = Field(default=2, ge=1)
    datasets: list[DatasetConfig] = Field(default_factory=list)

    def dataset(self, name: str) -> Optional[DatasetConfig]:
        return next((d for d in self.datasets if d.name == name), None)

    def validate_startup(self) -> "ServerConfig":
        """Checks that must pass before the server starts."""
        if not self.templates_dir.is_dir():
            raise ConfigError(f"Templates directory not found: {self.templates_dir}")
        if not self.datasets:
            raise ConfigError("No dataset sources configured")
        names = [d.name for d in self.datasets]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ConfigError(f"Duplicate dataset names: {', '.join(dupes)}")
        for ds in self.datasets:
            for source in ds.source_paths:
                if not source.is_file():
                    logger.warning("Dataset source not found", extra={"dataset": ds.name, "path": str(source)})
        return self


def _resolve(path: Path, root: Path) -> Path:
    return path if path.is_absolute() else (root / path).resolve()


def load_config(path: Path | str = CONFIG_PATH) -> ServerConfig:
    """Read, validate and path-resolve a server config file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}")

    try:
        cfg = ServerConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}")

    root = path.parent
    cfg.templates_dir = _resolve(cfg.templates_dir, root)
    for ds in cfg.datasets:
        if ds.path is not None:
            ds.path = _resolve(ds.path, root)
        ds.paths = [_resolve(p, root) for p in ds.paths]

    logger.info(
        "Loaded config",
        extra={"config": str(path), "datasets": [d.name for d in cfg.datasets]},
    )
    return cfg.validate_startup()
