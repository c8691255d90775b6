"""
DatasetStore — versioned, in-memory snapshots of every configured dataset.

Loaded once at startup, refreshed on request, queried on every request.
Each refresh parses into a brand-new Snapshot and publishes it by replacing
one dict entry; readers holding the previous Snapshot keep a complete,
consistent version until they drop it.
"""
from __future__ import annotations

import datetime as dt
import logging
import threading
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

import pandas as pd

from csv_server.config import DatasetConfig, RefreshPolicy, ServerConfig
from csv_server.data.normalize import (
    derive_columns, isolate_cash_sections, keep_activities, sort_records,
)
from csv_server.data.parser import decode_input, parse_records
from csv_server.data.schemas import ColumnType, ParseReport, Record, Schema, StatementKind
from csv_server.errors import (
    DatasetUnavailable, MalformedInput, NotFound, RefreshInProgress,
)

logger = logging.getLogger(__name__)

# Uploads arrive as (file name, bytes) pairs
Source = Union[str, Path, Sequence[tuple[str, bytes]], None]


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Snapshot:
    """One immutable, fully-parsed version of a dataset."""
    name: str
    version: int
    schema: Schema
    records: tuple[Record, ...]
    frame: pd.DataFrame
    report: ParseReport
    source: str
    loaded_at: dt.datetime

    @property
    def row_count(self) -> int:
        return len(self.records)


def build_frame(schema: Schema, records: Iterable[Record]) -> pd.DataFrame:
    """Column-typed DataFrame for aggregation. Built once per snapshot."""
    records = list(records)
    cols = {}
    for i, col in enumerate(schema.columns):
        values = [r.values[i] for r in records]
        if col.type == ColumnType.INT:
            cols[col.name] = pd.Series(values, dtype="Int64")
        elif col.type == ColumnType.FLOAT:
            cols[col.name] = pd.Series(values, dtype="float64")
        elif col.type == ColumnType.DATE:
            cols[col.name] = pd.to_datetime(pd.Series(values, dtype=object))
        else:
            cols[col.name] = pd.Series(values, dtype=object)
    return pd.DataFrame(cols, columns=schema.names)


def read_sources(cfg: DatasetConfig, source: Source = None) -> list[tuple[str, bytes]]:
    """(file name, raw bytes) for each file a refresh reads: the configured files, a path, or uploads."""
    if source is None:
        return [(path.name, path.read_bytes()) for path in cfg.source_paths]
    if isinstance(source, (str, Path)):
        path = Path(source)
        return [(path.name, path.read_bytes())]
    return list(source)


def source_label(cfg: DatasetConfig, source: Source = None) -> str:
    if source is None:
        return ", ".join(path.name for path in cfg.source_paths)
    if isinstance(source, (str, Path)):
        return Path(source).name
    return ", ".join(filename for filename, _ in source)


def _parse_file(cfg: DatasetConfig, filename: str, data: bytes) -> tuple[Schema, list[Record], ParseReport]:
    options = cfg.parse_options()
    if cfg.statement == StatementKind.CASH:
        data = isolate_cash_sections(decode_input(data, options.encoding))
    stream = parse_records(data, cfg.schema(), options)
    records = list(stream)
    if cfg.keep_activities:
        records = keep_activities(stream.schema, records, cfg.activity_column, cfg.keep_activities)
    schema, records = derive_columns(
        stream.schema,
        records,
        security_column=cfg.derive_security_isin,
        source_name=filename if cfg.tag_account_type else None,
        tickers=cfg.tickers or None,
        net_flow=cfg.net_flow,
    )
    return schema, records, stream.report


def load_snapshot(
    cfg: DatasetConfig, version: int, files: Sequence[tuple[str, bytes]], label: Optional[str] = None,
) -> Snapshot:
    """Parse every file per the dataset config and merge them into one Snapshot."""
    if not files:
        raise MalformedInput(0, "no input files")
    schema = cfg.schema()
    records: list[Record] = []
    report = ParseReport()
    many = len(files) > 1
    for filename, data in files:
        try:
            schema, parsed, file_report = _parse_file(cfg, filename, data)
        except MalformedInput as e:
            if not many:
                raise
            raise MalformedInput(e.row, f"{filename}: {e.reason}") from e
        records += parsed
        report.merge(file_report, source=filename if many else None)

    if cfg.sort_by:
        records = sort_records(schema, records, cfg.sort_by)

    return Snapshot(
        name=cfg.name,
        version=version,
        schema=schema,
        records=tuple(records),
        frame=build_frame(schema, records),
        report=report,
        source=label or ", ".join(filename for filename, _ in files),
        loaded_at=dt.datetime.now(dt.timezone.utc).replace(microsecond=0),
    )


# ---------------------------------------------------------------------------
# Refresh tickets
# ---------------------------------------------------------------------------

@dataclass
class RefreshTicket:
    """Handle on a (possibly shared) background refresh."""
    name: str
    version: int
    future: Future = field(repr=False)
    coalesced: bool = False
    explicit_source: bool = False    # upload or path instead of the configured files

    @property
    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Snapshot:
        return self.future.result(timeout)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class DatasetStore:
    """Named dataset snapshots with serialized background refresh."""

    def __init__(
        self,
        datasets: Iterable[DatasetConfig],
        policy: RefreshPolicy = RefreshPolicy.COALESCE,
        max_workers: int = 2,
    ) -> None:
        self.policy = policy
        self._configs = {d.name: d for d in datasets}
        self._snapshots: dict[str, Snapshot] = {}
        self._inflight: dict[str, RefreshTicket] = {}
        self._next_version = {name: 1 for name in self._configs}
        self._last_error: dict[str, str] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="csv-refresh")

    @classmethod
    def from_config(cls, cfg: ServerConfig) -> "DatasetStore":
        return cls(cfg.datasets, policy=cfg.refresh_policy, max_workers=cfg.refresh_workers)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def names(self) -> list[str]:
        return sorted(self._configs)

    def config(self, name: str) -> DatasetConfig:
        cfg = self._configs.get(name)
        if cfg is None:
            raise NotFound(f"Unknown dataset: {name}", parameter="name")
        return cfg

    def get(self, name: str) -> Snapshot:
        """Current snapshot. Never waits for an in-flight refresh."""
        self.config(name)
        snap = self._snapshots.get(name)
        if snap is None:
            raise DatasetUnavailable(f"Dataset '{name}' has not been loaded yet")
        return snap

    def is_refreshing(self, name: str) -> bool:
        return name in self._inflight

    def status(self, name: str) -> dict:
        self.config(name)
        snap = self._snapshots.get(name)
        inflight = self._inflight.get(name)
        return {
            "name": name,
            "version": snap.version if snap else None,
            "rows": snap.row_count if snap else 0,
            "rows_skipped": snap.report.rows_skipped if snap else 0,
            "columns": snap.schema.names if snap else [],
            "source": snap.source if snap else None,
            "loaded_at": snap.loaded_at.isoformat() if snap else None,
            "refreshing": inflight is not None,
            "pending_version": inflight.version if inflight else None,
            "last_error": self._last_error.get(name),
        }

    def statuses(self) -> list[dict]:
        return [self.status(name) for name in self.names()]

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(
        self, name: str, source: Union[bytes, Source] = None, label: Optional[str] = None,
    ) -> RefreshTicket:
        """Start a background refresh, or join / reject the one in flight.

        Only re-reads of the configured files coalesce; a refresh with its own
        source (an upload or an explicit path) never joins another refresh,
        and nothing joins it, whatever the policy.
        """
        cfg = self.config(name)
        if isinstance(source, bytes):
            source = [(label or "upload.csv", source)]
        with self._lock:
            current = self._inflight.get(name)
            if current is not None:
                if self.policy == RefreshPolicy.REJECT or source is not None or current.explicit_source:
                    raise RefreshInProgress(name, current.version)
                return RefreshTicket(name, current.version, current.future, coalesced=True)

            version = self._next_version[name]
            self._next_version[name] = version + 1
            if label is None:
                label = source_label(cfg, source)
            future = self._executor.submit(self._run_refresh, cfg, version, source, label)
            ticket = RefreshTicket(name, version, future, explicit_source=source is not None)
            self._inflight[name] = ticket
        return ticket

    def _run_refresh(self, cfg: DatasetConfig, version: int, source: Source, label: str) -> Snapshot:
        name = cfg.name
        logger.info("Refresh started", extra={"dataset": name, "version": version, "source": label})
        try:
            snapshot = load_snapshot(cfg, version, read_sources(cfg, source), label)
        except MalformedInput as e:
            self._finish(name, error=str(e))
            logger.warning("Refresh rejected input", extra={"dataset": name, "version": version, "error": str(e)})
            raise
        except Exception as e:
            self._finish(name, error=f"{type(e).__name__}: {e}")
            logger.exception("Refresh failed", extra={"dataset": name, "version": version})
            raise

        self._finish(name, snapshot=snapshot)
        logger.info(
            "Refresh published",
            extra={
                "dataset": name,
                "version": version,
                "rows": snapshot.row_count,
                "rows_skipped": snapshot.report.rows_skipped,
            },
        )
        return snapshot

    def _finish(self, name: str, snapshot: Optional[Snapshot] = None, error: Optional[str] = None) -> None:
        with self._lock:
            if snapshot is not None:
                current = self._snapshots.get(name)
                if current is None or current.version < snapshot.version:
                    self._snapshots[name] = snapshot
                self._last_error.pop(name, None)
            if error is not None:
                self._last_error[name] = error
            self._inflight.pop(name, None)

    def load_all(self, wait: bool = True, timeout: Optional[float] = None) -> list[RefreshTicket]:
        """Refresh every configured dataset (startup)."""
        tickets = [self.refresh(name) for name in self.names()]
        if wait:
            futures.wait([t.future for t in tickets], timeout=timeout)
        return tickets

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)
