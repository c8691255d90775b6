import json
import logging
import shutil
from pathlib import Path

import pytest

from csv_server.config import DatasetConfig, load_config
from csv_server.data.schemas import Column, ColumnType, Schema
from csv_server.data.store import load_snapshot

REPO_TEMPLATES = Path(__file__).resolve().parents[1] / "templates"

TRADES_CSV = (
    "ticker,qty,price,date\n"
    "AAPL,10,150.0,2024-01-02\n"
    "AAPL,5,151.0,2024-01-03\n"
    "MSFT,3,300.0,2024-01-03\n"
)

TRADES_COLUMNS = [
    {"name": "ticker", "type": "string", "required": True},
    {"name": "qty", "type": "int"},
    {"name": "price", "type": "float"},
    {"name": "date", "type": "date"},
]


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """configure_logging() replaces root handlers; undo it after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def trades_schema() -> Schema:
    return Schema((
        Column("ticker", ColumnType.STRING, required=True),
        Column("qty", ColumnType.INT),
        Column("price", ColumnType.FLOAT),
        Column("date", ColumnType.DATE),
    ))


def make_dataset_config(path="trades.csv", name="trades", **overrides) -> DatasetConfig:
    raw = {"name": name, "path": None if path is None else str(path), "columns": TRADES_COLUMNS}
    raw.update(overrides)
    return DatasetConfig.model_validate(raw)


def make_snapshot(csv_text: str = TRADES_CSV, version: int = 1, **overrides):
    cfg = make_dataset_config(**overrides)
    return load_snapshot(cfg, version, [("trades.csv", csv_text.encode("utf-8"))])


@pytest.fixture
def trades_snapshot():
    return make_snapshot()


@pytest.fixture
def snapshot_factory():
    return make_snapshot


@pytest.fixture
def dataset_config_factory():
    return make_dataset_config


@pytest.fixture
def server_root(tmp_path) -> Path:
    """A config dir with one trades dataset and the bundled templates."""
    shutil.copytree(REPO_TEMPLATES, tmp_path / "templates")
    (tmp_path / "data").mkdir()
    (tmp_path / "data" / "trades.csv").write_text(TRADES_CSV)
    config = {
        "templates_dir": "templates",
        "datasets": [
            {"name": "trades", "path": "data/trades.csv", "columns": TRADES_COLUMNS},
        ],
    }
    (tmp_path / "server.json").write_text(json.dumps(config))
    return tmp_path


@pytest.fixture
def server_config(server_root):
    return load_config(server_root / "server.json")
