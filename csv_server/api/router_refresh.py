"""
Refresh endpoints: re-read the configured source, or replace it with an upload.

Both return 202 with the version id the refresh will publish as; the new
version becomes visible once parsing finishes (see GET /datasets). An upload
never joins a refresh already in flight; it gets 409 until that one finishes.
"""
from __future__ import annotations

import gzip
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse

from csv_server.api.dependencies import get_store
from csv_server.api.response_models import RefreshResponse
from csv_server.data.normalize import detect_statement_kind
from csv_server.data.schemas import StatementKind
from csv_server.data.store import DatasetStore, RefreshTicket
from csv_server.errors import InvalidQuery, MalformedInput

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/datasets", tags=["refresh"])


def _accepted(ticket: RefreshTicket, source: str | None = None) -> JSONResponse:
    body = RefreshResponse(
        dataset=ticket.name,
        version=ticket.version,
        coalesced=ticket.coalesced,
        source=source,
    )
    return JSONResponse(body.model_dump(), status_code=202)


@router.post("/{name}/refresh", status_code=202, response_model=RefreshResponse)
def refresh(name: str, store: DatasetStore = Depends(get_store)):
    """Re-read the dataset's configured file in the background."""
    ticket = store.refresh(name)
    return _accepted(ticket)


async def _read_upload(file: UploadFile, statement: Optional[StatementKind]) -> tuple[str, bytes]:
    """(csv file name, decompressed bytes) for one uploaded part."""
    filename = file.filename or ""
    if not filename:
        raise InvalidQuery("Missing filename", parameter="file")

    is_gzipped = filename.lower().endswith(".csv.gz")
    if is_gzipped:
        filename = filename[:-3]
    if not filename.lower().endswith(".csv"):
        raise InvalidQuery(f"Only .csv files are accepted (got '{file.filename}')", parameter="file")
    if statement is not None and detect_statement_kind(filename) != statement:
        raise InvalidQuery(
            f"'{file.filename}' is not a {statement.value} statement", parameter="file",
        )

    content = await file.read()
    if is_gzipped:
        try:
            content = gzip.decompress(content)
        except (OSError, EOFError) as e:
            raise MalformedInput(0, f"{file.filename} is not a valid gzip file: {e}")
    if not content.strip():
        raise InvalidQuery(f"Uploaded file '{file.filename}' is empty", parameter="file")
    return filename, content


@router.post("/{name}/upload", status_code=202, response_model=RefreshResponse)
async def upload(
    name: str,
    file: list[UploadFile] = File(...),
    store: DatasetStore = Depends(get_store),
):
    """Replace the dataset's contents with one or more uploaded CSVs (optionally .csv.gz).

    Several parts are merged the same way as a dataset configured with ``paths``.
    """
    cfg = store.config(name)
    files = [await _read_upload(part, cfg.statement) for part in file]

    ticket = store.refresh(name, source=files)
    label = ", ".join(filename for filename, _ in files)
    logger.info(
        "Upload accepted",
        extra={
            "dataset": name,
            "version": ticket.version,
            "upload_name": label,
            "bytes": sum(len(content) for _, content in files),
        },
    )
    return _accepted(ticket, source=label)
