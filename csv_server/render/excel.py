"""
ExcelWriter — styled .xlsx export of an aggregation result.
"""
from __future__ import annotations

import datetime as dt
from io import BytesIO

from openpyxl import Workbook
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from csv_server.data.schemas import ColumnType, Schema
from csv_server.render.renderer import RenderContext
from csv_server.render.styles import (
    TITLE_FONT, SUBTITLE_FONT,
    HEADER_FONT, HEADER_FILL, HEADER_BORDER,
    DATA_FONT, THIN_BORDER, ALTERNATE_FILL,
    KPI_VALUE_FONT, KPI_LABEL_FONT,
    CENTER, LEFT, RIGHT,
    NUMBER_FORMATS,
)

ColSpec = tuple[str, str]  # (label, cell_type)

# Excel caps sheet titles at 31 characters and forbids some punctuation
_SHEET_BAD_CHARS = set('[]:*?/\\')


def _sheet_title(name: str) -> str:
    cleaned = "".join("_" if c in _SHEET_BAD_CHARS else c for c in name)
    return cleaned[:31] or "Report"


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------

def format_header_row(ws: Worksheet, row_num: int, num_cols: int) -> None:
    for col in range(1, num_cols + 1):
        cell = ws.cell(row=row_num, column=col)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = CENTER
        cell.border = HEADER_BORDER


def format_data_cell(ws: Worksheet, row_num: int, col_num: int, value, cell_type: str = "text") -> None:
    """Write and format a single data cell."""
    cell = ws.cell(row=row_num, column=col_num)
    cell.value = value
    cell.font = DATA_FONT
    cell.border = THIN_BORDER
    cell.alignment = LEFT if cell_type == "text" else RIGHT
    if cell_type in NUMBER_FORMATS:
        cell.number_format = NUMBER_FORMATS[cell_type]
    if row_num % 2 == 0:
        cell.fill = ALTERNATE_FILL


def auto_column_width(ws: Worksheet, min_width: int = 10, max_width: int = 55) -> None:
    """Fit column widths to content length."""
    for column in ws.iter_cols():
        lengths = [len(str(c.value)) for c in column if c.value is not None]
        width = min(max(max(lengths, default=0) + 2, min_width), max_width)
        ws.column_dimensions[get_column_letter(column[0].column)].width = width


def cell_type_for(column_type: ColumnType) -> str:
    return {
        ColumnType.INT: "number",
        ColumnType.FLOAT: "decimal",
        ColumnType.DATE: "date",
    }.get(column_type, "text")


def metric_cell_type(label: str, schema: Schema) -> str:
    """``count``/``count(x)`` → number; ``avg(x)`` → decimal; others follow the column type."""
    if label == "count" or label.startswith("count("):
        return "number"
    if label.startswith("avg("):
        return "decimal"
    column = label[label.index("(") + 1:-1]
    return cell_type_for(schema.column(column).type)


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class ExcelWriter:
    """Builder for styled single-report workbooks."""

    def __init__(self, title: str) -> None:
        self.wb = Workbook()
        self.ws: Worksheet = self.wb.active
        self.ws.title = _sheet_title(title)

    def write_title(self, ws: Worksheet, title: str, subtitle: str, merge_cols: int = 6) -> int:
        """Write title + subtitle rows. Returns next available row."""
        ws.cell(row=1, column=1).value = title
        ws.cell(row=1, column=1).font = TITLE_FONT
        ws.cell(row=2, column=1).value = subtitle
        ws.cell(row=2, column=1).font = SUBTITLE_FONT
        if merge_cols > 1:
            ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=merge_cols)
            ws.merge_cells(start_row=2, start_column=1, end_row=2, end_column=merge_cols)
        return 4

    def write_kpi_row(self, ws: Worksheet, row: int, kpis: list[tuple], col_spacing: int = 2) -> int:
        """Row of (value, label) cards. Returns next row."""
        col = 1
        for value, label in kpis:
            value_cell = ws.cell(row=row, column=col)
            value_cell.value = value
            value_cell.font = KPI_VALUE_FONT
            value_cell.alignment = CENTER
            if isinstance(value, int):
                value_cell.number_format = NUMBER_FORMATS["number"]

            label_cell = ws.cell(row=row + 1, column=col)
            label_cell.value = label
            label_cell.font = KPI_LABEL_FONT
            label_cell.alignment = CENTER
            col += col_spacing
        return row + 3

    def write_table(self, ws: Worksheet, start_row: int, columns: list[ColSpec], rows: list[tuple]) -> int:
        """Header + data rows. Returns the row after the last data row."""
        for col_num, (label, _) in enumerate(columns, 1):
            ws.cell(row=start_row, column=col_num).value = label
        format_header_row(ws, start_row, len(columns))

        row = start_row + 1
        for values in rows:
            for col_num, ((_, cell_type), value) in enumerate(zip(columns, values), 1):
                format_data_cell(ws, row, col_num, value, cell_type)
            row += 1

        auto_column_width(ws)
        ws.freeze_panes = f"A{start_row + 1}"
        return row

    def to_bytes(self) -> bytes:
        buf = BytesIO()
        self.wb.save(buf)
        return buf.getvalue()


def render_workbook(context: RenderContext) -> bytes:
    """One-sheet workbook: title block, summary cards, then the group/metric table."""
    result = context.result
    schema = context.schema
    columns: list[ColSpec] = [(name, cell_type_for(schema.column(name).type)) for name in result.group_by]
    columns += [(label, metric_cell_type(label, schema)) for label in result.metrics]

    writer = ExcelWriter(result.dataset)
    ws = writer.ws
    # Same version + query gives the same sheet, so no render timestamp here
    loaded = context.dataset["loaded_at"].astimezone(dt.timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    row = writer.write_title(
        ws,
        context.heading,
        f"Dataset {result.dataset} v{result.version} | loaded {loaded}",
        merge_cols=len(columns),
    )
    row = writer.write_kpi_row(ws, row, [
        (result.matched_rows, "Matched rows"),
        (len(result.rows), "Groups"),
    ])
    writer.write_table(ws, row, columns, [r.key + r.values for r in result.rows])
    return writer.to_bytes()
