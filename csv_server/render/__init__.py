"""Report rendering: Jinja2 templates and styled Excel workbooks."""
from .renderer import RenderContext, RenderedReport, TemplateRenderer
from .excel import ExcelWriter, render_workbook
