import io
from datetime import date
from typing import Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from .schema import OPTIONAL_COLUMNS, REQUIRED_COLUMNS

SAMPLE_ROWS = [
    ["192.168.1.3", "root", 22, "changeme", "compute-01", "Ubuntu 22.04"],
    ["192.168.1.5", "admin", 22, "changeme", "web-01", ""],
    ["192.168.1.34", "admin", 2222, "changeme", "", ""],
]

COLUMN_WIDTHS = [20, 16, 10, 20, 28, 20]


def build_template(include_samples: bool = True) -> bytes:
    """Upload template as .xlsx bytes: required then optional headers."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Server Template"
    headers = REQUIRED_COLUMNS + OPTIONAL_COLUMNS
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    if include_samples:
        for row in SAMPLE_ROWS:
            ws.append(row)
    for pos, width in enumerate(COLUMN_WIDTHS, start=1):
        ws.column_dimensions[get_column_letter(pos)].width = width

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def template_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"server-template-{today.isoformat()}.xlsx"
