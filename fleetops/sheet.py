"""
Spreadsheet parsing for bulk host onboarding.

Turns the rows of an uploaded sheet into CandidateRecords. Problems with
the sheet as a whole raise InputError; problems with single rows are
collected and parsing carries on.
"""

import io
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from openpyxl import load_workbook

from .errors import InputError, RowError
from .logger import get_logger
from .models import CandidateRecord, HostAttributes
from .normalize import cell_text, normalize_address, normalize_header, parse_port
from .schema import (
    DUPLICATE_ADDRESS,
    HOSTNAME_COLUMN,
    IP_COLUMN,
    OPTIONAL_COLUMNS,
    OS_VERSION_COLUMN,
    PASSWORD_COLUMN,
    PORT_COLUMN,
    REQUIRED_COLUMNS,
    USER_COLUMN,
    validate_host_row,
)

logger = get_logger()


@dataclass
class ParseResult:
    records: List[CandidateRecord] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)


def read_workbook(data: bytes) -> List[List[Any]]:
    """Rows of the first worksheet of an .xlsx file, header included."""
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as e:
        raise InputError(f"Unable to read spreadsheet: {e}") from e
    try:
        ws = wb.worksheets[0]
        return [list(row) for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def _column_index(headers: Sequence[Any]) -> Dict[str, int]:
    index: Dict[str, int] = {}
    for pos, header in enumerate(headers):
        name = normalize_header(header)
        if name and name not in index:
            index[name] = pos
    return index


def _is_blank(row: Optional[Sequence[Any]]) -> bool:
    return not row or all(cell_text(c) == "" for c in row)


def _cell(row: Sequence[Any], pos: Optional[int]) -> Any:
    if pos is None or pos >= len(row):
        return None
    return row[pos]


def parse_rows(rows: Iterable[Sequence[Any]]) -> ParseResult:
    """
    Parse tabular rows (first row is the header) into candidates.

    Raises:
        InputError: no header row, or a required column is missing
    """
    rows = list(rows)
    if not rows or _is_blank(rows[0]):
        raise InputError("Spreadsheet is empty or has no header row")

    headers = rows[0] or []
    index = _column_index(headers)
    missing = [c for c in REQUIRED_COLUMNS if normalize_header(c) not in index]
    if missing:
        raise InputError(f"Missing required columns: {', '.join(missing)}", missing_columns=missing)

    known = {normalize_header(c) for c in REQUIRED_COLUMNS + OPTIONAL_COLUMNS}
    extra_columns: Dict[int, str] = {}
    for name, pos in index.items():
        if name not in known:
            extra_columns[pos] = cell_text(headers[pos])

    def col(name: str) -> Optional[int]:
        return index.get(normalize_header(name))

    result = ParseResult()
    seen_keys = set()

    for offset, row in enumerate(rows[1:]):
        row_number = offset + 2  # 1-based, header is row 1
        if _is_blank(row):
            continue

        data = {
            "ip_address": cell_text(_cell(row, col(IP_COLUMN))),
            "ssh_user": cell_text(_cell(row, col(USER_COLUMN))),
            "ssh_password": cell_text(_cell(row, col(PASSWORD_COLUMN))),
            "ssh_port": _cell(row, col(PORT_COLUMN)),
        }
        problems = validate_host_row(data)
        if problems:
            result.errors.append(RowError(row_number, problems[0]))
            continue

        address = data["ip_address"]
        key = normalize_address(address)
        if key in seen_keys:
            result.errors.append(RowError(row_number, DUPLICATE_ADDRESS))
            continue
        seen_keys.add(key)

        hostname = cell_text(_cell(row, col(HOSTNAME_COLUMN))) or address
        os_version = cell_text(_cell(row, col(OS_VERSION_COLUMN))) or "Unknown"
        extra = {}
        for pos, name in extra_columns.items():
            value = cell_text(_cell(row, pos))
            if value:
                extra[name] = value

        attributes = HostAttributes(
            ip_address=address,
            ssh_user=data["ssh_user"],
            ssh_port=parse_port(data["ssh_port"]),
            ssh_password=data["ssh_password"],
            hostname=hostname,
            os_version=os_version,
            extra=extra,
        )
        result.records.append(
            CandidateRecord(
                row_id=f"{key}-{uuid.uuid4().hex[:8]}",
                row_number=row_number,
                attributes=attributes,
            )
        )

    logger.record_parse(len(result.records), len(result.errors))
    logger.info(
        "Parsed host sheet",
        records=len(result.records),
        row_errors=len(result.errors),
    )
    return result


def parse_workbook(data: bytes) -> ParseResult:
    return parse_rows(read_workbook(data))
