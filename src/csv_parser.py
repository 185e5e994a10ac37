"""Delimited text parsing with header-row auto-detection."""

import math
import re
from typing import List, Optional

import structlog

from models import ReconConfig, Table

log = structlog.get_logger(__name__)

_NUMBER_RE = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')

# Cells that look like column identifiers rather than data
_KEYWORD_RE = re.compile(r'id|name|date', re.IGNORECASE)
_CAMEL_CASE_RE = re.compile(r'^[A-Za-z][a-z0-9]*(?:[A-Z][a-z0-9]*)+$')
_SNAKE_CASE_RE = re.compile(r'^[A-Za-z][A-Za-z0-9]*(?:_[A-Za-z0-9]+)+$')


def parse_number(value) -> Optional[float]:
    """
    Parse a cell as a finite number.

    Args:
        value: Raw cell text (or an already numeric value)

    Returns:
        The float value, or None when the text is not a plain decimal number
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if value is None:
        return None
    s = str(value).strip()
    if not _NUMBER_RE.match(s):
        return None
    number = float(s)
    return number if math.isfinite(number) else None


def is_numeric(value) -> bool:
    return parse_number(value) is not None


def split_lines(text: str) -> List[str]:
    """Split raw text into trimmed, non-blank lines."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def split_cells(line: str, delimiter: str = ",") -> List[str]:
    """Naive split on the delimiter; quoted fields are not supported."""
    return [cell.strip() for cell in line.split(delimiter)]


def _looks_like_identifier(cell: str) -> bool:
    if not cell:
        return False
    return bool(
        _KEYWORD_RE.search(cell)
        or _CAMEL_CASE_RE.match(cell)
        or _SNAKE_CASE_RE.match(cell)
    )


def _numeric_fraction(cells: List[str]) -> float:
    if not cells:
        return 0.0
    return sum(1 for c in cells if is_numeric(c)) / len(cells)


def score_header_line(cells: List[str], next_cells: Optional[List[str]] = None) -> int:
    """
    Score how much a line looks like a header row.

    Short, non-numeric, fully populated, identifier-like cells score high.
    A following line with the same width (and more numbers) adds a bonus.

    Args:
        cells: Trimmed cells of the candidate line
        next_cells: Trimmed cells of the line after it, if any

    Returns:
        Integer score; all-empty lines get -10
    """
    if all(not c for c in cells):
        return -10

    score = 0
    mean_length = sum(len(c) for c in cells) / len(cells)
    if mean_length < 15:
        score += 5

    numeric_fraction = _numeric_fraction(cells)
    if numeric_fraction < 0.3:
        score += 10

    empty_fraction = sum(1 for c in cells if not c) / len(cells)
    if empty_fraction < 0.1:
        score += 5

    score += 2 * sum(1 for c in cells if _looks_like_identifier(c))

    if next_cells is not None and len(next_cells) == len(cells):
        score += 10
        if _numeric_fraction(next_cells) > numeric_fraction:
            score += 5

    return score


def detect_header_row(lines: List[str], config: Optional[ReconConfig] = None) -> int:
    """
    Find the index of the header line in a list of lines.

    Files may start with report titles, export metadata or several stacked
    tables, so the first non-blank line is not always the header. Each of
    the first ``header_scan_limit`` lines is scored and the best one wins;
    ties go to the earliest line.

    Args:
        lines: Raw lines of the file
        config: Reconciliation settings (delimiter, scan limit)

    Returns:
        Index into ``lines`` of the detected header row
    """
    config = config or ReconConfig()

    start_index = 0
    while start_index < len(lines) and not lines[start_index].strip():
        start_index += 1

    if len(lines) < config.min_lines_for_detection or start_index >= len(lines):
        return min(start_index, max(len(lines) - 1, 0))

    end_index = min(len(lines), start_index + config.header_scan_limit)
    best_index = start_index
    best_score = None

    for i in range(start_index, end_index):
        cells = split_cells(lines[i], config.delimiter)
        next_cells = None
        if i + 1 < len(lines):
            next_cells = split_cells(lines[i + 1], config.delimiter)
        score = score_header_line(cells, next_cells)
        if best_score is None or score > best_score:
            best_score = score
            best_index = i

    log.debug("header_row_scored", index=best_index, score=best_score)
    return best_index


def slice_table(
    lines: List[str],
    header_row_index: int,
    delimiter: str = ",",
    file_name: str = ""
) -> Table:
    """
    Build a table using a given line as the header.

    Rows after the header are kept only when they have exactly as many cells
    as the header and are not entirely empty; anything else is dropped.

    Raises:
        ValueError: If the index is outside the line list
    """
    if lines and not 0 <= header_row_index < len(lines):
        raise ValueError(
            f"Header row {header_row_index} is outside the file ({len(lines)} lines)"
        )
    if not lines:
        return Table(headers=[], rows=[], header_row_index=0, file_name=file_name, lines=[])

    headers = split_cells(lines[header_row_index], delimiter)
    rows = []
    dropped = 0
    for line in lines[header_row_index + 1:]:
        cells = split_cells(line, delimiter)
        if len(cells) != len(headers) or all(not c for c in cells):
            dropped += 1
            continue
        rows.append(cells)

    if dropped:
        log.debug("rows_dropped", file_name=file_name, count=dropped)

    return Table(
        headers=headers,
        rows=rows,
        header_row_index=header_row_index,
        file_name=file_name,
        lines=list(lines),
    )


def parse_lines(
    lines: List[str],
    file_name: str = "",
    config: Optional[ReconConfig] = None
) -> Table:
    """Detect the header row in pre-split lines and slice the table."""
    config = config or ReconConfig()
    header_row_index = detect_header_row(lines, config)
    table = slice_table(lines, header_row_index, config.delimiter, file_name)
    log.info(
        "table_parsed",
        file_name=file_name,
        header_row=header_row_index,
        columns=table.column_count,
        rows=table.row_count,
    )
    return table


def parse_text(text: str, file_name: str = "", config: Optional[ReconConfig] = None) -> Table:
    """
    Parse decoded file text into a table.

    Args:
        text: File contents
        file_name: Label carried on the table
        config: Reconciliation settings

    Returns:
        Parsed Table (possibly with no rows)
    """
    return parse_lines(split_lines(text), file_name, config)


def reslice(table: Table, header_row_index: int, config: Optional[ReconConfig] = None) -> Table:
    """Re-derive a table from its original lines with a user-chosen header row."""
    config = config or ReconConfig()
    return slice_table(table.lines, header_row_index, config.delimiter, table.file_name)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up."""
    return int(math.floor(value + 0.5))
