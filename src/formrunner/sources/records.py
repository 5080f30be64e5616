# src/formrunner/sources/records.py
"""Records file loading and result export.

Input files are CSV (header row required), JSON (an array of objects) or
XLSX workbooks (first sheet, header in the first row). The loader only
shapes rows into ordered payload dicts; it never looks at their content.
Export writes the payload columns back out with the processing status and
note appended, as CSV or as a workbook.
"""

import csv
import datetime
import io
import json
import zipfile
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, TextIO

import structlog
from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from formrunner.contracts import RecordsFileError, WorkItem

logger = structlog.get_logger(__name__)

STATUS_COLUMN = "status"
NOTE_COLUMN = "note"
RESULTS_SHEET_TITLE = "results"

_CSV_SUFFIXES = frozenset({".csv", ".tsv"})
_JSON_SUFFIXES = frozenset({".json"})
_XLSX_SUFFIXES = frozenset({".xlsx"})
SUPPORTED_SUFFIXES = _CSV_SUFFIXES | _JSON_SUFFIXES | _XLSX_SUFFIXES


def load_records(path: Path, *, encoding: str = "utf-8-sig") -> list[dict[str, Any]]:
    """Read an ordered list of records.

    Args:
        path: CSV/TSV, JSON or XLSX file.
        encoding: Text encoding for CSV and JSON; the default strips a UTF-8
            BOM written by spreadsheet exports.

    Raises:
        RecordsFileError: Missing file, unsupported extension, malformed
            content, or no records.
    """
    if not path.exists():
        raise RecordsFileError(f"Records file not found: {path}")

    suffix = path.suffix.lower()
    if suffix in _CSV_SUFFIXES:
        records = _load_csv(path, encoding=encoding, delimiter="\t" if suffix == ".tsv" else ",")
    elif suffix in _JSON_SUFFIXES:
        records = _load_json(path, encoding=encoding)
    elif suffix in _XLSX_SUFFIXES:
        records = _load_xlsx(path)
    else:
        supported = ", ".join(sorted(SUPPORTED_SUFFIXES))
        raise RecordsFileError(f"Unsupported records file type {suffix or '(none)'!r}; expected one of {supported}")

    if not records:
        raise RecordsFileError(f"Records file contains no records: {path}")
    logger.info("records_loaded", path=str(path), count=len(records))
    return records


def _load_csv(path: Path, *, encoding: str, delimiter: str) -> list[dict[str, Any]]:
    try:
        with path.open(newline="", encoding=encoding) as f:
            reader = csv.DictReader(f, delimiter=delimiter)
            if not reader.fieldnames:
                raise RecordsFileError(f"Records file has no header row: {path}")
            rows: list[dict[str, Any]] = []
            for line_number, row in enumerate(reader, start=2):
                if None in row:
                    raise RecordsFileError(f"{path}:{line_number}: row has more fields than the header")
                # Skip fully blank lines that spreadsheets leave at the end
                if all(value in (None, "") for value in row.values()):
                    continue
                rows.append(dict(row))
            return rows
    except UnicodeDecodeError as e:
        raise RecordsFileError(f"Cannot decode {path} as {encoding}: {e}") from e
    except csv.Error as e:
        raise RecordsFileError(f"Malformed CSV in {path}: {e}") from e


def _load_json(path: Path, *, encoding: str) -> list[dict[str, Any]]:
    try:
        data = json.loads(path.read_text(encoding=encoding))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RecordsFileError(f"Malformed JSON in {path}: {e}") from e
    if not isinstance(data, list):
        raise RecordsFileError(f"JSON records file must contain an array of objects: {path}")
    for position, record in enumerate(data):
        if not isinstance(record, dict):
            raise RecordsFileError(f"{path}: element {position} is {type(record).__name__}, expected an object")
    return data


def _cell_value(value: Any) -> Any:
    """Normalize a worksheet cell into a JSON-safe payload value."""
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, datetime.datetime | datetime.date | datetime.time):
        return value.isoformat()
    return value


def _is_blank(value: Any) -> bool:
    return value == "" or (isinstance(value, str) and not value.strip())


def _xlsx_header(path: Path, cells: Sequence[Any]) -> list[str]:
    values = [_cell_value(cell) for cell in cells]
    # read-only sheets pad rows out to the sheet dimension
    while values and _is_blank(values[-1]):
        values.pop()
    if not values:
        raise RecordsFileError(f"Records file has no header row: {path}")

    names: list[str] = []
    for position, value in enumerate(values, start=1):
        name = str(value).strip() or f"column_{position}"
        if name in names:
            raise RecordsFileError(f"{path}: duplicate column {name!r} in header row")
        names.append(name)
    return names


def _load_xlsx(path: Path) -> list[dict[str, Any]]:
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise RecordsFileError(f"Cannot open workbook {path}: {e}") from e

    try:
        if not workbook.worksheets:
            raise RecordsFileError(f"Workbook has no sheets: {path}")
        rows = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            raise RecordsFileError(f"Records file has no header row: {path}")
        fieldnames = _xlsx_header(path, header)

        records: list[dict[str, Any]] = []
        for line_number, row in enumerate(rows, start=2):
            values = [_cell_value(cell) for cell in row]
            if all(_is_blank(value) for value in values):
                continue
            if any(not _is_blank(value) for value in values[len(fieldnames) :]):
                raise RecordsFileError(f"{path}:{line_number}: row has more fields than the header")
            values.extend([""] * (len(fieldnames) - len(values)))
            records.append(dict(zip(fieldnames, values, strict=False)))
        return records
    finally:
        workbook.close()


def _fieldnames(items: Sequence[WorkItem]) -> list[str]:
    """Payload columns in first-seen order, then status and note."""
    names: dict[str, None] = {}
    for item in items:
        for key in item.payload:
            if key not in (STATUS_COLUMN, NOTE_COLUMN):
                names.setdefault(key, None)
    return [*names, STATUS_COLUMN, NOTE_COLUMN]


def _result_rows(items: Iterable[WorkItem]) -> tuple[list[str], list[dict[str, Any]]]:
    ordered = sorted(items, key=lambda item: item.index)
    fieldnames = _fieldnames(ordered)
    rows = []
    for item in ordered:
        row = {key: item.payload.get(key, "") for key in fieldnames[:-2]}
        row[STATUS_COLUMN] = item.status.value
        row[NOTE_COLUMN] = item.note or ""
        rows.append(row)
    return fieldnames, rows


def _write_csv(stream: TextIO, items: Iterable[WorkItem]) -> int:
    fieldnames, rows = _result_rows(items)
    writer = csv.DictWriter(stream, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    writer.writerows(rows)
    return len(rows)


def _sheet_value(value: Any) -> Any:
    # Nested JSON payload values have no cell type
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False)
    if value == "":
        return None
    return value


def _build_workbook(items: Iterable[WorkItem]) -> tuple[Workbook, int]:
    fieldnames, rows = _result_rows(items)
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = RESULTS_SHEET_TITLE
    sheet.append(fieldnames)
    for row in rows:
        sheet.append([_sheet_value(row[name]) for name in fieldnames])
    return workbook, len(rows)


def write_results(path: Path, items: Iterable[WorkItem]) -> int:
    """Write items with their status and note.

    A ``.xlsx`` path gets a workbook with a single ``results`` sheet; any
    other path gets CSV.

    Returns:
        Number of rows written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() in _XLSX_SUFFIXES:
        workbook, count = _build_workbook(items)
        workbook.save(path)
    else:
        with path.open("w", newline="", encoding="utf-8") as f:
            count = _write_csv(f, items)
    logger.info("results_written", path=str(path), rows=count)
    return count


def results_to_csv(items: Iterable[WorkItem]) -> str:
    """Same content as write_results() to a CSV path, returned as a string."""
    buffer = io.StringIO()
    _write_csv(buffer, items)
    return buffer.getvalue()


def results_to_xlsx(items: Iterable[WorkItem]) -> bytes:
    """Same content as write_results() to an XLSX path, returned as bytes."""
    workbook, _ = _build_workbook(items)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
