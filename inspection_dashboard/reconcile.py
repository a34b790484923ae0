"""Decode uploaded spreadsheets and backups into :class:`MonthlyInspection` records.

There is one decoder per recognised input shape:

* wide CSV (and the same layout in ``.xlsx``/``.xls`` workbooks): one row per
  month with ``<STAGE> INSPECTED``/``FAULTS``/``DPU`` column triplets;
* sectioned CSV: the dashboard's own backup export, whose
  ``DETAILED STAGE DATA`` section holds the stage counts;
* JSON backups: plain month arrays, ``{"data": [...], "metadata": {...}}``
  envelopes, database exports carrying ``{"_id": {"$oid": ...}}`` wrappers and
  the dashboard's ``monthlyData`` export.

Every decoder returns an :class:`ImportResult`.  Structural problems fail the
whole import; per-cell anomalies become warnings and the offending value is
treated as ``0``.  Stage DPUs and month totals are always recomputed from the
counts.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Optional, Sequence

import xlrd
from openpyxl import load_workbook

from inspection_dashboard.calculator import (
    DEFAULT_STAGES,
    round_dpu,
    stage_id_from_name,
    year_from_label,
)
from inspection_dashboard.models import MonthlyInspection, ReportedTotals, StageRecord

logger = logging.getLogger(__name__)

DPU_TOLERANCE = 0.1

MISSING_DATE_COLUMN = "Missing DATE column in CSV header"
EMPTY_CSV = "CSV file is empty or has no data rows"
NO_STAGE_COLUMNS = (
    "No stage columns found in CSV. Expected format: "
    "[STAGE] INSPECTED, [STAGE] FAULTS, [STAGE] DPU"
)
NO_DATA_ROWS = "No month rows found in CSV"
MISSING_SECTION = "Could not find DETAILED STAGE DATA section in CSV"
EMPTY_SECTION = (
    "No data found in CSV file. Make sure the CSV contains a DETAILED STAGE DATA "
    "section with monthly data."
)
INVALID_BACKUP = (
    "Invalid backup data format. Expected array of months or backup object with "
    "data property."
)

SECTION_MARKER = "DETAILED STAGE DATA"
SECTION_TERMINATORS = ("STAGE ANALYSIS", "METADATA", "SUMMARY")

# Wide CSV aggregate columns, matched in this order against the upper-cased header.
_AGGREGATE_HEADERS = (
    ("production_inspections", "PRODUCTION TOTAL INSPECTIONS"),
    ("production_faults", "PRODUCTION TOTAL FAULTS"),
    ("production_dpu", "PRODUCTION TOTAL DPU"),
    ("dpdi_inspections", "DPDI TOTAL INSPECTIONS"),
    ("dpdi_faults", "DPDI TOTAL FAULTS"),
    ("dpdi_dpu", "DPDI TOTAL DPU"),
    ("combined_inspections", "COMBINED INSPECTIONS"),
    ("combined_faults", "COMBINED FAULTS"),
    ("combined_dpu", "COMBINED DPU"),
    ("signout_volume", "SIGNOUT VOLUME"),
)

_WIDE_INSPECTED = re.compile(r"^(.*\S)\s+INSPECTED$")
_SECTION_INSPECTED = re.compile(r"^(.*\S)\s+inspected$", re.IGNORECASE)


@dataclass
class ImportResult:
    """Outcome of decoding one import source."""

    success: bool
    months: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    source_format: str = ""

    @classmethod
    def failed(cls, source_format: str, *errors: str, warnings=None) -> "ImportResult":
        return cls(
            success=False,
            errors=list(errors),
            warnings=list(warnings or []),
            source_format=source_format,
        )


@dataclass
class _StageColumns:
    name: str
    inspected: int
    faults: int
    dpu: int


def _parse_number(value: Any) -> tuple[float, bool]:
    """Return ``(number, ok)`` for a cell; blank cells read as ``(0.0, True)``."""

    if value is None:
        return 0.0, True
    if isinstance(value, bool):
        return 0.0, False
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return 0.0, False
        return float(value), True
    text = str(value).strip().replace(",", "")
    if not text:
        return 0.0, True
    try:
        number = float(text)
    except ValueError:
        return 0.0, False
    if math.isnan(number) or math.isinf(number):
        return 0.0, False
    return number, True


def _count(value: Any, label: str, warnings: list) -> int:
    number, ok = _parse_number(value)
    if not ok:
        warnings.append(f"{label}: non-numeric value {value!r} treated as 0")
        return 0
    if number < 0:
        warnings.append(f"{label}: negative value {number:g} treated as 0")
        return 0
    return int(round(number))


def _display(number: float) -> str:
    return f"{number:g}"


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%b-%y")
    if isinstance(value, date):
        return value.strftime("%b-%y")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _cell(values: Sequence, index: int) -> Any:
    if index < 0 or index >= len(values):
        return None
    return values[index]


def _month_year(label: str, warnings: list, today: Optional[date]) -> int:
    year = year_from_label(label)
    if year is None:
        year = (today or date.today()).year
        warnings.append(f"{label}: no year suffix in month label, assuming {year}")
    return year


def _check_dpu(label: str, inspected: int, faults: int, reported: Any, warnings: list) -> None:
    if inspected <= 0 or reported in (None, ""):
        return
    csv_dpu, ok = _parse_number(reported)
    if not ok:
        warnings.append(f"{label}: non-numeric DPU value {reported!r} ignored")
        return
    calculated = faults / inspected
    if abs(calculated - csv_dpu) > DPU_TOLERANCE:
        warnings.append(
            f"{label}: DPU calculation mismatch "
            f"(CSV: {_display(csv_dpu)}, Calculated: {calculated:.2f})"
        )


def _aggregate_key(header: str) -> Optional[str]:
    return next((key for key, label in _AGGREGATE_HEADERS if label in header), None)


def _wide_columns(headers: Sequence[str], warnings: list) -> tuple[list[_StageColumns], dict]:
    upper = [header.strip().upper() for header in headers]
    positions = {}
    for index, header in enumerate(upper):
        positions.setdefault(header, index)

    def _companion(name: str, suffix: str, offset: int) -> int:
        if f"{name} {suffix}" in positions:
            return positions[f"{name} {suffix}"]
        # Positional fallback never lands on an aggregate or another stage.
        if offset < len(upper) and (
            _aggregate_key(upper[offset]) or _WIDE_INSPECTED.match(upper[offset])
        ):
            return -1
        return offset

    stages: list[_StageColumns] = []
    aggregates: dict[str, int] = {}
    seen: set[str] = set()
    for index in range(1, len(upper)):
        header = upper[index]
        aggregate = _aggregate_key(header)
        if aggregate:
            aggregates.setdefault(aggregate, index)
            continue
        match = _WIDE_INSPECTED.match(header)
        if not match:
            continue
        name = match.group(1).strip()
        stage_id = stage_id_from_name(name)
        if not stage_id:
            continue
        if stage_id in seen:
            warnings.append(f"Duplicate stage column {name} ignored")
            continue
        seen.add(stage_id)
        stages.append(
            _StageColumns(
                name=name,
                inspected=index,
                faults=_companion(name, "FAULTS", index + 1),
                dpu=_companion(name, "DPU", index + 2),
            )
        )
    return stages, aggregates


def decode_wide_rows(
    rows: Iterable[Sequence[Any]],
    *,
    source_format: str = "wide-csv",
    today: Optional[date] = None,
) -> ImportResult:
    """Decode spreadsheet rows laid out as one month per row.

    ``rows`` may hold strings (CSV) or native cell values (workbooks).
    """

    rows = [list(row) for row in rows if any(_cell_text(cell) for cell in row)]
    if len(rows) < 2:
        return ImportResult.failed(source_format, EMPTY_CSV)

    headers = [_cell_text(cell) for cell in rows[0]]
    if not headers or "DATE" not in headers[0].upper():
        return ImportResult.failed(source_format, MISSING_DATE_COLUMN)

    warnings: list[str] = []
    stage_columns, aggregates = _wide_columns(headers, warnings)
    if not stage_columns:
        return ImportResult.failed(source_format, NO_STAGE_COLUMNS, warnings=warnings)

    months: list[MonthlyInspection] = []
    seen_ids: set[str] = set()
    for values in rows[1:]:
        label = _cell_text(_cell(values, 0))
        if not label:
            continue
        month_id = re.sub(r"\s+", "-", label.lower())
        if month_id in seen_ids:
            warnings.append(f"{label}: duplicate month row ignored")
            continue
        seen_ids.add(month_id)

        stages = []
        for order, columns in enumerate(stage_columns):
            prefix = f"{label} - {columns.name}"
            inspected = _count(_cell(values, columns.inspected), f"{prefix} inspected", warnings)
            faults = _count(_cell(values, columns.faults), f"{prefix} faults", warnings)
            _check_dpu(prefix, inspected, faults, _cell(values, columns.dpu), warnings)
            stages.append(
                StageRecord(name=columns.name, inspected=inspected, faults=faults, order=order)
            )

        month = MonthlyInspection(
            id=month_id,
            date=label,
            year=_month_year(label, warnings, today),
            stages=tuple(stages),
        )
        if "combined_dpu" in aggregates:
            reported, ok = _parse_number(_cell(values, aggregates["combined_dpu"]))
            if ok and abs(reported - month.combined_total_dpu) > DPU_TOLERANCE:
                warnings.append(
                    f"{label}: combined DPU mismatch "
                    f"(CSV: {_display(reported)}, Calculated: {month.combined_total_dpu:.2f})"
                )
        months.append(month)

    if not months:
        return ImportResult.failed(source_format, NO_DATA_ROWS, warnings=warnings)

    logger.info("Decoded %d months and %d stages from %s", len(months), len(stage_columns), source_format)
    return ImportResult(
        success=True,
        months=months,
        warnings=warnings,
        source_format=source_format,
    )


def decode_wide_csv(text: str, *, today: Optional[date] = None) -> ImportResult:
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    rows = [[cell.strip() for cell in row] for row in reader]
    return decode_wide_rows(rows, source_format="wide-csv", today=today)


def decode_wide_workbook(stream, filename: str, *, today: Optional[date] = None) -> ImportResult:
    """Decode the first sheet of an ``.xlsx`` or ``.xls`` upload."""

    try:
        if filename.lower().endswith(".xls"):
            book = xlrd.open_workbook(file_contents=stream.read())
            sheet = book.sheet_by_index(0)
            rows = []
            for row_index in range(sheet.nrows):
                values = sheet.row_values(row_index)
                if values and sheet.cell_type(row_index, 0) == xlrd.XL_CELL_DATE:
                    values[0] = xlrd.xldate_as_datetime(values[0], book.datemode)
                rows.append(values)
            source_format = "xls"
        else:
            wb = load_workbook(stream, data_only=True, read_only=True)
            rows = [list(row) for row in wb.active.iter_rows(values_only=True)]
            wb.close()
            source_format = "xlsx"
    except Exception as exc:
        return ImportResult.failed("workbook", f"Failed to read Excel file: {exc}")
    return decode_wide_rows(rows, source_format=source_format, today=today)


def _find_header(headers: Sequence[str], wanted: str) -> int:
    wanted = wanted.lower()
    for index, header in enumerate(headers):
        if header.lower() == wanted:
            return index
    return -1


def decode_sectioned_csv(text: str, *, today: Optional[date] = None) -> ImportResult:
    """Decode the ``DETAILED STAGE DATA`` section of a dashboard backup CSV."""

    source_format = "sectioned-csv"
    lines = text.lstrip("\ufeff").splitlines()
    start = next(
        (index for index, line in enumerate(lines) if SECTION_MARKER in line.upper()),
        None,
    )
    if start is None or start + 1 >= len(lines):
        return ImportResult.failed(source_format, MISSING_SECTION)

    headers = [cell.strip() for cell in next(csv.reader([lines[start + 1]]))]
    month_index = _find_header(headers, "Month")
    if month_index < 0:
        return ImportResult.failed(source_format, "DETAILED STAGE DATA section has no Month column")

    warnings: list[str] = []
    stage_columns: list[_StageColumns] = []
    seen_stages: set[str] = set()
    for index, header in enumerate(headers):
        match = _SECTION_INSPECTED.match(header)
        if not match:
            continue
        name = match.group(1).strip()
        stage_id = stage_id_from_name(name)
        if not stage_id or name.lower() == "total":
            continue
        if stage_id in seen_stages:
            warnings.append(f"Duplicate stage column {name} ignored")
            continue
        seen_stages.add(stage_id)
        stage_columns.append(
            _StageColumns(
                name=name,
                inspected=index,
                faults=_find_header(headers, f"{name} Faults"),
                dpu=_find_header(headers, f"{name} DPU"),
            )
        )
    if not stage_columns:
        return ImportResult.failed(
            source_format, "No stage columns found in DETAILED STAGE DATA section"
        )

    months: list[MonthlyInspection] = []
    seen_ids: set[str] = set()
    for line in lines[start + 2:]:
        if not line.strip():
            break
        if any(marker in line.upper() for marker in SECTION_TERMINATORS):
            break
        values = [cell.strip() for cell in next(csv.reader([line]))]
        label = _cell_text(_cell(values, month_index))
        if not label:
            warnings.append("Row without a Month value skipped")
            continue
        month_id = f"month-{label}"
        if month_id in seen_ids:
            warnings.append(f"{label}: duplicate month row ignored")
            continue
        seen_ids.add(month_id)

        stages = []
        for order, columns in enumerate(stage_columns):
            prefix = f"{label} - {columns.name}"
            inspected = _count(_cell(values, columns.inspected), f"{prefix} inspected", warnings)
            faults = _count(_cell(values, columns.faults), f"{prefix} faults", warnings)
            _check_dpu(prefix, inspected, faults, _cell(values, columns.dpu), warnings)
            stages.append(
                StageRecord(name=columns.name, inspected=inspected, faults=faults, order=order)
            )
        months.append(
            MonthlyInspection(
                id=month_id,
                date=label,
                year=_month_year(label, warnings, today),
                stages=tuple(stages),
            )
        )

    if not months:
        return ImportResult.failed(source_format, EMPTY_SECTION, warnings=warnings)

    logger.info("Decoded %d months from sectioned CSV", len(months))
    return ImportResult(success=True, months=months, warnings=warnings, source_format=source_format)


def _has_oid(record: Any) -> bool:
    identifier = record.get("_id") if isinstance(record, dict) else None
    return isinstance(identifier, dict) and "$oid" in identifier


def detect_json_format(payload: Any) -> Optional[str]:
    """Name the JSON backup shape of ``payload``, or ``None`` when unrecognised."""

    if isinstance(payload, dict):
        if isinstance(payload.get("data"), list):
            return "json-envelope"
        if isinstance(payload.get("monthlyData"), list):
            return "dashboard-export"
        return None
    if isinstance(payload, list):
        if payload and _has_oid(payload[0]):
            return "legacy-export"
        if all(isinstance(item, dict) for item in payload):
            return "json-array"
    return None


def _json_stage(document: Any, label: str, position: int, warnings: list) -> Optional[StageRecord]:
    if not isinstance(document, dict):
        warnings.append(f"{label}: stage entry {position + 1} is not an object, skipped")
        return None
    name = str(document.get("name") or document.get("stageName") or "").strip()
    if not stage_id_from_name(name):
        warnings.append(f"{label}: stage entry {position + 1} has no name, skipped")
        return None

    prefix = f"{label} - {name}"
    counts = {}
    for key in ("inspected", "faults"):
        if document.get(key) is None:
            warnings.append(f"{prefix}: missing {key}, defaulted to 0")
            counts[key] = 0
        else:
            counts[key] = _count(document.get(key), f"{prefix} {key}", warnings)
    _check_dpu(prefix, counts["inspected"], counts["faults"], document.get("dpu"), warnings)

    order = document.get("order")
    return StageRecord(
        name=name,
        inspected=counts["inspected"],
        faults=counts["faults"],
        order=order if isinstance(order, int) and not isinstance(order, bool) else None,
    )


def _reported_totals(document: dict) -> Optional[ReportedTotals]:
    def pick(*names):
        for name in names:
            number, ok = _parse_number(document.get(name))
            if ok and number:
                return number
        return 0.0

    reported = ReportedTotals(
        inspections=int(pick("totalInspections", "combinedTotalInspections")),
        faults=int(pick("totalFaults", "combinedTotalFaults")),
        dpu=round_dpu(pick("totalDpu", "combinedTotalDpu")),
        signout_volume=int(pick("signoutVolume")),
    )
    if not any((reported.inspections, reported.faults, reported.dpu, reported.signout_volume)):
        return None
    return reported


def decode_json_backup(payload: Any, *, today: Optional[date] = None) -> ImportResult:
    """Decode a parsed JSON backup in any of the recognised shapes."""

    source_format = detect_json_format(payload)
    if source_format is None:
        return ImportResult.failed("json", INVALID_BACKUP)

    if source_format == "json-envelope":
        records = payload["data"]
    elif source_format == "dashboard-export":
        records = payload["monthlyData"]
    else:
        records = payload
    if not records:
        return ImportResult.failed(source_format, "Backup contains no months")

    warnings: list[str] = []
    months: list[MonthlyInspection] = []
    seen_ids: set[str] = set()
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            warnings.append(f"Record {index + 1} is not an object, skipped")
            continue
        record = {key: value for key, value in record.items() if key != "_id"}
        label = str(record.get("date") or record.get("month") or "").strip()
        if not label:
            warnings.append(f"Record {index + 1} skipped: missing date")
            continue

        month_id = str(record.get("id") or f"month-{label}")
        if month_id in seen_ids:
            warnings.append(f"{label}: duplicate month {month_id} ignored")
            continue

        year_value, ok = _parse_number(record.get("year"))
        if record.get("year") not in (None, "") and ok and year_value > 0:
            year = int(year_value)
        else:
            year = _month_year(label, warnings, today)

        raw_stages = record.get("stages")
        reported = None
        stages: list[StageRecord] = []
        if isinstance(raw_stages, list) and raw_stages:
            seen_stages: set[str] = set()
            for position, stage_document in enumerate(raw_stages):
                stage = _json_stage(stage_document, label, position, warnings)
                if stage is None:
                    continue
                if stage.id in seen_stages:
                    warnings.append(f"{label}: duplicate stage {stage.name} ignored")
                    continue
                seen_stages.add(stage.id)
                stages.append(stage)
        else:
            stages = [StageRecord(name=name) for name in DEFAULT_STAGES]
            reported = _reported_totals(record)
            warnings.append(f"{label}: no stage data, default stages rebuilt with zero counts")

        seen_ids.add(month_id)
        months.append(
            MonthlyInspection(
                id=month_id,
                date=label,
                year=year,
                stages=tuple(stages),
                reported=reported,
            )
        )

    if not months:
        return ImportResult.failed(
            source_format, "No valid months found in backup", warnings=warnings
        )

    logger.info("Decoded %d months from %s backup", len(months), source_format)
    return ImportResult(success=True, months=months, warnings=warnings, source_format=source_format)


def decode_backup(payload: Any, *, today: Optional[date] = None) -> ImportResult:
    """Route ``payload`` to the matching decoder.

    Text that parses as JSON is treated as a JSON backup, text containing the
    ``DETAILED STAGE DATA`` marker as a sectioned CSV and any other text as a
    wide CSV.  Already parsed JSON goes straight to :func:`decode_json_backup`.
    """

    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8-sig")
    if isinstance(payload, str):
        text = payload.strip()
        if text.startswith(("{", "[")):
            try:
                parsed = json.loads(text)
            except ValueError as exc:
                return ImportResult.failed("json", f"Invalid JSON: {exc}")
            return decode_json_backup(parsed, today=today)
        if SECTION_MARKER in text.upper():
            return decode_sectioned_csv(payload, today=today)
        return decode_wide_csv(payload, today=today)
    return decode_json_backup(payload, today=today)


def build_upload_summary(
    result: ImportResult, existing_months: Sequence[MonthlyInspection] = ()
) -> dict:
    """Summarise an import for the upload endpoints."""

    existing = {stage.name for month in existing_months for stage in month.stages}
    new_stages: list[str] = []
    for month in result.months:
        for stage in month.stages:
            if stage.name not in existing and stage.name not in new_stages:
                new_stages.append(stage.name)
    return {
        "success": result.success,
        "monthsProcessed": len(result.months),
        "monthsUpdated": [month.date for month in result.months],
        "newStagesAdded": new_stages,
        "errors": list(result.errors),
        "warnings": list(result.warnings),
    }
