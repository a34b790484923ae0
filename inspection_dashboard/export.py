"""Serialise stored months into the formats the reconciler reads back."""

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Optional, Sequence

from inspection_dashboard.calculator import (
    format_dpu,
    get_all_stage_names,
    round_dpu,
    stage_performance_summary,
)
from inspection_dashboard.models import MonthlyInspection

EXPORT_VERSION = "1.0"

WIDE_AGGREGATE_COLUMNS = (
    ("PRODUCTION TOTAL INSPECTIONS", "production_total_inspections"),
    ("PRODUCTION TOTAL FAULTS", "production_total_faults"),
    ("PRODUCTION TOTAL DPU", "production_total_dpu"),
    ("DPDI TOTAL INSPECTIONS", "dpdi_total_inspections"),
    ("DPDI TOTAL FAULTS", "dpdi_total_faults"),
    ("DPDI TOTAL DPU", "dpdi_total_dpu"),
    ("COMBINED INSPECTIONS", "combined_total_inspections"),
    ("COMBINED FAULTS", "combined_total_faults"),
    ("COMBINED DPU", "combined_total_dpu"),
    ("SIGNOUT VOLUME", "signout_volume"),
)


def _writer(buffer: io.StringIO):
    return csv.writer(buffer, lineterminator="\n")


def _cell_value(name: str, value):
    return format_dpu(value) if name.endswith("_dpu") else value


def _stage_cells(month: MonthlyInspection, stage_names: Sequence[str]) -> list:
    by_name = {stage.name: stage for stage in month.stages}
    cells = []
    for name in stage_names:
        stage = by_name.get(name)
        if stage is None:
            cells.extend([0, 0, format_dpu(0)])
        else:
            cells.extend([stage.inspected, stage.faults, format_dpu(stage.dpu)])
    return cells


def export_wide_csv(months: Sequence[MonthlyInspection]) -> str:
    """One row per month with stage triplets followed by the aggregate columns."""

    stage_names = get_all_stage_names(months)
    buffer = io.StringIO()
    writer = _writer(buffer)

    header = ["DATE"]
    for name in stage_names:
        header.extend([f"{name} INSPECTED", f"{name} FAULTS", f"{name} DPU"])
    header.extend(label for label, _ in WIDE_AGGREGATE_COLUMNS)
    writer.writerow(header)

    for month in months:
        row = [month.date] + _stage_cells(month, stage_names)
        row.extend(_cell_value(attr, getattr(month, attr)) for _, attr in WIDE_AGGREGATE_COLUMNS)
        writer.writerow(row)
    return buffer.getvalue()


def export_summary(months: Sequence[MonthlyInspection]) -> dict:
    def total(attr):
        return sum(getattr(month, attr) for month in months)

    average = round_dpu(total("combined_total_dpu") / len(months)) if months else 0.0
    return {
        "productionTotalInspections": total("production_total_inspections"),
        "productionTotalFaults": total("production_total_faults"),
        "dpdiTotalInspections": total("dpdi_total_inspections"),
        "dpdiTotalFaults": total("dpdi_total_faults"),
        "combinedTotalInspections": total("combined_total_inspections"),
        "combinedTotalFaults": total("combined_total_faults"),
        "averageDpu": average,
        "dateRange": f"{months[0].date} to {months[-1].date}" if months else "No data",
    }


def export_backup_csv(
    months: Sequence[MonthlyInspection], *, now: Optional[datetime] = None
) -> str:
    """Sectioned backup: metadata, summary, monthly totals, stage detail and analysis.

    The ``DETAILED STAGE DATA`` section is what
    :func:`inspection_dashboard.reconcile.decode_sectioned_csv` restores from.
    """

    stage_names = get_all_stage_names(months)
    summary = export_summary(months)
    exported_at = (now or datetime.now(timezone.utc)).isoformat()
    buffer = io.StringIO()
    writer = _writer(buffer)

    writer.writerow(["METADATA"])
    writer.writerow(["Export Date", exported_at])
    writer.writerow(["Total Months", len(months)])
    writer.writerow(["Total Stages", len(stage_names)])
    writer.writerow(["Stages", ";".join(stage_names)])
    writer.writerow([])

    writer.writerow(["SUMMARY"])
    writer.writerow(["Metric", "Value"])
    writer.writerow(["Production Total Inspections", summary["productionTotalInspections"]])
    writer.writerow(["Production Total Faults", summary["productionTotalFaults"]])
    writer.writerow(["DPDI Total Inspections", summary["dpdiTotalInspections"]])
    writer.writerow(["DPDI Total Faults", summary["dpdiTotalFaults"]])
    writer.writerow(["Combined Total Inspections", summary["combinedTotalInspections"]])
    writer.writerow(["Combined Total Faults", summary["combinedTotalFaults"]])
    writer.writerow(["Average DPU", format_dpu(summary["averageDpu"])])
    writer.writerow(["Date Range", summary["dateRange"]])
    writer.writerow([])

    writer.writerow(["MONTHLY DATA"])
    writer.writerow(
        [
            "Month",
            "Production Inspections",
            "Production Faults",
            "Production DPU",
            "DPDI Inspections",
            "DPDI Faults",
            "DPDI DPU",
            "Combined Inspections",
            "Combined Faults",
            "Combined DPU",
        ]
    )
    for month in months:
        writer.writerow(
            [
                month.date,
                month.production_total_inspections,
                month.production_total_faults,
                format_dpu(month.production_total_dpu),
                month.dpdi_total_inspections,
                month.dpdi_total_faults,
                format_dpu(month.dpdi_total_dpu),
                month.combined_total_inspections,
                month.combined_total_faults,
                format_dpu(month.combined_total_dpu),
            ]
        )
    writer.writerow([])

    writer.writerow(["DETAILED STAGE DATA"])
    header = ["Month"]
    for name in stage_names:
        header.extend([f"{name} Inspected", f"{name} Faults", f"{name} DPU"])
    header.extend(["Total Inspected", "Total Faults", "Total DPU"])
    writer.writerow(header)
    for month in months:
        row = [month.date] + _stage_cells(month, stage_names)
        row.extend([month.total_inspections, month.total_faults, format_dpu(month.total_dpu)])
        writer.writerow(row)
    writer.writerow([])

    writer.writerow(["STAGE ANALYSIS"])
    writer.writerow(["Stage Name", "Total Inspected", "Total Faults", "Average DPU", "Months with Data"])
    for entry in stage_performance_summary(months):
        writer.writerow(
            [
                entry["stage_name"],
                entry["total_inspected"],
                entry["total_faults"],
                format_dpu(entry["average_dpu"]),
                entry["months_with_data"],
            ]
        )
    return buffer.getvalue()


def export_json_backup(
    months: Sequence[MonthlyInspection], *, now: Optional[datetime] = None
) -> dict:
    """Return the ``{"data": [...], "metadata": {...}}`` backup envelope."""

    stage_names = get_all_stage_names(months)
    return {
        "data": [month.to_document() for month in months],
        "metadata": {
            "exportDate": (now or datetime.now(timezone.utc)).isoformat(),
            "totalMonths": len(months),
            "totalStages": len(stage_names),
            "stages": stage_names,
            "version": EXPORT_VERSION,
        },
        "summary": export_summary(months),
        "stageAnalysis": [
            {
                "stageName": entry["stage_name"],
                "totalInspected": entry["total_inspected"],
                "totalFaults": entry["total_faults"],
                "averageDpu": entry["average_dpu"],
                "monthsWithData": entry["months_with_data"],
            }
            for entry in stage_performance_summary(months)
        ],
    }
