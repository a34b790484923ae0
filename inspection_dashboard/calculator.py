"""DPU calculations for stages and months.

Defects per unit (DPU) is ``faults / inspected`` for a stage.  The DPU of a
month is the *sum of its stage DPUs*, not the defect rate of the pooled counts;
the recalculation helpers below enforce that rule whenever stages change.

All functions are pure.  Persisting the results is the caller's job.
"""

from __future__ import annotations

import math
import re
from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Iterable, Sequence

import pandas as pd

if TYPE_CHECKING:  # pragma: no cover
    from inspection_dashboard.models import MonthlyInspection, StageRecord


DEFAULT_STAGES = [
    "BOOMS",
    "SIP1",
    "SIP1A",
    "SIP2",
    "SIP3",
    "SIP4",
    "RR",
    "UVI",
    "SIP5",
    "FTEST",
    "LECREC",
    "CT",
    "UV2",
    "CABWT",
    "SIP6",
    "CFC",
    "CABSIP",
    "UV3",
    "SIGN",
]

# Pre-delivery inspection stages; everything else counts as production.
DPDI_STAGE_NAMES = frozenset({"DPDI", "DVAL", "DCONF"})

# Terminal stage whose inspected count is the finished-unit volume.
SIGNOUT_STAGE_NAMES = ("SIGN", "SIGNOUT")

MONTH_ABBREVIATIONS = [
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
]

_STAGE_NAME_PATTERN = re.compile(r"^[A-Z0-9\s]+$")
_YEAR_SUFFIX_PATTERN = re.compile(r"[-\s/](\d{4}|\d{2})$")


def _as_float(value) -> float | None:
    """Return ``value`` as a finite float, otherwise ``None``."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def round_dpu(value, places: int = 2) -> float:
    """Round ``value`` half up to ``places`` decimals.

    The decimal representation of the float is rounded, so ``0.125`` becomes
    ``0.13`` rather than drifting with its binary approximation.  Non-numeric
    and non-finite input rounds to ``0.0``.
    """

    number = _as_float(value)
    if number is None:
        return 0.0
    quantum = Decimal(1).scaleb(-places)
    rounded = Decimal(repr(number)).quantize(quantum, rounding=ROUND_HALF_UP)
    return float(rounded)


def compute_stage_dpu(inspected, faults) -> float:
    """Return the DPU for a stage, ``0.0`` when nothing was inspected."""

    inspected_value = _as_float(inspected)
    faults_value = _as_float(faults)
    if inspected_value is None or inspected_value <= 0 or faults_value is None:
        return 0.0
    return round_dpu(faults_value / inspected_value)


def stage_id_from_name(name: str) -> str:
    """Derive the stable stage identifier from a display name."""

    return re.sub(r"[^a-z0-9]", "", str(name or "").lower())


def stage_type_for(name: str) -> str:
    return "dpdi" if str(name or "").strip().upper() in DPDI_STAGE_NAMES else "production"


def is_signout_stage(name: str) -> bool:
    return str(name or "").strip().upper() in SIGNOUT_STAGE_NAMES


def year_from_label(label: str) -> int | None:
    """Return the year encoded in a month label such as ``Jan-25``."""

    match = _YEAR_SUFFIX_PATTERN.search(str(label or "").strip())
    if not match:
        return None
    digits = match.group(1)
    return int(digits) if len(digits) == 4 else 2000 + int(digits)


def compute_month_totals(stages: Iterable["StageRecord"]) -> dict[str, float]:
    """Return the month totals for ``stages``.

    ``total_dpu`` is the rounded sum of the stage DPUs and is independent of
    ``total_inspections`` and ``total_faults``.
    """

    stages = list(stages)
    return {
        "total_inspections": sum(stage.inspected for stage in stages),
        "total_faults": sum(stage.faults for stage in stages),
        "total_dpu": round_dpu(sum(stage.dpu for stage in stages)),
    }


def compute_segment_totals(stages: Iterable["StageRecord"]) -> dict[str, float]:
    """Return production, DPDI and combined totals plus the signout volume."""

    stages = list(stages)
    production = compute_month_totals(s for s in stages if s.stage_type == "production")
    dpdi = compute_month_totals(s for s in stages if s.stage_type == "dpdi")
    combined = compute_month_totals(stages)

    signout_volume = 0
    for stage in stages:
        if is_signout_stage(stage.name):
            signout_volume = stage.inspected
            break

    return {
        "production_total_inspections": production["total_inspections"],
        "production_total_faults": production["total_faults"],
        "production_total_dpu": production["total_dpu"],
        "dpdi_total_inspections": dpdi["total_inspections"],
        "dpdi_total_faults": dpdi["total_faults"],
        "dpdi_total_dpu": dpdi["total_dpu"],
        "combined_total_inspections": combined["total_inspections"],
        "combined_total_faults": combined["total_faults"],
        "combined_total_dpu": combined["total_dpu"],
        "signout_volume": signout_volume,
    }


def update_stage(
    stage: "StageRecord",
    inspected: int | None = None,
    faults: int | None = None,
) -> "StageRecord":
    """Return a copy of ``stage`` with new counts and a recomputed DPU."""

    return replace(
        stage,
        inspected=stage.inspected if inspected is None else inspected,
        faults=stage.faults if faults is None else faults,
    )


def update_month_stage(
    month: "MonthlyInspection",
    stage_id: str,
    inspected: int | None = None,
    faults: int | None = None,
) -> "MonthlyInspection":
    """Return ``month`` with one stage edited and its totals recomputed.

    Raises:
        KeyError: when ``stage_id`` is not part of the month.
    """

    if not any(stage.id == stage_id for stage in month.stages):
        raise KeyError(f"Stage {stage_id} not found in {month.date}")
    stages = tuple(
        update_stage(stage, inspected, faults) if stage.id == stage_id else stage
        for stage in month.stages
    )
    return replace(month, stages=stages)


def recalculate_month(month: "MonthlyInspection") -> "MonthlyInspection":
    """Rebuild every stage DPU and the month totals from the raw counts."""

    return replace(month, stages=tuple(update_stage(stage) for stage in month.stages))


def add_stage_to_all_months(
    months: Sequence["MonthlyInspection"], stage_name: str
) -> list["MonthlyInspection"]:
    """Append a zeroed ``stage_name`` to every month that lacks it."""

    return ensure_stages(months, [stage_name])


def ensure_stages(
    months: Sequence["MonthlyInspection"], stage_names: Iterable[str]
) -> list["MonthlyInspection"]:
    """Return ``months`` with any missing ``stage_names`` added as zeroed stages."""

    from inspection_dashboard.models import StageRecord

    wanted = [name.strip() for name in stage_names if name and name.strip()]
    updated = []
    for month in months:
        existing = {stage.id for stage in month.stages}
        additions = []
        for name in wanted:
            stage_id = stage_id_from_name(name)
            if stage_id in existing:
                continue
            existing.add(stage_id)
            additions.append(StageRecord(name=name))
        if additions:
            month = replace(month, stages=month.stages + tuple(additions))
        updated.append(month)
    return updated


def remove_stage_from_all_months(
    months: Sequence["MonthlyInspection"], stage_id: str
) -> list["MonthlyInspection"]:
    return [
        replace(month, stages=tuple(s for s in month.stages if s.id != stage_id))
        for month in months
    ]


def generate_year_data(
    year: int, stage_names: Sequence[str] | None = None
) -> list["MonthlyInspection"]:
    """Return twelve zeroed months for ``year`` using ``stage_names``."""

    from inspection_dashboard.models import MonthlyInspection, StageRecord

    names = list(stage_names or DEFAULT_STAGES)
    suffix = str(year)[-2:]
    months = []
    for abbreviation in MONTH_ABBREVIATIONS:
        months.append(
            MonthlyInspection(
                id=f"{abbreviation.lower()}-{suffix}",
                date=f"{abbreviation}-{suffix}",
                year=year,
                stages=tuple(StageRecord(name=name) for name in names),
            )
        )
    return months


def ordered_stages(stages: Iterable["StageRecord"]) -> list["StageRecord"]:
    """Sort by ``order`` where present; unordered stages follow in encounter order."""

    indexed = list(enumerate(stages))
    indexed.sort(
        key=lambda item: (
            item[1].order is None,
            item[1].order if item[1].order is not None else 0,
            item[0],
        )
    )
    return [stage for _, stage in indexed]


def get_all_stage_names(months: Sequence["MonthlyInspection"]) -> list[str]:
    """Return the display-ordered stage names of the first month, then any extras."""

    names: list[str] = []
    seen: set[str] = set()
    for month in months:
        for stage in ordered_stages(month.stages):
            if stage.name not in seen:
                seen.add(stage.name)
                names.append(stage.name)
    return names


def sort_months(months: Iterable["MonthlyInspection"]) -> list["MonthlyInspection"]:
    """Sort months chronologically by year and month label."""

    def key(month):
        prefix = str(month.date or "")[:3].title()
        try:
            index = MONTH_ABBREVIATIONS.index(prefix)
        except ValueError:
            index = len(MONTH_ABBREVIATIONS)
        return (month.year, index)

    return sorted(months, key=key)


def validate_stage_name(name: str) -> bool:
    text = (name or "").strip()
    return bool(text) and bool(_STAGE_NAME_PATTERN.match(text))


def format_number(value) -> str:
    number = _as_float(value)
    if number is None:
        return "0"
    if number.is_integer():
        return f"{int(number):,}"
    return f"{number:,}"


def format_dpu(value) -> str:
    number = _as_float(value)
    if number is None:
        return "0.00"
    return f"{round_dpu(number):.2f}"


def stage_performance_summary(months: Sequence["MonthlyInspection"]) -> list[dict]:
    """Aggregate every stage across ``months``, worst average DPU first.

    Returns a list of dicts with ``stage_name``, ``total_inspected``,
    ``total_faults``, ``average_dpu``, ``max_dpu``, ``min_dpu`` and
    ``months_with_data`` (months in which the stage inspected anything).
    """

    rows = [
        {
            "stage_name": stage.name,
            "inspected": stage.inspected,
            "faults": stage.faults,
            "dpu": stage.dpu,
        }
        for month in months
        for stage in ordered_stages(month.stages)
    ]
    if not rows:
        return []

    frame = pd.DataFrame(rows)
    grouped = frame.groupby("stage_name", sort=False).agg(
        total_inspected=("inspected", "sum"),
        total_faults=("faults", "sum"),
        average_dpu=("dpu", "mean"),
        max_dpu=("dpu", "max"),
        min_dpu=("dpu", "min"),
        months_with_data=("inspected", lambda col: int((col > 0).sum())),
    )
    grouped["average_dpu"] = grouped["average_dpu"].map(round_dpu)
    grouped = grouped.sort_values("average_dpu", ascending=False, kind="stable")

    summary = []
    for stage_name, row in grouped.iterrows():
        summary.append(
            {
                "stage_name": stage_name,
                "total_inspected": int(row["total_inspected"]),
                "total_faults": int(row["total_faults"]),
                "average_dpu": float(row["average_dpu"]),
                "max_dpu": round_dpu(row["max_dpu"]),
                "min_dpu": round_dpu(row["min_dpu"]),
                "months_with_data": int(row["months_with_data"]),
            }
        )
    return summary
