"""Forecasts for per-stage intervention plans."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from inspection_dashboard.calculator import round_dpu, sort_months
from inspection_dashboard.models import (
    CurrentState,
    Intervention,
    MonthlyInspection,
    Projections,
    YearTarget,
)
from inspection_dashboard.targets import get_stage_target

CONFIDENCE_MULTIPLIERS = {"High": 0.9, "Medium": 0.7, "Low": 0.5}
STATUS_MULTIPLIERS = {
    "Completed": 1.0,
    "In Progress": 0.8,
    "Planned": 0.6,
    "Delayed": 0.4,
    "Cancelled": 0.0,
}

# Pseudo stages for the aggregate trend lines, with their fallback targets.
AGGREGATE_STAGES = {
    "COMBINED TOTALS": ("combined_total_dpu", "combined_target", "combined_dpu", 8.2),
    "PRODUCTION TOTALS": ("production_total_dpu", "production_target", "production_dpu", 8.2),
    "DPDI TOTALS": ("dpdi_total_dpu", "dpdi_target", "dpdi_dpu", 1.8),
}

# Share of the current DPU used as a stage target when none is planned.
FALLBACK_STAGE_KEEP = 0.5
MINIMUM_STAGE_TARGET = 0.1


def stage_dpu_series(months: Sequence[MonthlyInspection], stage_name: str) -> list[tuple[str, float]]:
    """``(month label, dpu)`` pairs for a stage or an aggregate pseudo stage."""

    series = []
    for month in sort_months(months):
        if stage_name in AGGREGATE_STAGES:
            series.append((month.date, getattr(month, AGGREGATE_STAGES[stage_name][0])))
            continue
        stage = next((s for s in month.stages if s.name == stage_name), None)
        series.append((month.date, stage.dpu if stage else 0.0))
    return series


def current_stage_dpu(months: Sequence[MonthlyInspection], stage_name: str) -> float:
    active = [dpu for _, dpu in stage_dpu_series(months, stage_name) if dpu > 0]
    return active[-1] if active else 0.0


def months_available(months: Sequence[MonthlyInspection], stage_name: str) -> int:
    """Months from the first month with data to the end of the year."""

    series = stage_dpu_series(months, stage_name)
    first = next((index for index, (_, dpu) in enumerate(series) if dpu > 0), None)
    return 12 - first if first is not None else 11


def months_remaining(months: Sequence[MonthlyInspection], stage_name: str) -> int:
    elapsed = sum(1 for _, dpu in stage_dpu_series(months, stage_name) if dpu > 0)
    return max(1, months_available(months, stage_name) - elapsed)


def stage_target_for_plan(
    year_target: Optional[YearTarget], stage_name: str, current_dpu: float
) -> float:
    """Target DPU for ``stage_name``, from the saved year target where possible."""

    fallback = max(MINIMUM_STAGE_TARGET, round_dpu(current_dpu * FALLBACK_STAGE_KEEP))
    aggregate = AGGREGATE_STAGES.get(stage_name)
    if year_target is None:
        return aggregate[3] if aggregate else fallback
    if aggregate:
        return getattr(year_target, aggregate[1])
    target = get_stage_target(year_target.stage_targets, stage_name)
    return target if target > 0 else fallback


def build_current_state(
    current_dpu: float,
    target_dpu: float,
    months_left: int,
    required_rate: Optional[float] = None,
) -> CurrentState:
    months_left = max(1, int(months_left))
    gap = current_dpu - target_dpu
    if required_rate is None:
        required_rate = gap / months_left
    return CurrentState(
        current_dpu=round_dpu(current_dpu),
        target_dpu=round_dpu(target_dpu),
        gap=round_dpu(gap),
        months_remaining=months_left,
        required_rate=round_dpu(required_rate, places=3),
    )


def current_state_for_stage(
    months: Sequence[MonthlyInspection],
    stage_name: str,
    year_target: Optional[YearTarget] = None,
) -> CurrentState:
    """Snapshot of where ``stage_name`` stands against its target."""

    current = current_stage_dpu(months, stage_name)
    target = stage_target_for_plan(year_target, stage_name, current)
    available = months_available(months, stage_name)

    baseline = None
    aggregate = AGGREGATE_STAGES.get(stage_name)
    if aggregate and year_target is not None and year_target.baseline is not None:
        baseline = getattr(year_target.baseline, aggregate[2])
    if baseline is None:
        active = [dpu for _, dpu in stage_dpu_series(months, stage_name) if dpu > 0]
        baseline = active[0] if active else current

    return build_current_state(
        current,
        target,
        months_remaining(months, stage_name),
        required_rate=(baseline - target) / available,
    )


def expected_impact(intervention: Intervention) -> float:
    """Estimated DPU change weighted by confidence and delivery status."""

    return (
        intervention.estimated_dpu_reduction
        * CONFIDENCE_MULTIPLIERS[intervention.confidence_level]
        * STATUS_MULTIPLIERS[intervention.status]
    )


def calculate_projections(
    current_state: CurrentState, interventions: Iterable[Intervention]
) -> Projections:
    """Year-end DPU with and without the planned interventions.

    Reductions are entered as negative DPU changes, so the adjusted projection
    is the baseline projection plus the total expected impact.
    """

    active = [item for item in interventions if item.status != "Cancelled"]
    total_impact = sum(expected_impact(item) for item in active)

    monthly_rate = current_state.gap / max(1, current_state.months_remaining)
    baseline_projection = current_state.current_dpu + monthly_rate * current_state.months_remaining
    adjusted_projection = baseline_projection + total_impact

    confidence = sum(CONFIDENCE_MULTIPLIERS[item.confidence_level] for item in active)
    confidence_score = round(confidence / (len(active) or 1) * 100)

    return Projections(
        baseline_projection=round_dpu(baseline_projection),
        adjusted_projection=round_dpu(adjusted_projection),
        total_expected_impact=round_dpu(total_impact),
        confidence_score=int(confidence_score),
    )
