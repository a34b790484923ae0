"""Distribute a year-end DPU target across production stages.

Every strategy takes one baseline month and a scalar overall target and returns
an ordered list of :class:`StageTarget`.  Stages that inspected nothing in the
baseline month get a target of ``0``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence

from inspection_dashboard.calculator import round_dpu
from inspection_dashboard.models import (
    ALLOCATION_STRATEGIES,
    Baseline,
    MonthlyInspection,
    StageRecord,
    StageTarget,
    YearTarget,
)

logger = logging.getLogger(__name__)

FILTER_TYPES = ("production", "dpdi", "combined")

# (upper bound, share of the current DPU kept as the tier target)
_HYBRID_TIERS = ((0.5, 0.8), (1.0, 0.6), (2.0, 0.5))
_HYBRID_FLOOR = 0.4

_PERFORMANCE_TIERS = (
    (0.5, "Excellent", "green"),
    (1.0, "Good", "blue"),
    (2.0, "Needs Improvement", "yellow"),
)


def _baseline_scope(
    baseline: MonthlyInspection, filter_type: str
) -> tuple[float, list[StageRecord]]:
    if filter_type not in FILTER_TYPES:
        raise ValueError(f"Unknown filter type: {filter_type}")
    if filter_type == "production":
        return baseline.production_total_dpu, [
            s for s in baseline.stages if s.stage_type == "production"
        ]
    if filter_type == "dpdi":
        return baseline.dpdi_total_dpu, [s for s in baseline.stages if s.stage_type == "dpdi"]
    return baseline.combined_total_dpu, list(baseline.stages)


def calculate_proportional_targets(
    baseline: MonthlyInspection,
    overall_target: float,
    filter_type: str = "combined",
) -> list[StageTarget]:
    """Give each stage the share of ``overall_target`` its DPU holds in the baseline.

    Returns an empty list (and logs a warning) when the baseline DPU for
    ``filter_type`` is zero.
    """

    baseline_total, stages = _baseline_scope(baseline, filter_type)
    if baseline_total <= 0:
        logger.warning(
            "Baseline %s DPU for %s is 0; cannot allocate proportional targets",
            filter_type,
            baseline.date,
        )
        return []

    targets = []
    for stage in stages:
        if stage.inspected <= 0:
            targets.append(StageTarget(stage.name, 0.0))
            continue
        targets.append(
            StageTarget(stage.name, round_dpu(stage.dpu / baseline_total * overall_target))
        )
    return targets


def calculate_weighted_targets(
    baseline: MonthlyInspection,
    overall_target: float,
    filter_type: str = "combined",
) -> list[StageTarget]:
    """Weight each stage by its share of faults, scaled by inverse volume.

    Falls back to :func:`calculate_proportional_targets` when the baseline has
    no faults.
    """

    baseline_total, stages = _baseline_scope(baseline, filter_type)
    total_faults = sum(stage.faults for stage in stages)
    total_inspections = sum(stage.inspected for stage in stages)
    if total_faults == 0:
        logger.warning(
            "Baseline %s has no faults; using proportional allocation", baseline.date
        )
        return calculate_proportional_targets(baseline, overall_target, filter_type)
    if baseline_total <= 0:
        logger.warning("Baseline %s DPU is 0; cannot allocate weighted targets", baseline.date)
        return []

    targets = []
    for stage in stages:
        if stage.inspected <= 0:
            targets.append(StageTarget(stage.name, 0.0))
            continue
        fault_share = stage.faults / total_faults
        volume_adjustment = total_inspections / stage.inspected
        targets.append(
            StageTarget(stage.name, round_dpu(fault_share * overall_target * volume_adjustment))
        )
    return targets


def hybrid_keep_factor(dpu: float) -> float:
    """Share of the current DPU a stage keeps under the hybrid strategy."""

    for upper_bound, keep in _HYBRID_TIERS:
        if dpu < upper_bound:
            return keep
    return _HYBRID_FLOOR


def calculate_hybrid_targets(
    baseline: MonthlyInspection,
    overall_target: float,
    filter_type: str = "combined",
) -> list[StageTarget]:
    """Average the proportional target with a performance-tier target."""

    baseline_total, stages = _baseline_scope(baseline, filter_type)
    if baseline_total <= 0:
        logger.warning("Baseline %s DPU is 0; cannot allocate hybrid targets", baseline.date)
        return []

    targets = []
    for stage in stages:
        if stage.inspected <= 0:
            targets.append(StageTarget(stage.name, 0.0))
            continue
        proportional = stage.dpu / baseline_total * overall_target
        tier_target = stage.dpu * hybrid_keep_factor(stage.dpu)
        targets.append(StageTarget(stage.name, round_dpu((proportional + tier_target) / 2)))
    return targets


def manual_targets(entries: Iterable[Mapping | StageTarget]) -> list[StageTarget]:
    """Return caller supplied targets unchanged apart from ``is_manual``."""

    targets = []
    for entry in entries:
        target = entry if isinstance(entry, StageTarget) else StageTarget.from_document(entry)
        targets.append(StageTarget(target.stage_name, target.target_dpu, True))
    return targets


_STRATEGIES = {
    "proportional": calculate_proportional_targets,
    "weighted": calculate_weighted_targets,
    "hybrid": calculate_hybrid_targets,
}


def allocate_stage_targets(
    strategy: str,
    baseline: Optional[MonthlyInspection],
    overall_target: float,
    *,
    filter_type: str = "combined",
    manual: Optional[Iterable] = None,
) -> list[StageTarget]:
    """Dispatch to the allocation ``strategy``.

    Args:
        strategy: one of ``proportional``, ``weighted``, ``hybrid`` or ``manual``.
        baseline: month the allocation is based on. Unused for ``manual``.
        overall_target: DPU the stage targets should add up to.
        filter_type: ``production``, ``dpdi`` or ``combined``.
        manual: stage target entries for the ``manual`` strategy.

    Returns:
        Ordered stage targets, possibly empty for a degenerate baseline.
    """

    if strategy not in ALLOCATION_STRATEGIES:
        raise ValueError(f"Unknown allocation strategy: {strategy}")
    if strategy == "manual":
        return manual_targets(manual or [])
    if baseline is None:
        raise ValueError("A baseline month is required for automatic allocation")
    return _STRATEGIES[strategy](baseline, float(overall_target), filter_type)


def validate_targets(
    stage_targets: Sequence[StageTarget],
    overall_target: float,
    tolerance: float = 0.1,
) -> bool:
    total = sum(target.target_dpu for target in stage_targets)
    return abs(total - overall_target) <= tolerance + 1e-9


def calculate_reduction_percentage(current: float, target: float) -> float:
    if not current:
        return 0.0
    return (current - target) / current * 100


def get_performance_tier(dpu: float) -> dict:
    for upper_bound, label, color in _PERFORMANCE_TIERS:
        if dpu < upper_bound:
            return {"label": label, "color": color}
    return {"label": "Critical", "color": "red"}


def get_stage_target(stage_targets: Sequence[StageTarget], stage_name: str) -> float:
    for target in stage_targets:
        if target.stage_name == stage_name:
            return target.target_dpu
    return 0.0


def build_year_target(
    year: int,
    baseline: MonthlyInspection,
    *,
    combined_target: float,
    production_target: float,
    dpdi_target: float = 0.0,
    strategy: str = "proportional",
    filter_type: str = "combined",
    manual: Optional[Iterable] = None,
    existing: Optional[YearTarget] = None,
    now: Optional[datetime] = None,
) -> YearTarget:
    """Allocate stage targets and wrap them in a :class:`YearTarget`.

    ``created_at`` is carried over from ``existing`` so that re-planning a year
    keeps its original creation time.
    """

    overall = {
        "production": production_target,
        "dpdi": dpdi_target,
        "combined": combined_target,
    }[filter_type]
    stage_targets = allocate_stage_targets(
        strategy, baseline, overall, filter_type=filter_type, manual=manual
    )
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return YearTarget(
        year=year,
        combined_target=round_dpu(combined_target),
        production_target=round_dpu(production_target),
        dpdi_target=round_dpu(dpdi_target),
        allocation_strategy=strategy,
        baseline=Baseline.from_month(baseline),
        stage_targets=tuple(stage_targets),
        created_at=existing.created_at if existing and existing.created_at else stamp,
        updated_at=stamp,
    )
