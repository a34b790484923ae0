"""Monthly DPU reduction plan towards a year-end target."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from inspection_dashboard.calculator import MONTH_ABBREVIATIONS, round_dpu

DEFAULT_YEAR_END_TARGET = 8.2
DAYS_PER_MONTH = 30
# Largest monthly reduction considered realistic.
ACHIEVABLE_MONTHLY_REDUCTION = 2.0
ON_TRACK_MONTHLY_REDUCTION = 1.0
PROGRESS_BAND = 0.1

STATUS_COLORS = {
    "On Track": "#10B981",
    "At Risk": "#F59E0B",
    "Critical": "#EF4444",
}


@dataclass(frozen=True)
class MonthlyTarget:
    month: str
    target_dpu: float
    cumulative_reduction: float
    is_achievable: bool

    def to_document(self) -> dict:
        return {
            "month": self.month,
            "targetDpu": self.target_dpu,
            "cumulativeReduction": self.cumulative_reduction,
            "isAchievable": self.is_achievable,
        }


@dataclass(frozen=True)
class GlidePath:
    months_remaining: int
    required_monthly_reduction: float
    daily_reduction_required: float
    risk_assessment: str
    monthly_targets: list = field(default_factory=list)

    def to_document(self) -> dict:
        return {
            "monthsRemaining": self.months_remaining,
            "requiredMonthlyReduction": self.required_monthly_reduction,
            "dailyReductionRequired": self.daily_reduction_required,
            "riskAssessment": self.risk_assessment,
            "statusColor": get_status_color(self.risk_assessment),
            "monthlyTargets": [target.to_document() for target in self.monthly_targets],
        }


def months_between(current_month: int, current_year: int, target_month: int, target_year: int) -> int:
    """Months from ``current_month`` to ``target_month`` (0 = January), at least 1."""

    if target_year > current_year:
        remaining = (12 - current_month - 1) + (target_month + 1)
    else:
        remaining = target_month - current_month
    return max(remaining, 1)


def assess_risk(monthly_reduction: float) -> str:
    if monthly_reduction <= ON_TRACK_MONTHLY_REDUCTION:
        return "On Track"
    if monthly_reduction <= ACHIEVABLE_MONTHLY_REDUCTION:
        return "At Risk"
    return "Critical"


def calculate_glide_path(
    current_dpu: float,
    target_dpu: float,
    current_month: int,
    current_year: int,
    target_month: int = 11,
    target_year: Optional[int] = None,
) -> GlidePath:
    """Spread the gap between ``current_dpu`` and ``target_dpu`` evenly over the
    months left until ``target_month``/``target_year``.

    Months are zero based. Monthly targets never drop below ``target_dpu``.
    """

    target_year = current_year if target_year is None else target_year
    remaining = months_between(current_month, current_year, target_month, target_year)
    monthly_reduction = (current_dpu - target_dpu) / remaining

    targets = []
    projected = current_dpu
    for step in range(remaining):
        offset = current_month + step + 1
        label_year = current_year + offset // 12
        projected -= monthly_reduction
        targets.append(
            MonthlyTarget(
                month=f"{MONTH_ABBREVIATIONS[offset % 12]}-{str(label_year)[-2:]}",
                target_dpu=round_dpu(max(projected, target_dpu)),
                cumulative_reduction=round_dpu((step + 1) * monthly_reduction),
                is_achievable=monthly_reduction <= ACHIEVABLE_MONTHLY_REDUCTION,
            )
        )

    return GlidePath(
        months_remaining=remaining,
        required_monthly_reduction=round_dpu(monthly_reduction),
        daily_reduction_required=round_dpu(monthly_reduction / DAYS_PER_MONTH, places=4),
        risk_assessment=assess_risk(monthly_reduction),
        monthly_targets=targets,
    )


def get_monthly_progress(current_dpu: float, last_month_dpu: float, target_reduction: float) -> dict:
    """Compare last month's actual reduction with the planned one."""

    actual = last_month_dpu - current_dpu
    variance = round_dpu(actual - target_reduction, places=6)
    if variance > PROGRESS_BAND:
        status = "Ahead"
    elif variance >= -PROGRESS_BAND:
        status = "On Track"
    else:
        status = "Behind"
    return {
        "actual_reduction": round_dpu(actual),
        "target_reduction": round_dpu(target_reduction),
        "variance": round_dpu(variance),
        "status": status,
    }


def get_status_color(status: str) -> str:
    return STATUS_COLORS.get(status, "#6B7280")


def format_reduction(value: float) -> str:
    return f"-{value:.2f}" if value > 0 else f"+{abs(value):.2f}"
