"""Monthly quality report data and charts."""

from __future__ import annotations

import base64
import io
from datetime import date
from typing import Optional, Sequence

from inspection_dashboard.calculator import format_dpu, round_dpu, sort_months
from inspection_dashboard.glide_path import (
    DEFAULT_YEAR_END_TARGET,
    calculate_glide_path,
    get_monthly_progress,
)
from inspection_dashboard.models import MonthlyInspection
from inspection_dashboard.targets import get_performance_tier

try:
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt
except Exception:  # pragma: no cover
    matplotlib = None
    plt = None

# Stage DPU change (against the comparison month) beyond which a stage is
# reported as improved or deteriorated.
CHANGE_THRESHOLD = 0.5
BUILD_VOLUME_TARGET = 1500
TOP_ISSUE_COUNT = 3

_ACTIONS = {
    "Deteriorated": "Immediate process review",
    "Improved": "Continue best practices",
    "Stable": "Monitor performance",
}


def _average(values: Sequence[float], default: float) -> float:
    return round_dpu(sum(values) / len(values)) if values else default


def _stage_status(change: float) -> str:
    if change < -CHANGE_THRESHOLD:
        return "Improved"
    if change > CHANGE_THRESHOLD:
        return "Deteriorated"
    return "Stable"


def stage_performance(
    latest: MonthlyInspection, comparison: Optional[MonthlyInspection]
) -> list[dict]:
    """Stage DPUs of ``latest`` with their change against ``comparison``."""

    previous = {stage.name: stage for stage in comparison.stages} if comparison else {}
    rows = []
    for stage in latest.stages:
        before = previous.get(stage.name)
        change = round_dpu(stage.dpu - before.dpu) if before else 0.0
        rows.append(
            {
                "name": stage.name,
                "dpu": stage.dpu,
                "change": change,
                "status": _stage_status(change),
            }
        )
    rows.sort(key=lambda row: row["dpu"], reverse=True)
    return rows


def build_report_payload(
    months: Sequence[MonthlyInspection],
    *,
    year: Optional[int] = None,
    year_end_target: float = DEFAULT_YEAR_END_TARGET,
    today: Optional[date] = None,
) -> dict:
    """Assemble the data behind the monthly report.

    The latest month is the last month with inspections. The previous month is
    the active month before it and the comparison month for stage changes is
    the active month before that.

    Raises:
        ValueError: when there are no months to report on.
    """

    today = today or date.today()
    months = sort_months(months)
    if year is not None:
        months = [month for month in months if month.year == year]
    if not months:
        raise ValueError("No inspection data available for the report")

    active = [month for month in months if month.is_active]
    latest = active[-1] if active else months[-1]
    earlier = [month for month in active if month is not latest]
    previous = earlier[-1] if earlier else None
    comparison = earlier[-2] if len(earlier) > 1 else None

    current_dpu = latest.total_dpu
    last_dpu = previous.total_dpu if previous else current_dpu

    window = active[: active.index(latest) + 1] if latest in active else []
    three_month_average = _average([m.total_dpu for m in window[-3:]], current_dpu)
    ytd_average = _average([m.total_dpu for m in active if m.year == latest.year], current_dpu)

    glide_path = calculate_glide_path(
        current_dpu,
        year_end_target,
        current_month=today.month - 1,
        current_year=today.year,
        target_month=11,
        target_year=max(today.year, latest.year),
    )
    progress = get_monthly_progress(current_dpu, last_dpu, glide_path.required_monthly_reduction)

    stages = stage_performance(latest, comparison)
    top_issues = [
        {
            "stage": row["name"],
            "issue": f"DPU: {format_dpu(row['dpu'])} ({row['status'].lower()})",
            "impact": row["dpu"],
            "action": _ACTIONS[row["status"]],
        }
        for row in stages[:TOP_ISSUE_COUNT]
    ]

    improved = [row["name"] for row in stages if row["status"] == "Improved"]
    deteriorated = [row["name"] for row in stages if row["status"] == "Deteriorated"]

    achievements = []
    if improved:
        achievements.append(
            f"{len(improved)} stage(s) showed improvement: {', '.join(improved)}"
        )
    if current_dpu < last_dpu:
        achievements.append(
            f"Overall DPU improved by {format_dpu(last_dpu - current_dpu)} from previous month"
        )
    if latest.signout_volume > BUILD_VOLUME_TARGET:
        achievements.append("Build volume targets exceeded while maintaining quality standards")

    critical_actions = []
    if glide_path.risk_assessment == "Critical":
        critical_actions.append(
            "URGENT: DPU reduction rate insufficient to meet year-end target - "
            "immediate intervention required"
        )
    elif glide_path.risk_assessment == "At Risk":
        critical_actions.append(
            "WARNING: Current trajectory may miss year-end target - "
            "enhanced quality measures needed"
        )
    if deteriorated:
        critical_actions.append(
            f"Quality deterioration detected in {len(deteriorated)} stage(s): "
            f"{', '.join(deteriorated)}"
        )

    return {
        "report_date": today.isoformat(),
        "month_ending": latest.date,
        "latest_month": latest.date,
        "previous_month": previous.date if previous else None,
        "comparison_month": comparison.date if comparison else None,
        "current_month_dpu": current_dpu,
        "last_month_dpu": last_dpu,
        "three_month_average": three_month_average,
        "ytd_average": ytd_average,
        "build_volume": latest.signout_volume,
        "total_faults": latest.total_faults,
        "total_inspections": latest.total_inspections,
        "year_end_target": year_end_target,
        "performance_tier": get_performance_tier(current_dpu),
        "glide_path": glide_path.to_document(),
        "monthly_progress": progress,
        "stage_performance": stages,
        "top_issues": top_issues,
        "achievements": achievements,
        "critical_actions": critical_actions,
        "trend": [
            {
                "month": month.date,
                "dpu": month.total_dpu,
                "inspections": month.total_inspections,
                "faults": month.total_faults,
            }
            for month in months
        ],
    }


def _fig_to_data_uri(fig):
    if plt is None:
        return ''
    buf = io.BytesIO()
    fig.savefig(buf, format='png', bbox_inches='tight')
    plt.close(fig)
    buf.seek(0)
    b64 = base64.b64encode(buf.read()).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def generate_report_charts(payload: dict) -> dict:
    """Render the report charts as PNG data URIs.

    Returns empty strings when matplotlib is not installed.
    """

    if plt is None:
        return {'trend_chart': '', 'stage_chart': ''}
    charts: dict[str, str] = {}

    # DPU trend against the year-end target
    fig, ax = plt.subplots(figsize=(8, 4))
    trend = [row for row in payload.get('trend', []) if row.get('inspections')]
    if trend:
        labels = [row['month'] for row in trend]
        ax.plot(labels, [row['dpu'] for row in trend], marker='o', label='DPU')
        ax.axhline(payload.get('year_end_target', DEFAULT_YEAR_END_TARGET),
                   color='red', linestyle='--', label='Year-end target')
        ax.set_ylabel('DPU')
        ax.set_title('Monthly DPU Trend')
        ax.tick_params(axis='x', rotation=45)
        ax.legend()
    charts['trend_chart'] = _fig_to_data_uri(fig)

    # Stage DPU for the latest month
    fig, ax = plt.subplots(figsize=(8, 4))
    stages = [row for row in payload.get('stage_performance', []) if row.get('dpu')]
    if stages:
        colors = {
            'Improved': 'seagreen',
            'Deteriorated': 'firebrick',
            'Stable': 'steelblue',
        }
        ax.bar(
            [row['name'] for row in stages],
            [row['dpu'] for row in stages],
            color=[colors[row['status']] for row in stages],
        )
        ax.set_ylabel('DPU')
        ax.set_title(f"Stage DPU - {payload.get('latest_month', '')}")
        ax.tick_params(axis='x', rotation=45)
    charts['stage_chart'] = _fig_to_data_uri(fig)
    return charts
