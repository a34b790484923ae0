from datetime import date

import pytest

from inspection_dashboard import report
from inspection_dashboard.report import (
    build_report_payload,
    generate_report_charts,
    stage_performance,
)


@pytest.fixture
def months(make_month):
    return [
        make_month("Jan-25", {"A": (100, 1000), "B": (100, 200)}),
        make_month("Feb-25", {"A": (100, 900), "B": (100, 200)}),
        make_month("Mar-25", {"A": (100, 800), "B": (100, 300)}),
        make_month("Apr-25", {"A": (0, 0), "B": (0, 0)}),
    ]


def test_payload_uses_last_active_month(months):
    payload = build_report_payload(months, today=date(2025, 4, 15))
    assert payload["report_date"] == "2025-04-15"
    assert payload["month_ending"] == "Mar-25"
    assert payload["previous_month"] == "Feb-25"
    assert payload["comparison_month"] == "Jan-25"
    assert payload["current_month_dpu"] == 11.0
    assert payload["last_month_dpu"] == 11.0
    assert payload["three_month_average"] == 11.33
    assert payload["ytd_average"] == 11.33
    assert payload["total_inspections"] == 200
    assert payload["total_faults"] == 1100
    assert payload["year_end_target"] == 8.2
    assert payload["performance_tier"]["label"] == "Critical"
    assert [row["month"] for row in payload["trend"]] == ["Jan-25", "Feb-25", "Mar-25", "Apr-25"]


def test_glide_path_and_progress(months):
    payload = build_report_payload(months, today=date(2025, 4, 15))
    glide_path = payload["glide_path"]
    assert glide_path["monthsRemaining"] == 8
    assert glide_path["requiredMonthlyReduction"] == 0.35
    assert glide_path["riskAssessment"] == "On Track"
    assert payload["monthly_progress"]["status"] == "Behind"


def test_stage_changes_against_comparison_month(months):
    payload = build_report_payload(months, today=date(2025, 4, 15))
    stages = payload["stage_performance"]
    assert [(row["name"], row["change"], row["status"]) for row in stages] == [
        ("A", -2.0, "Improved"),
        ("B", 1.0, "Deteriorated"),
    ]
    assert payload["top_issues"][0] == {
        "stage": "A",
        "issue": "DPU: 8.00 (improved)",
        "impact": 8.0,
        "action": "Continue best practices",
    }
    assert payload["achievements"] == ["1 stage(s) showed improvement: A"]
    assert payload["critical_actions"] == ["Quality deterioration detected in 1 stage(s): B"]


def test_stage_performance_without_comparison(months):
    rows = stage_performance(months[0], None)
    assert all(row["status"] == "Stable" and row["change"] == 0.0 for row in rows)


def test_critical_glide_path_adds_urgent_action(make_month):
    months = [make_month("Oct-25", {"A": (100, 3000)})]
    payload = build_report_payload(months, today=date(2025, 11, 2))
    assert payload["glide_path"]["riskAssessment"] == "Critical"
    assert payload["critical_actions"][0].startswith("URGENT")
    assert payload["previous_month"] is None
    assert payload["last_month_dpu"] == payload["current_month_dpu"]


def test_year_filter_and_empty_input(months):
    with pytest.raises(ValueError):
        build_report_payload(months, year=2024)
    with pytest.raises(ValueError):
        build_report_payload([])


def test_charts_are_data_uris(months):
    payload = build_report_payload(months, today=date(2025, 4, 15))
    charts = generate_report_charts(payload)
    assert set(charts) == {"trend_chart", "stage_chart"}
    if report.plt is not None:
        assert charts["trend_chart"].startswith("data:image/png;base64,")
        assert charts["stage_chart"].startswith("data:image/png;base64,")


def test_charts_without_matplotlib(months, monkeypatch):
    monkeypatch.setattr(report, "plt", None)
    payload = build_report_payload(months, today=date(2025, 4, 15))
    assert generate_report_charts(payload) == {"trend_chart": "", "stage_chart": ""}
