from types import SimpleNamespace

from inspection_dashboard.db import InspectionStore
from inspection_dashboard.models import (
    Baseline,
    CurrentState,
    Intervention,
    InterventionPlan,
    StageTarget,
    YearTarget,
)


def test_save_and_fetch_months_in_calendar_order(store, make_month):
    months = [
        make_month("Mar-25", {"A": (10, 5)}),
        make_month("Nov-24", {"A": (10, 1)}),
        make_month("Jan-25", {"A": (10, 2)}),
    ]
    _, error = store.save_inspections(months)
    assert error is None

    fetched, error = store.fetch_inspections()
    assert error is None
    assert [month.date for month in fetched] == ["Nov-24", "Jan-25", "Mar-25"]

    fetched, _ = store.fetch_inspections(2025)
    assert [month.date for month in fetched] == ["Jan-25", "Mar-25"]


def test_saved_rows_carry_totals_and_timestamp(store, jan_25, fake_supabase):
    store.save_inspection(jan_25)
    row = fake_supabase.tables["inspections"][0]
    assert row["total_dpu"] == 20.17
    assert row["signout_volume"] == 1434
    assert row["updated_at"]

    store.save_inspection(jan_25)
    assert len(fake_supabase.tables["inspections"]) == 1


def test_fetch_single_month(store, jan_25):
    store.save_inspection(jan_25)
    month, error = store.fetch_inspection("jan-25")
    assert error is None
    assert month.totals() == jan_25.totals()

    assert store.fetch_inspection("feb-25") == (None, None)
    assert store.fetch_inspection("")[1] == "Month id is required"


def test_invalid_stored_record(store, fake_supabase):
    fake_supabase.tables["inspections"] = [{"id": "x", "year": 2025, "stages": []}]
    months, error = store.fetch_inspections()
    assert months is None
    assert error.startswith("Invalid inspection record")


def test_replace_swaps_all_months(store, make_month, fake_supabase):
    store.save_inspections([make_month("Dec-24", {"A": (1, 1)})])
    count, error = store.replace_inspections(
        [make_month("Jan-25", {"A": (2, 1)}), make_month("Feb-25", {"A": (2, 0)})]
    )
    assert error is None
    assert count == 2
    assert [row["id"] for row in fake_supabase.tables["inspections"]] == ["jan-25", "feb-25"]


def test_replace_validates_before_touching_storage(store, make_month, fake_supabase):
    assert store.replace_inspections([]) == (
        None,
        "Nothing to restore: the import produced no months",
    )
    month = make_month("Jan-25", {"A": (1, 0)})
    count, error = store.replace_inspections([month, month])
    assert count is None
    assert error == "Duplicate month id in import: jan-25"
    assert fake_supabase.calls == []


def test_replace_reports_count_mismatch(make_month):
    class ShortRpc:
        def table(self, name):
            raise AssertionError("replace must not use table calls")

        def rpc(self, name, params):
            return SimpleNamespace(execute=lambda: SimpleNamespace(data=[1]))

    store = InspectionStore(ShortRpc())
    count, error = store.replace_inspections(
        [make_month("Jan-25", {"A": (1, 0)}), make_month("Feb-25", {"A": (1, 0)})]
    )
    assert count is None
    assert error == "Replace inserted 1 of 2 months"


def test_failures_are_returned_as_errors(store, fake_supabase, make_month):
    fake_supabase.fail = "network down"
    assert store.fetch_inspections() == (None, "Failed to fetch inspections: network down")
    _, error = store.replace_inspections([make_month("Jan-25", {"A": (1, 0)})])
    assert error == "Failed to replace inspections: network down"


def test_closed_store_refuses_calls(fake_supabase):
    with InspectionStore(fake_supabase) as store:
        assert not store.closed
    assert store.closed
    assert store.fetch_inspections() == (None, "Inspection store is closed")
    assert fake_supabase.calls == []


def test_year_target_round_trip(store):
    target = YearTarget(
        year=2025,
        combined_target=8.2,
        production_target=7.5,
        dpdi_target=0.7,
        allocation_strategy="weighted",
        baseline=Baseline(month="Dec-24", combined_dpu=11.0, production_dpu=10.2, dpdi_dpu=0.8),
        stage_targets=(StageTarget("SIP6", 1.2), StageTarget("CFC", 4.1)),
        created_at="2025-01-01T00:00:00+00:00",
    )
    store.upsert_year_target(target)
    store.upsert_year_target(YearTarget(year=2026, combined_target=7.0, production_target=7.0))

    fetched, error = store.fetch_year_target(2025)
    assert error is None
    assert fetched == target

    targets, _ = store.fetch_year_targets()
    assert [t.year for t in targets] == [2025, 2026]

    assert store.delete_year_target(2025) == (1, None)
    assert store.fetch_year_target(2025) == (None, None)


def test_intervention_plan_round_trip(store):
    plan = InterventionPlan(
        stage_id="sip6",
        stage_name="SIP6",
        year=2025,
        created_by="ADMIN",
        current_state=CurrentState(2.58, 1.29, 1.29, 9, 0.143),
        interventions=(Intervention(id="1", title="Jig", estimated_dpu_reduction=-0.3),),
    )
    store.upsert_intervention_plan(plan)
    store.upsert_intervention_plan(plan)

    plans, error = store.fetch_intervention_plans(2025)
    assert error is None
    assert plans == [plan]
    assert store.fetch_intervention_plan("sip6", 2025) == (plan, None)
    assert store.fetch_intervention_plan("sip6", 2026) == (None, None)
    assert store.delete_intervention_plan("sip6", 2025) == (1, None)
