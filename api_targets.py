from __future__ import annotations

from typing import Any, Dict, List

from fastapi import Body, FastAPI, HTTPException

from inspection_dashboard.calculator import compute_segment_totals, compute_stage_dpu
from inspection_dashboard.models import MonthlyInspection, StageRecord, StageTarget
from inspection_dashboard.targets import (
    allocate_stage_targets,
    calculate_reduction_percentage,
    get_performance_tier,
    validate_targets,
)


app = FastAPI(title="DPU Calculator and Target Allocation API")


def _stages(rows: List[Dict[str, Any]]) -> List[StageRecord]:
    try:
        return [StageRecord.from_document(row) for row in rows]
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/dpu")
def dpu_endpoint(
    payload: Dict[str, Any] = Body(..., example={"inspected": 1384, "faults": 12630})
):
    try:
        inspected = float(payload.get("inspected") or 0)
        faults = float(payload.get("faults") or 0)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="inspected and faults must be numeric") from exc
    dpu = compute_stage_dpu(inspected, faults)
    return {"dpu": dpu, "tier": get_performance_tier(dpu)}


@app.post("/totals")
def totals_endpoint(
    payload: Dict[str, Any] = Body(..., example={
        "stages": [
            {"name": "BOOMS", "inspected": 1384, "faults": 12630},
            {"name": "SIGN", "inspected": 1370, "faults": 16},
        ]
    })
):
    stages = _stages(payload.get("stages", []))
    totals = compute_segment_totals(stages)
    return {
        "stages": [stage.to_document() for stage in stages],
        "totals": totals,
        "count": len(stages),
    }


@app.post("/targets/allocate")
def allocate_endpoint(
    payload: Dict[str, Any] = Body(..., example={
        "strategy": "proportional",
        "overallTarget": 8.2,
        "filterType": "combined",
        "baseline": {
            "date": "Jan-25",
            "stages": [
                {"name": "BOOMS", "inspected": 1384, "faults": 12630},
                {"name": "SIP6", "inspected": 1390, "faults": 3322},
            ],
        },
    })
):
    baseline_doc = payload.get("baseline") or {}
    baseline = None
    try:
        if baseline_doc:
            baseline = MonthlyInspection(
                id=str(baseline_doc.get("id") or "baseline"),
                date=str(baseline_doc.get("date") or "baseline"),
                year=int(baseline_doc.get("year") or 0),
                stages=tuple(_stages(baseline_doc.get("stages", []))),
            )
        overall = float(payload.get("overallTarget"))
        stage_targets = allocate_stage_targets(
            str(payload.get("strategy") or "proportional"),
            baseline,
            overall,
            filter_type=str(payload.get("filterType") or "combined"),
            manual=payload.get("manualTargets"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    current = {stage.name: stage.dpu for stage in baseline.stages} if baseline else {}
    return {
        "stageTargets": [
            {
                **target.to_document(),
                "currentDpu": current.get(target.stage_name, 0.0),
                "reductionPercentage": round(
                    calculate_reduction_percentage(
                        current.get(target.stage_name, 0.0), target.target_dpu
                    ),
                    1,
                ),
            }
            for target in stage_targets
        ],
        "valid": validate_targets(stage_targets, overall),
        "count": len(stage_targets),
    }


@app.post("/targets/validate")
def validate_endpoint(
    payload: Dict[str, Any] = Body(..., example={
        "overallTarget": 8.2,
        "stageTargets": [
            {"stageName": "BOOMS", "targetDpu": 5.2},
            {"stageName": "SIP6", "targetDpu": 3.0},
        ],
    })
):
    try:
        overall = float(payload.get("overallTarget"))
        tolerance = float(payload.get("tolerance", 0.1))
        stage_targets = [
            StageTarget.from_document(item) for item in payload.get("stageTargets", [])
        ]
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    total = sum(target.target_dpu for target in stage_targets)
    return {
        "valid": validate_targets(stage_targets, overall, tolerance),
        "total": round(total, 2),
        "overallTarget": overall,
    }


# To run locally:
#   uvicorn api_targets:app --reload --port 8080
