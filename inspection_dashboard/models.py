"""Records stored and exchanged by the inspection dashboard.

Stage and month records are frozen: every derived figure (stage DPU, month
totals) is computed on construction, so editing a count means building a new
record through :mod:`inspection_dashboard.calculator`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from inspection_dashboard.calculator import (
    compute_segment_totals,
    compute_stage_dpu,
    round_dpu,
    stage_id_from_name,
    stage_type_for,
)


ALLOCATION_STRATEGIES = ("proportional", "weighted", "hybrid", "manual")
INTERVENTION_TYPES = (
    "Process", "Training", "Tooling", "Design", "Quality Check", "Supplier", "Other",
)
INTERVENTION_STATUSES = ("Planned", "In Progress", "Completed", "Delayed", "Cancelled")
CONFIDENCE_LEVELS = ("High", "Medium", "Low")


def _count(value: Any, label: str) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"{label} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{label} must be a number") from None
    if number != number or number in (float("inf"), float("-inf")):
        raise ValueError(f"{label} must be a finite number")
    if number < 0:
        raise ValueError(f"{label} cannot be negative")
    return int(round(number))


def _number(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def plan_stage_id(stage_name: str) -> str:
    """Identifier used for intervention plans: lower case, whitespace to ``_``."""

    return "_".join(str(stage_name or "").strip().lower().split())


@dataclass(frozen=True)
class StageRecord:
    """Counts for one production stage within one month."""

    name: str
    inspected: int = 0
    faults: int = 0
    order: Optional[int] = None
    id: str = field(init=False)
    dpu: float = field(init=False)
    stage_type: str = field(init=False)

    def __post_init__(self) -> None:
        name = str(self.name or "").strip()
        stage_id = stage_id_from_name(name)
        if not stage_id:
            raise ValueError(f"Invalid stage name: {self.name!r}")
        inspected = _count(self.inspected, f"{name} inspected")
        faults = _count(self.faults, f"{name} faults")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "inspected", inspected)
        object.__setattr__(self, "faults", faults)
        object.__setattr__(self, "id", stage_id)
        object.__setattr__(self, "dpu", compute_stage_dpu(inspected, faults))
        object.__setattr__(self, "stage_type", stage_type_for(name))

    def to_document(self) -> dict:
        document = {
            "id": self.id,
            "name": self.name,
            "inspected": self.inspected,
            "faults": self.faults,
            "dpu": self.dpu,
            "stageType": self.stage_type,
        }
        if self.order is not None:
            document["order"] = self.order
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "StageRecord":
        order = document.get("order")
        return cls(
            name=document.get("name") or document.get("stageName") or "",
            inspected=document.get("inspected") or 0,
            faults=document.get("faults") or 0,
            order=int(order) if order is not None else None,
        )


@dataclass(frozen=True)
class ReportedTotals:
    """Totals supplied by an import source that carried no stage breakdown."""

    inspections: int = 0
    faults: int = 0
    dpu: float = 0.0
    signout_volume: int = 0

    def to_document(self) -> dict:
        return {
            "totalInspections": self.inspections,
            "totalFaults": self.faults,
            "totalDpu": self.dpu,
            "signoutVolume": self.signout_volume,
        }

    @classmethod
    def from_document(cls, document: Optional[Mapping[str, Any]]) -> Optional["ReportedTotals"]:
        if not document:
            return None
        return cls(
            inspections=int(_number(document.get("totalInspections"))),
            faults=int(_number(document.get("totalFaults"))),
            dpu=round_dpu(document.get("totalDpu")),
            signout_volume=int(_number(document.get("signoutVolume"))),
        )


_TOTAL_FIELDS = (
    "total_inspections",
    "total_faults",
    "total_dpu",
    "production_total_inspections",
    "production_total_faults",
    "production_total_dpu",
    "dpdi_total_inspections",
    "dpdi_total_faults",
    "dpdi_total_dpu",
    "combined_total_inspections",
    "combined_total_faults",
    "combined_total_dpu",
    "signout_volume",
)

_DOCUMENT_KEYS = {
    "total_inspections": "totalInspections",
    "total_faults": "totalFaults",
    "total_dpu": "totalDpu",
    "production_total_inspections": "productionTotalInspections",
    "production_total_faults": "productionTotalFaults",
    "production_total_dpu": "productionTotalDpu",
    "dpdi_total_inspections": "dpdiTotalInspections",
    "dpdi_total_faults": "dpdiTotalFaults",
    "dpdi_total_dpu": "dpdiTotalDpu",
    "combined_total_inspections": "combinedTotalInspections",
    "combined_total_faults": "combinedTotalFaults",
    "combined_total_dpu": "combinedTotalDpu",
    "signout_volume": "signoutVolume",
}


@dataclass(frozen=True)
class MonthlyInspection:
    """One calendar month of stage counts plus its derived totals."""

    id: str
    date: str
    year: int
    stages: tuple = ()
    reported: Optional[ReportedTotals] = None
    total_inspections: int = field(init=False)
    total_faults: int = field(init=False)
    total_dpu: float = field(init=False)
    production_total_inspections: int = field(init=False)
    production_total_faults: int = field(init=False)
    production_total_dpu: float = field(init=False)
    dpdi_total_inspections: int = field(init=False)
    dpdi_total_faults: int = field(init=False)
    dpdi_total_dpu: float = field(init=False)
    combined_total_inspections: int = field(init=False)
    combined_total_faults: int = field(init=False)
    combined_total_dpu: float = field(init=False)
    signout_volume: int = field(init=False)

    def __post_init__(self) -> None:
        stages = tuple(self.stages)
        seen: set[str] = set()
        for stage in stages:
            if stage.id in seen:
                raise ValueError(f"Duplicate stage {stage.name!r} in {self.date}")
            seen.add(stage.id)
        object.__setattr__(self, "stages", stages)
        object.__setattr__(self, "year", int(self.year))

        totals = compute_segment_totals(stages)
        totals["total_inspections"] = totals["combined_total_inspections"]
        totals["total_faults"] = totals["combined_total_faults"]
        totals["total_dpu"] = totals["combined_total_dpu"]

        reported = self.reported
        if reported is not None:
            if not totals["total_inspections"] and not totals["total_faults"]:
                for prefix in ("", "combined_"):
                    totals[f"{prefix}total_inspections"] = reported.inspections
                    totals[f"{prefix}total_faults"] = reported.faults
                    totals[f"{prefix}total_dpu"] = round_dpu(reported.dpu)
            if not totals["signout_volume"]:
                totals["signout_volume"] = reported.signout_volume

        for name in _TOTAL_FIELDS:
            object.__setattr__(self, name, totals[name])

    @property
    def is_active(self) -> bool:
        return self.total_inspections > 0

    def stage(self, stage_id: str) -> Optional[StageRecord]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def totals(self) -> dict:
        return {name: getattr(self, name) for name in _TOTAL_FIELDS}

    def to_document(self) -> dict:
        document = {
            "id": self.id,
            "date": self.date,
            "year": self.year,
            "stages": [stage.to_document() for stage in self.stages],
        }
        for name, key in _DOCUMENT_KEYS.items():
            document[key] = getattr(self, name)
        if self.reported is not None:
            document["reportedTotals"] = self.reported.to_document()
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "MonthlyInspection":
        """Build a month from its camelCase document; stored totals are ignored."""

        return cls(
            id=document["id"],
            date=document["date"],
            year=document["year"],
            stages=tuple(StageRecord.from_document(s) for s in document.get("stages") or []),
            reported=ReportedTotals.from_document(document.get("reportedTotals")),
        )

    def to_record(self) -> dict:
        """Return the storage row (snake_case columns)."""

        record = {
            "id": self.id,
            "date": self.date,
            "year": self.year,
            "stages": [stage.to_document() for stage in self.stages],
            "reported_totals": self.reported.to_document() if self.reported else None,
        }
        record.update(self.totals())
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "MonthlyInspection":
        return cls(
            id=record["id"],
            date=record["date"],
            year=record["year"],
            stages=tuple(StageRecord.from_document(s) for s in record.get("stages") or []),
            reported=ReportedTotals.from_document(record.get("reported_totals")),
        )


@dataclass(frozen=True)
class StageTarget:
    stage_name: str
    target_dpu: float
    is_manual: bool = False

    def to_document(self) -> dict:
        return {
            "stageName": self.stage_name,
            "targetDpu": self.target_dpu,
            "isManual": self.is_manual,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "StageTarget":
        name = document.get("stageName") or document.get("stage_name")
        if not name:
            raise ValueError("Stage target requires a stage name")
        target = document.get("targetDpu", document.get("target_dpu"))
        return cls(
            stage_name=str(name),
            target_dpu=round_dpu(target),
            is_manual=bool(document.get("isManual", document.get("is_manual", False))),
        )


@dataclass(frozen=True)
class Baseline:
    """DPU snapshot of the month a year target was planned against."""

    month: str
    combined_dpu: float
    production_dpu: float
    dpdi_dpu: float

    @classmethod
    def from_month(cls, month: MonthlyInspection) -> "Baseline":
        return cls(
            month=month.date,
            combined_dpu=month.combined_total_dpu,
            production_dpu=month.production_total_dpu,
            dpdi_dpu=month.dpdi_total_dpu,
        )

    def to_document(self) -> dict:
        return {
            "month": self.month,
            "combinedDpu": self.combined_dpu,
            "productionDpu": self.production_dpu,
            "dpdiDpu": self.dpdi_dpu,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Baseline":
        return cls(
            month=str(document.get("month") or ""),
            combined_dpu=round_dpu(document.get("combinedDpu")),
            production_dpu=round_dpu(document.get("productionDpu")),
            dpdi_dpu=round_dpu(document.get("dpdiDpu")),
        )


@dataclass(frozen=True)
class YearTarget:
    year: int
    combined_target: float
    production_target: float
    dpdi_target: float = 0.0
    allocation_strategy: str = "proportional"
    baseline: Optional[Baseline] = None
    stage_targets: tuple = ()
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        if self.allocation_strategy not in ALLOCATION_STRATEGIES:
            raise ValueError(f"Unknown allocation strategy: {self.allocation_strategy}")
        object.__setattr__(self, "stage_targets", tuple(self.stage_targets))

    def to_document(self) -> dict:
        return {
            "year": self.year,
            "combinedTarget": self.combined_target,
            "productionTarget": self.production_target,
            "dpdiTarget": self.dpdi_target,
            "allocationStrategy": self.allocation_strategy,
            "baseline": self.baseline.to_document() if self.baseline else None,
            "stageTargets": [target.to_document() for target in self.stage_targets],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "YearTarget":
        """Build a target from the JSON body used by the API.

        Raises:
            ValueError: when a required field is missing or malformed.
        """

        missing = [
            key
            for key in ("year", "combinedTarget", "productionTarget", "allocationStrategy", "baseline")
            if document.get(key) in (None, "")
        ]
        if missing:
            raise ValueError("Missing required fields: " + ", ".join(missing))
        try:
            year = int(document["year"])
            combined = float(document["combinedTarget"])
            production = float(document["productionTarget"])
            dpdi = float(document.get("dpdiTarget") or 0.0)
        except (TypeError, ValueError):
            raise ValueError("Targets must be numeric") from None
        return cls(
            year=year,
            combined_target=round_dpu(combined),
            production_target=round_dpu(production),
            dpdi_target=round_dpu(dpdi),
            allocation_strategy=str(document["allocationStrategy"]),
            baseline=Baseline.from_document(document["baseline"]),
            stage_targets=tuple(
                StageTarget.from_document(item) for item in document.get("stageTargets") or []
            ),
            created_at=document.get("createdAt"),
            updated_at=document.get("updatedAt"),
        )

    def to_record(self) -> dict:
        return {
            "year": self.year,
            "combined_target": self.combined_target,
            "production_target": self.production_target,
            "dpdi_target": self.dpdi_target,
            "allocation_strategy": self.allocation_strategy,
            "baseline": self.baseline.to_document() if self.baseline else None,
            "stage_targets": [target.to_document() for target in self.stage_targets],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "YearTarget":
        baseline = record.get("baseline")
        return cls(
            year=int(record["year"]),
            combined_target=_number(record.get("combined_target")),
            production_target=_number(record.get("production_target")),
            dpdi_target=_number(record.get("dpdi_target")),
            allocation_strategy=record.get("allocation_strategy") or "proportional",
            baseline=Baseline.from_document(baseline) if baseline else None,
            stage_targets=tuple(
                StageTarget.from_document(item) for item in record.get("stage_targets") or []
            ),
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )


@dataclass(frozen=True)
class Intervention:
    id: str
    title: str
    description: str = ""
    type: str = "Process"
    estimated_dpu_reduction: float = 0.0
    cut_in_date: Optional[str] = None
    owner: str = ""
    status: str = "Planned"
    confidence_level: str = "Medium"
    investment_cost: Optional[float] = None
    actual_impact: Optional[float] = None
    completed_date: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        if not str(self.title or "").strip():
            raise ValueError("Intervention title is required")
        if self.type not in INTERVENTION_TYPES:
            raise ValueError(f"Unknown intervention type: {self.type}")
        if self.status not in INTERVENTION_STATUSES:
            raise ValueError(f"Unknown intervention status: {self.status}")
        if self.confidence_level not in CONFIDENCE_LEVELS:
            raise ValueError(f"Unknown confidence level: {self.confidence_level}")

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "estimatedDpuReduction": self.estimated_dpu_reduction,
            "cutInDate": self.cut_in_date,
            "owner": self.owner,
            "status": self.status,
            "confidenceLevel": self.confidence_level,
            "investmentCost": self.investment_cost,
            "actualImpact": self.actual_impact,
            "completedDate": self.completed_date,
            "notes": self.notes,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any], *, index: int = 0) -> "Intervention":
        def optional_number(key):
            value = document.get(key)
            return None if value in (None, "") else _number(value)

        return cls(
            id=str(document.get("id") or f"intervention-{index + 1}"),
            title=str(document.get("title") or ""),
            description=str(document.get("description") or ""),
            type=document.get("type") or "Process",
            estimated_dpu_reduction=round_dpu(document.get("estimatedDpuReduction")),
            cut_in_date=document.get("cutInDate"),
            owner=str(document.get("owner") or ""),
            status=document.get("status") or "Planned",
            confidence_level=document.get("confidenceLevel") or "Medium",
            investment_cost=optional_number("investmentCost"),
            actual_impact=optional_number("actualImpact"),
            completed_date=document.get("completedDate"),
            notes=document.get("notes"),
            created_at=document.get("createdAt"),
            updated_at=document.get("updatedAt"),
        )


@dataclass(frozen=True)
class CurrentState:
    current_dpu: float
    target_dpu: float
    gap: float
    months_remaining: int
    required_rate: float

    def to_document(self) -> dict:
        return {
            "currentDpu": self.current_dpu,
            "targetDpu": self.target_dpu,
            "gap": self.gap,
            "monthsRemaining": self.months_remaining,
            "requiredRate": self.required_rate,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "CurrentState":
        return cls(
            current_dpu=round_dpu(document.get("currentDpu")),
            target_dpu=round_dpu(document.get("targetDpu")),
            gap=round_dpu(document.get("gap")),
            months_remaining=max(1, int(_number(document.get("monthsRemaining"), 1))),
            required_rate=round_dpu(document.get("requiredRate"), places=3),
        )


@dataclass(frozen=True)
class Projections:
    baseline_projection: float
    adjusted_projection: float
    total_expected_impact: float
    confidence_score: int

    def to_document(self) -> dict:
        return {
            "baselineProjection": self.baseline_projection,
            "adjustedProjection": self.adjusted_projection,
            "totalExpectedImpact": self.total_expected_impact,
            "confidenceScore": self.confidence_score,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Projections":
        return cls(
            baseline_projection=round_dpu(document.get("baselineProjection")),
            adjusted_projection=round_dpu(document.get("adjustedProjection")),
            total_expected_impact=round_dpu(document.get("totalExpectedImpact")),
            confidence_score=int(_number(document.get("confidenceScore"))),
        )


@dataclass(frozen=True)
class InterventionPlan:
    stage_id: str
    stage_name: str
    year: int
    created_by: str = "Unknown"
    current_state: Optional[CurrentState] = None
    interventions: tuple = ()
    projections: Optional[Projections] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "interventions", tuple(self.interventions))

    def to_document(self) -> dict:
        return {
            "stageId": self.stage_id,
            "stageName": self.stage_name,
            "year": self.year,
            "createdBy": self.created_by,
            "currentState": self.current_state.to_document() if self.current_state else None,
            "interventions": [item.to_document() for item in self.interventions],
            "projections": self.projections.to_document() if self.projections else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "InterventionPlan":
        """Build a plan from an API body; ``stageId`` is derived from the name."""

        stage_name = str(document.get("stageName") or "").strip()
        if not stage_name or document.get("year") in (None, ""):
            raise ValueError("Missing required fields: stageName and year")
        try:
            year = int(document["year"])
        except (TypeError, ValueError):
            raise ValueError("Year must be numeric") from None
        current_state = document.get("currentState")
        projections = document.get("projections")
        return cls(
            stage_id=plan_stage_id(stage_name),
            stage_name=stage_name,
            year=year,
            created_by=str(document.get("createdBy") or "Unknown"),
            current_state=CurrentState.from_document(current_state) if current_state else None,
            interventions=tuple(
                Intervention.from_document(item, index=index)
                for index, item in enumerate(document.get("interventions") or [])
            ),
            projections=Projections.from_document(projections) if projections else None,
            created_at=document.get("createdAt"),
            updated_at=document.get("updatedAt"),
        )

    def to_record(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "year": self.year,
            "created_by": self.created_by,
            "current_state": self.current_state.to_document() if self.current_state else None,
            "interventions": [item.to_document() for item in self.interventions],
            "projections": self.projections.to_document() if self.projections else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "InterventionPlan":
        current_state = record.get("current_state")
        projections = record.get("projections")
        return cls(
            stage_id=record["stage_id"],
            stage_name=record.get("stage_name") or record["stage_id"],
            year=int(record["year"]),
            created_by=record.get("created_by") or "Unknown",
            current_state=CurrentState.from_document(current_state) if current_state else None,
            interventions=tuple(
                Intervention.from_document(item, index=index)
                for index, item in enumerate(record.get("interventions") or [])
            ),
            projections=Projections.from_document(projections) if projections else None,
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )
