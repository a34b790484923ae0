"""Supabase persistence for inspection months, year targets and intervention plans.

The store wraps a Supabase client created by the caller. Every method returns a
``(data, error)`` tuple; failures are reported as strings and are neither
retried nor rolled back here.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Tuple
import json

from supabase import create_client

from config.supabase_schema import (
    column_name,
    from_supabase_row,
    table_name,
    to_supabase_payload,
)
from inspection_dashboard.calculator import sort_months
from inspection_dashboard.models import InterventionPlan, MonthlyInspection, YearTarget


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InspectionStore:
    """Storage collaborator backed by a Supabase (PostgREST) client."""

    def __init__(self, client):
        self._client = client

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def closed(self) -> bool:
        return self._client is None

    def close(self) -> None:
        """Release the client. Later calls report an error instead of querying."""

        self._client = None

    def _ensure_client(self) -> Tuple[Any, str | None]:
        if self._client is None:
            return None, "Inspection store is closed"
        if not hasattr(self._client, "table"):
            return None, (
                "Supabase client is not configured. Set SUPABASE_URL and "
                "SUPABASE_SERVICE_KEY."
            )
        return self._client, None

    # Inspection months

    def fetch_inspections(self, year: int | None = None) -> tuple[list[MonthlyInspection] | None, str | None]:
        """Return every stored month in calendar order, optionally for one year."""

        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            query = supabase.table(table_name("inspections")).select("*")
            if year is not None:
                query = query.eq(column_name("inspections", "year"), year)
            response = query.execute()
            rows = response.data or []
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to fetch inspections: {exc}"

        try:
            months = [
                MonthlyInspection.from_record(from_supabase_row("inspections", row))
                for row in rows
            ]
        except (KeyError, TypeError, ValueError) as exc:
            return None, f"Invalid inspection record: {exc}"
        return sort_months(months), None

    def fetch_inspection(self, month_id: str) -> tuple[MonthlyInspection | None, str | None]:
        if not month_id:
            return None, "Month id is required"
        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            response = (
                supabase.table(table_name("inspections"))
                .select("*")
                .eq(column_name("inspections", "id"), month_id)
                .limit(1)
                .execute()
            )
            records = response.data or []
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to fetch inspection {month_id}: {exc}"
        if not records:
            return None, None
        try:
            return MonthlyInspection.from_record(from_supabase_row("inspections", records[0])), None
        except (KeyError, TypeError, ValueError) as exc:
            return None, f"Invalid inspection record: {exc}"

    def save_inspection(self, month: MonthlyInspection) -> tuple[list[dict] | None, str | None]:
        """Upsert a single month by ``id``."""

        supabase, error = self._ensure_client()
        if error:
            return None, error
        payload = month.to_record()
        payload["updated_at"] = _now()
        payload = to_supabase_payload("inspections", payload)
        try:
            response = (
                supabase.table(table_name("inspections"))
                .upsert(payload, on_conflict=column_name("inspections", "id"))
                .execute()
            )
            return response.data or [], None
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to save inspection {month.id}: {exc}"

    def save_inspections(self, months: Iterable[MonthlyInspection]) -> tuple[list[dict] | None, str | None]:
        """Upsert several months at once (maintenance operations)."""

        supabase, error = self._ensure_client()
        if error:
            return None, error
        stamp = _now()
        payload = []
        for month in months:
            record = month.to_record()
            record["updated_at"] = stamp
            payload.append(to_supabase_payload("inspections", record))
        if not payload:
            return [], None
        try:
            response = (
                supabase.table(table_name("inspections"))
                .upsert(payload, on_conflict=column_name("inspections", "id"))
                .execute()
            )
            return response.data or [], None
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to save inspections: {exc}"

    def stage_replacement(self, months: Iterable[MonthlyInspection]) -> tuple[list[dict] | None, str | None]:
        """Validate and serialise a full-replace batch without touching the database."""

        months = list(months)
        if not months:
            return None, "Nothing to restore: the import produced no months"
        seen: set[str] = set()
        for month in months:
            if month.id in seen:
                return None, f"Duplicate month id in import: {month.id}"
            seen.add(month.id)

        stamp = _now()
        rows = []
        for month in months:
            record = month.to_record()
            record["updated_at"] = stamp
            rows.append(to_supabase_payload("inspections", record))
        try:
            json.dumps(rows)
        except (TypeError, ValueError) as exc:
            return None, f"Import batch is not serialisable: {exc}"
        return rows, None

    def replace_inspections(self, months: Iterable[MonthlyInspection]) -> tuple[int | None, str | None]:
        """Swap the stored months for ``months`` in one transaction.

        The batch is validated first; the delete and insert then run inside the
        ``replace_inspections`` Postgres function so a failure leaves the
        previous data in place. The function is given the configured
        inspections table, so schema overrides apply to restores too.
        """

        rows, error = self.stage_replacement(months)
        if error:
            return None, error
        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            params = {"target_table": table_name("inspections"), "rows": rows}
            response = supabase.rpc(table_name("replace_inspections"), params).execute()
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to replace inspections: {exc}"

        inserted = response.data
        if isinstance(inserted, list):
            inserted = inserted[0] if len(inserted) == 1 and isinstance(inserted[0], int) else len(inserted)
        if inserted != len(rows):
            return None, f"Replace inserted {inserted} of {len(rows)} months"
        return inserted, None

    # Year targets

    def fetch_year_target(self, year: int) -> tuple[YearTarget | None, str | None]:
        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            response = (
                supabase.table(table_name("year_targets"))
                .select("*")
                .eq(column_name("year_targets", "year"), year)
                .limit(1)
                .execute()
            )
            records = response.data or []
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to fetch targets for {year}: {exc}"
        if not records:
            return None, None
        try:
            return YearTarget.from_record(from_supabase_row("year_targets", records[0])), None
        except (KeyError, TypeError, ValueError) as exc:
            return None, f"Invalid year target record: {exc}"

    def fetch_year_targets(self) -> tuple[list[YearTarget] | None, str | None]:
        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            response = (
                supabase.table(table_name("year_targets"))
                .select("*")
                .order(column_name("year_targets", "year"))
                .execute()
            )
            rows = response.data or []
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to fetch year targets: {exc}"
        try:
            return [YearTarget.from_record(from_supabase_row("year_targets", row)) for row in rows], None
        except (KeyError, TypeError, ValueError) as exc:
            return None, f"Invalid year target record: {exc}"

    def upsert_year_target(self, target: YearTarget) -> tuple[list[dict] | None, str | None]:
        supabase, error = self._ensure_client()
        if error:
            return None, error
        payload = to_supabase_payload("year_targets", target.to_record())
        try:
            response = (
                supabase.table(table_name("year_targets"))
                .upsert(payload, on_conflict=column_name("year_targets", "year"))
                .execute()
            )
            return response.data or [], None
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to save targets for {target.year}: {exc}"

    def delete_year_target(self, year: int) -> tuple[int | None, str | None]:
        """Delete the targets for ``year``; returns the number of rows removed."""

        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            response = (
                supabase.table(table_name("year_targets"))
                .delete()
                .eq(column_name("year_targets", "year"), year)
                .execute()
            )
            return len(response.data or []), None
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to delete targets for {year}: {exc}"

    # Intervention plans

    def fetch_intervention_plans(self, year: int) -> tuple[list[InterventionPlan] | None, str | None]:
        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            response = (
                supabase.table(table_name("intervention_plans"))
                .select("*")
                .eq(column_name("intervention_plans", "year"), year)
                .execute()
            )
            rows = response.data or []
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to fetch intervention plans: {exc}"
        try:
            return [
                InterventionPlan.from_record(from_supabase_row("intervention_plans", row))
                for row in rows
            ], None
        except (KeyError, TypeError, ValueError) as exc:
            return None, f"Invalid intervention plan record: {exc}"

    def fetch_intervention_plan(self, stage_id: str, year: int) -> tuple[InterventionPlan | None, str | None]:
        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            response = (
                supabase.table(table_name("intervention_plans"))
                .select("*")
                .eq(column_name("intervention_plans", "stage_id"), stage_id)
                .eq(column_name("intervention_plans", "year"), year)
                .limit(1)
                .execute()
            )
            records = response.data or []
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to fetch intervention plan: {exc}"
        if not records:
            return None, None
        try:
            return InterventionPlan.from_record(
                from_supabase_row("intervention_plans", records[0])
            ), None
        except (KeyError, TypeError, ValueError) as exc:
            return None, f"Invalid intervention plan record: {exc}"

    def upsert_intervention_plan(self, plan: InterventionPlan) -> tuple[list[dict] | None, str | None]:
        supabase, error = self._ensure_client()
        if error:
            return None, error
        payload = to_supabase_payload("intervention_plans", plan.to_record())
        conflict = ",".join(
            column_name("intervention_plans", column) for column in ("stage_id", "year")
        )
        try:
            response = (
                supabase.table(table_name("intervention_plans"))
                .upsert(payload, on_conflict=conflict)
                .execute()
            )
            return response.data or [], None
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to save intervention plan: {exc}"

    def delete_intervention_plan(self, stage_id: str, year: int) -> tuple[int | None, str | None]:
        supabase, error = self._ensure_client()
        if error:
            return None, error
        try:
            response = (
                supabase.table(table_name("intervention_plans"))
                .delete()
                .eq(column_name("intervention_plans", "stage_id"), stage_id)
                .eq(column_name("intervention_plans", "year"), year)
                .execute()
            )
            return len(response.data or []), None
        except Exception as exc:  # pragma: no cover - network errors
            return None, f"Failed to delete intervention plan: {exc}"


def open_store(url: str, key: str) -> InspectionStore:
    """Create a Supabase client for ``url``/``key`` and wrap it in a store."""

    return InspectionStore(create_client(url, key))
