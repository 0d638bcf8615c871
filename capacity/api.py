"""
External-facing operations of the bed control engine.

Each function takes a resolved :class:`~capacity.scope.FacilityScope`
first and returns a :class:`~capacity.results.Result` instead of
raising, so callers branch on ``result.kind``.  Mutations are retried on
transient database errors until ``timeout`` seconds have passed.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Optional

from capacity.models import Assignment
from capacity.results import as_result, success
from capacity.services import arrivals, assignments, census, forecast as forecasting, los, registry
from capacity.services.persistence import run_with_retry


# ---- registry ----

@as_result
def register_unit(scope, *, timeout: Optional[float] = None, **fields):
    return run_with_retry(registry.register_unit, scope, timeout=timeout, **fields)


@as_result
def configure_unit(scope, unit_id: int, *, timeout: Optional[float] = None, **changes):
    return run_with_retry(registry.configure_unit, scope, unit_id, timeout=timeout, **changes)


@as_result
def deactivate_unit(scope, unit_id: int, *, timeout: Optional[float] = None):
    return run_with_retry(registry.deactivate_unit, scope, unit_id, timeout=timeout)


@as_result
def register_bed(scope, unit_id: int, *, timeout: Optional[float] = None, **fields):
    return run_with_retry(registry.register_bed, scope, unit_id, timeout=timeout, **fields)


@as_result
def deactivate_bed(scope, bed_id: int, *, timeout: Optional[float] = None):
    return run_with_retry(registry.deactivate_bed, scope, bed_id, timeout=timeout)


@as_result
def set_bed_status(scope, bed_id: int, new_status: str, *, reason: str = '',
                   at: Optional[datetime] = None, timeout: Optional[float] = None):
    return run_with_retry(registry.set_status, scope, bed_id, new_status,
                          reason=reason, at=at, timeout=timeout)


@as_result
def get_acuity_matched_beds(scope, unit_id: int, required_capabilities: Iterable[str] = (),
                            acuity: Optional[int] = None):
    return registry.find_candidates(scope, unit_id, required_capabilities, acuity)


@as_result
def get_bed_board(scope, unit_id: int):
    return registry.bed_board(scope, unit_id)


# ---- assignments ----

@as_result
def assign_bed(scope, patient_ref: str, unit_id: int, required_capabilities: Iterable[str] = (),
               acuity: int = 1, reason: str = Assignment.REASON_ADMISSION, *,
               timeout: Optional[float] = None, **details):
    return run_with_retry(
        assignments.assign_bed, scope, patient_ref, unit_id, required_capabilities, acuity, reason,
        timeout=timeout, **details,
    )


@as_result
def discharge_or_transfer(scope, assignment_id: int, disposition: str, *,
                          at: Optional[datetime] = None, rebook_authorized: bool = False,
                          reason: str = '', timeout: Optional[float] = None):
    return run_with_retry(
        assignments.discharge_or_transfer, scope, assignment_id, disposition,
        at=at, rebook_authorized=rebook_authorized, reason=reason, timeout=timeout,
    )


@as_result
def transfer_patient(scope, patient_ref: str, to_unit_id: int, required_capabilities: Iterable[str] = (),
                     acuity: Optional[int] = None, *, timeout: Optional[float] = None, **details):
    return run_with_retry(
        assignments.transfer_patient, scope, patient_ref, to_unit_id, required_capabilities, acuity,
        timeout=timeout, **details,
    )


# ---- census ----

@as_result
def snapshot(scope, unit_id: int, as_of: Optional[datetime] = None, *, timeout: Optional[float] = None):
    return run_with_retry(census.snapshot, scope, unit_id, as_of, timeout=timeout)


@as_result
def get_unit_census(scope, unit_id: int, at: Optional[datetime] = None):
    return census.unit_census(scope, unit_id, at)


@as_result
def get_turnaround(scope, unit_id: int, *, days: int = 7):
    return census.turnaround_analytics(scope, unit_id, days=days)


# ---- length of stay ----

@as_result
def estimate_remaining_los(scope, assignment_id: int, *, now: Optional[datetime] = None):
    return los.estimate_remaining_los(scope, assignment_id, now=now)


@as_result
def get_predicted_discharges(scope, unit_id: int, on_date: Optional[date] = None):
    return los.predicted_discharges(scope, unit_id, on_date)


# ---- forecasting ----

@as_result
def forecast(scope, unit_id: int, days_ahead: int, *, now: Optional[datetime] = None,
             timeout: Optional[float] = None):
    run = run_with_retry(forecasting.generate_forecast, scope, unit_id, days_ahead, now=now, timeout=timeout)
    return success(run.forecasts, warnings=run.warnings)


@as_result
def get_forecast(scope, unit_id: int, days_ahead: int):
    data = forecasting.get_forecast(scope, unit_id, days_ahead)
    warnings = []
    if len(data) < days_ahead:
        warnings.append(f"forecast covers {len(data)} of {days_ahead} days")
    if any(item['degraded'] for item in data):
        warnings.append('forecast was produced from stale inputs')
    return success(data, warnings=warnings)


@as_result
def get_prediction_accuracy(scope, unit_id: int, *, days: int = 30):
    return forecasting.prediction_accuracy(scope, unit_id, days=days)


@as_result
def schedule_arrival(scope, unit_id: int, expected_date: date, *, timeout: Optional[float] = None, **details):
    return run_with_retry(arrivals.schedule_arrival, scope, unit_id, expected_date, timeout=timeout, **details)


@as_result
def cancel_arrival(scope, arrival_id: int, *, timeout: Optional[float] = None):
    return run_with_retry(arrivals.cancel_arrival, scope, arrival_id, timeout=timeout)
