"""
Availability forecasting.

For each future date ``d = today + k`` (``k = 1..days_ahead``)::

    available(d) = current available beds
                 + open stays whose estimated discharge falls on or before d
                 - pending scheduled arrivals expected on or before d
                 + seasonal adjustment for the weekday of d

clamped to the unit's bed count.  The band half-width grows linearly
with ``k`` and confidence decays with it.  When the census baseline is
missing or old, or stays on the unit have no LOS reference data, the
forecast is still produced: it is marked ``degraded``, its band is
widened by ``FORECAST_STALE_PENALTY`` and a warning is returned.

Regeneration supersedes the current rows for the same dates; old rows
stay for backtesting.  Batches over many units run on a thread pool
and can be cancelled between units.
"""
from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

import numpy as np
from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError, IntegrityError, connection, transaction
from django.utils import timezone

from capacity.exceptions import CapacityError, InvalidRequest, PersistenceTimeout, StaleForecastInput
from capacity.models import Assignment, CensusSnapshot, Facility, Forecast, Unit
from capacity.scope import scope_for
from capacity.services import arrivals, census, los
from capacity.services.persistence import consistent_read

logger = logging.getLogger(__name__)

MAX_DAYS_AHEAD = 30


@dataclass
class ForecastInputs:
    current_available: int
    total_beds: int
    discharge_dates: list
    arrival_dates: list
    weekday_adjustment: dict
    warnings: list = field(default_factory=list)

    @property
    def stale(self) -> bool:
        return bool(self.warnings)


@dataclass
class ForecastRun:
    unit_id: int
    forecasts: list
    warnings: list

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


@dataclass
class BatchOutcome:
    completed: list = field(default_factory=list)
    failed: dict = field(default_factory=dict)
    skipped: list = field(default_factory=list)
    degraded: list = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return bool(self.skipped)


# ---- seasonal adjustment ----

def weekday_profile(unit: Unit, now: datetime) -> dict[int, float]:
    """Deviation of each weekday's mean available beds from the overall mean.

    Learned from scheduled snapshots over ``FORECAST_SEASONAL_LOOKBACK_WEEKS``.
    A weekday with fewer than ``FORECAST_SEASONAL_MIN_WEEKS`` observations
    gets no adjustment.
    """
    since = now - timedelta(weeks=settings.FORECAST_SEASONAL_LOOKBACK_WEEKS)
    rows = list(
        CensusSnapshot.objects.filter(unit=unit, scheduled=True, as_of__gte=since, as_of__lte=now)
        .values_list('as_of', 'available')
    )
    if not rows:
        return {}
    weekdays = np.array([timezone.localtime(as_of).weekday() for as_of, _ in rows])
    available = np.array([v for _, v in rows], dtype=float)
    overall = available.mean()
    profile = {}
    for wd in range(7):
        mask = weekdays == wd
        if mask.sum() >= settings.FORECAST_SEASONAL_MIN_WEEKS:
            profile[wd] = float(available[mask].mean() - overall)
    return profile


def seasonal_profile(unit: Unit, now: datetime) -> dict[int, float]:
    mode = settings.FORECAST_SEASONAL_MODE
    if mode == 'off':
        return {}
    if mode == 'static':
        table = settings.FORECAST_WEEKDAY_ADJUSTMENT
        return {wd: float(table[wd]) for wd in range(min(7, len(table)))}
    if mode == 'historical':
        return weekday_profile(unit, now)
    raise InvalidRequest(f"unknown seasonal mode {mode}")


def seasonal_adjustment(scope, unit_id: int, weekday: int, *, now: Optional[datetime] = None) -> float:
    unit = scope.get(Unit, pk=unit_id)
    return seasonal_profile(unit, now or timezone.now()).get(weekday, 0.0)


# ---- inputs ----

def _check_census_baseline(scope, unit: Unit, now: datetime) -> None:
    snap = census.latest_snapshot(scope, unit.pk, before=now)
    if snap is None:
        raise StaleForecastInput(f"no census snapshot for {unit.code}")
    age_hours = (now - snap.as_of).total_seconds() / 3600
    if age_hours > settings.FORECAST_MAX_INPUT_AGE_HOURS:
        raise StaleForecastInput(f"latest census for {unit.code} is {age_hours:.0f}h old")


def _check_los_inputs(unit: Unit, estimates: list) -> None:
    missing = sum(1 for e in estimates if e.is_fallback)
    if missing:
        raise StaleForecastInput(
            f"{missing} of {len(estimates)} stays on {unit.code} have no LOS reference data"
        )


def gather_inputs(scope, unit: Unit, now: datetime, horizon_end: date) -> ForecastInputs:
    today = timezone.localdate(now)
    with consistent_read():
        live = census.unit_census(scope, unit.pk)
        estimates = [
            los.estimate(scope, a, now=now)
            for a in Assignment.objects.filter(unit=unit, discharged_at__isnull=True).select_related('unit')
        ]
        arrival_dates = list(
            arrivals.pending_arrivals(scope, unit.pk, start=today, end=horizon_end)
            .values_list('expected_date', flat=True)
        )
        profile = seasonal_profile(unit, now)
        warnings = []
        for check in (lambda: _check_census_baseline(scope, unit, now),
                      lambda: _check_los_inputs(unit, estimates)):
            try:
                check()
            except StaleForecastInput as exc:
                warnings.append(exc.message)
    return ForecastInputs(
        current_available=live['available'],
        total_beds=live['totalBeds'],
        discharge_dates=[los.expected_discharge_date(e, now) for e in estimates],
        arrival_dates=arrival_dates,
        weekday_adjustment=profile,
        warnings=warnings,
    )


# ---- generation ----

def band_half_width(days_ahead: int, degraded: bool) -> float:
    half = settings.FORECAST_BAND_BASE + settings.FORECAST_BAND_GROWTH * days_ahead
    return half * settings.FORECAST_STALE_PENALTY if degraded else half


def confidence_for(days_ahead: int, degraded: bool) -> float:
    level = settings.FORECAST_BASE_CONFIDENCE - settings.FORECAST_CONFIDENCE_DECAY * (days_ahead - 1)
    if degraded:
        level /= settings.FORECAST_STALE_PENALTY
    return round(max(settings.FORECAST_MIN_CONFIDENCE, level), 3)


def build_forecast(scope, unit: Unit, inputs: ForecastInputs, day: date, days_ahead: int,
                   now: datetime) -> Forecast:
    discharges = sum(1 for d in inputs.discharge_dates if d <= day)
    arriving = sum(1 for d in inputs.arrival_dates if d <= day)
    seasonal = inputs.weekday_adjustment.get(day.weekday(), 0.0)
    raw = inputs.current_available + discharges - arriving + seasonal
    predicted = min(inputs.total_beds, max(0, int(round(raw))))
    half = band_half_width(days_ahead, inputs.stale)
    return Forecast(
        facility_id=scope.facility_id,
        unit=unit,
        forecast_date=day,
        days_ahead=days_ahead,
        generated_at=now,
        predicted_available=predicted,
        lower_bound=max(0, math.floor(predicted - half)),
        upper_bound=min(inputs.total_beds, math.ceil(predicted + half)),
        band_width=round(2 * half, 3),
        confidence=confidence_for(days_ahead, inputs.stale),
        degraded=inputs.stale,
        factors={
            'currentAvailable': inputs.current_available,
            'totalBeds': inputs.total_beds,
            'expectedDischarges': discharges,
            'scheduledArrivals': arriving,
            'seasonalAdjustment': round(seasonal, 3),
            'weekday': day.weekday(),
            'staleInputs': list(inputs.warnings),
        },
        model_version=settings.FORECAST_MODEL_VERSION,
    )


def _version_key(unit_id: int) -> str:
    return f'forecast:ver:{unit_id}'


def _store(unit: Unit, dates: list, rows: list, now: datetime) -> list:
    """Supersede the current rows for ``dates`` and insert ``rows``.

    The unit row is locked so regenerations of one unit run one at a time.
    Backends that skip row locks can still race between the supersede and
    the insert; the current-row constraint catches that and the swap is
    redone once against the rows the other writer committed.
    """
    with transaction.atomic():
        Unit.objects.select_for_update().filter(pk=unit.pk).first()
        for attempt in range(2):
            try:
                with transaction.atomic():
                    Forecast.objects.filter(unit=unit, forecast_date__in=dates, is_current=True).update(
                        is_current=False, superseded_at=now
                    )
                    return Forecast.objects.bulk_create(rows)
            except IntegrityError:
                logger.info("forecast rows for %s changed underneath, retrying (%d)", unit.code, attempt + 1)
    raise PersistenceTimeout(f"forecast for unit {unit.pk} kept changing underneath")


def generate_forecast(scope, unit_id: int, days_ahead: int, *, now: Optional[datetime] = None) -> ForecastRun:
    """Produce and store forecasts for the next ``days_ahead`` dates of a unit."""
    if not 1 <= days_ahead <= MAX_DAYS_AHEAD:
        raise InvalidRequest(f"daysAhead must be between 1 and {MAX_DAYS_AHEAD}")
    now = now or timezone.now()
    today = timezone.localdate(now)
    unit = scope.get(Unit, pk=unit_id)
    dates = [today + timedelta(days=k) for k in range(1, days_ahead + 1)]
    inputs = gather_inputs(scope, unit, now, dates[-1])
    rows = [build_forecast(scope, unit, inputs, d, k, now) for k, d in enumerate(dates, start=1)]

    created = _store(unit, dates, rows, now)
    cache.set(_version_key(unit.pk), timezone.now().timestamp(), None)

    if inputs.stale:
        logger.warning("forecast for %s degraded: %s", unit.code, '; '.join(inputs.warnings))
    else:
        logger.info("forecast for %s generated for %d days", unit.code, days_ahead)
    return ForecastRun(unit_id=unit.pk, forecasts=created, warnings=list(inputs.warnings))


def format_forecast(f: Forecast) -> dict:
    return {
        'id': f.pk,
        'unitId': f.unit_id,
        'date': f.forecast_date.isoformat(),
        'daysAhead': f.days_ahead,
        'predictedAvailable': f.predicted_available,
        'lowerBound': f.lower_bound,
        'upperBound': f.upper_bound,
        'bandWidth': f.band_width,
        'confidence': f.confidence,
        'degraded': f.degraded,
        'modelVersion': f.model_version,
        'generatedAt': f.generated_at.isoformat(),
        'factors': f.factors,
    }


def get_forecast(scope, unit_id: int, days_ahead: int, *, today: Optional[date] = None) -> list[dict]:
    """Current stored forecasts for the next ``days_ahead`` dates.  Never generates."""
    if not 1 <= days_ahead <= MAX_DAYS_AHEAD:
        raise InvalidRequest(f"daysAhead must be between 1 and {MAX_DAYS_AHEAD}")
    unit = scope.get(Unit, pk=unit_id)
    today = today or timezone.localdate()
    ttl = settings.FORECAST_CACHE_SECONDS
    key = None
    if ttl:
        version = cache.get(_version_key(unit.pk), 0)
        key = f'forecast:{scope.facility_id}:{unit.pk}:{today.isoformat()}:{days_ahead}:{version}'
        cached = cache.get(key)
        if cached is not None:
            return cached
    data = [
        format_forecast(f)
        for f in Forecast.objects.filter(
            facility_id=scope.facility_id, unit=unit, is_current=True,
            forecast_date__gt=today, forecast_date__lte=today + timedelta(days=days_ahead),
        ).order_by('forecast_date')
    ]
    if key:
        cache.set(key, data, ttl)
    return data


# ---- batches ----

def _generate_in_worker(scope, unit_id: int, days_ahead: int, now: datetime,
                        cancel_event: Optional[threading.Event]) -> Optional[ForecastRun]:
    if cancel_event is not None and cancel_event.is_set():
        return None
    try:
        return generate_forecast(scope, unit_id, days_ahead, now=now)
    finally:
        # Worker threads own their connection
        connection.close()


def _record(outcome: BatchOutcome, unit_id: int, run: Optional[ForecastRun]) -> None:
    if run is None:
        outcome.skipped.append(unit_id)
        return
    outcome.completed.append(unit_id)
    if run.degraded:
        outcome.degraded.append(unit_id)


def generate_forecasts(scope=None, days_ahead: int = 7, *, now: Optional[datetime] = None,
                       cancel_event: Optional[threading.Event] = None,
                       max_workers: Optional[int] = None) -> BatchOutcome:
    """Forecast every active unit, of one facility or of all of them.

    Each unit is generated and committed independently, so a failure or
    a cancellation leaves the units already done in place.
    """
    now = now or timezone.now()
    scopes = [scope] if scope is not None else [
        scope_for(f) for f in Facility.objects.filter(is_active=True).order_by('id')
    ]
    jobs = [
        (sc, unit_id)
        for sc in scopes
        for unit_id in Unit.objects.filter(facility_id=sc.facility_id, is_active=True)
        .order_by('code').values_list('pk', flat=True)
    ]
    workers = settings.FORECAST_MAX_WORKERS if max_workers is None else max_workers
    outcome = BatchOutcome()

    if workers <= 1:
        for sc, unit_id in jobs:
            if cancel_event is not None and cancel_event.is_set():
                outcome.skipped.append(unit_id)
                continue
            try:
                run = generate_forecast(sc, unit_id, days_ahead, now=now)
            except CapacityError as exc:
                outcome.failed[unit_id] = exc.kind
                continue
            except DatabaseError:
                logger.exception("forecast for unit %s failed", unit_id)
                outcome.failed[unit_id] = 'DatabaseError'
                continue
            _record(outcome, unit_id, run)
        return outcome

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='forecast') as pool:
        futures = {
            pool.submit(_generate_in_worker, sc, unit_id, days_ahead, now, cancel_event): unit_id
            for sc, unit_id in jobs
        }
        for future in as_completed(futures):
            unit_id = futures[future]
            try:
                run = future.result()
            except CapacityError as exc:
                outcome.failed[unit_id] = exc.kind
                continue
            except DatabaseError:
                logger.exception("forecast for unit %s failed", unit_id)
                outcome.failed[unit_id] = 'DatabaseError'
                continue
            _record(outcome, unit_id, run)
    return outcome


# ---- backtesting ----

def prediction_accuracy(scope, unit_id: int, *, days: int = 30, now: Optional[datetime] = None) -> dict:
    """Error of past forecasts against the census snapshots of their dates."""
    now = now or timezone.now()
    unit = scope.get(Unit, pk=unit_id)
    rows = list(
        CensusSnapshot.objects.filter(
            facility_id=scope.facility_id, unit=unit, variance__isnull=False,
            as_of__gte=now - timedelta(days=days), as_of__lte=now,
        ).order_by('as_of').values_list('available', 'variance')
    )
    result = {
        'unitId': unit.pk,
        'periodDays': days,
        'samples': len(rows),
        'meanError': None,
        'meanAbsoluteError': None,
        'accuracyPercent': None,
        'improving': None,
    }
    if not rows:
        return result
    actual = np.array([a for a, _ in rows], dtype=float)
    errors = np.array([v for _, v in rows], dtype=float)
    absolute = np.abs(errors)
    result['meanError'] = round(float(errors.mean()), 2)
    result['meanAbsoluteError'] = round(float(absolute.mean()), 2)
    per_sample = np.clip(1.0 - absolute / np.maximum(actual, 1.0), 0.0, 1.0)
    result['accuracyPercent'] = round(float(per_sample.mean()) * 100, 1)
    if len(rows) >= 4:
        half = len(rows) // 2
        result['improving'] = bool(absolute[half:].mean() < absolute[:half].mean())
    return result
