"""
Census aggregation.

A snapshot is the state of one unit at an instant ``as_of``, rebuilt
from bed status history and assignment intervals, so a snapshot taken
late still reports the counts of its nominal time.  Snapshots are
unique per ``(unit, as_of)``: asking twice returns the stored row.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

import numpy as np
from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from capacity.exceptions import InvalidRequest
from capacity.models import Assignment, BedStatusHistory, CensusSnapshot, Facility, Forecast, Unit
from capacity.scope import scope_for
from capacity.services import registry
from capacity.services.persistence import consistent_read

logger = logging.getLogger(__name__)

WEEKDAYS = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')


def scheduled_instant(now: Optional[datetime] = None) -> datetime:
    """Most recent ``CENSUS_SNAPSHOT_TIME`` at or before ``now`` (local time)."""
    local = timezone.localtime(now or timezone.now())
    hour, minute = (int(p) for p in settings.CENSUS_SNAPSHOT_TIME.split(':', 1))
    instant = local.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if instant > local:
        instant -= timedelta(days=1)
    return instant


def _bucket(statuses) -> dict:
    counts = {'total_beds': 0, 'occupied': 0, 'available': 0, 'dirty': 0, 'blocked': 0}
    for status in statuses:
        counts['total_beds'] += 1
        if status == registry.OCCUPIED:
            counts['occupied'] += 1
        elif status == registry.AVAILABLE:
            counts['available'] += 1
        elif status == registry.DIRTY:
            counts['dirty'] += 1
        else:
            counts['blocked'] += 1
    return counts


def _movements(unit: Unit, start: datetime, end: datetime) -> dict:
    """Admissions, discharges and transfers in the half-open window ``(start, end]``."""
    opened = Assignment.objects.filter(unit=unit, admitted_at__gt=start, admitted_at__lte=end)
    closed = Assignment.objects.filter(unit=unit, discharged_at__gt=start, discharged_at__lte=end)
    admissions = opened.filter(reason=Assignment.REASON_ADMISSION).count()
    transfers_out = closed.filter(disposition=Assignment.DISPOSITION_TRANSFER).count()
    return {
        'admissions': admissions,
        'transfers_in': opened.count() - admissions,
        'discharges': closed.count() - transfers_out,
        'transfers_out': transfers_out,
    }


def counts_at(scope, unit: Unit, as_of: datetime) -> dict:
    return _bucket(registry.statuses_at(scope, unit.pk, as_of).values())


def snapshot(scope, unit_id: int, as_of: Optional[datetime] = None, *, scheduled: bool = False) -> CensusSnapshot:
    """Record (or return the already recorded) snapshot of a unit at ``as_of``."""
    now = timezone.now()
    as_of = as_of or now
    if as_of > now:
        raise InvalidRequest('census cannot be taken in the future')
    unit = scope.get(Unit, pk=unit_id)
    existing = CensusSnapshot.objects.filter(unit=unit, as_of=as_of).first()
    if existing is not None:
        return existing

    with consistent_read():
        counts = counts_at(scope, unit, as_of)
        prior = (
            CensusSnapshot.objects.filter(unit=unit, as_of__lt=as_of).order_by('-as_of').first()
        )
        start = prior.as_of if prior else as_of - timedelta(days=1)
        counts.update(_movements(unit, start, as_of))

    try:
        with transaction.atomic():
            snap = CensusSnapshot.objects.create(
                facility_id=scope.facility_id, unit=unit, as_of=as_of, scheduled=scheduled, **counts
            )
    except IntegrityError:
        # A concurrent caller recorded the same instant first
        return CensusSnapshot.objects.get(unit=unit, as_of=as_of)
    backfill_variance(snap)
    logger.info("census %s @ %s: occupied=%d available=%d", unit.code, as_of.isoformat(),
                snap.occupied, snap.available)
    return snap


def backfill_variance(snap: CensusSnapshot) -> CensusSnapshot:
    """Compare the snapshot with the forecast that was current for its date.

    Sets the snapshot's variance fields and the ``actual_available`` of
    every forecast, current or superseded, for that unit and date.
    """
    day = timezone.localdate(snap.as_of)
    forecasts = Forecast.objects.filter(unit_id=snap.unit_id, forecast_date=day)
    prediction = forecasts.filter(generated_at__lte=snap.as_of).order_by('-generated_at', '-id').first()
    if prediction is None:
        return snap
    snap.forecast = prediction
    snap.predicted_available = prediction.predicted_available
    snap.variance = snap.available - prediction.predicted_available
    snap.save(update_fields=['forecast', 'predicted_available', 'variance'])
    forecasts.filter(actual_available__isnull=True).update(actual_available=snap.available)
    return snap


def record_scheduled_snapshots(scope=None, as_of: Optional[datetime] = None) -> list[CensusSnapshot]:
    """Snapshot every active unit at the scheduled instant.

    With no scope every active facility is covered.
    """
    as_of = as_of or scheduled_instant()
    if scope is not None:
        scopes = [scope]
    else:
        scopes = [scope_for(f) for f in Facility.objects.filter(is_active=True).order_by('id')]
    taken = []
    for sc in scopes:
        for unit in Unit.objects.filter(facility_id=sc.facility_id, is_active=True).order_by('code'):
            taken.append(snapshot(sc, unit.pk, as_of, scheduled=True))
    return taken


def latest_snapshot(scope, unit_id: int, before: Optional[datetime] = None) -> Optional[CensusSnapshot]:
    qs = CensusSnapshot.objects.filter(facility_id=scope.facility_id, unit_id=unit_id)
    if before is not None:
        qs = qs.filter(as_of__lte=before)
    return qs.order_by('-as_of').first()


def unit_census(scope, unit_id: int, at: Optional[datetime] = None) -> dict:
    """Census of a unit now, or at ``at`` when given.  Never writes."""
    unit = scope.get(Unit, pk=unit_id)
    with consistent_read():
        if at is None:
            by_status = registry.status_counts(scope, unit.pk)
            counts = {
                'total_beds': sum(by_status.values()),
                'occupied': by_status[registry.OCCUPIED],
                'available': by_status[registry.AVAILABLE],
                'dirty': by_status[registry.DIRTY],
                'blocked': by_status[registry.BLOCKED] + by_status[registry.MAINTENANCE],
            }
        else:
            counts = counts_at(scope, unit, at)
    occupied, total = counts['occupied'], counts['total_beds']
    per_nurse = unit.patients_per_nurse()
    return {
        'unitId': unit.pk,
        'unitCode': unit.code,
        'unitName': unit.name,
        'asOf': (at or timezone.now()).isoformat(),
        'totalBeds': total,
        'occupied': occupied,
        'available': counts['available'],
        'dirty': counts['dirty'],
        'blocked': counts['blocked'],
        'occupancyRate': round(occupied / total * 100, 1) if total else 0.0,
        'targetCensus': unit.target_census,
        'maxCensus': unit.max_census,
        'overTarget': bool(unit.target_census) and occupied > unit.target_census,
        'headroom': max(0, unit.max_census - occupied) if unit.max_census else None,
        'nursesRequired': -(-occupied // per_nurse) if per_nurse else None,
    }


def format_snapshot(snap: CensusSnapshot) -> dict:
    return {
        'id': snap.pk,
        'unitId': snap.unit_id,
        'asOf': snap.as_of.isoformat(),
        'scheduled': snap.scheduled,
        **snap.counts(),
        'predictedAvailable': snap.predicted_available,
        'variance': snap.variance,
    }


def turnaround_analytics(scope, unit_id: int, *, days: int = 7, now: Optional[datetime] = None) -> dict:
    """Minutes beds spent dirty before returning to service over the last ``days``."""
    now = now or timezone.now()
    unit = scope.get(Unit, pk=unit_id)
    rows = list(
        BedStatusHistory.objects.filter(
            facility_id=scope.facility_id, bed__unit=unit,
            from_status=registry.DIRTY, to_status=registry.AVAILABLE,
            changed_at__gte=now - timedelta(days=days), changed_at__lte=now,
            duration_minutes__isnull=False,
        ).values_list('changed_at', 'duration_minutes')
    )
    result = {
        'unitId': unit.pk,
        'periodDays': days,
        'samples': len(rows),
        'averageMinutes': None,
        'medianMinutes': None,
        'byWeekday': {},
        'byHour': {},
    }
    if not rows:
        return result
    minutes = np.array([m for _, m in rows], dtype=float)
    result['averageMinutes'] = round(float(minutes.mean()), 1)
    result['medianMinutes'] = round(float(np.median(minutes)), 1)
    by_weekday: dict[str, list[int]] = {}
    by_hour: dict[int, list[int]] = {}
    for changed_at, m in rows:
        local = timezone.localtime(changed_at)
        by_weekday.setdefault(WEEKDAYS[local.weekday()], []).append(m)
        by_hour.setdefault(local.hour, []).append(m)
    result['byWeekday'] = {k: round(float(np.mean(v)), 1) for k, v in by_weekday.items()}
    result['byHour'] = {h: round(float(np.mean(v)), 1) for h, v in sorted(by_hour.items())}
    return result
