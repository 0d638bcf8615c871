"""
Length-of-stay prediction.

The expected total stay of an assignment is the benchmark mean for its
(diagnosis class, unit) adjusted for the patient::

    expected = mean * age_factor[band] * acuity_factor[acuity]
               * (1 + comorbidity_factor * comorbidity_count)

and the remaining stay is ``expected - elapsed``, floored at zero.

When no benchmark matches the estimate falls back to the unit's median
historical stay, then to the unit's configured default, then to
``settings.LOS_DEFAULT_DAYS``.  Estimation never fails for lack of
reference data; the ``source`` of the estimate says which rung was used.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Optional

import numpy as np
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from capacity.models import Assignment, LOSBenchmark, Unit

logger = logging.getLogger(__name__)

SOURCE_BENCHMARK = 'benchmark'
SOURCE_UNIT_HISTORY = 'unit_history'
SOURCE_UNIT_DEFAULT = 'unit_default'
SOURCE_GLOBAL_DEFAULT = 'global_default'
# Estimates from these sources mean the LOS input is effectively missing
FALLBACK_SOURCES = (SOURCE_UNIT_DEFAULT, SOURCE_GLOBAL_DEFAULT)

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class LOSEstimate:
    assignment_id: int
    expected_total_days: float
    elapsed_days: float
    remaining_days: float
    low_days: float
    high_days: float
    confidence: float
    source: str
    benchmark_id: Optional[int] = None

    @property
    def remaining(self) -> timedelta:
        return timedelta(days=self.remaining_days)

    @property
    def is_fallback(self) -> bool:
        return self.source in FALLBACK_SOURCES

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            'assignmentId': data['assignment_id'],
            'expectedTotalDays': round(data['expected_total_days'], 2),
            'elapsedDays': round(data['elapsed_days'], 2),
            'remainingDays': round(data['remaining_days'], 2),
            'lowDays': round(data['low_days'], 2),
            'highDays': round(data['high_days'], 2),
            'confidence': round(data['confidence'], 2),
            'source': data['source'],
            'benchmarkId': data['benchmark_id'],
        }


def age_band(age: Optional[int], bands=None) -> Optional[str]:
    """Band label containing ``age``, e.g. ``"65-79"``; ``None`` when unknown."""
    if age is None:
        return None
    for band in bands or settings.LOS_AGE_BANDS:
        if band.endswith('+'):
            if age >= int(band[:-1]):
                return band
            continue
        lo, _, hi = band.partition('-')
        if int(lo) <= age <= int(hi):
            return band
    return None


def find_benchmark(scope, diagnosis_class: str, unit: Unit) -> Optional[LOSBenchmark]:
    """Most specific active benchmark: unit before any-unit, facility before global."""
    if not diagnosis_class:
        return None
    candidates = LOSBenchmark.objects.filter(
        Q(facility_id=scope.facility_id) | Q(facility__isnull=True),
        Q(unit=unit) | Q(unit__isnull=True),
        diagnosis_class=diagnosis_class,
        is_active=True,
    )
    ranked = sorted(
        candidates,
        key=lambda b: (b.unit_id is None, b.facility_id is None, -b.updated_at.timestamp()),
    )
    return ranked[0] if ranked else None


def adjustment_factor(benchmark: LOSBenchmark, *, age: Optional[int], acuity: Optional[int],
                      comorbidity_count: int) -> float:
    factor = 1.0
    band = age_band(age)
    if band and band in (benchmark.age_factors or {}):
        factor *= float(benchmark.age_factors[band])
    if acuity is not None and str(acuity) in (benchmark.acuity_factors or {}):
        factor *= float(benchmark.acuity_factors[str(acuity)])
    factor *= 1.0 + float(benchmark.comorbidity_factor or 0.0) * (comorbidity_count or 0)
    return factor


def unit_history_median(unit: Unit, now: datetime) -> Optional[float]:
    """Median closed stay (days) on the unit over ``LOS_HISTORY_DAYS``."""
    since = now - timedelta(days=settings.LOS_HISTORY_DAYS)
    stays = [
        (discharged - admitted).total_seconds() / SECONDS_PER_DAY
        for admitted, discharged in Assignment.objects.filter(
            unit=unit, discharged_at__isnull=False, discharged_at__gte=since, discharged_at__lte=now,
        ).values_list('admitted_at', 'discharged_at')
    ]
    if len(stays) < settings.LOS_MIN_HISTORY_SAMPLES:
        return None
    return float(np.median(stays))


def fallback_los(unit: Unit, now: datetime) -> tuple[float, str]:
    median = unit_history_median(unit, now)
    if median is not None:
        return median, SOURCE_UNIT_HISTORY
    if unit.default_los_days:
        return float(unit.default_los_days), SOURCE_UNIT_DEFAULT
    return float(settings.LOS_DEFAULT_DAYS), SOURCE_GLOBAL_DEFAULT


def estimate(scope, assignment: Assignment, *, now: Optional[datetime] = None) -> LOSEstimate:
    now = now or timezone.now()
    end = assignment.discharged_at or now
    elapsed = max(0.0, (end - assignment.admitted_at).total_seconds() / SECONDS_PER_DAY)
    benchmark = find_benchmark(scope, assignment.diagnosis_class, assignment.unit)

    if benchmark is not None:
        factor = adjustment_factor(
            benchmark, age=assignment.age, acuity=assignment.acuity,
            comorbidity_count=assignment.comorbidity_count,
        )
        expected = float(benchmark.mean_los_days) * factor
        if benchmark.std_dev_days:
            spread = float(benchmark.std_dev_days) * factor
            cv = spread / expected if expected else 1.0
            confidence = min(0.95, max(0.3, 1.0 - cv / 2))
        else:
            spread = expected * 0.25
            confidence = 0.6
        source, benchmark_id = SOURCE_BENCHMARK, benchmark.pk
    else:
        expected, source = fallback_los(assignment.unit, now)
        spread = expected * (0.35 if source == SOURCE_UNIT_HISTORY else 0.5)
        confidence = 0.45 if source == SOURCE_UNIT_HISTORY else 0.25
        benchmark_id = None
        logger.debug("no LOS benchmark for %r on unit %s, using %s",
                     assignment.diagnosis_class, assignment.unit_id, source)

    if assignment.discharged_at is not None:
        remaining = low = high = 0.0
    else:
        remaining = max(0.0, expected - elapsed)
        low = max(0.0, expected - spread - elapsed)
        high = max(0.0, expected + spread - elapsed)
    return LOSEstimate(
        assignment_id=assignment.pk,
        expected_total_days=expected,
        elapsed_days=elapsed,
        remaining_days=remaining,
        low_days=low,
        high_days=high,
        confidence=confidence,
        source=source,
        benchmark_id=benchmark_id,
    )


def estimate_remaining_los(scope, assignment_id: int, *, now: Optional[datetime] = None) -> LOSEstimate:
    assignment = scope.get(Assignment, pk=assignment_id)
    return estimate(scope, assignment, now=now)


def apply_expected_discharge(scope, assignment: Assignment, *, now: Optional[datetime] = None) -> LOSEstimate:
    """Estimate and store ``expected_discharge_at`` on an open assignment."""
    result = estimate(scope, assignment, now=now)
    if assignment.is_open:
        assignment.expected_discharge_at = assignment.admitted_at + timedelta(days=result.expected_total_days)
        assignment.save(update_fields=['expected_discharge_at', 'updated_at'])
    return result


def refresh_expected_discharges(scope, unit_id: int, *, now: Optional[datetime] = None) -> list[LOSEstimate]:
    unit = scope.get(Unit, pk=unit_id)
    return [
        apply_expected_discharge(scope, a, now=now)
        for a in Assignment.objects.filter(unit=unit, discharged_at__isnull=True).select_related('unit')
    ]


def expected_discharge_date(result: LOSEstimate, now: datetime) -> date:
    return timezone.localdate(now + result.remaining)


def discharge_likelihood(result: LOSEstimate, on_date: date, now: datetime) -> str:
    """``high`` when the estimate lands on or before ``on_date``, ``medium``
    when it lands the day after, else ``low``."""
    expected = expected_discharge_date(result, now)
    if expected <= on_date:
        return 'high'
    if expected == on_date + timedelta(days=1):
        return 'medium'
    return 'low'


def predicted_discharges(scope, unit_id: int, on_date: Optional[date] = None, *,
                         now: Optional[datetime] = None) -> list[dict]:
    """Open assignments of the unit ranked by how likely they leave by ``on_date``."""
    now = now or timezone.now()
    on_date = on_date or timezone.localdate(now)
    unit = scope.get(Unit, pk=unit_id)
    rank = {'high': 0, 'medium': 1, 'low': 2}
    out = []
    for a in Assignment.objects.filter(unit=unit, discharged_at__isnull=True).select_related('bed', 'unit'):
        result = estimate(scope, a, now=now)
        out.append({
            'assignmentId': a.pk,
            'patientRef': a.patient_ref,
            'bed': a.bed.label,
            'expectedDischargeDate': expected_discharge_date(result, now).isoformat(),
            'remainingDays': round(result.remaining_days, 2),
            'likelihood': discharge_likelihood(result, on_date, now),
        })
    out.sort(key=lambda item: (rank[item['likelihood']], item['remainingDays']))
    return out
