"""Scheduled arrivals: known future demand fed to the forecaster."""
from __future__ import annotations

import logging
from datetime import date
from typing import Iterable, Optional

from django.utils import timezone

from capacity.exceptions import InvalidRequest
from capacity.models import Facility, ScheduledArrival, Unit
from capacity.services.registry import normalize_capabilities

logger = logging.getLogger(__name__)


def schedule_arrival(scope, unit_id: int, expected_date: date, *, patient_ref: str = '',
                     required_capabilities: Iterable[str] = (), arrival_type: str = '',
                     external_reference: str = '', confirmed: bool = False) -> ScheduledArrival:
    unit = scope.get(Unit, pk=unit_id)
    if not unit.is_active:
        raise InvalidRequest('unit is inactive', unit=unit.code)
    return ScheduledArrival.objects.create(
        facility_id=scope.facility_id,
        unit=unit,
        patient_ref=patient_ref,
        expected_date=expected_date,
        required_capabilities=normalize_capabilities(required_capabilities),
        arrival_type=arrival_type,
        external_reference=external_reference,
        status=ScheduledArrival.STATUS_CONFIRMED if confirmed else ScheduledArrival.STATUS_SCHEDULED,
    )


def cancel_arrival(scope, arrival_id: int) -> ScheduledArrival:
    arrival = scope.get(ScheduledArrival, pk=arrival_id)
    if arrival.status not in ScheduledArrival.PENDING:
        raise InvalidRequest(f"arrival is already {arrival.status}", pk=arrival_id)
    arrival.status = ScheduledArrival.STATUS_CANCELLED
    arrival.save(update_fields=['status', 'updated_at'])
    return arrival


def pending_arrivals(scope, unit_id: int, *, start: date, end: date):
    """Unfulfilled arrivals expected in ``[start, end]``."""
    return ScheduledArrival.objects.filter(
        facility_id=scope.facility_id, unit_id=unit_id, status__in=ScheduledArrival.PENDING,
        expected_date__gte=start, expected_date__lte=end,
    )


def expire_unfulfilled(scope=None, today: Optional[date] = None) -> int:
    """Mark pending arrivals whose date has passed as no-shows.  Returns the count."""
    today = today or timezone.localdate()
    qs = ScheduledArrival.objects.filter(status__in=ScheduledArrival.PENDING, expected_date__lt=today)
    if scope is not None:
        qs = qs.filter(facility_id=scope.facility_id)
    else:
        qs = qs.filter(facility__in=Facility.objects.filter(is_active=True))
    expired = qs.update(status=ScheduledArrival.STATUS_NO_SHOW, updated_at=timezone.now())
    if expired:
        logger.info("%d scheduled arrivals expired as no-show", expired)
    return expired


def format_arrival(arrival: ScheduledArrival) -> dict:
    return {
        'id': arrival.pk,
        'unitId': arrival.unit_id,
        'patientRef': arrival.patient_ref or None,
        'expectedDate': arrival.expected_date.isoformat(),
        'requiredCapabilities': arrival.required_capabilities,
        'arrivalType': arrival.arrival_type,
        'status': arrival.status,
        'assignmentId': arrival.assignment_id,
    }
