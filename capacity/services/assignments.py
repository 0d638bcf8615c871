"""
Assignment engine.

Binds patients to beds and releases them.  A bed is claimed with a
conditional update (``status = 'available'`` at write time); when a
concurrent caller wins the claim the engine reselects candidates up to
``ASSIGNMENT_MAX_CLAIM_RETRIES`` times before reporting ``NoBedAvailable``.
Every operation runs in one transaction together with its bed
transition, its history row and its outbox events.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from capacity.exceptions import (
    AssignmentConflict, InvalidRequest, InvalidTransition, NoBedAvailable, NotFound,
    PatientAlreadyAssigned,
)
from capacity.models import Assignment, Bed, OutboundEvent, ScheduledArrival, Unit
from capacity.services import events, los, registry

logger = logging.getLogger(__name__)

REASONS = {r for r, _ in Assignment.REASON_CHOICES}
DISPOSITIONS = {d for d, _ in Assignment.DISPOSITION_CHOICES}


def open_assignment_for(scope, patient_ref: str, *, lock: bool = False) -> Optional[Assignment]:
    qs = Assignment.objects.filter(
        facility_id=scope.facility_id, patient_ref=patient_ref, discharged_at__isnull=True
    )
    if lock:
        qs = qs.select_for_update()
    return qs.first()


def _claim(scope, bed: Bed, at: datetime) -> Bed:
    """Move ``bed`` from available to occupied iff nobody else did first."""
    claimed_at = max(at, bed.status_changed_at)
    claimed = Bed.objects.filter(
        pk=bed.pk, facility_id=scope.facility_id, status=Bed.STATUS_AVAILABLE, is_active=True,
    ).update(status=Bed.STATUS_OCCUPIED, status_changed_at=claimed_at, status_notes='')
    if claimed != 1:
        raise AssignmentConflict('bed was claimed concurrently', bed=bed.pk)
    return bed


def _fulfil_arrival(scope, assignment: Assignment, arrival_id: Optional[int]) -> Optional[ScheduledArrival]:
    qs = ScheduledArrival.objects.filter(
        facility_id=scope.facility_id, unit_id=assignment.unit_id, status__in=ScheduledArrival.PENDING,
    )
    if arrival_id is not None:
        arrival = qs.filter(pk=arrival_id).first()
        if arrival is None:
            raise NotFound('scheduled arrival not pending on this unit', pk=arrival_id)
    else:
        arrival = (
            qs.filter(patient_ref=assignment.patient_ref,
                      expected_date__lte=timezone.localdate(assignment.admitted_at))
            .order_by('expected_date', 'id').first()
        )
        if arrival is None:
            return None
    arrival.status = ScheduledArrival.STATUS_ARRIVED
    arrival.assignment = assignment
    arrival.save(update_fields=['status', 'assignment', 'updated_at'])
    return arrival


def assign_bed(scope, patient_ref: str, unit_id: int, required_capabilities: Iterable[str] = (),
               acuity: int = 1, reason: str = Assignment.REASON_ADMISSION, *,
               at: Optional[datetime] = None, diagnosis_class: str = '', age: Optional[int] = None,
               comorbidity_count: int = 0, scheduled_arrival_id: Optional[int] = None,
               adt_event_id: str = '', transferred_from: Optional[Assignment] = None) -> Assignment:
    """Claim the longest-idle matching bed of the unit for ``patient_ref``.

    Raises ``PatientAlreadyAssigned`` when the patient already holds a
    bed in the facility and ``NoBedAvailable`` when no bed qualifies,
    the unit is at its maximum census or every claim attempt lost a race.
    """
    at = at or timezone.now()
    if not patient_ref:
        raise InvalidRequest('patient reference is required')
    if reason not in REASONS:
        raise InvalidRequest(f"unknown assignment reason {reason}")
    with transaction.atomic():
        if open_assignment_for(scope, patient_ref) is not None:
            raise PatientAlreadyAssigned(f"patient {patient_ref} already holds a bed")
        unit = scope.get(Unit, pk=unit_id)
        if not unit.is_active:
            raise NoBedAvailable(f"unit {unit.code} is inactive")
        if not unit.accepts(acuity):
            raise NoBedAvailable(f"unit {unit.code} does not accept acuity {acuity}")
        if unit.max_census:
            occupied = Assignment.objects.filter(unit=unit, discharged_at__isnull=True).count()
            if occupied >= unit.max_census:
                raise NoBedAvailable(f"unit {unit.code} is at max census {unit.max_census}")

        attempts = settings.ASSIGNMENT_MAX_CLAIM_RETRIES
        bed = None
        for attempt in range(1, attempts + 1):
            candidates = registry.find_candidates(scope, unit.pk, required_capabilities, acuity)
            if not candidates:
                raise NoBedAvailable(f"no matching bed in {unit.code}", unit=unit.pk)
            try:
                bed = _claim(scope, candidates[0], at)
                break
            except AssignmentConflict:
                logger.info("claim of bed %s lost on attempt %d/%d", candidates[0].pk, attempt, attempts)
        if bed is None:
            raise NoBedAvailable(f"every candidate in {unit.code} was claimed concurrently", unit=unit.pk)
        # a backdated admit starts no earlier than the bed's last transition
        admitted_at = max(at, bed.status_changed_at)

        try:
            with transaction.atomic():
                assignment = Assignment.objects.create(
                    facility_id=scope.facility_id,
                    bed=bed,
                    unit=unit,
                    patient_ref=patient_ref,
                    reason=reason,
                    acuity=acuity,
                    diagnosis_class=diagnosis_class or '',
                    age=age,
                    comorbidity_count=comorbidity_count or 0,
                    admitted_at=admitted_at,
                    transferred_from=transferred_from,
                    adt_event_id=adt_event_id or '',
                    open_patient_key=patient_ref,
                )
        except IntegrityError:
            raise PatientAlreadyAssigned(f"patient {patient_ref} already holds a bed")

        # ``bed`` still carries its pre-claim status, which makes this the
        # recorded available -> occupied transition
        registry.transition_bed(
            scope, bed, Bed.STATUS_OCCUPIED, at=admitted_at, reason=reason, assignment=assignment,
        )
        estimate = los.apply_expected_discharge(scope, assignment, now=admitted_at)
        _fulfil_arrival(scope, assignment, scheduled_arrival_id)
        events.record_event(
            scope, OutboundEvent.TYPE_ASSIGNMENT_OPENED,
            events.ADT_ADMIT if reason == Assignment.REASON_ADMISSION else events.ADT_TRANSFER,
            format_assignment(assignment), at=admitted_at,
        )
    logger.info("patient %s assigned to bed %s in %s (LOS source %s)",
                patient_ref, bed.label, unit.code, estimate.source)
    return assignment


def discharge_or_transfer(scope, assignment_id: int, disposition: str, *,
                          at: Optional[datetime] = None, rebook_authorized: bool = False,
                          reason: str = '') -> Assignment:
    """Close an open assignment and release its bed.

    The bed goes to ``dirty`` unless ``rebook_authorized`` is set, in
    which case it returns straight to ``available``.
    """
    at = at or timezone.now()
    if disposition not in DISPOSITIONS:
        raise InvalidRequest(f"unknown disposition {disposition}")
    with transaction.atomic():
        assignment = (
            Assignment.objects.select_for_update()
            .filter(pk=assignment_id, facility_id=scope.facility_id).first()
        )
        if assignment is None:
            raise NotFound('Assignment not found', pk=assignment_id)
        if not assignment.is_open:
            raise InvalidTransition('assignment is already closed', pk=assignment_id)
        if at < assignment.admitted_at:
            raise InvalidTransition('discharge precedes admission', pk=assignment_id)
        bed = Bed.objects.select_for_update().get(pk=assignment.bed_id)
        assignment.discharged_at = at
        assignment.disposition = disposition
        assignment.open_patient_key = None
        assignment.save(update_fields=['discharged_at', 'disposition', 'open_patient_key', 'updated_at'])
        target = Bed.STATUS_AVAILABLE if rebook_authorized else Bed.STATUS_DIRTY
        registry.transition_bed(
            scope, bed, target, at=at, reason=reason or f"released: {disposition}", assignment=assignment,
        )
        events.record_event(
            scope, OutboundEvent.TYPE_ASSIGNMENT_CLOSED,
            events.ADT_TRANSFER if disposition == Assignment.DISPOSITION_TRANSFER else events.ADT_DISCHARGE,
            format_assignment(assignment), at=at,
        )
    logger.info("assignment %s closed (%s), bed %s -> %s", assignment.pk, disposition, bed.pk, target)
    return assignment


def transfer_patient(scope, patient_ref: str, to_unit_id: int, required_capabilities: Iterable[str] = (),
                     acuity: Optional[int] = None, *, at: Optional[datetime] = None,
                     reason: str = Assignment.REASON_TRANSFER_IN, adt_event_id: str = '') -> Assignment:
    """Close the patient's current assignment and open one on ``to_unit_id``.

    Both happen in one transaction: if no bed is free on the target unit
    the patient keeps the current bed.
    """
    at = at or timezone.now()
    with transaction.atomic():
        current = open_assignment_for(scope, patient_ref, lock=True)
        if current is None:
            raise NotFound(f"patient {patient_ref} has no open assignment")
        discharge_or_transfer(scope, current.pk, Assignment.DISPOSITION_TRANSFER, at=at,
                              reason=f"transfer to unit {to_unit_id}")
        return assign_bed(
            scope, patient_ref, to_unit_id, required_capabilities,
            current.acuity if acuity is None else acuity, reason,
            at=at, diagnosis_class=current.diagnosis_class, age=current.age,
            comorbidity_count=current.comorbidity_count, adt_event_id=adt_event_id,
            transferred_from=current,
        )


def format_assignment(a: Assignment) -> dict:
    return {
        'id': a.pk,
        'patientRef': a.patient_ref,
        'bedId': a.bed_id,
        'unitId': a.unit_id,
        'reason': a.reason,
        'acuity': a.acuity,
        'admittedAt': a.admitted_at.isoformat(),
        'expectedDischargeAt': a.expected_discharge_at.isoformat() if a.expected_discharge_at else None,
        'dischargedAt': a.discharged_at.isoformat() if a.discharged_at else None,
        'disposition': a.disposition or None,
        'transferredFromId': a.transferred_from_id,
    }
