"""
Bed registry: units, beds and the bed status state machine.

Registration and deactivation are administrative.  Status changes go
through :func:`set_status` for operational staff (housekeeping, facilities)
and through :func:`transition_bed` for the assignment engine, which is
the only path allowed to move a bed into or out of ``occupied``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

import bleach
from django.db import IntegrityError, transaction
from django.db.models import Count, OuterRef, Subquery
from django.utils import timezone

from capacity.exceptions import InvalidRequest, InvalidTransition, NotFound
from capacity.models import Assignment, Bed, BedStatusHistory, OutboundEvent, Unit
from capacity.services import events

logger = logging.getLogger(__name__)

AVAILABLE = Bed.STATUS_AVAILABLE
OCCUPIED = Bed.STATUS_OCCUPIED
DIRTY = Bed.STATUS_DIRTY
BLOCKED = Bed.STATUS_BLOCKED
MAINTENANCE = Bed.STATUS_MAINTENANCE

ALLOWED_TRANSITIONS = {
    AVAILABLE: {OCCUPIED, BLOCKED, MAINTENANCE},
    OCCUPIED: {DIRTY, AVAILABLE},
    DIRTY: {AVAILABLE, BLOCKED, MAINTENANCE},
    BLOCKED: {AVAILABLE, MAINTENANCE},
    MAINTENANCE: {AVAILABLE, BLOCKED},
}

# Occupancy is owned by assignments
ENGINE_ONLY = {OCCUPIED}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def normalize_capabilities(tags: Optional[Iterable[str]]) -> list[str]:
    return sorted({str(t).strip().lower() for t in (tags or ()) if str(t).strip()})


def _clean(text: Optional[str], limit: int = 255) -> str:
    return bleach.clean(text or '', tags=[], strip=True).strip()[:limit]


def _validate_acuity(levels) -> list[int]:
    try:
        parsed = sorted({int(a) for a in levels or ()})
    except (TypeError, ValueError):
        raise InvalidRequest('accepted acuity levels must be integers')
    if any(a < 1 for a in parsed):
        raise InvalidRequest('acuity levels start at 1')
    return parsed


# ---- units ----

def register_unit(scope, *, code: str, name: str, accepted_acuity, target_census: int,
                  max_census: int, unit_type: str = '', nurse_patient_ratio: str = '',
                  default_los_days: Optional[float] = None) -> Unit:
    if target_census > max_census:
        raise InvalidRequest('target census exceeds max census', code=code)
    try:
        with transaction.atomic():
            unit = Unit.objects.create(
                facility_id=scope.facility_id,
                code=code,
                name=name,
                unit_type=unit_type,
                accepted_acuity=_validate_acuity(accepted_acuity),
                target_census=target_census,
                max_census=max_census,
                nurse_patient_ratio=nurse_patient_ratio,
                default_los_days=default_los_days,
            )
    except IntegrityError:
        raise InvalidRequest(f"unit code {code} already exists", code=code)
    logger.info("unit %s registered in %s", unit.code, scope.facility_id)
    return unit


UNIT_FIELDS = ('name', 'unit_type', 'accepted_acuity', 'target_census', 'max_census',
               'nurse_patient_ratio', 'default_los_days')


def configure_unit(scope, unit_id: int, **changes) -> Unit:
    unknown = set(changes) - set(UNIT_FIELDS)
    if unknown:
        raise InvalidRequest(f"unknown unit fields: {', '.join(sorted(unknown))}")
    with transaction.atomic():
        unit = Unit.objects.select_for_update().filter(pk=unit_id, facility_id=scope.facility_id).first()
        if unit is None:
            raise NotFound("Unit not found", pk=unit_id)
        if 'accepted_acuity' in changes:
            changes['accepted_acuity'] = _validate_acuity(changes['accepted_acuity'])
        for field, value in changes.items():
            setattr(unit, field, value)
        if unit.target_census > unit.max_census:
            raise InvalidRequest('target census exceeds max census', unit=unit.code)
        unit.save()
    return unit


def deactivate_unit(scope, unit_id: int) -> Unit:
    unit = scope.get(Unit, pk=unit_id)
    if Assignment.objects.filter(unit=unit, discharged_at__isnull=True).exists():
        raise InvalidRequest('unit still has open assignments', unit=unit.code)
    unit.is_active = False
    unit.save(update_fields=['is_active', 'updated_at'])
    return unit


# ---- beds ----

def register_bed(scope, unit_id: int, *, room: str, position: str = 'A',
                 capabilities: Iterable[str] = (), status: str = AVAILABLE,
                 at: Optional[datetime] = None) -> Bed:
    """Create a bed in ``unit_id``.  The initial status is recorded in history."""
    at = at or timezone.now()
    if status in ENGINE_ONLY or status not in ALLOWED_TRANSITIONS:
        raise InvalidRequest(f"beds cannot be registered as {status}")
    unit = scope.get(Unit, pk=unit_id)
    if not unit.is_active:
        raise InvalidRequest('unit is inactive', unit=unit.code)
    try:
        with transaction.atomic():
            bed = Bed.objects.create(
                facility_id=scope.facility_id,
                unit=unit,
                room=room,
                position=position,
                capabilities=normalize_capabilities(capabilities),
                status=status,
                status_changed_at=at,
            )
            BedStatusHistory.objects.create(
                facility_id=scope.facility_id, bed=bed, from_status='', to_status=status,
                changed_at=at, reason='registered',
            )
    except IntegrityError:
        raise InvalidRequest(f"bed {room}-{position} already exists in {unit.code}")
    return bed


def deactivate_bed(scope, bed_id: int) -> Bed:
    with transaction.atomic():
        bed = _locked_bed(scope, bed_id)
        if bed.status == OCCUPIED:
            raise InvalidTransition('occupied beds cannot be deactivated', bed=bed.label)
        bed.is_active = False
        bed.save(update_fields=['is_active'])
    return bed


def _locked_bed(scope, bed_id: int) -> Bed:
    bed = Bed.objects.select_for_update().filter(pk=bed_id, facility_id=scope.facility_id).first()
    if bed is None:
        raise NotFound('Bed not found', pk=bed_id)
    return bed


def transition_bed(scope, bed: Bed, new_status: str, *, at: Optional[datetime] = None,
                   reason: str = '', assignment: Optional[Assignment] = None) -> Bed:
    """Apply a validated transition to a locked bed and record it.

    Callers must hold the row lock (or have claimed the bed with a
    conditional update) inside an atomic block.
    """
    at = at or timezone.now()
    if not can_transition(bed.status, new_status):
        raise InvalidTransition(f"{bed.status} -> {new_status} not allowed", bed=bed.label)
    previous, since = bed.status, bed.status_changed_at
    # History must stay ordered per bed for point-in-time reconstruction
    if since and at < since:
        at = since
    minutes = int((at - since).total_seconds() // 60) if since else None
    bed.status = new_status
    bed.status_changed_at = at
    bed.status_notes = _clean(reason)
    bed.save(update_fields=['status', 'status_changed_at', 'status_notes'])
    BedStatusHistory.objects.create(
        facility_id=scope.facility_id, bed=bed, from_status=previous, to_status=new_status,
        changed_at=at, reason=bed.status_notes, assignment=assignment, duration_minutes=minutes,
    )
    events.record_event(scope, OutboundEvent.TYPE_BED_STATUS, events.ADT_BED_STATUS, {
        'bedId': bed.pk,
        'bed': bed.label,
        'unitId': bed.unit_id,
        'from': previous,
        'to': new_status,
        'reason': bed.status_notes,
        'assignmentId': assignment.pk if assignment else None,
        'changedAt': at.isoformat(),
    }, at=at)
    logger.info("bed %s %s -> %s", bed.pk, previous, new_status)
    return bed


def set_status(scope, bed_id: int, new_status: str, *, reason: str = '',
               at: Optional[datetime] = None) -> Bed:
    """Operational status change, e.g. housekeeping marking a bed clean.

    ``occupied`` is never a valid source or target here; occupancy
    changes only through assignments.
    """
    if new_status not in ALLOWED_TRANSITIONS:
        raise InvalidRequest(f"unknown bed status {new_status}")
    with transaction.atomic():
        bed = _locked_bed(scope, bed_id)
        if new_status in ENGINE_ONLY or bed.status in ENGINE_ONLY:
            raise InvalidTransition(
                f"{bed.status} -> {new_status} is managed by assignments", bed=bed.label
            )
        if not bed.is_active:
            raise InvalidTransition('bed is inactive', bed=bed.label)
        return transition_bed(scope, bed, new_status, at=at, reason=reason)


# ---- queries ----

def find_candidates(scope, unit_id: int, required_capabilities: Iterable[str] = (),
                    acuity: Optional[int] = None, *, limit: Optional[int] = None) -> list[Bed]:
    """Available beds in the unit that carry every required capability.

    Longest idle first, then by room/position so the order is stable.
    Read-only.  An inactive unit or one that does not accept ``acuity``
    yields no candidates.
    """
    unit = scope.get(Unit, pk=unit_id)
    if not unit.is_active:
        return []
    if acuity is not None and not unit.accepts(acuity):
        return []
    required = normalize_capabilities(required_capabilities)
    beds = (
        Bed.objects.filter(facility_id=scope.facility_id, unit=unit, is_active=True, status=AVAILABLE)
        .order_by('status_changed_at', 'room', 'position', 'id')
    )
    # JSON containment is not portable across backends
    matched = [b for b in beds if b.has_capabilities(required)]
    return matched[:limit] if limit else matched


def status_counts(scope, unit_id: int) -> dict:
    """Current number of active beds per status."""
    rows = (
        Bed.objects.filter(facility_id=scope.facility_id, unit_id=unit_id, is_active=True)
        .values('status').annotate(n=Count('id'))
    )
    counts = {status: 0 for status in ALLOWED_TRANSITIONS}
    for row in rows:
        counts[row['status']] = row['n']
    return counts


def statuses_at(scope, unit_id: int, at: datetime) -> dict[int, str]:
    """Status of every active bed of the unit at ``at``, rebuilt from history.

    Beds registered after ``at`` are absent from the result.
    """
    latest = (
        BedStatusHistory.objects.filter(bed=OuterRef('pk'), changed_at__lte=at)
        .order_by('-changed_at', '-id').values('to_status')[:1]
    )
    rows = (
        Bed.objects.filter(facility_id=scope.facility_id, unit_id=unit_id, is_active=True)
        .annotate(status_then=Subquery(latest))
        .exclude(status_then=None)
        .values_list('id', 'status_then')
    )
    return dict(rows)


def format_bed(bed: Bed) -> dict:
    return {
        'id': bed.pk,
        'unitId': bed.unit_id,
        'room': bed.room,
        'position': bed.position,
        'label': bed.label,
        'capabilities': bed.capabilities,
        'status': bed.status,
        'statusChangedAt': bed.status_changed_at.isoformat() if bed.status_changed_at else None,
        'notes': bed.status_notes,
    }


def bed_board(scope, unit_id: int, *, now: Optional[datetime] = None) -> list[dict]:
    """Every active bed of the unit with its occupant, for the unit's bed board."""
    now = now or timezone.now()
    unit = scope.get(Unit, pk=unit_id)
    occupants = {
        a.bed_id: a
        for a in Assignment.objects.filter(unit=unit, discharged_at__isnull=True)
    }
    board = []
    for bed in Bed.objects.filter(facility_id=scope.facility_id, unit=unit, is_active=True).order_by('room', 'position'):
        item = format_bed(bed)
        item['minutesInStatus'] = int((now - bed.status_changed_at).total_seconds() // 60)
        occupant = occupants.get(bed.pk)
        item['occupant'] = None if occupant is None else {
            'assignmentId': occupant.pk,
            'patientRef': occupant.patient_ref,
            'acuity': occupant.acuity,
            'admittedAt': occupant.admitted_at.isoformat(),
            'expectedDischargeAt': (
                occupant.expected_discharge_at.isoformat() if occupant.expected_discharge_at else None
            ),
        }
        board.append(item)
    return board
