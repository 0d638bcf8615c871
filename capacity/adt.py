"""
ADT adapter.

Translates inbound admit/transfer/discharge messages into engine calls
after reconciling them with the engine's own state.  The engine is the
authority: a message that contradicts it is either recognised as a
duplicate and answered with the existing state, or rejected with
``AdtConflict``.  Messages carrying a ``message_id`` are applied at most
once; a repeated id returns the outcome recorded the first time.

Outbound notifications are not produced here; the engine writes them to
the outbox (see :mod:`capacity.services.events`).
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from capacity import api
from capacity.exceptions import AdtConflict, InvalidRequest, PatientAlreadyAssigned
from capacity.models import AdtMessage, Assignment
from capacity.results import Result, as_result, failure, success
from capacity.services.assignments import format_assignment, open_assignment_for

logger = logging.getLogger(__name__)

ADMIT = 'admit'
TRANSFER = 'transfer'
DISCHARGE = 'discharge'


def _replayed(scope, message_id: Optional[str]) -> Optional[Result]:
    if not message_id:
        return None
    seen = AdtMessage.objects.filter(facility_id=scope.facility_id, message_id=message_id).first()
    if seen is None:
        return None
    logger.info("ADT message %s already applied, replaying outcome", message_id)
    return success(seen.outcome, warnings=[f"message {message_id} already processed"])


def _remember(scope, message_id: Optional[str], event_type: str, outcome: dict) -> None:
    if not message_id:
        return
    try:
        with transaction.atomic():
            AdtMessage.objects.create(
                facility_id=scope.facility_id, message_id=message_id, event_type=event_type, outcome=outcome,
            )
    except IntegrityError:
        # Raced with a redelivery of the same message; the first outcome stands
        logger.info("ADT message %s recorded concurrently", message_id)


def _idempotent(event_type: str, handler: Callable[..., Result]) -> Callable[..., Result]:
    def apply(scope, event: dict) -> Result:
        message_id = event.get('message_id')
        replay = _replayed(scope, message_id)
        if replay is not None:
            return replay
        result = handler(scope, event)
        if result.ok:
            _remember(scope, message_id, event_type, result.value)
        return result
    apply.__name__ = f'handle_{event_type}'
    return apply


@as_result
def _admit(scope, event: dict):
    patient_ref = event['patient_ref']
    unit_id = event['unit_id']
    current = open_assignment_for(scope, patient_ref)
    if current is not None:
        if current.unit_id == unit_id:
            return success(format_assignment(current), warnings=['patient already admitted to this unit'])
        raise PatientAlreadyAssigned(f"patient {patient_ref} holds a bed on unit {current.unit_id}")
    result = api.assign_bed(
        scope, patient_ref, unit_id, event.get('required_capabilities') or (), event.get('acuity') or 1,
        Assignment.REASON_ADMISSION,
        at=event.get('occurred_at') or timezone.now(),
        diagnosis_class=event.get('diagnosis_class') or '',
        age=event.get('age'),
        comorbidity_count=event.get('comorbidity_count') or 0,
        scheduled_arrival_id=event.get('scheduled_arrival_id'),
        adt_event_id=event.get('message_id') or '',
    )
    if not result.ok:
        return result
    return format_assignment(result.value)


@as_result
def _transfer(scope, event: dict):
    patient_ref = event['patient_ref']
    current = open_assignment_for(scope, patient_ref)
    if current is None:
        raise AdtConflict(f"transfer for {patient_ref} who holds no bed")
    from_unit = event.get('from_unit_id')
    if from_unit is not None and from_unit != current.unit_id:
        raise AdtConflict(
            f"transfer says {patient_ref} is on unit {from_unit}, engine has unit {current.unit_id}"
        )
    at = event.get('occurred_at') or timezone.now()
    if at < current.admitted_at:
        raise AdtConflict(f"transfer for {patient_ref} precedes the current admission")
    result = api.transfer_patient(
        scope, patient_ref, event['to_unit_id'], event.get('required_capabilities') or (),
        event.get('acuity'),
        at=at,
        adt_event_id=event.get('message_id') or '',
    )
    if not result.ok:
        return result
    return format_assignment(result.value)


@as_result
def _discharge(scope, event: dict):
    patient_ref = event['patient_ref']
    current = open_assignment_for(scope, patient_ref)
    if current is None:
        raise AdtConflict(f"discharge for {patient_ref} who holds no bed")
    at = event.get('occurred_at') or timezone.now()
    if at < current.admitted_at:
        raise AdtConflict(f"discharge for {patient_ref} precedes the admission")
    result = api.discharge_or_transfer(
        scope, current.pk, event.get('disposition') or Assignment.DISPOSITION_HOME,
        at=at, rebook_authorized=bool(event.get('rebook_authorized')),
    )
    if not result.ok:
        return result
    return format_assignment(result.value)


handle_admit = _idempotent(ADMIT, _admit)
handle_transfer = _idempotent(TRANSFER, _transfer)
handle_discharge = _idempotent(DISCHARGE, _discharge)

HANDLERS = {
    ADMIT: handle_admit,
    TRANSFER: handle_transfer,
    DISCHARGE: handle_discharge,
}


def dispatch(scope, event_type: str, event: dict) -> Result:
    """Apply one inbound ADT event of type ``admit``, ``transfer`` or ``discharge``."""
    handler = HANDLERS.get(event_type)
    if handler is None:
        return failure(InvalidRequest.kind, f"unsupported ADT event type {event_type!r}")
    return handler(scope, event)
