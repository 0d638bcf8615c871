import threading
from datetime import date, timedelta

import pytest
from django.db import connection

from capacity import api
from capacity.exceptions import InvalidRequest, InvalidTransition, NoBedAvailable, PatientAlreadyAssigned
from capacity.models import Assignment, Bed, OutboundEvent, ScheduledArrival
from capacity.services import arrivals, assignments, registry

from .conftest import T0

pytestmark = pytest.mark.django_db


def test_telemetry_unit_fills_and_needs_cleaning(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    assert a.bed_id == telemetry_beds[0].pk
    assert [b.pk for b in registry.find_candidates(scope, unit.pk, ['telemetry'])] == [telemetry_beds[1].pk]

    b = assignments.assign_bed(scope, 'B', unit.pk, ['telemetry'], 2, at=T0 + timedelta(minutes=5))
    assert b.bed_id == telemetry_beds[1].pk
    assert registry.find_candidates(scope, unit.pk, ['telemetry']) == []

    with pytest.raises(NoBedAvailable):
        assignments.assign_bed(scope, 'C', unit.pk, ['telemetry'], 2, at=T0 + timedelta(minutes=10))

    assignments.discharge_or_transfer(scope, a.pk, Assignment.DISPOSITION_HOME, at=T0 + timedelta(hours=5))
    bed = Bed.objects.get(pk=a.bed_id)
    assert bed.status == Bed.STATUS_DIRTY
    with pytest.raises(NoBedAvailable):
        assignments.assign_bed(scope, 'C', unit.pk, ['telemetry'], 2, at=T0 + timedelta(hours=6))

    registry.set_status(scope, bed.pk, Bed.STATUS_AVAILABLE, reason='cleaned', at=T0 + timedelta(hours=7))
    c = assignments.assign_bed(scope, 'C', unit.pk, ['telemetry'], 2, at=T0 + timedelta(hours=8))
    assert c.bed_id == bed.pk


def test_assignment_occupies_bed_and_emits_events(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    bed = Bed.objects.get(pk=a.bed_id)
    assert bed.status == Bed.STATUS_OCCUPIED
    assert bed.status_changed_at == T0
    assert bed.history.filter(to_status=Bed.STATUS_OCCUPIED, assignment=a).exists()
    opened = OutboundEvent.objects.get(event_type=OutboundEvent.TYPE_ASSIGNMENT_OPENED)
    assert opened.adt_code == 'A01'
    assert opened.payload['patientRef'] == 'A'
    assert OutboundEvent.objects.filter(event_type=OutboundEvent.TYPE_BED_STATUS).count() == 1


def test_expected_discharge_comes_from_los_estimate(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    # No benchmark: the unit's configured default of 3 days applies
    assert a.expected_discharge_at == T0 + timedelta(days=3)


def test_patient_cannot_hold_two_beds(scope, unit, telemetry_beds):
    assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    with pytest.raises(PatientAlreadyAssigned):
        assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    assert Assignment.objects.filter(patient_ref='A').count() == 1
    assert Bed.objects.filter(status=Bed.STATUS_OCCUPIED).count() == 1


def test_unit_must_accept_acuity(scope, unit, telemetry_beds):
    with pytest.raises(NoBedAvailable):
        assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 5, at=T0)


def test_max_census_caps_admissions(scope, unit, telemetry_beds):
    registry.configure_unit(scope, unit.pk, target_census=1, max_census=1)
    assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    with pytest.raises(NoBedAvailable):
        assignments.assign_bed(scope, 'B', unit.pk, ['telemetry'], 2, at=T0)


def test_lost_claim_is_retried_with_fresh_candidates(scope, unit, telemetry_beds, monkeypatch):
    first, second = telemetry_beds
    # Another caller takes the longest-idle bed between selection and claim
    stale = Bed.objects.get(pk=first.pk)
    assignments.assign_bed(scope, 'X', unit.pk, ['telemetry'], 2, at=T0)
    real = registry.find_candidates
    calls = []

    def racing(*args, **kwargs):
        calls.append(1)
        return [stale] if len(calls) == 1 else real(*args, **kwargs)

    monkeypatch.setattr(registry, 'find_candidates', racing)
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0 + timedelta(minutes=1))
    assert a.bed_id == second.pk
    assert len(calls) == 2


def test_claim_retries_are_bounded(scope, unit, telemetry_beds, monkeypatch, settings):
    settings.ASSIGNMENT_MAX_CLAIM_RETRIES = 3
    stale = Bed.objects.get(pk=telemetry_beds[0].pk)
    assignments.assign_bed(scope, 'X', unit.pk, ['telemetry'], 2, at=T0)
    calls = []

    def always_stale(*args, **kwargs):
        calls.append(1)
        return [stale]

    monkeypatch.setattr(registry, 'find_candidates', always_stale)
    with pytest.raises(NoBedAvailable):
        assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0 + timedelta(minutes=1))
    assert len(calls) == 3
    assert not Assignment.objects.filter(patient_ref='A').exists()


def test_rebook_returns_bed_straight_to_service(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    closed = assignments.discharge_or_transfer(
        scope, a.pk, Assignment.DISPOSITION_HOME, at=T0 + timedelta(days=1), rebook_authorized=True,
    )
    assert closed.discharged_at == T0 + timedelta(days=1)
    assert Bed.objects.get(pk=a.bed_id).status == Bed.STATUS_AVAILABLE
    event = OutboundEvent.objects.get(event_type=OutboundEvent.TYPE_ASSIGNMENT_CLOSED)
    assert event.adt_code == 'A03'


def test_closing_is_terminal(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    assignments.discharge_or_transfer(scope, a.pk, Assignment.DISPOSITION_HOME, at=T0 + timedelta(days=1))
    with pytest.raises(InvalidTransition):
        assignments.discharge_or_transfer(scope, a.pk, Assignment.DISPOSITION_HOME, at=T0 + timedelta(days=2))


def test_discharge_cannot_precede_admission(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    with pytest.raises(InvalidTransition):
        assignments.discharge_or_transfer(scope, a.pk, Assignment.DISPOSITION_HOME, at=T0 - timedelta(hours=1))
    with pytest.raises(InvalidRequest):
        assignments.discharge_or_transfer(scope, a.pk, 'teleported', at=T0 + timedelta(hours=1))
    a.refresh_from_db()
    assert a.is_open


def test_transfer_moves_patient_between_units(scope, unit, icu, telemetry_beds):
    icu_bed = registry.register_bed(scope, icu.pk, room='ICU-1', capabilities=['icu', 'telemetry'],
                                    at=T0 - timedelta(days=1))
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 3, at=T0, diagnosis_class='chf', age=70)
    moved = assignments.transfer_patient(scope, 'A', icu.pk, ['icu'], 4, at=T0 + timedelta(hours=4))
    a.refresh_from_db()
    assert a.disposition == Assignment.DISPOSITION_TRANSFER
    assert a.discharged_at == T0 + timedelta(hours=4)
    assert Bed.objects.get(pk=a.bed_id).status == Bed.STATUS_DIRTY
    assert moved.bed_id == icu_bed.pk
    assert moved.reason == Assignment.REASON_TRANSFER_IN
    assert moved.transferred_from_id == a.pk
    assert (moved.diagnosis_class, moved.age, moved.acuity) == ('chf', 70, 4)
    codes = list(OutboundEvent.objects.filter(
        event_type__in=[OutboundEvent.TYPE_ASSIGNMENT_OPENED, OutboundEvent.TYPE_ASSIGNMENT_CLOSED]
    ).order_by('id').values_list('adt_code', flat=True))
    assert codes == ['A01', 'A02', 'A02']


def test_failed_transfer_keeps_patient_in_place(scope, unit, icu, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 3, at=T0)
    with pytest.raises(NoBedAvailable):
        assignments.transfer_patient(scope, 'A', icu.pk, ['icu'], 4, at=T0 + timedelta(hours=4))
    a.refresh_from_db()
    assert a.is_open
    assert Bed.objects.get(pk=a.bed_id).status == Bed.STATUS_OCCUPIED
    assert Assignment.objects.filter(patient_ref='A').count() == 1


def test_admission_fulfils_scheduled_arrival(scope, unit, telemetry_beds):
    arrival = arrivals.schedule_arrival(scope, unit.pk, date(2025, 3, 3), patient_ref='A',
                                        arrival_type='scheduled_surgery')
    other = arrivals.schedule_arrival(scope, unit.pk, date(2025, 3, 3), patient_ref='Z')
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    arrival.refresh_from_db()
    other.refresh_from_db()
    assert arrival.status == ScheduledArrival.STATUS_ARRIVED
    assert arrival.assignment_id == a.pk
    assert other.status == ScheduledArrival.STATUS_SCHEDULED


def test_expired_arrivals_become_no_shows(scope, unit):
    past = arrivals.schedule_arrival(scope, unit.pk, date(2025, 3, 1))
    future = arrivals.schedule_arrival(scope, unit.pk, date(2025, 3, 5))
    assert arrivals.expire_unfulfilled(scope, today=date(2025, 3, 3)) == 1
    past.refresh_from_db()
    future.refresh_from_db()
    assert past.status == ScheduledArrival.STATUS_NO_SHOW
    assert future.status == ScheduledArrival.STATUS_SCHEDULED


def test_open_patient_key_follows_assignment_lifecycle(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    assert a.open_patient_key == 'A'
    assignments.discharge_or_transfer(scope, a.pk, Assignment.DISPOSITION_HOME, at=T0 + timedelta(days=1),
                                      rebook_authorized=True)
    a.refresh_from_db()
    assert a.open_patient_key is None
    again = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0 + timedelta(days=2))
    assert again.open_patient_key == 'A'


def test_second_admit_rejected_when_open_check_misses(scope, unit, telemetry_beds, monkeypatch):
    first = assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0)
    # a concurrent admit of the same patient whose read ran before the first committed
    monkeypatch.setattr(assignments, 'open_assignment_for', lambda *args, **kwargs: None)
    with pytest.raises(PatientAlreadyAssigned):
        assignments.assign_bed(scope, 'A', unit.pk, ['telemetry'], 2, at=T0 + timedelta(minutes=1))
    assert list(Assignment.objects.filter(patient_ref='A').values_list('pk', flat=True)) == [first.pk]
    assert Bed.objects.get(pk=telemetry_beds[1].pk).status == Bed.STATUS_AVAILABLE


def test_backdated_admit_starts_at_last_bed_transition(scope, unit):
    bed = registry.register_bed(scope, unit.pk, room='105', at=T0 - timedelta(days=1))
    registry.set_status(scope, bed.pk, Bed.STATUS_BLOCKED, reason='leak', at=T0 - timedelta(hours=2))
    registry.set_status(scope, bed.pk, Bed.STATUS_AVAILABLE, reason='fixed', at=T0 + timedelta(hours=1))

    a = assignments.assign_bed(scope, 'A', unit.pk, (), 2, at=T0)
    assert a.admitted_at == T0 + timedelta(hours=1)
    bed.refresh_from_db()
    assert bed.status_changed_at == a.admitted_at
    assert registry.statuses_at(scope, unit.pk, a.admitted_at + timedelta(minutes=1))[bed.pk] == Bed.STATUS_OCCUPIED
    assert registry.statuses_at(scope, unit.pk, T0 + timedelta(minutes=30))[bed.pk] == Bed.STATUS_BLOCKED


@pytest.mark.django_db(transaction=True)
def test_concurrent_admits_share_one_bed(scope, unit):
    bed = registry.register_bed(scope, unit.pk, room='110', at=T0 - timedelta(days=1))
    patients = [f'R{n}' for n in range(6)]
    start = threading.Barrier(len(patients))
    outcomes = {}

    def admit(patient):
        try:
            start.wait()
            outcomes[patient] = api.assign_bed(scope, patient, unit.pk, (), 2, at=T0, timeout=10)
        finally:
            connection.close()

    threads = [threading.Thread(target=admit, args=(p,)) for p in patients]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(outcomes) == len(patients)
    winners = [r for r in outcomes.values() if r.ok]
    assert len(winners) == 1
    assert winners[0].value.bed_id == bed.pk
    assert {r.kind for r in outcomes.values() if not r.ok} <= {'NoBedAvailable', 'PersistenceTimeout'}
    assert Assignment.objects.filter(bed=bed, discharged_at__isnull=True).count() == 1
    assert Bed.objects.get(pk=bed.pk).status == Bed.STATUS_OCCUPIED
