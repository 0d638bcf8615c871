from datetime import timedelta

import pytest

from capacity import adt
from capacity.models import AdtMessage, Assignment
from capacity.services import registry

from .conftest import T0

pytestmark = pytest.mark.django_db


def admit_event(unit, patient='A', message_id='m-1', **extra):
    return {'message_id': message_id, 'patient_ref': patient, 'occurred_at': T0,
            'unit_id': unit.pk, 'acuity': 2, **extra}


def test_admit_assigns_a_bed(scope, unit, telemetry_beds):
    result = adt.dispatch(scope, adt.ADMIT, admit_event(unit, diagnosis_class='chf', age=70))
    assert result.ok
    assert result.value['patientRef'] == 'A'
    a = Assignment.objects.get(patient_ref='A')
    assert a.adt_event_id == 'm-1'
    assert a.age == 70


def test_repeated_message_is_applied_once(scope, unit, telemetry_beds):
    first = adt.handle_admit(scope, admit_event(unit))
    again = adt.handle_admit(scope, admit_event(unit))
    assert again.ok
    assert again.value == first.value
    assert again.warnings
    assert Assignment.objects.count() == 1
    assert AdtMessage.objects.filter(message_id='m-1').count() == 1


def test_duplicate_admit_to_same_unit_returns_existing(scope, unit, telemetry_beds):
    first = adt.handle_admit(scope, admit_event(unit))
    second = adt.handle_admit(scope, admit_event(unit, message_id='m-2'))
    assert second.ok
    assert second.value['id'] == first.value['id']
    assert 'already admitted' in second.warnings[0]


def test_admit_while_on_another_unit_conflicts(scope, unit, icu, telemetry_beds):
    adt.handle_admit(scope, admit_event(unit))
    result = adt.handle_admit(scope, admit_event(icu, message_id='m-2', acuity=4))
    assert result.kind == 'PatientAlreadyAssigned'
    assert not AdtMessage.objects.filter(message_id='m-2').exists()


def test_failed_admit_is_not_remembered(scope, unit):
    result = adt.handle_admit(scope, admit_event(unit))
    assert result.kind == 'NoBedAvailable'
    assert AdtMessage.objects.count() == 0


def test_discharge_for_unknown_patient_conflicts(scope, unit):
    result = adt.handle_discharge(scope, {'message_id': 'd-1', 'patient_ref': 'nobody', 'occurred_at': T0})
    assert result.kind == 'AdtConflict'


def test_discharge_before_admission_conflicts(scope, unit, telemetry_beds):
    adt.handle_admit(scope, admit_event(unit))
    result = adt.handle_discharge(scope, {
        'message_id': 'd-1', 'patient_ref': 'A', 'occurred_at': T0 - timedelta(hours=1),
    })
    assert result.kind == 'AdtConflict'


def test_discharge_releases_bed(scope, unit, telemetry_beds):
    adt.handle_admit(scope, admit_event(unit))
    result = adt.handle_discharge(scope, {
        'message_id': 'd-1', 'patient_ref': 'A', 'occurred_at': T0 + timedelta(days=2), 'disposition': 'snf',
    })
    assert result.ok
    assert result.value['disposition'] == 'snf'
    assert Assignment.objects.get().bed.status == 'dirty'


def test_transfer_from_wrong_unit_conflicts(scope, unit, icu, telemetry_beds):
    adt.handle_admit(scope, admit_event(unit))
    result = adt.handle_transfer(scope, {
        'message_id': 't-1', 'patient_ref': 'A', 'occurred_at': T0 + timedelta(hours=2),
        'from_unit_id': icu.pk, 'to_unit_id': unit.pk,
    })
    assert result.kind == 'AdtConflict'


def test_transfer_moves_patient(scope, unit, icu, telemetry_beds):
    registry.register_bed(scope, icu.pk, room='ICU-1', capabilities=['icu'], at=T0 - timedelta(days=1))
    adt.handle_admit(scope, admit_event(unit))
    result = adt.handle_transfer(scope, {
        'message_id': 't-1', 'patient_ref': 'A', 'occurred_at': T0 + timedelta(hours=2),
        'from_unit_id': unit.pk, 'to_unit_id': icu.pk, 'required_capabilities': ['icu'], 'acuity': 4,
    })
    assert result.ok
    assert result.value['unitId'] == icu.pk
    assert result.value['reason'] == 'transfer_in'
    assert Assignment.objects.filter(discharged_at__isnull=True).count() == 1


def test_unknown_event_type_is_an_invalid_request(scope):
    result = adt.dispatch(scope, 'merge', {'message_id': 'm-9', 'patient_ref': 'A', 'occurred_at': T0})
    assert not result.ok
    assert result.kind == 'InvalidRequest'
    assert 'merge' in result.message
    assert not AdtMessage.objects.exists()
