import asyncio
from datetime import timedelta

import pytest
from asgiref.sync import async_to_sync
from channels.layers import InMemoryChannelLayer, get_channel_layer

from capacity import api
from capacity.models import Assignment, OutboundEvent
from capacity.services import assignments, events

from .conftest import T0

pytestmark = pytest.mark.django_db


def test_publish_delivers_to_event_group(settings, scope, unit, telemetry_beds):
    layer = get_channel_layer()
    channel = async_to_sync(layer.new_channel)()
    async_to_sync(layer.group_add)(settings.EVENT_GROUP, channel)

    assignments.assign_bed(scope, 'A', unit.pk, (), 2, at=T0)
    event = OutboundEvent.objects.filter(event_type=OutboundEvent.TYPE_ASSIGNMENT_OPENED).get()
    assert events.publish(event.pk) is True

    message = async_to_sync(layer.receive)(channel)
    assert message['type'] == 'bed.event'
    assert message['eventType'] == 'assignment.opened'
    assert message['adtCode'] == 'A01'
    assert message['payload']['patientRef'] == 'A'
    event.refresh_from_db()
    assert event.delivered_at is not None
    assert event.attempts == 1
    assert events.publish(event.pk) is False


def test_failed_publish_stays_in_outbox(monkeypatch, scope, unit, telemetry_beds):
    async def too_slow(*args):
        raise asyncio.TimeoutError

    monkeypatch.setattr(events, '_send', too_slow)
    assignments.assign_bed(scope, 'A', unit.pk, (), 2, at=T0)
    delivered, failed = events.flush_pending(facility_id=scope.facility_id)
    assert delivered == 0
    assert failed == OutboundEvent.objects.count() == 2
    assert all(e.attempts == 1 and e.delivered_at is None for e in OutboundEvent.objects.all())


def test_pending_events_in_occurrence_order(scope, unit, telemetry_beds):
    a = assignments.assign_bed(scope, 'A', unit.pk, (), 2, at=T0)
    assignments.discharge_or_transfer(scope, a.pk, 'home', at=T0 + timedelta(hours=1))
    codes = [e.adt_code for e in events.pending_events(scope.facility_id)]
    assert codes == ['A20', 'A01', 'A20', 'A03']


class BrokerDown(Exception):
    pass


def test_broker_error_after_commit_leaves_admit_intact(monkeypatch, django_capture_on_commit_callbacks,
                                                       scope, unit, telemetry_beds):
    async def broken(*args, **kwargs):
        raise BrokerDown('connection refused by broker')

    monkeypatch.setattr(InMemoryChannelLayer, 'group_send', broken)
    with django_capture_on_commit_callbacks(execute=True) as callbacks:
        result = api.assign_bed(scope, 'A', unit.pk, (), 2, at=T0)

    assert result.ok
    assert len(callbacks) == 2
    assert Assignment.objects.filter(patient_ref='A', discharged_at__isnull=True).count() == 1
    assert all(e.attempts == 1 and e.delivered_at is None for e in OutboundEvent.objects.all())
