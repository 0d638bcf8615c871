"""
Outbound state-change events.

Every bed status transition and every assignment open/close writes an
:class:`OutboundEvent` row in the same transaction as the change itself.
Once that transaction commits the event is pushed to the channel layer
group ``settings.EVENT_GROUP``.  Publishing is bounded by
``EVENT_PUBLISH_TIMEOUT``; an event that cannot be delivered in time
stays undelivered in the outbox and ``flush_outbound_events`` picks it
up later.  A slow consumer therefore never blocks or rolls back an
assignment.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Optional

from asgiref.sync import async_to_sync
from channels.exceptions import ChannelFull
from channels.layers import get_channel_layer
from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from capacity.models import OutboundEvent

logger = logging.getLogger(__name__)

ADT_ADMIT = 'A01'
ADT_TRANSFER = 'A02'
ADT_DISCHARGE = 'A03'
ADT_BED_STATUS = 'A20'


def record_event(scope, event_type: str, adt_code: str, payload: dict, *, at=None) -> OutboundEvent:
    """Write an outbox row and schedule its publication after commit."""
    event = OutboundEvent.objects.create(
        facility_id=scope.facility_id,
        event_type=event_type,
        adt_code=adt_code,
        payload=payload,
        occurred_at=at or timezone.now(),
    )
    transaction.on_commit(functools.partial(publish, event.pk), robust=True)
    return event


def format_event(event: OutboundEvent) -> dict:
    return {
        'eventId': event.pk,
        'eventType': event.event_type,
        'adtCode': event.adt_code,
        'facilityId': event.facility_id,
        'occurredAt': event.occurred_at.isoformat(),
        'payload': event.payload,
    }


async def _send(channel_layer, group: str, message: dict, timeout: float):
    await asyncio.wait_for(channel_layer.group_send(group, message), timeout=timeout)


def _undelivered(event: OutboundEvent, exc: BaseException) -> bool:
    OutboundEvent.objects.filter(pk=event.pk).update(attempts=F('attempts') + 1)
    logger.warning("event %s not delivered (%s), left in outbox", event.pk, exc.__class__.__name__)
    return False


def publish(event_id: int, *, timeout: Optional[float] = None) -> bool:
    """Deliver one outbox row.  Returns ``True`` once it is marked delivered."""
    event = OutboundEvent.objects.filter(pk=event_id, delivered_at__isnull=True).first()
    if event is None:
        return False
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return False
    if timeout is None:
        timeout = settings.EVENT_PUBLISH_TIMEOUT
    message = {'type': 'bed.event', **format_event(event)}
    try:
        async_to_sync(_send)(channel_layer, settings.EVENT_GROUP, message, timeout)
    except (asyncio.TimeoutError, ChannelFull, OSError) as exc:
        return _undelivered(event, exc)
    except Exception as exc:
        # Broker client errors (redis, etc.) must not escape into a committed mutation
        logger.exception("event %s publish failed", event.pk)
        return _undelivered(event, exc)
    OutboundEvent.objects.filter(pk=event.pk).update(
        delivered_at=timezone.now(), attempts=F('attempts') + 1
    )
    return True


def pending_events(facility_id: Optional[str] = None, limit: int = 500):
    qs = OutboundEvent.objects.filter(delivered_at__isnull=True)
    if facility_id:
        qs = qs.filter(facility_id=facility_id)
    return qs.order_by('occurred_at', 'id')[:limit]


def flush_pending(*, facility_id: Optional[str] = None, limit: int = 500,
                  timeout: Optional[float] = None) -> tuple[int, int]:
    """Retry undelivered events in occurrence order.  Returns ``(delivered, failed)``."""
    delivered = failed = 0
    for event in pending_events(facility_id, limit):
        if publish(event.pk, timeout=timeout):
            delivered += 1
        else:
            failed += 1
    return delivered, failed
