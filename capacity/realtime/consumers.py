import json
from urllib.parse import parse_qs

from channels.generic.websocket import AsyncWebsocketConsumer
from django.conf import settings


class BedEventsConsumer(AsyncWebsocketConsumer):
    """Relays outbound bed events to dashboards.

    ``?facility=<id>`` restricts the stream to one facility.
    """

    async def connect(self):
        self.group = settings.EVENT_GROUP
        query = parse_qs(self.scope.get("query_string", b"").decode())
        self.facility = (query.get("facility") or [None])[0]
        await self.channel_layer.group_add(self.group, self.channel_name)
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "facility": self.facility}))

    async def disconnect(self, close_code):
        await self.channel_layer.group_discard(self.group, self.channel_name)

    async def bed_event(self, event):
        # event: {"type": "bed.event", "eventId": int, "eventType": "...", "facilityId": "...", ...}
        if self.facility and event.get("facilityId") != self.facility:
            return
        await self.send(json.dumps({k: v for k, v in event.items() if k != "type"} | {"type": event["eventType"]}))
