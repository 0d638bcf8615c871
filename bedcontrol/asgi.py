"""
ASGI config for the bedcontrol project.

Serves HTTP through Django and the bed event stream over WebSocket.
Settings must be configured before any Django-dependent import.
"""
import os

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "bedcontrol.settings")

import django  # noqa: E402
django.setup()  # noqa: E402

from django.core.asgi import get_asgi_application  # noqa: E402
from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402
from channels.auth import AuthMiddlewareStack  # noqa: E402
from django.urls import path  # noqa: E402

from capacity.realtime.consumers import BedEventsConsumer  # noqa: E402

django_asgi_app = get_asgi_application()

websocket_urlpatterns = [
    path("ws/bed-events/", BedEventsConsumer.as_asgi()),
]

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    "websocket": AuthMiddlewareStack(URLRouter(websocket_urlpatterns)),
})
