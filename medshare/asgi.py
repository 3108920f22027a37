"""
ASGI entrypoint: Django for HTTP, Channels for the conversation sockets.

Settings and the app registry must be ready before the consumer module
is imported, because it pulls in the models.
"""
import os

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "medshare.settings")

import django  # noqa: E402
django.setup()  # noqa: E402

from django.core.asgi import get_asgi_application  # noqa: E402
from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402
from channels.auth import AuthMiddlewareStack  # noqa: E402
from django.urls import path  # noqa: E402

from exchange.realtime.consumers import ConversationConsumer  # noqa: E402

django_asgi_app = get_asgi_application()

websocket_urlpatterns = [
    # conversation id == exchange id
    path("ws/conversations/<int:conversation_id>/", ConversationConsumer.as_asgi()),
]

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    "websocket": AuthMiddlewareStack(URLRouter(websocket_urlpatterns)),
})
