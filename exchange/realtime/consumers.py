import json

import structlog
from asgiref.sync import sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer
from django.contrib.auth.models import AnonymousUser

from exchange.conf import exchange_setting
from exchange.exceptions import ExchangeError
from exchange.models import ExchangeRequest
from exchange.services import messaging

logger = structlog.get_logger(__name__)


async def _ws_error(ws, code: int, message: str, *, close: bool = False):
    """
    Uniform error frame.
    Application codes: 4xxx client errors, 5xxx server errors.
    """
    payload = {"type": "error", "code": code, "message": message}
    try:
        await ws.send(json.dumps(payload))
    finally:
        if close:
            await ws.close(code=code)


def _participant_hospital(user, conversation_id: int):
    """Hospital id of ``user`` if it is a party to the exchange, else None."""
    hospital_id = getattr(user, "hospital_id", None)
    if not (user and user.is_authenticated and hospital_id):
        return None
    ex = ExchangeRequest.objects.select_related("request", "listing").filter(pk=conversation_id).first()
    if ex is None or hospital_id not in (ex.seeker_hospital_id, ex.provider_hospital_id):
        return None
    return hospital_id


class ConversationConsumer(AsyncWebsocketConsumer):
    async def connect(self):
        try:
            self.conversation_id = int(self.scope["url_route"]["kwargs"].get("conversation_id"))
        except (KeyError, TypeError, ValueError):
            await self.close(code=4001)
            return

        user = self.scope.get("user") or AnonymousUser()
        self.hospital_id = await sync_to_async(_participant_hospital)(user, self.conversation_id)
        if self.hospital_id is None:
            await self.close(code=4003)
            return

        self.group_name = f"conversation.{self.conversation_id}"
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()
        logger.info("ws_connect", conversation_id=self.conversation_id, hospital_id=self.hospital_id)

    async def disconnect(self, close_code):
        if hasattr(self, "group_name"):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def receive(self, text_data=None, bytes_data=None):
        if not text_data:
            return

        try:
            data = json.loads(text_data)
        except json.JSONDecodeError:
            await _ws_error(self, 4000, "invalid_json")
            return

        if not isinstance(data, dict):
            await _ws_error(self, 4001, "invalid_payload")
            return

        kind = data.get("type")
        if kind == "read":
            up_to = data.get("upToMessageId")
            if not isinstance(up_to, int):
                await _ws_error(self, 4001, "invalid_payload")
                return
            n = await sync_to_async(messaging.mark_read)(
                self.conversation_id, up_to, reader_hospital_id=self.hospital_id
            )
            await self.send(json.dumps({"type": "ack", "ok": True, "updated": n}))
            return

        if kind != "send":
            await _ws_error(self, 4002, "unsupported_type")
            return

        content = data.get("content", "")
        if not isinstance(content, str):
            await _ws_error(self, 4003, "invalid_content_type")
            return
        content = content.strip()
        if not content:
            await _ws_error(self, 4004, "empty_message")
            return
        if len(content) > exchange_setting("MESSAGE_MAX_LENGTH"):
            await _ws_error(self, 4005, "message_too_long")
            return

        try:
            # The service broadcasts to the group once committed; only ack here.
            msg = await sync_to_async(messaging.append)(self.conversation_id, self.hospital_id, content)
        except ExchangeError as e:
            await _ws_error(self, 4006, e.code, close=True)
            return
        await self.send(json.dumps({"type": "ack", "ok": True, "messageId": msg.id}))

    # group_send handlers:
    # {"type": "conversation.message", "payload": {...}}
    async def conversation_message(self, event):
        payload = event.get("payload", {})
        await self.send(json.dumps({"type": "message", **payload}))

    async def conversation_status(self, event):
        payload = event.get("payload", {})
        await self.send(json.dumps({"type": "status", **payload}))
