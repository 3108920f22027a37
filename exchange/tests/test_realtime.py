import json

import pytest
from asgiref.sync import async_to_sync
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.urls import path

from exchange.models import Message
from exchange.realtime.consumers import ConversationConsumer
from exchange.services import exchanges as coordinator
from exchange.services.exchanges import Selection
from exchange.services.matching import submit_request

pytestmark = pytest.mark.django_db(transaction=True)


def _app(user):
    router = URLRouter([path("ws/conversations/<int:conversation_id>/", ConversationConsumer.as_asgi())])

    async def app(scope, receive, send):
        return await router({**scope, "user": user}, receive, send)
    return app


@pytest.fixture
def thread(staff, world):
    req = submit_request(world.seeker, name='Amoxicillin', dosage='500mg', quantity=10)
    ex = coordinator.propose(Selection(listing_id=world.exact.id, request_id=req.id), 10)
    world.cid = ex.pk
    return world


def test_participant_sends_and_receives(staff, thread):
    async def scenario():
        ws = WebsocketCommunicator(_app(staff.seeker), f"/ws/conversations/{thread.cid}/")
        connected, _ = await ws.connect()
        assert connected
        await ws.send_to(text_data=json.dumps({"type": "send", "content": "  on our way  "}))
        frames = [json.loads(await ws.receive_from()) for _ in range(2)]
        await ws.disconnect()
        return frames

    frames = async_to_sync(scenario)()
    by_type = {f["type"]: f for f in frames}
    assert by_type["ack"]["ok"] is True
    assert by_type["message"]["content"] == "on our way"
    assert by_type["message"]["senderHospitalId"] == thread.seeker.id
    assert Message.objects.filter(conversation_id=thread.cid).count() == 2


def test_bad_frames_get_error_codes(staff, thread):
    async def scenario():
        ws = WebsocketCommunicator(_app(staff.general), f"/ws/conversations/{thread.cid}/")
        connected, _ = await ws.connect()
        assert connected
        replies = []
        for raw in ("not json", json.dumps({"type": "shout"}), json.dumps({"type": "send", "content": "   "})):
            await ws.send_to(text_data=raw)
            replies.append(json.loads(await ws.receive_from()))
        await ws.disconnect()
        return replies

    replies = async_to_sync(scenario)()
    assert [r["code"] for r in replies] == [4000, 4002, 4004]


def test_outsider_is_refused(staff, thread):
    async def scenario():
        ws = WebsocketCommunicator(_app(staff.st_mary), f"/ws/conversations/{thread.cid}/")
        connected, code = await ws.connect()
        return connected, code

    connected, code = async_to_sync(scenario)()
    assert not connected
    assert code == 4003
