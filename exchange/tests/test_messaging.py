import pytest
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from exchange.exceptions import ConversationNotFound
from exchange.models import Conversation, Message
from exchange.services import exchanges as coordinator
from exchange.services import messaging
from exchange.services.exchanges import Selection
from exchange.services.matching import submit_request

pytestmark = pytest.mark.django_db


@pytest.fixture
def thread(world):
    req = submit_request(world.seeker, name='Amoxicillin', dosage='500mg', quantity=20)
    ex = coordinator.propose(Selection(listing_id=world.exact.id, request_id=req.id), 20)
    world.cid = ex.pk
    return world


def test_messages_come_back_in_append_order(thread):
    sent = [messaging.append(thread.cid, thread.seeker.id, text) for text in ('one', 'two', 'three')]
    items, total = messaging.list_history(thread.cid)
    assert total == 4
    assert [m['content'] for m in items[1:]] == ['one', 'two', 'three']
    seqs = [m['seq'] for m in items]
    assert seqs == sorted(seqs) and len(set(seqs)) == len(seqs)
    stamps = [m.sent_at for m in Message.objects.filter(conversation_id=thread.cid).order_by('seq')]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))
    assert [m.seq for m in sent] == [2, 3, 4]


def test_history_pages_newest_first(thread):
    for i in range(5):
        messaging.append(thread.cid, thread.general.id, f'm{i}')
    newest, total = messaging.list_history(thread.cid, page=1, page_size=2)
    older, _ = messaging.list_history(thread.cid, page=2, page_size=2)
    assert total == 6
    assert [m['content'] for m in newest] == ['m3', 'm4']
    assert [m['content'] for m in older] == ['m1', 'm2']


def test_append_to_unknown_conversation(thread):
    with pytest.raises(ConversationNotFound):
        messaging.append(thread.cid + 1000, thread.seeker.id, 'hello')
    with pytest.raises(ConversationNotFound):
        messaging.mark_read(thread.cid + 1000, 1)
    with pytest.raises(ConversationNotFound):
        messaging.list_history(thread.cid + 1000)


def test_content_is_sanitised(thread):
    msg = messaging.append(thread.cid, thread.seeker.id, '<script>alert(1)</script><img src=x onerror=alert(2)>ok')
    assert '<script>' not in msg.content
    assert '<img' not in msg.content and 'onerror' not in msg.content
    assert msg.content.endswith('ok')


def test_status_only_moves_forward(thread):
    m1 = messaging.append(thread.cid, thread.seeker.id, 'one')
    m2 = messaging.append(thread.cid, thread.seeker.id, 'two')
    m3 = messaging.append(thread.cid, thread.seeker.id, 'three')
    provider = thread.general.id

    # The system notice plus the seeker's first two messages.
    assert messaging.mark_read(thread.cid, m2.id, reader_hospital_id=provider) == 3
    assert messaging.mark_delivered(thread.cid, m3.id, reader_hospital_id=provider) == 1
    assert messaging.mark_read(thread.cid, m2.id, reader_hospital_id=provider) == 0

    status = dict(Message.objects.filter(conversation_id=thread.cid).values_list('id', 'status'))
    assert status[m1.id] == status[m2.id] == 'read'
    assert status[m3.id] == 'delivered'

    assert messaging.mark_read(thread.cid, m3.id, reader_hospital_id=provider) == 1
    assert messaging.mark_delivered(thread.cid, m3.id, reader_hospital_id=provider) == 0
    assert Message.objects.get(pk=m3.id).status == 'read'


def test_readers_do_not_mark_their_own_messages(thread):
    mine = messaging.append(thread.cid, thread.seeker.id, 'mine')
    assert messaging.mark_read(thread.cid, mine.id, reader_hospital_id=thread.seeker.id) == 1
    assert Message.objects.get(pk=mine.id).status == 'sent'
    assert messaging.mark_read(thread.cid, 999999, reader_hospital_id=thread.seeker.id) == 0


def test_conversation_list_counts_unread_per_side(thread):
    messaging.append(thread.cid, thread.seeker.id, 'need it today')
    last = messaging.append(thread.cid, thread.seeker.id, 'please confirm')

    provider_view, total = messaging.list_conversations(thread.general.id)
    assert total == 1
    row = provider_view[0]
    assert row['hospitalName'] == 'City Hospital'
    assert row['unreadCount'] == 3
    assert row['lastMessage'] == 'please confirm'
    assert row['exchangeState'] == 'proposed'

    seeker_view, _ = messaging.list_conversations(thread.seeker.id)
    assert seeker_view[0]['hospitalName'] == 'General Hospital'
    assert seeker_view[0]['unreadCount'] == 1

    messaging.mark_read(thread.cid, last.id, reader_hospital_id=thread.general.id)
    provider_view, _ = messaging.list_conversations(thread.general.id)
    assert provider_view[0]['unreadCount'] == 0
    assert messaging.list_conversations(thread.st_mary.id) == ([], 0)


def test_system_notice_stays_unread_for_the_other_party(thread):
    notice = Message.objects.get(conversation_id=thread.cid, sender_hospital_id__isnull=True)
    assert messaging.mark_read(thread.cid, notice.id, reader_hospital_id=thread.general.id) == 1
    assert Message.objects.get(pk=notice.id).status == 'read'

    provider_view, _ = messaging.list_conversations(thread.general.id)
    seeker_view, _ = messaging.list_conversations(thread.seeker.id)
    assert provider_view[0]['unreadCount'] == 0
    assert seeker_view[0]['unreadCount'] == 1

    # Nothing left to flip, but the seeker's own cursor still advances.
    assert messaging.mark_read(thread.cid, notice.id, reader_hospital_id=thread.seeker.id) == 0
    seeker_view, _ = messaging.list_conversations(thread.seeker.id)
    assert seeker_view[0]['unreadCount'] == 0

    # An older anchor never moves a cursor back.
    later = messaging.append(thread.cid, thread.general.id, 'ready for pickup')
    messaging.mark_read(thread.cid, later.id, reader_hospital_id=thread.seeker.id)
    messaging.mark_read(thread.cid, notice.id, reader_hospital_id=thread.seeker.id)
    assert Conversation.objects.get(pk=thread.cid).seeker_read_seq == later.seq


def test_transitions_post_system_notices(thread):
    coordinator.respond(thread.cid, 'accept', hospital=thread.general)
    items, _ = messaging.list_history(thread.cid)
    assert items[-1]['system'] is True
    assert items[-1]['content'].startswith('General Hospital accepted the request.')


def test_append_is_broadcast_after_commit(thread, django_capture_on_commit_callbacks):
    layer = get_channel_layer()
    channel = async_to_sync(layer.new_channel)()
    async_to_sync(layer.group_add)(f'conversation.{thread.cid}', channel)

    with django_capture_on_commit_callbacks(execute=True):
        msg = messaging.append(thread.cid, thread.seeker.id, 'on my way')

    event = async_to_sync(layer.receive)(channel)
    assert event['type'] == 'conversation.message'
    assert event['payload']['id'] == msg.id
    assert event['payload']['content'] == 'on my way'
    async_to_sync(layer.group_discard)(f'conversation.{thread.cid}', channel)
