from datetime import timedelta
from typing import Optional

import bleach
import structlog
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction
from django.db.models import Case, Count, F, IntegerField, OuterRef, Q, Subquery, When
from django.db.models.functions import Coalesce
from django.utils import timezone

from exchange.exceptions import ConversationNotFound
from exchange.models import Conversation, ExchangeRequest, Message

logger = structlog.get_logger(__name__)

# Forward-only delivery states; a message never moves to an earlier one.
_STATUS_ORDER = {Message.STATUS_SENT: 0, Message.STATUS_DELIVERED: 1, Message.STATUS_READ: 2}


def open_conversation(exchange: ExchangeRequest) -> Conversation:
    conversation, created = Conversation.objects.get_or_create(exchange=exchange)
    if created:
        logger.info('conversation_open', conversation_id=conversation.pk)
    return conversation


def serialize_message(m: Message) -> dict:
    return {
        "id": m.id,
        "conversationId": m.conversation_id,
        "seq": m.seq,
        "senderHospitalId": m.sender_hospital_id,
        "system": m.sender_hospital_id is None,
        "content": m.content,
        "sentAt": m.sent_at.isoformat(),
        "status": m.status,
    }


def _broadcast(conversation_id: int, event: str, payload: dict) -> None:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    async_to_sync(channel_layer.group_send)(
        f"conversation.{conversation_id}", {"type": event, "payload": payload}
    )


@transaction.atomic
def append(conversation_id: int, sender_hospital_id: Optional[int], content: str) -> Message:
    """Append a message; ``sender_hospital_id=None`` posts a system notice.

    The conversation row is incremented before the insert, which
    serialises appenders on that one conversation and gives every
    message a unique ``seq`` with a strictly later ``sent_at``.
    """
    if not Conversation.objects.filter(pk=conversation_id).update(last_seq=F('last_seq') + 1):
        raise ConversationNotFound('conversation does not exist', conversation_id=conversation_id)
    conversation = Conversation.objects.select_for_update().get(pk=conversation_id)

    now = timezone.now()
    last = conversation.last_message_at
    sent_at = now if last is None or now > last else last + timedelta(microseconds=1)
    conversation.last_message_at = sent_at
    conversation.save(update_fields=['last_message_at'])

    msg = Message.objects.create(
        conversation=conversation,
        sender_hospital_id=sender_hospital_id,
        seq=conversation.last_seq,
        content=bleach.clean((content or '').strip(), strip=True),
        sent_at=sent_at,
    )
    logger.info('message_append', conversation_id=conversation_id, message_id=msg.id, seq=msg.seq,
                sender_hospital_id=sender_hospital_id)

    payload = serialize_message(msg)
    transaction.on_commit(lambda: _broadcast(conversation_id, "conversation.message", payload))
    return msg


def _advance_read_cursor(conversation_id: int, reader_hospital_id: int, anchor_seq: int) -> None:
    parties = (
        Conversation.objects.filter(pk=conversation_id)
        .values_list('exchange__request__seeker_hospital_id', 'exchange__listing__hospital_id')
        .first()
    )
    if parties is None:
        return
    seeker_id, provider_id = parties
    for side, party_id in (('seeker_read_seq', seeker_id), ('provider_read_seq', provider_id)):
        if party_id == reader_hospital_id:
            # Forward only: an older anchor never moves the cursor back.
            Conversation.objects.filter(pk=conversation_id, **{f'{side}__lt': anchor_seq}).update(
                **{side: anchor_seq}
            )


def _advance_status(conversation_id: int, up_to_message_id: int, target: str,
                    reader_hospital_id: Optional[int]) -> int:
    if not Conversation.objects.filter(pk=conversation_id).exists():
        raise ConversationNotFound('conversation does not exist', conversation_id=conversation_id)
    anchor = Message.objects.filter(conversation_id=conversation_id, id=up_to_message_id).values_list('seq', flat=True).first()
    if anchor is None:
        return 0
    if target == Message.STATUS_READ and reader_hospital_id is not None:
        _advance_read_cursor(conversation_id, reader_hospital_id, anchor)
    earlier = [s for s, rank in _STATUS_ORDER.items() if rank < _STATUS_ORDER[target]]
    qs = Message.objects.filter(conversation_id=conversation_id, seq__lte=anchor, status__in=earlier)
    if reader_hospital_id is not None:
        # Readers only acknowledge what the other side (or the system) sent.
        qs = qs.exclude(sender_hospital_id=reader_hospital_id)
    updated = qs.update(status=target)
    if updated:
        logger.info('message_status', conversation_id=conversation_id, status=target,
                    up_to=up_to_message_id, updated=updated)
        transaction.on_commit(lambda: _broadcast(
            conversation_id, "conversation.status",
            {"conversationId": conversation_id, "upToMessageId": up_to_message_id, "status": target},
        ))
    return updated


def mark_delivered(conversation_id: int, up_to_message_id: int, *, reader_hospital_id: Optional[int] = None) -> int:
    return _advance_status(conversation_id, up_to_message_id, Message.STATUS_DELIVERED, reader_hospital_id)


def mark_read(conversation_id: int, up_to_message_id: int, *, reader_hospital_id: Optional[int] = None) -> int:
    """Mark every message up to ``up_to_message_id`` as read.

    Only ``sent``/``delivered`` rows are touched, so status never moves
    backwards and repeating the call is harmless.
    """
    return _advance_status(conversation_id, up_to_message_id, Message.STATUS_READ, reader_hospital_id)


def list_history(conversation_id: int, page: int = 1, page_size: int = 50):
    if not Conversation.objects.filter(pk=conversation_id).exists():
        raise ConversationNotFound('conversation does not exist', conversation_id=conversation_id)
    page = max(1, int(page or 1))
    page_size = min(200, max(1, int(page_size or 50)))
    start = (page - 1) * page_size
    qs = Message.objects.filter(conversation_id=conversation_id)
    # Newest page first, each page in chronological order.
    msgs = qs.order_by('-seq')[start:start + page_size]
    items = [serialize_message(m) for m in reversed(list(msgs))]
    return items, qs.count()


def list_conversations(hospital_id: int, page: int = 1, page_size: int = 20):
    qs = Conversation.objects.filter(
        Q(exchange__request__seeker_hospital_id=hospital_id) | Q(exchange__listing__hospital_id=hospital_id)
    )
    qs = qs.annotate(read_cursor=Case(
        When(exchange__request__seeker_hospital_id=hospital_id, then=F('seeker_read_seq')),
        default=F('provider_read_seq'),
    ))
    # Unread is per party: everything past its own read cursor that it did not send.
    unread = (
        Message.objects
        .filter(conversation=OuterRef('pk'), seq__gt=OuterRef('read_cursor'))
        .exclude(sender_hospital_id=hospital_id)
        .values('conversation')
        .annotate(n=Count('id'))
        .values('n')
    )
    qs = qs.annotate(unread=Coalesce(Subquery(unread, output_field=IntegerField()), 0))
    total = qs.count()
    page = max(1, int(page or 1))
    page_size = min(100, max(1, int(page_size or 20)))
    start = (page - 1) * page_size
    items = qs.select_related(
        'exchange', 'exchange__listing', 'exchange__listing__hospital',
        'exchange__request', 'exchange__request__seeker_hospital',
    ).order_by(F('last_message_at').desc(nulls_last=True), '-created_at')[start:start + page_size]

    data = []
    for c in items:
        ex = c.exchange
        seeker = ex.request.seeker_hospital
        provider = ex.listing.hospital
        counterpart = provider if seeker.id == hospital_id else seeker
        last = c.messages.order_by('-seq').first()
        data.append({
            "id": c.pk,
            "exchangeId": ex.id,
            "exchangeState": ex.state,
            "drugName": ex.listing.raw_name,
            "hospitalId": counterpart.id,
            "hospitalName": counterpart.name,
            "lastMessage": last.content if last else None,
            "lastMessageAt": c.last_message_at.isoformat() if c.last_message_at else None,
            "unreadCount": c.unread,
        })
    return data, total
