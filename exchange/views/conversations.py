from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from exchange.exceptions import ConversationNotFound, NotFound
from exchange.permissions import HasHospital
from exchange.serializers.conversations import (
    ConversationHistoryQuerySerializer,
    ConversationListQuerySerializer,
    ConversationReadSerializer,
    ConversationSendSerializer,
)
from exchange.services import exchanges as coordinator
from exchange.services import messaging


def _check_participant(request, conversation_id: int) -> None:
    # Conversation ids are exchange ids; only the two parties may use them.
    try:
        coordinator.get_exchange(conversation_id, hospital=request.user.hospital)
    except NotFound:
        raise ConversationNotFound('conversation does not exist', conversation_id=conversation_id) from None


@api_view(['GET'])
@permission_classes([HasHospital])
def conversation_list(request):
    q = ConversationListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    data, total = messaging.list_conversations(
        request.user.hospital_id,
        page=q.validated_data.get('page', 1),
        page_size=q.validated_data.get('pageSize', 20),
    )
    return Response({'ok': True, 'data': data, 'pagination': {'total': total, 'page': q.validated_data.get('page', 1), 'pageSize': q.validated_data.get('pageSize', 20)}})


@api_view(['POST'])
@permission_classes([HasHospital])
def conversation_send(request):
    s = ConversationSendSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    cid = s.validated_data['conversationId']
    _check_participant(request, cid)
    msg = messaging.append(cid, request.user.hospital_id, s.validated_data['content'])
    return Response({'ok': True, 'messageId': msg.id, 'data': messaging.serialize_message(msg)})


@api_view(['POST'])
@permission_classes([HasHospital])
def conversation_read(request):
    s = ConversationReadSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    cid = s.validated_data['conversationId']
    _check_participant(request, cid)
    mark = messaging.mark_delivered if s.validated_data['status'] == 'delivered' else messaging.mark_read
    n = mark(cid, s.validated_data['upToMessageId'], reader_hospital_id=request.user.hospital_id)
    return Response({'ok': True, 'updated': n})


@api_view(['GET'])
@permission_classes([HasHospital])
def conversation_history(request):
    q = ConversationHistoryQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    cid = q.validated_data['conversationId']
    _check_participant(request, cid)
    items, total = messaging.list_history(cid, page=q.validated_data.get('page', 1),
                                          page_size=q.validated_data.get('pageSize', 50))
    return Response({'ok': True, 'data': items, 'pagination': {'total': total, 'page': q.validated_data.get('page', 1), 'pageSize': q.validated_data.get('pageSize', 50)}})
