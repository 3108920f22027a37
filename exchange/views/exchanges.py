from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from exchange.permissions import HasHospital
from exchange.serializers.exchanges import (
    CancelSerializer,
    ExchangeActionSerializer,
    ExchangeListQuerySerializer,
    ProposeSerializer,
    RespondSerializer,
)
from exchange.services import exchanges as coordinator
from exchange.services.exchanges import Selection, serialize_exchange


@api_view(['POST'])
@permission_classes([HasHospital])
def exchange_propose(request):
    s = ProposeSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    ex = coordinator.propose(
        Selection(listing_id=vd['listingId'], request_id=vd['requestId']),
        vd['quantity'],
        hospital=request.user.hospital,
        user=request.user,
    )
    return Response({'ok': True, 'data': serialize_exchange(ex), 'conversationId': ex.pk}, status=201)


@api_view(['POST'])
@permission_classes([HasHospital])
def exchange_respond(request):
    s = RespondSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    ex = coordinator.respond(s.validated_data['exchangeId'], s.validated_data['decision'],
                             hospital=request.user.hospital, user=request.user)
    return Response({'ok': True, 'data': serialize_exchange(ex)})


@api_view(['POST'])
@permission_classes([HasHospital])
def exchange_complete(request):
    s = ExchangeActionSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    ex = coordinator.complete(s.validated_data['exchangeId'], hospital=request.user.hospital, user=request.user)
    return Response({'ok': True, 'data': serialize_exchange(ex)})


@api_view(['POST'])
@permission_classes([HasHospital])
def exchange_cancel(request):
    s = CancelSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    ex = coordinator.cancel(s.validated_data['exchangeId'], hospital=request.user.hospital,
                            reason=s.validated_data.get('reason', ''), user=request.user)
    return Response({'ok': True, 'data': serialize_exchange(ex)})


@api_view(['GET'])
@permission_classes([HasHospital])
def exchange_list(request):
    q = ExchangeListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    vd = q.validated_data
    data, total = coordinator.list_exchanges(
        request.user.hospital,
        role=vd.get('role'),
        state=vd.get('state'),
        page=vd.get('page', 1),
        page_size=vd.get('pageSize', 20),
    )
    return Response({'ok': True, 'data': data, 'pagination': {'total': total, 'page': vd.get('page', 1), 'pageSize': vd.get('pageSize', 20)}})


@api_view(['GET'])
@permission_classes([HasHospital])
def exchange_detail(request, pk: int):
    ex = coordinator.get_exchange(pk, hospital=request.user.hospital)
    data = serialize_exchange(ex)
    data['transitions'] = coordinator.history(ex.id)
    return Response({'ok': True, 'data': data})
