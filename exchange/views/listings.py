from django.utils import timezone
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from exchange.permissions import HasHospital
from exchange.serializers.listings import (
    BulkImportSerializer,
    ListingCreateSerializer,
    ListingListQuerySerializer,
    ListingRemoveSerializer,
    ListingUpdateSerializer,
    serialize_listing,
)
from exchange.services import inventory


@api_view(['GET', 'POST'])
@permission_classes([HasHospital])
def listings(request):
    if request.method == 'POST':
        s = ListingCreateSerializer(data=request.data)
        s.is_valid(raise_exception=True)
        listing = inventory.upsert_listing(request.user.hospital, s.to_listing_input(), user=request.user)
        return Response({'ok': True, 'data': serialize_listing(listing)}, status=201)

    q = ListingListQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    vd = q.validated_data
    if vd.get('scope') == 'shared':
        # Other hospitals' stock that is currently on offer.
        flt = inventory.ListingFilter(
            exclude_hospital_id=request.user.hospital_id,
            shareable_only=True,
            available_only=True,
            not_expired_on=timezone.localdate(),
            q=vd.get('q'),
        )
    else:
        flt = inventory.ListingFilter(
            hospital_id=request.user.hospital_id,
            include_inactive=vd.get('includeInactive', False),
            q=vd.get('q'),
        )
    qs = inventory.query(flt)
    page = vd.get('page', 1)
    page_size = vd.get('pageSize', 20)
    total = qs.count()
    start = (page - 1) * page_size
    data = [serialize_listing(x) for x in qs[start:start + page_size]]
    return Response({'ok': True, 'data': data, 'pagination': {'total': total, 'page': page, 'pageSize': page_size}})


@api_view(['POST'])
@permission_classes([HasHospital])
def listing_update(request):
    s = ListingUpdateSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    listing = inventory.upsert_listing(
        request.user.hospital, s.to_listing_input(), listing_id=s.validated_data['listingId'], user=request.user,
    )
    return Response({'ok': True, 'data': serialize_listing(listing)})


@api_view(['POST'])
@permission_classes([HasHospital])
def listing_remove(request):
    s = ListingRemoveSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    removed = inventory.remove_listing(s.validated_data['listingId'], hospital=request.user.hospital,
                                       user=request.user)
    return Response({'ok': True, 'removed': removed})


@api_view(['POST'])
@permission_classes([HasHospital])
def listing_bulk_import(request):
    s = BulkImportSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    result = inventory.bulk_import(request.user.hospital, s.validated_data['rows'], user=request.user)
    return Response({'ok': True, 'created': result.created, 'errors': result.errors})

listing_bulk_import.throttle_scope = 'bulk_import'
