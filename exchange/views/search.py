from itertools import islice

from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from exchange.permissions import HasHospital
from exchange.serializers.search import SearchSerializer, serialize_candidate
from exchange.services.matching import match, submit_request


@api_view(['POST'])
@permission_classes([HasHospital])
def search(request):
    """Record the seeker's request and return ranked candidates for it."""
    s = SearchSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    vd = s.validated_data
    drug_request = submit_request(
        request.user.hospital,
        name=vd['drugName'],
        quantity=vd['quantity'],
        dosage=vd.get('dosage', ''),
        priority=vd['priority'],
        max_distance_km=vd.get('maxDistanceKm'),
    )
    candidates = match(drug_request, order=vd['sortBy'])
    data = [serialize_candidate(c) for c in islice(candidates, vd['limit'])]
    return Response({'ok': True, 'requestId': drug_request.id, 'data': data})
