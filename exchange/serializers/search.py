from rest_framework import serializers

from exchange.models import DrugRequest
from exchange.services.matching import ORDERINGS


class SearchSerializer(serializers.Serializer):
    drugName = serializers.CharField(max_length=255)
    dosage = serializers.CharField(max_length=64, required=False, allow_blank=True)
    quantity = serializers.IntegerField(min_value=1)
    priority = serializers.ChoiceField(choices=[c[0] for c in DrugRequest.PRIORITY_CHOICES], required=False,
                                       default=DrugRequest.PRIORITY_MEDIUM)
    maxDistanceKm = serializers.FloatField(min_value=0, required=False, allow_null=True)
    sortBy = serializers.ChoiceField(choices=list(ORDERINGS), required=False, default='relevance')
    limit = serializers.IntegerField(min_value=1, max_value=200, required=False, default=50)


def serialize_candidate(c) -> dict:
    listing = c.listing
    return {
        "rank": c.rank,
        "listingId": c.listing_id,
        "requestId": c.request_id,
        "drugName": listing.raw_name,
        "dosage": listing.dosage,
        "din": listing.din,
        "hospitalId": listing.hospital_id,
        "hospitalName": listing.hospital.name,
        "availableQuantity": c.available_quantity,
        "expiryDate": c.expiry.isoformat() if c.expiry else None,
        "distanceKm": c.distance_km,
        "nameSimilarity": c.name_similarity,
        "dosageMatch": c.dosage_match,
        "score": c.composite_score,
    }
