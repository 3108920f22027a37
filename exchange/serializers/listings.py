from rest_framework import serializers

from exchange.services.inventory import ListingInput


class ListingCreateSerializer(serializers.Serializer):
    drugName = serializers.CharField(max_length=255)
    quantity = serializers.IntegerField(min_value=1)
    din = serializers.CharField(max_length=16, required=False, allow_blank=True)
    dosage = serializers.CharField(max_length=64, required=False, allow_blank=True)
    expiryDate = serializers.DateField(required=False, allow_null=True)
    isShareable = serializers.BooleanField(required=False, default=True)
    notes = serializers.CharField(max_length=2000, required=False, allow_blank=True)

    def validate_drugName(self, v):
        v = (v or '').strip()
        if not v:
            raise serializers.ValidationError('drug name is required')
        return v

    def validate_din(self, v):
        v = (v or '').strip()
        if v and not v.isdigit():
            raise serializers.ValidationError('DIN must be numeric')
        return v

    def to_listing_input(self) -> ListingInput:
        vd = self.validated_data
        return ListingInput(
            name=vd['drugName'],
            quantity=vd['quantity'],
            din=vd.get('din', ''),
            dosage=vd.get('dosage', ''),
            expiry=vd.get('expiryDate'),
            shareable=vd.get('isShareable', True),
            notes=vd.get('notes', ''),
        )


class ListingUpdateSerializer(ListingCreateSerializer):
    listingId = serializers.IntegerField(min_value=1)


class ListingRemoveSerializer(serializers.Serializer):
    listingId = serializers.IntegerField(min_value=1)


class ListingListQuerySerializer(serializers.Serializer):
    scope = serializers.ChoiceField(choices=['mine', 'shared'], required=False, default='mine')
    q = serializers.CharField(max_length=64, required=False)
    includeInactive = serializers.BooleanField(required=False, default=False)
    page = serializers.IntegerField(min_value=1, required=False)
    pageSize = serializers.IntegerField(min_value=1, max_value=200, required=False)


class BulkImportSerializer(serializers.Serializer):
    rows = serializers.ListField(child=serializers.DictField(), allow_empty=False)


def serialize_listing(listing) -> dict:
    return {
        "id": listing.id,
        "hospitalId": listing.hospital_id,
        "hospitalName": listing.hospital.name,
        "drugName": listing.raw_name,
        "canonicalName": listing.canonical_name,
        "din": listing.din,
        "dosage": listing.dosage,
        "quantity": listing.quantity_total,
        "reserved": listing.quantity_reserved,
        "available": listing.quantity_available,
        "expiryDate": listing.expiry.isoformat() if listing.expiry else None,
        "isShareable": listing.shareable,
        "active": listing.active,
        "notes": listing.notes,
        "createdAt": listing.created_at.isoformat(),
        "updatedAt": listing.updated_at.isoformat(),
    }
