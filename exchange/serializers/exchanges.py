from rest_framework import serializers

from exchange.models import ExchangeRequest
from exchange.services.exchanges import DECISIONS, ROLE_PROVIDER, ROLE_SEEKER


class ProposeSerializer(serializers.Serializer):
    requestId = serializers.IntegerField(min_value=1)
    listingId = serializers.IntegerField(min_value=1)
    quantity = serializers.IntegerField(min_value=1)


class RespondSerializer(serializers.Serializer):
    exchangeId = serializers.IntegerField(min_value=1)
    decision = serializers.ChoiceField(choices=list(DECISIONS))


class ExchangeActionSerializer(serializers.Serializer):
    exchangeId = serializers.IntegerField(min_value=1)


class CancelSerializer(ExchangeActionSerializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)


class ExchangeListQuerySerializer(serializers.Serializer):
    role = serializers.ChoiceField(choices=[ROLE_SEEKER, ROLE_PROVIDER], required=False)
    state = serializers.ChoiceField(choices=[c[0] for c in ExchangeRequest.STATE_CHOICES], required=False)
    page = serializers.IntegerField(min_value=1, required=False)
    pageSize = serializers.IntegerField(min_value=1, required=False)
