from rest_framework import serializers

from exchange.conf import exchange_setting


class ConversationListQuerySerializer(serializers.Serializer):
    page = serializers.IntegerField(min_value=1, required=False)
    pageSize = serializers.IntegerField(min_value=1, required=False)


class ConversationSendSerializer(serializers.Serializer):
    conversationId = serializers.IntegerField(min_value=1)
    content = serializers.CharField()

    def validate_content(self, v):
        v = (v or '').strip()
        if not v:
            raise serializers.ValidationError('message is empty')
        limit = exchange_setting('MESSAGE_MAX_LENGTH')
        if len(v) > limit:
            raise serializers.ValidationError(f'message longer than {limit} characters')
        return v


class ConversationReadSerializer(serializers.Serializer):
    conversationId = serializers.IntegerField(min_value=1)
    upToMessageId = serializers.IntegerField(min_value=1)
    status = serializers.ChoiceField(choices=['delivered', 'read'], required=False, default='read')


class ConversationHistoryQuerySerializer(serializers.Serializer):
    conversationId = serializers.IntegerField(min_value=1)
    page = serializers.IntegerField(min_value=1, required=False)
    pageSize = serializers.IntegerField(min_value=1, required=False)
