"""
Serializers for the newsletter operator API.
"""

from rest_framework import serializers

from .models import Campaign


class CampaignListSerializer(serializers.ModelSerializer):
    """Lightweight serializer for campaign lists."""

    class Meta:
        model = Campaign
        fields = [
            'id', 'title', 'subject', 'status', 'scheduled_at', 'sent_at',
            'total_recipients', 'total_sent', 'total_opened', 'total_clicked',
            'total_failed', 'created_at'
        ]
        read_only_fields = fields


class CampaignSerializer(serializers.ModelSerializer):

    class Meta:
        model = Campaign
        fields = [
            'id', 'title', 'subject', 'content', 'status', 'scheduled_at',
            'started_at', 'sent_at', 'completed_at', 'error_message',
            'total_recipients', 'total_sent', 'total_opened', 'total_clicked',
            'total_failed', 'total_unsubscribed', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class RecipientSerializer(serializers.Serializer):
    """
    One resolved recipient. Accepts subscriberId as sent by the dashboard.
    """

    subscriber_id = serializers.UUIDField(required=False)
    subscriberId = serializers.UUIDField(required=False, write_only=True)
    email = serializers.EmailField(required=False)
    name = serializers.CharField(required=False, allow_blank=True, max_length=200)

    def validate(self, attrs):
        camel_id = attrs.pop('subscriberId', None)
        if camel_id and not attrs.get('subscriber_id'):
            attrs['subscriber_id'] = camel_id
        if not attrs.get('subscriber_id') and not attrs.get('email'):
            raise serializers.ValidationError("Each recipient needs a subscriber id or an email")
        return attrs


class SendCampaignSerializer(serializers.Serializer):
    recipients = RecipientSerializer(many=True, required=False)


class ScheduleCampaignSerializer(serializers.Serializer):
    scheduled_at = serializers.DateTimeField()
