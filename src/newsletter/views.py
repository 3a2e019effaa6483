"""
Newsletter views.

Public tracking endpoints (open pixel, click redirect, unsubscribe, web
view) and the staff-only operator API for scheduling, sending, cancelling and
monitoring campaigns.
"""

import base64
import logging
import uuid

from django.http import HttpResponse, HttpResponseRedirect
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_http_methods
from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action, api_view, authentication_classes, permission_classes
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.response import Response
from rest_framework.views import APIView

from .analytics import CampaignAnalytics, QueueStatusReporter
from .conf import engine_setting
from .email_utils import render_newsletter
from .exceptions import InvalidStateError, InvalidTrackingToken
from .models import Campaign, DeliveryRecord, Subscriber, TrackingOutcome
from .sender import BatchSender, unsubscribe_subscriber
from .serializers import (
    CampaignListSerializer, CampaignSerializer, ScheduleCampaignSerializer, SendCampaignSerializer
)
from .tasks import process_newsletter_queue
from .tracking import TrackingCodec, is_allowed_destination

logger = logging.getLogger(__name__)

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode('R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7')


def _no_cache(response):
    response['Cache-Control'] = 'no-cache, no-store, must-revalidate'
    response['Pragma'] = 'no-cache'
    response['Expires'] = '0'
    return response


# Tracking endpoints. These never fail: the recipient always gets the
# pixel or the redirect, whatever happened while recording the event.

@require_http_methods(['GET', 'HEAD'])
def track_open(request):
    """Record an open and serve the tracking pixel."""
    try:
        token = TrackingCodec().decode(request.GET)
        outcome = DeliveryRecord.objects.record_open(token.campaign_id, token.subscriber_id)
        if outcome == TrackingOutcome.IGNORED:
            logger.info(
                f"Open ignored for campaign {token.campaign_id}, subscriber {token.subscriber_id}: "
                f"no sent delivery record"
            )
    except InvalidTrackingToken as e:
        logger.warning(f"Invalid open tracking request: {e}")
    except Exception as e:
        logger.error(f"Error recording email open: {e}", exc_info=True)

    return _no_cache(HttpResponse(TRACKING_PIXEL, content_type='image/gif'))


def _resolve_destination(params) -> str:
    fallback = engine_setting('FALLBACK_REDIRECT_URL')
    try:
        destination = TrackingCodec.decode_destination(params)
    except InvalidTrackingToken as e:
        logger.warning(f"Click redirect falls back to {fallback}: {e}")
        return fallback

    if not is_allowed_destination(destination, engine_setting('ALLOWED_REDIRECT_DOMAINS')):
        logger.warning(f"Click redirect to disallowed domain blocked: {destination}")
        return fallback
    return destination


@require_http_methods(['GET', 'HEAD'])
def track_click(request):
    """Record a click and redirect to the original link."""
    destination = _resolve_destination(request.GET)
    try:
        token = TrackingCodec().decode(request.GET)
        outcome = DeliveryRecord.objects.record_click(
            token.campaign_id, token.subscriber_id, request.GET.get('url', '')
        )
        if outcome == TrackingOutcome.IGNORED:
            logger.info(
                f"Click ignored for campaign {token.campaign_id}, subscriber {token.subscriber_id}: "
                f"no sent delivery record"
            )
    except InvalidTrackingToken as e:
        logger.warning(f"Invalid click tracking request: {e}")
    except Exception as e:
        logger.error(f"Error recording email click: {e}", exc_info=True)

    return _no_cache(HttpResponseRedirect(destination))


@require_http_methods(['GET'])
def web_view(request):
    """Show the newsletter in the browser. Counts as an open."""
    try:
        token = TrackingCodec().decode(request.GET)
    except InvalidTrackingToken as e:
        logger.warning(f"Invalid web view request: {e}")
        return HttpResponse("Lien invalide", status=400, content_type='text/plain; charset=utf-8')

    delivery = get_object_or_404(
        DeliveryRecord.objects.select_related('campaign', 'subscriber'),
        campaign_id=token.campaign_id,
        subscriber_id=token.subscriber_id
    )
    DeliveryRecord.objects.record_open(token.campaign_id, token.subscriber_id)

    message = render_newsletter(delivery.campaign, delivery)
    return _no_cache(HttpResponse(message.html_body, content_type='text/html; charset=utf-8'))


def _campaign_id_param(value):
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning(f"Ignoring malformed campaign id on unsubscribe: {value!r}")
        return None


@api_view(['GET', 'POST'])
@authentication_classes([])
@permission_classes([permissions.AllowAny])
def unsubscribe(request):
    """
    Unsubscribe endpoint.

    GET checks a token, POST (also used for one-click List-Unsubscribe)
    applies it.
    """
    token = request.data.get('token') if request.method == 'POST' else None
    token = token or request.query_params.get('token')
    if not token:
        return Response({'error': 'Token manquant'}, status=status.HTTP_400_BAD_REQUEST)

    if request.method == 'GET':
        subscriber = Subscriber.objects.filter(unsubscribe_token=token).first()
        if subscriber is None:
            return Response({'valid': False, 'error': 'Token invalide'}, status=status.HTTP_404_NOT_FOUND)
        return Response({
            'valid': True,
            'email': subscriber.email,
            'isActive': subscriber.is_active,
        })

    campaign_id = _campaign_id_param(request.data.get('c') or request.query_params.get('c'))
    try:
        subscriber = unsubscribe_subscriber(token, campaign_id)
    except Subscriber.DoesNotExist:
        return Response({'error': 'Token invalide'}, status=status.HTTP_404_NOT_FOUND)

    return Response({
        'status': 'success',
        'message': 'Vous avez été désabonné de la newsletter',
        'email': subscriber.email,
    })


class CampaignViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Operator API for newsletter campaigns.

    Supports:
    - Campaign list and detail
    - Scheduling, starting and cancelling a send
    - Live delivery and engagement stats
    """

    queryset = Campaign.objects.all()
    permission_classes = [permissions.IsAdminUser]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = ['status']
    search_fields = ['title', 'subject']
    ordering_fields = ['title', 'status', 'scheduled_at', 'sent_at', 'created_at']
    ordering = ['-created_at']

    def get_serializer_class(self):
        """Use lightweight serializer for list view."""
        if self.action == 'list':
            return CampaignListSerializer
        return CampaignSerializer

    @action(detail=True, methods=['post'])
    def send(self, request, pk=None):
        """
        Queue a campaign for sending.

        Optional body: {"recipients": [{"subscriberId", "email", "name"}]}.
        Without recipients every active, verified subscriber is used.
        """
        campaign = self.get_object()
        serializer = SendCampaignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        recipients = serializer.validated_data.get('recipients')

        sender = BatchSender()
        try:
            result = sender.start_campaign(campaign.pk, recipients)
        except InvalidStateError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        process_newsletter_queue.delay()

        campaign.refresh_from_db()
        return Response({
            'status': 'success',
            'message': f'Campaign queued for {result.queued} recipients',
            'campaign': CampaignSerializer(campaign).data,
            'stats': {
                'totalRecipients': result.total_recipients,
                'queued': result.queued,
                'batchSize': sender.batch_size,
                'sendIntervalMs': sender.send_interval_ms,
            },
            'queueStatus': QueueStatusReporter().get_queue_status(),
        }, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=['post'])
    def schedule(self, request, pk=None):
        """Schedule a draft campaign. Body: {"scheduled_at": <ISO datetime>}."""
        campaign = self.get_object()
        serializer = ScheduleCampaignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            campaign = BatchSender().schedule_campaign(
                campaign.pk, serializer.validated_data['scheduled_at']
            )
        except InvalidStateError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        return Response({
            'status': 'success',
            'message': 'Campaign scheduled',
            'campaign': CampaignSerializer(campaign).data,
        })

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        """Cancel a scheduled or sending campaign."""
        campaign = self.get_object()
        try:
            campaign = BatchSender().cancel_campaign(campaign.pk)
        except InvalidStateError as e:
            return Response({'error': str(e)}, status=status.HTTP_400_BAD_REQUEST)

        return Response({
            'status': 'success',
            'message': 'Campaign cancelled',
            'campaign': CampaignSerializer(campaign).data,
        })

    @action(detail=True, methods=['get'])
    def stats(self, request, pk=None):
        """Live stats for the campaign dashboard."""
        campaign = self.get_object()
        return Response(CampaignAnalytics().get_campaign_stats(campaign))


class QueueStatusView(APIView):
    """Pending, processing, completed and failed queue job counts."""

    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        return Response(QueueStatusReporter().get_queue_status())


class QueueSettingsView(APIView):
    """Dispatch pacing currently in effect."""

    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        return Response(QueueStatusReporter().get_operational_settings())
