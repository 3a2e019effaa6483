"""
URL configuration for the newsletter app.
"""

from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import (
    CampaignViewSet, QueueSettingsView, QueueStatusView,
    track_click, track_open, unsubscribe, web_view
)

router = DefaultRouter()
router.register(r'campaigns', CampaignViewSet, basename='campaign')

app_name = 'newsletter'

urlpatterns = [
    path('api/newsletter/', include(router.urls)),
    path('api/newsletter/queue/', QueueStatusView.as_view(), name='queue-status'),
    path('api/newsletter/queue/settings/', QueueSettingsView.as_view(), name='queue-settings'),

    # Public tracking endpoints
    path('api/newsletter/track/open', track_open, name='track-open'),
    path('api/newsletter/track/click', track_click, name='track-click'),
    path('api/newsletter/track/unsubscribe', unsubscribe, name='unsubscribe'),
    path('api/newsletter/view', web_view, name='web-view'),
]
