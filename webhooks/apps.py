"""
webhooks/apps.py

AppConfig for the webhooks app.
Owns the bounded buffer of recently received payloads served by
GET /webhooks/bolna/last/.
"""

from collections import deque

from django.apps import AppConfig
from django.conf import settings


class WebhooksConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "webhooks"
    verbose_name = "Webhooks"

    def ready(self):
        self.recent_payloads = deque(maxlen=settings.WEBHOOK_PAYLOAD_BUFFER_SIZE)
