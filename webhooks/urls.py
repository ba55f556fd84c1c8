"""
webhooks/urls.py

URL patterns for inbound webhook endpoints.

  POST /webhooks/bolna/       — Bolna call-completion event
  GET  /webhooks/bolna/last/  — recent payload buffer
"""

from django.urls import path

from webhooks import views

app_name = "webhooks"

urlpatterns = [
    path("bolna/", views.bolna_webhook, name="bolna"),
    path("bolna/last/", views.bolna_last_payloads, name="bolna_last"),
]
