"""
hirecall/urls.py

Root URL configuration.
"""

from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    # ── Admin ──────────────────────────────────────────────────────────────────
    path("admin/", admin.site.urls),

    # ── Webhooks (CSRF-exempt, no login required) ──────────────────────────────
    path("webhooks/", include("webhooks.urls", namespace="webhooks")),
]
