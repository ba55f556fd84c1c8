"""
webhooks/views.py

Inbound webhook endpoints.

  POST /webhooks/bolna/       — Bolna call-completion event
  GET  /webhooks/bolna/last/  — most recent raw payloads (debugging aid)

The POST view is CSRF-exempt (external services cannot obtain a CSRF token).
When BOLNA_WEBHOOK_SECRET is set, the shared secret is checked before any
processing occurs.
"""

import hmac
import json
import logging

from django.apps import apps
from django.conf import settings
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from webhooks.services import WebhookDispatcher

logger = logging.getLogger(__name__)


# ── Shared response helpers ────────────────────────────────────────────────────

def _ok(message: str = "ok") -> JsonResponse:
    return JsonResponse({"status": message}, status=200)


def _reject(reason: str, status: int = 401) -> JsonResponse:
    logger.warning("Webhook rejected: %s", reason)
    return JsonResponse({"error": reason}, status=status)


# ─────────────────────────────────────────────────────────────────────────────
# Bolna webhook
# ─────────────────────────────────────────────────────────────────────────────

@csrf_exempt
@require_POST
def bolna_webhook(request):
    """
    POST /webhooks/bolna/

    Receives execution updates from Bolna. Only the final event
    (status "completed") changes anything; see WebhookDispatcher for the
    full response policy.
    """
    # ── 1. Shared secret ───────────────────────────────────────────────────────
    secret = settings.BOLNA_WEBHOOK_SECRET
    if secret:
        supplied = _supplied_token(request)
        if not supplied:
            return _reject("Missing webhook token")
        if not hmac.compare_digest(supplied.encode(), secret.encode()):
            return _reject("Invalid webhook token")

    # ── 2. Parse body ──────────────────────────────────────────────────────────
    try:
        payload = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _reject("Invalid JSON body", status=400)

    _remember_payload(payload)

    # ── 3. Dispatch ────────────────────────────────────────────────────────────
    result = WebhookDispatcher().handle_event(payload)
    return JsonResponse(result.body, status=result.http_status)


@require_GET
def bolna_last_payloads(request):
    """
    GET /webhooks/bolna/last/

    Returns the most recent webhook bodies, newest first. Guarded by the same
    shared secret as the POST endpoint when one is configured.
    """
    secret = settings.BOLNA_WEBHOOK_SECRET
    if secret and not hmac.compare_digest(_supplied_token(request).encode(), secret.encode()):
        return _reject("Invalid webhook token")

    buffer = apps.get_app_config("webhooks").recent_payloads
    if not buffer:
        return JsonResponse({"message": "No webhook received yet", "payloads": []})
    return JsonResponse({"count": len(buffer), "payloads": list(reversed(buffer))})


# ── Helpers ────────────────────────────────────────────────────────────────────

def _supplied_token(request) -> str:
    token = request.META.get("HTTP_X_WEBHOOK_TOKEN", "")
    if token:
        return token
    auth = request.META.get("HTTP_AUTHORIZATION", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


def _remember_payload(payload) -> None:
    apps.get_app_config("webhooks").recent_payloads.append({
        "received_at": timezone.now().isoformat(),
        "payload": payload,
    })
