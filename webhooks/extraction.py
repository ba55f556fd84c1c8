"""
webhooks/extraction.py

Pulls the fields the dispatcher needs out of a Bolna webhook body.

Bolna has changed its payload layout over time, so every field is located
with an ordered list of paths. Paths start at either "data" (the event
container) or "body" (the raw payload); the first non-empty hit wins.
"""

import hashlib
import json
from dataclasses import dataclass

# Keys that may wrap the event; the body itself is used when none is present.
CONTAINER_KEYS = ("data", "execution", "call", "payload")

STATUS_PATHS = (
    ("data", "status"),
    ("body", "status"),
)

RUN_ID_PATHS = (
    ("data", "run_id"),
    ("data", "execution_id"),
    ("data", "id"),
    ("data", "call_id"),
    ("body", "run_id"),
)

TRANSCRIPT_PATHS = (
    ("data", "transcript"),
    ("data", "conversation"),
    ("data", "messages"),
    ("data", "analytics", "transcript"),
    ("data", "analytics", "conversation"),
    ("data", "analytics", "messages"),
    ("body", "transcript"),
)

EVENT_KEY_PATHS = (
    ("data", "timestamp"),
    ("data", "updated_at"),
    ("body", "timestamp"),
)

DURATION_PATHS = (
    ("data", "conversation_duration"),
    ("data", "duration"),
    ("data", "telephony_data", "duration"),
    ("body", "duration"),
)

FINAL_STATUS = "completed"


@dataclass(frozen=True)
class WebhookEvent:
    status: str
    run_id: str | None
    transcript: object
    event_key: str
    duration: object = None

    @property
    def is_final(self) -> bool:
        return self.status == FINAL_STATUS


def extract_event(payload) -> WebhookEvent:
    """Build a WebhookEvent from a decoded JSON body. Never raises."""
    body = payload if isinstance(payload, dict) else {}
    sources = {"data": find_container(body), "body": body}

    status = first_value(sources, STATUS_PATHS)
    run_id = first_value(sources, RUN_ID_PATHS)
    event_key = first_value(sources, EVENT_KEY_PATHS)

    return WebhookEvent(
        status=str(status).strip().lower() if status else "",
        run_id=str(run_id).strip() if run_id else None,
        transcript=first_value(sources, TRANSCRIPT_PATHS) or "",
        event_key=str(event_key) if event_key else payload_hash(body),
        duration=first_value(sources, DURATION_PATHS),
    )


def find_container(body: dict) -> dict:
    for key in CONTAINER_KEYS:
        value = body.get(key)
        if isinstance(value, dict) and value:
            return value
    return body


def first_value(sources: dict, paths):
    for root, *keys in paths:
        value = sources[root]
        for key in keys:
            value = value.get(key) if isinstance(value, dict) else None
        if value not in (None, "", [], {}):
            return value
    return None


def payload_hash(body: dict) -> str:
    """Stable digest of the payload, used when the event carries no timestamp."""
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
