"""
calls/utils.py

Shared utilities for call data processing.

Single source of truth for:
  - Transcript normalisation (string / list-of-turns / nested object → text)
  - Appending CallLog rows

Imported by webhooks/services.py and the scheduler.
"""

import json
import logging

from calls.models import CallLog

logger = logging.getLogger(__name__)

# Keys a transcript turn may use for the speaker and for the spoken text.
_ROLE_KEYS = ("role", "speaker", "sender")
_TEXT_KEYS = ("content", "message", "text")


def normalize_transcript(transcript) -> str:
    """
    Convert a provider transcript into a single text blob.

    Accepts:
      - plain strings (returned stripped)
      - lists of turns, either strings or dicts with a role/speaker and a
        content/message/text field, rendered as "Role: text" joined by blank lines
      - any other dict, serialised as indented JSON

    Example output:
      Assistant: Hi, is this a good time?

      User: Yes, go ahead.
    """
    if not transcript:
        return ""
    if isinstance(transcript, str):
        return transcript.strip()
    if isinstance(transcript, list):
        return "\n\n".join(filter(None, (_format_turn(turn) for turn in transcript)))
    if isinstance(transcript, dict):
        return json.dumps(transcript, indent=2, ensure_ascii=False)
    return str(transcript)


def _format_turn(turn) -> str:
    if isinstance(turn, str):
        return turn.strip()
    if not isinstance(turn, dict):
        return str(turn)
    role = next((turn[k] for k in _ROLE_KEYS if turn.get(k)), "")
    text = next((turn[k] for k in _TEXT_KEYS if turn.get(k)), "")
    if role and text:
        return f"{str(role).capitalize()}: {str(text).strip()}"
    if text:
        return str(text).strip()
    return json.dumps(turn, ensure_ascii=False)


def log_call(candidate, call_type: str, *, run_id=None, status: str, transcript: str = "", duration=None) -> CallLog:
    """Append one immutable CallLog row."""
    try:
        duration_seconds = int(float(duration)) if duration is not None else None
    except (TypeError, ValueError):
        duration_seconds = None
    entry = CallLog.objects.create(
        candidate=candidate,
        call_type=call_type,
        run_id=run_id,
        status=status,
        transcript=transcript or "",
        duration_seconds=duration_seconds,
    )
    logger.debug("CallLog=%s written: candidate=%s type=%s status=%s", entry.pk, candidate.pk, call_type, status)
    return entry
