"""
scheduler/services.py

Single-candidate dials that bypass the rate-limited queue.

  redial_callback(candidate)       — candidate asked to be called back
  redial_follow_up(candidate)      — earlier dial was not picked up
  place_scheduling_call(candidate) — assessment-scheduling call after qualifying
  call_candidate_now(candidate)    — manual immediate screening dial

Each helper locks the candidate row for the duration of the dial, re-checks
that the candidate is still in the status it was selected for and that no
queue dial for it is in flight, then applies either the success transition
or the retry bookkeeping. BolnaError is the only failure handled here;
anything else propagates and rolls back.
"""

import logging
from datetime import datetime, timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from calls.models import CallQueueEntry
from calls.prompts import callback_prompt, scheduling_prompt, screening_prompt
from calls.services import BolnaError, BolnaService
from candidates.models import Candidate
from candidates.transitions import (
    DIALABLE_STATUSES,
    InvalidTransition,
    reschedule_callback,
    set_follow_up_scheduled,
    set_no_response,
    set_scheduling_failed,
    start_scheduling_call,
    start_screening_call,
)
from scheduler.timing import follow_up_time

logger = logging.getLogger(__name__)

S = Candidate.Status


def _lock(candidate: Candidate) -> Candidate:
    return Candidate.objects.select_for_update().select_related("batch").get(pk=candidate.pk)


def _queue_dial_in_flight(candidate: Candidate) -> bool:
    """The queue tick has claimed an entry for this candidate and may be dialling it."""
    return CallQueueEntry.objects.filter(
        candidate_id=candidate.pk,
        status=CallQueueEntry.Status.PROCESSING,
    ).exists()


# ── Callbacks ──────────────────────────────────────────────────────────────────

def redial_callback(candidate: Candidate, *, caller=None, now: datetime | None = None) -> bool:
    """
    Returns True when the call was placed.

    Failure increments callback_attempts and retries CALLBACK_RETRY_HOURS
    later, or ends in No Response once MAX_CALLBACK_ATTEMPTS is reached.
    """
    now = now or timezone.now()
    caller = caller or BolnaService()

    with transaction.atomic():
        locked = _lock(candidate)
        if locked.status != S.CALLBACK_SCHEDULED or not locked.callback_requested:
            return False
        if _queue_dial_in_flight(locked):
            logger.info("Callback skipped, queue dial in flight: candidate=%s", locked.pk)
            return False

        try:
            run_id = caller.place_call(locked.phone, callback_prompt(locked))
        except BolnaError as exc:
            _record_failed_callback(locked, exc, now)
            return False

        start_screening_call(locked, run_id=run_id, kind="callback", now=now, note="Callback call placed")

    logger.info("Callback call placed: candidate=%s run_id=%s", candidate.pk, run_id)
    return True


def _record_failed_callback(candidate: Candidate, error: Exception, now: datetime) -> None:
    attempts = candidate.callback_attempts + 1
    if attempts >= settings.MAX_CALLBACK_ATTEMPTS:
        set_no_response(
            candidate,
            callback_attempts=attempts,
            note=f"Callback failed {attempts} times: {error}",
        )
        logger.warning("Callback max attempts reached: candidate=%s error=%s", candidate.pk, error)
        return

    retry_at = now + timedelta(hours=settings.CALLBACK_RETRY_HOURS)
    reschedule_callback(candidate, callback_at=retry_at, attempts=attempts, now=now)
    logger.warning(
        "Callback failed: candidate=%s attempt=%s/%s, retry at %s: %s",
        candidate.pk, attempts, settings.MAX_CALLBACK_ATTEMPTS, retry_at, error,
    )


# ── Follow-ups ─────────────────────────────────────────────────────────────────

def redial_follow_up(candidate: Candidate, *, caller=None, now: datetime | None = None) -> bool:
    """Returns True when the call was placed."""
    now = now or timezone.now()
    caller = caller or BolnaService()

    with transaction.atomic():
        locked = _lock(candidate)
        if locked.status != S.FOLLOW_UP_SCHEDULED:
            return False
        if _queue_dial_in_flight(locked):
            logger.info("Follow-up skipped, queue dial in flight: candidate=%s", locked.pk)
            return False

        try:
            run_id = caller.place_call(locked.phone, screening_prompt(locked))
        except BolnaError as exc:
            _record_missed_dial(locked, exc, now)
            return False

        start_screening_call(locked, run_id=run_id, kind="follow_up", now=now, note="Follow-up call placed")

    logger.info("Follow-up call placed: candidate=%s run_id=%s", candidate.pk, run_id)
    return True


def _record_missed_dial(candidate: Candidate, error: Exception, now: datetime) -> None:
    """failed_attempts + 1, then a new follow-up slot or No Response at MAX_CALL_ATTEMPTS."""
    attempts = candidate.failed_attempts + 1
    if attempts >= settings.MAX_CALL_ATTEMPTS:
        set_no_response(candidate, failed_attempts=attempts, note=f"Call failed {attempts} times: {error}")
        logger.warning("Max call attempts reached: candidate=%s error=%s", candidate.pk, error)
        return

    next_slot = follow_up_time(now)
    set_follow_up_scheduled(
        candidate,
        follow_up_at=next_slot,
        failed_attempts=attempts,
        note=f"Call failed, follow-up at {next_slot:%Y-%m-%d %H:%M}",
    )
    logger.warning(
        "Call failed: candidate=%s attempt=%s/%s, follow-up at %s: %s",
        candidate.pk, attempts, settings.MAX_CALL_ATTEMPTS, next_slot, error,
    )


# ── Assessment scheduling ──────────────────────────────────────────────────────

def place_scheduling_call(candidate: Candidate, *, caller=None, now: datetime | None = None) -> bool:
    """
    One-shot scheduling call for a Qualified candidate. A failed dial is not
    retried: the candidate goes to Scheduling Failed for a recruiter.
    """
    now = now or timezone.now()
    caller = caller or BolnaService()

    with transaction.atomic():
        locked = _lock(candidate)
        if locked.status != S.QUALIFIED or locked.scheduling_call_due_at is None:
            return False

        try:
            run_id = caller.place_call(locked.phone, scheduling_prompt(locked))
        except BolnaError as exc:
            set_scheduling_failed(locked, reason=f"Scheduling call failed: {exc}"[:500])
            logger.error("Scheduling call failed: candidate=%s: %s", locked.pk, exc)
            return False

        start_scheduling_call(locked, run_id=run_id, now=now)

    logger.info("Scheduling call placed: candidate=%s run_id=%s", candidate.pk, run_id)
    return True


# ── Manual dial ────────────────────────────────────────────────────────────────

def call_candidate_now(candidate: Candidate, *, caller=None, now: datetime | None = None) -> str | None:
    """
    Dial a candidate immediately, outside the queue and its rate limit.

    Returns the run id, or None when the dial failed (the candidate then
    moves to Follow-Up Scheduled or No Response).

    Raises:
        InvalidTransition if the candidate is not in a dialable status or the
        call queue is dialling it.
    """
    now = now or timezone.now()
    caller = caller or BolnaService()

    with transaction.atomic():
        locked = _lock(candidate)
        if locked.status not in DIALABLE_STATUSES:
            raise InvalidTransition(
                f"Candidate #{locked.pk} cannot be dialled from status {locked.get_status_display()!r}."
            )
        if _queue_dial_in_flight(locked):
            raise InvalidTransition(f"Candidate #{locked.pk} is being dialled from the call queue.")

        if locked.callback_requested:
            prompt, kind = callback_prompt(locked), "callback"
        else:
            prompt, kind = screening_prompt(locked), "screening"
        try:
            run_id = caller.place_call(locked.phone, prompt)
        except BolnaError as exc:
            if locked.status == S.CALLBACK_SCHEDULED:
                _record_failed_callback(locked, exc, now)
            else:
                _record_missed_dial(locked, exc, now)
            return None

        start_screening_call(locked, run_id=run_id, kind=kind, now=now, note="Manual screening call placed")

    logger.info("Manual call placed: candidate=%s run_id=%s", candidate.pk, run_id)
    return run_id
