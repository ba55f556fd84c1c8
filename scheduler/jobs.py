"""
scheduler/jobs.py

All background job definitions for the HireCall pipeline.
Registered and started by: scheduler/management/commands/run_scheduler.py

  process_call_queue                  every  1 min
  process_scheduled_callbacks         every  1 min
  process_follow_up_calls             every  1 min
  process_assessment_scheduling_calls every  1 min
  sweep_stale_calls                   every 30 min
  cleanup_call_queue                  daily at 02:00

Each function is decorated with @close_old_connections from django-apscheduler so
that Django DB connections opened in APScheduler's worker threads are always
returned to the pool (or closed) after each run, preventing "connection already
closed" errors in long-running processes.

Per-candidate failures are logged and the loop moves on, so one bad row
cannot stall a run.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django_apscheduler.util import close_old_connections

from calls.models import CallQueueEntry
from calls.queue import QueueScheduler
from calls.services import BolnaService
from candidates.models import Candidate
from candidates.transitions import CALLING_STATUSES, set_stale_call_review
from hirecall.time_utils import is_within_calling_hours
from scheduler.services import place_scheduling_call, redial_callback, redial_follow_up

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Job 1: process_call_queue  (every 1 min)
# ─────────────────────────────────────────────────────────────────────────────

@close_old_connections
def process_call_queue() -> None:
    """One queue tick: at most one rate-limited screening call."""
    try:
        result = QueueScheduler().tick()
    except Exception as exc:  # noqa: BLE001
        logger.error("process_call_queue failed: %s", exc, exc_info=True)
        return

    if result.called:
        logger.info("process_call_queue: placed call entry=%s run_id=%s", result.entry_id, result.run_id)
    else:
        logger.debug("process_call_queue: no call placed (%s)", result.reason)


# ─────────────────────────────────────────────────────────────────────────────
# Job 2: process_scheduled_callbacks  (every 1 min)
# ─────────────────────────────────────────────────────────────────────────────

@close_old_connections
def process_scheduled_callbacks() -> None:
    """
    Redial candidates whose requested callback time has arrived.
    Callbacks skip the hourly rate limit but respect calling hours.
    """
    now = timezone.now()
    if not is_within_calling_hours(now):
        logger.debug("process_scheduled_callbacks: outside calling hours")
        return

    due = list(
        Candidate.objects
        .filter(
            status=Candidate.Status.CALLBACK_SCHEDULED,
            callback_requested=True,
            callback_scheduled_time__lte=now,
            callback_attempts__lt=settings.MAX_CALLBACK_ATTEMPTS,
        )
        .order_by("callback_scheduled_time")
    )
    _dial_each(due, redial_callback, "process_scheduled_callbacks", now)


# ─────────────────────────────────────────────────────────────────────────────
# Job 3: process_follow_up_calls  (every 1 min)
# ─────────────────────────────────────────────────────────────────────────────

@close_old_connections
def process_follow_up_calls() -> None:
    """Redial candidates who did not pick up once their follow-up slot arrives."""
    now = timezone.now()
    if not is_within_calling_hours(now):
        logger.debug("process_follow_up_calls: outside calling hours")
        return

    due = list(
        Candidate.objects
        .filter(
            status=Candidate.Status.FOLLOW_UP_SCHEDULED,
            follow_up_time__lte=now,
            failed_attempts__lt=settings.MAX_CALL_ATTEMPTS,
        )
        .order_by("follow_up_time")
    )
    _dial_each(due, redial_follow_up, "process_follow_up_calls", now)


# ─────────────────────────────────────────────────────────────────────────────
# Job 4: process_assessment_scheduling_calls  (every 1 min)
# ─────────────────────────────────────────────────────────────────────────────

@close_old_connections
def process_assessment_scheduling_calls() -> None:
    """
    Place the one-shot scheduling call for qualified candidates once
    ASSESSMENT_SCHEDULING_DELAY_SECONDS have passed. Not rate limited.
    """
    now = timezone.now()
    due = list(
        Candidate.objects
        .filter(
            status=Candidate.Status.QUALIFIED,
            scheduling_call_due_at__isnull=False,
            scheduling_call_due_at__lte=now,
        )
        .order_by("scheduling_call_due_at")
    )
    _dial_each(due, place_scheduling_call, "process_assessment_scheduling_calls", now)


def _dial_each(candidates, dial, job_name: str, now) -> None:
    if not candidates:
        return
    service = BolnaService()
    placed = 0
    for candidate in candidates:
        try:
            if dial(candidate, caller=service, now=now):
                placed += 1
        except Exception as exc:  # noqa: BLE001
            logger.error("%s: candidate=%s failed: %s", job_name, candidate.pk, exc, exc_info=True)
    logger.info("%s: %s due, %s call(s) placed", job_name, len(candidates), placed)


# ─────────────────────────────────────────────────────────────────────────────
# Job 5: sweep_stale_calls  (every 30 min)
# ─────────────────────────────────────────────────────────────────────────────

@close_old_connections
def sweep_stale_calls() -> None:
    """
    Webhook fallback: a candidate left in a Calling status for longer than
    STALE_CALL_HOURS never received its completion event. Move them to
    Manual Review, and fail queue entries stuck in processing just as long.
    """
    hours = settings.STALE_CALL_HOURS
    now = timezone.now()
    cutoff = now - timedelta(hours=hours)

    stale_ids = list(
        Candidate.objects
        .filter(status__in=CALLING_STATUSES, last_call_started_at__lt=cutoff)
        .values_list("pk", flat=True)
    )
    swept = 0
    for candidate_id in stale_ids:
        try:
            with transaction.atomic():
                candidate = Candidate.objects.select_for_update().get(pk=candidate_id)
                if candidate.status not in CALLING_STATUSES:
                    continue
                set_stale_call_review(candidate, hours=hours)
                swept += 1
        except Exception as exc:  # noqa: BLE001
            logger.error("sweep_stale_calls: candidate=%s failed: %s", candidate_id, exc, exc_info=True)

    stuck_entries = CallQueueEntry.objects.filter(
        status=CallQueueEntry.Status.PROCESSING,
        last_attempt_time__lt=cutoff,
    ).update(
        status=CallQueueEntry.Status.FAILED,
        error_message=f"Stuck in processing for more than {hours}h",
        updated_at=now,
    )

    if swept or stuck_entries:
        logger.info(
            "sweep_stale_calls: %s candidate(s) to manual review, %s queue entr(ies) failed",
            swept,
            stuck_entries,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Job 6: cleanup_call_queue  (daily at 02:00)
# ─────────────────────────────────────────────────────────────────────────────

@close_old_connections
def cleanup_call_queue() -> None:
    try:
        QueueScheduler().cleanup()
    except Exception as exc:  # noqa: BLE001
        logger.error("cleanup_call_queue failed: %s", exc, exc_info=True)
