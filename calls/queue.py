"""
calls/queue.py

Rate-limited screening call queue.

  RateGate.can_dispatch(now)            → GateDecision
  QueueScheduler.enqueue(ids, priority) → {"added": n, "skipped": m}
  QueueScheduler.tick(now)              → TickResult
  QueueScheduler.queue_stats(now)       → dict
  QueueScheduler.cleanup(now)           → number of deleted entries

The gate allows a dial only inside [CALLING_START_HOUR, CALLING_END_HOUR)
local time and while fewer than MAX_CALLS_PER_HOUR entries completed in the
trailing 60 minutes. A tick places at most one call. Entries are claimed with
a conditional UPDATE (pending → processing) so two overlapping ticks can never
dial the same entry, and the candidate row stays locked across the dial so a
redial job cannot dial the same candidate at the same time.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import Count, F, Min
from django.utils import timezone

from calls.models import CallQueueEntry
from calls.prompts import callback_prompt, screening_prompt
from calls.services import BolnaError, BolnaService
from candidates.models import Candidate
from candidates.transitions import (
    DIALABLE_STATUSES,
    can_transition,
    set_no_response,
    start_screening_call,
)
from hirecall.constants import NOT_AVAILABLE
from hirecall.time_utils import is_within_calling_hours, next_window_start, roll_into_window

logger = logging.getLogger(__name__)

Q = CallQueueEntry.Status


# ─────────────────────────────────────────────────────────────────────────────
# Rate Gate
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class GateDecision:
    allowed: bool
    reason: str = ""
    next_eligible_at: datetime | None = None
    calls_in_last_hour: int = 0
    remaining_slots: int = 0


class RateGate:
    """Stateless dial policy over persisted queue rows and the wall clock."""

    def __init__(self, max_calls_per_hour: int | None = None, recheck_minutes: int | None = None):
        self.max_calls_per_hour = (
            settings.MAX_CALLS_PER_HOUR if max_calls_per_hour is None else max_calls_per_hour
        )
        self.recheck_minutes = (
            settings.RATE_LIMIT_RECHECK_MINUTES if recheck_minutes is None else recheck_minutes
        )

    def calls_in_last_hour(self, now: datetime) -> int:
        return CallQueueEntry.objects.filter(
            status=Q.COMPLETED,
            called_at__gt=now - timedelta(hours=1),
            called_at__lte=now,
        ).count()

    def can_dispatch(self, now: datetime | None = None) -> GateDecision:
        now = now or timezone.now()

        if not is_within_calling_hours(now):
            return GateDecision(
                allowed=False,
                reason="Outside working hours",
                next_eligible_at=next_window_start(now),
            )

        count = self.calls_in_last_hour(now)
        if count >= self.max_calls_per_hour:
            return GateDecision(
                allowed=False,
                reason=f"Rate limit reached ({count}/{self.max_calls_per_hour} calls in last hour)",
                next_eligible_at=now + timedelta(minutes=self.recheck_minutes),
                calls_in_last_hour=count,
            )

        return GateDecision(
            allowed=True,
            next_eligible_at=now,
            calls_in_last_hour=count,
            remaining_slots=self.max_calls_per_hour - count,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Queue Scheduler
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TickResult:
    called: bool
    reason: str = ""
    entry_id: int | None = None
    run_id: str | None = None
    rescheduled: bool = False


class QueueScheduler:
    """
    Owns the CallQueueEntry lifecycle. Collaborators are injectable:

      gate  : RateGate
      caller: object exposing place_call(phone, prompt) → run_id, raising BolnaError
      rng   : random.Random used for the dial-spacing jitter
    """

    # Candidates considered per tick when earlier entries lose the claim race.
    CLAIM_CANDIDATES = 5

    def __init__(self, *, gate: RateGate | None = None, caller=None, rng: random.Random | None = None):
        self.gate = gate or RateGate()
        self.caller = caller or BolnaService()
        self.rng = rng or random.Random()
        self.min_delay = settings.MIN_DELAY_MINUTES
        self.max_delay = settings.MAX_DELAY_MINUTES
        self.max_attempts = settings.MAX_QUEUE_ATTEMPTS

    # ── Timing ─────────────────────────────────────────────────────────────────

    def next_available_slot(self, now: datetime) -> datetime:
        """First slot for a new batch: now + min delay, or the next window start."""
        if is_within_calling_hours(now):
            return roll_into_window(now + timedelta(minutes=self.min_delay))
        return next_window_start(now)

    def next_call_time(self, previous: datetime) -> datetime:
        """``previous`` plus a random whole-minute delay in [min, max], kept inside calling hours."""
        delay = max(1, self.rng.randint(self.min_delay, self.max_delay))
        return roll_into_window(previous + timedelta(minutes=delay))

    # ── Enqueue ────────────────────────────────────────────────────────────────

    def enqueue(self, candidate_ids, priority: int = 0, now: datetime | None = None) -> dict:
        """
        Add candidates to the queue, spacing their scheduled times apart.

        Skipped: unknown ids, candidates not in a dialable status, and
        candidates that already hold a pending or processing entry.
        Scheduled times are strictly increasing in the order given.
        """
        now = now or timezone.now()
        ordered_ids = list(dict.fromkeys(candidate_ids))
        added = 0

        with transaction.atomic():
            candidates = {
                c.pk: c
                for c in Candidate.objects.select_for_update().filter(pk__in=ordered_ids)
            }
            already_queued = set(
                CallQueueEntry.objects
                .filter(candidate_id__in=ordered_ids, status__in=[Q.PENDING, Q.PROCESSING])
                .values_list("candidate_id", flat=True)
            )

            scheduled_time = None
            for candidate_id in ordered_ids:
                candidate = candidates.get(candidate_id)
                if candidate is None or candidate.status not in DIALABLE_STATUSES:
                    continue
                if candidate_id in already_queued:
                    continue

                if scheduled_time is None:
                    scheduled_time = self.next_available_slot(now)
                else:
                    scheduled_time = self.next_call_time(scheduled_time)

                CallQueueEntry.objects.create(
                    candidate=candidate,
                    priority=priority,
                    scheduled_time=scheduled_time,
                )
                already_queued.add(candidate_id)
                added += 1

        skipped = len(ordered_ids) - added
        logger.info("Enqueued %s candidate(s), skipped %s", added, skipped)
        return {"added": added, "skipped": skipped}

    # ── Tick ───────────────────────────────────────────────────────────────────

    def tick(self, now: datetime | None = None) -> TickResult:
        """Place at most one screening call if the gate allows it."""
        now = now or timezone.now()

        decision = self.gate.can_dispatch(now)
        if not decision.allowed:
            logger.debug("Queue tick skipped: %s (next eligible %s)", decision.reason, decision.next_eligible_at)
            return TickResult(called=False, reason=decision.reason)

        entry = self._claim_next(now)
        if entry is None:
            return TickResult(called=False, reason="No eligible entries")

        try:
            with transaction.atomic():
                # Row lock held across the dial; redials re-check status under it.
                candidate = Candidate.objects.select_for_update().select_related("batch").get(pk=entry.candidate_id)
                if candidate.status not in DIALABLE_STATUSES:
                    CallQueueEntry.objects.filter(pk=entry.pk).update(
                        status=Q.FAILED,
                        updated_at=now,
                        error_message=f"Candidate no longer dialable ({candidate.get_status_display()})",
                    )
                    logger.info(
                        "Queue entry=%s dropped: candidate=%s status=%s", entry.pk, candidate.pk, candidate.status,
                    )
                    return TickResult(called=False, reason="Candidate not dialable", entry_id=entry.pk)

                if candidate.callback_requested:
                    prompt, kind = callback_prompt(candidate), "callback"
                else:
                    prompt, kind = screening_prompt(candidate), "screening"
                try:
                    run_id = self.caller.place_call(candidate.phone, prompt)
                except BolnaError as exc:
                    rescheduled = self._record_failure(entry, candidate, str(exc), now)
                    return TickResult(
                        called=False,
                        reason=f"Call failed: {exc}",
                        entry_id=entry.pk,
                        rescheduled=rescheduled,
                    )

                start_screening_call(
                    candidate, run_id=run_id, kind=kind, now=now, note="Screening call placed from queue",
                )
                CallQueueEntry.objects.filter(pk=entry.pk).update(
                    status=Q.COMPLETED,
                    updated_at=now,
                    called_at=now,
                    attempts=F("attempts") + 1,
                    error_message="",
                )
        except Exception:
            # Rolled back; hand the entry back for the next tick.
            CallQueueEntry.objects.filter(pk=entry.pk, status=Q.PROCESSING).update(status=Q.PENDING, updated_at=now)
            raise

        logger.info("Queue call placed: entry=%s candidate=%s run_id=%s", entry.pk, candidate.pk, run_id)
        return TickResult(called=True, entry_id=entry.pk, run_id=run_id)

    def _eligible(self, now: datetime):
        return (
            CallQueueEntry.objects
            .filter(status=Q.PENDING, scheduled_time__lte=now)
            .exclude(candidate__phone="")
            .exclude(candidate__phone=NOT_AVAILABLE)
            .order_by("-priority", "scheduled_time", "pk")
        )

    def _claim_next(self, now: datetime) -> CallQueueEntry | None:
        for entry_id in self._eligible(now).values_list("pk", flat=True)[: self.CLAIM_CANDIDATES]:
            claimed = CallQueueEntry.objects.filter(pk=entry_id, status=Q.PENDING).update(
                status=Q.PROCESSING,
                updated_at=now,
                last_attempt_time=now,
            )
            if claimed:
                return CallQueueEntry.objects.get(pk=entry_id)
        return None

    def _record_failure(self, entry: CallQueueEntry, candidate: Candidate, error: str, now: datetime) -> bool:
        """Count the failed dial; returns True when the entry was rescheduled."""
        attempts = entry.attempts + 1

        if attempts >= self.max_attempts:
            with transaction.atomic():
                CallQueueEntry.objects.filter(pk=entry.pk).update(
                    status=Q.FAILED,
                    updated_at=now,
                    attempts=attempts,
                    error_message=f"Max attempts reached: {error}",
                )
                locked = Candidate.objects.select_for_update().get(pk=candidate.pk)
                if can_transition(locked.status, Candidate.Status.NO_RESPONSE):
                    set_no_response(locked, note=f"Queue call failed {attempts} times")
            logger.warning(
                "Queue entry=%s failed permanently after %s attempts: candidate=%s error=%s",
                entry.pk, attempts, candidate.pk, error,
            )
            return False

        next_time = self.next_call_time(now)
        CallQueueEntry.objects.filter(pk=entry.pk).update(
            status=Q.PENDING,
            updated_at=now,
            attempts=attempts,
            scheduled_time=next_time,
            error_message=error,
        )
        logger.warning(
            "Queue call failed: entry=%s candidate=%s attempt=%s/%s, rescheduled for %s: %s",
            entry.pk, candidate.pk, attempts, self.max_attempts, next_time, error,
        )
        return True

    # ── Reporting & housekeeping ───────────────────────────────────────────────

    def queue_stats(self, now: datetime | None = None) -> dict:
        now = now or timezone.now()
        stats = {status: 0 for status in Q.values}
        for row in CallQueueEntry.objects.values("status").order_by().annotate(n=Count("pk")):
            stats[row["status"]] = row["n"]
        next_call = (
            CallQueueEntry.objects.filter(status=Q.PENDING).aggregate(t=Min("scheduled_time"))["t"]
        )
        calls_last_hour = self.gate.calls_in_last_hour(now)
        stats.update({
            "next_call_time": next_call,
            "calls_last_hour": calls_last_hour,
            "max_calls_per_hour": self.gate.max_calls_per_hour,
            "remaining_slots": max(0, self.gate.max_calls_per_hour - calls_last_hour),
        })
        return stats

    def cleanup(self, now: datetime | None = None) -> int:
        """Delete terminal entries untouched for QUEUE_RETENTION_DAYS."""
        now = now or timezone.now()
        cutoff = now - timedelta(days=settings.QUEUE_RETENTION_DAYS)
        deleted, _ = CallQueueEntry.objects.filter(
            status__in=[Q.COMPLETED, Q.FAILED],
            updated_at__lt=cutoff,
        ).delete()
        if deleted:
            logger.info("Cleaned up %s old queue entries", deleted)
        return deleted
