"""
webhooks/services.py

Applies Bolna call-completion events to candidates.

  WebhookDispatcher.handle_event(payload) → WebhookResult(http_status, body)

Response policy:
  200 ignored        — event is not final (status != "completed")
  400                — no run id in a final event
  200 unknown_run_id — run id matches no candidate; nothing is written
  200 duplicate      — event already applied, or the candidate is no longer
                       waiting for that call
  200 ok             — applied (LLM or email failures are part of "applied")
  500                — database error; the transaction is rolled back so the
                       provider's redelivery is processed from scratch

The transcript is scored before any row lock is taken. The candidate row is
then locked, its status re-checked, the event recorded in the
ProcessedWebhookEvent ledger and the outcome applied in one transaction.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from calls.models import CallLog
from calls.utils import log_call, normalize_transcript
from candidates.models import Candidate
from candidates.transitions import (
    record_scheduling_result,
    record_screening_result,
    set_assessment_scheduled,
    set_callback_scheduled,
    set_manual_review,
    set_qualified,
    set_rejected,
    set_scheduling_pending,
)
from evaluations.services import ClaudeService, ClaudeServiceError
from hirecall.time_utils import to_local
from scheduler.timing import parse_callback_time
from webhooks.extraction import WebhookEvent, extract_event
from webhooks.models import ProcessedWebhookEvent

logger = logging.getLogger(__name__)

SCREENING = "screening"
SCHEDULING = "scheduling"

_EXPECTED_STATUS = {
    SCREENING: Candidate.Status.CALLING_SCREENING,
    SCHEDULING: Candidate.Status.CALLING_SCHEDULING,
}


@dataclass
class WebhookResult:
    http_status: int
    body: dict = field(default_factory=dict)


class _AlreadyApplied(Exception):
    """The event was processed before, or the candidate moved on."""


class WebhookDispatcher:
    """
    Collaborators are injectable for tests:

      scorer : object exposing score_screening_transcript() and
               score_scheduling_transcript(); defaults to ClaudeService
      mailer : callable(candidate) → bool sending the assessment link;
               defaults to messaging.services.send_assessment_link
    """

    def __init__(self, *, scorer=None, mailer=None):
        self._scorer = scorer
        self._mailer = mailer

    @property
    def scorer(self):
        if self._scorer is None:
            self._scorer = ClaudeService()
        return self._scorer

    @property
    def mailer(self):
        if self._mailer is None:
            from messaging.services import send_assessment_link
            self._mailer = send_assessment_link
        return self._mailer

    # ── Entry point ────────────────────────────────────────────────────────────

    def handle_event(self, payload, now: datetime | None = None) -> WebhookResult:
        now = now or timezone.now()
        event = extract_event(payload)

        if not event.is_final:
            logger.info("Ignoring Bolna event with status=%r", event.status)
            return WebhookResult(200, {"status": "ignored", "reason": "Not final webhook"})

        if not event.run_id:
            logger.error("Final Bolna event carries no run id")
            return WebhookResult(400, {"error": "Missing run_id in webhook"})

        candidate = (
            Candidate.objects
            .select_related("batch")
            .filter(Q(screening_run_id=event.run_id) | Q(scheduling_run_id=event.run_id))
            .first()
        )
        if candidate is None:
            logger.warning("No candidate matched run_id=%s", event.run_id)
            return WebhookResult(200, {"status": "unknown_run_id"})

        call_type = self._route(candidate, event.run_id)

        if self._already_applied(candidate, event, call_type):
            logger.info("Duplicate Bolna event: run_id=%s candidate=%s", event.run_id, candidate.pk)
            return WebhookResult(200, {"status": "duplicate"})

        try:
            if call_type == SCHEDULING:
                confirmed = self._handle_scheduling(candidate, event, now)
            else:
                self._handle_screening(candidate, event, now)
                confirmed = False
        except _AlreadyApplied:
            logger.info("Duplicate Bolna event: run_id=%s candidate=%s", event.run_id, candidate.pk)
            return WebhookResult(200, {"status": "duplicate"})
        except DatabaseError as exc:
            logger.error(
                "Database error applying Bolna event run_id=%s candidate=%s: %s",
                event.run_id, candidate.pk, exc,
                exc_info=True,
            )
            return WebhookResult(500, {"error": "database_error"})

        if confirmed and settings.ASSESSMENT_AUTO_SEND_LINK:
            self._send_link(candidate)

        return WebhookResult(200, {"status": "ok", "call_type": call_type, "candidate_id": candidate.pk})

    # ── Routing & idempotency ──────────────────────────────────────────────────

    @staticmethod
    def _route(candidate: Candidate, run_id: str) -> str:
        if run_id == candidate.screening_run_id:
            return SCREENING
        if run_id == candidate.scheduling_run_id:
            return SCHEDULING
        return SCREENING

    @staticmethod
    def _already_applied(candidate: Candidate, event: WebhookEvent, call_type: str) -> bool:
        if candidate.status != _EXPECTED_STATUS[call_type]:
            return True
        return ProcessedWebhookEvent.objects.filter(run_id=event.run_id, event_key=event.event_key).exists()

    @staticmethod
    def _lock_for(candidate: Candidate, event: WebhookEvent, call_type: str) -> Candidate:
        """
        Lock the candidate, re-check it is still waiting for this call and
        record the event. Must run inside transaction.atomic().
        """
        locked = Candidate.objects.select_for_update().select_related("batch").get(pk=candidate.pk)
        if locked.status != _EXPECTED_STATUS[call_type]:
            raise _AlreadyApplied()
        try:
            with transaction.atomic():
                ProcessedWebhookEvent.objects.create(
                    run_id=event.run_id,
                    event_key=event.event_key,
                    call_type=call_type,
                )
        except IntegrityError as exc:
            raise _AlreadyApplied() from exc
        return locked

    # ── Screening ──────────────────────────────────────────────────────────────

    def _handle_screening(self, candidate: Candidate, event: WebhookEvent, now: datetime) -> None:
        transcript = normalize_transcript(event.transcript)
        score, error = None, ""
        try:
            score = self.scorer.score_screening_transcript(
                transcript,
                screening_context(candidate),
                candidate.batch.requirements,
            )
        except ClaudeServiceError as exc:
            error = str(exc)
            logger.error("Screening scoring failed: candidate=%s run_id=%s: %s", candidate.pk, event.run_id, exc)

        with transaction.atomic():
            locked = self._lock_for(candidate, event, SCREENING)
            dial_kind = locked.screening_call_kind or CallLog.CallType.SCREENING

            if score is None:
                locked.screening_transcript = transcript
                locked.save(update_fields=["screening_transcript", "updated_at"])
                set_manual_review(locked, reason=f"Transcript scoring failed: {error}"[:500])
                log_status = "scoring_failed"
                call_type = dial_kind

            elif score.callback_requested:
                callback_at = parse_callback_time(score.callback_time_text, now)
                set_callback_scheduled(
                    locked,
                    callback_at=callback_at,
                    reason=score.callback_reason,
                    transcript=transcript,
                    note=f"Callback requested for {to_local(callback_at):%Y-%m-%d %H:%M}",
                )
                log_status = "callback_requested"
                call_type = CallLog.CallType.SCREENING_CALLBACK_REQUEST

            else:
                record_screening_result(locked, score, transcript=transcript)
                log_status = self._apply_qualification(locked, score, now)
                call_type = dial_kind

            log_call(
                locked,
                call_type,
                run_id=event.run_id,
                status=log_status,
                transcript=transcript,
                duration=event.duration,
            )

        logger.info(
            "Screening webhook applied: candidate=%s run_id=%s outcome=%s",
            candidate.pk, event.run_id, log_status,
        )

    @staticmethod
    def _apply_qualification(candidate: Candidate, score, now: datetime) -> str:
        """Threshold check on the persisted overall score; returns the call-log status."""
        if not score.has_score:
            set_manual_review(candidate, reason="Screening produced no qualification score")
            return "manual_review"

        threshold = settings.QUALIFICATION_THRESHOLD
        if score.overall >= threshold:
            due_at = now + timedelta(seconds=settings.ASSESSMENT_SCHEDULING_DELAY_SECONDS)
            set_qualified(
                candidate,
                scheduling_due_at=due_at,
                note=f"Scored {score.overall} (threshold {threshold})",
            )
            return "qualified"

        set_rejected(candidate, note=f"Scored {score.overall} (threshold {threshold})")
        return "rejected"

    # ── Scheduling ─────────────────────────────────────────────────────────────

    def _handle_scheduling(self, candidate: Candidate, event: WebhookEvent, now: datetime) -> bool:
        """Returns True when the candidate confirmed an assessment slot."""
        transcript = normalize_transcript(event.transcript)
        outcome = None
        try:
            outcome = self.scorer.score_scheduling_transcript(transcript, to_local(now).date())
        except ClaudeServiceError as exc:
            logger.error("Scheduling extraction failed: candidate=%s run_id=%s: %s", candidate.pk, event.run_id, exc)

        confirmed = outcome is not None and outcome.is_confirmed

        with transaction.atomic():
            locked = self._lock_for(candidate, event, SCHEDULING)
            record_scheduling_result(locked, outcome, transcript=transcript)
            if confirmed:
                set_assessment_scheduled(
                    locked,
                    note=f"Assessment agreed for {outcome.assessment_date} {outcome.assessment_time:%H:%M}",
                )
                log_status = "assessment_scheduled"
            else:
                set_scheduling_pending(locked, note="Scheduling call did not confirm date, time and email")
                log_status = "pending_confirmation"
            log_call(
                locked,
                CallLog.CallType.SCHEDULING,
                run_id=event.run_id,
                status=log_status,
                transcript=transcript,
                duration=event.duration,
            )

        logger.info(
            "Scheduling webhook applied: candidate=%s run_id=%s outcome=%s",
            candidate.pk, event.run_id, log_status,
        )
        return confirmed

    def _send_link(self, candidate: Candidate) -> None:
        candidate.refresh_from_db()
        try:
            self.mailer(candidate)
        except Exception as exc:
            logger.error("Assessment link send failed: candidate=%s: %s", candidate.pk, exc, exc_info=True)


def screening_context(candidate: Candidate) -> dict:
    """Resume-derived facts handed to the scorer alongside the transcript."""
    return {
        "name": candidate.name,
        "skills": candidate.skills,
        "skills_matched": candidate.skills_matched,
        "years_of_experience": candidate.years_of_experience,
        "current_company": candidate.current_company,
        "notice_period": candidate.notice_period,
    }
