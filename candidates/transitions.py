"""
candidates/transitions.py

The candidate call lifecycle. Every status change goes through
transition_status(), which enforces the allowed-transition map and writes a
StatusChange audit row. The set_*/mark_* helpers bundle a transition with the
fields that belong to it so both land in a single field-level UPDATE; no
helper ever saves the full row.

Callers are expected to hold the candidate row lock (select_for_update) when
the transition depends on the current status.
"""

from django.db import transaction
from django.utils import timezone

from candidates.models import Candidate

S = Candidate.Status
CS = Candidate.CallStatus

ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    S.NEW: frozenset({S.CALLING_SCREENING, S.FOLLOW_UP_SCHEDULED, S.NO_RESPONSE}),
    S.CALLING_SCREENING: frozenset({
        S.QUALIFIED,
        S.REJECTED,
        S.MANUAL_REVIEW,
        S.CALLBACK_SCHEDULED,
        S.FOLLOW_UP_SCHEDULED,
        S.NO_RESPONSE,
    }),
    S.CALLBACK_SCHEDULED: frozenset({S.CALLING_SCREENING, S.NO_RESPONSE}),
    S.FOLLOW_UP_SCHEDULED: frozenset({S.CALLING_SCREENING, S.NO_RESPONSE}),
    S.QUALIFIED: frozenset({S.CALLING_SCHEDULING, S.SCHEDULING_FAILED}),
    S.CALLING_SCHEDULING: frozenset({
        S.ASSESSMENT_SCHEDULED,
        S.SCHEDULING_PENDING,
        S.MANUAL_REVIEW,
    }),
    S.ASSESSMENT_SCHEDULED: frozenset({S.ASSESSMENT_LINK_SENT}),
}

# Statuses from which an automated screening dial may be placed.
DIALABLE_STATUSES = frozenset({S.NEW, S.FOLLOW_UP_SCHEDULED, S.CALLBACK_SCHEDULED})

# Statuses meaning a call is in flight and a webhook is expected.
CALLING_STATUSES = frozenset({S.CALLING_SCREENING, S.CALLING_SCHEDULING})


class InvalidTransition(Exception):
    """Raised when a status change is not allowed from the current status."""


def _default_note(status: str) -> str:
    return f"Automatic transition to {Candidate.Status(status).label}"


def can_transition(from_status: str, to_status: str) -> bool:
    return from_status == to_status or to_status in ALLOWED_TRANSITIONS.get(from_status, ())


def transition_status(
    candidate: Candidate,
    new_status: str,
    *,
    note: str | None = None,
    fields=(),
) -> None:
    """
    Move ``candidate`` to ``new_status`` and save ``fields`` alongside it.
    A transition to the current status only saves ``fields``.

    Raises:
        InvalidTransition when the move is not in ALLOWED_TRANSITIONS.
    """
    if not can_transition(candidate.status, new_status):
        raise InvalidTransition(
            f"Candidate #{candidate.pk}: {candidate.status} → {new_status} is not allowed."
        )
    candidate.change_status(
        new_status,
        note=note or _default_note(new_status),
        extra_fields=tuple(fields),
    )


# ── Screening ──────────────────────────────────────────────────────────────────

def start_screening_call(
    candidate: Candidate,
    *,
    run_id: str,
    kind: str = "screening",
    now=None,
    note: str | None = None,
) -> None:
    """
    A screening dial was accepted by the provider. ``kind`` is the CallLog
    call_type the completion webhook is logged under (screening, callback or
    follow_up).
    """
    candidate.screening_run_id = run_id
    candidate.screening_call_kind = kind
    candidate.call_status = CS.CALLING_SCREENING
    candidate.last_call_started_at = now or timezone.now()
    candidate.callback_requested = False
    candidate.callback_scheduled_time = None
    candidate.follow_up_time = None
    transition_status(
        candidate,
        S.CALLING_SCREENING,
        note=note,
        fields=(
            "screening_run_id",
            "screening_call_kind",
            "call_status",
            "last_call_started_at",
            "callback_requested",
            "callback_scheduled_time",
            "follow_up_time",
        ),
    )


def set_callback_scheduled(
    candidate: Candidate,
    *,
    callback_at,
    reason: str,
    transcript: str = "",
    note: str | None = None,
) -> None:
    """The candidate asked to be called back. Attempts restart from zero."""
    candidate.callback_requested = True
    candidate.callback_scheduled_time = callback_at
    candidate.callback_reason = reason or ""
    candidate.callback_attempts = 0
    candidate.call_status = CS.CALLBACK_REQUESTED
    candidate.screening_transcript = transcript or ""
    transition_status(
        candidate,
        S.CALLBACK_SCHEDULED,
        note=note,
        fields=(
            "callback_requested",
            "callback_scheduled_time",
            "callback_reason",
            "callback_attempts",
            "call_status",
            "screening_transcript",
        ),
    )


def reschedule_callback(candidate: Candidate, *, callback_at, attempts: int, now=None) -> None:
    """A callback redial failed below the ceiling; try again later."""
    candidate.callback_scheduled_time = callback_at
    candidate.callback_attempts = attempts
    candidate.last_callback_attempt = now or timezone.now()
    transition_status(
        candidate,
        S.CALLBACK_SCHEDULED,
        fields=("callback_scheduled_time", "callback_attempts", "last_callback_attempt"),
    )


def record_screening_result(candidate: Candidate, result, *, transcript: str) -> None:
    """
    Persist every per-criterion score together with the derived overall
    score. This is the only writer of overall_qualification_score.
    """
    for field, points in result.criteria.items():
        setattr(candidate, field, points)
    candidate.overall_qualification_score = result.overall
    candidate.qualification_breakdown = result.breakdown
    candidate.conversation_summary = result.summary or ""
    candidate.job_interest = result.job_interest or ""
    candidate.stated_notice_period = result.notice_period or ""
    candidate.stated_budget = result.budget or ""
    candidate.stated_location = result.location or ""
    candidate.recommendation = result.recommendation or ""
    candidate.screening_transcript = transcript or ""
    candidate.call_status = CS.SCREENING_COMPLETED
    candidate.save(update_fields=[
        *result.criteria.keys(),
        "overall_qualification_score",
        "qualification_breakdown",
        "conversation_summary",
        "job_interest",
        "stated_notice_period",
        "stated_budget",
        "stated_location",
        "recommendation",
        "screening_transcript",
        "call_status",
        "updated_at",
    ])


def set_qualified(candidate: Candidate, *, scheduling_due_at, note: str | None = None) -> None:
    """Score at or above threshold; the assessment-scheduling call is due at ``scheduling_due_at``."""
    candidate.scheduling_call_due_at = scheduling_due_at
    transition_status(candidate, S.QUALIFIED, note=note, fields=("scheduling_call_due_at",))


def set_rejected(candidate: Candidate, *, note: str | None = None) -> None:
    transition_status(candidate, S.REJECTED, note=note)


def set_manual_review(candidate: Candidate, *, reason: str, call_status: str | None = None) -> None:
    candidate.manual_review_reason = reason
    fields = ["manual_review_reason"]
    if call_status:
        candidate.call_status = call_status
        fields.append("call_status")
    transition_status(candidate, S.MANUAL_REVIEW, note=reason, fields=fields)


# ── No answer / retries ────────────────────────────────────────────────────────

def set_follow_up_scheduled(
    candidate: Candidate,
    *,
    follow_up_at,
    failed_attempts: int,
    note: str | None = None,
) -> None:
    candidate.follow_up_time = follow_up_at
    candidate.failed_attempts = failed_attempts
    candidate.call_status = CS.DID_NOT_PICK_UP
    transition_status(
        candidate,
        S.FOLLOW_UP_SCHEDULED,
        note=note,
        fields=("follow_up_time", "failed_attempts", "call_status"),
    )


def set_no_response(
    candidate: Candidate,
    *,
    failed_attempts: int | None = None,
    callback_attempts: int | None = None,
    note: str | None = None,
) -> None:
    """Terminal: an attempts ceiling was reached, no further automated dials."""
    fields = ["call_status", "callback_requested", "follow_up_time"]
    candidate.call_status = CS.FAILED_NO_RESPONSE
    candidate.callback_requested = False
    candidate.follow_up_time = None
    if failed_attempts is not None:
        candidate.failed_attempts = failed_attempts
        fields.append("failed_attempts")
    if callback_attempts is not None:
        candidate.callback_attempts = callback_attempts
        candidate.last_callback_attempt = timezone.now()
        fields += ["callback_attempts", "last_callback_attempt"]
    transition_status(candidate, S.NO_RESPONSE, note=note, fields=fields)


# ── Assessment scheduling ──────────────────────────────────────────────────────

def start_scheduling_call(candidate: Candidate, *, run_id: str, now=None) -> None:
    candidate.scheduling_run_id = run_id
    candidate.call_status = CS.CALLING_SCHEDULING
    candidate.scheduling_call_due_at = None
    candidate.last_call_started_at = now or timezone.now()
    transition_status(
        candidate,
        S.CALLING_SCHEDULING,
        fields=("scheduling_run_id", "call_status", "scheduling_call_due_at", "last_call_started_at"),
    )


def set_scheduling_failed(candidate: Candidate, *, reason: str) -> None:
    candidate.scheduling_call_due_at = None
    candidate.call_status = CS.SCHEDULING_FAILED
    candidate.manual_review_reason = reason
    transition_status(
        candidate,
        S.SCHEDULING_FAILED,
        note=reason,
        fields=("scheduling_call_due_at", "call_status", "manual_review_reason"),
    )


def record_scheduling_result(candidate: Candidate, outcome, *, transcript: str) -> None:
    """Persist whatever the scheduling call established (email, date, time)."""
    fields = ["scheduling_transcript", "call_status"]
    candidate.scheduling_transcript = transcript or ""
    candidate.call_status = CS.SCHEDULING_COMPLETED
    if outcome is not None:
        if outcome.email_verified:
            candidate.email_verified = True
            fields.append("email_verified")
        if outcome.verified_email:
            candidate.verified_email = outcome.verified_email
            fields.append("verified_email")
        if outcome.assessment_date:
            candidate.assessment_date = outcome.assessment_date
            fields.append("assessment_date")
        if outcome.assessment_time:
            candidate.assessment_time = outcome.assessment_time
            fields.append("assessment_time")
        if outcome.summary:
            candidate.conversation_summary = outcome.summary
            fields.append("conversation_summary")
    candidate.save(update_fields=[*fields, "updated_at"])


def set_assessment_scheduled(candidate: Candidate, *, note: str | None = None) -> None:
    transition_status(candidate, S.ASSESSMENT_SCHEDULED, note=note)


def set_scheduling_pending(candidate: Candidate, *, note: str | None = None) -> None:
    transition_status(candidate, S.SCHEDULING_PENDING, note=note)


def set_assessment_link_sent(candidate: Candidate, *, link: str) -> None:
    candidate.assessment_link = link
    candidate.assessment_link_sent = True
    transition_status(
        candidate,
        S.ASSESSMENT_LINK_SENT,
        fields=("assessment_link", "assessment_link_sent"),
    )


# ── Reconciliation ─────────────────────────────────────────────────────────────

def set_stale_call_review(candidate: Candidate, *, hours: int) -> None:
    """A call has been in flight for ``hours`` without a terminal webhook."""
    with transaction.atomic():
        set_manual_review(
            candidate,
            reason=f"No call-completion webhook received within {hours}h",
            call_status=CS.NO_WEBHOOK,
        )
