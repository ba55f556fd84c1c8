"""
webhooks/tests.py

Covers:
  - extract_event            : field lookup across payload layouts
  - WebhookDispatcher        : response policy, screening / scheduling outcomes,
                               duplicate deliveries
  - bolna_webhook view       : shared secret, JSON parsing
  - bolna_last_payloads view : recent payload buffer

The scorer and the assessment-link mailer are fakes; nothing leaves the process.
"""

import json
import random
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import patch

from django.apps import apps
from django.test import TestCase, override_settings
from django.urls import reverse

from calls.models import CallLog, CallQueueEntry
from calls.queue import QueueScheduler
from candidates.models import Batch, Candidate
from candidates.services import normalize_phone
from evaluations.services import ClaudeServiceError, build_scheduling_outcome, build_screening_score
from webhooks.extraction import extract_event, payload_hash
from webhooks.models import ProcessedWebhookEvent
from webhooks.services import WebhookDispatcher, WebhookResult

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=dt_timezone.utc)

QUALIFYING = {
    "notice_period_score": 10,
    "budget_score": 10,
    "location_score": 10,
    "experience_score": 10,
    "technical_score": 13,
    "communication_score": 10,
    "summary": "Meets the bar.",
}
FAILING = dict(QUALIFYING, technical_score=12)


class FakeScorer:
    def __init__(self, screening=None, scheduling=None, error=None):
        self.screening = screening
        self.scheduling = scheduling
        self.error = error
        self.calls = []

    def score_screening_transcript(self, transcript, candidate_context, requirements):
        self.calls.append(("screening", transcript))
        if self.error:
            raise self.error
        return build_screening_score(self.screening)

    def score_scheduling_transcript(self, transcript, today):
        self.calls.append(("scheduling", transcript))
        if self.error:
            raise self.error
        return build_scheduling_outcome(self.scheduling)


class FakeMailer:
    def __init__(self):
        self.sent = []

    def __call__(self, candidate):
        self.sent.append(candidate.pk)
        return True


def _make_candidate(**kwargs) -> Candidate:
    batch = Batch.objects.create(
        batch_id=Batch.generate_batch_id(),
        target_job_role="Backend Engineer",
        required_skills=["Python", "Django"],
    )
    defaults = {
        "batch": batch,
        "name": "Rohan Das",
        "phone": "+919811100000",
        "email": "rohan@example.com",
        "status": Candidate.Status.CALLING_SCREENING,
        "screening_run_id": "run-screen-1",
    }
    defaults.update(kwargs)
    return Candidate.objects.create(**defaults)


def _payload(run_id="run-screen-1", status="completed", timestamp="2026-03-02T10:00:00Z", **extra):
    data = {
        "run_id": run_id,
        "status": status,
        "timestamp": timestamp,
        "conversation_duration": 142.5,
        "transcript": [
            {"role": "assistant", "content": "Hi, is this a good time?"},
            {"role": "user", "content": "Yes, go ahead."},
        ],
    }
    data.update(extra)
    return {"data": data}


# ── Extraction ─────────────────────────────────────────────────────────────────

class ExtractEventTests(TestCase):
    def test_nested_container(self):
        event = extract_event(_payload())
        self.assertTrue(event.is_final)
        self.assertEqual(event.run_id, "run-screen-1")
        self.assertEqual(event.event_key, "2026-03-02T10:00:00Z")
        self.assertEqual(event.duration, 142.5)

    def test_flat_body_with_execution_id(self):
        event = extract_event({"execution_id": "exec-9", "status": "Completed", "transcript": "hello"})
        self.assertTrue(event.is_final)
        self.assertEqual(event.run_id, "exec-9")
        self.assertEqual(event.transcript, "hello")

    def test_transcript_under_analytics(self):
        body = {"execution": {"id": "x", "status": "completed", "analytics": {"conversation": "Agent: hi"}}}
        self.assertEqual(extract_event(body).transcript, "Agent: hi")

    def test_missing_timestamp_uses_payload_digest(self):
        body = {"data": {"run_id": "r", "status": "completed"}}
        self.assertEqual(extract_event(body).event_key, payload_hash(body))
        self.assertEqual(payload_hash({"a": 1, "b": 2}), payload_hash({"b": 2, "a": 1}))

    def test_non_dict_payload(self):
        event = extract_event(["not", "a", "dict"])
        self.assertFalse(event.is_final)
        self.assertIsNone(event.run_id)


# ── Dispatcher: response policy ────────────────────────────────────────────────

class DispatcherPolicyTests(TestCase):
    def test_non_final_event_is_ignored(self):
        candidate = _make_candidate()
        result = WebhookDispatcher(scorer=FakeScorer()).handle_event(_payload(status="in-progress"), now=NOW)
        self.assertEqual(result, WebhookResult(200, {"status": "ignored", "reason": "Not final webhook"}))
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)

    def test_final_event_without_run_id(self):
        result = WebhookDispatcher(scorer=FakeScorer()).handle_event({"status": "completed"}, now=NOW)
        self.assertEqual(result.http_status, 400)
        self.assertEqual(result.body, {"error": "Missing run_id in webhook"})

    def test_unknown_run_id_writes_nothing(self):
        scorer = FakeScorer(screening=QUALIFYING)
        result = WebhookDispatcher(scorer=scorer).handle_event(_payload(run_id="nobody"), now=NOW)
        self.assertEqual(result.body, {"status": "unknown_run_id"})
        self.assertEqual(scorer.calls, [])
        self.assertFalse(ProcessedWebhookEvent.objects.exists())
        self.assertFalse(CallLog.objects.exists())


# ── Dispatcher: screening ──────────────────────────────────────────────────────

@override_settings(QUALIFICATION_THRESHOLD=45, ASSESSMENT_SCHEDULING_DELAY_SECONDS=120)
class ScreeningWebhookTests(TestCase):
    def test_score_at_threshold_qualifies(self):
        candidate = _make_candidate()

        result = WebhookDispatcher(scorer=FakeScorer(screening=QUALIFYING)).handle_event(_payload(), now=NOW)

        self.assertEqual(result.body, {"status": "ok", "call_type": "screening", "candidate_id": candidate.pk})
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.QUALIFIED)
        self.assertEqual(candidate.overall_qualification_score, Decimal("45.00"))
        self.assertEqual(candidate.scheduling_call_due_at, NOW + timedelta(seconds=120))
        self.assertIn("User: Yes, go ahead.", candidate.screening_transcript)
        log = CallLog.objects.get(candidate=candidate)
        self.assertEqual(log.status, "qualified")
        self.assertEqual(log.duration_seconds, 142)
        self.assertEqual(log.call_type, CallLog.CallType.SCREENING)

    def test_outcome_is_logged_under_the_dial_kind(self):
        candidate = _make_candidate(screening_call_kind=CallLog.CallType.FOLLOW_UP)

        WebhookDispatcher(scorer=FakeScorer(screening=FAILING)).handle_event(_payload(), now=NOW)

        log = CallLog.objects.get(candidate=candidate)
        self.assertEqual(log.call_type, CallLog.CallType.FOLLOW_UP)
        self.assertEqual(log.status, "rejected")

    def test_score_below_threshold_rejects(self):
        candidate = _make_candidate()
        WebhookDispatcher(scorer=FakeScorer(screening=FAILING)).handle_event(_payload(), now=NOW)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.REJECTED)
        self.assertEqual(candidate.overall_qualification_score, Decimal("44.29"))
        self.assertIsNone(candidate.scheduling_call_due_at)

    @override_settings(APSCHEDULER_TIMEZONE="UTC")
    def test_callback_request_schedules_callback(self):
        candidate = _make_candidate(callback_attempts=2)
        scorer = FakeScorer(screening={
            "callback_requested": True,
            "callback_time": "tomorrow at 3pm",
            "callback_reason": "Driving",
        })

        WebhookDispatcher(scorer=scorer).handle_event(_payload(), now=NOW)

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLBACK_SCHEDULED)
        self.assertEqual(candidate.callback_scheduled_time, datetime(2026, 3, 3, 15, 0, tzinfo=dt_timezone.utc))
        self.assertEqual(candidate.callback_attempts, 0)
        self.assertEqual(candidate.callback_reason, "Driving")
        self.assertIsNone(candidate.overall_qualification_score)
        self.assertEqual(
            CallLog.objects.get(candidate=candidate).call_type,
            CallLog.CallType.SCREENING_CALLBACK_REQUEST,
        )

    def test_scoring_failure_goes_to_manual_review(self):
        candidate = _make_candidate()
        scorer = FakeScorer(error=ClaudeServiceError("overloaded"))

        result = WebhookDispatcher(scorer=scorer).handle_event(_payload(), now=NOW)

        self.assertEqual(result.http_status, 200)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.MANUAL_REVIEW)
        self.assertIn("overloaded", candidate.manual_review_reason)
        self.assertTrue(candidate.screening_transcript)

    def test_no_score_goes_to_manual_review(self):
        candidate = _make_candidate()
        WebhookDispatcher(scorer=FakeScorer(screening={"summary": "Call dropped."})).handle_event(
            _payload(), now=NOW,
        )
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.MANUAL_REVIEW)

    def test_redelivery_is_a_duplicate(self):
        candidate = _make_candidate()
        scorer = FakeScorer(screening=QUALIFYING)
        dispatcher = WebhookDispatcher(scorer=scorer)

        first = dispatcher.handle_event(_payload(), now=NOW)
        second = dispatcher.handle_event(_payload(), now=NOW)

        self.assertEqual(first.body["status"], "ok")
        self.assertEqual(second.body, {"status": "duplicate"})
        self.assertEqual(len(scorer.calls), 1)
        self.assertEqual(CallLog.objects.filter(candidate=candidate).count(), 1)
        self.assertEqual(candidate.status_changes.count(), 1)

    def test_recorded_event_is_not_reapplied(self):
        candidate = _make_candidate()
        ProcessedWebhookEvent.objects.create(
            run_id="run-screen-1", event_key="2026-03-02T10:00:00Z", call_type="screening",
        )
        scorer = FakeScorer(screening=QUALIFYING)

        result = WebhookDispatcher(scorer=scorer).handle_event(_payload(), now=NOW)

        self.assertEqual(result.body, {"status": "duplicate"})
        self.assertEqual(scorer.calls, [])
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)


# ── Dispatcher: scheduling ─────────────────────────────────────────────────────

class SchedulingWebhookTests(TestCase):
    def _candidate(self):
        return _make_candidate(
            status=Candidate.Status.CALLING_SCHEDULING,
            scheduling_run_id="run-sched-1",
        )

    @override_settings(ASSESSMENT_AUTO_SEND_LINK=True)
    def test_confirmed_slot_schedules_and_sends_link(self):
        candidate = self._candidate()
        scorer = FakeScorer(scheduling={
            "email_verified": True,
            "verified_email": "rohan.das@example.org",
            "assessment_date": "2026-03-04",
            "assessment_time": "11:00",
            "candidate_confirmed": True,
        })
        mailer = FakeMailer()

        result = WebhookDispatcher(scorer=scorer, mailer=mailer).handle_event(
            _payload(run_id="run-sched-1"), now=NOW,
        )

        self.assertEqual(result.body["call_type"], "scheduling")
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.ASSESSMENT_SCHEDULED)
        self.assertTrue(candidate.email_verified)
        self.assertEqual(candidate.verified_email, "rohan.das@example.org")
        self.assertEqual(str(candidate.assessment_date), "2026-03-04")
        self.assertEqual(mailer.sent, [candidate.pk])

    @override_settings(ASSESSMENT_AUTO_SEND_LINK=False)
    def test_auto_send_can_be_disabled(self):
        self._candidate()
        scorer = FakeScorer(scheduling={
            "assessment_date": "2026-03-04",
            "assessment_time": "11:00",
            "candidate_confirmed": True,
        })
        mailer = FakeMailer()
        WebhookDispatcher(scorer=scorer, mailer=mailer).handle_event(_payload(run_id="run-sched-1"), now=NOW)
        self.assertEqual(mailer.sent, [])

    def test_unconfirmed_slot_is_pending(self):
        candidate = self._candidate()
        scorer = FakeScorer(scheduling={"assessment_date": "2026-03-04", "candidate_confirmed": False})
        mailer = FakeMailer()

        WebhookDispatcher(scorer=scorer, mailer=mailer).handle_event(_payload(run_id="run-sched-1"), now=NOW)

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.SCHEDULING_PENDING)
        self.assertEqual(mailer.sent, [])
        self.assertEqual(CallLog.objects.get(candidate=candidate).status, "pending_confirmation")

    def test_extraction_failure_is_pending(self):
        candidate = self._candidate()
        scorer = FakeScorer(error=ClaudeServiceError("bad json"))
        WebhookDispatcher(scorer=scorer, mailer=FakeMailer()).handle_event(_payload(run_id="run-sched-1"), now=NOW)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.SCHEDULING_PENDING)

    def test_mailer_exception_does_not_fail_the_webhook(self):
        candidate = self._candidate()
        scorer = FakeScorer(scheduling={
            "assessment_date": "2026-03-04",
            "assessment_time": "11:00",
            "candidate_confirmed": True,
        })

        def broken_mailer(_candidate):
            raise RuntimeError("smtp down")

        result = WebhookDispatcher(scorer=scorer, mailer=broken_mailer).handle_event(
            _payload(run_id="run-sched-1"), now=NOW,
        )

        self.assertEqual(result.http_status, 200)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.ASSESSMENT_SCHEDULED)


# ── End to end ─────────────────────────────────────────────────────────────────

class FakeCaller:
    def place_call(self, phone, prompt):
        return "run-e2e-1"


@override_settings(
    APSCHEDULER_TIMEZONE="UTC",
    CALLING_START_HOUR=9,
    CALLING_END_HOUR=18,
    QUALIFICATION_THRESHOLD=45,
    ASSESSMENT_SCHEDULING_DELAY_SECONDS=120,
)
class ScreeningPipelineTests(TestCase):
    def test_upload_to_qualified(self):
        candidate = _make_candidate(
            phone=normalize_phone("9876543210"),
            status=Candidate.Status.NEW,
            screening_run_id=None,
        )
        self.assertEqual(candidate.phone, "+919876543210")

        scheduler = QueueScheduler(caller=FakeCaller(), rng=random.Random(7))
        scheduler.enqueue([candidate.pk], now=NOW)
        tick_at = NOW + timedelta(minutes=5)
        result = scheduler.tick(now=tick_at)

        self.assertTrue(result.called)
        self.assertEqual(CallQueueEntry.objects.get().status, CallQueueEntry.Status.COMPLETED)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)

        webhook_at = tick_at + timedelta(minutes=8)
        scorer = FakeScorer(screening={
            "notice_period_score": 12,
            "budget_score": 12,
            "location_score": 12,
            "experience_score": 12,
            "technical_score": 24,
            "communication_score": 12,
        })
        WebhookDispatcher(scorer=scorer).handle_event(_payload(run_id="run-e2e-1"), now=webhook_at)

        candidate.refresh_from_db()
        self.assertEqual(candidate.overall_qualification_score, Decimal("60.00"))
        self.assertEqual(candidate.status, Candidate.Status.QUALIFIED)
        self.assertEqual(candidate.scheduling_call_due_at, webhook_at + timedelta(seconds=120))


# ── Views ──────────────────────────────────────────────────────────────────────

class BolnaWebhookViewTests(TestCase):
    def setUp(self):
        apps.get_app_config("webhooks").recent_payloads.clear()
        self.url = reverse("webhooks:bolna")

    def _post(self, body, **headers):
        data = body if isinstance(body, str) else json.dumps(body)
        return self.client.post(self.url, data=data, content_type="application/json", **headers)

    @override_settings(BOLNA_WEBHOOK_SECRET="s3cret")
    def test_missing_token_is_rejected(self):
        response = self._post(_payload())
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Missing webhook token"})

    @override_settings(BOLNA_WEBHOOK_SECRET="s3cret")
    def test_wrong_token_is_rejected(self):
        response = self._post(_payload(), HTTP_X_WEBHOOK_TOKEN="nope")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"error": "Invalid webhook token"})

    @override_settings(BOLNA_WEBHOOK_SECRET="s3cret")
    def test_bearer_token_is_accepted(self):
        response = self._post(_payload(status="queued"), HTTP_AUTHORIZATION="Bearer s3cret")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ignored")

    @override_settings(BOLNA_WEBHOOK_SECRET="")
    def test_invalid_json(self):
        response = self._post("{not json")
        self.assertEqual(response.status_code, 400)

    @override_settings(BOLNA_WEBHOOK_SECRET="")
    def test_get_is_not_allowed(self):
        self.assertEqual(self.client.get(self.url).status_code, 405)

    @override_settings(BOLNA_WEBHOOK_SECRET="", QUALIFICATION_THRESHOLD=45)
    def test_final_event_is_dispatched(self):
        candidate = _make_candidate()
        with patch("webhooks.services.ClaudeService", return_value=FakeScorer(screening=QUALIFYING)):
            response = self._post(_payload())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.QUALIFIED)


@override_settings(BOLNA_WEBHOOK_SECRET="")
class BolnaLastPayloadsViewTests(TestCase):
    def setUp(self):
        apps.get_app_config("webhooks").recent_payloads.clear()

    def test_empty_buffer(self):
        response = self.client.get(reverse("webhooks:bolna_last"))
        self.assertEqual(response.json(), {"message": "No webhook received yet", "payloads": []})

    def test_newest_first(self):
        for status in ("queued", "ringing"):
            self.client.post(
                reverse("webhooks:bolna"),
                data=json.dumps(_payload(status=status)),
                content_type="application/json",
            )

        body = self.client.get(reverse("webhooks:bolna_last")).json()

        self.assertEqual(body["count"], 2)
        self.assertEqual(body["payloads"][0]["payload"]["data"]["status"], "ringing")

    @override_settings(BOLNA_WEBHOOK_SECRET="s3cret")
    def test_guarded_by_secret(self):
        response = self.client.get(reverse("webhooks:bolna_last"))
        self.assertEqual(response.status_code, 401)
