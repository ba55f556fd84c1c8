"""
calls/tests.py

Covers:
  - RateGate            : calling-hours window, trailing-hour cap
  - QueueScheduler      : enqueue spacing and skips, tick outcomes, stats, cleanup
  - normalize_transcript: string / turns / object inputs
  - BolnaService        : prompt update + dial, error translation
  - prompts             : batch requirements rendered into the agent prompt
"""

import itertools
import random
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from unittest.mock import MagicMock, patch

from django.test import TestCase, override_settings

from calls.models import CallLog, CallQueueEntry
from calls.prompts import callback_prompt, scheduling_prompt, screening_prompt
from calls.queue import QueueScheduler, RateGate
from calls.services import BolnaError, BolnaService
from calls.utils import log_call, normalize_transcript
from candidates.models import Batch, Candidate, StatusChange
from scheduler.services import redial_follow_up

_phones = itertools.count(9000000001)

# Monday, inside the default 09:00-18:00 UTC calling window.
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=dt_timezone.utc)


def _make_batch(**kwargs) -> Batch:
    defaults = {
        "batch_id": Batch.generate_batch_id(),
        "target_company": "Acme",
        "target_job_role": "Backend Engineer",
        "location": "Bengaluru",
        "min_experience": 2,
        "max_experience": 6,
        "budget_min_lpa": 8,
        "budget_max_lpa": 14,
        "required_skills": ["Python", "Django"],
    }
    defaults.update(kwargs)
    return Batch.objects.create(**defaults)


def _make_candidate(batch=None, **kwargs) -> Candidate:
    defaults = {
        "batch": batch or _make_batch(),
        "name": "Asha Rao",
        "phone": f"+91{next(_phones)}",
        "email": "asha@example.com",
        "skills": "Python, Django, PostgreSQL",
    }
    defaults.update(kwargs)
    return Candidate.objects.create(**defaults)


def _make_entry(candidate, **kwargs) -> CallQueueEntry:
    defaults = {"candidate": candidate, "scheduled_time": NOW - timedelta(minutes=1)}
    defaults.update(kwargs)
    return CallQueueEntry.objects.create(**defaults)


def _fill_last_hour(count: int, batch=None) -> None:
    for i in range(count):
        _make_entry(
            _make_candidate(batch),
            status=CallQueueEntry.Status.COMPLETED,
            called_at=NOW - timedelta(minutes=5 + i),
        )


class FakeCaller:
    """Stands in for BolnaService.place_call."""

    def __init__(self, run_ids=None, error=None):
        self.run_ids = iter(run_ids or [f"run-{i}" for i in range(1, 100)])
        self.error = error
        self.calls = []

    def place_call(self, phone, prompt):
        self.calls.append((phone, prompt))
        if self.error is not None:
            raise self.error
        return next(self.run_ids)


class RedialingCaller(FakeCaller):
    """Runs the follow-up redial for the same candidate while its own dial is in flight."""

    def __init__(self, candidate):
        super().__init__(run_ids=["q-run"])
        self.candidate = candidate
        self.follow_up_caller = FakeCaller(run_ids=["f-run"])
        self.follow_up_placed = None

    def place_call(self, phone, prompt):
        self.follow_up_placed = redial_follow_up(self.candidate, caller=self.follow_up_caller, now=NOW)
        return super().place_call(phone, prompt)


# ── RateGate ───────────────────────────────────────────────────────────────────

class RateGateTests(TestCase):
    def test_allows_inside_window_under_cap(self):
        decision = RateGate(max_calls_per_hour=6).can_dispatch(NOW)
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.remaining_slots, 6)

    def test_blocks_before_window_until_start_same_day(self):
        early = NOW.replace(hour=7, minute=30)
        decision = RateGate().can_dispatch(early)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "Outside working hours")
        self.assertEqual(decision.next_eligible_at, NOW.replace(hour=9, minute=0))

    def test_blocks_at_end_hour_until_next_morning(self):
        decision = RateGate().can_dispatch(NOW.replace(hour=18))
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.next_eligible_at, NOW.replace(hour=9) + timedelta(days=1))

    def test_blocks_when_cap_reached(self):
        _fill_last_hour(6)
        decision = RateGate(max_calls_per_hour=6, recheck_minutes=10).can_dispatch(NOW)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reason, "Rate limit reached (6/6 calls in last hour)")
        self.assertEqual(decision.next_eligible_at, NOW + timedelta(minutes=10))

    def test_calls_older_than_an_hour_do_not_count(self):
        candidate = _make_candidate()
        _make_entry(candidate, status=CallQueueEntry.Status.COMPLETED, called_at=NOW - timedelta(minutes=61))
        self.assertEqual(RateGate().calls_in_last_hour(NOW), 0)


# ── QueueScheduler.enqueue ─────────────────────────────────────────────────────

class EnqueueTests(TestCase):
    def setUp(self):
        self.batch = _make_batch()
        self.scheduler = QueueScheduler(caller=FakeCaller(), rng=random.Random(7))

    def test_entries_are_spaced_within_delay_range(self):
        candidates = [_make_candidate(self.batch) for _ in range(4)]

        result = self.scheduler.enqueue([c.pk for c in candidates], now=NOW)

        self.assertEqual(result, {"added": 4, "skipped": 0})
        times = [
            CallQueueEntry.objects.get(candidate=c).scheduled_time
            for c in candidates
        ]
        self.assertEqual(times[0], NOW + timedelta(minutes=3))
        for earlier, later in zip(times, times[1:]):
            gap = later - earlier
            self.assertGreaterEqual(gap, timedelta(minutes=3))
            self.assertLessEqual(gap, timedelta(minutes=10))

    def test_same_seed_gives_same_schedule(self):
        ids = [_make_candidate(self.batch).pk for _ in range(3)]
        QueueScheduler(caller=FakeCaller(), rng=random.Random(1)).enqueue(ids, now=NOW)
        first = list(CallQueueEntry.objects.order_by("pk").values_list("scheduled_time", flat=True))
        CallQueueEntry.objects.all().delete()

        QueueScheduler(caller=FakeCaller(), rng=random.Random(1)).enqueue(ids, now=NOW)
        second = list(CallQueueEntry.objects.order_by("pk").values_list("scheduled_time", flat=True))
        self.assertEqual(first, second)

    def test_enqueue_near_window_end_rolls_to_next_morning(self):
        candidate = _make_candidate(self.batch)
        self.scheduler.enqueue([candidate.pk], now=NOW.replace(hour=17, minute=58))
        entry = CallQueueEntry.objects.get(candidate=candidate)
        self.assertEqual(entry.scheduled_time, NOW.replace(hour=9) + timedelta(days=1))

    def test_enqueue_is_idempotent_for_pending_candidates(self):
        candidate = _make_candidate(self.batch)
        self.scheduler.enqueue([candidate.pk], now=NOW)

        result = self.scheduler.enqueue([candidate.pk], now=NOW)

        self.assertEqual(result, {"added": 0, "skipped": 1})
        self.assertEqual(CallQueueEntry.objects.filter(candidate=candidate).count(), 1)

    def test_enqueue_skips_unknown_and_non_dialable_candidates(self):
        qualified = _make_candidate(self.batch, status=Candidate.Status.QUALIFIED)
        fresh = _make_candidate(self.batch)

        result = self.scheduler.enqueue([qualified.pk, 999999, fresh.pk], now=NOW)

        self.assertEqual(result, {"added": 1, "skipped": 2})
        self.assertFalse(CallQueueEntry.objects.filter(candidate=qualified).exists())


# ── QueueScheduler.tick ────────────────────────────────────────────────────────

class TickTests(TestCase):
    def setUp(self):
        self.batch = _make_batch()
        self.candidate = _make_candidate(self.batch)

    def test_successful_tick_places_one_call(self):
        entry = _make_entry(self.candidate)
        caller = FakeCaller(run_ids=["run-abc"])

        result = QueueScheduler(caller=caller).tick(NOW)

        self.assertTrue(result.called)
        self.assertEqual(result.run_id, "run-abc")
        self.assertEqual(len(caller.calls), 1)
        self.assertEqual(caller.calls[0][0], self.candidate.phone)
        self.assertIn("Backend Engineer", caller.calls[0][1])

        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.COMPLETED)
        self.assertEqual(entry.called_at, NOW)
        self.assertEqual(entry.attempts, 1)

        self.candidate.refresh_from_db()
        self.assertEqual(self.candidate.status, Candidate.Status.CALLING_SCREENING)
        self.assertEqual(self.candidate.screening_run_id, "run-abc")
        self.assertEqual(self.candidate.call_status, Candidate.CallStatus.CALLING_SCREENING)
        self.assertTrue(
            StatusChange.objects.filter(
                candidate=self.candidate,
                from_status=Candidate.Status.NEW,
                to_status=Candidate.Status.CALLING_SCREENING,
            ).exists()
        )

    def test_tick_places_at_most_one_call(self):
        _make_entry(self.candidate)
        _make_entry(_make_candidate(self.batch))
        caller = FakeCaller()

        QueueScheduler(caller=caller).tick(NOW)

        self.assertEqual(len(caller.calls), 1)
        self.assertEqual(CallQueueEntry.objects.filter(status=CallQueueEntry.Status.PENDING).count(), 1)

    def test_higher_priority_entry_is_dialled_first(self):
        _make_entry(self.candidate, scheduled_time=NOW - timedelta(minutes=30))
        urgent = _make_candidate(self.batch)
        _make_entry(urgent, priority=5, scheduled_time=NOW - timedelta(minutes=1))
        caller = FakeCaller()

        QueueScheduler(caller=caller).tick(NOW)

        self.assertEqual(caller.calls[0][0], urgent.phone)

    def test_future_entries_are_not_dialled(self):
        _make_entry(self.candidate, scheduled_time=NOW + timedelta(minutes=5))
        caller = FakeCaller()

        result = QueueScheduler(caller=caller).tick(NOW)

        self.assertFalse(result.called)
        self.assertEqual(result.reason, "No eligible entries")
        self.assertEqual(caller.calls, [])

    def test_rate_limited_tick_does_not_dial(self):
        _fill_last_hour(6, self.batch)
        entry = _make_entry(self.candidate)
        caller = FakeCaller()

        result = QueueScheduler(caller=caller).tick(NOW)

        self.assertFalse(result.called)
        self.assertIn("Rate limit reached", result.reason)
        self.assertEqual(caller.calls, [])
        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.PENDING)

    def test_outside_hours_tick_does_not_dial(self):
        _make_entry(self.candidate, scheduled_time=NOW.replace(hour=19) - timedelta(minutes=1))
        caller = FakeCaller()

        result = QueueScheduler(caller=caller).tick(NOW.replace(hour=19))

        self.assertFalse(result.called)
        self.assertEqual(result.reason, "Outside working hours")
        self.assertEqual(caller.calls, [])

    def test_failed_dial_is_rescheduled_below_max_attempts(self):
        entry = _make_entry(self.candidate)
        caller = FakeCaller(error=BolnaError("Bolna API error 503: busy"))

        result = QueueScheduler(caller=caller, rng=random.Random(3)).tick(NOW)

        self.assertFalse(result.called)
        self.assertTrue(result.rescheduled)
        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.PENDING)
        self.assertEqual(entry.attempts, 1)
        self.assertGreater(entry.scheduled_time, NOW)
        self.assertIn("503", entry.error_message)
        self.candidate.refresh_from_db()
        self.assertEqual(self.candidate.status, Candidate.Status.NEW)

    def test_failed_dial_at_max_attempts_marks_no_response(self):
        entry = _make_entry(self.candidate, attempts=2)
        caller = FakeCaller(error=BolnaError("boom"))

        result = QueueScheduler(caller=caller).tick(NOW)

        self.assertFalse(result.rescheduled)
        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.FAILED)
        self.assertEqual(entry.attempts, 3)
        self.candidate.refresh_from_db()
        self.assertEqual(self.candidate.status, Candidate.Status.NO_RESPONSE)

    def test_unexpected_error_releases_claim(self):
        entry = _make_entry(self.candidate)
        caller = FakeCaller(error=RuntimeError("bug"))

        with self.assertRaises(RuntimeError):
            QueueScheduler(caller=caller).tick(NOW)

        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.PENDING)
        self.assertEqual(entry.attempts, 0)

    def test_entry_for_candidate_no_longer_dialable_is_dropped(self):
        self.candidate.status = Candidate.Status.REJECTED
        self.candidate.save()
        entry = _make_entry(self.candidate)
        caller = FakeCaller()

        result = QueueScheduler(caller=caller).tick(NOW)

        self.assertFalse(result.called)
        self.assertEqual(caller.calls, [])
        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.FAILED)

    def test_callback_candidate_gets_callback_prompt(self):
        self.candidate.status = Candidate.Status.CALLBACK_SCHEDULED
        self.candidate.callback_requested = True
        self.candidate.callback_reason = "driving"
        self.candidate.save()
        _make_entry(self.candidate)
        caller = FakeCaller()

        QueueScheduler(caller=caller).tick(NOW)

        self.assertIn("asked us to call you back", caller.calls[0][1])
        self.candidate.refresh_from_db()
        self.assertFalse(self.candidate.callback_requested)
        self.assertEqual(self.candidate.screening_call_kind, CallLog.CallType.CALLBACK)

    def test_follow_up_redial_during_queue_dial_is_skipped(self):
        self.candidate.status = Candidate.Status.FOLLOW_UP_SCHEDULED
        self.candidate.follow_up_time = NOW - timedelta(minutes=5)
        self.candidate.failed_attempts = 1
        self.candidate.save()
        entry = _make_entry(self.candidate)
        caller = RedialingCaller(self.candidate)

        result = QueueScheduler(caller=caller).tick(NOW)

        self.assertTrue(result.called)
        self.assertFalse(caller.follow_up_placed)
        self.assertEqual(caller.follow_up_caller.calls, [])
        self.assertEqual(len(caller.calls), 1)
        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.COMPLETED)
        self.candidate.refresh_from_db()
        self.assertEqual(self.candidate.status, Candidate.Status.CALLING_SCREENING)
        self.assertEqual(self.candidate.screening_run_id, "q-run")
        self.assertEqual(self.candidate.failed_attempts, 1)

    def test_entry_dropped_when_candidate_was_redialled_first(self):
        self.candidate.status = Candidate.Status.FOLLOW_UP_SCHEDULED
        self.candidate.save()
        entry = _make_entry(self.candidate)
        redial_follow_up(self.candidate, caller=FakeCaller(run_ids=["f-run"]), now=NOW)
        caller = FakeCaller()

        result = QueueScheduler(caller=caller).tick(NOW)

        self.assertFalse(result.called)
        self.assertEqual(caller.calls, [])
        entry.refresh_from_db()
        self.assertEqual(entry.status, CallQueueEntry.Status.FAILED)
        self.candidate.refresh_from_db()
        self.assertEqual(self.candidate.screening_run_id, "f-run")
        self.assertEqual(self.candidate.screening_call_kind, CallLog.CallType.FOLLOW_UP)


# ── Stats & cleanup ────────────────────────────────────────────────────────────

class QueueHousekeepingTests(TestCase):
    def test_queue_stats_counts_by_status(self):
        batch = _make_batch()
        _make_entry(_make_candidate(batch), scheduled_time=NOW + timedelta(minutes=4))
        _make_entry(_make_candidate(batch), scheduled_time=NOW + timedelta(minutes=9))
        _fill_last_hour(2, batch)
        _make_entry(_make_candidate(batch), status=CallQueueEntry.Status.FAILED)

        stats = QueueScheduler(caller=FakeCaller(), gate=RateGate(max_calls_per_hour=6)).queue_stats(NOW)

        self.assertEqual(stats["pending"], 2)
        self.assertEqual(stats["completed"], 2)
        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["processing"], 0)
        self.assertEqual(stats["next_call_time"], NOW + timedelta(minutes=4))
        self.assertEqual(stats["calls_last_hour"], 2)
        self.assertEqual(stats["remaining_slots"], 4)

    def test_cleanup_removes_only_old_terminal_entries(self):
        batch = _make_batch()
        old_done = _make_entry(_make_candidate(batch), status=CallQueueEntry.Status.COMPLETED)
        old_pending = _make_entry(_make_candidate(batch))
        recent_failed = _make_entry(_make_candidate(batch), status=CallQueueEntry.Status.FAILED)
        CallQueueEntry.objects.filter(pk__in=[old_done.pk, old_pending.pk]).update(
            updated_at=NOW - timedelta(days=8)
        )
        CallQueueEntry.objects.filter(pk=recent_failed.pk).update(updated_at=NOW - timedelta(days=2))

        deleted = QueueScheduler(caller=FakeCaller()).cleanup(NOW)

        self.assertEqual(deleted, 1)
        self.assertFalse(CallQueueEntry.objects.filter(pk=old_done.pk).exists())
        self.assertTrue(CallQueueEntry.objects.filter(pk=old_pending.pk).exists())
        self.assertTrue(CallQueueEntry.objects.filter(pk=recent_failed.pk).exists())


# ── Transcript normalisation & call log ────────────────────────────────────────

class NormalizeTranscriptTests(TestCase):
    def test_string_is_stripped(self):
        self.assertEqual(normalize_transcript("  hello \n"), "hello")

    def test_empty_values(self):
        self.assertEqual(normalize_transcript(None), "")
        self.assertEqual(normalize_transcript([]), "")

    def test_turns_are_rendered_as_dialogue(self):
        turns = [
            {"role": "assistant", "content": "Hi, is this a good time?"},
            {"speaker": "user", "message": " Yes, go ahead. "},
            {"role": "user", "text": ""},
        ]
        self.assertEqual(
            normalize_transcript(turns),
            "Assistant: Hi, is this a good time?\n\nUser: Yes, go ahead.\n\n{\"role\": \"user\", \"text\": \"\"}",
        )

    def test_object_is_serialised(self):
        result = normalize_transcript({"summary": "short"})
        self.assertIn('"summary": "short"', result)

    def test_log_call_coerces_duration(self):
        candidate = _make_candidate()
        entry = log_call(candidate, CallLog.CallType.SCREENING, run_id="r1", status="qualified", duration="93.7")
        self.assertEqual(entry.duration_seconds, 93)
        bad = log_call(candidate, CallLog.CallType.SCREENING, status="x", duration="n/a")
        self.assertIsNone(bad.duration_seconds)


# ── BolnaService ───────────────────────────────────────────────────────────────

def _response(ok=True, status_code=200, json_data=None, text=""):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = json_data if json_data is not None else {}
    return resp


@override_settings(BOLNA_API_KEY="key-1", BOLNA_AGENT_ID="agent-1", BOLNA_FROM_NUMBER="+918000000000")
class BolnaServiceTests(TestCase):
    @patch("calls.services.requests.request")
    def test_place_call_updates_prompt_then_dials(self, mock_request):
        mock_request.side_effect = [
            _response(json_data={"state": "updated"}),
            _response(json_data={"status": "queued", "execution_id": "exec-9"}),
        ]

        run_id = BolnaService().place_call("+919876543210", "PROMPT")

        self.assertEqual(run_id, "exec-9")
        self.assertEqual(mock_request.call_count, 2)
        patch_call, post_call = mock_request.call_args_list
        self.assertEqual(patch_call.args[0], "patch")
        self.assertTrue(patch_call.args[1].endswith("/agent/agent-1"))
        self.assertEqual(
            patch_call.kwargs["json"],
            {"agent_prompts": {"task_1": {"system_prompt": "PROMPT"}}},
        )
        self.assertEqual(post_call.args[0], "post")
        self.assertEqual(post_call.kwargs["json"]["recipient_phone_number"], "+919876543210")
        self.assertEqual(post_call.kwargs["json"]["from_phone_number"], "+918000000000")
        self.assertEqual(post_call.kwargs["headers"]["Authorization"], "Bearer key-1")

    @patch("calls.services.requests.request")
    def test_http_error_raises_bolna_error(self, mock_request):
        mock_request.return_value = _response(ok=False, status_code=500, text="server down")
        with self.assertRaises(BolnaError):
            BolnaService().place_call("+919876543210", "PROMPT")

    @patch("calls.services.requests.request")
    def test_missing_run_id_raises_bolna_error(self, mock_request):
        mock_request.side_effect = [_response(), _response(json_data={"status": "queued"})]
        with self.assertRaises(BolnaError):
            BolnaService().place_call("+919876543210", "PROMPT")

    @override_settings(BOLNA_API_KEY="")
    @patch("calls.services.requests.request")
    def test_missing_api_key_raises_without_request(self, mock_request):
        with self.assertRaises(BolnaError):
            BolnaService().place_call("+919876543210", "PROMPT")
        mock_request.assert_not_called()


# ── Prompts ────────────────────────────────────────────────────────────────────

class PromptTests(TestCase):
    def test_screening_prompt_includes_requirements(self):
        candidate = _make_candidate()
        prompt = screening_prompt(candidate)
        self.assertIn("Asha Rao", prompt)
        self.assertIn("Acme", prompt)
        self.assertIn("2-6 years", prompt)
        self.assertIn("8-14 LPA", prompt)
        self.assertNotIn("{", prompt)

    def test_open_ranges_and_missing_values(self):
        batch = _make_batch(min_experience=None, max_experience=None, budget_min_lpa=None, target_company="")
        prompt = screening_prompt(_make_candidate(batch))
        self.assertIn("Experience range: open", prompt)
        self.assertIn("up to 14 LPA", prompt)
        self.assertIn("our client", prompt)

    def test_callback_and_scheduling_prompts(self):
        candidate = _make_candidate(callback_reason="in a meeting")
        self.assertIn("in a meeting", callback_prompt(candidate))
        self.assertIn("asha@example.com", scheduling_prompt(candidate))
