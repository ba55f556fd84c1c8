"""
scheduler/tests.py

Covers:
  - parse_callback_time / follow_up_time : redial time rules
  - redial helpers                      : success transitions and retry bookkeeping
  - call_candidate_now + command        : manual dial
  - jobs                                : due-candidate selection, calling hours,
                                          stale-call sweep

Jobs are invoked through __wrapped__ to skip the connection-closing
decorator inside the test transaction.
"""

import itertools
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from calls.models import CallQueueEntry
from calls.services import BolnaError
from candidates.models import Batch, Candidate
from candidates.transitions import InvalidTransition
from scheduler import jobs
from scheduler.services import call_candidate_now, place_scheduling_call, redial_callback, redial_follow_up
from scheduler.timing import follow_up_time, parse_callback_time

# Monday
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=dt_timezone.utc)

_phones = itertools.count(9700000001)


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=dt_timezone.utc)


class FakeCaller:
    """Stands in for BolnaService; raises BolnaError for phones listed in ``failing``."""

    def __init__(self, failing=(), error=None):
        self.failing = set(failing)
        self.error = error
        self.calls = []

    def place_call(self, phone, prompt):
        self.calls.append((phone, prompt))
        if self.error is not None:
            raise self.error
        if phone in self.failing:
            raise BolnaError("Bolna API 503: busy")
        return f"run-{len(self.calls)}"


def _make_candidate(**kwargs) -> Candidate:
    batch = Batch.objects.create(
        batch_id=Batch.generate_batch_id(),
        target_company="Umbrella",
        target_job_role="QA Engineer",
    )
    defaults = {
        "batch": batch,
        "name": "Neha Gupta",
        "phone": f"+91{next(_phones)}",
        "email": "neha@example.com",
    }
    defaults.update(kwargs)
    return Candidate.objects.create(**defaults)


# ── Timing rules ───────────────────────────────────────────────────────────────

@override_settings(APSCHEDULER_TIMEZONE="UTC", CALLING_START_HOUR=9, CALLING_END_HOUR=18)
class ParseCallbackTimeTests(SimpleTestCase):
    def assertParses(self, text, expected):
        self.assertEqual(parse_callback_time(text, NOW), expected, text)

    def test_empty_and_unparseable_default_to_two_hours(self):
        self.assertParses("", NOW + timedelta(hours=2))
        self.assertParses(None, NOW + timedelta(hours=2))
        self.assertParses("whenever suits you", NOW + timedelta(hours=2))

    def test_relative_delays(self):
        self.assertParses("call me in 30 minutes", NOW + timedelta(minutes=30))
        self.assertParses("in two hours please", NOW + timedelta(hours=2))
        self.assertParses("after 3 hrs", NOW + timedelta(hours=3))
        self.assertParses("give me half an hour", NOW + timedelta(minutes=30))
        self.assertParses("in a couple of hours", NOW + timedelta(hours=2))

    def test_clock_times(self):
        self.assertParses("3pm", _at(2, 15))
        self.assertParses("around 3:30 PM", _at(2, 15, 30))
        self.assertParses("12pm", _at(2, 12))
        self.assertParses("17:45", _at(2, 17, 45))

    def test_past_clock_time_rolls_to_tomorrow(self):
        self.assertParses("9am", _at(3, 9))

    def test_ambiguous_hour_is_read_as_afternoon(self):
        self.assertParses("at 4", _at(2, 16))
        self.assertParses("3:30", _at(2, 15, 30))
        self.assertParses("tomorrow at 4 o'clock", _at(3, 16))
        self.assertParses("at 11", _at(2, 11))

    def test_named_day_with_clock_time(self):
        self.assertParses("tomorrow at 11am", _at(3, 11))
        self.assertParses("day after tomorrow 5 pm", _at(4, 17))

    def test_named_day_and_part_of_day(self):
        self.assertParses("tomorrow morning", _at(3, 10))
        self.assertParses("tomorrow evening", _at(3, 17))
        self.assertParses("tomorrow", _at(3, 10))
        self.assertParses("on friday", _at(6, 10))
        self.assertParses("monday afternoon", _at(9, 14))

    def test_part_of_day_alone(self):
        self.assertParses("afternoon", _at(2, 14))
        self.assertParses("morning", _at(3, 10))

    def test_evening_and_night_stay_inside_calling_hours(self):
        self.assertParses("in the evening", _at(2, 17))
        self.assertParses("tonight", _at(2, 17))
        self.assertParses("friday night", _at(6, 17))

    @override_settings(CALLING_END_HOUR=21)
    def test_evening_and_night_with_late_window(self):
        self.assertParses("in the evening", _at(2, 18))
        self.assertParses("tonight", _at(2, 20))

    def test_past_named_slot_falls_back(self):
        self.assertParses("today morning", NOW + timedelta(hours=2))


@override_settings(APSCHEDULER_TIMEZONE="UTC")
class FollowUpTimeTests(SimpleTestCase):
    def test_morning_miss_retries_next_afternoon(self):
        self.assertEqual(follow_up_time(_at(2, 10)), _at(3, 16))
        self.assertEqual(follow_up_time(_at(2, 13, 59)), _at(3, 16))
        self.assertEqual(follow_up_time(_at(2, 0, 30)), _at(3, 16))

    def test_afternoon_miss_retries_next_morning(self):
        self.assertEqual(follow_up_time(_at(2, 14)), _at(3, 10))
        self.assertEqual(follow_up_time(_at(2, 17, 30)), _at(3, 10))

    @override_settings(APSCHEDULER_TIMEZONE="Asia/Kolkata")
    def test_uses_local_hour(self):
        # 09:00 UTC is 14:30 in Kolkata.
        self.assertEqual(
            follow_up_time(_at(2, 9)),
            datetime(2026, 3, 3, 4, 30, tzinfo=dt_timezone.utc),
        )


# ── Redial helpers ─────────────────────────────────────────────────────────────

@override_settings(
    APSCHEDULER_TIMEZONE="UTC",
    MAX_CALLBACK_ATTEMPTS=3,
    CALLBACK_RETRY_HOURS=2,
    MAX_CALL_ATTEMPTS=2,
)
class RedialServiceTests(TestCase):
    def _callback_candidate(self, **kwargs):
        return _make_candidate(
            status=Candidate.Status.CALLBACK_SCHEDULED,
            callback_requested=True,
            callback_scheduled_time=NOW - timedelta(minutes=5),
            callback_reason="In a meeting",
            **kwargs,
        )

    def test_callback_success(self):
        candidate = self._callback_candidate()
        caller = FakeCaller()

        self.assertTrue(redial_callback(candidate, caller=caller, now=NOW))

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)
        self.assertEqual(candidate.screening_run_id, "run-1")
        self.assertFalse(candidate.callback_requested)
        self.assertEqual(candidate.screening_call_kind, "callback")
        self.assertEqual(candidate.last_call_started_at, NOW)
        self.assertEqual(caller.calls[0][0], candidate.phone)

    def test_callback_failure_reschedules(self):
        candidate = self._callback_candidate(callback_attempts=1)

        self.assertFalse(redial_callback(candidate, caller=FakeCaller(failing={candidate.phone}), now=NOW))

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLBACK_SCHEDULED)
        self.assertEqual(candidate.callback_attempts, 2)
        self.assertEqual(candidate.callback_scheduled_time, NOW + timedelta(hours=2))
        self.assertEqual(candidate.last_callback_attempt, NOW)

    def test_callback_ceiling_ends_in_no_response(self):
        candidate = self._callback_candidate(callback_attempts=2)

        redial_callback(candidate, caller=FakeCaller(failing={candidate.phone}), now=NOW)

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.NO_RESPONSE)
        self.assertEqual(candidate.callback_attempts, 3)
        self.assertFalse(candidate.callback_requested)

    def test_callback_skips_candidate_that_moved_on(self):
        candidate = _make_candidate(status=Candidate.Status.REJECTED)
        caller = FakeCaller()
        self.assertFalse(redial_callback(candidate, caller=caller, now=NOW))
        self.assertEqual(caller.calls, [])

    def test_follow_up_failure_schedules_next_slot(self):
        candidate = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=NOW)

        redial_follow_up(candidate, caller=FakeCaller(failing={candidate.phone}), now=NOW)

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.FOLLOW_UP_SCHEDULED)
        self.assertEqual(candidate.failed_attempts, 1)
        self.assertEqual(candidate.follow_up_time, _at(3, 16))

    def test_follow_up_ceiling_ends_in_no_response(self):
        candidate = _make_candidate(
            status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=NOW, failed_attempts=1,
        )

        redial_follow_up(candidate, caller=FakeCaller(failing={candidate.phone}), now=NOW)

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.NO_RESPONSE)
        self.assertEqual(candidate.failed_attempts, 2)
        self.assertIsNone(candidate.follow_up_time)

    def test_follow_up_success(self):
        candidate = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=NOW)
        self.assertTrue(redial_follow_up(candidate, caller=FakeCaller(), now=NOW))
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)
        self.assertIsNone(candidate.follow_up_time)
        self.assertEqual(candidate.screening_call_kind, "follow_up")

    def test_follow_up_skipped_while_queue_dials_candidate(self):
        candidate = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=NOW)
        CallQueueEntry.objects.create(
            candidate=candidate, scheduled_time=NOW, status=CallQueueEntry.Status.PROCESSING,
        )
        caller = FakeCaller()

        self.assertFalse(redial_follow_up(candidate, caller=caller, now=NOW))

        self.assertEqual(caller.calls, [])
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.FOLLOW_UP_SCHEDULED)
        self.assertEqual(candidate.failed_attempts, 0)

    def test_callback_skipped_while_queue_dials_candidate(self):
        candidate = self._callback_candidate()
        CallQueueEntry.objects.create(
            candidate=candidate, scheduled_time=NOW, status=CallQueueEntry.Status.PROCESSING,
        )
        caller = FakeCaller()

        self.assertFalse(redial_callback(candidate, caller=caller, now=NOW))

        self.assertEqual(caller.calls, [])
        candidate.refresh_from_db()
        self.assertEqual(candidate.callback_attempts, 0)

    def test_scheduling_call_success(self):
        candidate = _make_candidate(status=Candidate.Status.QUALIFIED, scheduling_call_due_at=NOW)

        self.assertTrue(place_scheduling_call(candidate, caller=FakeCaller(), now=NOW))

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCHEDULING)
        self.assertEqual(candidate.scheduling_run_id, "run-1")
        self.assertIsNone(candidate.scheduling_call_due_at)

    def test_scheduling_call_failure_is_not_retried(self):
        candidate = _make_candidate(status=Candidate.Status.QUALIFIED, scheduling_call_due_at=NOW)

        place_scheduling_call(candidate, caller=FakeCaller(failing={candidate.phone}), now=NOW)

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.SCHEDULING_FAILED)
        self.assertIsNone(candidate.scheduling_call_due_at)
        self.assertIn("503", candidate.manual_review_reason)


# ── Manual dial ────────────────────────────────────────────────────────────────

@override_settings(APSCHEDULER_TIMEZONE="UTC", MAX_CALL_ATTEMPTS=2, MAX_CALLBACK_ATTEMPTS=3)
class CallCandidateNowTests(TestCase):
    def test_new_candidate_is_dialled(self):
        candidate = _make_candidate()
        run_id = call_candidate_now(candidate, caller=FakeCaller(), now=NOW)
        self.assertEqual(run_id, "run-1")
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)

    def test_non_dialable_status_raises(self):
        candidate = _make_candidate(status=Candidate.Status.QUALIFIED)
        caller = FakeCaller()
        with self.assertRaises(InvalidTransition):
            call_candidate_now(candidate, caller=caller, now=NOW)
        self.assertEqual(caller.calls, [])

    def test_queue_dial_in_flight_raises(self):
        candidate = _make_candidate()
        CallQueueEntry.objects.create(
            candidate=candidate, scheduled_time=NOW, status=CallQueueEntry.Status.PROCESSING,
        )
        caller = FakeCaller()
        with self.assertRaises(InvalidTransition):
            call_candidate_now(candidate, caller=caller, now=NOW)
        self.assertEqual(caller.calls, [])

    def test_failure_from_new_schedules_follow_up(self):
        candidate = _make_candidate()
        self.assertIsNone(call_candidate_now(candidate, caller=FakeCaller(failing={candidate.phone}), now=NOW))
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.FOLLOW_UP_SCHEDULED)
        self.assertEqual(candidate.failed_attempts, 1)

    def test_failure_from_callback_keeps_callback(self):
        candidate = _make_candidate(
            status=Candidate.Status.CALLBACK_SCHEDULED,
            callback_requested=True,
            callback_scheduled_time=NOW + timedelta(hours=1),
        )
        call_candidate_now(candidate, caller=FakeCaller(failing={candidate.phone}), now=NOW)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLBACK_SCHEDULED)
        self.assertEqual(candidate.callback_attempts, 1)
        self.assertEqual(candidate.failed_attempts, 0)


class CallCandidateCommandTests(TestCase):
    def test_places_call(self):
        candidate = _make_candidate()
        out = StringIO()
        with patch("scheduler.services.BolnaService", return_value=FakeCaller()):
            call_command("call_candidate", str(candidate.pk), stdout=out)
        self.assertIn("run_id=run-1", out.getvalue())

    def test_unknown_candidate(self):
        with self.assertRaises(CommandError):
            call_command("call_candidate", "999999")

    def test_non_dialable_candidate(self):
        candidate = _make_candidate(status=Candidate.Status.REJECTED)
        with patch("scheduler.services.BolnaService", return_value=FakeCaller()):
            with self.assertRaises(CommandError):
                call_command("call_candidate", str(candidate.pk))


# ── Jobs ───────────────────────────────────────────────────────────────────────

@override_settings(CALLING_START_HOUR=0, CALLING_END_HOUR=24, MAX_CALL_ATTEMPTS=2, MAX_CALLBACK_ATTEMPTS=3)
class RedialJobTests(TestCase):
    def setUp(self):
        self.caller = FakeCaller()
        patcher = patch("scheduler.jobs.BolnaService", return_value=self.caller)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_due_follow_ups_are_dialled(self):
        now = timezone.now()
        due = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=now - timedelta(minutes=1))
        later = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=now + timedelta(hours=1))

        jobs.process_follow_up_calls.__wrapped__()

        self.assertEqual([phone for phone, _ in self.caller.calls], [due.phone])
        later.refresh_from_db()
        self.assertEqual(later.status, Candidate.Status.FOLLOW_UP_SCHEDULED)

    def test_due_callbacks_are_dialled(self):
        candidate = _make_candidate(
            status=Candidate.Status.CALLBACK_SCHEDULED,
            callback_requested=True,
            callback_scheduled_time=timezone.now() - timedelta(minutes=1),
        )

        jobs.process_scheduled_callbacks.__wrapped__()

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)

    @override_settings(CALLING_START_HOUR=0, CALLING_END_HOUR=0)
    def test_nothing_is_dialled_outside_calling_hours(self):
        _make_candidate(
            status=Candidate.Status.FOLLOW_UP_SCHEDULED,
            follow_up_time=timezone.now() - timedelta(minutes=1),
        )
        _make_candidate(
            status=Candidate.Status.CALLBACK_SCHEDULED,
            callback_requested=True,
            callback_scheduled_time=timezone.now() - timedelta(minutes=1),
        )

        jobs.process_follow_up_calls.__wrapped__()
        jobs.process_scheduled_callbacks.__wrapped__()

        self.assertEqual(self.caller.calls, [])

    def test_scheduling_calls_wait_for_due_time(self):
        now = timezone.now()
        due = _make_candidate(status=Candidate.Status.QUALIFIED, scheduling_call_due_at=now - timedelta(seconds=5))
        _make_candidate(status=Candidate.Status.QUALIFIED, scheduling_call_due_at=now + timedelta(minutes=2))

        jobs.process_assessment_scheduling_calls.__wrapped__()

        self.assertEqual([phone for phone, _ in self.caller.calls], [due.phone])

    def test_one_failing_candidate_does_not_stop_the_run(self):
        now = timezone.now()
        first = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=now - timedelta(minutes=2))
        second = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED, follow_up_time=now - timedelta(minutes=1))

        with patch("scheduler.jobs.redial_follow_up", side_effect=[RuntimeError("boom"), True]) as redial:
            jobs.process_follow_up_calls.__wrapped__()

        self.assertEqual([c.args[0].pk for c in redial.call_args_list], [first.pk, second.pk])


@override_settings(STALE_CALL_HOURS=6)
class SweepStaleCallsTests(TestCase):
    def test_stale_calls_go_to_manual_review(self):
        now = timezone.now()
        stale = _make_candidate(
            status=Candidate.Status.CALLING_SCREENING,
            last_call_started_at=now - timedelta(hours=7),
        )
        stale_scheduling = _make_candidate(
            status=Candidate.Status.CALLING_SCHEDULING,
            last_call_started_at=now - timedelta(hours=8),
        )
        fresh = _make_candidate(
            status=Candidate.Status.CALLING_SCREENING,
            last_call_started_at=now - timedelta(hours=1),
        )

        jobs.sweep_stale_calls.__wrapped__()

        for candidate in (stale, stale_scheduling):
            candidate.refresh_from_db()
            self.assertEqual(candidate.status, Candidate.Status.MANUAL_REVIEW)
            self.assertEqual(candidate.call_status, Candidate.CallStatus.NO_WEBHOOK)
            self.assertIn("6h", candidate.manual_review_reason)
        fresh.refresh_from_db()
        self.assertEqual(fresh.status, Candidate.Status.CALLING_SCREENING)

    def test_stuck_queue_entries_are_failed(self):
        now = timezone.now()
        candidate = _make_candidate()
        stuck = CallQueueEntry.objects.create(
            candidate=candidate,
            scheduled_time=now - timedelta(hours=8),
            status=CallQueueEntry.Status.PROCESSING,
            last_attempt_time=now - timedelta(hours=7),
        )

        jobs.sweep_stale_calls.__wrapped__()

        stuck.refresh_from_db()
        self.assertEqual(stuck.status, CallQueueEntry.Status.FAILED)
        self.assertIn("processing", stuck.error_message)
