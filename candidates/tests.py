"""
candidates/tests.py

Covers:
  - normalize_phone        : canonical dial / dedup format
  - match_required_skills  : mutual substring matching, minimum count
  - transitions            : allowed map, audit rows, field bundling
  - ingest_resumes         : counters, duplicates, skill filter, parse failures
  - import_resumes command : directory → batch
"""

import itertools
import tempfile
from decimal import Decimal
from io import StringIO
from pathlib import Path
from unittest.mock import patch

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase
from django.utils import timezone

from calls.models import CallQueueEntry
from candidates.models import Batch, Candidate, StatusChange
from candidates.services import create_batch, ingest_resumes, match_required_skills, normalize_phone
from candidates.transitions import (
    InvalidTransition,
    can_transition,
    record_screening_result,
    set_callback_scheduled,
    set_follow_up_scheduled,
    set_no_response,
    set_qualified,
    start_screening_call,
    transition_status,
)
from evaluations.services import ClaudeServiceError, build_screening_score

_phones = itertools.count(7000000001)

RESUME_TEXT = "Experienced backend engineer. " * 5


def _make_batch(**kwargs) -> Batch:
    defaults = {"batch_id": Batch.generate_batch_id(), "target_job_role": "Backend Engineer"}
    defaults.update(kwargs)
    return Batch.objects.create(**defaults)


def _make_candidate(**kwargs) -> Candidate:
    defaults = {
        "batch": kwargs.pop("batch", None) or _make_batch(),
        "name": "Vikram Iyer",
        "phone": f"+91{next(_phones)}",
        "email": "vikram@example.com",
    }
    defaults.update(kwargs)
    return Candidate.objects.create(**defaults)


class FakeParser:
    """Returns queued resume fields in order; an Exception instance is raised instead."""

    def __init__(self, *results):
        self.results = list(results)

    def parse_resume(self, text):
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _fields(phone, skills="Python, Django, AWS", **kwargs) -> dict:
    data = {
        "name": "Meera Nair",
        "phone": phone,
        "email": "meera.nair@example.com",
        "skills": skills,
        "years_of_experience": 4,
        "current_company": "Globex",
        "notice_period": "30 days",
    }
    data.update(kwargs)
    return data


# ── Phone normalisation ────────────────────────────────────────────────────────

class NormalizePhoneTests(TestCase):
    def test_ten_digit_local_number_gets_country_code(self):
        self.assertEqual(normalize_phone("98765 43210"), "+919876543210")

    def test_country_code_with_separators(self):
        self.assertEqual(normalize_phone("+91-98765-43210"), "+919876543210")
        self.assertEqual(normalize_phone("919876543210"), "+919876543210")

    def test_trunk_prefix_is_dropped(self):
        self.assertEqual(normalize_phone("098765 43210"), "+919876543210")

    def test_foreign_number_is_kept(self):
        self.assertEqual(normalize_phone("+1 415 555 0100"), "+14155550100")

    def test_invalid_numbers(self):
        self.assertIsNone(normalize_phone("12345"))
        self.assertIsNone(normalize_phone(""))
        self.assertIsNone(normalize_phone(None))
        self.assertIsNone(normalize_phone("Not available"))


# ── Skill matching ─────────────────────────────────────────────────────────────

class SkillMatchTests(TestCase):
    def test_substring_match_in_both_directions(self):
        match = match_required_skills("React.js, Core Java, SQL", ["React", "Java", "Go"])
        self.assertEqual(match.matched, ["React", "Java"])
        self.assertTrue(match.is_match(2))

    def test_below_minimum_is_not_a_match(self):
        match = match_required_skills("Python", ["python", "django"])
        self.assertEqual(match.count, 1)
        self.assertFalse(match.is_match(2))

    def test_no_requirement_always_matches(self):
        self.assertTrue(match_required_skills("Excel", []).is_match(2))


# ── Transitions ────────────────────────────────────────────────────────────────

class TransitionTests(TestCase):
    def test_allowed_map(self):
        S = Candidate.Status
        self.assertTrue(can_transition(S.NEW, S.CALLING_SCREENING))
        self.assertTrue(can_transition(S.CALLING_SCREENING, S.QUALIFIED))
        self.assertTrue(can_transition(S.QUALIFIED, S.CALLING_SCHEDULING))
        self.assertTrue(can_transition(S.REJECTED, S.REJECTED))
        self.assertFalse(can_transition(S.NEW, S.QUALIFIED))
        self.assertFalse(can_transition(S.REJECTED, S.CALLING_SCREENING))
        self.assertFalse(can_transition(S.ASSESSMENT_LINK_SENT, S.NEW))

    def test_invalid_transition_raises_and_writes_nothing(self):
        candidate = _make_candidate()
        with self.assertRaises(InvalidTransition):
            transition_status(candidate, Candidate.Status.QUALIFIED)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.NEW)
        self.assertFalse(StatusChange.objects.filter(candidate=candidate).exists())

    def test_start_screening_call_writes_audit_row_and_clears_callback(self):
        candidate = _make_candidate(
            status=Candidate.Status.CALLBACK_SCHEDULED,
            callback_requested=True,
            callback_scheduled_time=timezone.now(),
        )

        start_screening_call(candidate, run_id="run-7", note="Callback call placed")

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLING_SCREENING)
        self.assertEqual(candidate.screening_run_id, "run-7")
        self.assertFalse(candidate.callback_requested)
        self.assertIsNone(candidate.callback_scheduled_time)
        self.assertIsNotNone(candidate.last_call_started_at)
        change = StatusChange.objects.get(candidate=candidate)
        self.assertEqual(change.from_status, Candidate.Status.CALLBACK_SCHEDULED)
        self.assertEqual(change.to_status, Candidate.Status.CALLING_SCREENING)
        self.assertEqual(change.note, "Callback call placed")

    def test_same_status_transition_saves_fields_without_audit_row(self):
        candidate = _make_candidate(status=Candidate.Status.FOLLOW_UP_SCHEDULED)
        later = timezone.now()

        set_follow_up_scheduled(candidate, follow_up_at=later, failed_attempts=1)

        candidate.refresh_from_db()
        self.assertEqual(candidate.failed_attempts, 1)
        self.assertEqual(candidate.follow_up_time, later)
        self.assertFalse(StatusChange.objects.filter(candidate=candidate).exists())

    def test_callback_resets_attempts(self):
        candidate = _make_candidate(status=Candidate.Status.CALLING_SCREENING, callback_attempts=2)
        when = timezone.now()

        set_callback_scheduled(candidate, callback_at=when, reason="in a meeting", transcript="T")

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.CALLBACK_SCHEDULED)
        self.assertEqual(candidate.callback_attempts, 0)
        self.assertTrue(candidate.callback_requested)
        self.assertEqual(candidate.callback_reason, "in a meeting")
        self.assertEqual(candidate.call_status, Candidate.CallStatus.CALLBACK_REQUESTED)

    def test_record_screening_result_persists_criteria_and_overall(self):
        candidate = _make_candidate(status=Candidate.Status.CALLING_SCREENING)
        score = build_screening_score({
            "notice_period_score": 10,
            "budget_score": 10,
            "location_score": 10,
            "experience_score": 10,
            "technical_score": 13,
            "communication_score": 10,
            "summary": "Solid fit.",
        })

        record_screening_result(candidate, score, transcript="Agent: hi")
        set_qualified(candidate, scheduling_due_at=timezone.now())

        candidate.refresh_from_db()
        self.assertEqual(candidate.technical_score, 13)
        self.assertEqual(candidate.overall_qualification_score, Decimal("45.00"))
        self.assertEqual(candidate.conversation_summary, "Solid fit.")
        self.assertEqual(candidate.status, Candidate.Status.QUALIFIED)
        self.assertIsNotNone(candidate.scheduling_call_due_at)

    def test_no_response_is_terminal(self):
        candidate = _make_candidate()
        set_no_response(candidate, failed_attempts=2)
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.NO_RESPONSE)
        self.assertEqual(candidate.call_status, Candidate.CallStatus.FAILED_NO_RESPONSE)
        with self.assertRaises(InvalidTransition):
            start_screening_call(candidate, run_id="again")


# ── Batches ────────────────────────────────────────────────────────────────────

class BatchTests(TestCase):
    def test_create_batch_snapshots_requirements(self):
        batch = create_batch({
            "target_job_role": "Data Engineer",
            "required_skills": "Python, Spark ; Airflow",
            "min_experience": 3,
        })
        self.assertEqual(batch.required_skills, ["Python", "Spark", "Airflow"])
        self.assertEqual(batch.requirements["min_experience"], 3.0)
        self.assertIsNone(batch.requirements["max_experience"])

    def test_unknown_requirement_is_rejected(self):
        with self.assertRaises(ValueError):
            create_batch({"salary": 10})

    def test_stats_are_recorded_once(self):
        batch = _make_batch()
        batch.record_stats({"total": 2, "successful": 1, "failed": 1})
        with self.assertRaises(ValueError):
            batch.record_stats({"total": 2})
        batch.refresh_from_db()
        self.assertEqual(batch.successful, 1)
        self.assertIsNotNone(batch.processed_at)


# ── Ingest ─────────────────────────────────────────────────────────────────────

@patch("candidates.services.extract_pdf_text", return_value=RESUME_TEXT)
class IngestResumesTests(TestCase):
    requirements = {"target_job_role": "Backend Engineer", "required_skills": ["Python", "Django"]}

    def test_counters_cover_every_outcome(self, _mock_extract):
        existing = _make_candidate(phone="+919811111111")
        parser = FakeParser(
            _fields("98222 22222"),
            _fields(existing.phone),
            _fields("9833333333", skills="Excel, Tally"),
            _fields("123"),
            ClaudeServiceError("rate limited"),
        )
        files = [(f"resume_{i}.pdf", b"%PDF") for i in range(5)]

        summary = ingest_resumes(files, self.requirements, parser=parser)

        self.assertEqual(summary.stats, {
            "total": 5,
            "successful": 1,
            "duplicates": 1,
            "skill_mismatches": 1,
            "failed": 2,
        })
        summary.batch.refresh_from_db()
        self.assertEqual(summary.batch.successful, 1)
        self.assertEqual(summary.batch.failed, 2)

        created = summary.created[0]
        self.assertEqual(created.phone, "+919822222222")
        self.assertEqual(created.status, Candidate.Status.NEW)
        self.assertEqual(created.skills_matched, "Python, Django")
        self.assertEqual(created.batch, summary.batch)

    def test_unreadable_pdf_is_failed(self, mock_extract):
        mock_extract.return_value = "tiny"
        summary = ingest_resumes([("scan.pdf", b"%PDF")], parser=FakeParser())
        self.assertEqual(summary.stats["failed"], 1)
        self.assertIn("sufficient text", summary.results[0]["error"])

    def test_missing_name_is_derived_from_email(self, _mock_extract):
        parser = FakeParser(_fields("9844444444", name=None, email="rahul.k.sharma99@example.com"))
        summary = ingest_resumes([("a.pdf", b"%PDF")], parser=parser)
        self.assertEqual(summary.created[0].name, "Rahul K Sharma")

    def test_duplicate_within_same_run(self, _mock_extract):
        parser = FakeParser(_fields("9855555555"), _fields("+91 98555 55555"))
        summary = ingest_resumes([("a.pdf", b"1"), ("b.pdf", b"2")], self.requirements, parser=parser)
        self.assertEqual(summary.stats["successful"], 1)
        self.assertEqual(summary.stats["duplicates"], 1)

    def test_enqueue_adds_created_candidates_to_queue(self, _mock_extract):
        parser = FakeParser(_fields("9866666666"), _fields("9877777777"))
        summary = ingest_resumes([("a.pdf", b"1"), ("b.pdf", b"2")], parser=parser, enqueue=True)
        self.assertEqual(summary.enqueued, {"added": 2, "skipped": 0})
        self.assertEqual(CallQueueEntry.objects.count(), 2)


# ── Management command ─────────────────────────────────────────────────────────

class ImportResumesCommandTests(TestCase):
    @patch("candidates.services.extract_pdf_text", return_value=RESUME_TEXT)
    @patch("evaluations.services.ClaudeService")
    def test_imports_directory(self, mock_service_cls, _mock_extract):
        mock_service_cls.return_value = FakeParser(_fields("9888888888"))
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "one.pdf").write_bytes(b"%PDF-1.4")
            Path(tmp, "notes.txt").write_text("ignored")
            out = StringIO()

            call_command(
                "import_resumes", tmp,
                "--role", "Backend Engineer",
                "--skills", "Python, Django",
                "--experience", "2", "6",
                stdout=out,
            )

        self.assertIn("Successful       : 1", out.getvalue())
        batch = Batch.objects.get()
        self.assertEqual(batch.target_job_role, "Backend Engineer")
        self.assertEqual(batch.min_experience, Decimal("2.0"))
        self.assertEqual(Candidate.objects.filter(batch=batch).count(), 1)

    def test_missing_directory_is_an_error(self):
        with self.assertRaises(CommandError):
            call_command("import_resumes", "/nonexistent/resumes")
