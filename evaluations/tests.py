"""
evaluations/tests.py

Covers the score arithmetic and the Claude response handling. The Anthropic
client is replaced by a MagicMock, so no network access is needed.
"""

import json
from datetime import date, time
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

from django.test import SimpleTestCase, override_settings

from evaluations.services import (
    ClaudeService,
    ClaudeServiceError,
    _parse_claude_json,
    build_scheduling_outcome,
    build_screening_score,
    clamp_criterion,
    compute_overall_score,
)


def _message(text: str, stop_reason: str = "end_turn"):
    return SimpleNamespace(
        content=[SimpleNamespace(text=text)],
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=10, output_tokens=20),
    )


def _service_returning(text: str, stop_reason: str = "end_turn"):
    client = MagicMock()
    client.messages.create.return_value = _message(text, stop_reason)
    return ClaudeService(client=client), client


FULL_MARKS_PAYLOAD = {
    "notice_period_score": 20,
    "budget_score": 20,
    "location_score": 20,
    "experience_score": 20,
    "technical_score": 40,
    "communication_score": 20,
}


# ── Score arithmetic ───────────────────────────────────────────────────────────

class ComputeOverallScoreTests(SimpleTestCase):
    def test_threshold_boundary(self):
        criteria = {"a": 10, "b": 10, "c": 10, "d": 10, "e": 13, "f": 10}
        self.assertEqual(compute_overall_score(criteria), Decimal("45.00"))

    def test_rounds_half_up_to_two_places(self):
        self.assertEqual(compute_overall_score({"a": 84}), Decimal("60.00"))
        self.assertEqual(compute_overall_score({"a": 1}), Decimal("0.71"))
        self.assertEqual(compute_overall_score({"a": 62}), Decimal("44.29"))

    def test_no_scores_is_none(self):
        self.assertIsNone(compute_overall_score({"a": None, "b": None}))
        self.assertIsNone(compute_overall_score({}))


class ClampCriterionTests(SimpleTestCase):
    def test_clamps_to_range(self):
        self.assertEqual(clamp_criterion("technical_score", 55), 40)
        self.assertEqual(clamp_criterion("budget_score", -3), 0)
        self.assertEqual(clamp_criterion("budget_score", "12"), 12)
        self.assertEqual(clamp_criterion("budget_score", 7.6), 8)

    def test_non_numeric_is_none(self):
        self.assertIsNone(clamp_criterion("budget_score", None))
        self.assertIsNone(clamp_criterion("budget_score", "n/a"))
        self.assertIsNone(clamp_criterion("budget_score", True))


class BuildScreeningScoreTests(SimpleTestCase):
    def test_overall_is_derived_not_reported(self):
        payload = dict(FULL_MARKS_PAYLOAD, overall_score=12, summary="Great fit.")
        score = build_screening_score(payload)
        self.assertEqual(score.overall, Decimal("100.00"))
        self.assertTrue(score.has_score)
        self.assertEqual(score.breakdown["technical_score"], {"score": 40, "max": 40})
        self.assertEqual(score.breakdown["overall"], "100.00")

    def test_missing_criteria_count_as_zero(self):
        score = build_screening_score({"technical_score": 28})
        self.assertEqual(score.criteria["budget_score"], 0)
        self.assertEqual(score.overall, Decimal("20.00"))

    def test_no_criteria_means_no_score(self):
        score = build_screening_score({"callback_requested": True, "callback_time": "tomorrow morning"})
        self.assertIsNone(score.overall)
        self.assertFalse(score.has_score)
        self.assertTrue(score.callback_requested)
        self.assertEqual(score.callback_time_text, "tomorrow morning")

    def test_all_zero_is_not_a_score(self):
        score = build_screening_score({name: 0 for name in FULL_MARKS_PAYLOAD})
        self.assertEqual(score.overall, Decimal("0.00"))
        self.assertFalse(score.has_score)

    def test_narrative_fields_and_notes(self):
        score = build_screening_score({
            "technical_score": 30,
            "criteria_notes": {"technical_score": "Strong Django.", "unknown": "ignored"},
            "expected_budget": "12 LPA",
            "location_preference": "Pune",
            "red_flags": ["job hopping"],
        })
        self.assertEqual(score.budget, "12 LPA")
        self.assertEqual(score.location, "Pune")
        self.assertEqual(score.breakdown["technical_score"]["note"], "Strong Django.")
        self.assertNotIn("unknown", score.breakdown)
        self.assertEqual(score.breakdown["red_flags"], ["job hopping"])


class BuildSchedulingOutcomeTests(SimpleTestCase):
    def test_confirmed_slot(self):
        outcome = build_scheduling_outcome({
            "email_verified": True,
            "verified_email": " new@example.com ",
            "assessment_date": "2026-03-05",
            "assessment_time": "15:30",
            "candidate_confirmed": True,
        })
        self.assertEqual(outcome.verified_email, "new@example.com")
        self.assertEqual(outcome.assessment_date, date(2026, 3, 5))
        self.assertEqual(outcome.assessment_time, time(15, 30))
        self.assertTrue(outcome.is_confirmed)

    def test_unparseable_values_leave_it_unconfirmed(self):
        outcome = build_scheduling_outcome({
            "assessment_date": "next Friday",
            "assessment_time": "15:30",
            "candidate_confirmed": True,
        })
        self.assertIsNone(outcome.assessment_date)
        self.assertFalse(outcome.is_confirmed)

    def test_agreement_without_yes_is_pending(self):
        outcome = build_scheduling_outcome({"assessment_date": "2026-03-05", "assessment_time": "10:00"})
        self.assertFalse(outcome.is_confirmed)


# ── JSON parsing ───────────────────────────────────────────────────────────────

class ParseClaudeJsonTests(SimpleTestCase):
    def test_fenced_json(self):
        raw = '```json\n{"technical_score": 30}\n```'
        self.assertEqual(_parse_claude_json(raw), {"technical_score": 30})

    def test_repairs_trailing_comma(self):
        self.assertEqual(_parse_claude_json('{"a": 1, "b": 2,}'), {"a": 1, "b": 2})

    def test_non_object_raises(self):
        with self.assertRaises(ClaudeServiceError):
            _parse_claude_json("[1, 2, 3]")


# ── Service ────────────────────────────────────────────────────────────────────

class ClaudeServiceTests(SimpleTestCase):
    def test_score_screening_transcript(self):
        service, client = _service_returning(json.dumps(dict(FULL_MARKS_PAYLOAD, technical_score=10)))

        score = service.score_screening_transcript(
            "Agent: Hello\nUser: Hi",
            {"name": "Asha"},
            {"target_job_role": "Backend Engineer"},
        )

        self.assertEqual(score.overall, Decimal("78.57"))
        kwargs = client.messages.create.call_args.kwargs
        self.assertIn("<candidate_data>", kwargs["messages"][0]["content"])
        self.assertIn("Backend Engineer", kwargs["messages"][0]["content"])

    @override_settings(ANTHROPIC_FAST_MODEL="claude-fast-test")
    def test_parse_resume_uses_fast_model(self):
        service, client = _service_returning('{"name": "Asha Rao", "phone": "9876543210"}')
        self.assertEqual(service.parse_resume("resume text")["name"], "Asha Rao")
        self.assertEqual(client.messages.create.call_args.kwargs["model"], "claude-fast-test")

    def test_scheduling_prompt_carries_today(self):
        service, client = _service_returning('{"candidate_confirmed": false}')
        outcome = service.score_scheduling_transcript("User: maybe", date(2026, 3, 2))
        self.assertFalse(outcome.is_confirmed)
        self.assertIn("2026-03-02 (Monday)", client.messages.create.call_args.kwargs["messages"][0]["content"])

    def test_truncated_response_raises(self):
        service, _client = _service_returning('{"a":', stop_reason="max_tokens")
        with self.assertRaises(ClaudeServiceError):
            service.parse_resume("text")

    def test_empty_response_raises(self):
        client = MagicMock()
        client.messages.create.return_value = SimpleNamespace(content=[], stop_reason="end_turn", usage=None)
        with self.assertRaises(ClaudeServiceError):
            ClaudeService(client=client).parse_resume("text")

    @override_settings(ANTHROPIC_API_KEY="")
    def test_missing_api_key_raises(self):
        with self.assertRaises(ClaudeServiceError):
            ClaudeService().parse_resume("text")
