"""
messaging/tests.py

Assessment-link email: link shape, recipient choice, and the status change
that only follows a successful send. Gmail is replaced by a fake.
"""

from datetime import date, time
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

from django.test import TestCase, override_settings
from django.utils.html import escape

from candidates.models import Batch, Candidate, StatusChange
from messaging.services import GmailService, build_assessment_link, send_assessment_link


class FakeGmail:
    def __init__(self, message_id="msg-1"):
        self.message_id = message_id
        self.sent = []

    def send_email(self, to, subject, body, html=False):
        self.sent.append({"to": to, "subject": subject, "body": body, "html": html})
        return self.message_id


def _make_candidate(**kwargs) -> Candidate:
    batch = Batch.objects.create(
        batch_id=Batch.generate_batch_id(),
        target_company="Initech",
        target_job_role="Platform Engineer",
    )
    defaults = {
        "batch": batch,
        "name": "Kavya Menon",
        "phone": "+919800000001",
        "email": "kavya@example.com",
        "status": Candidate.Status.ASSESSMENT_SCHEDULED,
        "assessment_date": date(2026, 3, 5),
        "assessment_time": time(15, 0),
    }
    defaults.update(kwargs)
    return Candidate.objects.create(**defaults)


@override_settings(ASSESSMENT_BASE_URL="https://assess.example.com/start")
class BuildAssessmentLinkTests(TestCase):
    def test_link_carries_candidate_and_token(self):
        candidate = _make_candidate()
        link = build_assessment_link(candidate)
        parts = urlsplit(link)
        query = parse_qs(parts.query)
        self.assertEqual(f"{parts.scheme}://{parts.netloc}{parts.path}", "https://assess.example.com/start")
        self.assertEqual(query["candidate"], [str(candidate.pk)])
        self.assertEqual(len(query["token"][0]), 32)

    def test_tokens_are_unique(self):
        candidate = _make_candidate()
        self.assertNotEqual(build_assessment_link(candidate), build_assessment_link(candidate))


class SendAssessmentLinkTests(TestCase):
    def test_success_marks_link_sent(self):
        candidate = _make_candidate()
        gmail = FakeGmail()

        self.assertTrue(send_assessment_link(candidate, gmail=gmail))

        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.ASSESSMENT_LINK_SENT)
        self.assertTrue(candidate.assessment_link_sent)
        self.assertIn(f'href="{escape(candidate.assessment_link)}"', gmail.sent[0]["body"])
        self.assertEqual(gmail.sent[0]["to"], "kavya@example.com")
        self.assertEqual(gmail.sent[0]["subject"], "Your technical assessment for Platform Engineer")
        self.assertTrue(gmail.sent[0]["html"])
        self.assertIn("Initech", gmail.sent[0]["body"])
        self.assertTrue(StatusChange.objects.filter(
            candidate=candidate, to_status=Candidate.Status.ASSESSMENT_LINK_SENT,
        ).exists())

    def test_verified_email_is_preferred(self):
        candidate = _make_candidate(verified_email="kavya.m@example.org")
        gmail = FakeGmail()
        send_assessment_link(candidate, gmail=gmail)
        self.assertEqual(gmail.sent[0]["to"], "kavya.m@example.org")

    def test_failed_send_leaves_status_unchanged(self):
        candidate = _make_candidate()
        self.assertFalse(send_assessment_link(candidate, gmail=FakeGmail(message_id=None)))
        candidate.refresh_from_db()
        self.assertEqual(candidate.status, Candidate.Status.ASSESSMENT_SCHEDULED)
        self.assertFalse(candidate.assessment_link_sent)

    def test_no_email_on_file(self):
        candidate = _make_candidate(email="Not available")
        gmail = FakeGmail()
        self.assertFalse(send_assessment_link(candidate, gmail=gmail))
        self.assertEqual(gmail.sent, [])


class GmailServiceTests(TestCase):
    @override_settings(GOOGLE_CLIENT_ID="", GOOGLE_CLIENT_SECRET="", GOOGLE_REFRESH_TOKEN="")
    def test_unconfigured_credentials_return_none(self):
        self.assertIsNone(GmailService().send_email("a@example.com", "Hi", "Body"))

    @override_settings(EMAIL_FROM_NAME="Talent Team <talent@example.com>")
    def test_retries_once_after_auth_error(self):
        failing = MagicMock()
        failing.users.return_value.messages.return_value.send.return_value.execute.side_effect = (
            Exception("HttpError 401 invalid credentials")
        )
        working = MagicMock()
        working.users.return_value.messages.return_value.send.return_value.execute.return_value = {"id": "abc"}

        with patch.object(GmailService, "_build_service", side_effect=[failing, working]):
            msg_id = GmailService().send_email("a@example.com", "Hi", "Body")

        self.assertEqual(msg_id, "abc")
