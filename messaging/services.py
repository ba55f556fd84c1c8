"""
messaging/services.py

Outbound email via the Gmail API.

Public orchestrators:
  build_assessment_link(candidate) — per-candidate assessment URL
  send_assessment_link(candidate)  — email the link and mark it sent
"""

import base64
import logging
import uuid
from email.mime.text import MIMEText
from urllib.parse import urlencode

from django.conf import settings
from django.db import transaction
from django.template.loader import render_to_string

from candidates.models import Candidate
from candidates.transitions import set_assessment_link_sent

logger = logging.getLogger(__name__)


class GmailError(Exception):
    """Raised when the Gmail API client cannot be built."""


# ─────────────────────────────────────────────────────────────────────────────
# GmailService
# ─────────────────────────────────────────────────────────────────────────────

class GmailService:
    """
    Send emails via Gmail API using an OAuth2 refresh token.

    Requires google-api-python-client + google-auth.
    """

    def __init__(self):
        self._service = None

    @property
    def service(self):
        if self._service is None:
            self._service = self._build_service()
        return self._service

    @staticmethod
    def _build_service():
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        client_id = settings.GOOGLE_CLIENT_ID
        client_secret = settings.GOOGLE_CLIENT_SECRET
        refresh_token = settings.GOOGLE_REFRESH_TOKEN

        if not all([client_id, client_secret, refresh_token]):
            raise GmailError("Gmail API credentials not configured (GOOGLE_CLIENT_ID/SECRET/REFRESH_TOKEN).")

        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri="https://oauth2.googleapis.com/token",
            client_id=client_id,
            client_secret=client_secret,
            scopes=["https://www.googleapis.com/auth/gmail.send"],
        )
        creds.refresh(Request())
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _reset_service(self) -> None:
        """Clear cached service to force credential rebuild on next access."""
        self._service = None

    def send_email(self, to: str, subject: str, body: str, html: bool = False) -> str | None:
        """
        Send an email via Gmail API.

        Returns:
            Gmail message ID on success, or None on failure.
        """
        try:
            svc = self.service
        except Exception as exc:
            logger.error("Gmail service init failed: %s", exc)
            return None

        mime = MIMEText(body, "html" if html else "plain", "utf-8")
        mime["To"] = to
        mime["Subject"] = subject
        if settings.EMAIL_FROM_NAME:
            mime["From"] = settings.EMAIL_FROM_NAME

        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")

        for attempt in range(2):
            try:
                result = svc.users().messages().send(
                    userId="me",
                    body={"raw": raw},
                ).execute()
                msg_id = result.get("id")
                logger.info("Gmail sent to %s: id=%s", to, msg_id)
                return msg_id
            except Exception as exc:
                if attempt == 0 and "401" in str(exc):
                    logger.warning("Gmail auth error, rebuilding service: %s", exc)
                    self._reset_service()
                    try:
                        svc = self.service
                    except Exception:
                        logger.error("Gmail service rebuild failed after 401")
                        return None
                    continue
                logger.error("Gmail send failed to %s: %s", to, exc)
                return None
        return None


# ─────────────────────────────────────────────────────────────────────────────
# Assessment link
# ─────────────────────────────────────────────────────────────────────────────

def build_assessment_link(candidate: Candidate) -> str:
    """``{ASSESSMENT_BASE_URL}?candidate=<id>&token=<uuid4>``"""
    query = urlencode({"candidate": candidate.pk, "token": uuid.uuid4().hex})
    return f"{settings.ASSESSMENT_BASE_URL.rstrip('?')}?{query}"


def send_assessment_link(candidate: Candidate, gmail: GmailService | None = None) -> bool:
    """
    Email the assessment link to the candidate's confirmed address and move
    them to Assessment Link Sent.

    Returns True when the email went out. A failed send leaves the candidate
    in Assessment Scheduled for a recruiter to handle.
    """
    to = candidate.contact_email
    if not to:
        logger.warning("Assessment link not sent: candidate=%s has no email", candidate.pk)
        return False

    link = build_assessment_link(candidate)
    requirements = candidate.batch.requirements
    context = {
        "candidate_name": candidate.name,
        "company": requirements["target_company"] or "our client",
        "job_role": requirements["target_job_role"] or "the role",
        "assessment_date": candidate.assessment_date,
        "assessment_time": candidate.assessment_time,
        "link": link,
        "from_name": settings.EMAIL_FROM_NAME,
    }
    body = render_to_string("messaging/assessment_link_email.html", context)
    subject = f"Your technical assessment for {context['job_role']}"

    gmail = gmail or GmailService()
    msg_id = gmail.send_email(to, subject, body, html=True)
    if not msg_id:
        logger.warning("Assessment link email failed: candidate=%s to=%s", candidate.pk, to)
        return False

    with transaction.atomic():
        locked = Candidate.objects.select_for_update().get(pk=candidate.pk)
        set_assessment_link_sent(locked, link=link)

    logger.info("Assessment link sent: candidate=%s gmail_id=%s", candidate.pk, msg_id)
    return True
