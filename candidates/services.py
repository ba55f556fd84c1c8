"""
candidates/services.py

Public services:
  normalize_phone(raw)                      → "+<digits>" | None
  match_required_skills(skills, required)   → SkillMatch
  extract_pdf_text(content)                 → str
  create_batch(requirements)                → Batch
  ingest_resumes(files, requirements, ...)  → IngestSummary

Resume ingest: each PDF is read with pdfplumber, its fields are parsed by
Claude, the phone is normalised into the dedup key, and candidates that
match fewer than MIN_SKILL_MATCHES of the batch's required skills are
dropped. Batch statistics are written once at the end of the run.
"""

import io
import logging
import re
from dataclasses import dataclass, field

import pdfplumber
from django.conf import settings
from django.db import IntegrityError, transaction

from candidates.models import Batch, Candidate
from hirecall.constants import (
    MIN_RESUME_TEXT_LENGTH,
    NOT_AVAILABLE,
    NOT_SPECIFIED,
    PDF_MAX_PAGES,
)
from hirecall.text_utils import name_from_email, split_skills

logger = logging.getLogger(__name__)


# ── Phone numbers ──────────────────────────────────────────────────────────────

def normalize_phone(raw: str | None) -> str | None:
    """
    Normalise a phone number into the canonical dedup / dial format.

    Examples (DEFAULT_COUNTRY_CODE = "91"):
        '98765 43210'      →  '+919876543210'
        '+91-98765-43210'  →  '+919876543210'
        '098765 43210'     →  '+919876543210'
        '+1 415 555 0100'  →  '+14155550100'
        '12345'            →  None
    """
    if not raw or raw == NOT_AVAILABLE:
        return None

    digits = re.sub(r"\D", "", str(raw))
    country = settings.DEFAULT_COUNTRY_CODE

    if digits.startswith(country) and len(digits) == 10 + len(country):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+{country}{digits}"
    if digits.startswith("0") and len(digits) == 11:
        return f"+{country}{digits[1:]}"
    if len(digits) > 10:
        return f"+{digits}"
    return None


# ── Skill matching ─────────────────────────────────────────────────────────────

@dataclass
class SkillMatch:
    matched: list[str]
    required: list[str]

    @property
    def count(self) -> int:
        return len(self.matched)

    def is_match(self, minimum: int) -> bool:
        # No requirement configured means every candidate passes.
        return not self.required or self.count >= minimum


def match_required_skills(candidate_skills, required_skills) -> SkillMatch:
    """
    A required skill counts as matched when it and one of the candidate's
    skills contain one another (case-insensitive), so "React" matches
    "React.js" and "Java" matches "Core Java".
    """
    required = [s for s in (required_skills or []) if str(s).strip()]
    have = split_skills(candidate_skills)
    matched = []
    for original in required:
        wanted = str(original).strip().lower()
        if any(wanted in skill or skill in wanted for skill in have):
            matched.append(original)
    return SkillMatch(matched=matched, required=required)


# ── PDF text ───────────────────────────────────────────────────────────────────

def extract_pdf_text(content: bytes) -> str:
    """
    Extract text from the first PDF_MAX_PAGES pages using pdfplumber.
    Returns empty string on any extraction error.
    """
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            parts = []
            for page in pdf.pages[:PDF_MAX_PAGES]:
                text = page.extract_text()
                if text:
                    parts.append(text)
            return "\n".join(parts)
    except Exception as exc:
        logger.warning("pdfplumber extraction failed for resume: %s", exc)
        return ""


# ── Ingest ─────────────────────────────────────────────────────────────────────

@dataclass
class IngestSummary:
    batch: Batch
    stats: dict
    created: list = field(default_factory=list)
    results: list = field(default_factory=list)
    enqueued: dict | None = None


REQUIREMENT_FIELDS = (
    "target_company",
    "target_job_role",
    "required_notice_period",
    "budget_min_lpa",
    "budget_max_lpa",
    "location",
    "min_experience",
    "max_experience",
    "required_skills",
)


def create_batch(requirements: dict | None = None) -> Batch:
    """Create a Batch holding a frozen copy of the job requirements."""
    requirements = requirements or {}
    unknown = set(requirements) - set(REQUIREMENT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown job requirement field(s): {', '.join(sorted(unknown))}")
    values = {key: requirements[key] for key in REQUIREMENT_FIELDS if requirements.get(key) is not None}
    if "required_skills" in values:
        values["required_skills"] = [s.strip() for s in split_skills_preserving_case(values["required_skills"])]
    return Batch.objects.create(batch_id=Batch.generate_batch_id(), **values)


def split_skills_preserving_case(raw) -> list[str]:
    if isinstance(raw, (list, tuple)):
        return [str(s) for s in raw if str(s).strip()]
    return [s for s in re.split(r"[,;\n|]+", raw or "") if s.strip()]


def ingest_resumes(files, requirements: dict | None = None, *, parser=None, enqueue: bool = False) -> IngestSummary:
    """
    Turn uploaded resumes into New candidates of a fresh Batch.

    Args:
        files        : iterable of (filename, pdf_bytes) pairs
        requirements : job requirements snapshot for the batch
        parser       : object exposing parse_resume(text) → dict; defaults to ClaudeService
        enqueue      : add created candidates to the call queue afterwards

    A file is counted as failed when no usable text or phone can be
    extracted, as a duplicate when the normalised phone already exists, and
    as a skill mismatch when fewer than MIN_SKILL_MATCHES required skills
    match. None of these abort the run.
    """
    if parser is None:
        from evaluations.services import ClaudeService
        parser = ClaudeService()

    files = list(files)
    batch = create_batch(requirements)
    stats = {"total": len(files), "successful": 0, "duplicates": 0, "skill_mismatches": 0, "failed": 0}
    summary = IngestSummary(batch=batch, stats=stats)

    logger.info("Ingesting %s resume(s) into batch=%s", len(files), batch.batch_id)

    for filename, content in files:
        outcome = _ingest_one(batch, filename, content, parser)
        stats[outcome["counter"]] += 1
        summary.results.append(outcome)
        if outcome.get("candidate") is not None:
            summary.created.append(outcome["candidate"])

    batch.record_stats(stats)

    logger.info(
        "Batch=%s ingested: successful=%s duplicates=%s skill_mismatches=%s failed=%s",
        batch.batch_id,
        stats["successful"],
        stats["duplicates"],
        stats["skill_mismatches"],
        stats["failed"],
    )

    if enqueue and summary.created:
        from calls.queue import QueueScheduler
        summary.enqueued = QueueScheduler().enqueue([c.pk for c in summary.created])

    return summary


def _ingest_one(batch: Batch, filename: str, content: bytes, parser) -> dict:
    text = extract_pdf_text(content)
    if len(text.strip()) < MIN_RESUME_TEXT_LENGTH:
        logger.warning("Resume %s: could not extract sufficient text", filename)
        return {"filename": filename, "counter": "failed", "error": "Could not extract sufficient text from PDF"}

    fields = _parse_fields(parser, text, filename)

    phone = normalize_phone(fields.get("phone"))
    if not phone:
        logger.warning("Resume %s: invalid phone %r", filename, fields.get("phone"))
        return {"filename": filename, "counter": "failed", "error": "Invalid phone number format"}

    if Candidate.objects.filter(phone=phone).exists():
        logger.info("Resume %s: duplicate candidate phone=%s", filename, phone)
        return {"filename": filename, "counter": "duplicates", "phone": phone}

    skills = fields.get("skills") or NOT_AVAILABLE
    match = match_required_skills(skills, batch.required_skills)
    if not match.is_match(settings.MIN_SKILL_MATCHES):
        logger.info(
            "Resume %s: skill mismatch (%s/%s matched)", filename, match.count, len(match.required)
        )
        return {"filename": filename, "counter": "skill_mismatches", "matched": match.matched}

    try:
        with transaction.atomic():
            candidate = Candidate.objects.create(
                batch=batch,
                name=name_from_email(fields.get("email"), fields.get("name")),
                phone=phone,
                email=fields.get("email") or NOT_AVAILABLE,
                skills=skills,
                skills_matched=", ".join(match.matched),
                years_of_experience=str(fields.get("years_of_experience") or NOT_AVAILABLE),
                current_company=fields.get("current_company") or NOT_AVAILABLE,
                notice_period=fields.get("notice_period") or NOT_SPECIFIED,
            )
    except IntegrityError:
        # Another ingest inserted the same phone between the check and the insert.
        logger.info("Resume %s: duplicate candidate phone=%s (concurrent insert)", filename, phone)
        return {"filename": filename, "counter": "duplicates", "phone": phone}

    logger.info("Resume %s: created candidate=%s phone=%s", filename, candidate.pk, phone)
    return {"filename": filename, "counter": "successful", "candidate": candidate}


def _parse_fields(parser, text: str, filename: str) -> dict:
    """Resume parsing failures leave every field unavailable instead of aborting."""
    from evaluations.services import ClaudeServiceError

    try:
        return parser.parse_resume(text) or {}
    except ClaudeServiceError as exc:
        logger.error("Resume %s: parsing failed: %s", filename, exc)
        return {}
