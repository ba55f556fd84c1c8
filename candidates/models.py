import time

from django.db import models
from django.utils import timezone

from hirecall.constants import NOT_AVAILABLE


class Batch(models.Model):
    """
    One resume upload run. Holds the job requirements snapshot the batch was
    screened against plus the ingest statistics. Requirements are frozen at
    creation; new requirements mean a new batch.
    """

    batch_id = models.CharField(max_length=20, unique=True)

    # Ingest statistics, written once by record_stats()
    total_resumes = models.PositiveIntegerField(default=0)
    successful = models.PositiveIntegerField(default=0)
    duplicates = models.PositiveIntegerField(default=0)
    skill_mismatches = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)
    processed_at = models.DateTimeField(null=True, blank=True)

    # Job requirements snapshot
    target_company = models.CharField(max_length=255, blank=True, default="")
    target_job_role = models.CharField(max_length=255, blank=True, default="")
    required_notice_period = models.CharField(max_length=100, blank=True, default="")
    budget_min_lpa = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    budget_max_lpa = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    location = models.CharField(max_length=255, blank=True, default="")
    min_experience = models.DecimalField(max_digits=4, decimal_places=1, null=True, blank=True)
    max_experience = models.DecimalField(max_digits=4, decimal_places=1, null=True, blank=True)
    required_skills = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Batch"
        verbose_name_plural = "Batches"

    def __str__(self) -> str:
        return f"Batch {self.batch_id}"

    @staticmethod
    def generate_batch_id() -> str:
        """Epoch-millisecond token, bumped forward on collision."""
        token = int(time.time() * 1000)
        while Batch.objects.filter(batch_id=str(token)).exists():
            token += 1
        return str(token)

    @property
    def requirements(self) -> dict:
        """Job requirements in the shape handed to prompts and the scorer."""
        return {
            "target_company": self.target_company,
            "target_job_role": self.target_job_role,
            "required_notice_period": self.required_notice_period,
            "budget_min_lpa": _plain(self.budget_min_lpa),
            "budget_max_lpa": _plain(self.budget_max_lpa),
            "location": self.location,
            "min_experience": _plain(self.min_experience),
            "max_experience": _plain(self.max_experience),
            "required_skills": list(self.required_skills or []),
        }

    def record_stats(self, stats: dict) -> None:
        """Persist the ingest counters. A batch is processed exactly once."""
        if self.processed_at is not None:
            raise ValueError(f"Batch {self.batch_id} statistics were already recorded.")
        self.total_resumes = stats.get("total", 0)
        self.successful = stats.get("successful", 0)
        self.duplicates = stats.get("duplicates", 0)
        self.skill_mismatches = stats.get("skill_mismatches", 0)
        self.failed = stats.get("failed", 0)
        self.processed_at = timezone.now()
        self.save(update_fields=[
            "total_resumes",
            "successful",
            "duplicates",
            "skill_mismatches",
            "failed",
            "processed_at",
        ])


def _plain(value):
    return float(value) if value is not None else None


class Candidate(models.Model):
    """
    A screened person and the single source of truth for their call
    lifecycle. Status changes go through candidates/transitions.py.
    """

    class Status(models.TextChoices):
        # ── Intake ───────────────────────────────────────────────────────────
        NEW = "new", "New"

        # ── Screening ─────────────────────────────────────────────────────────
        CALLING_SCREENING = "calling_screening", "Calling - Screening"
        CALLBACK_SCHEDULED = "callback_scheduled", "Callback Scheduled"
        FOLLOW_UP_SCHEDULED = "follow_up_scheduled", "Follow-Up Scheduled"

        # ── Screening outcomes ────────────────────────────────────────────────
        QUALIFIED = "qualified", "Qualified - Assessment Scheduling Queued"
        REJECTED = "rejected", "Rejected - Low Score"
        MANUAL_REVIEW = "manual_review", "Manual Review Required"
        NO_RESPONSE = "no_response", "No Response - Max Attempts"

        # ── Assessment scheduling ─────────────────────────────────────────────
        CALLING_SCHEDULING = "calling_scheduling", "Calling - Assessment Scheduling"
        ASSESSMENT_SCHEDULED = "assessment_scheduled", "Assessment Scheduled - Awaiting Manual Link"
        SCHEDULING_PENDING = "scheduling_pending", "Scheduling Call Completed - Pending Confirmation"
        SCHEDULING_FAILED = "scheduling_failed", "Scheduling Call Failed - Manual Intervention Required"
        ASSESSMENT_LINK_SENT = "assessment_link_sent", "Assessment Link Sent"

    class CallStatus(models.TextChoices):
        CALLING_SCREENING = "calling_screening", "Calling - Screening"
        SCREENING_COMPLETED = "screening_completed", "Completed - Screening"
        CALLBACK_REQUESTED = "callback_requested", "Callback Requested"
        DID_NOT_PICK_UP = "did_not_pick_up", "Did Not Pick Up"
        FAILED_NO_RESPONSE = "failed_no_response", "Failed - No Response"
        CALLING_SCHEDULING = "calling_scheduling", "Calling - Scheduling"
        SCHEDULING_COMPLETED = "scheduling_completed", "Completed - Scheduling"
        SCHEDULING_FAILED = "scheduling_failed", "Failed - Scheduling"
        NO_WEBHOOK = "no_webhook", "Timed Out - No Webhook"

    batch = models.ForeignKey(
        Batch,
        on_delete=models.CASCADE,
        related_name="candidates",
    )

    # Profile (as parsed from the resume)
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=20, unique=True)
    email = models.CharField(max_length=254, blank=True, default="")
    verified_email = models.CharField(max_length=254, blank=True, default="")
    email_verified = models.BooleanField(default=False)
    skills = models.TextField(blank=True, default="")
    skills_matched = models.TextField(blank=True, default="")
    years_of_experience = models.CharField(max_length=50, blank=True, default="")
    current_company = models.CharField(max_length=255, blank=True, default="")
    notice_period = models.CharField(max_length=100, blank=True, default="")

    # External call-session identifiers
    screening_run_id = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    # CallLog call_type of the dial that produced screening_run_id
    screening_call_kind = models.CharField(max_length=30, blank=True, default="")
    scheduling_run_id = models.CharField(max_length=128, null=True, blank=True, db_index=True)

    # Lifecycle
    status = models.CharField(
        max_length=30,
        choices=Status.choices,
        default=Status.NEW,
        db_index=True,
    )
    call_status = models.CharField(max_length=30, choices=CallStatus.choices, blank=True, default="")
    failed_attempts = models.PositiveSmallIntegerField(default=0)
    follow_up_time = models.DateTimeField(null=True, blank=True, db_index=True)
    last_call_started_at = models.DateTimeField(null=True, blank=True)
    # Due time of the one-shot assessment-scheduling call for qualified candidates
    scheduling_call_due_at = models.DateTimeField(null=True, blank=True, db_index=True)

    # Callback
    callback_requested = models.BooleanField(default=False)
    callback_scheduled_time = models.DateTimeField(null=True, blank=True, db_index=True)
    callback_reason = models.TextField(blank=True, default="")
    callback_attempts = models.PositiveSmallIntegerField(default=0)
    last_callback_attempt = models.DateTimeField(null=True, blank=True)

    # Screening scores (null until the screening transcript is scored)
    notice_period_score = models.PositiveSmallIntegerField(null=True, blank=True)
    budget_score = models.PositiveSmallIntegerField(null=True, blank=True)
    location_score = models.PositiveSmallIntegerField(null=True, blank=True)
    experience_score = models.PositiveSmallIntegerField(null=True, blank=True)
    technical_score = models.PositiveSmallIntegerField(null=True, blank=True)
    communication_score = models.PositiveSmallIntegerField(null=True, blank=True)
    overall_qualification_score = models.DecimalField(
        max_digits=5, decimal_places=2, null=True, blank=True
    )
    qualification_breakdown = models.JSONField(null=True, blank=True)

    # What the candidate said on the screening call
    job_interest = models.CharField(max_length=50, blank=True, default="")
    stated_notice_period = models.CharField(max_length=255, blank=True, default="")
    stated_budget = models.CharField(max_length=255, blank=True, default="")
    stated_location = models.CharField(max_length=255, blank=True, default="")
    recommendation = models.CharField(max_length=255, blank=True, default="")
    manual_review_reason = models.TextField(blank=True, default="")

    screening_transcript = models.TextField(blank=True, default="")
    scheduling_transcript = models.TextField(blank=True, default="")
    conversation_summary = models.TextField(blank=True, default="")

    # Assessment
    assessment_date = models.DateField(null=True, blank=True)
    assessment_time = models.TimeField(null=True, blank=True)
    assessment_link = models.URLField(max_length=500, blank=True, default="")
    assessment_link_sent = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Candidate"
        verbose_name_plural = "Candidates"

    def __str__(self) -> str:
        return f"{self.name} ({self.phone})"

    @property
    def contact_email(self) -> str:
        """Email confirmed on the scheduling call, else the one from the resume."""
        if self.verified_email:
            return self.verified_email
        return "" if self.email == NOT_AVAILABLE else self.email

    def change_status(self, new_status: str, note: str = "", extra_fields=()):
        """
        Transition status and create an audit StatusChange record.
        ``extra_fields`` are saved in the same UPDATE as the status.
        Call through candidates.transitions rather than directly.
        """
        old_status = self.status
        if old_status == new_status and not extra_fields:
            return
        self.status = new_status
        self.save(update_fields=["status", *extra_fields, "updated_at"])
        if old_status != new_status:
            StatusChange.objects.create(
                candidate=self,
                from_status=old_status,
                to_status=new_status,
                note=note,
            )


class StatusChange(models.Model):
    """
    Audit trail entry recording every Candidate status transition.
    """

    candidate = models.ForeignKey(
        Candidate,
        on_delete=models.CASCADE,
        related_name="status_changes",
    )
    from_status = models.CharField(max_length=30, choices=Candidate.Status.choices)
    to_status = models.CharField(max_length=30, choices=Candidate.Status.choices)
    note = models.TextField(blank=True, default="")
    changed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-changed_at"]
        verbose_name = "Status Change"
        verbose_name_plural = "Status Changes"

    def __str__(self) -> str:
        return f"Candidate#{self.candidate_id}: {self.from_status} → {self.to_status}"
