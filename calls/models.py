from django.db import models


class CallQueueEntry(models.Model):
    """
    One pending screening dial. The queue scheduler claims entries one at a
    time (pending → processing) and settles them as completed, failed, or
    back to pending with a new scheduled_time.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    candidate = models.ForeignKey(
        "candidates.Candidate",
        on_delete=models.CASCADE,
        related_name="queue_entries",
    )
    priority = models.IntegerField(default=0)
    scheduled_time = models.DateTimeField(db_index=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    attempts = models.PositiveSmallIntegerField(default=0)
    last_attempt_time = models.DateTimeField(null=True, blank=True)
    called_at = models.DateTimeField(null=True, blank=True, db_index=True)
    error_message = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-priority", "scheduled_time"]
        verbose_name = "Call Queue Entry"
        verbose_name_plural = "Call Queue Entries"

    def __str__(self) -> str:
        return f"Queue#{self.pk} candidate={self.candidate_id} [{self.status}] @ {self.scheduled_time:%Y-%m-%d %H:%M}"


class CallLog(models.Model):
    """
    Append-only history of handled call outcomes. Rows are never updated.
    """

    class CallType(models.TextChoices):
        SCREENING = "screening", "Screening"
        SCREENING_CALLBACK_REQUEST = "screening_callback_request", "Screening - Callback Requested"
        CALLBACK = "callback", "Callback"
        FOLLOW_UP = "follow_up", "Follow-up"
        SCHEDULING = "scheduling", "Assessment Scheduling"

    candidate = models.ForeignKey(
        "candidates.Candidate",
        on_delete=models.CASCADE,
        related_name="call_logs",
    )
    call_type = models.CharField(max_length=30, choices=CallType.choices)
    run_id = models.CharField(max_length=128, null=True, blank=True)
    status = models.CharField(max_length=100)
    transcript = models.TextField(blank=True, default="")
    duration_seconds = models.PositiveIntegerField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Call Log"
        verbose_name_plural = "Call Logs"

    def __str__(self) -> str:
        return f"CallLog#{self.pk} {self.call_type} candidate={self.candidate_id} [{self.status}]"
