from django.db import models


class ProcessedWebhookEvent(models.Model):
    """
    Ledger of call-completion events already applied. A provider that
    redelivers the same (run_id, event_key) pair is acknowledged without
    touching the candidate again.
    """

    run_id = models.CharField(max_length=255)
    event_key = models.CharField(max_length=255)
    call_type = models.CharField(max_length=30, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Processed Webhook Event"
        verbose_name_plural = "Processed Webhook Events"
        constraints = [
            models.UniqueConstraint(fields=["run_id", "event_key"], name="unique_webhook_event"),
        ]

    def __str__(self) -> str:
        return f"{self.run_id} [{self.event_key}]"
