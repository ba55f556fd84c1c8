"""
webhooks/migrations/0001_initial.py

Initial migration: ProcessedWebhookEvent ledger.
"""

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="ProcessedWebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("run_id", models.CharField(max_length=255)),
                ("event_key", models.CharField(max_length=255)),
                ("call_type", models.CharField(blank=True, default="", max_length=30)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "verbose_name": "Processed Webhook Event",
                "verbose_name_plural": "Processed Webhook Events",
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddConstraint(
            model_name="processedwebhookevent",
            constraint=models.UniqueConstraint(fields=("run_id", "event_key"), name="unique_webhook_event"),
        ),
    ]
