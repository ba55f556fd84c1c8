"""
calls/migrations/0001_initial.py

Initial migration: CallQueueEntry and CallLog tables.
"""

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("candidates", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="CallQueueEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("priority", models.IntegerField(default=0)),
                ("scheduled_time", models.DateTimeField(db_index=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("attempts", models.PositiveSmallIntegerField(default=0)),
                ("last_attempt_time", models.DateTimeField(blank=True, null=True)),
                ("called_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("error_message", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "candidate",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="queue_entries",
                        to="candidates.candidate",
                    ),
                ),
            ],
            options={
                "verbose_name": "Call Queue Entry",
                "verbose_name_plural": "Call Queue Entries",
                "ordering": ["-priority", "scheduled_time"],
            },
        ),
        migrations.CreateModel(
            name="CallLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "call_type",
                    models.CharField(
                        choices=[
                            ("screening", "Screening"),
                            ("screening_callback_request", "Screening - Callback Requested"),
                            ("callback", "Callback"),
                            ("follow_up", "Follow-up"),
                            ("scheduling", "Assessment Scheduling"),
                        ],
                        max_length=30,
                    ),
                ),
                ("run_id", models.CharField(blank=True, max_length=128, null=True)),
                ("status", models.CharField(max_length=100)),
                ("transcript", models.TextField(blank=True, default="")),
                ("duration_seconds", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "candidate",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="call_logs",
                        to="candidates.candidate",
                    ),
                ),
            ],
            options={
                "verbose_name": "Call Log",
                "verbose_name_plural": "Call Logs",
                "ordering": ["-created_at"],
            },
        ),
    ]
