"""
candidates/migrations/0001_initial.py

Initial migration: Batch, Candidate and StatusChange tables.
"""

import django.db.models.deletion
from django.db import migrations, models

STATUS_CHOICES = [
    ("new", "New"),
    ("calling_screening", "Calling - Screening"),
    ("callback_scheduled", "Callback Scheduled"),
    ("follow_up_scheduled", "Follow-Up Scheduled"),
    ("qualified", "Qualified - Assessment Scheduling Queued"),
    ("rejected", "Rejected - Low Score"),
    ("manual_review", "Manual Review Required"),
    ("no_response", "No Response - Max Attempts"),
    ("calling_scheduling", "Calling - Assessment Scheduling"),
    ("assessment_scheduled", "Assessment Scheduled - Awaiting Manual Link"),
    ("scheduling_pending", "Scheduling Call Completed - Pending Confirmation"),
    ("scheduling_failed", "Scheduling Call Failed - Manual Intervention Required"),
    ("assessment_link_sent", "Assessment Link Sent"),
]

CALL_STATUS_CHOICES = [
    ("calling_screening", "Calling - Screening"),
    ("screening_completed", "Completed - Screening"),
    ("callback_requested", "Callback Requested"),
    ("did_not_pick_up", "Did Not Pick Up"),
    ("failed_no_response", "Failed - No Response"),
    ("calling_scheduling", "Calling - Scheduling"),
    ("scheduling_completed", "Completed - Scheduling"),
    ("scheduling_failed", "Failed - Scheduling"),
    ("no_webhook", "Timed Out - No Webhook"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Batch",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("batch_id", models.CharField(max_length=20, unique=True)),
                ("total_resumes", models.PositiveIntegerField(default=0)),
                ("successful", models.PositiveIntegerField(default=0)),
                ("duplicates", models.PositiveIntegerField(default=0)),
                ("skill_mismatches", models.PositiveIntegerField(default=0)),
                ("failed", models.PositiveIntegerField(default=0)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("target_company", models.CharField(blank=True, default="", max_length=255)),
                ("target_job_role", models.CharField(blank=True, default="", max_length=255)),
                ("required_notice_period", models.CharField(blank=True, default="", max_length=100)),
                ("budget_min_lpa", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ("budget_max_lpa", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ("location", models.CharField(blank=True, default="", max_length=255)),
                ("min_experience", models.DecimalField(blank=True, decimal_places=1, max_digits=4, null=True)),
                ("max_experience", models.DecimalField(blank=True, decimal_places=1, max_digits=4, null=True)),
                ("required_skills", models.JSONField(blank=True, default=list)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "verbose_name": "Batch",
                "verbose_name_plural": "Batches",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Candidate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("phone", models.CharField(max_length=20, unique=True)),
                ("email", models.CharField(blank=True, default="", max_length=254)),
                ("verified_email", models.CharField(blank=True, default="", max_length=254)),
                ("email_verified", models.BooleanField(default=False)),
                ("skills", models.TextField(blank=True, default="")),
                ("skills_matched", models.TextField(blank=True, default="")),
                ("years_of_experience", models.CharField(blank=True, default="", max_length=50)),
                ("current_company", models.CharField(blank=True, default="", max_length=255)),
                ("notice_period", models.CharField(blank=True, default="", max_length=100)),
                ("screening_run_id", models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ("screening_call_kind", models.CharField(blank=True, default="", max_length=30)),
                ("scheduling_run_id", models.CharField(blank=True, db_index=True, max_length=128, null=True)),
                ("status", models.CharField(choices=STATUS_CHOICES, db_index=True, default="new", max_length=30)),
                ("call_status", models.CharField(blank=True, choices=CALL_STATUS_CHOICES, default="", max_length=30)),
                ("failed_attempts", models.PositiveSmallIntegerField(default=0)),
                ("follow_up_time", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("last_call_started_at", models.DateTimeField(blank=True, null=True)),
                ("scheduling_call_due_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("callback_requested", models.BooleanField(default=False)),
                ("callback_scheduled_time", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("callback_reason", models.TextField(blank=True, default="")),
                ("callback_attempts", models.PositiveSmallIntegerField(default=0)),
                ("last_callback_attempt", models.DateTimeField(blank=True, null=True)),
                ("notice_period_score", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("budget_score", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("location_score", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("experience_score", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("technical_score", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("communication_score", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("overall_qualification_score", models.DecimalField(blank=True, decimal_places=2, max_digits=5, null=True)),
                ("qualification_breakdown", models.JSONField(blank=True, null=True)),
                ("job_interest", models.CharField(blank=True, default="", max_length=50)),
                ("stated_notice_period", models.CharField(blank=True, default="", max_length=255)),
                ("stated_budget", models.CharField(blank=True, default="", max_length=255)),
                ("stated_location", models.CharField(blank=True, default="", max_length=255)),
                ("recommendation", models.CharField(blank=True, default="", max_length=255)),
                ("manual_review_reason", models.TextField(blank=True, default="")),
                ("screening_transcript", models.TextField(blank=True, default="")),
                ("scheduling_transcript", models.TextField(blank=True, default="")),
                ("conversation_summary", models.TextField(blank=True, default="")),
                ("assessment_date", models.DateField(blank=True, null=True)),
                ("assessment_time", models.TimeField(blank=True, null=True)),
                ("assessment_link", models.URLField(blank=True, default="", max_length=500)),
                ("assessment_link_sent", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "batch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="candidates",
                        to="candidates.batch",
                    ),
                ),
            ],
            options={
                "verbose_name": "Candidate",
                "verbose_name_plural": "Candidates",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="StatusChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("from_status", models.CharField(choices=STATUS_CHOICES, max_length=30)),
                ("to_status", models.CharField(choices=STATUS_CHOICES, max_length=30)),
                ("note", models.TextField(blank=True, default="")),
                ("changed_at", models.DateTimeField(auto_now_add=True)),
                (
                    "candidate",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="status_changes",
                        to="candidates.candidate",
                    ),
                ),
            ],
            options={
                "verbose_name": "Status Change",
                "verbose_name_plural": "Status Changes",
                "ordering": ["-changed_at"],
            },
        ),
    ]
