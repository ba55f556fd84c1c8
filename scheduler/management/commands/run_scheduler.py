"""
scheduler/management/commands/run_scheduler.py

Django management command that starts the APScheduler background scheduler
with all HireCall pipeline jobs.

Usage:
    python manage.py run_scheduler

The command blocks until interrupted (Ctrl+C / SIGTERM).  In production,
run it as a long-lived process alongside the web server, e.g.:

    # Procfile (Heroku-style) or systemd unit
    web:       gunicorn hirecall.wsgi --bind 0.0.0.0:8010
    scheduler: python manage.py run_scheduler

Jobs are persisted in the database via DjangoJobStore, which means:
  - Job execution history is available in Django admin.
  - Missed runs (misfire_grace_time) are tracked.
  - Restarting the process picks up existing job definitions automatically.
"""

import time
import logging

from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from django.conf import settings
from django.core.management.base import BaseCommand
from django_apscheduler.jobstores import DjangoJobStore

from scheduler.jobs import (
    cleanup_call_queue,
    process_assessment_scheduling_calls,
    process_call_queue,
    process_follow_up_calls,
    process_scheduled_callbacks,
    sweep_stale_calls,
)

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Start the APScheduler background scheduler. "
        "Runs all pipeline jobs (call queue, callbacks, follow-ups, scheduling calls, "
        "stale-call sweep, queue cleanup). Blocks until interrupted."
    )

    def handle(self, *args, **options):
        tz = ZoneInfo(settings.APSCHEDULER_TIMEZONE)

        scheduler = BackgroundScheduler(timezone=tz)
        scheduler.add_jobstore(DjangoJobStore(), "default")

        # ── Job registrations ──────────────────────────────────────────────────
        # replace_existing=True: update the definition on each restart
        # max_instances=1      : prevent concurrent runs of the same job
        # coalesce=True        : if multiple runs were missed, execute once
        # misfire_grace_time   : seconds after which a missed run is discarded

        jobs = [
            (process_call_queue, IntervalTrigger(minutes=1, timezone=tz), "Process Call Queue", 30),
            (process_scheduled_callbacks, IntervalTrigger(minutes=1, timezone=tz), "Process Scheduled Callbacks", 30),
            (process_follow_up_calls, IntervalTrigger(minutes=1, timezone=tz), "Process Follow-up Calls", 30),
            (
                process_assessment_scheduling_calls,
                IntervalTrigger(minutes=1, timezone=tz),
                "Process Assessment Scheduling Calls",
                30,
            ),
            (sweep_stale_calls, IntervalTrigger(minutes=30, timezone=tz), "Sweep Stale Calls", 300),
            (cleanup_call_queue, CronTrigger(hour=2, minute=0, timezone=tz), "Clean Up Call Queue", 3600),
        ]

        for func, trigger, name, grace in jobs:
            scheduler.add_job(
                func,
                trigger=trigger,
                id=func.__name__,
                name=name,
                jobstore="default",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=grace,
            )

        # ── Start ──────────────────────────────────────────────────────────────
        self.stdout.write(self.style.SUCCESS(
            f"Starting scheduler (timezone={settings.APSCHEDULER_TIMEZONE})"
        ))

        scheduler.start()

        for job in scheduler.get_jobs():
            self.stdout.write(
                f"  • {job.id:<36} next run: {job.next_run_time}"
            )

        self.stdout.write(self.style.SUCCESS(
            "Scheduler running. Press Ctrl+C to stop."
        ))

        try:
            # Keep the main thread alive while the scheduler runs in the background.
            while True:
                time.sleep(5)
        except (KeyboardInterrupt, SystemExit):
            self.stdout.write(self.style.WARNING("Shutting down scheduler…"))
            scheduler.shutdown(wait=True)
            self.stdout.write(self.style.SUCCESS("Scheduler stopped."))
