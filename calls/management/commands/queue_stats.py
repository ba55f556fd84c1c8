"""
Management command: queue_stats

Prints call-queue counters and the current rate-limit headroom.

Usage:
    python manage.py queue_stats
    python manage.py queue_stats --cleanup
"""

from django.core.management.base import BaseCommand

from calls.models import CallQueueEntry
from calls.queue import QueueScheduler


class Command(BaseCommand):
    help = "Show call queue statistics."

    def add_arguments(self, parser):
        parser.add_argument(
            "--cleanup", action="store_true",
            help="Also delete completed/failed entries older than QUEUE_RETENTION_DAYS.",
        )

    def handle(self, *args, **options):
        scheduler = QueueScheduler()

        if options["cleanup"]:
            deleted = scheduler.cleanup()
            self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} old queue entries."))

        stats = scheduler.queue_stats()
        for status, label in CallQueueEntry.Status.choices:
            self.stdout.write(f"  {label:<12} {stats[status]}")
        self.stdout.write(
            f"  Calls in last hour: {stats['calls_last_hour']}/{stats['max_calls_per_hour']} "
            f"({stats['remaining_slots']} slot(s) left)"
        )
        self.stdout.write(f"  Next call: {stats['next_call_time'] or '-'}")
