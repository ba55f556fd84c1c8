"""
Management command: call_candidate

Places an immediate screening call to one candidate, bypassing the queue's
hourly rate limit.

Usage:
    python manage.py call_candidate 42
"""

from django.core.management.base import BaseCommand, CommandError

from candidates.models import Candidate
from candidates.transitions import InvalidTransition
from scheduler.services import call_candidate_now


class Command(BaseCommand):
    help = "Dial a candidate immediately (manual screening call)."

    def add_arguments(self, parser):
        parser.add_argument("candidate_id", type=int)

    def handle(self, *args, **options):
        try:
            candidate = Candidate.objects.get(pk=options["candidate_id"])
        except Candidate.DoesNotExist:
            raise CommandError(f"Candidate #{options['candidate_id']} does not exist.")

        try:
            run_id = call_candidate_now(candidate)
        except InvalidTransition as exc:
            raise CommandError(str(exc))

        candidate.refresh_from_db()
        if run_id:
            self.stdout.write(self.style.SUCCESS(f"Call placed for {candidate.name}: run_id={run_id}"))
        else:
            self.stdout.write(self.style.WARNING(
                f"Call failed for {candidate.name}; status is now {candidate.get_status_display()!r}."
            ))
