"""
Management command: import_resumes

Ingests a directory of PDF resumes into a new Batch of candidates.

Usage:
    python manage.py import_resumes path/to/resumes/ \
        --role "Backend Engineer" --skills "Python, Django, PostgreSQL" \
        --location Bengaluru --experience 2 6 --budget 8 14 --enqueue
"""

from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from candidates.services import ingest_resumes


class Command(BaseCommand):
    help = "Parse a directory of PDF resumes into candidates of a new batch."

    def add_arguments(self, parser):
        parser.add_argument("directory", type=str, help="Directory containing *.pdf resumes.")
        parser.add_argument("--company", type=str, default="", help="Target company.")
        parser.add_argument("--role", type=str, default="", help="Target job role.")
        parser.add_argument("--skills", type=str, default="", help="Comma-separated required skills.")
        parser.add_argument("--notice-period", type=str, default="", help="Required notice period.")
        parser.add_argument("--location", type=str, default="", help="Job location.")
        parser.add_argument(
            "--experience", type=float, nargs=2, metavar=("MIN", "MAX"),
            help="Experience range in years.",
        )
        parser.add_argument(
            "--budget", type=float, nargs=2, metavar=("MIN", "MAX"),
            help="Budget range in LPA.",
        )
        parser.add_argument(
            "--enqueue", action="store_true",
            help="Add created candidates to the call queue.",
        )

    def handle(self, *args, **options):
        directory = Path(options["directory"])
        if not directory.is_dir():
            raise CommandError(f"Not a directory: {str(directory)!r}")

        paths = sorted(p for p in directory.iterdir() if p.suffix.lower() == ".pdf")
        if not paths:
            raise CommandError(f"No PDF files found in {str(directory)!r}")

        requirements = {
            "target_company": options["company"],
            "target_job_role": options["role"],
            "required_notice_period": options["notice_period"],
            "location": options["location"],
            "required_skills": options["skills"],
        }
        if options["experience"]:
            requirements["min_experience"], requirements["max_experience"] = options["experience"]
        if options["budget"]:
            requirements["budget_min_lpa"], requirements["budget_max_lpa"] = options["budget"]

        self.stdout.write(f"Importing {len(paths)} resume(s) from {str(directory)!r} …")

        files = [(p.name, p.read_bytes()) for p in paths]
        try:
            summary = ingest_resumes(files, requirements, enqueue=options["enqueue"])
        except ValueError as exc:
            raise CommandError(str(exc))

        # ── Results ──────────────────────────────────────────────────────────
        stats = summary.stats
        self.stdout.write("")
        self.stdout.write(self.style.SUCCESS(f"Batch {summary.batch.batch_id}"))
        self.stdout.write(f"  Successful       : {stats['successful']}")
        self.stdout.write(f"  Duplicates       : {stats['duplicates']}")
        self.stdout.write(f"  Skill mismatches : {stats['skill_mismatches']}")
        self.stdout.write(f"  Failed           : {stats['failed']}")

        for result in summary.results:
            if result["counter"] == "failed":
                self.stdout.write(self.style.WARNING(f"  ✗ {result['filename']}: {result['error']}"))

        if summary.enqueued is not None:
            self.stdout.write(self.style.SUCCESS(
                f"Queued {summary.enqueued['added']} call(s), skipped {summary.enqueued['skipped']}."
            ))
