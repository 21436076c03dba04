"""
Management command to operate the clustering job queue.

Usage:
    python manage.py clustering_queue enqueue 42
    python manage.py clustering_queue process --max-jobs 10
    python manage.py clustering_queue stats
    python manage.py clustering_queue cleanup --days 14
"""

from django.core.management.base import BaseCommand, CommandError
from opinions import queue


class Command(BaseCommand):
    help = 'Enqueue, drain, inspect or clean up clustering jobs'

    def add_arguments(self, parser):
        parser.add_argument(
            'action',
            choices=['enqueue', 'process', 'stats', 'cleanup'],
        )
        parser.add_argument(
            'poll_id',
            type=int,
            nargs='?',
            help='Poll to queue (enqueue only)'
        )
        parser.add_argument(
            '--max-jobs',
            type=int,
            default=None,
            help='Maximum jobs to process (default: QUEUE_BATCH_SIZE)'
        )
        parser.add_argument(
            '--days',
            type=int,
            default=None,
            help='Keep finished jobs newer than this many days (default: CLEANUP_DAYS)'
        )

    def handle(self, *args, **options):
        action = options['action']

        if action == 'enqueue':
            if options['poll_id'] is None:
                raise CommandError("enqueue needs a poll_id")
            if queue.enqueue_job(options['poll_id']):
                self.stdout.write(self.style.SUCCESS(f"Poll {options['poll_id']} queued"))
            else:
                self.stdout.write(
                    self.style.WARNING(f"Poll {options['poll_id']} already has a job in flight")
                )

        elif action == 'process':
            summary = queue.process_queue(options['max_jobs'])
            style = self.style.SUCCESS if not summary.failed else self.style.WARNING
            self.stdout.write(
                style(
                    f"Processed {summary.processed} jobs: "
                    f"{summary.successful} successful, {summary.failed} failed"
                )
            )
            for error in summary.errors:
                self.stdout.write(self.style.ERROR(f"  {error}"))

        elif action == 'stats':
            stats = queue.get_queue_stats()
            self.stdout.write(
                f"pending={stats.pending} processing={stats.processing} "
                f"completed={stats.completed} failed={stats.failed}"
            )

        elif action == 'cleanup':
            deleted = queue.cleanup_old_jobs(options['days'])
            self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} old jobs"))

        else:
            raise CommandError(f"Unknown action: {action}")
