"""
Management command to compute a poll's opinion landscape.

Usage:
    python manage.py cluster_poll 42
    python manage.py cluster_poll 42 --async
    python manage.py cluster_poll 42 --no-persist
"""

from django.core.management.base import BaseCommand, CommandError
from opinions.clustering import compute_opinion_landscape
from opinions.exceptions import ClusteringError
from opinions.models import Poll
from opinions.tasks import enqueue_clustering


class Command(BaseCommand):
    help = 'Compute the opinion landscape (groups, classifications, coalitions) of a poll'

    def add_arguments(self, parser):
        parser.add_argument('poll_id', type=int)
        parser.add_argument(
            '--async',
            action='store_true',
            dest='run_async',
            help='Queue the poll and let the Celery worker compute it'
        )
        parser.add_argument(
            '--no-persist',
            action='store_false',
            dest='persist',
            help='Compute and print without storing the snapshot'
        )

    def handle(self, *args, **options):
        poll_id = options['poll_id']

        if not Poll.objects.filter(pk=poll_id).exists():
            raise CommandError(f'Poll {poll_id} does not exist')

        if options['run_async']:
            result = enqueue_clustering.delay(poll_id)
            self.stdout.write(
                self.style.SUCCESS(f'Task dispatched: {result.id}')
            )
            return

        self.stdout.write(f'Computing opinion landscape for poll {poll_id}')

        try:
            result = compute_opinion_landscape(poll_id, persist=options['persist'])
        except ClusteringError as e:
            self.stdout.write(self.style.ERROR(f'Clustering failed: {e}'))
            raise

        if not result.eligible:
            self.stdout.write(self.style.WARNING(f'Not eligible: {result.reason}'))
            return

        metadata = result.metadata
        group_sizes = ', '.join(
            f'{g.group_id}={g.user_count}' for g in result.groups
        )
        self.stdout.write(
            self.style.SUCCESS(
                f"Clustering complete:\n"
                f"  Users: {metadata.total_users}\n"
                f"  Statements: {metadata.total_statements}\n"
                f"  Fine clusters: {len(metadata.fine_cluster_centroids)}\n"
                f"  Groups: {group_sizes}\n"
                f"  Variance explained: {metadata.total_variance_explained:.2f}\n"
                f"  Silhouette: {metadata.group_silhouette_score:.3f}\n"
                f"  Quality: {metadata.quality_tier}\n"
                f"  Consensus: {metadata.consensus_level}\n"
                f"  Polarization: {result.coalitions.polarization_score:.1f} "
                f"({result.coalitions.polarization_level})\n"
                f"  Time: {metadata.computation_time:.2f}s"
            )
        )
