"""
Durable clustering job queue.

Jobs live in the ClusteringJob table:

    pending -> processing -> completed
                          -> pending   (retry, attempts left)
                          -> failed    (attempts exhausted)

A poll has at most one pending/processing job; a database constraint
enforces it, so enqueue_job() is safe against concurrent callers. Every
status transition is a conditional UPDATE, so two workers can never both
claim the same job.

process_queue() is meant to be called periodically by an external
scheduler (Celery beat, see agora.settings.CELERY_BEAT_SCHEDULE).

Jobs abandoned in "processing" (worker killed mid-run) are not reset
here; they block new jobs for their poll until reset by hand.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional
from django.db import IntegrityError, transaction
from django.db.models import Count, F
from django.utils import timezone
import logging

from opinions.conf import clustering_setting
from opinions.exceptions import QueueExhausted
from opinions.models import ClusteringJob
from opinions.clustering.landscape import (
    compute_opinion_landscape,
    is_eligible_for_clustering,
)

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    success: bool
    job_id: Optional[int] = None
    poll_id: Optional[int] = None
    error: Optional[str] = None
    status: Optional[str] = None


@dataclass
class QueueRunSummary:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class QueueStats:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self):
        return self.pending + self.processing + self.completed + self.failed


def enqueue_job(poll_id):
    """
    Queue a clustering job for a poll.

    Returns:
        bool: True if a job was created, False if the poll already has a
        pending or processing job
    """
    if ClusteringJob.objects.filter(
        poll_id=poll_id,
        status__in=ClusteringJob.ACTIVE_STATUSES,
    ).exists():
        logger.debug(f"Poll {poll_id} already has a clustering job in flight")
        return False

    try:
        with transaction.atomic():
            job = ClusteringJob.objects.create(
                poll_id=poll_id,
                max_attempts=clustering_setting('MAX_ATTEMPTS'),
            )
    except IntegrityError:
        # Dedup only if another caller won the race
        if not ClusteringJob.objects.filter(
            poll_id=poll_id,
            status__in=ClusteringJob.ACTIVE_STATUSES,
        ).exists():
            raise
        logger.debug(f"Poll {poll_id} was queued concurrently, skipping")
        return False

    logger.info(f"Queued clustering job {job.id} for poll {poll_id}")
    return True


def _claim_next_job():
    """
    Atomically move the oldest pending job to processing.

    Returns:
        ClusteringJob (refreshed) or None when nothing is pending
    """
    while True:
        candidate = ClusteringJob.objects.filter(
            status=ClusteringJob.STATUS_PENDING,
        ).order_by('created_at', 'id').values_list('id', flat=True).first()

        if candidate is None:
            return None

        claimed = ClusteringJob.objects.filter(
            pk=candidate,
            status=ClusteringJob.STATUS_PENDING,
        ).update(
            status=ClusteringJob.STATUS_PROCESSING,
            attempt_count=F('attempt_count') + 1,
        )
        if claimed:
            return ClusteringJob.objects.get(pk=candidate)

        logger.debug(f"Job {candidate} was claimed by another worker")


def _finish(job, **fields):
    updated = ClusteringJob.objects.filter(
        pk=job.pk,
        status=ClusteringJob.STATUS_PROCESSING,
    ).update(**fields)
    if not updated:
        logger.warning(
            f"Job {job.pk} left processing before it finished; "
            f"dropped transition to {fields.get('status')}"
        )
    return updated


def process_next_job():
    """
    Claim and run the oldest pending job.

    Returns:
        JobOutcome; ``job_id`` is None when the queue had nothing pending.
        A poll that is not eligible yet counts as success.
    """
    job = _claim_next_job()
    if job is None:
        return JobOutcome(success=True)

    logger.info(
        f"Processing job {job.id} for poll {job.poll_id} "
        f"(attempt {job.attempt_count}/{job.max_attempts})"
    )

    try:
        eligibility = is_eligible_for_clustering(job.poll_id)
        if eligibility.eligible:
            result = compute_opinion_landscape(job.poll_id)
            # Participation can drop between the two checks
            if not result.eligible:
                eligibility = result
    except Exception as exc:
        return _handle_failure(job, exc)

    if not eligibility.eligible:
        logger.info(f"Poll {job.poll_id} not eligible for clustering: {eligibility.reason}")
        return _complete(job, error_message=f"Not eligible: {eligibility.reason}")

    outcome = _complete(job, error_message=None)
    if outcome.success:
        logger.info(f"Clustering completed for poll {job.poll_id}")
    return outcome


def _current_status(job):
    return ClusteringJob.objects.filter(pk=job.pk).values_list('status', flat=True).first()


def _complete(job, error_message):
    if _finish(
        job,
        status=ClusteringJob.STATUS_COMPLETED,
        processed_at=timezone.now(),
        error_message=error_message,
    ):
        return JobOutcome(
            success=True,
            job_id=job.id,
            poll_id=job.poll_id,
            status=ClusteringJob.STATUS_COMPLETED,
        )

    return JobOutcome(
        success=False,
        job_id=job.id,
        poll_id=job.poll_id,
        error="Job left processing before it completed",
        status=_current_status(job),
    )


def _handle_failure(job, exc):
    error = str(exc)

    if job.attempt_count < job.max_attempts:
        logger.warning(
            f"Clustering failed for poll {job.poll_id} "
            f"(attempt {job.attempt_count}/{job.max_attempts}), will retry: {error}"
        )
        status = ClusteringJob.STATUS_PENDING
        updated = _finish(job, status=status, error_message=error)
    else:
        exhausted = QueueExhausted(job.poll_id, job.attempt_count, last_error=error)
        logger.error(f"{exhausted}: {error}", exc_info=exc)
        status = ClusteringJob.STATUS_FAILED
        updated = _finish(
            job,
            status=status,
            processed_at=timezone.now(),
            error_message=error,
        )

    return JobOutcome(
        success=False,
        job_id=job.id,
        poll_id=job.poll_id,
        error=error,
        status=status if updated else _current_status(job),
    )


def process_queue(max_jobs=None):
    """
    Drain up to ``max_jobs`` pending jobs, oldest first.

    A job that fails with attempts left goes back to pending and, being
    the oldest, may be retried within the same run.

    Returns:
        QueueRunSummary
    """
    if max_jobs is None:
        max_jobs = clustering_setting('QUEUE_BATCH_SIZE')

    summary = QueueRunSummary()

    for _ in range(max_jobs):
        outcome = process_next_job()
        if outcome.job_id is None:
            break

        summary.processed += 1
        if outcome.success:
            summary.successful += 1
        else:
            summary.failed += 1
            if outcome.error:
                summary.errors.append(f"Poll {outcome.poll_id}: {outcome.error}")

    logger.info(
        f"Queue run complete: processed={summary.processed}, "
        f"successful={summary.successful}, failed={summary.failed}"
    )
    return summary


def get_queue_stats():
    """Job counts by status."""
    stats = QueueStats()
    rows = ClusteringJob.objects.values('status').annotate(count=Count('id')).order_by()
    for row in rows:
        setattr(stats, row['status'], row['count'])
    return stats


def cleanup_old_jobs(days_to_keep=None):
    """
    Delete completed and failed jobs older than ``days_to_keep`` days.

    Returns:
        int: number of jobs deleted
    """
    if days_to_keep is None:
        days_to_keep = clustering_setting('CLEANUP_DAYS')

    cutoff = timezone.now() - timedelta(days=days_to_keep)
    deleted, _ = ClusteringJob.objects.filter(
        status__in=ClusteringJob.TERMINAL_STATUSES,
        created_at__lt=cutoff,
    ).delete()

    logger.info(f"Deleted {deleted} clustering jobs older than {days_to_keep} days")
    return deleted
