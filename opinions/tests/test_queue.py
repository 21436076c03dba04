"""
Tests for the clustering job queue.
"""

import pytest
from datetime import timedelta
from django.db import IntegrityError, transaction
from django.db.models.query import QuerySet
from django.utils import timezone
from opinions import queue
from opinions.models import ClusteringJob, PollClusteringMetadata
from opinions.exceptions import ComputationError


@pytest.mark.django_db
class TestEnqueue:
    """Deduplicated enqueue."""

    def test_enqueue_twice(self, two_camp_poll):
        assert queue.enqueue_job(two_camp_poll.id) is True
        assert queue.enqueue_job(two_camp_poll.id) is False

        jobs = ClusteringJob.objects.filter(poll=two_camp_poll)
        assert jobs.count() == 1
        job = jobs.get()
        assert job.status == ClusteringJob.STATUS_PENDING
        assert job.attempt_count == 0
        assert job.max_attempts == 3

    def test_processing_job_blocks_enqueue(self, two_camp_poll):
        queue.enqueue_job(two_camp_poll.id)
        ClusteringJob.objects.update(status=ClusteringJob.STATUS_PROCESSING)

        assert queue.enqueue_job(two_camp_poll.id) is False

    def test_finished_job_allows_enqueue(self, two_camp_poll):
        queue.enqueue_job(two_camp_poll.id)
        ClusteringJob.objects.update(status=ClusteringJob.STATUS_COMPLETED)

        assert queue.enqueue_job(two_camp_poll.id) is True
        assert ClusteringJob.objects.filter(poll=two_camp_poll).count() == 2

    def test_database_rejects_second_active_job(self, two_camp_poll):
        """The constraint closes the check-then-insert race."""
        ClusteringJob.objects.create(poll=two_camp_poll)
        with pytest.raises(IntegrityError):
            with transaction.atomic():
                ClusteringJob.objects.create(
                    poll=two_camp_poll, status=ClusteringJob.STATUS_PROCESSING
                )

    def test_lost_race_returns_false(self, two_camp_poll, monkeypatch):
        """A concurrent insert between the check and the create is a dedup, not an error."""
        ClusteringJob.objects.create(poll=two_camp_poll)
        real_exists = QuerySet.exists
        checks = []

        def exists_after_first_check(self):
            # The pre-insert check misses the concurrent job
            checks.append(self)
            return len(checks) > 1 and real_exists(self)

        monkeypatch.setattr(QuerySet, "exists", exists_after_first_check)

        assert queue.enqueue_job(two_camp_poll.id) is False
        assert ClusteringJob.objects.filter(poll=two_camp_poll).count() == 1

    @pytest.mark.django_db(transaction=True)
    def test_unknown_poll_is_an_error(self):
        with pytest.raises(IntegrityError):
            queue.enqueue_job(999999)
        assert ClusteringJob.objects.count() == 0

    def test_max_attempts_from_settings(self, two_camp_poll, settings):
        settings.OPINION_CLUSTERING = {'MAX_ATTEMPTS': 5}
        queue.enqueue_job(two_camp_poll.id)
        assert ClusteringJob.objects.get(poll=two_camp_poll).max_attempts == 5


@pytest.mark.django_db
class TestProcessNextJob:
    """Claiming and running one job."""

    def test_empty_queue(self):
        outcome = queue.process_next_job()

        assert outcome.success
        assert outcome.job_id is None
        assert outcome.poll_id is None

    def test_success(self, two_camp_poll):
        queue.enqueue_job(two_camp_poll.id)

        outcome = queue.process_next_job()

        job = ClusteringJob.objects.get(poll=two_camp_poll)
        assert outcome.success
        assert outcome.job_id == job.id
        assert outcome.poll_id == two_camp_poll.id
        assert job.status == ClusteringJob.STATUS_COMPLETED
        assert job.attempt_count == 1
        assert job.processed_at is not None
        assert job.error_message is None
        assert PollClusteringMetadata.objects.filter(poll=two_camp_poll).exists()

    def test_not_eligible_completes(self, small_poll):
        queue.enqueue_job(small_poll.id)

        outcome = queue.process_next_job()

        job = ClusteringJob.objects.get(poll=small_poll)
        assert outcome.success
        assert outcome.job_id == job.id
        assert job.status == ClusteringJob.STATUS_COMPLETED
        assert job.error_message.startswith("Not eligible: ")
        assert "users" in job.error_message
        assert not PollClusteringMetadata.objects.filter(poll=small_poll).exists()

    def test_oldest_first(self, make_poll):
        first = make_poll(title="First")
        second = make_poll(title="Second")
        queue.enqueue_job(second.id)
        queue.enqueue_job(first.id)
        ClusteringJob.objects.filter(poll=first).update(
            created_at=timezone.now() - timedelta(minutes=5)
        )

        assert queue.process_next_job().poll_id == first.id
        assert queue.process_next_job().poll_id == second.id

    def test_failure_goes_back_to_pending(self, two_camp_poll, monkeypatch):
        def boom(poll_id):
            raise ComputationError("degenerate matrix")

        monkeypatch.setattr(queue, "compute_opinion_landscape", boom)
        queue.enqueue_job(two_camp_poll.id)

        outcome = queue.process_next_job()

        job = ClusteringJob.objects.get(poll=two_camp_poll)
        assert not outcome.success
        assert outcome.error == "degenerate matrix"
        assert outcome.status == ClusteringJob.STATUS_PENDING
        assert job.status == ClusteringJob.STATUS_PENDING
        assert job.attempt_count == 1
        assert job.error_message == "degenerate matrix"
        assert job.processed_at is None

    def test_job_reset_mid_run_reports_real_status(self, two_camp_poll, monkeypatch):
        real_compute = queue.compute_opinion_landscape

        def reset_then_compute(poll_id):
            # Someone puts the job back to pending while it runs
            ClusteringJob.objects.filter(poll_id=poll_id).update(
                status=ClusteringJob.STATUS_PENDING
            )
            return real_compute(poll_id)

        monkeypatch.setattr(queue, "compute_opinion_landscape", reset_then_compute)
        queue.enqueue_job(two_camp_poll.id)

        outcome = queue.process_next_job()

        job = ClusteringJob.objects.get(poll=two_camp_poll)
        assert not outcome.success
        assert outcome.status == ClusteringJob.STATUS_PENDING
        assert outcome.error
        assert job.status == ClusteringJob.STATUS_PENDING
        assert job.processed_at is None

    def test_failure_after_reset_reports_real_status(self, two_camp_poll, monkeypatch):
        def reset_then_fail(poll_id):
            ClusteringJob.objects.filter(poll_id=poll_id).update(
                status=ClusteringJob.STATUS_COMPLETED
            )
            raise ComputationError("boom")

        monkeypatch.setattr(queue, "compute_opinion_landscape", reset_then_fail)
        queue.enqueue_job(two_camp_poll.id)

        outcome = queue.process_next_job()

        assert not outcome.success
        assert outcome.status == ClusteringJob.STATUS_COMPLETED
        assert ClusteringJob.objects.get(poll=two_camp_poll).error_message is None

    def test_job_claimed_elsewhere_is_skipped(self, make_poll, monkeypatch):
        """If the claim UPDATE matches nothing, the next candidate is tried."""
        first = make_poll(title="First")
        second = make_poll(title="Second")
        queue.enqueue_job(first.id)
        queue.enqueue_job(second.id)

        real_filter = ClusteringJob.objects.filter
        stolen = []

        def racing_filter(*args, **kwargs):
            # Another worker grabs the first job right before our claim
            if kwargs.get('pk') and not stolen:
                stolen.append(kwargs['pk'])
                real_filter(pk=kwargs['pk']).update(status=ClusteringJob.STATUS_PROCESSING)
            return real_filter(*args, **kwargs)

        monkeypatch.setattr(ClusteringJob.objects, "filter", racing_filter)

        job = queue._claim_next_job()

        assert job.poll_id == second.id
        assert ClusteringJob.objects.get(pk=stolen[0]).attempt_count == 0


@pytest.mark.django_db
class TestProcessQueue:
    """Batch draining and retry bookkeeping."""

    def test_drains_up_to_max_jobs(self, two_camp_poll, identical_poll, small_poll):
        for poll in (two_camp_poll, identical_poll, small_poll):
            queue.enqueue_job(poll.id)

        summary = queue.process_queue(max_jobs=2)

        assert summary.processed == 2
        assert summary.successful == 2
        assert summary.failed == 0
        assert queue.get_queue_stats().pending == 1

        summary = queue.process_queue(max_jobs=5)
        assert summary.processed == 1

    def test_empty_queue(self):
        summary = queue.process_queue(max_jobs=5)
        assert summary.processed == 0
        assert summary.errors == []

    def test_retry_bound(self, two_camp_poll, monkeypatch):
        """A job that always fails is attempted exactly max_attempts times."""
        calls = []

        def boom(poll_id):
            calls.append(poll_id)
            raise ComputationError("SVD did not converge")

        monkeypatch.setattr(queue, "compute_opinion_landscape", boom)
        queue.enqueue_job(two_camp_poll.id)

        summary = queue.process_queue(max_jobs=10)

        job = ClusteringJob.objects.get(poll=two_camp_poll)
        assert len(calls) == 3
        assert job.status == ClusteringJob.STATUS_FAILED
        assert job.attempt_count == 3
        assert job.processed_at is not None
        assert job.error_message == "SVD did not converge"
        assert summary.processed == 3
        assert summary.failed == 3
        assert summary.successful == 0
        assert summary.errors == [f"Poll {two_camp_poll.id}: SVD did not converge"] * 3

        # Failed is terminal
        assert queue.process_queue(max_jobs=10).processed == 0
        assert len(calls) == 3

    def test_unexpected_exception_is_retried(self, two_camp_poll, monkeypatch):
        def boom(poll_id):
            raise RuntimeError("worker lost database connection")

        monkeypatch.setattr(queue, "compute_opinion_landscape", boom)
        queue.enqueue_job(two_camp_poll.id)

        outcome = queue.process_next_job()

        assert not outcome.success
        assert ClusteringJob.objects.get(poll=two_camp_poll).status == ClusteringJob.STATUS_PENDING

    def test_failed_poll_can_be_requeued(self, two_camp_poll, monkeypatch):
        def boom(poll_id):
            raise ComputationError("boom")

        monkeypatch.setattr(queue, "compute_opinion_landscape", boom)
        queue.enqueue_job(two_camp_poll.id)
        queue.process_queue(max_jobs=10)

        assert queue.enqueue_job(two_camp_poll.id) is True


@pytest.mark.django_db
class TestStatsAndCleanup:
    """Monitoring and housekeeping."""

    def test_stats(self, make_poll):
        polls = [make_poll(title=f"Poll {i}") for i in range(5)]
        statuses = ['pending', 'pending', 'processing', 'completed', 'failed']
        for poll, status in zip(polls, statuses):
            ClusteringJob.objects.create(poll=poll, status=status)

        stats = queue.get_queue_stats()

        assert stats.pending == 2
        assert stats.processing == 1
        assert stats.completed == 1
        assert stats.failed == 1
        assert stats.total == 5

    def test_stats_empty(self):
        stats = queue.get_queue_stats()
        assert (stats.pending, stats.processing, stats.completed, stats.failed) == (0, 0, 0, 0)

    def test_cleanup_old_jobs(self, make_poll):
        poll = make_poll()
        old = timezone.now() - timedelta(days=10)
        old_completed = ClusteringJob.objects.create(poll=poll, status='completed', created_at=old)
        old_failed = ClusteringJob.objects.create(poll=poll, status='failed', created_at=old)
        recent = ClusteringJob.objects.create(poll=poll, status='completed')
        old_pending = ClusteringJob.objects.create(poll=poll, status='pending', created_at=old)

        deleted = queue.cleanup_old_jobs(days_to_keep=7)

        assert deleted == 2
        remaining = set(ClusteringJob.objects.values_list('id', flat=True))
        assert remaining == {recent.id, old_pending.id}
        assert old_completed.id not in remaining
        assert old_failed.id not in remaining

    def test_cleanup_default_days(self, make_poll):
        poll = make_poll()
        ClusteringJob.objects.create(
            poll=poll, status='completed', created_at=timezone.now() - timedelta(days=6)
        )
        assert queue.cleanup_old_jobs() == 0
