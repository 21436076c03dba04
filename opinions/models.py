# models.py

from django.db import models
from django.core.exceptions import ValidationError
from django.utils import timezone
import logging

logger = logging.getLogger(__name__)


class Poll(models.Model):
    """A deliberation poll: a set of statements participants vote on."""
    title = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.title


class Statement(models.Model):
    """
    A statement submitted to a poll.
    Only approved, non-deleted statements take part in clustering.
    """
    poll = models.ForeignKey(Poll, on_delete=models.CASCADE, related_name="statements")
    text = models.TextField()
    approved = models.BooleanField(default=False)
    is_deleted = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.text[:50]


class Vote(models.Model):
    """
    A participant's vote on a statement.
    Revoting overwrites the value; only the latest value is kept.
    """
    AGREE = 1
    PASS = 0
    DISAGREE = -1
    VALUE_CHOICES = [
        (AGREE, "Agree"),
        (PASS, "Pass"),
        (DISAGREE, "Disagree"),
    ]

    user_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Identifier issued by the auth provider"
    )
    statement = models.ForeignKey(Statement, on_delete=models.CASCADE, related_name="votes")
    value = models.SmallIntegerField(choices=VALUE_CHOICES)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['user_id', 'statement'],
                name='unique_user_statement_vote'
            ),
        ]

    def __str__(self):
        return f"{self.user_id} - {self.value} - {self.statement_id}"

    def clean(self):
        if self.value not in (self.AGREE, self.PASS, self.DISAGREE):
            raise ValidationError(f"Vote value must be -1, 0 or 1, got {self.value}")


class ClusteringJob(models.Model):
    """
    Background clustering request for a poll.

    Lifecycle: pending -> processing -> completed | pending (retry) | failed.
    At most one pending/processing job may exist per poll.
    """
    STATUS_PENDING = 'pending'
    STATUS_PROCESSING = 'processing'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_PROCESSING, 'Processing'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_FAILED, 'Failed'),
    ]
    ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING)
    TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

    poll = models.ForeignKey(Poll, on_delete=models.CASCADE, related_name="clustering_jobs")
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_PENDING,
        db_index=True,
    )
    attempt_count = models.PositiveSmallIntegerField(default=0)
    max_attempts = models.PositiveSmallIntegerField(default=3)
    error_message = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    processed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ['created_at', 'id']
        constraints = [
            # Dedup: one in-flight job per poll
            models.UniqueConstraint(
                fields=['poll'],
                condition=models.Q(status__in=['pending', 'processing']),
                name='unique_active_clustering_job'
            ),
        ]

    def __str__(self):
        return f"Job {self.id} poll={self.poll_id} {self.status} ({self.attempt_count}/{self.max_attempts})"


class PollClusteringMetadata(models.Model):
    """
    Latest opinion landscape for a poll (one row per poll).
    Replaced as a whole on every successful computation.
    """
    poll = models.OneToOneField(
        Poll,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name="clustering_metadata",
    )

    # PCA
    statement_ids = models.JSONField(default=list, help_text="Column order of the vote matrix")
    pca_components = models.JSONField(default=list)
    mean_vector = models.JSONField(default=list)
    variance_explained = models.JSONField(default=list)
    total_variance_explained = models.FloatField(default=0.0)

    # Clustering
    fine_cluster_centroids = models.JSONField(default=list)
    num_fine_clusters = models.PositiveSmallIntegerField(default=0)
    coarse_groups = models.JSONField(default=list)
    silhouette_score = models.FloatField(default=0.0)
    group_silhouette_score = models.FloatField(default=0.0)

    # Coalitions
    coalition_analysis = models.JSONField(default=dict)
    polarization_score = models.FloatField(default=0.0)
    polarization_level = models.CharField(max_length=10, default='low')

    # Summary
    quality_tier = models.CharField(max_length=10, default='low')
    consensus_level = models.CharField(max_length=10, default='low')
    imputation = models.CharField(max_length=10, default='zero')
    sparsity_aware = models.BooleanField(default=False)
    total_users = models.PositiveIntegerField(default=0)
    total_statements = models.PositiveIntegerField(default=0)
    computation_time = models.FloatField(default=0.0)
    computed_at = models.DateTimeField(default=timezone.now)
    version = models.PositiveIntegerField(default=1)

    def __str__(self):
        return f"Landscape poll={self.poll_id} ({self.total_users} users)"


class UserClusteringPosition(models.Model):
    """A participant's position on the opinion map and group assignment."""
    poll = models.ForeignKey(Poll, on_delete=models.CASCADE, related_name="clustering_positions")
    user_id = models.CharField(max_length=64)

    pc1 = models.FloatField()
    pc2 = models.FloatField()
    fine_cluster_id = models.PositiveSmallIntegerField()
    coarse_group_id = models.PositiveSmallIntegerField()

    total_votes = models.PositiveIntegerField(default=0)
    agree_count = models.PositiveIntegerField(default=0)
    disagree_count = models.PositiveIntegerField(default=0)
    pass_count = models.PositiveIntegerField(default=0)

    computed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['user_id']
        constraints = [
            models.UniqueConstraint(
                fields=['poll', 'user_id'],
                name='unique_poll_user_position'
            ),
        ]

    def __str__(self):
        return f"{self.user_id} @ ({self.pc1:.2f}, {self.pc2:.2f}) group {self.coarse_group_id}"


class StatementClassification(models.Model):
    """How opinion groups voted on a statement, and what that makes it."""
    TYPE_CHOICES = [
        ('full_consensus', 'Full consensus'),
        ('partial_consensus', 'Partial consensus'),
        ('split_decision', 'Split decision'),
        ('divisive', 'Divisive'),
        ('bridge', 'Bridge'),
        ('normal', 'Normal'),
    ]

    poll = models.ForeignKey(Poll, on_delete=models.CASCADE, related_name="statement_classifications")
    statement = models.ForeignKey(
        Statement,
        on_delete=models.CASCADE,
        related_name="classifications",
    )
    classification_type = models.CharField(max_length=20, choices=TYPE_CHOICES)

    group_agreements = models.JSONField(default=list, help_text="Per-group breakdown")
    average_agreement = models.FloatField()
    standard_deviation = models.FloatField(null=True, blank=True)
    bridge_score = models.FloatField(null=True, blank=True)
    connects_groups = models.JSONField(null=True, blank=True)

    agreeing_groups = models.JSONField(default=list)
    disagreeing_groups = models.JSONField(default=list)
    neutral_groups = models.JSONField(default=list)

    computed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['statement_id']
        constraints = [
            models.UniqueConstraint(
                fields=['poll', 'statement'],
                name='unique_poll_statement_classification'
            ),
        ]

    def __str__(self):
        return f"{self.statement_id}: {self.classification_type}"
