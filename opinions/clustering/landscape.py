"""
Opinion landscape: eligibility gate, orchestration and snapshot storage.

compute_opinion_landscape() runs the whole pipeline for one poll:

    vote matrix -> PCA -> fine clusters -> coarse groups
        -> statement classification -> coalition analysis

A poll that is too small is not an error: the caller gets the
EligibilityResult back. Numerical failures surface as ComputationError
and are retried by the queue, never here.

Each successful run replaces the poll's stored snapshot and refreshes the
"clustering" cache entry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import time
import numpy as np
from django.core.cache import caches
from django.db import transaction
from django.utils import timezone
import logging

from opinions.conf import clustering_setting
from opinions.exceptions import ClusteringError, ComputationError, QueueExhausted
from .matrix_builder import (
    build_vote_matrix,
    count_eligible_statements,
    count_voting_users,
)
from .pca import compute_pca, project_votes
from .kmeans import cluster_participants, assign_to_nearest
from .hierarchical import CoarseGroup, group_clusters
from .classification import (
    FULL_CONSENSUS,
    GroupAgreement,
    StatementClassificationResult,
    classify_statements,
)
from .coalitions import CoalitionAnalysis, analyze_coalitions

logger = logging.getLogger(__name__)


@dataclass
class EligibilityResult:
    eligible: bool
    user_count: int
    statement_count: int
    min_users: int
    min_statements: int
    reason: Optional[str] = None


@dataclass
class UserPosition:
    user_id: str
    pc1: float
    pc2: float
    fine_cluster_id: int
    coarse_group_id: int
    total_votes: int = 0
    agree_count: int = 0
    disagree_count: int = 0
    pass_count: int = 0


@dataclass
class LandscapeMetadata:
    statement_ids: List[int]
    pca_components: List[List[float]]
    mean_vector: List[float]
    variance_explained: List[float]
    total_variance_explained: float
    fine_cluster_centroids: List[List[float]]
    silhouette_score: float
    group_silhouette_score: float
    quality_tier: str
    consensus_level: str
    imputation: str
    sparsity_aware: bool
    total_users: int
    total_statements: int
    computation_time: float = 0.0
    computed_at: Optional[datetime] = None
    version: int = 1


@dataclass
class ClusteringResult:
    poll_id: int
    metadata: LandscapeMetadata
    groups: List[CoarseGroup] = field(default_factory=list)
    positions: List[UserPosition] = field(default_factory=list)
    classifications: List[StatementClassificationResult] = field(default_factory=list)
    coalitions: CoalitionAnalysis = field(default_factory=CoalitionAnalysis)

    eligible = True

    def position_for(self, user_id):
        for position in self.positions:
            if position.user_id == user_id:
                return position
        return None

    def members_of(self, group_id):
        return [p.user_id for p in self.positions if p.coarse_group_id == group_id]


@dataclass
class ParticipantLocation:
    pc1: float
    pc2: float
    fine_cluster_id: int
    coarse_group_id: int


def is_eligible_for_clustering(poll_id):
    """
    Check whether a poll has enough participation to cluster.

    Count queries only. Both thresholds must hold; the reason names every
    threshold that was missed.

    Returns:
        EligibilityResult
    """
    min_users = clustering_setting('MIN_USERS')
    min_statements = clustering_setting('MIN_STATEMENTS')

    user_count = count_voting_users(poll_id)
    statement_count = count_eligible_statements(poll_id)

    problems = []
    if user_count < min_users:
        problems.append(f"Insufficient users: {user_count}/{min_users} required")
    if statement_count < min_statements:
        problems.append(
            f"Insufficient statements: {statement_count}/{min_statements} required"
        )

    return EligibilityResult(
        eligible=not problems,
        user_count=user_count,
        statement_count=statement_count,
        min_users=min_users,
        min_statements=min_statements,
        reason="; ".join(problems) if problems else None,
    )


def compute_quality_tier(total_variance_explained, silhouette):
    high_variance, high_silhouette = clustering_setting('QUALITY_HIGH')
    medium_variance, medium_silhouette = clustering_setting('QUALITY_MEDIUM')
    if total_variance_explained >= high_variance and silhouette >= high_silhouette:
        return 'high'
    if total_variance_explained >= medium_variance and silhouette >= medium_silhouette:
        return 'medium'
    return 'low'


def compute_consensus_level(classifications):
    if not classifications:
        return 'low'
    full = sum(1 for c in classifications if c.classification_type == FULL_CONSENSUS)
    ratio = full / len(classifications)
    if ratio >= clustering_setting('CONSENSUS_HIGH'):
        return 'high'
    if ratio >= clustering_setting('CONSENSUS_MEDIUM'):
        return 'medium'
    return 'low'


def _run_pipeline(poll_id):
    matrix = build_vote_matrix(poll_id)
    if matrix.is_empty:
        raise ComputationError(
            "Vote matrix is empty",
            context={'poll_id': poll_id},
        )

    imputation = clustering_setting('IMPUTATION')
    sparsity_aware = clustering_setting('SPARSITY_AWARE_SCALING')

    pca = compute_pca(
        matrix.imputed(imputation),
        vote_counts=matrix.vote_counts(),
        sparsity_aware=sparsity_aware,
    )
    fine = cluster_participants(pca.projections)
    grouping = group_clusters(fine, pca.projections)
    classifications = classify_statements(matrix, grouping.labels)
    coalitions = analyze_coalitions(classifications, grouping.group_ids)

    vote_summary = matrix.user_vote_summary()
    positions = []
    for i, user_id in enumerate(matrix.user_ids):
        stats = vote_summary[user_id]
        positions.append(UserPosition(
            user_id=user_id,
            pc1=float(pca.projections[i, 0]),
            pc2=float(pca.projections[i, 1]),
            fine_cluster_id=int(fine.labels[i]),
            coarse_group_id=int(grouping.labels[i]),
            total_votes=stats['total'],
            agree_count=stats['agree'],
            disagree_count=stats['disagree'],
            pass_count=stats['pass'],
        ))

    metadata = LandscapeMetadata(
        statement_ids=list(matrix.statement_ids),
        pca_components=pca.components.tolist(),
        mean_vector=pca.mean_vector.tolist(),
        variance_explained=pca.variance_explained.tolist(),
        total_variance_explained=pca.total_variance_explained,
        fine_cluster_centroids=fine.centroids.tolist(),
        silhouette_score=fine.silhouette_score,
        group_silhouette_score=grouping.silhouette_score,
        quality_tier=compute_quality_tier(
            pca.total_variance_explained, grouping.silhouette_score
        ),
        consensus_level=compute_consensus_level(classifications),
        imputation=imputation,
        sparsity_aware=sparsity_aware,
        total_users=len(matrix.user_ids),
        total_statements=len(matrix.statement_ids),
    )

    return ClusteringResult(
        poll_id=poll_id,
        metadata=metadata,
        groups=grouping.groups,
        positions=positions,
        classifications=classifications,
        coalitions=coalitions,
    )


def compute_opinion_landscape(poll_id, persist=True):
    """
    Compute the opinion landscape of a poll.

    Args:
        poll_id: poll primary key
        persist: store the snapshot and refresh the cache (default True)

    Returns:
        ClusteringResult, or the EligibilityResult (eligible=False) when
        the poll is too small to cluster

    Raises:
        ComputationError: numerical failure anywhere in the pipeline
    """
    eligibility = is_eligible_for_clustering(poll_id)
    if not eligibility.eligible:
        logger.info(f"Poll {poll_id} not eligible for clustering: {eligibility.reason}")
        return eligibility

    logger.info(
        f"Computing opinion landscape for poll {poll_id}: "
        f"{eligibility.user_count} users, {eligibility.statement_count} statements"
    )
    start_time = time.time()

    try:
        result = _run_pipeline(poll_id)
    except ClusteringError:
        raise
    except (ValueError, ArithmeticError) as exc:
        raise ComputationError(
            f"Opinion landscape computation failed: {exc}",
            context={'poll_id': poll_id},
        ) from exc

    result.metadata.computation_time = time.time() - start_time
    result.metadata.computed_at = timezone.now()

    logger.info(
        f"Poll {poll_id}: {len(result.groups)} groups, "
        f"variance explained {result.metadata.total_variance_explained:.2f}, "
        f"quality {result.metadata.quality_tier}, "
        f"polarization {result.coalitions.polarization_level}, "
        f"in {result.metadata.computation_time:.2f}s"
    )

    if persist:
        save_landscape(result)

    return result


def _cache():
    return caches[clustering_setting('CACHE_ALIAS')]


def _cache_key(poll_id):
    return f"opinion_landscape:{poll_id}"


def invalidate_landscape_cache(poll_id):
    _cache().delete(_cache_key(poll_id))


def save_landscape(result):
    """
    Replace the poll's stored snapshot with ``result`` and cache it.

    Sets ``result.metadata.version`` to the stored version.
    """
    from opinions.models import (
        PollClusteringMetadata,
        StatementClassification,
        UserClusteringPosition,
    )

    poll_id = result.poll_id
    metadata = result.metadata
    if metadata.computed_at is None:
        metadata.computed_at = timezone.now()

    with transaction.atomic():
        previous_version = PollClusteringMetadata.objects.filter(
            poll_id=poll_id
        ).values_list('version', flat=True).first()
        metadata.version = (previous_version or 0) + 1

        PollClusteringMetadata.objects.update_or_create(
            poll_id=poll_id,
            defaults={
                'statement_ids': metadata.statement_ids,
                'pca_components': metadata.pca_components,
                'mean_vector': metadata.mean_vector,
                'variance_explained': metadata.variance_explained,
                'total_variance_explained': metadata.total_variance_explained,
                'fine_cluster_centroids': metadata.fine_cluster_centroids,
                'num_fine_clusters': len(metadata.fine_cluster_centroids),
                'coarse_groups': [g.to_dict() for g in result.groups],
                'silhouette_score': metadata.silhouette_score,
                'group_silhouette_score': metadata.group_silhouette_score,
                'coalition_analysis': result.coalitions.to_dict(),
                'polarization_score': result.coalitions.polarization_score,
                'polarization_level': result.coalitions.polarization_level,
                'quality_tier': metadata.quality_tier,
                'consensus_level': metadata.consensus_level,
                'imputation': metadata.imputation,
                'sparsity_aware': metadata.sparsity_aware,
                'total_users': metadata.total_users,
                'total_statements': metadata.total_statements,
                'computation_time': metadata.computation_time,
                'computed_at': metadata.computed_at,
                'version': metadata.version,
            },
        )

        UserClusteringPosition.objects.filter(poll_id=poll_id).delete()
        UserClusteringPosition.objects.bulk_create([
            UserClusteringPosition(
                poll_id=poll_id,
                user_id=p.user_id,
                pc1=p.pc1,
                pc2=p.pc2,
                fine_cluster_id=p.fine_cluster_id,
                coarse_group_id=p.coarse_group_id,
                total_votes=p.total_votes,
                agree_count=p.agree_count,
                disagree_count=p.disagree_count,
                pass_count=p.pass_count,
                computed_at=metadata.computed_at,
            )
            for p in result.positions
        ])

        StatementClassification.objects.filter(poll_id=poll_id).delete()
        StatementClassification.objects.bulk_create([
            StatementClassification(
                poll_id=poll_id,
                statement_id=c.statement_id,
                classification_type=c.classification_type,
                group_agreements=[a.to_dict() for a in c.group_agreements],
                average_agreement=c.average_agreement,
                standard_deviation=c.standard_deviation,
                bridge_score=c.bridge_score,
                connects_groups=c.connects_groups,
                agreeing_groups=c.agreeing_groups,
                disagreeing_groups=c.disagreeing_groups,
                neutral_groups=c.neutral_groups,
                computed_at=metadata.computed_at,
            )
            for c in result.classifications
        ])

    _cache().set(_cache_key(poll_id), result, clustering_setting('CACHE_TIMEOUT'))
    logger.info(
        f"Saved landscape for poll {poll_id} (version {metadata.version}): "
        f"{len(result.positions)} positions, {len(result.classifications)} classifications"
    )
    return result


def _rebuild_from_storage(poll_id):
    from opinions.models import PollClusteringMetadata

    try:
        stored = PollClusteringMetadata.objects.get(poll_id=poll_id)
    except PollClusteringMetadata.DoesNotExist:
        return None

    metadata = LandscapeMetadata(
        statement_ids=stored.statement_ids,
        pca_components=stored.pca_components,
        mean_vector=stored.mean_vector,
        variance_explained=stored.variance_explained,
        total_variance_explained=stored.total_variance_explained,
        fine_cluster_centroids=stored.fine_cluster_centroids,
        silhouette_score=stored.silhouette_score,
        group_silhouette_score=stored.group_silhouette_score,
        quality_tier=stored.quality_tier,
        consensus_level=stored.consensus_level,
        imputation=stored.imputation,
        sparsity_aware=stored.sparsity_aware,
        total_users=stored.total_users,
        total_statements=stored.total_statements,
        computation_time=stored.computation_time,
        computed_at=stored.computed_at,
        version=stored.version,
    )

    positions = [
        UserPosition(
            user_id=p.user_id,
            pc1=p.pc1,
            pc2=p.pc2,
            fine_cluster_id=p.fine_cluster_id,
            coarse_group_id=p.coarse_group_id,
            total_votes=p.total_votes,
            agree_count=p.agree_count,
            disagree_count=p.disagree_count,
            pass_count=p.pass_count,
        )
        for p in stored.poll.clustering_positions.all()
    ]

    classifications = [
        StatementClassificationResult(
            statement_id=c.statement_id,
            classification_type=c.classification_type,
            average_agreement=c.average_agreement,
            group_agreements=[GroupAgreement.from_dict(a) for a in c.group_agreements],
            standard_deviation=c.standard_deviation,
            bridge_score=c.bridge_score,
            connects_groups=c.connects_groups,
            agreeing_groups=c.agreeing_groups,
            disagreeing_groups=c.disagreeing_groups,
            neutral_groups=c.neutral_groups,
        )
        for c in stored.poll.statement_classifications.all()
    ]

    return ClusteringResult(
        poll_id=poll_id,
        metadata=metadata,
        groups=[CoarseGroup.from_dict(g) for g in stored.coarse_groups],
        positions=positions,
        classifications=classifications,
        coalitions=CoalitionAnalysis.from_dict(stored.coalition_analysis),
    )


def load_landscape(poll_id):
    """
    Latest stored landscape of a poll, from the cache when possible.

    Returns:
        ClusteringResult, or None when nothing has been computed yet

    Raises:
        QueueExhausted: the poll's latest clustering job failed for good
            and no snapshot was computed after that failure
    """
    from opinions.models import ClusteringJob, PollClusteringMetadata

    latest_job = ClusteringJob.objects.filter(
        poll_id=poll_id
    ).order_by('-created_at', '-id').first()
    if latest_job is not None and latest_job.status == ClusteringJob.STATUS_FAILED:
        computed_at = PollClusteringMetadata.objects.filter(
            poll_id=poll_id
        ).values_list('computed_at', flat=True).first()
        failed_at = latest_job.processed_at
        stale = (
            computed_at is None
            or failed_at is None
            or computed_at <= failed_at
        )
    else:
        stale = False

    if stale:
        raise QueueExhausted(
            poll_id,
            latest_job.attempt_count,
            last_error=latest_job.error_message,
        )

    cache = _cache()
    result = cache.get(_cache_key(poll_id))
    if result is not None:
        logger.debug(f"Returning cached landscape for poll {poll_id}")
        return result

    result = _rebuild_from_storage(poll_id)
    if result is not None:
        cache.set(_cache_key(poll_id), result, clustering_setting('CACHE_TIMEOUT'))
    return result


def locate_participant(poll_id, votes):
    """
    Place a participant on a poll's stored opinion map.

    Args:
        poll_id: poll primary key
        votes: dict {statement_id: value}; statements outside the stored
            landscape are ignored

    Returns:
        ParticipantLocation, or None when the poll has no landscape yet
    """
    result = load_landscape(poll_id)
    if result is None:
        return None

    metadata = result.metadata
    mean_vector = np.asarray(metadata.mean_vector, dtype=float)
    row = np.empty(len(metadata.statement_ids))
    vote_count = 0
    for j, statement_id in enumerate(metadata.statement_ids):
        value = votes.get(statement_id)
        if value is None:
            row[j] = 0.0 if metadata.imputation == 'zero' else mean_vector[j]
        else:
            row[j] = value
            vote_count += 1

    point = project_votes(
        row,
        metadata.pca_components,
        mean_vector,
        vote_count=vote_count if metadata.sparsity_aware else None,
    )
    fine_cluster_id = assign_to_nearest(point, metadata.fine_cluster_centroids)

    coarse_group_id = None
    for group in result.groups:
        if fine_cluster_id in group.fine_cluster_ids:
            coarse_group_id = group.group_id
            break
    if coarse_group_id is None:
        coarse_group_id = result.groups[
            assign_to_nearest(point, [g.centroid for g in result.groups])
        ].group_id

    return ParticipantLocation(
        pc1=float(point[0]),
        pc2=float(point[1]),
        fine_cluster_id=fine_cluster_id,
        coarse_group_id=coarse_group_id,
    )
