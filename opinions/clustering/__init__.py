"""
Polis-style opinion clustering for polls.

Projects participants' votes onto a 2D opinion map, groups them into a
few opinion groups, classifies statements by how the groups voted and
measures alignment between groups.
"""

from .matrix_builder import VoteMatrix, VoteRecord, build_vote_matrix
from .pca import PCAResult, compute_pca, project_votes
from .kmeans import (
    FineClustering,
    assign_to_nearest,
    choose_fine_k,
    cluster_participants,
    compute_cluster_sizes,
)
from .hierarchical import (
    CoarseGroup,
    CoarseGrouping,
    compute_group_centroids,
    group_clusters,
)
from .metrics import compute_silhouette_score
from .classification import (
    GroupAgreement,
    StatementClassificationResult,
    classify_statement,
    classify_statements,
    compute_group_agreements,
    group_divergence,
)
from .coalitions import (
    CoalitionAnalysis,
    PairwiseAlignment,
    analyze_coalitions,
    calculate_polarization,
    coalitions_above,
    is_strong_coalition,
)
from .landscape import (
    ClusteringResult,
    EligibilityResult,
    ParticipantLocation,
    UserPosition,
    compute_opinion_landscape,
    invalidate_landscape_cache,
    is_eligible_for_clustering,
    load_landscape,
    locate_participant,
    save_landscape,
)

__all__ = [
    'VoteMatrix',
    'VoteRecord',
    'build_vote_matrix',
    'PCAResult',
    'compute_pca',
    'project_votes',
    'FineClustering',
    'assign_to_nearest',
    'choose_fine_k',
    'cluster_participants',
    'compute_cluster_sizes',
    'CoarseGroup',
    'CoarseGrouping',
    'compute_group_centroids',
    'group_clusters',
    'compute_silhouette_score',
    'GroupAgreement',
    'StatementClassificationResult',
    'classify_statement',
    'classify_statements',
    'compute_group_agreements',
    'group_divergence',
    'CoalitionAnalysis',
    'PairwiseAlignment',
    'analyze_coalitions',
    'calculate_polarization',
    'coalitions_above',
    'is_strong_coalition',
    'ClusteringResult',
    'EligibilityResult',
    'ParticipantLocation',
    'UserPosition',
    'compute_opinion_landscape',
    'invalidate_landscape_cache',
    'is_eligible_for_clustering',
    'load_landscape',
    'locate_participant',
    'save_landscape',
]
