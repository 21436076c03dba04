"""
Coarse grouping of fine clusters into opinion groups.

Implements Polis-style hierarchical clustering:
- Fine clusters (k ~ sqrt(users)) on all participants
- Groups (k=2-5, auto-selected) by size-weighted k-means on the fine
  cluster centroids

Every fine cluster, and hence every participant, ends up in exactly one
group.

References:
- Rousseeuw, P.J. (1987). "Silhouettes: A graphical aid to the interpretation
  and validation of cluster analysis." J. Computational and Applied
  Mathematics, 20, 53-65. doi:10.1016/0377-0427(87)90125-7
- Polis implementation: github.com/compdemocracy/polis
  (math/src/polismath/math/conversation.clj - group-k-smoother)
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import numpy as np
from sklearn.cluster import KMeans
import logging

from opinions.conf import clustering_setting
from .kmeans import renumber_by_first_appearance
from .metrics import compute_silhouette_score

logger = logging.getLogger(__name__)


@dataclass
class CoarseGroup:
    group_id: int
    centroid: Tuple[float, float]
    fine_cluster_ids: List[int]
    user_count: int
    label: Optional[str] = None  # assigned by the caller

    def to_dict(self):
        return {
            'group_id': self.group_id,
            'centroid': [float(c) for c in self.centroid],
            'fine_cluster_ids': list(self.fine_cluster_ids),
            'user_count': self.user_count,
            'label': self.label,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            group_id=data['group_id'],
            centroid=tuple(data['centroid']),
            fine_cluster_ids=list(data['fine_cluster_ids']),
            user_count=data['user_count'],
            label=data.get('label'),
        )


@dataclass
class CoarseGrouping:
    groups: List[CoarseGroup]
    labels: np.ndarray              # (N_users,) group id per user
    fine_to_group: Dict[int, int]
    k: int
    silhouette_scores: Dict[int, float] = field(default_factory=dict)
    silhouette_score: float = 0.0

    @property
    def group_ids(self):
        return [group.group_id for group in self.groups]


def group_clusters(
    fine,
    projections,
    k_range=None,
    silhouette_threshold=None
):
    """
    Merge fine clusters into groups, auto-selecting k with parsimony.

    Runs k-means over the fine cluster centroids (weighted by cluster
    size) for every k in range and scores each candidate with the
    user-level silhouette. Starting from the smallest k, a larger k is
    only taken if it improves the score by more than the threshold, so
    fewer groups win when scores are similar.

    Args:
        fine: FineClustering
        projections: participant projections (N_users x 2)
        k_range: tuple (min_k, max_k) (default from settings, 2-5)
        silhouette_threshold: minimum improvement required to increase k
            (default from settings, 0.02)

    Returns:
        CoarseGrouping with groups renumbered by first appearance
    """
    if k_range is None:
        k_range = clustering_setting('GROUP_K_RANGE')
    if silhouette_threshold is None:
        silhouette_threshold = clustering_setting('GROUP_SILHOUETTE_THRESHOLD')

    projections = np.asarray(projections, dtype=float)
    n_fine = len(fine.centroids)

    min_k, max_k = k_range
    max_k = min(max_k, n_fine)
    min_k = max(2, min_k)

    silhouette_scores = {}

    if max_k < min_k:
        logger.info(f"{n_fine} fine cluster(s): single group")
        fine_group = np.zeros(n_fine, dtype=int)
        best_k = 1
        best_score = 0.0
    else:
        logger.info(
            f"Auto-selecting k for group clustering: "
            f"k_range=({min_k}, {max_k}), threshold={silhouette_threshold}"
        )
        candidates = {}
        for k in range(min_k, max_k + 1):
            kmeans = KMeans(
                n_clusters=k,
                random_state=clustering_setting('RANDOM_STATE'),
                n_init=10,
            )
            candidate = kmeans.fit_predict(fine.centroids, sample_weight=fine.sizes)
            score = compute_silhouette_score(projections, candidate[fine.labels])
            silhouette_scores[k] = score
            candidates[k] = candidate
            logger.debug(f"k={k}: silhouette={score:.4f}")

        best_k = min_k
        best_score = silhouette_scores[min_k]
        for k in range(min_k + 1, max_k + 1):
            improvement = silhouette_scores[k] - best_score
            if improvement > silhouette_threshold:
                logger.debug(
                    f"k={k} improves by {improvement:.4f} > {silhouette_threshold}"
                )
                best_k = k
                best_score = silhouette_scores[k]

        logger.info(
            f"Selected k={best_k} (silhouette={best_score:.4f}) "
            f"from scores: {silhouette_scores}"
        )
        fine_group = candidates[best_k]

    labels, mapping = renumber_by_first_appearance(fine_group[fine.labels])
    fine_to_group = {
        fine_id: mapping[fine_group[fine_id]]
        for fine_id in range(n_fine)
        if fine_group[fine_id] in mapping
    }

    centroids = compute_group_centroids(labels, projections)
    groups = []
    for group_id in sorted(centroids):
        groups.append(CoarseGroup(
            group_id=group_id,
            centroid=tuple(float(c) for c in centroids[group_id]),
            fine_cluster_ids=sorted(
                fine_id for fine_id, g in fine_to_group.items() if g == group_id
            ),
            user_count=int(np.sum(labels == group_id)),
        ))

    logger.info(
        f"Grouping complete: {len(groups)} groups, "
        f"sizes: {[g.user_count for g in groups]}"
    )

    return CoarseGrouping(
        groups=groups,
        labels=labels,
        fine_to_group=fine_to_group,
        k=len(groups),
        silhouette_scores=silhouette_scores,
        silhouette_score=best_score if len(groups) > 1 else 0.0,
    )


def compute_group_centroids(group_labels, projections):
    """
    Compute centroid for each group.

    Args:
        group_labels: array of group assignments
        projections: participant projections (N_users x 2)

    Returns:
        dict: {group_id: centroid}
    """
    unique_groups = np.unique(group_labels)
    centroids = {}

    for group_id in unique_groups:
        group_mask = group_labels == group_id
        centroids[int(group_id)] = projections[group_mask].mean(axis=0)

    return centroids
