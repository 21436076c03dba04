"""
K-means fine clustering of participants.

Partitions the PCA-projected participants into many small, tight
clusters. These are an intermediate layer that the coarse grouper
merges into a handful of opinion groups.

References:
- Lloyd, S.P. (1982). "Least squares quantization in PCM."
  IEEE Transactions on Information Theory, 28(2), 129-137.
  doi:10.1109/TIT.1982.1056489
- Polis implementation: github.com/compdemocracy/polis
  (math/src/polismath/math/clusters.clj)
"""

from dataclasses import dataclass
import math
import numpy as np
from sklearn.cluster import KMeans
import logging

from opinions.conf import clustering_setting
from opinions.exceptions import ComputationError
from .metrics import compute_silhouette_score

logger = logging.getLogger(__name__)


@dataclass
class FineClustering:
    labels: np.ndarray      # (N_users,) fine cluster id per user
    centroids: np.ndarray   # (k x 2)
    sizes: np.ndarray       # (k,) users per cluster
    k: int
    inertia: float
    silhouette_score: float


def count_distinct_points(projections, decimals=10):
    """Number of distinct participant positions (rounded)."""
    if len(projections) == 0:
        return 0
    return len(np.unique(np.round(projections, decimals), axis=0))


def choose_fine_k(n_users, n_distinct=None):
    """
    Pick the fine cluster count: ceil(sqrt(n_users)) within the configured
    bounds, never more than the number of distinct positions.
    """
    k = math.ceil(math.sqrt(n_users))
    k = max(clustering_setting('FINE_K_MIN'), min(clustering_setting('FINE_K_MAX'), k))
    k = min(k, n_users)
    if n_distinct is not None:
        k = min(k, n_distinct)
    return k


def renumber_by_first_appearance(labels):
    """
    Relabel clusters 0..k-1 in the order they first appear.

    Returns:
        tuple: (new_labels, mapping {old_label: new_label})
    """
    mapping = {}
    for label in labels:
        if label not in mapping:
            mapping[label] = len(mapping)
    new_labels = np.array([mapping[label] for label in labels], dtype=int)
    return new_labels, mapping


def cluster_participants(projections, k=None):
    """
    K-means clustering on participant projections.

    Args:
        projections: numpy array (N_users x 2), PCA-projected coordinates
        k: number of clusters (default: chosen by choose_fine_k)

    Returns:
        FineClustering. Labels are renumbered by first appearance in row
        order, so identical input gives identical labels.
    """
    projections = np.asarray(projections, dtype=float)
    n_users = projections.shape[0]

    if n_users == 0:
        raise ComputationError("Cannot cluster an empty projection")

    n_distinct = count_distinct_points(projections)
    if k is None:
        k = choose_fine_k(n_users, n_distinct)
        logger.info(f"Auto-selected k={k} for {n_users} users ({n_distinct} distinct positions)")
    else:
        k = min(k, n_distinct)

    if k <= 1:
        logger.info(f"Single fine cluster for {n_users} users")
        labels = np.zeros(n_users, dtype=int)
        centroid = projections.mean(axis=0)
        inertia = float(np.sum((projections - centroid) ** 2))
        return FineClustering(
            labels=labels,
            centroids=centroid[np.newaxis, :],
            sizes=np.array([n_users]),
            k=1,
            inertia=inertia,
            silhouette_score=0.0,
        )

    logger.info(f"Running k-means: {n_users} users, k={k}")

    kmeans = KMeans(
        n_clusters=k,
        n_init=10,
        random_state=clustering_setting('RANDOM_STATE'),
    )
    raw_labels = kmeans.fit_predict(projections)
    labels, _ = renumber_by_first_appearance(raw_labels)

    k_actual = int(labels.max()) + 1
    centroids = np.array([
        projections[labels == cluster_id].mean(axis=0)
        for cluster_id in range(k_actual)
    ])
    sizes = np.bincount(labels, minlength=k_actual)
    silhouette = compute_silhouette_score(projections, labels)

    logger.info(
        f"K-means complete: {k_actual} clusters, "
        f"sizes: {compute_cluster_sizes(labels)}, silhouette={silhouette:.4f}"
    )
    logger.debug(f"Inertia (within-cluster variance): {kmeans.inertia_:.2f}")

    return FineClustering(
        labels=labels,
        centroids=centroids,
        sizes=sizes,
        k=k_actual,
        inertia=float(kmeans.inertia_),
        silhouette_score=silhouette,
    )


def assign_to_nearest(point, centroids):
    """
    Index of the centroid closest to ``point`` (Euclidean).
    Ties go to the lowest index.
    """
    centroids = np.asarray(centroids, dtype=float)
    if len(centroids) == 0:
        raise ValueError("No centroids to assign to")
    distances = np.linalg.norm(centroids - np.asarray(point, dtype=float), axis=1)
    return int(np.argmin(distances))


def compute_cluster_sizes(labels):
    """
    Compute size of each cluster.

    Args:
        labels: array of cluster assignments

    Returns:
        dict: {cluster_id: size}
    """
    unique, counts = np.unique(labels, return_counts=True)
    return {int(u): int(c) for u, c in zip(unique, counts)}
