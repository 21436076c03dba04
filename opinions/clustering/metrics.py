"""
Clustering quality metrics.

References:
- Rousseeuw, P.J. (1987). "Silhouettes: A graphical aid to the interpretation
  and validation of cluster analysis." J. Computational and Applied
  Mathematics, 20, 53-65. doi:10.1016/0377-0427(87)90125-7
"""

import numpy as np
from sklearn.metrics import silhouette_score
import logging

logger = logging.getLogger(__name__)


def compute_silhouette_score(projections, labels):
    """
    Silhouette of a partition of participants in PCA space.

    Used both for fine clusters and for coarse groups (scored per user,
    not per centroid).

    Args:
        projections: numpy array (N_users x 2)
        labels: group or cluster id per user (N_users,)

    Returns:
        float in [-1, 1]; 0.0 when the score is undefined (one label, or
        as many labels as users)
    """
    labels = np.asarray(labels)
    n_labels = len(np.unique(labels))

    if n_labels < 2:
        logger.debug("Silhouette undefined: single cluster")
        return 0.0

    if n_labels >= len(labels):
        logger.warning(
            f"Silhouette undefined: {n_labels} clusters for {len(labels)} users"
        )
        return 0.0

    try:
        return float(silhouette_score(projections, labels))
    except ValueError as e:
        logger.error(f"Error computing silhouette score: {e}")
        return 0.0
