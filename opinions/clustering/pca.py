"""
PCA for participant projection onto a 2D opinion map.

Centers each statement column, decomposes the centered matrix with SVD
and projects every participant's vote row onto the top components.

Component signs are fixed so that the largest-magnitude loading of each
component is positive (ties go to the lowest column). Without this, SVD
may return mirror-flipped axes between runs and participants would jump
sides of the map.

Optionally applies Polis-style sparsity-aware scaling, which pushes
participants with few votes away from the center.

References:
- Pearson, K. (1901). "On lines and planes of closest fit to systems of
  points in space." Philosophical Magazine, Series 6, 2(11), 559-572.
- Jolliffe, I.T. (2002). Principal Component Analysis, 2nd ed. Springer.
- Polis implementation: github.com/compdemocracy/polis
  (math/src/polismath/math/pca.clj)
"""

from dataclasses import dataclass
import numpy as np
from scipy.linalg import svd, LinAlgError
import logging

from opinions.exceptions import ComputationError

logger = logging.getLogger(__name__)


@dataclass
class PCAResult:
    projections: np.ndarray          # (N_users x n_components)
    components: np.ndarray           # (n_components x N_statements)
    mean_vector: np.ndarray          # (N_statements,)
    variance_explained: np.ndarray   # (n_components,)
    singular_values: np.ndarray

    @property
    def total_variance_explained(self):
        return float(np.sum(self.variance_explained))


def apply_sign_convention(components):
    """
    Flip each component so its largest-magnitude loading is positive.

    Magnitudes are rounded before comparing so that loadings equal up to
    floating point noise resolve to the lowest column index.
    """
    components = np.array(components, dtype=float, copy=True)
    for i, row in enumerate(components):
        if not np.any(row):
            continue
        pivot = int(np.argmax(np.round(np.abs(row), 12)))
        if row[pivot] < 0:
            components[i] = -row
    return components


def sparsity_scaling(vote_counts, n_statements):
    """Per-user projection scale sqrt(n_statements / votes_cast)."""
    vote_counts = np.maximum(np.asarray(vote_counts, dtype=float), 1)
    return np.sqrt(n_statements / vote_counts)


def compute_pca(matrix, n_components=2, vote_counts=None, sparsity_aware=False):
    """
    Compute a deterministic PCA projection using SVD.

    Args:
        matrix: numpy array (N_users x N_statements), already imputed
        n_components: number of components to keep (default 2)
        vote_counts: votes actually cast per user; required when
            sparsity_aware is True
        sparsity_aware: scale projections by sqrt(n_statements / votes_cast)

    Returns:
        PCAResult. Components that the data cannot support (zero variance,
        rank below n_components) get zero loadings, so their projection
        coordinates are zero.

    Raises:
        ComputationError: empty or non-finite input, or SVD failure
    """
    X = np.asarray(matrix, dtype=float)

    if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
        raise ComputationError(
            "PCA needs a non-empty 2D matrix",
            context={'shape': X.shape},
        )
    if not np.all(np.isfinite(X)):
        raise ComputationError(
            "Vote matrix contains non-finite values",
            context={'shape': X.shape},
        )

    n_users, n_statements = X.shape
    logger.info(
        f"Computing PCA: {n_users} users, {n_statements} statements, "
        f"{n_components} components"
    )

    mean_vector = X.mean(axis=0)
    centered = X - mean_vector

    try:
        _, S, Vt = svd(centered, full_matrices=False)
    except (LinAlgError, ValueError) as exc:
        raise ComputationError(
            f"SVD failed: {exc}",
            context={'shape': X.shape},
        ) from exc

    # Singular values below numerical rank tolerance carry no signal
    tol = S.max() * max(X.shape) * np.finfo(float).eps if S.size else 0.0

    components = np.zeros((n_components, n_statements))
    variance_explained = np.zeros(n_components)
    total_variance = float(np.sum(S ** 2))

    for i in range(min(n_components, Vt.shape[0])):
        if S[i] > tol:
            components[i] = Vt[i]
            variance_explained[i] = (S[i] ** 2) / total_variance

    components = apply_sign_convention(components)
    projections = centered @ components.T

    if sparsity_aware:
        if vote_counts is None:
            raise ValueError("vote_counts is required for sparsity-aware scaling")
        projections = projections * sparsity_scaling(vote_counts, n_statements)[:, np.newaxis]

    rank = int(np.sum(S > tol))
    if rank < n_components:
        logger.warning(
            f"Degenerate vote matrix: rank {rank} < {n_components} components"
        )

    logger.info(
        f"PCA complete: variance explained = {np.round(variance_explained, 4)}"
    )
    logger.debug(
        f"Projection range: "
        f"x=[{projections[:, 0].min():.2f}, {projections[:, 0].max():.2f}]"
        + (
            f", y=[{projections[:, 1].min():.2f}, {projections[:, 1].max():.2f}]"
            if n_components > 1 else ""
        )
    )

    return PCAResult(
        projections=projections,
        components=components,
        mean_vector=mean_vector,
        variance_explained=variance_explained,
        singular_values=S,
    )


def project_votes(votes, components, mean_vector, vote_count=None):
    """
    Project one participant's vote row onto an existing PCA basis.

    Args:
        votes: imputed vote row (N_statements,)
        components: (n_components x N_statements) loadings
        mean_vector: column means the basis was centered with
        vote_count: votes actually cast; when given, the sparsity-aware
            scale is applied

    Returns:
        numpy array (n_components,)
    """
    votes = np.asarray(votes, dtype=float)
    components = np.asarray(components, dtype=float)
    mean_vector = np.asarray(mean_vector, dtype=float)

    if votes.shape != mean_vector.shape:
        raise ValueError(
            f"Vote row has {votes.shape[0]} entries, "
            f"basis expects {mean_vector.shape[0]}"
        )

    point = (votes - mean_vector) @ components.T
    if vote_count is not None:
        point = point * sparsity_scaling([vote_count], votes.shape[0])[0]
    return point
