"""
Tunable constants for the opinion clustering engine.

Values are read from ``settings.OPINION_CLUSTERING`` (a dict) and fall
back to ``DEFAULTS``. Thresholds for bridge statements and polarization
buckets mirror observed behavior; tests pin them, so change them here and
in settings rather than in the algorithms.
"""

from django.conf import settings

DEFAULTS = {
    # Eligibility gate
    'MIN_USERS': 20,
    'MIN_STATEMENTS': 6,

    # Vote matrix / PCA
    'IMPUTATION': 'zero',  # 'zero' or 'mean'
    'SPARSITY_AWARE_SCALING': False,

    # Fine clustering
    'FINE_K_MIN': 2,
    'FINE_K_MAX': 100,

    # Coarse grouping
    'GROUP_K_RANGE': (2, 5),
    'GROUP_SILHOUETTE_THRESHOLD': 0.02,

    # Statement classification (agreement is on a -100..100 scale)
    'AGREEMENT_THRESHOLD': 60,
    'DIVISIVE_STD_THRESHOLD': 50,
    'BRIDGE_MAX_STD': 30,
    'BRIDGE_MIN_AGREEMENT': 20,
    'BRIDGE_MIN_DIVERGENCE': 30,

    # Coalitions
    'COALITION_STANCE_THRESHOLD': 0,
    'STRONGEST_COALITIONS': 3,
    'POLARIZATION_MEDIUM': 15,
    'POLARIZATION_HIGH': 30,

    # Landscape summary: (min variance explained, min silhouette)
    'QUALITY_HIGH': (0.6, 0.4),
    'QUALITY_MEDIUM': (0.4, 0.25),
    # Share of statements in full consensus
    'CONSENSUS_HIGH': 0.5,
    'CONSENSUS_MEDIUM': 0.3,

    # Queue
    'MAX_ATTEMPTS': 3,
    'QUEUE_BATCH_SIZE': 5,
    'CLEANUP_DAYS': 7,

    # Result cache
    'CACHE_ALIAS': 'clustering',
    'CACHE_TIMEOUT': 300,

    'RANDOM_STATE': 42,
}


def clustering_setting(name):
    """Return the configured value for ``name``."""
    if name not in DEFAULTS:
        raise KeyError(f"Unknown clustering setting: {name}")
    overrides = getattr(settings, 'OPINION_CLUSTERING', None) or {}
    return overrides.get(name, DEFAULTS[name])
