"""
Coalition analysis between opinion groups.

For each unordered pair of groups, walks the statements both groups voted
on and compares their stances (sign of net agreement). Same stance counts
as agreement, opposite stances as disagreement, and a neutral stance on
either side as neutral.

Polarization is the share of all pair/statement comparisons that ended
in disagreement, bucketed low < 15 <= medium < 30 <= high.
"""

from dataclasses import dataclass, field
from itertools import combinations
from typing import List
import logging

from opinions.conf import clustering_setting

logger = logging.getLogger(__name__)


@dataclass
class PairwiseAlignment:
    group_a: int
    group_b: int
    agreement_count: int = 0
    disagreement_count: int = 0
    neutral_count: int = 0

    @property
    def group_ids(self):
        return (self.group_a, self.group_b)

    @property
    def total_statements(self):
        return self.agreement_count + self.disagreement_count + self.neutral_count

    @property
    def alignment_percentage(self):
        if self.total_statements == 0:
            return 0.0
        return self.agreement_count / self.total_statements * 100

    def to_dict(self):
        return {
            'group_ids': [self.group_a, self.group_b],
            'agreement_count': self.agreement_count,
            'disagreement_count': self.disagreement_count,
            'neutral_count': self.neutral_count,
            'total_statements': self.total_statements,
            'alignment_percentage': self.alignment_percentage,
        }

    @classmethod
    def from_dict(cls, data):
        group_a, group_b = data['group_ids']
        return cls(
            group_a=group_a,
            group_b=group_b,
            agreement_count=data['agreement_count'],
            disagreement_count=data['disagreement_count'],
            neutral_count=data['neutral_count'],
        )


@dataclass
class CoalitionAnalysis:
    pairwise_alignment: List[PairwiseAlignment] = field(default_factory=list)
    strongest_coalitions: List[PairwiseAlignment] = field(default_factory=list)
    polarization_score: float = 0.0
    polarization_level: str = 'low'

    def to_dict(self):
        return {
            'pairwise_alignment': [p.to_dict() for p in self.pairwise_alignment],
            'strongest_coalitions': [p.to_dict() for p in self.strongest_coalitions],
            'polarization_score': self.polarization_score,
            'polarization_level': self.polarization_level,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            pairwise_alignment=[
                PairwiseAlignment.from_dict(p) for p in data.get('pairwise_alignment', [])
            ],
            strongest_coalitions=[
                PairwiseAlignment.from_dict(p) for p in data.get('strongest_coalitions', [])
            ],
            polarization_score=data.get('polarization_score', 0.0),
            polarization_level=data.get('polarization_level', 'low'),
        )

    def alignment_between(self, group_id1, group_id2):
        wanted = {group_id1, group_id2}
        for pair in self.pairwise_alignment:
            if {pair.group_a, pair.group_b} == wanted:
                return pair
        return None


def stance(agreement_percentage, threshold=None):
    """+1, -1 or 0 for a group's net agreement on a statement."""
    if threshold is None:
        threshold = clustering_setting('COALITION_STANCE_THRESHOLD')
    if agreement_percentage > threshold:
        return 1
    if agreement_percentage < -threshold:
        return -1
    return 0


def analyze_coalitions(classifications, group_ids, top_n=None):
    """
    Pairwise alignment between all opinion groups.

    Args:
        classifications: list of StatementClassificationResult (carrying
            the per-group agreement breakdown)
        group_ids: ids of the groups to compare
        top_n: number of strongest coalitions to keep (default from
            settings, 3)

    Returns:
        CoalitionAnalysis
    """
    if top_n is None:
        top_n = clustering_setting('STRONGEST_COALITIONS')

    pairs = []
    for group_a, group_b in combinations(sorted(group_ids), 2):
        pair = PairwiseAlignment(group_a=group_a, group_b=group_b)
        for classification in classifications:
            a = classification.agreement_for(group_a)
            b = classification.agreement_for(group_b)
            if a is None or b is None:
                continue

            stance_a = stance(a.agreement_percentage)
            stance_b = stance(b.agreement_percentage)
            if stance_a == 0 or stance_b == 0:
                pair.neutral_count += 1
            elif stance_a == stance_b:
                pair.agreement_count += 1
            else:
                pair.disagreement_count += 1
        pairs.append(pair)

    strongest = sorted(
        pairs,
        key=lambda p: (-p.alignment_percentage, -p.agreement_count, p.group_a, p.group_b),
    )[:top_n]

    score, level = calculate_polarization(pairs)

    logger.info(
        f"Coalition analysis: {len(pairs)} pairs, "
        f"polarization={score:.1f} ({level})"
    )

    return CoalitionAnalysis(
        pairwise_alignment=pairs,
        strongest_coalitions=strongest,
        polarization_score=score,
        polarization_level=level,
    )


def calculate_polarization(pairs):
    """
    Polarization = total disagreements / (pairs x mean statements per pair) x 100.

    Returns:
        tuple: (score, level) with level in {'low', 'medium', 'high'}
    """
    if not pairs:
        return 0.0, 'low'

    total_disagreements = sum(p.disagreement_count for p in pairs)
    avg_statements = sum(p.total_statements for p in pairs) / len(pairs)
    if avg_statements == 0:
        return 0.0, 'low'

    score = total_disagreements / (len(pairs) * avg_statements) * 100
    return score, polarization_level(score)


def polarization_level(score):
    if score >= clustering_setting('POLARIZATION_HIGH'):
        return 'high'
    if score >= clustering_setting('POLARIZATION_MEDIUM'):
        return 'medium'
    return 'low'


def is_strong_coalition(group_id1, group_id2, analysis, min_alignment=50):
    """True if the two groups align on more than ``min_alignment`` percent."""
    pair = analysis.alignment_between(group_id1, group_id2)
    return pair is not None and pair.alignment_percentage > min_alignment


def coalitions_above(analysis, min_alignment=50):
    """All pairs with alignment of at least ``min_alignment`` percent."""
    return [
        p for p in analysis.pairwise_alignment
        if p.alignment_percentage >= min_alignment
    ]
