"""
Statement classification from per-group agreement.

For each statement and opinion group, net agreement is

    (agree - disagree) / (agree + disagree + pass) * 100

on a -100..100 scale: a group split 50/50 reads ~0, not a neutral-looking
50%. Only votes actually cast count; a group with no votes on a statement
is left out of that statement.

Statement types, first match wins:
- full_consensus: every group strongly agrees, or every group strongly
  disagrees (|agreement| > threshold, same sign)
- partial_consensus: a strict majority of groups is strong with the same
  sign, but not all groups
- bridge: groups that are otherwise divergent (poll-wide mean agreement
  gap >= BRIDGE_MIN_DIVERGENCE) agree on this statement (each above
  BRIDGE_MIN_AGREEMENT) and the spread across groups is low
  (std < BRIDGE_MAX_STD)
- divisive: high spread (std > DIVISIVE_STD_THRESHOLD) and groups strongly
  on opposite sides
- split_decision: no group is strong, spread is not high, and groups lean
  both ways
- normal: anything else
"""

from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, List, Optional
import numpy as np
import logging

from opinions.conf import clustering_setting

logger = logging.getLogger(__name__)

FULL_CONSENSUS = 'full_consensus'
PARTIAL_CONSENSUS = 'partial_consensus'
SPLIT_DECISION = 'split_decision'
DIVISIVE = 'divisive'
BRIDGE = 'bridge'
NORMAL = 'normal'

CLASSIFICATION_TYPES = (
    FULL_CONSENSUS,
    PARTIAL_CONSENSUS,
    SPLIT_DECISION,
    DIVISIVE,
    BRIDGE,
    NORMAL,
)


@dataclass
class GroupAgreement:
    group_id: int
    agree_count: int
    disagree_count: int
    neutral_count: int

    @property
    def total_votes(self):
        return self.agree_count + self.disagree_count + self.neutral_count

    @property
    def agreement_percentage(self):
        if self.total_votes == 0:
            return 0.0
        return (self.agree_count - self.disagree_count) / self.total_votes * 100

    def to_dict(self):
        return {
            'group_id': self.group_id,
            'agree_count': self.agree_count,
            'disagree_count': self.disagree_count,
            'neutral_count': self.neutral_count,
            'total_votes': self.total_votes,
            'agreement_percentage': self.agreement_percentage,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            group_id=data['group_id'],
            agree_count=data['agree_count'],
            disagree_count=data['disagree_count'],
            neutral_count=data['neutral_count'],
        )


@dataclass
class StatementClassificationResult:
    statement_id: int
    classification_type: str
    average_agreement: float
    group_agreements: List[GroupAgreement] = field(default_factory=list)
    standard_deviation: Optional[float] = None
    bridge_score: Optional[float] = None
    connects_groups: Optional[List[int]] = None
    agreeing_groups: List[int] = field(default_factory=list)
    disagreeing_groups: List[int] = field(default_factory=list)
    neutral_groups: List[int] = field(default_factory=list)

    def agreement_for(self, group_id):
        for agreement in self.group_agreements:
            if agreement.group_id == group_id:
                return agreement
        return None


def compute_group_agreements(vote_matrix, group_labels):
    """
    Count agree/disagree/pass votes per group for every statement.

    Args:
        vote_matrix: VoteMatrix (raw, NaN for missing votes)
        group_labels: (N_users,) group id per user, row order

    Returns:
        dict: {statement_id: [GroupAgreement, ...]} groups ascending,
        groups without votes on the statement omitted
    """
    group_labels = np.asarray(group_labels)
    group_ids = sorted(int(g) for g in np.unique(group_labels))
    values = vote_matrix.values

    agreements = {}
    for j, statement_id in enumerate(vote_matrix.statement_ids):
        column = values[:, j]
        per_group = []
        for group_id in group_ids:
            group_votes = column[group_labels == group_id]
            agreement = GroupAgreement(
                group_id=group_id,
                agree_count=int(np.sum(group_votes == 1)),
                disagree_count=int(np.sum(group_votes == -1)),
                neutral_count=int(np.sum(group_votes == 0)),
            )
            if agreement.total_votes:
                per_group.append(agreement)
        agreements[statement_id] = per_group

    return agreements


def group_divergence(agreements_by_statement):
    """
    Mean absolute agreement difference for each group pair across the poll.

    This is the baseline of how far apart two groups usually are; a
    bridge statement is one where otherwise divergent groups agree.

    Args:
        agreements_by_statement: output of compute_group_agreements

    Returns:
        dict: {(group_a, group_b): mean |diff|} with group_a < group_b,
        over statements both groups voted on
    """
    diffs = {}
    for per_group in agreements_by_statement.values():
        for a, b in combinations(per_group, 2):
            key = (a.group_id, b.group_id) if a.group_id < b.group_id else (b.group_id, a.group_id)
            diffs.setdefault(key, []).append(
                abs(a.agreement_percentage - b.agreement_percentage)
            )
    return {key: float(np.mean(values)) for key, values in diffs.items()}


def _bridge(agreements, std, divergence):
    """Return (bridge_score, connected group ids) or None."""
    if len(agreements) < 2 or divergence is None:
        return None
    if std >= clustering_setting('BRIDGE_MAX_STD'):
        return None

    min_agreement = clustering_setting('BRIDGE_MIN_AGREEMENT')
    connected = [a for a in agreements if a.agreement_percentage > min_agreement]
    if len(connected) < 2:
        return None

    min_divergence = clustering_setting('BRIDGE_MIN_DIVERGENCE')
    diverging = any(
        divergence.get((a.group_id, b.group_id), 0.0) >= min_divergence
        for a, b in combinations(connected, 2)
    )
    if not diverging:
        return None

    mean_connected = np.mean([a.agreement_percentage for a in connected])
    score = (len(connected) / len(agreements)) * (mean_connected / 100)
    return float(score), [a.group_id for a in connected]


def classify_statement(statement_id, agreements, divergence=None):
    """
    Classify a statement from its per-group agreement.

    Args:
        statement_id: statement primary key
        agreements: list of GroupAgreement for the groups that voted on it
        divergence: output of group_divergence; without it no statement
            can be a bridge

    Returns:
        StatementClassificationResult
    """
    threshold = clustering_setting('AGREEMENT_THRESHOLD')
    agreements = sorted(agreements, key=lambda a: a.group_id)

    if not agreements:
        return StatementClassificationResult(
            statement_id=statement_id,
            classification_type=NORMAL,
            average_agreement=0.0,
        )

    percentages = np.array([a.agreement_percentage for a in agreements])
    n_groups = len(agreements)
    average = float(np.mean(percentages))
    std = float(np.std(percentages))

    agreeing = [a.group_id for a in agreements if a.agreement_percentage > threshold]
    disagreeing = [a.group_id for a in agreements if a.agreement_percentage < -threshold]
    neutral = [
        a.group_id for a in agreements
        if abs(a.agreement_percentage) <= threshold
    ]

    result = StatementClassificationResult(
        statement_id=statement_id,
        classification_type=NORMAL,
        average_agreement=average,
        group_agreements=agreements,
        standard_deviation=std,
        agreeing_groups=agreeing,
        disagreeing_groups=disagreeing,
        neutral_groups=neutral,
    )

    strongest_side = max(len(agreeing), len(disagreeing))
    bridge = None
    if strongest_side <= n_groups / 2:
        bridge = _bridge(agreements, std, divergence)

    if strongest_side == n_groups:
        result.classification_type = FULL_CONSENSUS
    elif strongest_side > n_groups / 2:
        result.classification_type = PARTIAL_CONSENSUS
    elif bridge is not None:
        result.classification_type = BRIDGE
        result.bridge_score, result.connects_groups = bridge
    elif std > clustering_setting('DIVISIVE_STD_THRESHOLD') and agreeing and disagreeing:
        result.classification_type = DIVISIVE
    elif (
        not agreeing and not disagreeing
        and std <= clustering_setting('DIVISIVE_STD_THRESHOLD')
        and np.any(percentages > 0) and np.any(percentages < 0)
    ):
        result.classification_type = SPLIT_DECISION

    return result


def classify_statements(vote_matrix, group_labels):
    """
    Classify every statement of a vote matrix.

    Args:
        vote_matrix: VoteMatrix
        group_labels: (N_users,) group id per user

    Returns:
        list of StatementClassificationResult in statement id order
    """
    agreements = compute_group_agreements(vote_matrix, group_labels)
    divergence = group_divergence(agreements)

    results = [
        classify_statement(statement_id, agreements[statement_id], divergence)
        for statement_id in vote_matrix.statement_ids
    ]

    counts = {}
    for result in results:
        counts[result.classification_type] = counts.get(result.classification_type, 0) + 1
    logger.info(f"Classified {len(results)} statements: {counts}")

    return results
