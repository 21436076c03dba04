"""
Vote matrix builder for clustering analysis.

Converts a poll's vote records from the database into a dense
users x statements matrix suitable for PCA and clustering operations.

Encoding:
    agree    = +1
    pass     =  0
    disagree = -1
    no vote  = NaN (imputed before PCA, see VoteMatrix.imputed)
"""

from dataclasses import dataclass, field
from typing import List
import numpy as np
import logging

logger = logging.getLogger(__name__)

IMPUTATION_POLICIES = ('zero', 'mean')


@dataclass(frozen=True)
class VoteRecord:
    """A single (user, statement, value) vote triple."""
    user_id: str
    statement_id: int
    value: int


@dataclass
class VoteMatrix:
    """
    Users x statements vote matrix for one poll.

    Rows are sorted by user id and columns by statement id, so identical
    votes always produce identical matrices. ``values`` keeps NaN for
    cells where no vote was cast; ``records`` is the raw sparse vote set.
    """
    poll_id: int
    user_ids: List[str]
    statement_ids: List[int]
    values: np.ndarray
    records: List[VoteRecord] = field(default_factory=list)

    @classmethod
    def from_records(cls, poll_id, records, statement_ids=None):
        """
        Build a matrix from vote records.

        Args:
            poll_id: poll the votes belong to
            records: iterable of VoteRecord
            statement_ids: column set; defaults to the statements voted on.
                Votes on statements outside this set are ignored.

        Returns:
            VoteMatrix (possibly empty)
        """
        records = list(records)
        if statement_ids is None:
            statement_ids = {r.statement_id for r in records}
        statement_ids = sorted(statement_ids)
        column_index = {sid: j for j, sid in enumerate(statement_ids)}

        records = [r for r in records if r.statement_id in column_index]
        user_ids = sorted({r.user_id for r in records})
        row_index = {uid: i for i, uid in enumerate(user_ids)}

        values = np.full((len(user_ids), len(statement_ids)), np.nan)
        for record in records:
            values[row_index[record.user_id], column_index[record.statement_id]] = record.value

        return cls(
            poll_id=poll_id,
            user_ids=user_ids,
            statement_ids=statement_ids,
            values=values,
            records=records,
        )

    @property
    def shape(self):
        return self.values.shape

    @property
    def is_empty(self):
        return not self.user_ids or not self.statement_ids

    def imputed(self, policy='zero'):
        """
        Return a copy of the matrix with missing votes filled in.

        Args:
            policy: 'zero' treats a missing vote as pass; 'mean' uses the
                mean of the votes cast on that statement (0 when nobody
                voted on it)

        Returns:
            numpy array (N_users x N_statements) without NaN
        """
        if policy not in IMPUTATION_POLICIES:
            raise ValueError(
                f"Unknown imputation policy {policy!r}, "
                f"expected one of {IMPUTATION_POLICIES}"
            )

        filled = self.values.copy()
        missing = np.isnan(filled)
        if not missing.any():
            return filled

        if policy == 'zero':
            filled[missing] = 0.0
        else:
            cast = ~missing
            counts = cast.sum(axis=0)
            sums = np.where(cast, filled, 0.0).sum(axis=0)
            column_means = np.divide(
                sums, counts,
                out=np.zeros(len(self.statement_ids)),
                where=counts > 0,
            )
            filled[missing] = np.take(column_means, np.nonzero(missing)[1])

        return filled

    def vote_counts(self):
        """Number of votes actually cast by each user (row order)."""
        return (~np.isnan(self.values)).sum(axis=1)

    def statement_vote_counts(self):
        """Number of votes actually cast on each statement (column order)."""
        return (~np.isnan(self.values)).sum(axis=0)

    def user_vote_summary(self):
        """
        Per-user vote statistics.

        Returns:
            dict: {user_id: {'total': n, 'agree': n, 'disagree': n, 'pass': n}}
        """
        summary = {}
        for i, user_id in enumerate(self.user_ids):
            row = self.values[i]
            agree = int(np.sum(row == 1))
            disagree = int(np.sum(row == -1))
            passed = int(np.sum(row == 0))
            summary[user_id] = {
                'total': agree + disagree + passed,
                'agree': agree,
                'disagree': disagree,
                'pass': passed,
            }
        return summary


def eligible_statements(poll_id):
    """Queryset of statements that take part in clustering."""
    from opinions.models import Statement

    return Statement.objects.filter(
        poll_id=poll_id,
        approved=True,
        is_deleted=False,
    )


def eligible_votes(poll_id):
    """Queryset of votes cast on the poll's eligible statements."""
    from opinions.models import Vote

    return Vote.objects.filter(
        statement__poll_id=poll_id,
        statement__approved=True,
        statement__is_deleted=False,
    )


def count_voting_users(poll_id):
    return eligible_votes(poll_id).values('user_id').distinct().count()


def count_eligible_statements(poll_id):
    return eligible_statements(poll_id).count()


def build_vote_matrix(poll_id):
    """
    Build the vote matrix (users x statements) for a poll.

    Columns are every approved, non-deleted statement of the poll; rows
    are the users with at least one vote on those statements. Votes are
    fetched in a single bulk query.

    Args:
        poll_id: poll primary key

    Returns:
        VoteMatrix; ``is_empty`` is True when the poll has no eligible
        statements or no votes on them.
    """
    statement_ids = list(
        eligible_statements(poll_id).order_by('id').values_list('id', flat=True)
    )

    rows = eligible_votes(poll_id).values_list(
        'user_id', 'statement_id', 'value'
    ).order_by('user_id', 'statement_id')
    records = [
        VoteRecord(user_id=user_id, statement_id=statement_id, value=value)
        for user_id, statement_id, value in rows
    ]

    matrix = VoteMatrix.from_records(poll_id, records, statement_ids=statement_ids)

    if matrix.is_empty:
        logger.warning(
            f"Poll {poll_id}: empty vote matrix "
            f"({len(matrix.user_ids)} users, {len(statement_ids)} statements)"
        )
    else:
        density = len(records) / (len(matrix.user_ids) * len(statement_ids))
        logger.info(
            f"Poll {poll_id}: built vote matrix "
            f"{len(matrix.user_ids)} users x {len(statement_ids)} statements, "
            f"{len(records)} votes (density {density:.1%})"
        )

    return matrix
