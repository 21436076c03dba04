"""
Tests for vote matrix construction.
"""

import pytest
import numpy as np
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from opinions.models import Statement, Vote
from opinions.clustering import VoteMatrix, VoteRecord, build_vote_matrix


def test_from_records_orders_rows_and_columns():
    """Rows sorted by user id, columns by statement id, NaN for no vote."""
    records = [
        VoteRecord("zoe", 20, 1),
        VoteRecord("adam", 10, -1),
        VoteRecord("adam", 20, 0),
    ]
    matrix = VoteMatrix.from_records(1, records)

    assert matrix.user_ids == ["adam", "zoe"]
    assert matrix.statement_ids == [10, 20]
    assert matrix.values[0, 0] == -1
    assert matrix.values[0, 1] == 0
    assert np.isnan(matrix.values[1, 0])
    assert matrix.values[1, 1] == 1


def test_from_records_ignores_votes_outside_columns():
    records = [VoteRecord("u1", 1, 1), VoteRecord("u2", 99, 1)]
    matrix = VoteMatrix.from_records(1, records, statement_ids=[1, 2])

    assert matrix.user_ids == ["u1"]
    assert matrix.shape == (1, 2)
    assert len(matrix.records) == 1


def test_imputation_policies():
    """Zero imputation treats missing as pass, mean uses the statement's cast votes."""
    records = [
        VoteRecord("u1", 1, 1),
        VoteRecord("u2", 1, 0),
        VoteRecord("u2", 2, -1),
    ]
    matrix = VoteMatrix.from_records(1, records, statement_ids=[1, 2, 3])

    zero = matrix.imputed('zero')
    assert not np.isnan(zero).any()
    assert zero[0, 1] == 0.0

    mean = matrix.imputed('mean')
    # u1 never voted on statement 2; the only vote there is -1
    assert mean[0, 1] == -1.0
    # Nobody voted on statement 3
    assert mean[0, 2] == 0.0
    assert mean[1, 2] == 0.0
    # Cast votes are untouched
    assert mean[1, 0] == 0.0

    # Raw values keep NaN
    assert np.isnan(matrix.values[0, 1])


def test_unknown_imputation_policy():
    matrix = VoteMatrix.from_records(1, [VoteRecord("u1", 1, 1)])
    with pytest.raises(ValueError):
        matrix.imputed('median')


def test_vote_counts_and_summary():
    records = [
        VoteRecord("u1", 1, 1),
        VoteRecord("u1", 2, -1),
        VoteRecord("u1", 3, 0),
        VoteRecord("u2", 1, 1),
    ]
    matrix = VoteMatrix.from_records(1, records)

    assert list(matrix.vote_counts()) == [3, 1]
    assert list(matrix.statement_vote_counts()) == [2, 1, 1]

    summary = matrix.user_vote_summary()
    assert summary["u1"] == {'total': 3, 'agree': 1, 'disagree': 1, 'pass': 1}
    assert summary["u2"] == {'total': 1, 'agree': 1, 'disagree': 0, 'pass': 0}


@pytest.mark.django_db
class TestBuildVoteMatrix:
    """Building the matrix from the database."""

    def test_excludes_unapproved_and_deleted_statements(self, make_poll, cast_votes):
        poll = make_poll(n_statements=3)
        pending = Statement.objects.create(poll=poll, text="Pending", approved=False)
        deleted = Statement.objects.create(poll=poll, text="Gone", approved=True, is_deleted=True)
        cast_votes(poll, {"u1": [1, -1, 0], "u2": [1, None, None]})
        Vote.objects.create(user_id="u1", statement=pending, value=1)
        # u3 only voted on excluded statements
        Vote.objects.create(user_id="u3", statement=pending, value=1)
        Vote.objects.create(user_id="u3", statement=deleted, value=-1)

        matrix = build_vote_matrix(poll.id)

        approved_ids = list(
            poll.statements.filter(approved=True, is_deleted=False)
            .order_by('id').values_list('id', flat=True)
        )
        assert matrix.statement_ids == approved_ids
        assert matrix.user_ids == ["u1", "u2"]
        assert list(matrix.values[0]) == [1, -1, 0]
        assert np.isnan(matrix.values[1, 1])
        assert len(matrix.records) == 4

    def test_other_polls_do_not_leak(self, make_poll, cast_votes):
        poll = make_poll(n_statements=2)
        other = make_poll(n_statements=2, title="Other")
        cast_votes(poll, {"u1": [1, 1]})
        cast_votes(other, {"u2": [-1, -1]})

        matrix = build_vote_matrix(poll.id)
        assert matrix.user_ids == ["u1"]

    def test_empty_poll(self, make_poll):
        poll = make_poll(n_statements=4)
        matrix = build_vote_matrix(poll.id)

        assert matrix.is_empty
        assert matrix.user_ids == []
        assert matrix.shape == (0, 4)

    def test_poll_without_statements(self, make_poll):
        poll = make_poll(n_statements=0)
        assert build_vote_matrix(poll.id).is_empty

    def test_deterministic(self, two_camp_poll):
        first = build_vote_matrix(two_camp_poll.id)
        second = build_vote_matrix(two_camp_poll.id)

        assert first.user_ids == second.user_ids
        assert first.statement_ids == second.statement_ids
        assert np.array_equal(first.values, second.values)

    def test_revote_overwrites(self, make_poll):
        poll = make_poll(n_statements=1)
        statement = poll.statements.get()
        vote = Vote.objects.create(user_id="u1", statement=statement, value=1)

        with pytest.raises(IntegrityError):
            with transaction.atomic():
                Vote.objects.create(user_id="u1", statement=statement, value=-1)

        vote.value = -1
        vote.save()
        assert build_vote_matrix(poll.id).values[0, 0] == -1

    def test_vote_value_validation(self, make_poll):
        poll = make_poll(n_statements=1)
        vote = Vote(user_id="u1", statement=poll.statements.get(), value=2)
        with pytest.raises(ValidationError):
            vote.clean()
