import pytest
from django.core.cache import caches
from opinions.models import Poll, Statement, Vote


@pytest.fixture(autouse=True)
def clear_caches():
    """Landscape cache and task locks are process-wide; start each test clean."""
    caches['clustering'].clear()
    caches['default'].clear()
    yield
    caches['clustering'].clear()
    caches['default'].clear()


@pytest.fixture
def make_poll(db):
    """Factory: poll with ``n_statements`` approved statements."""
    def _make_poll(n_statements=6, title="Test poll"):
        poll = Poll.objects.create(title=title)
        for i in range(n_statements):
            Statement.objects.create(poll=poll, text=f"Statement {i + 1}", approved=True)
        return poll
    return _make_poll


@pytest.fixture
def cast_votes(db):
    """
    Factory: create votes from {user_id: [value per statement, None = no vote]},
    statements taken in id order.
    """
    def _cast_votes(poll, ballots):
        statements = list(poll.statements.order_by('id'))
        votes = []
        for user_id, values in ballots.items():
            for statement, value in zip(statements, values):
                if value is not None:
                    votes.append(Vote(user_id=user_id, statement=statement, value=value))
        Vote.objects.bulk_create(votes)
    return _cast_votes


@pytest.fixture
def identical_poll(make_poll, cast_votes):
    """20 users voting agree on all 6 statements."""
    poll = make_poll()
    cast_votes(poll, {f"user{i:02d}": [1] * 6 for i in range(20)})
    return poll


@pytest.fixture
def two_camp_poll(make_poll, cast_votes):
    """
    20 users in two camps of 10.
    Camp A agrees with statements 1-3 and disagrees with 4-6, camp B the reverse.
    """
    poll = make_poll()
    ballots = {}
    for i in range(10):
        ballots[f"a{i:02d}"] = [1, 1, 1, -1, -1, -1]
        ballots[f"b{i:02d}"] = [-1, -1, -1, 1, 1, 1]
    cast_votes(poll, ballots)
    return poll


@pytest.fixture
def small_poll(make_poll, cast_votes):
    """15 users, 6 statements: below the user threshold."""
    poll = make_poll()
    cast_votes(poll, {f"user{i:02d}": [1, 0, -1, 1, 0, -1] for i in range(15)})
    return poll
