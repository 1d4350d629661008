"""
Tests for Contributor Selection
"""

import random

import pytest

from bandwidth_rail.core.selector import (
    Candidate,
    ContributorSelector,
    LeastLoadedStrategy,
    UniformRandomStrategy,
    get_strategy,
)
from bandwidth_rail.errors import ResourceUnavailable


class TestEligibility:
    """Test which sessions count as candidates."""

    def test_no_sessions_unavailable(self, sessions):
        """Nobody sharing: ResourceUnavailable."""
        selector = ContributorSelector(sessions)

        with pytest.raises(ResourceUnavailable):
            selector.select()

    def test_insufficient_headroom_unavailable(self, sessions, make_session):
        """A session with under 100 MB left is not eligible."""
        make_session("contrib-1", limit_gb=1.0, relayed_mb=1000.0)
        selector = ContributorSelector(sessions)

        with pytest.raises(ResourceUnavailable):
            selector.select()

    def test_exact_headroom_is_eligible(self, sessions, make_session):
        make_session("contrib-1", limit_gb=1.0, relayed_mb=924.0)
        selector = ContributorSelector(sessions)

        assert selector.select() == "contrib-1"

    def test_inactive_sessions_ignored(self, sessions, make_session):
        make_session("contrib-1")
        sessions.deactivate_all("contrib-1")
        selector = ContributorSelector(sessions)

        with pytest.raises(ResourceUnavailable):
            selector.select()

    def test_explicit_contributor_passes_through(self, sessions):
        """A named contributor is not checked here; settlement does that."""
        selector = ContributorSelector(sessions)

        assert selector.select("contrib-named") == "contrib-named"

    def test_candidate_set_is_capped(self, sessions, make_session):
        for i in range(10):
            make_session(f"contrib-{i}")
        selector = ContributorSelector(sessions, candidate_limit=3)

        assert len(selector.candidates()) == 3

    def test_custom_predicate(self, sessions, make_session):
        make_session("contrib-a")
        make_session("contrib-b")
        selector = ContributorSelector(sessions)

        chosen = selector.select(predicate=lambda c: c.contributor_id == "contrib-b")

        assert chosen == "contrib-b"


class TestStrategies:
    """Test the pluggable selection policy."""

    def _candidates(self):
        return [
            Candidate("a", "s1", 500.0),
            Candidate("b", "s2", 9000.0),
            Candidate("c", "s3", 200.0),
        ]

    def test_uniform_random_picks_a_candidate(self):
        strategy = UniformRandomStrategy(random.Random(7))
        candidates = self._candidates()

        picks = {strategy.select(candidates).contributor_id for _ in range(50)}

        assert picks <= {"a", "b", "c"}
        assert len(picks) > 1

    def test_least_loaded_picks_most_headroom(self):
        assert LeastLoadedStrategy().select(self._candidates()).contributor_id == "b"

    def test_get_strategy(self):
        assert isinstance(get_strategy("random"), UniformRandomStrategy)
        assert isinstance(get_strategy("least_loaded"), LeastLoadedStrategy)

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            get_strategy("round_robin")

    def test_selector_uses_strategy(self, sessions, make_session):
        make_session("contrib-small", limit_gb=1.0)
        make_session("contrib-big", limit_gb=100.0)
        selector = ContributorSelector(sessions, strategy=LeastLoadedStrategy())

        assert selector.select() == "contrib-big"
