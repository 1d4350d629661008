"""
Contributor Selection

Picks the contributor whose connection will carry a partner request when
the partner did not name one. Eligibility is an active relay session with
at least `min_headroom_mb` of quota left; the choice among eligible
candidates is delegated to a pluggable strategy.
"""

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence
import structlog

from ..errors import ResourceUnavailable
from ..persistence.models import SessionRecord
from ..persistence.repository import SessionRepository

logger = structlog.get_logger()

DEFAULT_MIN_HEADROOM_MB = 100.0
DEFAULT_CANDIDATE_LIMIT = 100


@dataclass(frozen=True)
class Candidate:
    """A contributor able to carry traffic right now."""
    contributor_id: str
    session_id: str
    headroom_mb: float

    @classmethod
    def from_session(cls, session: SessionRecord) -> "Candidate":
        return cls(
            contributor_id=session.contributor_id,
            session_id=session.session_id,
            headroom_mb=session.headroom_mb,
        )


EligibilityPredicate = Callable[[Candidate], bool]


class SelectionStrategy(ABC):
    """Chooses one candidate out of a non-empty list."""

    name: str = "abstract"

    @abstractmethod
    def select(self, candidates: Sequence[Candidate]) -> Candidate:
        ...


class UniformRandomStrategy(SelectionStrategy):
    name = "random"

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def select(self, candidates: Sequence[Candidate]) -> Candidate:
        return self._rng.choice(list(candidates))


class LeastLoadedStrategy(SelectionStrategy):
    """Prefers the candidate with the most quota left."""
    name = "least_loaded"

    def select(self, candidates: Sequence[Candidate]) -> Candidate:
        return max(candidates, key=lambda c: (c.headroom_mb, c.contributor_id))


STRATEGIES: Dict[str, Callable[[], SelectionStrategy]] = {
    UniformRandomStrategy.name: UniformRandomStrategy,
    LeastLoadedStrategy.name: LeastLoadedStrategy,
}


def get_strategy(name: str) -> SelectionStrategy:
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise ValueError(f"Unknown selection strategy: {name}. Use one of {sorted(STRATEGIES)}")


def headroom_at_least(min_headroom_mb: float) -> EligibilityPredicate:
    return lambda candidate: candidate.headroom_mb >= min_headroom_mb


class ContributorSelector:
    """
    Selects a contributor for a partner request.

    An explicitly requested contributor is passed through unchanged;
    settlement rejects it later if it has no active session.
    """

    def __init__(
        self,
        sessions: SessionRepository,
        strategy: Optional[SelectionStrategy] = None,
        min_headroom_mb: float = DEFAULT_MIN_HEADROOM_MB,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
    ):
        self.sessions = sessions
        self.strategy = strategy or UniformRandomStrategy()
        self.min_headroom_mb = min_headroom_mb
        self.candidate_limit = candidate_limit

    def candidates(self, predicate: Optional[EligibilityPredicate] = None) -> List[Candidate]:
        """Bounded sample of eligible candidates."""
        predicate = predicate or headroom_at_least(self.min_headroom_mb)
        sessions = self.sessions.find_with_headroom(self.min_headroom_mb, self.candidate_limit)
        return [c for c in (Candidate.from_session(s) for s in sessions) if predicate(c)]

    def select(
        self,
        contributor_id: Optional[str] = None,
        predicate: Optional[EligibilityPredicate] = None,
    ) -> str:
        if contributor_id:
            return contributor_id

        candidates = self.candidates(predicate)
        if not candidates:
            logger.warning("no_contributors_available", min_headroom_mb=self.min_headroom_mb)
            raise ResourceUnavailable("No contributors available")

        chosen = self.strategy.select(candidates)
        logger.debug(
            "contributor_selected",
            contributor_id=chosen.contributor_id,
            strategy=self.strategy.name,
            candidates=len(candidates),
        )
        return chosen.contributor_id
