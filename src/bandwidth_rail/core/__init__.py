"""
Core components: authentication, contributor selection, relay sessions
and the per-key locks that serialize ledger mutations.
"""

from .auth import PartnerAuthenticator, ContributorTokens
from .locks import KeyedLocks, LedgerLocks
from .selector import (
    Candidate,
    ContributorSelector,
    LeastLoadedStrategy,
    SelectionStrategy,
    UniformRandomStrategy,
    get_strategy,
)
from .sessions import SessionManager

__all__ = [
    "PartnerAuthenticator",
    "ContributorTokens",
    "KeyedLocks",
    "LedgerLocks",
    "Candidate",
    "ContributorSelector",
    "LeastLoadedStrategy",
    "SelectionStrategy",
    "UniformRandomStrategy",
    "get_strategy",
    "SessionManager",
]
