from __future__ import annotations

"""Pick at most one action to execute this run.

An action is eligible when it is not in the ledger and has at least
``quorum`` distinct voters.  The eligible action with the highest semantic
version wins.  Actions with equal precedence (two genesis proposals at one
version, ``v1.0.0`` next to ``1.0.0``, differing build metadata) are ordered
by their key, smallest first, so the result never depends on arrival order.
"""

import logging
from typing import Iterable, List, Optional

from .history import HistoryLedger
from .votes import CandidateAction, VoteSet

logger = logging.getLogger(__name__)


def eligible(
    candidates: Iterable[CandidateAction],
    votes: VoteSet,
    ledger: HistoryLedger,
    quorum: int,
) -> List[CandidateAction]:
    out: List[CandidateAction] = []
    for c in sorted(candidates, key=lambda c: c.key):
        if ledger.has(c.key):
            logger.debug("Skipping action %s - already in history", c.key)
            continue
        n = votes.count(c.key)
        if n < quorum:
            logger.info("Skipping action %s - votes %d/%d (below quorum)", c.key, n, quorum)
            continue
        out.append(c)
    return out


def select(
    candidates: Iterable[CandidateAction],
    votes: VoteSet,
    ledger: HistoryLedger,
    quorum: int,
) -> Optional[CandidateAction]:
    pool = eligible(candidates, votes, ledger, quorum)
    if not pool:
        return None
    # max() keeps the first maximal element; pool is sorted by key
    return max(pool, key=lambda c: c.version)
