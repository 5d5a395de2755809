"""Vote tallying for a single run.

Safety: a voter counts once per action key however many times its vote is
seen, on one relay or several.  Tallies are sets, so ingestion order across
relays does not change the outcome.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, Optional, Set, Union

import semver

from .messages import ActionDescriptor, ActionKind, MessageRejected, RejectReason, parse_action

if TYPE_CHECKING:
    from .transport import RawMessage

logger = logging.getLogger(__name__)

UNAUTHORIZED_SENDER = "unauthorized_sender"


@dataclass(frozen=True)
class CandidateAction:
    key: str
    action: ActionDescriptor

    @property
    def kind(self) -> ActionKind:
        return self.action.kind

    @property
    def version(self) -> semver.Version:
        return self.action.version

    @property
    def genesis(self) -> Optional[str]:
        return self.action.genesis


class VoteSet:
    """Mapping of action key -> distinct voter identities."""

    def __init__(self) -> None:
        self._votes: Dict[str, Set[str]] = {}

    def record(self, key: str, voter: str) -> "VoteSet":
        self._votes.setdefault(key, set()).add(voter)
        return self

    def count(self, key: str) -> int:
        return len(self._votes.get(key, ()))

    def voters(self, key: str) -> frozenset[str]:
        return frozenset(self._votes.get(key, ()))

    def __contains__(self, key: object) -> bool:
        return key in self._votes

    def __iter__(self) -> Iterator[str]:
        return iter(self._votes)

    def __len__(self) -> int:
        return len(self._votes)


@dataclass
class RunContext:
    """State owned by one run: candidates, votes and rejection counters.

    ``authorized`` is the voter allow-list.  Relays are asked to filter by
    author, but a relay is not trusted to have done so.
    """

    authorized: frozenset[str]
    candidates: Dict[str, CandidateAction] = field(default_factory=dict)
    votes: VoteSet = field(default_factory=VoteSet)
    rejections: Counter = field(default_factory=Counter)
    seen: int = 0

    def ingest(self, sender: str, payload: Union[str, bytes]) -> Optional[CandidateAction]:
        """Validate one message and record its vote.  Never raises."""
        self.seen += 1
        if sender not in self.authorized:
            self.rejections[UNAUTHORIZED_SENDER] += 1
            logger.debug("Ignoring message from unauthorized sender %s", sender)
            return None
        try:
            action = parse_action(payload)
        except MessageRejected as exc:
            self.rejections[exc.reason.value] += 1
            if exc.reason in (RejectReason.MALFORMED_PAYLOAD, RejectReason.UNKNOWN_TYPE):
                logger.debug("Skipping message from %s: %s", sender, exc)
            else:
                logger.warning("Rejected message from %s: %s", sender, exc)
            return None

        key = action.key
        candidate = self.candidates.get(key)
        if candidate is None:
            candidate = self.candidates[key] = CandidateAction(key=key, action=action)
        self.votes.record(key, sender)
        if action.kind is ActionKind.REBOOT:
            logger.info(
                "Parsed reboot message: version=%s genesis=%s sender=%s",
                action.version_text,
                action.genesis,
                sender,
            )
        else:
            logger.info(
                "Parsed upgrade message: version=%s sender=%s", action.version_text, sender
            )
        return candidate

    def ingest_all(self, messages: Iterable[RawMessage]) -> None:
        for msg in messages:
            self.ingest(msg.sender, msg.payload)
