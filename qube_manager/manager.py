"""One qube-manager run: collect votes, pick an action, announce and record it.

Ordering within a run:

* configuration, keypair and history are loaded by the caller before any
  relay is contacted (see :mod:`qube_manager.cli`);
* relays are read under one deadline;
* the winner, if any, is announced best effort and then committed to the
  ledger.  A failed ledger write is reported as a durability gap: the next
  run may select the same action again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .config import Settings
from .history import HistoryLedger
from .keys import Keypair
from .messages import ActionKind, CompletionMessage, build_completion
from .selection import select
from .transport import Relay, SignedEvent, broadcast, collect, open_relays
from .votes import CandidateAction, RunContext

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    selected: Optional[CandidateAction] = None
    completion: Optional[CompletionMessage] = None
    votes: int = 0
    event: Optional[SignedEvent] = None
    published: Dict[str, Optional[BaseException]] = field(default_factory=dict)
    committed: bool = False
    durability_gap: bool = False
    rejections: Dict[str, int] = field(default_factory=dict)


class QubeManager:
    def __init__(
        self,
        settings: Settings,
        keypair: Keypair,
        ledger: HistoryLedger,
        *,
        dry_run: bool = False,
        relay_factory: Callable[[Iterable[str]], List[Relay]] = open_relays,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.keypair = keypair
        self.ledger = ledger
        self.dry_run = dry_run
        self._relay_factory = relay_factory
        self._clock = clock

    async def run(self) -> RunOutcome:
        settings = self.settings
        relays = self._relay_factory(settings.relays)
        ctx = RunContext(authorized=frozenset(settings.follows))

        delivered = await collect(
            relays,
            settings.follows,
            lambda m: ctx.ingest(m.sender, m.payload),
            timeout=settings.ingest_timeout,
        )
        logger.info(
            "Collected %d message(s) from %d relay(s): %d candidate action(s), rejected %s",
            delivered,
            len(relays),
            len(ctx.candidates),
            dict(ctx.rejections) or "none",
        )

        outcome = RunOutcome(rejections=dict(ctx.rejections))
        winner = select(ctx.candidates.values(), ctx.votes, self.ledger, settings.quorum)
        if winner is None:
            logger.info("No new eligible actions to perform.")
            return outcome

        outcome.selected = winner
        outcome.votes = ctx.votes.count(winner.key)
        logger.info(
            "Selected action %s with version %s and %d votes",
            winner.key,
            winner.action.version_text,
            outcome.votes,
        )
        if winner.kind is ActionKind.UPGRADE:
            logger.info("UPGRADE ACTION version=%s", winner.action.version_text)
        else:
            logger.info(
                "REBOOT ACTION version=%s genesis=%s", winner.action.version_text, winner.genesis
            )

        outcome.completion = build_completion(winner)
        if self.dry_run:
            logger.info(
                "Dry run - not publishing %s and not saving action to history.",
                outcome.completion.to_json(),
            )
            return outcome

        outcome.event = SignedEvent.create(self.keypair, outcome.completion.to_json())
        logger.info(
            "Publishing done event for action %s to %d relay(s)", winner.key, len(relays)
        )
        outcome.published = await broadcast(
            relays, outcome.event, timeout=settings.publish_timeout
        )
        failed = [url for url, err in outcome.published.items() if err is not None]
        if failed:
            logger.warning("Done event not delivered to %d relay(s): %s", len(failed), failed)

        self.ledger.commit(winner.key, self._clock() if self._clock else None)
        outcome.committed = True
        try:
            self.ledger.persist()
        except OSError as exc:
            outcome.durability_gap = True
            logger.warning(
                "Error saving history, action %s may be selected again next run: %s",
                winner.key,
                exc,
            )
        else:
            logger.info("Action %s saved to history", winner.key)
        return outcome
