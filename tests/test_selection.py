from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Dict, List

from qube_manager.history import HistoryLedger
from qube_manager.messages import parse_action
from qube_manager.selection import select
from qube_manager.votes import CandidateAction, VoteSet


def _candidate(kind: str, version: str, genesis: str | None = None) -> CandidateAction:
    msg = {"type": kind, "version": version}
    if genesis is not None:
        msg["genesis"] = genesis
    a = parse_action(json.dumps(msg))
    return CandidateAction(key=a.key, action=a)


def _votes(tally: Dict[str, int]) -> VoteSet:
    votes = VoteSet()
    for key, n in tally.items():
        for i in range(n):
            votes.record(key, f"voter-{i}")
    return votes


def _ledger(tmp_path: Path, *keys: str) -> HistoryLedger:
    ledger = HistoryLedger(tmp_path / "history.yaml")
    for k in keys:
        ledger.commit(k)
    return ledger


def test_higher_version_below_quorum_loses(tmp_path: Path):
    newer = _candidate("upgrade", "v1.2.0")
    older = _candidate("upgrade", "v1.1.0")
    votes = _votes({newer.key: 1, older.key: 2})
    assert select([newer, older], votes, _ledger(tmp_path), quorum=2) == older


def test_committed_action_is_never_selected_again(tmp_path: Path):
    reboot = _candidate("reboot", "2.0.0", "https://genesis.example/G1")
    ledger = _ledger(tmp_path, "reboot:2.0.0:https://genesis.example/G1")
    assert select([reboot], _votes({reboot.key: 1}), ledger, quorum=1) is None


def test_highest_eligible_version_wins(tmp_path: Path):
    cands = [
        _candidate("upgrade", "1.9.0"),
        _candidate("upgrade", "1.10.0"),
        _candidate("upgrade", "2.0.0-rc.1"),
        _candidate("reboot", "1.10.1", "https://g/x"),
    ]
    votes = _votes({c.key: 3 for c in cands})
    winner = select(cands, votes, _ledger(tmp_path), quorum=3)
    assert winner.key == "upgrade:2.0.0-rc.1"

    # once the release candidate is done, the reboot is the newest left
    winner = select(cands, votes, _ledger(tmp_path, "upgrade:2.0.0-rc.1"), quorum=3)
    assert winner.key == "reboot:1.10.1:https://g/x"


def test_prerelease_sorts_before_release(tmp_path: Path):
    rc = _candidate("upgrade", "1.0.0-rc.2")
    final = _candidate("upgrade", "1.0.0")
    votes = _votes({rc.key: 1, final.key: 1})
    assert select([final, rc], votes, _ledger(tmp_path), quorum=1) == final


def test_equal_versions_break_ties_by_key(tmp_path: Path):
    cands: List[CandidateAction] = [
        _candidate("reboot", "2.0.0", "https://g/b"),
        _candidate("reboot", "2.0.0", "https://g/a"),
        _candidate("upgrade", "v2.0.0"),
        _candidate("upgrade", "2.0.0+build.1"),
    ]
    votes = _votes({c.key: 1 for c in cands})
    expected = min(c.key for c in cands)
    for seed in range(10):
        random.Random(seed).shuffle(cands)
        assert select(cands, votes, _ledger(tmp_path), quorum=1).key == expected


def test_nothing_eligible_returns_none(tmp_path: Path):
    c = _candidate("upgrade", "1.0.0")
    assert select([], VoteSet(), _ledger(tmp_path), quorum=0) is None
    assert select([c], VoteSet(), _ledger(tmp_path), quorum=1) is None
    # quorum zero admits anything observed
    assert select([c], VoteSet(), _ledger(tmp_path), quorum=0) == c
