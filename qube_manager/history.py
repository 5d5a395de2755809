from __future__ import annotations

"""qube_manager.history - append-only record of executed actions.

The ledger is the only thing preventing an action from running twice, so a
history file that exists but cannot be read is fatal rather than treated as
empty.  File layout (``history.yaml``)::

    entries:
      upgrade:v1.2.0: '2025-01-31T12:00:00Z'
"""

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ValidationError, field_validator

from .errors import AlreadyCommitted, LedgerCorruptError

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "history.yaml"


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class _HistoryFile(BaseModel):
    entries: Dict[str, str] = {}

    @field_validator("entries", mode="before")
    @classmethod
    def _timestamps_as_text(cls, v: Any) -> Any:
        # Hand-edited files may carry unquoted timestamps, which YAML loads as datetimes
        if v is None:
            return {}
        if isinstance(v, dict):
            return {
                k: format_timestamp(t) if isinstance(t, datetime) else t
                for k, t in v.items()
            }
        return v


class HistoryLedger:
    def __init__(self, path: Path, entries: Optional[Dict[str, str]] = None) -> None:
        self.path = Path(path)
        self._entries: Dict[str, str] = dict(entries or {})

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def load(cls, path: Path) -> "HistoryLedger":
        """Load the ledger; a missing file is an empty history."""
        path = Path(path)
        if not path.exists():
            logger.warning("History file %s does not exist, starting empty", path)
            return cls(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            raise LedgerCorruptError(f"Failed to read history file {path}: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise LedgerCorruptError(f"History file {path} is not a mapping")
        try:
            parsed = _HistoryFile.model_validate(data)
        except ValidationError as exc:
            raise LedgerCorruptError(f"Failed to parse history file {path}: {exc}") from exc
        logger.info("History loaded from %s: %d entries", path, len(parsed.entries))
        return cls(path, parsed.entries)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def has(self, key: str) -> bool:
        return key in self._entries

    __contains__ = has

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> Dict[str, str]:
        return dict(self._entries)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def commit(self, key: str, timestamp: Optional[datetime] = None) -> str:
        """Record *key* as executed and return the stored timestamp."""
        if key in self._entries:
            raise AlreadyCommitted(key)
        stamp = format_timestamp(timestamp or datetime.now(timezone.utc))
        self._entries[key] = stamp
        logger.info("Added history entry for key: %s", key)
        return stamp

    def persist(self) -> None:
        """Atomically rewrite the history file.  Raises ``OSError`` on failure."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        text = yaml.safe_dump({"entries": self._entries}, sort_keys=True)
        fd, tmp = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        logger.info("History saved to %s", self.path)
