"""Exception taxonomy for qube-manager.

Initialization errors are fatal: the run stops before any relay is touched.
Everything raised per message or per relay is handled where it occurs.
"""

from __future__ import annotations


class QubeError(Exception):
    """Base class for all qube-manager errors."""


class InitializationError(QubeError):
    """Configuration, key material or history could not be loaded."""


class ConfigError(InitializationError):
    pass


class KeyMaterialError(InitializationError):
    pass


class LedgerCorruptError(InitializationError):
    pass


class AlreadyCommitted(QubeError):
    """A ledger key was committed twice."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Action {key!r} is already committed")
        self.key = key
