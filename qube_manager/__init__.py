"""
qube-manager – leaderless agreement on fleet upgrades and reboots.
"""

from importlib import metadata as _metadata

__all__ = [
    "messages",
    "votes",
    "history",
    "selection",
    "transport",
    "manager",
]

try:
    __version__: str = _metadata.version("qube-manager")
except _metadata.PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
