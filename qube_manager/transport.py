"""Relay transport: signed event envelope, relay interface and fan-in/fan-out.

Events use the NIP-01 layout.  ``id`` is the SHA-256 of the canonical JSON
array ``[0, pubkey, created_at, kind, tags, content]`` and ``sig`` is an
Ed25519 signature over the id bytes.  Votes are kind 1 text notes.

Relays are looked up by URL scheme.  ``file://`` relays are JSONL files with
one event per line; integrators register further schemes with
:func:`register_relay_scheme`.  Every relay checks the event id and
signature before a message is handed on, so a :class:`RawMessage` sender is
always authenticated.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from hashlib import sha256
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)
from urllib.parse import urlsplit
from urllib.request import url2pathname

from .errors import QubeError
from .keys import Keypair, verify

__all__ = [
    "TEXT_NOTE",
    "RawMessage",
    "SignedEvent",
    "Relay",
    "FileRelay",
    "UnsupportedRelay",
    "register_relay_scheme",
    "open_relay",
    "open_relays",
    "collect",
    "broadcast",
]

logger = logging.getLogger(__name__)

TEXT_NOTE = 1


class UnsupportedRelay(QubeError):
    pass


@dataclass(frozen=True)
class RawMessage:
    sender: str  # authenticated hex public key
    payload: str
    relay: str
    event_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Event envelope
# ---------------------------------------------------------------------------


def _serialize(pubkey: str, created_at: int, kind: int, tags: Sequence[Sequence[str]], content: str) -> bytes:
    arr = [0, pubkey, created_at, kind, [list(t) for t in tags], content]
    return json.dumps(arr, separators=(",", ":"), ensure_ascii=False).encode()


@dataclass(frozen=True)
class SignedEvent:
    id: str
    pubkey: str
    created_at: int
    kind: int
    content: str
    sig: str
    tags: Tuple[Tuple[str, ...], ...] = field(default=())

    @staticmethod
    def compute_id(pubkey: str, created_at: int, kind: int, tags, content: str) -> str:
        return sha256(_serialize(pubkey, created_at, kind, tags, content)).hexdigest()

    @classmethod
    def create(
        cls,
        keypair: Keypair,
        content: str,
        *,
        kind: int = TEXT_NOTE,
        created_at: int | None = None,
        tags: Iterable[Iterable[str]] = (),
    ) -> "SignedEvent":
        ts = int(time.time()) if created_at is None else int(created_at)
        tag_t = tuple(tuple(t) for t in tags)
        eid = cls.compute_id(keypair.public_key, ts, kind, tag_t, content)
        return cls(
            id=eid,
            pubkey=keypair.public_key,
            created_at=ts,
            kind=kind,
            content=content,
            sig=keypair.sign(bytes.fromhex(eid)),
            tags=tag_t,
        )

    def verify(self) -> bool:
        """True when the id matches the contents and the signature is valid."""
        try:
            expected = self.compute_id(
                self.pubkey, self.created_at, self.kind, self.tags, self.content
            )
        except UnicodeEncodeError:
            # lone surrogates cannot be serialized, so no valid id exists
            return False
        if expected != self.id:
            return False
        return verify(self.pubkey, bytes.fromhex(self.id), self.sig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SignedEvent":
        required = {"id", "pubkey", "created_at", "kind", "content", "sig"}
        if not isinstance(data, Mapping) or not required.issubset(data):
            raise ValueError("Missing required event fields")
        tags = data.get("tags") or []
        if not isinstance(tags, list) or not all(
            isinstance(t, list) and all(isinstance(s, str) for s in t) for t in tags
        ):
            raise ValueError("Malformed tags")
        for name in ("id", "pubkey", "content", "sig"):
            if not isinstance(data[name], str):
                raise ValueError(f"Field {name!r} must be a string")
        for name in ("created_at", "kind"):
            if not isinstance(data[name], int) or isinstance(data[name], bool):
                raise ValueError(f"Field {name!r} must be an integer")
        return cls(
            id=data["id"],
            pubkey=data["pubkey"],
            created_at=data["created_at"],
            kind=data["kind"],
            content=data["content"],
            sig=data["sig"],
            tags=tuple(tuple(t) for t in tags),
        )

    @classmethod
    def parse(cls, raw: str) -> "SignedEvent":
        return cls.from_dict(json.loads(raw))


# ---------------------------------------------------------------------------
# Relays
# ---------------------------------------------------------------------------


class Relay:
    """A message relay.  Subclasses implement ``fetch`` and ``publish``."""

    def __init__(self, url: str) -> None:
        self.url = url

    def fetch(self, authors: Iterable[str]) -> AsyncIterator[RawMessage]:
        """Yield authenticated kind-1 messages written by *authors*."""
        raise NotImplementedError

    async def publish(self, event: SignedEvent) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.url!r})"


class FileRelay(Relay):
    """A relay backed by a local JSONL file, one signed event per line."""

    def __init__(self, url: str) -> None:
        super().__init__(url)
        self.path = Path(url2pathname(urlsplit(url).path))

    async def fetch(self, authors: Iterable[str]) -> AsyncIterator[RawMessage]:
        allowed = set(authors)
        try:
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Relay %s has no events yet", self.url)
            return
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                ev = SignedEvent.parse(line)
            except (ValueError, RecursionError) as exc:
                logger.debug("Relay %s line %d: malformed event: %s", self.url, lineno, exc)
                continue
            if ev.kind != TEXT_NOTE or ev.pubkey not in allowed:
                continue
            if not ev.verify():
                logger.debug("Relay %s line %d: bad signature on %s", self.url, lineno, ev.id)
                continue
            yield RawMessage(sender=ev.pubkey, payload=ev.content, relay=self.url, event_id=ev.id)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def publish(self, event: SignedEvent) -> None:
        await asyncio.to_thread(self._append, event.to_json())


_SCHEMES: Dict[str, Callable[[str], Relay]] = {"file": FileRelay}


def register_relay_scheme(scheme: str, factory: Callable[[str], Relay]) -> None:
    _SCHEMES[scheme.lower()] = factory


def open_relay(url: str) -> Relay:
    scheme = urlsplit(url).scheme.lower()
    factory = _SCHEMES.get(scheme)
    if factory is None:
        raise UnsupportedRelay(f"No transport registered for scheme {scheme!r} ({url})")
    return factory(url)


def open_relays(urls: Iterable[str]) -> List[Relay]:
    """Open every relay it can; unsupported ones are logged and skipped."""
    relays = []
    for url in dict.fromkeys(urls):
        try:
            relays.append(open_relay(url))
        except UnsupportedRelay as exc:
            logger.warning("Skipping relay: %s", exc)
    return relays


# ---------------------------------------------------------------------------
# Fan-in / fan-out
# ---------------------------------------------------------------------------

_DONE = object()


async def collect(
    relays: Sequence[Relay],
    authors: Iterable[str],
    sink: Callable[[RawMessage], Any],
    *,
    timeout: float,
) -> int:
    """Read all relays concurrently and feed every message to *sink*.

    One task per relay pushes into a queue; this coroutine is the only
    consumer, so *sink* is never called concurrently.  When *timeout* expires
    the remaining relays are cancelled and whatever already arrived is
    delivered.  Returns the number of messages delivered.
    """
    authors = list(authors)
    queue: asyncio.Queue = asyncio.Queue()

    async def pump(relay: Relay) -> None:
        n = 0
        try:
            async for msg in relay.fetch(authors):
                queue.put_nowait(msg)
                n += 1
            logger.info("Relay %s delivered %d message(s)", relay.url, n)
        except Exception as exc:
            logger.warning("Relay %s failed after %d message(s): %s", relay.url, n, exc)
        finally:
            queue.put_nowait(_DONE)

    tasks = [asyncio.create_task(pump(r)) for r in relays]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    pending = len(tasks)
    delivered = 0
    try:
        while pending:
            left = deadline - loop.time()
            try:
                if left <= 0:
                    raise asyncio.TimeoutError
                item = await asyncio.wait_for(queue.get(), left)
            except asyncio.TimeoutError:
                logger.warning(
                    "Ingest deadline of %.1fs reached with %d relay(s) still open",
                    timeout,
                    pending,
                )
                break
            if item is _DONE:
                pending -= 1
                continue
            sink(item)
            delivered += 1
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    while not queue.empty():
        item = queue.get_nowait()
        if item is not _DONE:
            sink(item)
            delivered += 1
    return delivered


async def broadcast(
    relays: Sequence[Relay], event: SignedEvent, *, timeout: float
) -> Dict[str, Optional[BaseException]]:
    """Publish *event* to every relay in parallel, best effort.

    Returns relay URL -> ``None`` on success or the exception that stopped it.
    """

    async def one(relay: Relay) -> None:
        logger.info("Publishing event %s to relay %s", event.id, relay.url)
        await asyncio.wait_for(relay.publish(event), timeout)

    results = await asyncio.gather(*(one(r) for r in relays), return_exceptions=True)
    outcome: Dict[str, Optional[BaseException]] = {}
    for relay, res in zip(relays, results):
        if isinstance(res, BaseException):
            if isinstance(res, asyncio.TimeoutError):
                logger.warning("Relay publish to %s timed out after %.1fs", relay.url, timeout)
            else:
                logger.warning("Relay publish error (%s): %s", relay.url, res)
            outcome[relay.url] = res
        else:
            logger.info("Published event %s to relay %s", event.id, relay.url)
            outcome[relay.url] = None
    return outcome
