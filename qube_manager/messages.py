"""Vote message schema: parsing, action keys and completion messages.

Votes travel as the ``content`` of signed text notes.  The content is a JSON
object discriminated by ``type``::

    {"type": "upgrade", "version": "v1.2.3"}
    {"type": "reboot", "version": "2.0.0", "genesis": "https://host/genesis.json"}

Relays are open, so anything may show up here.  :func:`parse_action` either
returns a fully validated :class:`ActionDescriptor` or raises
:class:`MessageRejected` carrying a :class:`RejectReason`; no other exception
escapes it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Mapping, Optional, Union

import semver
from pydantic import AnyUrl, TypeAdapter, ValidationError

from .errors import QubeError

if TYPE_CHECKING:
    from .votes import CandidateAction

__all__ = [
    "ActionKind",
    "ActionDescriptor",
    "RejectReason",
    "MessageRejected",
    "parse_action",
    "validate",
    "action_key",
    "CompletionMessage",
    "build_completion",
    "compose_message",
]

_URI = TypeAdapter(AnyUrl)


class ActionKind(str, Enum):
    UPGRADE = "upgrade"
    REBOOT = "reboot"


class RejectReason(str, Enum):
    MALFORMED_PAYLOAD = "malformed_payload"
    UNKNOWN_TYPE = "unknown_type"
    MISSING_FIELD = "missing_field"
    INVALID_VERSION = "invalid_version"
    INVALID_GENESIS = "invalid_genesis"


class MessageRejected(QubeError, ValueError):
    def __init__(self, reason: RejectReason, detail: str) -> None:
        super().__init__(f"{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class ActionDescriptor:
    """A validated upgrade or reboot proposal."""

    kind: ActionKind
    version: semver.Version
    version_text: str  # exactly as supplied, e.g. "v1.2"
    genesis: Optional[str] = None

    @property
    def key(self) -> str:
        return action_key(self)


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------


def parse_version(text: Any) -> semver.Version:
    """Parse a semantic version, allowing a leading lowercase ``v`` and short forms.

    ``"v1.2"`` parses as 1.2.0.  Precedence follows semver: build metadata is
    ignored and pre-releases sort before the release.
    """
    if not isinstance(text, str):
        raise MessageRejected(
            RejectReason.INVALID_VERSION, f"version must be a string, got {type(text).__name__}"
        )
    if text != text.strip() or not text:
        raise MessageRejected(RejectReason.INVALID_VERSION, f"invalid version {text!r}")
    core = text[1:] if text[0] == "v" else text
    try:
        return semver.Version.parse(core, optional_minor_and_patch=True)
    except (ValueError, TypeError) as exc:
        raise MessageRejected(
            RejectReason.INVALID_VERSION, f"invalid version {text!r}: {exc}"
        ) from None


def check_absolute_uri(text: Any) -> str:
    if not isinstance(text, str):
        raise MessageRejected(
            RejectReason.INVALID_GENESIS, f"genesis must be a string, got {type(text).__name__}"
        )
    if not text or any(ch.isspace() for ch in text):
        raise MessageRejected(RejectReason.INVALID_GENESIS, f"invalid genesis URI {text!r}")
    try:
        _URI.validate_python(text)
    except ValidationError:
        raise MessageRejected(
            RejectReason.INVALID_GENESIS, f"invalid genesis URI {text!r}"
        ) from None
    return text


def _load_object(payload: Union[str, bytes]) -> Dict[str, Any]:
    try:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
    except (ValueError, TypeError, RecursionError) as exc:
        raise MessageRejected(RejectReason.MALFORMED_PAYLOAD, str(exc)) from None
    if not isinstance(data, dict):
        raise MessageRejected(
            RejectReason.MALFORMED_PAYLOAD, f"expected a JSON object, got {type(data).__name__}"
        )
    return data


def _require(data: Mapping[str, Any], field: str) -> Any:
    value = data.get(field)
    if value is None:
        raise MessageRejected(RejectReason.MISSING_FIELD, f"missing required field {field!r}")
    return value


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def parse_action(payload: Union[str, bytes]) -> ActionDescriptor:
    """Validate an untrusted message payload into an :class:`ActionDescriptor`."""
    data = _load_object(payload)

    typ = data.get("type")
    try:
        kind = ActionKind(typ) if isinstance(typ, str) else None
    except ValueError:
        kind = None
    if kind is None:
        raise MessageRejected(RejectReason.UNKNOWN_TYPE, f"unknown message type {typ!r}")

    version_text = _require(data, "version")
    version = parse_version(version_text)

    if kind is ActionKind.UPGRADE:
        return ActionDescriptor(kind=kind, version=version, version_text=version_text)

    genesis = check_absolute_uri(_require(data, "genesis"))
    return ActionDescriptor(
        kind=kind, version=version, version_text=version_text, genesis=genesis
    )


def validate(payload: Union[str, bytes]) -> Union[ActionDescriptor, MessageRejected]:
    """Like :func:`parse_action` but returns the rejection instead of raising."""
    try:
        return parse_action(payload)
    except MessageRejected as exc:
        return exc


def action_key(action: ActionDescriptor) -> str:
    """Deduplication key: ``upgrade:<version>`` or ``reboot:<version>:<genesis>``.

    Semver text never contains ``:`` so reboot keys split unambiguously.
    """
    if action.kind is ActionKind.REBOOT:
        return f"{action.kind.value}:{action.version_text}:{action.genesis}"
    return f"{action.kind.value}:{action.version_text}"


# ---------------------------------------------------------------------------
# Outbound messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompletionMessage:
    """Announces that this node executed an action."""

    kind: ActionKind
    version_text: str
    genesis: Optional[str] = None

    STATUS: ClassVar[str] = "done"

    def to_dict(self) -> Dict[str, str]:
        d = {"type": self.kind.value, "version": self.version_text}
        if self.kind is ActionKind.REBOOT:
            d["genesis"] = self.genesis or ""
        d["extraData"] = self.STATUS
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


def build_completion(candidate: CandidateAction) -> CompletionMessage:
    """Build the "done" message for a selected :class:`CandidateAction`."""
    action = candidate.action
    return CompletionMessage(
        kind=action.kind, version_text=action.version_text, genesis=action.genesis
    )


def compose_message(
    kind: str,
    version: str,
    genesis: Optional[str] = None,
    extra: Optional[str] = None,
) -> Dict[str, str]:
    """Build a vote payload and run it through the validator."""
    msg: Dict[str, str] = {"type": kind, "version": version}
    if kind == ActionKind.REBOOT.value:
        if not genesis:
            raise MessageRejected(
                RejectReason.MISSING_FIELD, "genesis URL is required for reboot messages"
            )
        msg["genesis"] = genesis
    if extra:
        msg["extraData"] = extra
    try:
        text = json.dumps(msg, ensure_ascii=False)
        text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise MessageRejected(RejectReason.MALFORMED_PAYLOAD, str(exc)) from None
    parse_action(text)
    return msg
