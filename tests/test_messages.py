from __future__ import annotations

import json

import pytest
import semver

from qube_manager.messages import (
    ActionKind,
    MessageRejected,
    RejectReason,
    build_completion,
    compose_message,
    parse_action,
    validate,
)
from qube_manager.votes import CandidateAction


def _reason(payload) -> RejectReason:
    with pytest.raises(MessageRejected) as info:
        parse_action(payload)
    return info.value.reason


def test_parse_upgrade_keeps_original_version_text():
    a = parse_action('{"type":"upgrade","version":"v1.2"}')
    assert a.kind is ActionKind.UPGRADE
    assert a.version_text == "v1.2"
    assert a.version == semver.Version(1, 2, 0)
    assert a.genesis is None


def test_parse_reboot_from_bytes():
    payload = json.dumps(
        {"type": "reboot", "version": "2.0.0", "genesis": "https://example.com/genesis.json"}
    ).encode()
    a = parse_action(payload)
    assert a.kind is ActionKind.REBOOT
    assert a.genesis == "https://example.com/genesis.json"


def test_extra_fields_are_ignored():
    a = parse_action('{"type":"upgrade","version":"1.0.0","extraData":"done"}')
    assert a.version_text == "1.0.0"


def test_invalid_version_is_rejected():
    assert _reason('{"type":"upgrade","version":"not-a-version"}') is RejectReason.INVALID_VERSION
    assert _reason('{"type":"upgrade","version":1}') is RejectReason.INVALID_VERSION
    assert _reason('{"type":"upgrade","version":" 1.0.0"}') is RejectReason.INVALID_VERSION
    assert _reason('{"type":"upgrade","version":"1.0.0\\n"}') is RejectReason.INVALID_VERSION
    assert _reason('{"type":"upgrade","version":"V1.0.0"}') is RejectReason.INVALID_VERSION


def test_missing_fields_are_rejected():
    assert _reason('{"type":"upgrade"}') is RejectReason.MISSING_FIELD
    assert _reason('{"type":"reboot","version":"1.0.0"}') is RejectReason.MISSING_FIELD


def test_invalid_genesis_is_rejected():
    for genesis in ["not a uri", "relative/path", "", 42]:
        payload = json.dumps({"type": "reboot", "version": "1.0.0", "genesis": genesis})
        assert _reason(payload) is RejectReason.INVALID_GENESIS


def test_unknown_type_is_rejected():
    assert _reason('{"type":"delete","version":"1.0.0"}') is RejectReason.UNKNOWN_TYPE
    assert _reason('{"version":"1.0.0"}') is RejectReason.UNKNOWN_TYPE
    assert _reason('{"type":["upgrade"]}') is RejectReason.UNKNOWN_TYPE


def test_malformed_payloads_never_escape_as_other_errors():
    junk = ["", "not json", "[1, 2]", "null", b"\xff\xfe", "[" * 100000, '"upgrade"']
    for payload in junk:
        assert _reason(payload) is RejectReason.MALFORMED_PAYLOAD


def test_validate_returns_rejection_instead_of_raising():
    res = validate('{"type":"upgrade","version":"nope"}')
    assert isinstance(res, MessageRejected)
    assert res.reason is RejectReason.INVALID_VERSION
    ok = validate('{"type":"upgrade","version":"1.0.0"}')
    assert ok.key == "upgrade:1.0.0"


def test_completion_message_mirrors_action():
    a = parse_action('{"type":"reboot","version":"v2.0.0","genesis":"https://g/1"}')
    done = build_completion(CandidateAction(key=a.key, action=a))
    assert done.to_dict() == {
        "type": "reboot",
        "version": "v2.0.0",
        "genesis": "https://g/1",
        "extraData": "done",
    }
    # the announcement itself parses back to the same action
    assert parse_action(done.to_json()).key == a.key

    u = parse_action('{"type":"upgrade","version":"1.3.0"}')
    assert "genesis" not in build_completion(CandidateAction(key=u.key, action=u)).to_dict()


def test_compose_message_validates_input():
    assert compose_message("upgrade", "v1.2.3", extra="hello") == {
        "type": "upgrade",
        "version": "v1.2.3",
        "extraData": "hello",
    }
    with pytest.raises(MessageRejected):
        compose_message("reboot", "1.0.0")
    with pytest.raises(MessageRejected):
        compose_message("upgrade", "one.two")
    with pytest.raises(MessageRejected) as info:
        compose_message("upgrade", "1.0.0", extra="caf\udce9")
    assert info.value.reason is RejectReason.MALFORMED_PAYLOAD
