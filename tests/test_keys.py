from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from qube_manager.errors import KeyMaterialError
from qube_manager.keys import KEYS_FILENAME, Keypair, load_or_create_keypair, verify


def test_keypair_is_created_once_and_reloaded(tmp_path: Path):
    kp = load_or_create_keypair(tmp_path)
    path = tmp_path / KEYS_FILENAME
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert load_or_create_keypair(tmp_path) == kp
    assert len(kp.public_key) == 64


def test_sign_verify():
    kp = Keypair.generate()
    sig = kp.sign(b"payload")
    assert verify(kp.public_key, b"payload", sig) is True
    # Negative cases
    assert verify(kp.public_key, b"other", sig) is False
    assert verify(Keypair.generate().public_key, b"payload", sig) is False
    assert verify("zz", b"payload", sig) is False
    assert verify(kp.public_key, b"payload", "not-hex") is False


@pytest.mark.parametrize(
    "content",
    [
        "not json",
        "[]",
        json.dumps({"public_key": "00" * 32}),
        json.dumps({"private_key": "abcd"}),
        json.dumps({"private_key": 5}),
    ],
)
def test_unreadable_key_file_is_fatal(tmp_path: Path, content: str):
    (tmp_path / KEYS_FILENAME).write_text(content)
    with pytest.raises(KeyMaterialError):
        load_or_create_keypair(tmp_path)


def test_mismatched_public_key_is_fatal(tmp_path: Path):
    kp = Keypair.generate()
    other = Keypair.generate()
    (tmp_path / KEYS_FILENAME).write_text(
        json.dumps({"private_key": kp.private_key, "public_key": other.public_key})
    )
    with pytest.raises(KeyMaterialError):
        load_or_create_keypair(tmp_path)
