from __future__ import annotations

"""Configuration loader for qube-manager (YAML-based).

The file is ``<config_dir>/config.yaml``; when missing, a default one is
written first.  Any problem reading or validating it raises
:class:`~qube_manager.errors.ConfigError`: the node must not run with an
unknown set of relays or voters.

CLI:
  python -m qube_manager.config                      # print full JSON config
  python -m qube_manager.config quorum               # print a single value
  python -m qube_manager.config --config-dir DIR relays
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
DEFAULT_CONFIG_DIR = Path(os.path.expanduser("~")) / ".qube-manager"

_PUBKEY_RE = re.compile(r"^[0-9a-f]{64}$")
_URL = TypeAdapter(AnyUrl)


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    relays: List[str] = Field(default_factory=list)
    follows: List[str] = Field(default_factory=list)  # hex public keys allowed to vote
    quorum: int = Field(1, ge=0)
    ingest_timeout: float = Field(10.0, gt=0)
    publish_timeout: float = Field(5.0, gt=0)

    @field_validator("relays")
    @classmethod
    def _check_relays(cls, v: List[str]) -> List[str]:
        for url in v:
            try:
                if url != url.strip():
                    raise ValueError("surrounding whitespace")
                _URL.validate_python(url)
            except ValueError:
                raise ValueError(f"invalid relay URL {url!r}") from None
        return list(dict.fromkeys(v))

    @field_validator("follows")
    @classmethod
    def _check_follows(cls, v: List[str]) -> List[str]:
        out = []
        for key in v:
            key = key.strip().lower()
            if not _PUBKEY_RE.match(key):
                raise ValueError(f"invalid public key {key!r}, expected 64 hex characters")
            out.append(key)
        return out


def default_settings(config_dir: Path) -> Settings:
    relay = (Path(config_dir).resolve() / "relay.jsonl").as_uri()
    return Settings(relays=[relay], follows=[], quorum=1)


def load_config(config_dir: Path) -> Settings:
    path = Path(config_dir) / CONFIG_FILENAME
    if not path.exists():
        logger.warning("Config file not found at %s, creating default config", path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = default_settings(config_dir).model_dump()
            path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Failed to write default config to {path}: {exc}") from exc
        logger.info("Default config created at %s", path)

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} is not a mapping")
    try:
        settings = Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc

    logger.info(
        "Loaded config: %d relay(s), %d follow(s), quorum=%d",
        len(settings.relays),
        len(settings.follows),
        settings.quorum,
    )
    if not settings.follows:
        logger.warning("No follows configured; no votes will be counted")
    return settings


def _main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Print the effective qube-manager config.")
    parser.add_argument("--config-dir", type=Path, default=DEFAULT_CONFIG_DIR)
    parser.add_argument("key", nargs="?")
    args = parser.parse_args()

    data: Dict[str, Any] = load_config(args.config_dir).model_dump()
    if args.key is None:
        print(json.dumps(data, indent=2))
        return
    val = data.get(args.key)
    if isinstance(val, (dict, list)):
        print(json.dumps(val))
    elif val is None:
        print("")
    else:
        print(val)


if __name__ == "__main__":
    _main()
