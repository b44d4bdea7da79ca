"""
Engine configuration -- where the store lives and how gpg and git run.

Loaded from ``$SKPASS_HOME/config.yaml`` (default ``~/.skpass``).
Missing or broken files fall back to defaults with a warning; the
store must stay usable even when its settings are not.

Environment overrides, as pass itself honours them:
    PASSWORD_STORE_DIR  store root
    PASSWORD_STORE_KEY  recipients for every encryption
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import DEFAULT_STORE_DIR, SKPASS_HOME

logger = logging.getLogger("skpass.config")

CONFIG_FILENAME = "config.yaml"


class PassphraseMethod(str, Enum):
    """How gpg obtains the passphrase for a private key."""

    AGENT = "agent"
    LOOPBACK = "loopback"


def _default_store_dir() -> Path:
    return Path(os.environ.get("PASSWORD_STORE_DIR", DEFAULT_STORE_DIR)).expanduser()


class StoreConfig(BaseModel):
    """Complete engine configuration."""

    store_dir: Path = Field(default_factory=_default_store_dir)
    stores: list[Path] = Field(
        default_factory=list,
        description="Additional password stores the front-end may switch to",
    )

    gpg_binary: str = "gpg"
    passphrase_method: PassphraseMethod = PassphraseMethod.AGENT
    armor: bool = False
    decrypt_timeout: float = Field(default=60.0, gt=0)

    git_binary: str = "git"
    remote: str = "origin"
    branch: Optional[str] = None
    network_timeout: float = Field(default=120.0, gt=0)
    push_retries: int = Field(default=3, ge=0)
    auto_commit: bool = True
    git_author_name: Optional[str] = None
    git_author_email: Optional[str] = None

    audit: bool = True
    workers: int = Field(default=2, ge=1)

    def all_stores(self) -> list[Path]:
        """Primary store followed by any additional ones, deduplicated."""
        seen: list[Path] = []
        for path in [self.store_dir, *self.stores]:
            resolved = Path(path).expanduser()
            if resolved not in seen:
                seen.append(resolved)
        return seen


def skpass_home(home: Optional[Path] = None) -> Path:
    return (home or Path(SKPASS_HOME)).expanduser()


def load_config(home: Optional[Path] = None) -> StoreConfig:
    """Load configuration from disk.

    Args:
        home: Engine home directory. Defaults to $SKPASS_HOME.

    Returns:
        StoreConfig, defaults when the file is missing or invalid.
    """
    config_file = skpass_home(home) / CONFIG_FILENAME
    data: dict = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as exc:
            logger.warning("Failed to read config %s: %s", config_file, exc)
            data = {}

    if "PASSWORD_STORE_DIR" in os.environ:
        data["store_dir"] = os.environ["PASSWORD_STORE_DIR"]

    try:
        config = StoreConfig(**data)
    except (ValidationError, TypeError) as exc:
        logger.warning("Invalid config %s, using defaults: %s", config_file, exc)
        config = StoreConfig()

    config.store_dir = Path(config.store_dir).expanduser()
    return config


def save_config(config: StoreConfig, home: Optional[Path] = None) -> Path:
    """Persist configuration as YAML.

    Returns:
        Path of the written file.
    """
    config_dir = skpass_home(home)
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / CONFIG_FILENAME
    data = config.model_dump(mode="json")
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    logger.info("Saved config to %s", config_file)
    return config_file
