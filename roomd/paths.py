"""Default on-disk locations, all under the roomd home directory."""

from __future__ import annotations

import logging
import os
from pathlib import Path

HOME_ENV = "ROOMD_HOME"

CONFIG_FILE = "roomd.toml"
IDENTITY_FILE = "relay_identity"
ARCHIVE_FILE = "messages.cbor"

log = logging.getLogger("roomd.paths")


def roomd_home() -> Path:
    return Path(os.environ.get(HOME_ENV) or "~/.roomd").expanduser()


def default_config_path(home: Path | None = None) -> Path:
    return (home or roomd_home()) / CONFIG_FILE


def default_identity_path(home: Path | None = None) -> Path:
    return (home or roomd_home()) / IDENTITY_FILE


def default_archive_path(home: Path | None = None) -> Path:
    return (home or roomd_home()) / ARCHIVE_FILE


def ensure_private_dir(path: Path) -> Path:
    """Create ``path`` and its parents, readable by the owner only."""
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    # mkdir's mode is masked by the umask and ignored for an existing dir.
    try:
        os.chmod(path, 0o700)
    except OSError as e:
        log.debug("Could not restrict %s: %s", path, e)
    return path
