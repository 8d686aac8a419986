from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any

from .constants import (
    MAX_BODY_BYTES,
    MESSAGE_BUFFER_SIZE,
    NICK_MAX_CHARS,
    POLICY_BLOCK,
    SLOW_CONSUMER_POLICIES,
)


@dataclass(frozen=True)
class RelayConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "roomd.room"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    room_name: str = "lobby"
    outbox_size: int = MESSAGE_BUFFER_SIZE
    slow_consumer_policy: str = POLICY_BLOCK
    max_body_bytes: int = MAX_BODY_BYTES
    nick_max_chars: int = NICK_MAX_CHARS
    idle_timeout_s: float = 0.0
    require_identified: bool = False
    identify_timeout_s: float = 10.0
    archive_path: str | None = None
    stats_interval_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None

    def validate(self) -> None:
        if self.slow_consumer_policy not in SLOW_CONSUMER_POLICIES:
            raise ValueError(
                f"slow_consumer_policy must be one of {', '.join(SLOW_CONSUMER_POLICIES)}"
            )
        if int(self.outbox_size) <= 0:
            raise ValueError("outbox_size must be positive")
        if int(self.max_body_bytes) <= 0:
            raise ValueError("max_body_bytes must be positive")
        if int(self.nick_max_chars) <= 0:
            raise ValueError("nick_max_chars must be positive")
        if float(self.idle_timeout_s) < 0:
            raise ValueError("idle_timeout_s must not be negative")
        if float(self.identify_timeout_s) < 0:
            raise ValueError("identify_timeout_s must not be negative")
        if self.require_identified and float(self.identify_timeout_s) <= 0:
            raise ValueError("require_identified needs a positive identify_timeout_s")
        if not [p for p in str(self.dest_name).split(".") if p]:
            raise ValueError("dest_name must not be empty")
        if not str(self.room_name).strip():
            raise ValueError("room_name must not be empty")


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_OPTIONAL_STR_KEYS = ("configdir", "archive_path", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayConfig, data: dict[str, Any]) -> RelayConfig:
    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field_name: log_table.get(key)
            for key, field_name in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for key in _OPTIONAL_STR_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def load_config(path: str, base: RelayConfig | None = None) -> RelayConfig:
    cfg = base if base is not None else RelayConfig()
    cfg = apply_config_data(cfg, load_toml(path))
    return replace(cfg, config_path=path)
