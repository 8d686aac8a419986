from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from .config import RelayConfig, load_config
from .logging_config import configure_logging
from .paths import (
    default_archive_path,
    default_config_path,
    default_identity_path,
    ensure_private_dir,
)
from .service import RelayService


def _write_default_config(config_path: str, identity_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    archive_path = str(default_archive_path())

    content = f"""# roomd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start roomd again.

[relay]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where roomd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# Destination name to host the room on.
dest_name = "roomd.room"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Name of the room served by this relay.
room_name = "lobby"

# Per-connection outbound buffer, in messages.
outbox_size = 256

# What the room does when a participant's outbound buffer is full:
#   "block"      wait for that participant (slows delivery for everyone)
#   "drop"       skip that participant for that message
#   "disconnect" drop the participant from the room
slow_consumer_policy = "block"

# Largest accepted message body, in UTF-8 bytes. Larger payloads close the
# sending connection. Keep it well under the link MTU.
max_body_bytes = 256

# Longest accepted /nick name, in characters. Longer requests are refused
# with a reply to the sender only.
nick_max_chars = 32

# Close connections that send nothing for this many seconds (0 disables).
idle_timeout_s = 0.0

# Refuse links whose remote side does not identify within
# identify_timeout_s seconds.
require_identified = false
identify_timeout_s = 10.0

# Append every forwarded message to this file (leave empty to disable).
archive_path = ""
# archive_path = {archive_path!r}

# Log a stats summary every N seconds (0 disables).
stats_interval_s = 0.0

[logging]

# Log level for roomd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except Exception:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="roomd", description="Run a roomd chat relay")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to relay identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: roomd.room)"
    )
    p.add_argument("--room", default=None, help="Room name")

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    p.add_argument(
        "--outbox-size", type=int, default=None, help="Per-connection outbound buffer"
    )
    p.add_argument(
        "--slow-consumer-policy",
        choices=("block", "drop", "disconnect"),
        default=None,
        help="What to do when a participant's outbound buffer is full",
    )
    p.add_argument(
        "--max-body-bytes",
        type=int,
        default=None,
        help="Maximum message body size in UTF-8 bytes",
    )
    p.add_argument(
        "--nick-max-chars",
        type=int,
        default=None,
        help="Longest accepted nick, in characters",
    )
    p.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Close idle connections after this many seconds (0 disables)",
    )
    p.add_argument(
        "--require-identified",
        action="store_true",
        help="Refuse links whose remote side does not identify",
    )
    p.add_argument(
        "--archive",
        default=None,
        help="Append forwarded messages to this file (empty disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> RelayConfig:
    cfg = RelayConfig(configdir=args.configdir, identity_path=str(args.identity))
    if args.config and os.path.exists(args.config):
        cfg = load_config(str(args.config), cfg)
        if args.configdir is not None:
            cfg = replace(cfg, configdir=args.configdir)

    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.room is not None:
        cfg = replace(cfg, room_name=args.room)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))

    if args.outbox_size is not None:
        cfg = replace(cfg, outbox_size=int(args.outbox_size))
    if args.slow_consumer_policy is not None:
        cfg = replace(cfg, slow_consumer_policy=args.slow_consumer_policy)
    if args.max_body_bytes is not None:
        cfg = replace(cfg, max_body_bytes=int(args.max_body_bytes))
    if args.nick_max_chars is not None:
        cfg = replace(cfg, nick_max_chars=int(args.nick_max_chars))
    if args.idle_timeout is not None:
        cfg = replace(cfg, idle_timeout_s=float(args.idle_timeout))
    if args.require_identified:
        cfg = replace(cfg, require_identified=True)
    if args.archive is not None:
        cfg = replace(cfg, archive_path=str(args.archive) or None)

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) or None)

    cfg.validate()
    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)

    if _ensure_first_run_files(config_path, identity_path):
        print(
            "Created default roomd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run roomd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    svc.start()
    raise SystemExit(svc.run_forever())


if __name__ == "__main__":
    main()
