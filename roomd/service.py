from __future__ import annotations

import itertools
import logging
import os
import signal
import threading
import time

import RNS

from . import __version__
from .archive import MessageArchive
from .codec import encode
from .config import RelayConfig
from .connection import serve_connection
from .identity import IdentityError, IdentityResolver
from .link import LinkTransport
from .room import Room, RoomClosed
from .stats import Stats
from .util import expand_path, fmt_hash


class RelayService:
    """
    Hosts one Room on a Reticulum destination.

    Every established link gets its own thread that resolves an identity and
    then runs the connection until it ends.
    """

    def __init__(self, config: RelayConfig) -> None:
        config.validate()
        self.config = config
        self.log = logging.getLogger("roomd.service")

        self.stats = Stats()
        self.room = Room(
            config.room_name,
            slow_consumer_policy=config.slow_consumer_policy,
            stats=self.stats,
        )
        self.resolver = IdentityResolver(
            require_identified=config.require_identified,
            identify_timeout_s=config.identify_timeout_s,
        )
        self.archive: MessageArchive | None = None
        if config.archive_path:
            self.archive = MessageArchive(expand_path(config.archive_path))
            self.room.add_observer(self.archive.observe)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._shutdown = threading.Event()
        self._conn_seq = itertools.count(1)
        self._transports: set[LinkTransport] = set()
        self._transports_lock = threading.Lock()

    def start(self) -> None:
        self.log.info("Starting roomd %s", __version__)
        if self.archive is not None:
            self.archive.start()
        self.room.start()

        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        app_name, aspects = parts[0], parts[1:]
        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()
        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._spawn(self._announce_loop, "roomd-announce")
        if self.config.stats_interval_s and self.config.stats_interval_s > 0:
            self._spawn(self._stats_loop, "roomd-stats")

        self.log.info(
            "Relay running room=%s dest_name=%s dest_hash=%s",
            self.room.name,
            self.config.dest_name,
            self.destination.hash.hex(),
        )
        self.log.info(
            "Policy slow_consumer=%s outbox_size=%s max_body_bytes=%s nick_max_chars=%s idle_timeout_s=%s require_identified=%s",
            self.config.slow_consumer_policy,
            self.config.outbox_size,
            self.config.max_body_bytes,
            self.config.nick_max_chars,
            self.config.idle_timeout_s,
            self.config.require_identified,
        )

    def _spawn(self, target, name: str) -> None:
        threading.Thread(target=target, name=name, daemon=True).start()

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "roomd", "v": 1, "room": self.room.name})
            )
            self.stats.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def _stats_loop(self) -> None:
        period = float(self.config.stats_interval_s)
        while not self._shutdown.wait(period):
            self.log.info("%s", self._format_stats())

    def _format_stats(self) -> str:
        try:
            members = len(self.room.members(timeout=1.0))
        except (TimeoutError, RoomClosed):
            members = None
        return self.stats.format_stats(members=members)

    def _on_link(self, link: RNS.Link) -> None:
        transport = LinkTransport(link)
        if self._shutdown.is_set():
            transport.close()
            return
        with self._transports_lock:
            self._transports.add(transport)

        n = next(self._conn_seq)
        self.stats.inc("connections")
        self.log.info("Link established link_id=%s", transport.describe())
        threading.Thread(
            target=self._serve,
            args=(transport,),
            name=f"roomd-conn-{n}",
            daemon=True,
        ).start()

    def _serve(self, transport: LinkTransport) -> None:
        try:
            try:
                identity = self.resolver.resolve(transport)
            except IdentityError as e:
                self.stats.inc("identity_failures")
                self.log.warning(
                    "Identity resolution failed link_id=%s: %s", transport.describe(), e
                )
                transport.close()
                return

            self.log.info(
                "Identity resolved id=%s peer=%s link_id=%s",
                identity.id,
                fmt_hash(identity.peer),
                transport.describe(),
            )
            serve_connection(
                self.room,
                transport,
                identity,
                outbox_size=self.config.outbox_size,
                max_body_bytes=self.config.max_body_bytes,
                nick_max_chars=self.config.nick_max_chars,
                idle_timeout_s=self.config.idle_timeout_s,
                stats=self.stats,
            )
        finally:
            with self._transports_lock:
                self._transports.discard(transport)

    def run_forever(self) -> int:
        """Block until stopped. Returns the process exit status."""
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self._shutdown.set())
        signal.signal(signal.SIGTERM, lambda *_: self._shutdown.set())

        while not self._shutdown.is_set():
            if self.room.failed.is_set():
                self.log.critical("Room failed; shutting down")
                self.stop()
                return 1
            time.sleep(0.25)

        self.stop()
        return 0

    def stop(self) -> None:
        self._shutdown.set()
        self.room.stop(timeout=5.0)

        with self._transports_lock:
            transports = list(self._transports)
        for transport in transports:
            transport.close()

        if self.archive is not None:
            self.archive.stop()

        self.log.info("%s", self.stats.format_stats())
