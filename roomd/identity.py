from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .constants import DEFAULT_NAME_FMT
from .util import fmt_hash

if TYPE_CHECKING:
    from .transport import Transport


class IdentityError(Exception):
    """Identity could not be resolved for a new connection."""


@dataclass
class Identity:
    """Per-connection participant identity.

    ``peer`` is the transport-level identity hash when the remote side
    identified itself; it is informational only.
    """

    id: int
    display_name: str = ""
    peer: bytes | None = None

    def ensure_display_name(self) -> str:
        if not self.display_name:
            self.display_name = DEFAULT_NAME_FMT.format(id=self.id)
        return self.display_name


class IdentityResolver:
    """
    Hands out stable per-connection identities.

    Ids are sequential for the lifetime of the process. With
    ``require_identified`` the transport must report a remote identity
    within ``identify_timeout_s`` or resolution fails.
    """

    def __init__(
        self, *, require_identified: bool = False, identify_timeout_s: float = 10.0
    ) -> None:
        self.log = logging.getLogger("roomd.identity")
        self.require_identified = bool(require_identified)
        self.identify_timeout_s = float(identify_timeout_s)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def resolve(self, transport: Transport) -> Identity:
        peer = transport.remote_identity(
            timeout=self.identify_timeout_s if self.require_identified else 0.0
        )
        if peer is None and self.require_identified:
            raise IdentityError(
                f"remote did not identify within {self.identify_timeout_s:.1f}s"
            )
        ident = Identity(id=self.next_id(), peer=peer)
        self.log.debug("Resolved identity id=%s peer=%s", ident.id, fmt_hash(peer))
        return ident

