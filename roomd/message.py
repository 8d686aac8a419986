"""Chat messages and their wire representation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from .codec import decode, encode
from .constants import K_BODY, K_NAME, K_WHEN, MAX_BODY_BYTES, NICK_PREFIX


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """A chat event.

    The inbound loop stamps ``timestamp`` and sets ``sender_name`` (and, for a
    rename, ``body``) before the message is routed. Nothing mutates it after
    that point.
    """

    sender_name: str = ""
    body: str = ""
    timestamp: datetime = field(default_factory=utc_now)


def make_message(msg: Message) -> dict:
    return {
        K_NAME: msg.sender_name,
        K_BODY: msg.body,
        K_WHEN: msg.timestamp,
    }


def validate_message(m: dict, *, max_body_bytes: int = MAX_BODY_BYTES) -> None:
    if not isinstance(m, dict):
        raise TypeError("message must be a CBOR map (dict)")

    for k in m.keys():
        if not isinstance(k, int):
            raise TypeError("message keys must be integers")
        if k < 0:
            raise ValueError("message keys must be unsigned integers")

    if K_BODY not in m:
        raise ValueError(f"missing message key {K_BODY}")

    body = m[K_BODY]
    if not isinstance(body, str):
        raise TypeError("message body must be a string")
    if max_body_bytes > 0 and len(body.encode("utf-8")) > max_body_bytes:
        raise ValueError("message body too large")

    if K_NAME in m and not isinstance(m[K_NAME], str):
        raise TypeError("sender name must be a string")

    if K_WHEN in m and not isinstance(m[K_WHEN], (datetime, int, float)):
        raise TypeError("timestamp must be a datetime or a number")


def encode_message(msg: Message) -> bytes:
    return encode(make_message(msg))


def decode_message(data: bytes, *, max_body_bytes: int = MAX_BODY_BYTES) -> Message:
    """Decode an inbound payload.

    Raises ``cbor2.CBORDecodeError``, ``TypeError`` or ``ValueError`` on a
    malformed payload. The sender name and timestamp carried by the peer are
    kept here but always overwritten by the inbound loop.
    """
    m = decode(data)
    validate_message(m, max_body_bytes=max_body_bytes)

    when = m.get(K_WHEN)
    if isinstance(when, datetime):
        ts = when if when.tzinfo is not None else when.replace(tzinfo=timezone.utc)
    elif isinstance(when, (int, float)) and not isinstance(when, bool):
        try:
            ts = datetime.fromtimestamp(float(when), timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"timestamp out of range: {when!r}") from e
    else:
        ts = utc_now()

    return Message(sender_name=m.get(K_NAME, ""), body=m[K_BODY], timestamp=ts)


def parse_nick_command(body: str) -> str | None:
    """Return the requested name for a ``/nick <name>`` body, else None.

    ``"/nick "`` with nothing after it is not a rename.
    """
    if body.startswith(NICK_PREFIX) and len(body) > len(NICK_PREFIX):
        return body[len(NICK_PREFIX):]
    return None
