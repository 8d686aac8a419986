from __future__ import annotations

import os
from typing import Any


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def fmt_hash(h: Any, *, prefix: int = 12) -> str:
    if isinstance(h, (bytes, bytearray)):
        s = bytes(h).hex()
        return s if prefix <= 0 else s[: min(prefix, len(s))]
    return "-"
