"""Small helpers for config lookups and run naming."""

from __future__ import annotations

import hashlib
import time
import uuid
from typing import Dict


def _get(d: Dict, *keys, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
        if cur is None:
            return default
    return cur


def slugify(s: str) -> str:
    return (
        (s or "").strip().lower().replace(" ", "-").replace("/", "-").replace("\\", "-")
    )


def new_run_id() -> str:
    # Sortable timestamp plus a short suffix so two runs in one second differ
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
