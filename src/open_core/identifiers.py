from __future__ import annotations

import time
from uuid import uuid4


def generate_id(prefix: str) -> str:
    # Time-ordered prefix keeps ids sortable in creation order within a process.
    return f"{prefix}_{time.time_ns():x}{uuid4().hex[:8]}"


def now_ms() -> int:
    return int(time.time() * 1000)
