"""Injectable time source. Services take a ``Clock`` so sweeps can be driven by a simulated clock."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
