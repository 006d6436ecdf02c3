"""
Shared helpers for Celery tasks.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from ..db import db_session
from ..services.container import Services, build_services


@contextmanager
def task_services() -> Iterator[Services]:
    """Service graph on a fresh session. Events published by a task are delivered inside the worker."""
    with db_session() as db:
        yield build_services(db)
