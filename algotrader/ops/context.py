from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context-local: each asyncio task sees its own values
_run_id: ContextVar[Optional[str]] = ContextVar("algotrader_run_id", default=None)
_cycle_id: ContextVar[Optional[str]] = ContextVar("algotrader_cycle_id", default=None)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def set_run_id(run_id: Optional[str]) -> None:
    _run_id.set(run_id)


def get_run_id() -> Optional[str]:
    return _run_id.get()


def get_cycle_id() -> Optional[str]:
    return _cycle_id.get()


@contextmanager
def cycle_scope(cycle_id: Optional[str] = None) -> Iterator[str]:
    """Bind a cycle id for the duration of one trader iteration."""
    cid = cycle_id or new_id()
    token = _cycle_id.set(cid)
    try:
        yield cid
    finally:
        _cycle_id.reset(token)
