"""
auth/bounded.py -- Run collaborator calls with a time budget.

The store and the credential verifier are the only blocking I/O this core
performs. Each call goes through run_bounded() so a hung database or
verifier turns into a GatewayTimeout for the current request instead of a
request thread parked forever.

The worker thread of a timed-out call is not killed (Python cannot do that);
it finishes in the background and its result is discarded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

from auth.errors import GatewayTimeout

logger = logging.getLogger("opsguard.auth")

T = TypeVar("T")

_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="opsguard-io")


def run_bounded(fn: Callable[..., T], timeout: float | None, *args, **kwargs) -> T:
    """Call fn(*args, **kwargs), raising GatewayTimeout after `timeout` seconds.

    timeout=None (or <= 0) calls fn inline with no budget. Exceptions raised
    by fn propagate unchanged.
    """
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        name = getattr(fn, "__qualname__", repr(fn))
        logger.error("Collaborator call %s exceeded %.1fs budget", name, timeout)
        raise GatewayTimeout(f"{name} timed out after {timeout}s") from None
