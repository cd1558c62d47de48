"""Bounded retry for writes that can lose an optimistic-lock race."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, base: float = 0.05) -> float:
    """Linearly increasing delay: 50 ms, 100 ms, 150 ms, ..."""
    return base * attempt


def retry_on_conflict(
    operation: Callable[[], T],
    *,
    conflicts: Tuple[Type[BaseException], ...],
    max_attempts: int = 3,
    backoff: Callable[[int], float] = compute_backoff,
    on_conflict: Optional[Callable[[BaseException], None]] = None,
    on_exhausted: Optional[Callable[[], T]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it stops raising one of ``conflicts``.

    ``on_conflict`` runs after each failed attempt (typically a session
    rollback). Once ``max_attempts`` are spent, ``on_exhausted`` supplies the
    last-known-good value instead of failing; without it the final conflict
    propagates.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except conflicts as exc:
            logger.warning("Write conflict on attempt %s/%s: %s", attempt, max_attempts, exc)
            if on_conflict is not None:
                on_conflict(exc)
            if attempt == max_attempts:
                if on_exhausted is None:
                    raise
                logger.error("Retries exhausted, falling back to the last stored state")
                return on_exhausted()
            sleep(backoff(attempt))

    raise RuntimeError("unreachable")  # pragma: no cover
