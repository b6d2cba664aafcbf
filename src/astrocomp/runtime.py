"""
Cancellation and progress plumbing for long-running operations.

The chunked star detector and the composite renderer are written as
generators that yield a progress ratio at every checkpoint. The helpers
here drive those generators either synchronously or on an asyncio event
loop, checking a ``CancellationToken`` between checkpoints.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Generator, TypeVar

from .errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[float], None]


class CancellationToken:
    """
    Thread-safe cancellation flag.

    A token is created by the caller, handed to an operation, and cancelled
    from anywhere (another thread, an event-loop callback). The operation
    polls it at its checkpoints.

    Examples
    --------
    >>> token = CancellationToken()
    >>> token.cancel()
    >>> token.cancelled
    True
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation. Idempotent."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise ``CancellationError`` if cancellation was requested."""
        if self._event.is_set():
            raise CancellationError("Aborted")


class ProgressReporter:
    """
    Monotonic wrapper around an optional progress callback.

    Reported values are clamped to [0, 1] and never go below the last value
    delivered. ``finish()`` always delivers exactly 1.0.
    """

    def __init__(self, callback: ProgressCallback | None = None):
        self._callback = callback
        self._last = 0.0

    @property
    def last(self) -> float:
        return self._last

    def report(self, ratio: float) -> None:
        value = min(1.0, max(0.0, float(ratio)))
        if value < self._last:
            value = self._last
        self._last = value
        if self._callback is not None:
            self._callback(value)

    def finish(self) -> None:
        self._last = 1.0
        if self._callback is not None:
            self._callback(1.0)


def run_stages(stages: Generator[float, None, T]) -> T:
    """Exhaust a stage generator synchronously and return its result."""
    while True:
        try:
            next(stages)
        except StopIteration as stop:
            return stop.value


async def run_stages_async(
    stages: Generator[float, None, T],
    on_progress: ProgressCallback | None = None,
    token: CancellationToken | None = None,
) -> T:
    """
    Drive a stage generator on the running event loop.

    The token is checked before the first stage, after every yielded
    checkpoint and once more before the result is returned, so a cancelled
    run never delivers a result.

    Parameters
    ----------
    stages : Generator[float, None, T]
        Generator yielding progress ratios and returning the final result.
    on_progress : callable, optional
        Receives monotonic ratios; the last call on success is 1.0.
    token : CancellationToken, optional
        Cancellation token polled between checkpoints.

    Returns
    -------
    T
        The generator's return value.

    Raises
    ------
    CancellationError
        If the token is cancelled before or during the run.
    """
    reporter = ProgressReporter(on_progress)
    try:
        if token is not None:
            token.raise_if_cancelled()
        while True:
            try:
                ratio = next(stages)
            except StopIteration as stop:
                result = stop.value
                break
            if token is not None:
                token.raise_if_cancelled()
            reporter.report(ratio)
            await asyncio.sleep(0)
            if token is not None:
                token.raise_if_cancelled()
        if token is not None:
            token.raise_if_cancelled()
    except CancellationError:
        stages.close()
        logger.info("Operation cancelled at progress %.2f", reporter.last)
        raise
    reporter.finish()
    return result
