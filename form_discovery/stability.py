"""
Stability watcher.

Field existence is not guaranteed at any single instant: content renders after
delays, data fetches, or progressively. ``StabilityWatcher.await_settled`` is
the one waiting primitive of the engine. It polls the driver at a short fixed
interval, re-captures a snapshot each time, and returns once the caller's
predicate holds and the document has not changed for a quiet interval.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional

from .config import build_config
from .driver import Driver
from .exceptions import PollingCancelled, StabilityTimeout
from .snapshot import FormSnapshot, SnapshotCapturer

logger = logging.getLogger(__name__)

Predicate = Callable[[FormSnapshot], bool]


def at_least_one_field(snapshot: FormSnapshot) -> bool:
    return len(snapshot.visible_fields) > 0


class StabilityWatcher:
    def __init__(self, driver: Driver, capturer: Optional[SnapshotCapturer] = None, config=None):
        self.driver = driver
        self.capturer = capturer or SnapshotCapturer()
        self.config = build_config(config)
        self.logger = logger

        polling = self.config['polling']
        self.poll_interval = polling['poll_interval'] / 1000
        self.quiet_interval = polling['quiet_interval'] / 1000
        self.default_timeout = self.config['timeouts']['settle']
        self.max_retries = self.config['limits']['max_retries']
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop every current and future poll of this watcher."""
        self._cancelled.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise PollingCancelled("Polling cancelled during wait")

    async def poll(self) -> FormSnapshot:
        """Capture one snapshot of the live document."""
        if self.cancelled:
            raise PollingCancelled("Polling cancelled")
        document = await self.driver.read_structure()
        location = await self.driver.current_location()
        return self.capturer.capture(document, location)

    async def await_settled(self, predicate: Optional[Predicate] = None, timeout: Optional[float] = None,
                            quiet_interval: Optional[float] = None) -> FormSnapshot:
        """
        Poll until ``predicate`` holds on a settled document.

        Args:
            predicate: Optional test on each snapshot, e.g. "at least one field exists"
            timeout: Upper bound in milliseconds (defaults to timeouts.settle)
            quiet_interval: Minimum unchanged window in milliseconds (defaults to polling.quiet_interval)

        Returns:
            The first snapshot satisfying both conditions, with ``settled=True``

        Raises:
            StabilityTimeout: carrying the last snapshot observed
            PollingCancelled: if the watcher is cancelled while waiting
        """
        timeout = self.default_timeout if timeout is None else timeout
        quiet = self.quiet_interval if quiet_interval is None else quiet_interval / 1000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout / 1000

        last_signature = None
        stable_since = 0.0
        unchanged_polls = 0
        snapshot = None

        while True:
            snapshot = await self.poll()
            now = loop.time()
            signature = snapshot.document.signature() if snapshot.document is not None else snapshot.structure()
            if signature != last_signature:
                last_signature = signature
                stable_since = now
                unchanged_polls = 0
            else:
                unchanged_polls += 1

            is_quiet = unchanged_polls >= 1 and now - stable_since >= quiet
            if is_quiet and (predicate is None or predicate(snapshot)):
                self.logger.debug(f"Document settled at revision {snapshot.revision}")
                return replace(snapshot, settled=True)

            if now >= deadline:
                self.logger.debug(f"Settle timeout after {timeout}ms at revision {snapshot.revision}")
                raise StabilityTimeout(timeout, snapshot)

            await self._sleep(min(self.poll_interval, max(deadline - now, 0.001)))

    async def settle(self, predicate: Optional[Predicate] = None, timeout: Optional[float] = None) -> FormSnapshot:
        """``await_settled`` retried ``max_retries`` times with the same bound."""
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.await_settled(predicate, timeout)
            except StabilityTimeout:
                if attempt == attempts:
                    raise
                self.logger.warning(f"Document not settled, retrying ({attempt}/{attempts - 1})")
