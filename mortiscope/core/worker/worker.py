from __future__ import annotations

import asyncio
import random
import signal
from dataclasses import dataclass

from mortiscope.core.engine.executor import Executor
from mortiscope.core.logging import get_logger
from mortiscope.core.utils.db import is_retryable_connection_error

logger = get_logger('worker')


@dataclass
class _RetryBackoff:
    initial_ms: int
    max_ms: int
    max_attempts: int
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.1, delay_ms / 1000.0)


class Worker:
    """
    Polling loop around Executor.tick().

    A full batch is followed immediately by another claim; otherwise the worker
    waits poll_interval_seconds (or until stopped). Transient database errors
    back off exponentially; anything else stops the loop.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        reconnect_initial_ms: int = 500,
        reconnect_max_ms: int = 30_000,
        reconnect_max_attempts: int = 0,
    ) -> None:
        self.executor = executor
        self._stop = asyncio.Event()
        self._backoff = _RetryBackoff(
            initial_ms=reconnect_initial_ms,
            max_ms=reconnect_max_ms,
            max_attempts=reconnect_max_attempts,
        )

    def request_stop(self) -> None:
        """Ask the loop to exit after the current batch."""
        self._stop.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Not available on Windows event loops
                logger.debug(f'Signal handler for {sig.name} not installed')

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            pass

    async def run_forever(self) -> None:
        """Main worker loop."""
        config = self.executor.config
        logger.info(
            f'Worker {self.executor.worker_id} started '
            f"({len(self.executor.registry)} workflow(s): {', '.join(self.executor.registry.ids())})"
        )
        while not self._stop.is_set():
            try:
                claimed = await self.executor.tick()
                self._backoff.reset()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_retryable_connection_error(exc):
                    if not self._backoff.can_retry():
                        logger.error(
                            f'Worker loop failed after {self._backoff.attempts} attempts: {exc}'
                        )
                        raise
                    delay = self._backoff.next_delay_seconds()
                    logger.error(
                        f'Worker loop error: {exc}. Retrying in {delay:.1f}s '
                        f'(attempt {self._backoff.attempts}/{self._backoff.max_attempts or "inf"})'
                    )
                    await self._sleep_with_stop(delay)
                    continue
                raise

            if claimed < config.batch_size:
                await self._sleep_with_stop(config.poll_interval_seconds)
        logger.info(f'Worker {self.executor.worker_id} stopped')
