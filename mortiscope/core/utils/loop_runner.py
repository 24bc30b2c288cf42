# mortiscope/core/utils/loop_runner.py
from __future__ import annotations
import asyncio
import contextlib
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable
from mortiscope.core.logging import get_logger


class LoopRunnerError(RuntimeError):
    """Infrastructure failure in the sync->async bridge."""


class LoopRunner:
    """Run async callables from sync code (e.g. request handlers) on a
    dedicated event loop thread.

    The async engine and its pooled connections are bound to the loop they were
    first used on, so every sync call for one app goes through the same loop.
    """

    def __init__(self, name: str = 'mortiscope-loop') -> None:
        self.logger = get_logger('loop_runner')
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._closed = False
        self._lock = threading.RLock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._closed:
                raise LoopRunnerError('loop runner was stopped and cannot restart')
            if self._thread is not None:
                return
            loop = asyncio.new_event_loop()
            thread = threading.Thread(
                target=loop.run_forever, name=self._name, daemon=True,
            )
            try:
                thread.start()
            except RuntimeError as exc:
                loop.close()
                raise LoopRunnerError(
                    f'failed to start loop thread: {type(exc).__name__}: {exc}',
                ) from exc
            self._loop = loop
            self._thread = thread

    def stop(self) -> None:
        with self._lock:
            self._closed = True
            loop, thread = self._loop, self._thread
            if loop is None or thread is None:
                return
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=2)
            if thread.is_alive():
                self.logger.warning('loop thread did not stop within 2s; leaving it open')
                return
            loop.close()
            self._loop = None
            self._thread = None

    def call(
        self, coro_fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """Run `coro_fn(*args, **kwargs)` on the loop thread and wait for it."""
        self.start()
        with self._lock:
            loop = self._loop
            if loop is None:
                raise LoopRunnerError('loop runner is not running')
        coro = coro_fn(*args, **kwargs)
        try:
            fut: Future[Any] = asyncio.run_coroutine_threadsafe(coro, loop)  # type: ignore[arg-type]
        except RuntimeError as exc:
            if asyncio.iscoroutine(coro):
                with contextlib.suppress(RuntimeError):
                    coro.close()
            raise LoopRunnerError(
                f'failed to schedule {coro_fn.__name__}: {type(exc).__name__}: {exc}',
            ) from exc
        return fut.result()
