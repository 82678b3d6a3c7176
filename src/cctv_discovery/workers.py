"""
Bounded worker pools with cooperative shutdown
"""

import threading
import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Set

logger = logging.getLogger(__name__)


class WorkerPool:
    """ThreadPoolExecutor wrapper: signal, await bounded termination, then force-cancel"""

    def __init__(self, name: str, max_workers: int):
        self.name = name
        self.max_workers = max(1, int(max_workers))
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=name)
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._closing = threading.Event()

    @property
    def executor(self) -> ThreadPoolExecutor:
        return self._executor

    @property
    def is_shutdown(self) -> bool:
        return self._closing.is_set()

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        if self._closing.is_set():
            raise RuntimeError(f"Worker pool '{self.name}' is shut down")
        future = self._executor.submit(fn, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def shutdown(self, timeout: float = 10.0) -> bool:
        """
        Stop accepting work and wait up to timeout for running tasks.
        Returns True if everything finished in time.
        """
        if self._closing.is_set():
            return True
        self._closing.set()
        with self._lock:
            pending = set(self._pending)

        done, not_done = wait(pending, timeout=timeout)
        if not_done:
            logger.warning(f"Worker pool '{self.name}': {len(not_done)} tasks still running after "
                           f"{timeout}s, cancelling queued work")
            for future in not_done:
                future.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug(f"Worker pool '{self.name}' shut down ({len(done)} tasks drained)")
        return not not_done
