"""
Bounded worker pool for CPU-bound ciphertext work.

Engine operations are synchronous and pure. The service submits them here
so a long bootstrap or a large batch does not stall the event loop; the
pool boundary is the only suspension point.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)


class ComputePool:
    """Thread pool with an awaitable submit interface."""

    def __init__(self, max_workers: int = 4, name: str = "fhe-worker"):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def run(self, fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None, **kwargs: Any) -> Any:
        """
        Run ``fn(*args, **kwargs)`` on a worker thread.

        On timeout the caller stops waiting and the worker's result is
        discarded; no state needs rolling back.

        Raises:
            asyncio.TimeoutError: if ``timeout`` elapses first
        """
        if self._closed:
            raise RuntimeError("compute pool is closed")
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))
        if timeout is None:
            return await future
        return await asyncio.wait_for(future, timeout)

    async def map(
        self,
        fn: Callable[[Any], Any],
        items: Iterable[Any],
        timeout: Optional[float] = None,
        return_exceptions: bool = False,
    ) -> List[Any]:
        """Apply ``fn`` to every item concurrently; results keep input order."""
        calls = [self.run(fn, item) for item in items]
        gathered = asyncio.gather(*calls, return_exceptions=return_exceptions)
        if timeout is None:
            return await gathered
        return await asyncio.wait_for(gathered, timeout)

    def close(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.debug("Compute pool shut down")


__all__ = ["ComputePool"]
