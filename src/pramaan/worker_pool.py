"""
Bounded worker pool for CPU-bound proof verification.

Modular exponentiation in a 2048-bit group dominates submission latency, so
it runs off the request path on a fixed-size executor. With the process
flavour the submitted callable and its arguments must be picklable, which
is why verification is a module-level function over plain dataclasses.
"""

from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

import structlog

from .exceptions import ConfigurationError

# Initialize structured logger
logger = structlog.get_logger(__name__)

T = TypeVar("T")


class VerificationPool:
    """
    Fixed-size executor shared by all submissions.

    Parameters
    ----------
    max_workers : int
        Upper bound on concurrent verifications.
    kind : str, default="thread"
        ``"thread"`` or ``"process"``.
    timeout : float, optional
        Seconds to wait for one verification before giving up.
    """

    def __init__(self, max_workers: int, kind: str = "thread", timeout: Optional[float] = None) -> None:
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1", config_key="MAX_WORKERS")

        self.max_workers = max_workers
        self.kind = kind
        self.timeout = timeout
        self._executor: Executor = self._create_executor(kind, max_workers)
        self._closed = False

        logger.info("VerificationPool started", kind=kind, max_workers=max_workers)

    @staticmethod
    def _create_executor(kind: str, max_workers: int) -> Executor:
        if kind == "thread":
            return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pramaan-verify")
        if kind == "process":
            return ProcessPoolExecutor(max_workers=max_workers)
        raise ConfigurationError(
            "verifier pool must be 'thread' or 'process'",
            config_key="VERIFIER_POOL",
            config_value=kind,
        )

    def run(self, func: Callable[..., T], *args: Any) -> T:
        """Run ``func(*args)`` on the pool and wait for its result."""
        if self._closed:
            raise RuntimeError("VerificationPool is closed")
        future = self._executor.submit(func, *args)
        return future.result(timeout=self.timeout)

    def close(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait)
        logger.info("VerificationPool stopped", kind=self.kind)

    def __enter__(self) -> "VerificationPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
