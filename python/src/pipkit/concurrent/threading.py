"""
threading.py

Small helpers around ThreadPoolExecutor for fan-out reads: probing the
interpreters of many venvs, or running several ``pip show`` calls at once.
Results come back in submission order with a bounded in-flight window.
"""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Generator, Hashable, Iterable, Iterator, List, Optional, Tuple

__all__ = ["Job", "JobResult", "JobThreadPoolExecutor", "run_jobs"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Job:
    """Immutable bundle describing a unit of work; ``key`` labels its result."""

    @classmethod
    def make(cls, func: Callable[..., Any], *args: Any, key: Hashable = None, **kwargs: Any) -> "Job":
        return cls(func=func, args=args, kwargs=kwargs, key=key)

    func: Callable[..., Any]
    args: Tuple[Any, ...] = field(default_factory=tuple)
    kwargs: Dict[str, Any] = field(default_factory=dict)
    key: Hashable = None

    def run(self) -> Any:
        return self.func(*self.args, **self.kwargs)


@dataclass(frozen=True, slots=True)
class JobResult:
    key: Hashable
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class JobThreadPoolExecutor(ThreadPoolExecutor):
    """ThreadPoolExecutor that consumes a Job iterable with a bounded in-flight window."""

    def submit_job(self, job: Job) -> Future:
        return self.submit(job.run)

    def _try_submit_next(self, it: Iterator[Job]) -> Optional[Tuple[Job, Future]]:
        try:
            job = next(it)
        except StopIteration:
            return None
        return job, self.submit_job(job)

    @staticmethod
    def _cancel_all(pairs: Iterable[Tuple[Job, Future]]) -> None:
        # Futures already running are not stopped by cancel().
        for _, f in pairs:
            if not f.done():
                f.cancel()

    def iter_ordered(
        self,
        jobs: Iterable[Job],
        *,
        max_in_flight: Optional[int] = None,
    ) -> Generator[Tuple[Job, Future], None, None]:
        """
        Submit ``jobs`` lazily and yield ``(job, future)`` pairs in submission order.

        Queued futures are cancelled when the caller stops iterating early.
        """
        if not max_in_flight:
            max_in_flight = self._max_workers * 2
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be > 0")

        it = iter(jobs)

        inflight: Deque[Tuple[Job, Future]] = deque()
        try:
            for _ in range(max_in_flight):
                pair = self._try_submit_next(it)
                if pair is None:
                    break
                inflight.append(pair)

            while inflight:
                head = inflight[0][1]
                if not head.done():
                    wait({head})

                yield inflight.popleft()

                pair = self._try_submit_next(it)
                if pair is not None:
                    inflight.append(pair)
        finally:
            self._cancel_all(inflight)


def run_jobs(jobs: Iterable[Job], *, max_workers: int = 4, name: str = "pipkit") -> List[JobResult]:
    """
    Run ``jobs`` on a private pool and collect results in submission order.

    Errors are captured per job rather than raised, so one failing probe
    does not hide the others.
    """
    results: List[JobResult] = []
    with JobThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix=name) as pool:
        for job, fut in pool.iter_ordered(jobs):
            error = fut.exception()
            if error is not None:
                logger.debug("run_jobs: job %r failed: %r", job.key, error)
                results.append(JobResult(key=job.key, error=error))
            else:
                results.append(JobResult(key=job.key, value=fut.result()))
    return results
