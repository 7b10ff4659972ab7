from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Optional, Set

from core.spectral import compute_spectrum

from .cross_channel import compute_transfer_function, estimate_delay
from .settings import DEFAULT_OFFLOAD_THRESHOLD, AnalysisSettings
from .time_frequency import compute_spectrogram

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Result of a job whose output was discarded by :meth:`AnalysisWorker.cancel_all`."""


def _run_fft(payload: Mapping[str, Any]):
    return compute_spectrum(payload.get("signal"), payload.get("time"), payload.get("options"))


def _run_stft(payload: Mapping[str, Any]):
    return compute_spectrogram(payload.get("signal"), payload.get("time"), payload.get("options"))


def _run_correlation(payload: Mapping[str, Any]):
    options = dict(payload.get("options") or {})
    return estimate_delay(
        payload.get("time"),
        payload.get("x"),
        payload.get("y"),
        selection=options.get("selection"),
        max_lag_seconds=options.get("max_lag_seconds"),
    )


def _run_transfer(payload: Mapping[str, Any]):
    return compute_transfer_function(
        payload.get("input"), payload.get("output"), payload.get("time"), payload.get("options")
    )


JOB_HANDLERS: Dict[str, Callable[[Mapping[str, Any]], Any]] = {
    "fft": _run_fft,
    "stft": _run_stft,
    "correlation": _run_correlation,
    "transfer": _run_transfer,
}


class AnalysisWorker:
    """
    Runs the pure analysis functions on a thread pool.

    Results are identical to calling the functions inline; hosts use
    :meth:`should_offload` to decide when a series is large enough to be worth
    moving off the calling thread.
    """

    def __init__(self, *, threshold: int = DEFAULT_OFFLOAD_THRESHOLD, max_workers: int = 2) -> None:
        self.threshold = int(threshold)
        self._executor: ThreadPoolExecutor | None = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)), thread_name_prefix="AnalysisWorker"
        )
        self._futures: Set[Future] = set()
        self._lock = threading.Lock()
        self._generation = 0
        self._job_seq = 0

    @classmethod
    def from_settings(cls, settings: AnalysisSettings) -> "AnalysisWorker":
        """Worker sized by ``settings.max_workers`` with its offload threshold."""
        return cls(threshold=settings.offload_threshold, max_workers=settings.max_workers)

    def should_offload(self, length: int) -> bool:
        if isinstance(length, bool) or not isinstance(length, int):
            return False
        return self._executor is not None and length > self.threshold

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def submit(self, job_type: str, payload: Optional[Mapping[str, Any]] = None) -> Future:
        handler = JOB_HANDLERS.get(job_type)
        if handler is None:
            logger.warning("Rejected analysis job of unknown type %r", job_type)
            raise ValueError(f"Unknown job type {job_type!r}; expected one of {sorted(JOB_HANDLERS)}")
        with self._lock:
            executor = self._executor
            if executor is None:
                logger.warning("Rejected %s job: worker is shut down", job_type)
                raise RuntimeError("AnalysisWorker has been shut down")
            self._job_seq += 1
            job_id = f"job-{self._job_seq}"
            generation = self._generation
            future = executor.submit(self._run, job_id, generation, handler, dict(payload or {}))
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _run(self, job_id: str, generation: int, handler, payload: Dict[str, Any]):
        result = handler(payload)
        with self._lock:
            stale = generation != self._generation
        if stale:
            logger.debug("Discarding result of cancelled %s", job_id)
            raise JobCancelled(job_id)
        return result

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def cancel_all(self) -> int:
        """Cancel queued jobs and discard the results of running ones."""
        with self._lock:
            self._generation += 1
            futures = list(self._futures)
        cancelled = 0
        for fut in futures:
            if fut.cancel():
                cancelled += 1
        if futures:
            logger.debug("Cancelled %d of %d pending analysis jobs", cancelled, len(futures))
        return cancelled

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is None:
            return
        self.cancel_all()
        executor.shutdown(wait=wait)

    def __enter__(self) -> "AnalysisWorker":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()


__all__ = ["AnalysisWorker", "JobCancelled", "JOB_HANDLERS"]
