"""
Bounded-concurrency dispatch of remote calls.

A fixed worker pool runs the dispatched units. Each unit must first obtain a
permit from the admission limiter of its call class, so the number of
in-flight remote calls per class is capped independently of the pool size.
"""

import time
import threading
import logging
from concurrent.futures import ThreadPoolExecutor, Future, wait as futures_wait
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

PERMIT_POLL_SECONDS = 0.25


class DispatchTimeout(TimeoutError):
    """Raised when a unit did not produce a result within its timeout."""
    pass


class DispatchInterrupted(Exception):
    """Raised when a unit's wait for a permit was interrupted."""
    pass


class AdmissionLimiter:
    """Counting permit gate for one class of remote calls."""

    def __init__(self, name: str, capacity: int):
        if capacity < 1:
            raise ValueError(f"Limiter {name} capacity must be >= 1")
        self.name = name
        self.capacity = capacity
        self._semaphore = threading.BoundedSemaphore(capacity)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    def acquire(self, cancelled: threading.Event, closing: threading.Event) -> None:
        """Block until a permit is available; raise DispatchInterrupted if told to stop."""
        while True:
            if closing.is_set():
                raise DispatchInterrupted(f"Dispatcher shut down while waiting for a {self.name} permit")
            if cancelled.is_set():
                raise DispatchInterrupted(f"Unit cancelled while waiting for a {self.name} permit")
            if self._semaphore.acquire(timeout=PERMIT_POLL_SECONDS):
                break
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)

    def release(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._semaphore.release()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak


class _Permit:
    """Scoped permit: released on every exit path of the ``with`` block."""

    def __init__(self, limiter: AdmissionLimiter, cancelled: threading.Event, closing: threading.Event):
        self.limiter = limiter
        self.cancelled = cancelled
        self.closing = closing

    def __enter__(self):
        self.limiter.acquire(self.cancelled, self.closing)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.limiter.release()
        return False


class DispatchHandle:
    """A dispatched unit: its future, deadline and cancellation flag."""

    def __init__(self, key: Any, future: Future, deadline: float, cancelled: threading.Event):
        self.key = key
        self.future = future
        self.deadline = deadline
        self.cancelled = cancelled


class TaskOutcome:
    """Result of one dispatched unit after the join."""

    def __init__(self, key: Any, value: Any = None, error: Optional[BaseException] = None,
                 completed: bool = True):
        self.key = key
        self.value = value
        self.error = error
        self.completed = completed

    @property
    def ok(self) -> bool:
        return self.completed and self.error is None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, DispatchTimeout)

    def __repr__(self):
        return f"TaskOutcome(key={self.key!r}, ok={self.ok}, error={self.error!r})"


class PhaseResult:
    """Outcomes of a batch of units joined together."""

    def __init__(self, outcomes: List[TaskOutcome], phase_timed_out: bool):
        self.outcomes = outcomes
        self.phase_timed_out = phase_timed_out

    @property
    def succeeded(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if not o.ok]


class BoundedDispatcher:
    """
    Runs units of work on a fixed pool under per-class admission limiters.

    Args:
        max_workers: Worker pool size
        limits: Mapping of call class name to permit capacity
        task_timeout: Seconds a unit may take, counted from submission
        clock: Monotonic time source
    """

    def __init__(self, max_workers: int = 24, limits: Optional[Dict[str, int]] = None,
                 task_timeout: float = 600.0, clock: Callable[[], float] = time.monotonic):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers
        self.task_timeout = task_timeout
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='guest-sync')
        self._closing = threading.Event()
        self.limiters: Dict[str, AdmissionLimiter] = {}
        for name, capacity in (limits or {}).items():
            self.add_limiter(name, capacity)

    def add_limiter(self, name: str, capacity: int) -> AdmissionLimiter:
        limiter = AdmissionLimiter(name, capacity)
        self.limiters[name] = limiter
        return limiter

    def submit(self, limiter_name: str, key: Any, func: Callable[..., Any], *args, **kwargs) -> DispatchHandle:
        """
        Dispatch ``func(*args, **kwargs)`` to the pool under ``limiter_name``.

        Raises:
            KeyError: If no limiter with that name exists
            RuntimeError: If the dispatcher is shut down
        """
        limiter = self.limiters[limiter_name]
        if self._closing.is_set():
            raise RuntimeError("Dispatcher is shut down")

        cancelled = threading.Event()

        def run_limited():
            with _Permit(limiter, cancelled, self._closing):
                return func(*args, **kwargs)

        future = self._executor.submit(run_limited)
        deadline = self._clock() + self.task_timeout
        return DispatchHandle(key, future, deadline, cancelled)

    def wait(self, handle: DispatchHandle, phase_deadline: Optional[float] = None) -> TaskOutcome:
        """
        Wait for one unit until its own deadline or the phase deadline.

        A unit that misses its own deadline is reported with DispatchTimeout.
        A unit still pending at the phase deadline is reported as not completed.
        Neither is aborted if already running; its late result is ignored.
        """
        deadline = handle.deadline
        phase_limited = phase_deadline is not None and phase_deadline < deadline
        if phase_limited:
            deadline = phase_deadline

        remaining = max(0.0, deadline - self._clock())
        done, _ = futures_wait([handle.future], timeout=remaining)
        if not done:
            handle.cancelled.set()
            handle.future.cancel()
            if phase_limited:
                return TaskOutcome(handle.key, completed=False,
                                   error=DispatchTimeout(f"Phase timeout reached before {handle.key} completed"))
            return TaskOutcome(handle.key, error=DispatchTimeout(
                f"Unit {handle.key} did not complete within {self.task_timeout:.0f}s"))

        try:
            return TaskOutcome(handle.key, value=handle.future.result())
        except Exception as e:
            return TaskOutcome(handle.key, error=e)

    def join(self, handles: Iterable[DispatchHandle], phase_timeout: Optional[float] = None) -> PhaseResult:
        """Wait for all handles, bounded overall by ``phase_timeout`` seconds."""
        phase_deadline = None if phase_timeout is None else self._clock() + phase_timeout
        outcomes = []
        phase_timed_out = False
        for handle in handles:
            outcome = self.wait(handle, phase_deadline)
            if not outcome.completed:
                phase_timed_out = True
            outcomes.append(outcome)
        return PhaseResult(outcomes, phase_timed_out)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and interrupt units still waiting for permits."""
        self._closing.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
