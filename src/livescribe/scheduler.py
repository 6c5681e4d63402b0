"""
Single-threaded cooperative scheduler for the transcription pipeline.

Audio callbacks, recognizer callbacks and worker threads never touch pipeline
state directly: they post() into the scheduler inbox, and everything runs on
the scheduler's own thread in arrival order. Timers are explicit cancellable
tasks driven by an injectable clock, so tests can advance time without sleeping.
"""

import heapq
import itertools
import queue
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Optional

from .logger import get_logger, log_exception

logger = get_logger(__name__)


class ManualClock:
    """Clock that only moves when told to. Used by tests."""

    def __init__(self, start: float = 0.0):
        self.time = start

    def __call__(self) -> float:
        return self.time

    def advance(self, seconds: float) -> None:
        self.time += seconds


class ScheduledTask:
    """Handle for a timer created with call_later() or call_every()."""

    def __init__(self, due: float, callback: Callable, args: tuple, interval: Optional[float] = None):
        self.due = due
        self.callback = callback
        self.args = args
        self.interval = interval
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self):
        kind = f"every {self.interval}s" if self.interval else "once"
        return f"<ScheduledTask {getattr(self.callback, '__name__', self.callback)} due={self.due:.3f} {kind}>"


class _JobWorker:
    """One background thread running jobs in submission order."""

    def __init__(self, scheduler: "Scheduler"):
        self._scheduler = scheduler
        self._jobs: queue.Queue = queue.Queue()
        self._pending = 0
        self._idle = threading.Condition()
        self._thread: Optional[threading.Thread] = None

    def submit(self, job: Callable[[], Any], on_done: Callable[[Any, Optional[BaseException]], None]) -> None:
        with self._idle:
            self._pending += 1
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._loop, name="livescribe-worker", daemon=True)
            self._thread.start()
        self._jobs.put((job, on_done))

    def _loop(self):
        while True:
            item = self._jobs.get()
            if item is None:
                return
            job, on_done = item
            result, error = None, None
            try:
                result = job()
            except Exception as e:
                error = e
            self._scheduler.post(on_done, result, error)
            with self._idle:
                self._pending -= 1
                self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float]) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self):
        if self._thread is not None and self._thread.is_alive():
            self._jobs.put(None)
            self._thread.join(timeout=2.0)
        self._thread = None


class Scheduler:
    """
    Event inbox + timer heap, drained on one thread.

    Args:
        clock: Monotonic time source (defaults to time.monotonic)
        inline_jobs: Run run_in_worker() jobs synchronously on the calling
            thread instead of the background worker (completion is still posted)
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, inline_jobs: bool = False):
        self._clock = clock or time.monotonic
        self._inbox: queue.Queue = queue.Queue()
        self._timers: list = []
        self._timer_lock = threading.Lock()
        self._seq = itertools.count()
        self._inline_jobs = inline_jobs
        self._worker = _JobWorker(self)

        self._thread: Optional[threading.Thread] = None
        self._running = False

    def now(self) -> float:
        return self._clock()

    # --- producers (any thread) ---

    def post(self, callback: Callable, *args) -> None:
        """Queue callback(*args) to run on the scheduler thread."""
        self._inbox.put((callback, args))

    def call_later(self, delay: float, callback: Callable, *args) -> ScheduledTask:
        task = ScheduledTask(self.now() + max(0.0, delay), callback, args)
        self._push_timer(task)
        return task

    def call_every(self, interval: float, callback: Callable, *args, first_delay: Optional[float] = None) -> ScheduledTask:
        if interval <= 0:
            raise ValueError("interval must be positive")
        delay = interval if first_delay is None else first_delay
        task = ScheduledTask(self.now() + delay, callback, args, interval=interval)
        self._push_timer(task)
        return task

    def run_in_worker(self, job: Callable[[], Any], on_done: Callable[[Any, Optional[BaseException]], None]) -> None:
        """Run job() off the scheduler thread; on_done(result, error) is posted back."""
        if self._inline_jobs:
            result, error = None, None
            try:
                result = job()
            except Exception as e:
                error = e
            self.post(on_done, result, error)
            return
        self._worker.submit(job, on_done)

    def wait_for_jobs(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted worker job has finished (and posted its completion)."""
        if self._inline_jobs:
            return True
        return self._worker.wait_idle(timeout)

    def _push_timer(self, task: ScheduledTask):
        with self._timer_lock:
            heapq.heappush(self._timers, (task.due, next(self._seq), task))

    # --- consumer (scheduler thread) ---

    def _run(self, callback: Callable, args: tuple):
        try:
            callback(*args)
        except Exception as e:
            log_exception(e, f"in scheduled callback {getattr(callback, '__name__', callback)!r}")

    def drain_events(self) -> int:
        """Run every queued event (timers are left alone)."""
        processed = 0
        while True:
            try:
                callback, args = self._inbox.get_nowait()
            except queue.Empty:
                return processed
            self._run(callback, args)
            processed += 1

    def _pop_due_timer(self, now: float) -> Optional[ScheduledTask]:
        with self._timer_lock:
            while self._timers and self._timers[0][0] <= now:
                _, _, task = heapq.heappop(self._timers)
                if task.cancelled:
                    continue
                if task.interval:
                    task.due += task.interval
                    heapq.heappush(self._timers, (task.due, next(self._seq), task))
                return task
        return None

    def run_pending(self) -> int:
        """Run queued events, then every timer that is due. Returns the number of callbacks run."""
        processed = self.drain_events()
        now = self.now()
        while True:
            task = self._pop_due_timer(now)
            if task is None:
                break
            self._run(task.callback, task.args)
            processed += 1
            # Events posted by the timer run before the next timer
            processed += self.drain_events()
        return processed

    def next_due(self) -> Optional[float]:
        with self._timer_lock:
            while self._timers and self._timers[0][2].cancelled:
                heapq.heappop(self._timers)
            return self._timers[0][0] if self._timers else None

    def advance(self, seconds: float) -> None:
        """
        Move a ManualClock forward, firing timers at their due times in order.

        Only valid when the scheduler was built with a ManualClock.
        """
        if not isinstance(self._clock, ManualClock):
            raise RuntimeError("advance() requires a ManualClock")
        target = self._clock.time + seconds
        self.run_pending()
        while True:
            due = self.next_due()
            if due is None or due > target:
                break
            self._clock.time = max(self._clock.time, due)
            self.run_pending()
        self._clock.time = target
        self.run_pending()

    # --- background loop ---

    @property
    def is_running(self) -> bool:
        return self._running

    def in_scheduler_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def start(self) -> None:
        """Run the loop on a background thread."""
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="livescribe-scheduler", daemon=True)
        self._thread.start()

    def _loop(self):
        while self._running:
            due = self.next_due()
            timeout = 0.1 if due is None else min(0.1, max(0.0, due - self.now()))
            try:
                callback, args = self._inbox.get(timeout=timeout)
                self._run(callback, args)
            except queue.Empty:
                pass
            self.run_pending()

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._thread is not None and threading.current_thread() is not self._thread:
            self._thread.join(timeout=2.0)
        self._thread = None
        self._worker.shutdown()

    def invoke(self, callback: Callable, *args, timeout: Optional[float] = None):
        """
        Run callback on the scheduler thread and return its result.

        Calls directly when the loop is not running or we already are on it.
        """
        if not self._running or self.in_scheduler_thread():
            return callback(*args)

        future: Future = Future()

        def _call():
            try:
                future.set_result(callback(*args))
            except BaseException as e:
                future.set_exception(e)

        self.post(_call)
        return future.result(timeout=timeout)
