"""
Small in-process periodic scheduler.

Tasks are plain descriptors; a single driver thread decides when each one is due and hands
the tick to a fixed-size thread pool. A tick that raises is logged and counted, nothing else:
the task keeps its schedule and sibling tasks never notice.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable

from billing.utils.metrics import scheduled_task_duration_seconds, scheduled_task_runs_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledTask:
    name: str
    interval_seconds: float
    handler: Callable[[], Any]
    initial_delay_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")


class TaskScheduler:
    def __init__(self, max_workers: int = 2, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_workers = max_workers
        self._clock = clock
        self._tasks: dict[str, ScheduledTask] = {}
        self._next_run: dict[str, float] = {}
        self._in_flight: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._driver: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._driver is not None and self._driver.is_alive()

    def add_task(self, task: ScheduledTask) -> None:
        if self.running:
            raise RuntimeError("cannot add tasks to a running scheduler")
        if task.name in self._tasks:
            raise ValueError(f"duplicate task name: {task.name}")
        self._tasks[task.name] = task

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reconciliation")
        now = self._clock()
        self._next_run = {name: now + t.initial_delay_seconds for name, t in self._tasks.items()}
        self._driver = threading.Thread(target=self._run_loop, name="reconciliation-scheduler", daemon=True)
        self._driver.start()
        logger.info("scheduler_started", extra={"count": len(self._tasks)})

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            now = self._clock()
            for name, task in self._tasks.items():
                if self._next_run[name] <= now:
                    self._dispatch(task)
                    # fixed rate; missed ticks are not replayed in a burst
                    next_run = self._next_run[name] + task.interval_seconds
                    if next_run <= now:
                        next_run = now + task.interval_seconds
                    self._next_run[name] = next_run
            wake_at = min(self._next_run.values(), default=now + 1.0)
            self._stop.wait(timeout=max(wake_at - self._clock(), 0.0))

    def _dispatch(self, task: ScheduledTask) -> Future | None:
        with self._lock:
            previous = self._in_flight.get(task.name)
            if previous is not None and not previous.done():
                scheduled_task_runs_total.labels(task=task.name, outcome="skipped").inc()
                logger.warning("scheduled_task_skipped_still_running", extra={"task": task.name})
                return None
            if self._executor is None or self._stop.is_set():
                return None
            future = self._executor.submit(self._execute, task)
            self._in_flight[task.name] = future
            return future

    def _execute(self, task: ScheduledTask) -> Any:
        start = time.time()
        try:
            result = task.handler()
        except Exception:
            scheduled_task_runs_total.labels(task=task.name, outcome="error").inc()
            logger.exception("scheduled_task_failed", extra={"task": task.name})
            return None
        finally:
            scheduled_task_duration_seconds.labels(task=task.name).observe(time.time() - start)
        scheduled_task_runs_total.labels(task=task.name, outcome="success").inc()
        logger.info(
            "scheduled_task_done",
            extra={"task": task.name, "duration_ms": int((time.time() - start) * 1000)},
        )
        return result

    def run_now(self, name: str) -> Future | None:
        """Trigger one tick outside the schedule. None if the task is already running."""
        if self._executor is None:
            raise RuntimeError("scheduler is not started")
        return self._dispatch(self._tasks[name])

    def shutdown(self, timeout: float = 30.0) -> bool:
        """
        Stop issuing ticks, wait up to `timeout` seconds in total for the driver and in-flight ticks,
        then abandon the rest.
        Returns True if every in-flight tick finished in time.
        """
        deadline = time.monotonic() + timeout
        self._stop.set()
        if self._driver is not None:
            self._driver.join(timeout=timeout)
            self._driver = None
        if self._executor is None:
            return True
        with self._lock:
            pending = [f for f in self._in_flight.values() if not f.done()]
        _, not_done = wait(pending, timeout=max(deadline - time.monotonic(), 0.0))
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._executor = None
        self._in_flight.clear()
        if not_done:
            logger.warning("scheduler_forced_shutdown", extra={"count": len(not_done)})
            return False
        logger.info("scheduler_stopped")
        return True
