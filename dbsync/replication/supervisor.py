"""
Replication Supervisor - owns the periodic tasks of a running engine.

Each task key (``LeaderToFollower_orders``, ``SchemaSync_orders``,
``cleanup``...) maps to one periodic task with its own busy flag:
- a ticker thread fires every interval and dispatches the tick to a shared
  bounded worker pool
- a tick is dispatched only after the key's busy flag is acquired; if the
  previous tick of that key is still running the new tick is skipped
  (no queuing, no catch-up)
- the flag is released when the tick finishes, whether it succeeded or raised
- exceptions never leave the tick; one failing key does not affect another
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    SCHEDULED = 'scheduled'
    PAUSED = 'paused'
    STOPPED = 'stopped'


@dataclass
class PeriodicTask:
    """A scheduled callable and its single-flight bookkeeping."""
    key: str
    interval: float
    func: Callable[[], Any]
    state: TaskState = TaskState.SCHEDULED
    busy: bool = False
    runs: int = 0
    skipped: int = 0
    failures: int = 0
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    thread: Optional[threading.Thread] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'state': self.state.value,
            'interval_seconds': self.interval,
            'busy': self.busy,
            'runs': self.runs,
            'skipped': self.skipped,
            'failures': self.failures,
            'last_started': self.last_started.isoformat() if self.last_started else None,
            'last_finished': self.last_finished.isoformat() if self.last_finished else None,
            'last_error': self.last_error,
        }


class ReplicationSupervisor:
    """
    Table of key -> (cancellable periodic task + busy flag).

    State machine per key: scheduled -> paused -> scheduled (resume) and any
    state -> stopped (removed from the table). The busy flag belongs to the
    key, not to the task object: a tick still running from before a pause,
    stop or restart keeps the key busy for the task that replaces it.
    """

    def __init__(self, max_workers: int = 16, logger: Optional[logging.Logger] = None,
                 on_skip: Optional[Callable[[str], None]] = None):
        """
        Args:
            max_workers: Size of the worker pool running ticks
            logger: Injected logger
            on_skip: Called with the key whenever a tick is skipped
        """
        self.logger = logger or logging.getLogger(__name__)
        self.max_workers = max_workers
        self.on_skip = on_skip
        self._lock = threading.Lock()
        self._tasks: Dict[str, PeriodicTask] = {}
        self._running: Set[str] = set()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ==========================================
    # Lifecycle
    # ==========================================

    def start(self, key: str, interval_seconds: float, func: Callable[[], Any],
              run_immediately: bool = True) -> PeriodicTask:
        """
        Schedule ``func`` every ``interval_seconds`` under ``key``.

        An existing task with the same key is stopped first.
        """
        if interval_seconds <= 0:
            raise ValueError(f"Interval for {key} must be positive")
        self.stop(key)

        with self._lock:
            task = PeriodicTask(key=key, interval=float(interval_seconds), func=func, busy=key in self._running)
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='dbsync')
            self._tasks[key] = task
        self._start_ticker(task, run_immediately)
        self.logger.info(f"[{key}] Scheduled every {interval_seconds:g}s")
        return task

    def pause(self, key: str) -> bool:
        """Cancel the ticker of ``key``; a tick already running finishes normally."""
        with self._lock:
            task = self._tasks.get(key)
            if task is None or task.state != TaskState.SCHEDULED:
                return False
            task.state = TaskState.PAUSED
            task.stop_event.set()
        self.logger.info(f"[{key}] Paused")
        return True

    def resume(self, key: str, run_immediately: bool = True) -> bool:
        """Recreate a paused task; a tick still in flight keeps the key busy."""
        with self._lock:
            old = self._tasks.get(key)
            if old is None or old.state != TaskState.PAUSED:
                return False
            task = PeriodicTask(key=key, interval=old.interval, func=old.func, busy=key in self._running)
            self._tasks[key] = task
        self._start_ticker(task, run_immediately)
        self.logger.info(f"[{key}] Resumed")
        return True

    def stop(self, key: Optional[str] = None) -> None:
        """
        Stop one key, or every key when ``key`` is None.

        In-flight ticks are allowed to finish; nothing is interrupted.
        """
        with self._lock:
            keys = [key] if key is not None else list(self._tasks)
            stopped = []
            for task_key in keys:
                task = self._tasks.pop(task_key, None)
                if task is not None:
                    task.state = TaskState.STOPPED
                    task.stop_event.set()
                    stopped.append(task_key)
            executor = None
            if key is None and self._executor is not None:
                executor, self._executor = self._executor, None

        if executor is not None:
            executor.shutdown(wait=False)
        for task_key in stopped:
            self.logger.info(f"[{task_key}] Stopped")

    # ==========================================
    # Ticks
    # ==========================================

    def _start_ticker(self, task: PeriodicTask, run_immediately: bool) -> None:
        thread = threading.Thread(
            target=self._ticker,
            args=(task, run_immediately),
            name=f"dbsync-ticker-{task.key}",
            daemon=True,
        )
        task.thread = thread
        thread.start()

    def _ticker(self, task: PeriodicTask, run_immediately: bool) -> None:
        if run_immediately and not task.stop_event.is_set():
            self._dispatch(task)
        while not task.stop_event.wait(task.interval):
            self._dispatch(task)

    def _try_acquire(self, task: PeriodicTask) -> bool:
        with self._lock:
            if task.key in self._running or task.state != TaskState.SCHEDULED:
                task.skipped += 1
                skipped = True
            else:
                self._running.add(task.key)
                task.busy = True
                task.last_started = datetime.now()
                skipped = False
        if skipped:
            self.logger.debug(f"[{task.key}] Previous run still in progress, skipping tick")
            if self.on_skip:
                self.on_skip(task.key)
        return not skipped

    def _release(self, task: PeriodicTask, error: Optional[Exception]) -> None:
        with self._lock:
            self._running.discard(task.key)
            task.busy = False
            current = self._tasks.get(task.key)
            if current is not None:
                current.busy = False
            task.runs += 1
            task.last_finished = datetime.now()
            if error is not None:
                task.failures += 1
                task.last_error = str(error)

    def _run_acquired(self, task: PeriodicTask) -> None:
        error = None
        try:
            task.func()
        except Exception as e:
            error = e
            self.logger.error(f"[{task.key}] Tick failed: {e}", exc_info=True)
        finally:
            self._release(task, error)

    def _dispatch(self, task: PeriodicTask) -> None:
        if not self._try_acquire(task):
            return
        with self._lock:
            executor = self._executor
        if executor is None:
            self._release(task, None)
            return
        try:
            executor.submit(self._run_acquired, task)
        except RuntimeError:
            # pool already shut down by stop()
            self._release(task, None)

    def run_once(self, key: str) -> bool:
        """
        Run one tick of ``key`` on the calling thread.

        Returns:
            False if the tick was skipped because the key was busy or not
            scheduled, True once the tick has run
        """
        with self._lock:
            task = self._tasks.get(key)
        if task is None or not self._try_acquire(task):
            return False
        self._run_acquired(task)
        return True

    # ==========================================
    # Introspection
    # ==========================================

    def is_busy(self, key: str) -> bool:
        with self._lock:
            return key in self._running

    def get_task(self, key: str) -> Optional[PeriodicTask]:
        with self._lock:
            return self._tasks.get(key)

    @property
    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._tasks)

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {key: task.to_dict() for key, task in sorted(self._tasks.items())}
