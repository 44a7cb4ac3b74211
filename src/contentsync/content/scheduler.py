"""Single-consumer task scheduler with two priority tiers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, List, Optional, Protocol

from .errors import ServerShutdownError
from .tasks import GenericTask, TaskOwner

LOGGER = logging.getLogger(__name__)


class Executor(Protocol):
    """External process started on behalf of a task."""

    def kill(self) -> bool: ...


class TaskProcessor(Protocol):
    """Secondary queue owning tasks of :attr:`TaskOwner.TASK_PROCESSOR`."""

    def invalidate_task(self, task_id: int) -> None: ...


class TaskScheduler:
    """Drain the normal and low priority queues on one worker thread.

    The normal queue always drains before the low priority one; tasks run with
    the scheduler lock released so foreground callers can enqueue concurrently.

    Attributes:
        context: Object handed to :meth:`GenericTask.run`.
    """

    def __init__(self, context: Any = None) -> None:
        self.context = context
        self._lock = threading.RLock()
        self._condition = threading.Condition(self._lock)
        self._queue: Deque[GenericTask] = deque()
        self._low_queue: Deque[GenericTask] = deque()
        self._current: Optional[GenericTask] = None
        self._next_id = 1
        self._shutdown = False
        self._thread: Optional[threading.Thread] = None
        self._executors: List[Executor] = []
        self._task_processor: Optional[TaskProcessor] = None

    @property
    def lock(self) -> threading.RLock:
        """Re-entrant lock guarding queues and registry bookkeeping."""
        return self._lock

    @property
    def is_shutdown(self) -> bool:
        with self._lock:
            return self._shutdown

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._loop, name="ContentTaskThread", daemon=True
            )
            self._thread.start()

    def add_task(self, task: GenericTask, low_priority: bool = False) -> int:
        """Assign the next task ID and queue ``task``.

        Returns:
            int: The assigned task ID.
        """
        with self._condition:
            task.id = self._next_id
            self._next_id += 1
            (self._low_queue if low_priority else self._queue).append(task)
            LOGGER.debug("Queued task %d: %s", task.id, task.description)
            self._condition.notify_all()
            return task.id

    @property
    def current_task(self) -> Optional[GenericTask]:
        with self._lock:
            return self._current

    def task_list(self) -> List[GenericTask]:
        """Return the running task followed by every valid queued task."""
        with self._lock:
            tasks: List[GenericTask] = []
            if self._current is not None:
                tasks.append(self._current)
            tasks.extend(task for task in self._queue if task.valid)
            tasks.extend(task for task in self._low_queue if task.valid)
            return tasks

    def invalidate_task(
        self, task_id: int, owner: TaskOwner = TaskOwner.CONTENT_MANAGER
    ) -> None:
        """Invalidate ``task_id`` and every task whose parent it is."""
        if owner == TaskOwner.TASK_PROCESSOR:
            if self._task_processor is not None:
                self._task_processor.invalidate_task(task_id)
            return
        self.invalidate_where(lambda task: task.id == task_id or task.parent_id == task_id)

    def invalidate_where(self, predicate: Callable[[GenericTask], bool]) -> int:
        """Invalidate the current and queued tasks accepted by ``predicate``.

        Returns:
            int: Number of tasks invalidated.
        """
        count = 0
        with self._lock:
            candidates = list(self._queue) + list(self._low_queue)
            if self._current is not None:
                candidates.insert(0, self._current)
            for task in candidates:
                if task.valid and predicate(task):
                    task.invalidate()
                    count += 1
        if count:
            LOGGER.debug("Invalidated %d task(s)", count)
        return count

    def set_task_processor(self, processor: Optional[TaskProcessor]) -> None:
        with self._lock:
            self._task_processor = processor

    def register_executor(self, executor: Executor) -> None:
        with self._lock:
            self._executors.append(executor)

    def unregister_executor(self, executor: Executor) -> None:
        with self._lock:
            # shutdown() kills whatever is still registered
            if self._shutdown:
                return
            if executor in self._executors:
                self._executors.remove(executor)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until both queues are empty and no task runs.

        Returns:
            bool: ``False`` when the timeout expired first.
        """
        with self._condition:
            return self._condition.wait_for(
                lambda: self._shutdown
                or (not self._queue and not self._low_queue and self._current is None),
                timeout,
            )

    def shutdown(self) -> None:
        with self._condition:
            self._shutdown = True
            executors = list(self._executors)
            self._condition.notify_all()
            thread = self._thread
            self._thread = None
        for executor in executors:
            try:
                executor.kill()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to kill executor %r", executor)
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _loop(self) -> None:
        while True:
            with self._condition:
                while not self._shutdown and not self._queue and not self._low_queue:
                    self._condition.notify_all()
                    self._condition.wait()
                if self._shutdown:
                    break
                task = self._queue.popleft() if self._queue else self._low_queue.popleft()
                self._current = task

            stop = False
            try:
                if task.valid:
                    task.run(self.context)
                else:
                    LOGGER.debug("Dropping invalidated task %d: %s", task.id, task.description)
                    task.discard(self.context)
            except ServerShutdownError:
                stop = True
            except Exception:  # noqa: BLE001
                LOGGER.exception("Exception caught in task %s", task.description)
            finally:
                with self._condition:
                    self._current = None
                    if stop:
                        self._shutdown = True
                    self._condition.notify_all()
            if stop:
                break
        LOGGER.debug("Content task thread stopped")


__all__ = ["Executor", "TaskProcessor", "TaskScheduler"]
