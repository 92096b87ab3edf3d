import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ReconcileScheduler(ABC):
    """Abstract base class for reconcile schedulers"""

    @abstractmethod
    def schedule_reconcile(self, name: str, countdown: float = 0) -> str:
        """
        Schedule one reconcile pass of a pipeline

        Args:
            name: Pipeline name
            countdown: Seconds to wait before running

        Returns:
            Task ID for tracking
        """
        pass


class LocalReconcileScheduler(ReconcileScheduler):
    """
    In-process due-time queue for the CLI run loop and tests.

    A pipeline has at most one pending entry; scheduling it again keeps the
    earlier due time.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._queue: List[Tuple[float, int, str]] = []
        self._due = {}
        self._counter = itertools.count()

    def schedule_reconcile(self, name: str, countdown: float = 0) -> str:
        due = self._clock() + max(countdown or 0, 0)
        if name in self._due and self._due[name] <= due:
            return f"local_{name}"
        self._due[name] = due
        heapq.heappush(self._queue, (due, next(self._counter), name))
        logger.debug(f"Scheduled reconcile of {name} in {countdown}s")
        return f"local_{name}"

    def pop_due(self) -> List[str]:
        """Remove and return every pipeline whose due time has passed"""
        now = self._clock()
        names = []
        while self._queue and self._queue[0][0] <= now:
            due, _, name = heapq.heappop(self._queue)
            # skip entries superseded by an earlier due time
            if self._due.get(name) != due:
                continue
            del self._due[name]
            names.append(name)
        return names

    def next_due_in(self) -> Optional[float]:
        if not self._due:
            return None
        return max(min(self._due.values()) - self._clock(), 0)

    def __len__(self):
        return len(self._due)

    def run_pending(self, controller) -> int:
        """Reconcile every due pipeline and schedule follow-ups from the results"""
        names = self.pop_due()
        for name in names:
            result = controller.reconcile(name)
            if result.requeue:
                self.schedule_reconcile(name, result.requeue_after or 0)
        return len(names)


class CeleryReconcileScheduler(ReconcileScheduler):
    """Celery implementation of ReconcileScheduler"""

    def schedule_reconcile(self, name: str, countdown: float = 0) -> str:
        from xjoin.tasks.celery_tasks import reconcile_pipeline_task

        task = reconcile_pipeline_task.apply_async(args=[name], countdown=countdown or 0)
        logger.debug(f"Scheduled reconcile task {task.id} for pipeline {name} in {countdown}s")
        return task.id


def create_reconcile_scheduler(scheduler_type: str = "celery") -> ReconcileScheduler:
    if scheduler_type == "local":
        return LocalReconcileScheduler()
    if scheduler_type == "celery":
        return CeleryReconcileScheduler()
    raise ValueError(f"Unknown scheduler type: {scheduler_type}")
