import logging
import threading
import time
from uuid import uuid4

from keeper.channels import RefreshCancelled
from keeper.log import log_event

_MAX_FINISHED_TASKS = 200


class BackgroundTask:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __init__(self, name):
        self.id = uuid4().hex
        self.name = name
        self.status = self.RUNNING
        self.result = None
        self.error = None
        self.created_at = time.time()
        self.finished_at = None
        self.cancel_event = threading.Event()
        self.done_event = threading.Event()

    def cancel(self):
        self.cancel_event.set()

    def wait(self, timeout=None):
        return self.done_event.wait(timeout)

    @property
    def done(self):
        return self.done_event.is_set()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class BackgroundTasks:
    """Registry of one-off background jobs the HTTP layer can poll or cancel."""

    def __init__(self):
        self._tasks = {}
        self._lock = threading.Lock()

    def submit(self, name, fn):
        """Run ``fn(cancel_event)`` on its own thread and return its handle."""
        task = BackgroundTask(name)
        with self._lock:
            self._tasks[task.id] = task
            self._prune_locked()
        thread = threading.Thread(target=self._run, args=(task, fn), name=f"task-{name}", daemon=True)
        thread.start()
        log_event("info", event="task_started", task_id=task.id, name=name)
        return task

    def _run(self, task, fn):
        try:
            task.result = fn(task.cancel_event)
            task.status = task.CANCELLED if task.cancel_event.is_set() else task.COMPLETED
        except RefreshCancelled as exc:
            task.status = task.CANCELLED
            task.error = str(exc)
        except Exception as exc:
            logging.exception("Background task %s failed", task.name)
            task.status = task.FAILED
            task.error = str(exc) or exc.__class__.__name__
        finally:
            task.finished_at = time.time()
            task.done_event.set()
            log_event("info", event="task_finished", task_id=task.id, name=task.name, status=task.status)

    def get(self, task_id):
        with self._lock:
            return self._tasks.get(task_id)

    def cancel(self, task_id):
        task = self.get(task_id)
        if task is None:
            return None
        task.cancel()
        return task

    def _prune_locked(self):
        finished = [task for task in self._tasks.values() if task.done]
        if len(finished) <= _MAX_FINISHED_TASKS:
            return
        finished.sort(key=lambda task: task.finished_at or 0)
        for task in finished[: len(finished) - _MAX_FINISHED_TASKS]:
            self._tasks.pop(task.id, None)
