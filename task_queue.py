import queue
import threading
import time
import uuid
from collections import OrderedDict

from logger_config import get_logger

logger = get_logger("tasks")


class BackgroundTaskQueue:
    """
    Single worker thread: tasks run one at a time in submission order, which
    keeps outbound geocoding traffic serialized. Each task keeps a
    sequence-numbered event log for SSE consumers.
    """

    def __init__(self, worker_fn, max_retained=200):
        self.worker_fn = worker_fn
        self.max_retained = max_retained
        self._q = queue.Queue()
        self._tasks = OrderedDict()
        self._events = {}
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def submit(self, payload, owner=""):
        task_id = str(uuid.uuid4())
        record = {
            "task_id": task_id,
            "owner": owner,
            "status": "queued",
            "created_at": time.time(),
            "started_at": None,
            "ended_at": None,
            "result": None,
            "error": "",
        }
        with self._cond:
            self._tasks[task_id] = record
            self._events[task_id] = []
            self._append_event(task_id, "queued", "Task queued", {})
            self._prune()
        self._q.put((task_id, payload))
        return task_id

    def shutdown(self):
        self._stop.set()
        self._q.put(None)
        self._thread.join(timeout=2)

    def get_task(self, task_id):
        with self._cond:
            return dict(self._tasks.get(task_id, {}))

    def get_events_since(self, task_id, last_seq=0):
        with self._cond:
            return [e for e in self._events.get(task_id, []) if e["seq"] > last_seq]

    def wait_for_events(self, task_id, last_seq=0, timeout=15):
        with self._cond:
            self._cond.wait_for(
                lambda: any(e["seq"] > last_seq for e in self._events.get(task_id, [])) or self._stop.is_set(),
                timeout=timeout
            )
            return [e for e in self._events.get(task_id, []) if e["seq"] > last_seq]

    def emit(self, task_id, event_type, message, data=None):
        with self._cond:
            self._append_event(task_id, event_type, message, data or {})

    def _append_event(self, task_id, event_type, message, data):
        rows = self._events.setdefault(task_id, [])
        seq = rows[-1]["seq"] + 1 if rows else 1
        rows.append({
            "seq": seq,
            "ts": time.time(),
            "type": event_type,
            "message": message,
            "data": data,
        })
        self._cond.notify_all()

    def _prune(self):
        while len(self._tasks) > self.max_retained:
            oldest_id, oldest = next(iter(self._tasks.items()))
            if oldest["status"] in {"queued", "running"}:
                break
            self._tasks.pop(oldest_id, None)
            self._events.pop(oldest_id, None)

    def _run(self):
        while not self._stop.is_set():
            item = self._q.get()
            if not item:
                continue
            task_id, payload = item
            with self._cond:
                task = self._tasks.get(task_id)
                if not task:
                    continue
                task["status"] = "running"
                task["started_at"] = time.time()
                self._append_event(task_id, "running", "Task started", {})
            try:
                result = self.worker_fn(task_id, payload, self.emit)
                with self._cond:
                    task["result"] = result
                    task["status"] = "success" if result.get("success") else "failed"
                    task["ended_at"] = time.time()
                    self._append_event(task_id, "complete", result.get("message", "Task completed"), {"result": result})
            except Exception as exc:
                logger.exception(f"[TASK] {task_id} failed")
                with self._cond:
                    task["status"] = "failed"
                    task["error"] = str(exc)
                    task["ended_at"] = time.time()
                    self._append_event(task_id, "error", f"Task failed: {exc}", {})
