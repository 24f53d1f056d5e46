# realtime_sync.py - Apply row-change events for `jobs` to every open board
#
# Accepts both the realtime channel payload ({eventType, new, old}) and the
# database webhook payload ({type, table, record, old_record}).

import threading
import time

from logger_config import get_logger
from repositories.job_repo import BackendRequestError

logger = get_logger("realtime")

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
JOBS_TABLE = "jobs"


def normalize_change(payload):
    """Return (event_type, table, new_row, old_row) or None when the payload is not a row change."""
    if not isinstance(payload, dict):
        return None
    event_type = str(payload.get("eventType") or payload.get("type") or "").strip().upper()
    if event_type not in {INSERT, UPDATE, DELETE}:
        return None
    table = str(payload.get("table") or JOBS_TABLE).strip()
    new_row = payload.get("new")
    if new_row is None:
        new_row = payload.get("record")
    old_row = payload.get("old")
    if old_row is None:
        old_row = payload.get("old_record")
    return event_type, table, new_row or {}, old_row or {}


class ChangeFeed:
    """Bounded, sequence-numbered log of applied changes for SSE listeners."""

    def __init__(self, max_events=500):
        self.max_events = max_events
        self._events = []
        self._seq = 0
        self._cond = threading.Condition()

    def append(self, event_type, job_id, data=None):
        with self._cond:
            self._seq += 1
            self._events.append({
                "seq": self._seq,
                "ts": time.time(),
                "type": event_type,
                "job_id": job_id,
                "data": data or {},
            })
            if len(self._events) > self.max_events:
                self._events = self._events[-self.max_events:]
            self._cond.notify_all()
            return self._seq

    @property
    def last_seq(self):
        with self._cond:
            return self._seq

    def events_since(self, last_seq=0):
        with self._cond:
            return [e for e in self._events if e["seq"] > last_seq]

    def wait_for_events(self, last_seq=0, timeout=15):
        with self._cond:
            self._cond.wait_for(lambda: self._seq > last_seq, timeout=timeout)
            return [e for e in self._events if e["seq"] > last_seq]


class RealtimeSyncAdapter:
    def __init__(self, registry, feed=None):
        self.registry = registry
        self.feed = feed or ChangeFeed()

    def handle(self, payload):
        change = normalize_change(payload)
        if change is None:
            raise ValueError("Payload is not a row change event")
        event_type, table, new_row, old_row = change
        if table != JOBS_TABLE:
            return {"event": event_type, "table": table, "ignored": True}

        job_id = (old_row if event_type == DELETE else new_row).get("id")
        logger.info(f"[REALTIME] {event_type} job={job_id}")

        touched = 0
        for board in self.registry.all():
            if event_type == UPDATE:
                touched += 1 if board.patch_job(new_row) else 0
            elif event_type == DELETE:
                touched += 1 if board.remove_job(job_id) else 0
            else:
                # Cannot tell cheaply whether the new row matches this board's filters.
                try:
                    board.refresh()
                    touched += 1
                except BackendRequestError as exc:
                    logger.error(f"[REALTIME] Refetch failed for user={board.user_id}: {exc}")

        self.feed.append(event_type, job_id, {"row": new_row if event_type != DELETE else old_row})
        return {"event": event_type, "table": table, "job_id": job_id, "boards_touched": touched, "ignored": False}
