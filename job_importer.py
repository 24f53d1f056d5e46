import threading
import uuid
from copy import deepcopy
from datetime import date

import pandas as pd

from ai_extractor import EXTRACTED_FIELDS, us_date
from logger_config import get_logger
from repositories.job_repo import BackendRequestError, NotFoundError

logger = get_logger("import")

DRAFT_PENDING = "pending"
DRAFT_SAVING = "saving"


def to_iso_date(value):
    if not value:
        return None
    parsed = pd.to_datetime(str(value).strip(), errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.date().isoformat()


def draft_to_job_row(draft, created_by):
    row = {
        "job_date": to_iso_date(draft.get("date")),
        "lot_number": draft.get("lot_number"),
        "created_by": created_by,
    }
    for name in ("company_name", "address", "assets", "comments", "contact_name", "contact_detail"):
        row[name] = draft.get(name) or None
    return row


class ImportSession:
    """Review list for one admin: extracted drafts waiting for approve/reject."""

    def __init__(self, user_id):
        self.user_id = user_id
        self.drafts = []
        self.batch_id = None
        self._lock = threading.RLock()

    def load_extracted(self, extracted, today=None):
        today_str = us_date(today or date.today())
        drafts = []
        for index, item in enumerate(extracted):
            draft = {name: item.get(name) for name in EXTRACTED_FIELDS}
            if not draft.get("date"):
                draft["date"] = today_str
            issues = []
            if not draft.get("date"):
                issues.append("missing_date")
            if not draft.get("lot_number"):
                issues.append("missing_lot")
            draft.update({
                "temp_id": f"J{index + 1}-{uuid.uuid4().hex[:8]}",
                "issues": issues,
                "status": DRAFT_PENDING,
            })
            drafts.append(draft)
        with self._lock:
            self.drafts = drafts
            self.batch_id = None
        return deepcopy(drafts)

    def record_batch(self, repo, source_type, raw_text, extracted):
        """Keep the raw input and extracted rows in job_import_batches / job_import_rows."""
        try:
            batch = repo.create_import_batch(source_type, raw_text, self.user_id)
            repo.insert_import_rows([
                {"batch_id": batch["id"], "extracted": item, "is_selected": True}
                for item in extracted
            ])
        except BackendRequestError as exc:
            logger.warning(f"[IMPORT] Failed to record import batch for user={self.user_id}: {exc}")
            return None
        with self._lock:
            self.batch_id = batch["id"]
        return batch["id"]

    def list_drafts(self):
        with self._lock:
            return deepcopy(self.drafts)

    def _find(self, temp_id):
        for draft in self.drafts:
            if draft["temp_id"] == temp_id:
                return draft
        return None

    def _set_status(self, temp_id, status):
        with self._lock:
            draft = self._find(temp_id)
            if draft:
                draft["status"] = status

    def approve(self, temp_id, repo):
        """Insert one job row, then drop the draft. The draft goes back to pending on failure."""
        with self._lock:
            draft = self._find(temp_id)
            if draft is None:
                raise NotFoundError(f"Draft {temp_id} not found")
            if draft["status"] == DRAFT_SAVING:
                raise ValueError(f"Draft {temp_id} is already being saved")
            draft["status"] = DRAFT_SAVING
            row = draft_to_job_row(draft, self.user_id)

        try:
            job = repo.insert_job(row)
        except BackendRequestError:
            self._set_status(temp_id, DRAFT_PENDING)
            raise

        with self._lock:
            self.drafts = [d for d in self.drafts if d["temp_id"] != temp_id]
        logger.info(f"[IMPORT] Draft {temp_id} saved as job {job.get('id')}")
        return job

    def reject(self, temp_id):
        with self._lock:
            before = len(self.drafts)
            self.drafts = [d for d in self.drafts if d["temp_id"] != temp_id]
            return len(self.drafts) != before

    def approve_all(self, repo):
        with self._lock:
            pending = [d["temp_id"] for d in self.drafts if d["status"] == DRAFT_PENDING]

        saved = []
        failures = []
        for temp_id in pending:
            try:
                saved.append(self.approve(temp_id, repo))
            except (BackendRequestError, NotFoundError, ValueError) as exc:
                failures.append({"temp_id": temp_id, "message": str(exc)})
        logger.info(f"[IMPORT] Approve all: saved={len(saved)} failed={len(failures)}")
        return {"saved": saved, "failures": failures, "remaining": self.list_drafts()}


class ImportSessionRegistry:
    def __init__(self):
        self._sessions = {}
        self._lock = threading.Lock()

    def get(self, user_id):
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = ImportSession(user_id)
                self._sessions[user_id] = session
            return session
