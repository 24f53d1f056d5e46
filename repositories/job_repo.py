from abc import ABC, abstractmethod


class BackendRequestError(RuntimeError):
    """A call to the hosted data service failed (transport error or HTTP >= 400)."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(LookupError):
    """A job, draft, task, user or conflict the caller asked for does not exist."""


class JobRepo(ABC):
    def for_user(self, access_token):
        """Return a repo whose calls run with the given user's credentials."""
        return self

    @abstractmethod
    def get_user_for_token(self, access_token):
        raise NotImplementedError

    @abstractmethod
    def list_jobs(self, job_date=None, job_ids=None, order="job_date.asc", limit=None):
        raise NotImplementedError

    @abstractmethod
    def insert_job(self, row):
        raise NotImplementedError

    @abstractmethod
    def update_job(self, job_id, patch):
        raise NotImplementedError

    @abstractmethod
    def delete_all_jobs(self):
        raise NotImplementedError

    @abstractmethod
    def list_assignments(self, job_ids=None, user_id=None):
        raise NotImplementedError

    @abstractmethod
    def insert_assignments(self, rows):
        raise NotImplementedError

    @abstractmethod
    def update_assignment_status(self, job_id, user_id, status):
        raise NotImplementedError

    @abstractmethod
    def delete_assignments(self, job_ids, user_ids=None):
        raise NotImplementedError

    @abstractmethod
    def list_profiles(self, ids=None, status=None, role=None):
        raise NotImplementedError

    @abstractmethod
    def get_profile(self, user_id):
        raise NotImplementedError

    @abstractmethod
    def update_profile(self, user_id, patch):
        raise NotImplementedError

    @abstractmethod
    def list_push_subscriptions(self):
        raise NotImplementedError

    @abstractmethod
    def delete_push_subscription(self, subscription_id):
        raise NotImplementedError

    @abstractmethod
    def replace_push_subscription(self, user_id, endpoint, keys, user_agent=""):
        raise NotImplementedError

    @abstractmethod
    def create_import_batch(self, source_type, raw_text, created_by):
        raise NotImplementedError

    @abstractmethod
    def insert_import_rows(self, rows):
        raise NotImplementedError

    @abstractmethod
    def delete_all_import_batches(self):
        raise NotImplementedError

    @abstractmethod
    def create_dashboard_share(self, share_name, expiration_hours):
        raise NotImplementedError

    @abstractmethod
    def get_shared_dashboard_data(self, share_token, target_date):
        raise NotImplementedError
