PENDING = "pending"
ON_WAY = "on_way"
ON_SITE = "on_site"
PICKED_UP = "picked_up"
DELIVERED = "delivered"

JOB_STATUSES = (PENDING, ON_WAY, ON_SITE, PICKED_UP, DELIVERED)
ACTIVE_STATUSES = frozenset({ON_WAY, ON_SITE})
CONFLICT_RESOLUTIONS = frozenset({PENDING, PICKED_UP})

ROLE_ADMIN = "admin"
ROLE_EMPLOYEE = "employee"
PROFILE_ROLES = (ROLE_ADMIN, ROLE_EMPLOYEE)

PROFILE_PENDING = "pending"
PROFILE_ACTIVE = "active"
PROFILE_STATUSES = (PROFILE_PENDING, PROFILE_ACTIVE)


def normalize_status(value):
    """Missing statuses read as pending, the backend default."""
    status = str(value or "").strip().lower()
    return status or PENDING


def is_valid_status(value):
    return str(value or "").strip().lower() in JOB_STATUSES


def is_active(value):
    return normalize_status(value) in ACTIVE_STATUSES
