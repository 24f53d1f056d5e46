from logger_config import get_logger
from repositories.memory_job_repo import InMemoryJobRepo
from repositories.supabase_job_repo import SupabaseJobRepo

logger = get_logger("config")


def can_enable_supabase_repo(app_settings):
    return bool(app_settings.supabase_url and (app_settings.supabase_anon_key or app_settings.supabase_service_key))


def build_job_repo(app_settings):
    """
    Build the repository used for user-scoped calls.
    Requests run with the anon key plus the caller's access token so row-level
    security applies; the in-memory repo is the local fallback.
    """
    flags = app_settings.feature_flags
    if not getattr(flags, "use_supabase_db", False):
        logger.info("[CONFIG] USE_SUPABASE_DB is off. Using in-memory job repository.")
        return InMemoryJobRepo()

    if not can_enable_supabase_repo(app_settings):
        logger.warning(
            "[CONFIG] USE_SUPABASE_DB=true requested but SUPABASE_URL and an API key are missing. "
            "Falling back to in-memory job repository."
        )
        return InMemoryJobRepo()

    logger.info("[CONFIG] Using Supabase job repository.")
    return SupabaseJobRepo(
        supabase_url=app_settings.supabase_url,
        api_key=app_settings.supabase_anon_key or app_settings.supabase_service_key,
        timeout_seconds=app_settings.request_timeout_seconds,
    )


def build_service_repo(app_settings, user_repo):
    """
    Repository with service-role credentials, needed where RLS would hide other
    users' rows (push fan-out reads every subscription).
    """
    if not isinstance(user_repo, SupabaseJobRepo):
        return user_repo
    service_key = app_settings.supabase_service_key
    if not service_key:
        return None
    if service_key.startswith("sb_secret_"):
        logger.info("[CONFIG] Supabase service auth: using SUPABASE_SECRET_KEY.")
    return SupabaseJobRepo(
        supabase_url=app_settings.supabase_url,
        api_key=service_key,
        timeout_seconds=app_settings.request_timeout_seconds,
    )
