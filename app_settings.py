import configparser
import os
from dataclasses import dataclass


def _env_bool(name, default=False):
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class FeatureFlags:
    use_supabase_db: bool
    use_osrm_routing: bool
    record_import_batches: bool


@dataclass(frozen=True)
class AppSettings:
    config: configparser.ConfigParser
    credentials: configparser.SectionProxy
    settings: configparser.SectionProxy
    feature_flags: FeatureFlags

    def credential(self, config_key, env_name, fallback=""):
        env_value = os.getenv(env_name, "").strip()
        if env_value:
            return env_value
        return self.credentials.get(config_key, fallback=fallback).strip()

    def advanced(self, name, fallback=""):
        return self.config.get("Advanced", name, fallback=fallback)

    def advanced_float(self, name, fallback):
        return self.config.getfloat("Advanced", name, fallback=fallback)

    def advanced_int(self, name, fallback):
        return self.config.getint("Advanced", name, fallback=fallback)

    @property
    def supabase_url(self):
        return self.credential("Supabase_URL", "SUPABASE_URL").rstrip("/")

    @property
    def supabase_anon_key(self):
        return self.credential("Supabase_Anon_Key", "SUPABASE_ANON_KEY")

    @property
    def supabase_service_key(self):
        """Prefer modern Supabase secret key, fallback to legacy service role key."""
        return (
            os.getenv("SUPABASE_SECRET_KEY", "").strip()
            or self.credential("Supabase_Service_Role_Key", "SUPABASE_SERVICE_ROLE_KEY")
        )

    @property
    def gemini_api_key(self):
        return self.credential("Gemini_API_Key", "GEMINI_API_KEY")

    @property
    def vapid_public_key(self):
        return self.credential("VAPID_Public_Key", "VAPID_PUBLIC_KEY")

    @property
    def vapid_private_key(self):
        return self.credential("VAPID_Private_Key", "VAPID_PRIVATE_KEY")

    @property
    def vapid_mailto(self):
        return self.credential("VAPID_Mailto", "VAPID_MAILTO", "mailto:admin@example.com")

    @property
    def webhook_secret(self):
        return self.credential("Webhook_Secret", "FMLOGISTICS_WEBHOOK_SECRET")

    @property
    def log_dir(self):
        return self.settings.get("log_dir", fallback="logs").strip() or "logs"

    @property
    def request_timeout_seconds(self):
        return self.settings.getint("request_timeout_seconds", fallback=20)

    @property
    def gemini_models(self):
        raw = self.advanced("gemini_models", "gemini-1.5-flash, gemini-1.5-pro, gemini-1.0-pro")
        return [name.strip() for name in raw.split(",") if name.strip()]

    @property
    def bounding_box(self):
        return (
            self.advanced_float("bbox_min_lat", 42.0),
            self.advanced_float("bbox_max_lat", 46.0),
            self.advanced_float("bbox_min_lng", -83.0),
            self.advanced_float("bbox_max_lng", -75.0),
        )


def load_feature_flags():
    return FeatureFlags(
        use_supabase_db=_env_bool("USE_SUPABASE_DB", default=False),
        use_osrm_routing=_env_bool("USE_OSRM_ROUTING", default=True),
        record_import_batches=_env_bool("RECORD_IMPORT_BATCHES", default=True),
    )


def build_app_settings(parser, config_path="config.ini"):
    if "Credentials" not in parser or "Settings" not in parser:
        raise RuntimeError(
            f"Missing required sections in config file: {config_path}. "
            "Expected [Credentials] and [Settings]."
        )
    if "Advanced" not in parser:
        parser["Advanced"] = {}
    return AppSettings(
        config=parser,
        credentials=parser["Credentials"],
        settings=parser["Settings"],
        feature_flags=load_feature_flags(),
    )


def load_app_settings():
    config_path = os.getenv("FMLOGISTICS_CONFIG_PATH", "config.ini")
    parser = configparser.ConfigParser()
    parser.read(config_path)
    return build_app_settings(parser, config_path=config_path)
