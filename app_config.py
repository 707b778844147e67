"""
Configuration for the report service.

Values come from (lowest to highest precedence) built-in defaults,
config.yaml, config.local.yaml and environment variables (a local .env is
loaded first so deployments can keep secrets out of the YAML files).
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

CONFIG_FILE = Path(os.environ.get("CONFIG_FILE", "config.yaml"))
CONFIG_LOCAL_FILE = Path(os.environ.get("CONFIG_LOCAL_FILE", "config.local.yaml"))

POSTCODE_POLICIES = {"reject", "store"}

# Placeholder identities until a real auth provider sits in front of the service.
DEFAULT_REPORTER_USER_ID = "d8c36489-f008-4022-9b51-df6469dc81eb"
DEFAULT_SYSTEM_USER_ID = "d8c36489-f008-4022-9b51-df6469dc81eb"
DEFAULT_SYNTHETIC_USER_ID = "f4b8320a-0fad-428a-abd5-9e885817551d"


@dataclass
class Settings:
    database_path: Path
    media_dir: Path
    media_base_url: str
    api_token: Optional[str]
    dashboard_user: Optional[str]
    dashboard_pass: Optional[str]
    dashboard_pin: Optional[str]
    openai_api_key: Optional[str]
    openai_base_url: str
    extraction_model: str
    summary_model: str
    transcription_model: str
    transcription_language: str
    ai_timeout_seconds: float
    transcription_timeout_seconds: float
    postcode_api_url: str
    place_search_url: str
    geocoder_timeout_seconds: float
    geocoder_user_agent: str
    geocode_cache_max_entries: int
    geocode_cache_ttl_seconds: Optional[float]
    unresolved_postcode_policy: str
    enable_summaries: bool
    reporter_user_id: str
    system_user_id: str
    synthetic_user_id: str
    web_host: str
    web_port: int


def deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = deep_merge(base.get(key), value)
        return merged
    # Lists and scalars: override wins
    return override


def load_config(config_file: Path = CONFIG_FILE, local_file: Path = CONFIG_LOCAL_FILE) -> Dict:
    """Load and merge the YAML config files. Missing files are fine."""
    base_config: Dict = {}
    local_config: Dict = {}

    if config_file.exists():
        with open(config_file, "r") as f:
            base_config = yaml.safe_load(f) or {}

    if local_file.exists():
        with open(local_file, "r") as f:
            local_config = yaml.safe_load(f) or {}

    if local_config:
        return deep_merge(base_config, local_config)  # type: ignore[return-value]
    return base_config


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def load_settings(config: Optional[Dict] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve settings from YAML sections overridden by environment variables."""
    if config is None:
        config = load_config()
    env = os.environ if environ is None else environ

    def pick(section: str, key: str, env_name: str, default=None):
        if env.get(env_name) not in (None, ""):
            return env[env_name]
        value = (config.get(section) or {}).get(key)
        return default if value is None else value

    policy = str(pick("submission", "unresolved_postcode_policy", "UNRESOLVED_POSTCODE_POLICY", "reject")).strip().lower()
    if policy not in POSTCODE_POLICIES:
        logger.warning(f"Unknown unresolved postcode policy '{policy}', using 'reject'")
        policy = "reject"

    ttl = pick("geocoding", "cache_ttl_seconds", "GEOCODE_CACHE_TTL_SECONDS", None)

    return Settings(
        database_path=Path(pick("storage", "database_path", "DATABASE_PATH", "data/reports.db")),
        media_dir=Path(pick("storage", "media_dir", "MEDIA_DIR", "data/media")),
        media_base_url=str(pick("storage", "media_base_url", "MEDIA_BASE_URL", "/media")).rstrip("/"),
        api_token=env.get("API_TOKEN") or None,
        dashboard_user=env.get("DASHBOARD_USER") or None,
        dashboard_pass=env.get("DASHBOARD_PASS") or None,
        dashboard_pin=env.get("DASHBOARD_PIN") or None,
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        openai_base_url=str(pick("ai", "base_url", "OPENAI_BASE_URL", "https://api.openai.com/v1")).rstrip("/"),
        extraction_model=str(pick("ai", "extraction_model", "EXTRACTION_MODEL", "gpt-4o-mini")),
        summary_model=str(pick("ai", "summary_model", "SUMMARY_MODEL", "gpt-4o-mini")),
        transcription_model=str(pick("ai", "transcription_model", "TRANSCRIPTION_MODEL", "whisper-1")),
        transcription_language=str(pick("ai", "transcription_language", "TRANSCRIPTION_LANGUAGE", "en")),
        ai_timeout_seconds=float(pick("ai", "timeout_seconds", "AI_TIMEOUT_SECONDS", 30)),
        transcription_timeout_seconds=float(pick("ai", "transcription_timeout_seconds", "TRANSCRIPTION_TIMEOUT_SECONDS", 60)),
        postcode_api_url=str(pick("geocoding", "postcode_api_url", "POSTCODE_API_URL", "https://api.postcodes.io")).rstrip("/"),
        place_search_url=str(pick("geocoding", "place_search_url", "PLACE_SEARCH_URL", "https://nominatim.openstreetmap.org/search")),
        geocoder_timeout_seconds=float(pick("geocoding", "timeout_seconds", "GEOCODER_TIMEOUT_SECONDS", 5)),
        geocoder_user_agent=str(pick(
            "geocoding",
            "user_agent",
            "GEOCODER_USER_AGENT",
            "CrimeReports/1.0 (community reporting; contact: admin@example.com)",
        )),
        geocode_cache_max_entries=int(pick("geocoding", "cache_max_entries", "GEOCODE_CACHE_MAX_ENTRIES", 5000)),
        geocode_cache_ttl_seconds=float(ttl) if ttl not in (None, "") else None,
        unresolved_postcode_policy=policy,
        enable_summaries=_as_bool(pick("ai", "enable_summaries", "ENABLE_SUMMARIES", True)),
        reporter_user_id=str(pick("identity", "reporter_user_id", "REPORTER_USER_ID", DEFAULT_REPORTER_USER_ID)),
        system_user_id=str(pick("identity", "system_user_id", "SYSTEM_USER_ID", DEFAULT_SYSTEM_USER_ID)),
        synthetic_user_id=str(pick("identity", "synthetic_user_id", "SYNTHETIC_USER_ID", DEFAULT_SYNTHETIC_USER_ID)),
        web_host=str(pick("server", "host", "WEB_HOST", "0.0.0.0")),
        web_port=int(pick("server", "port", "WEB_PORT", 8892)),
    )
