"""Configuration helpers for the alumni record store.

Environment variables provide the defaults, so a deployment can run purely
from its environment.  Local tooling can keep a JSON settings file next to
the user's other application data; values found there win.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from alumnistore.errors import StoreError

logger = logging.getLogger(__name__)


class SettingsError(StoreError):
    """Raised when the store configuration is incomplete or invalid."""


def _detect_base_directory() -> Path:
    override = os.environ.get("ALUMNISTORE_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return Path.home().resolve() / ".alumnistore"


APP_DIR: Path = _detect_base_directory()
DEFAULT_SETTINGS_PATH = os.getenv("ALUMNISTORE_SETTINGS", str(APP_DIR / "settings.json"))

DEVELOPMENT = "development"
PRODUCTION = "production"
DEV_CACHE_TTL_MS = 15_000
PROD_CACHE_TTL_MS = 0

DEFAULT_LIVE_TAB = "Profile-Live"
DEFAULT_MEDIA_TAB = "Profile-Media"
DEFAULT_CHANGES_TAB = "Profile-Changes"
DEFAULT_ALIASES_TAB = "Profile-Aliases"
DEFAULT_SOURCE_TAB = "Profile-Data"
DEFAULT_SLUGS_TAB = "Profile-Slugs"


def _env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _split_emails(raw: str) -> List[str]:
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def _default_ttl_ms(environment: str) -> int:
    return DEV_CACHE_TTL_MS if environment == DEVELOPMENT else PROD_CACHE_TTL_MS


@dataclass
class StoreSettings:
    spreadsheet_id: str = ""
    credentials_path: str = ""
    credentials_json: str = ""
    live_tab: str = DEFAULT_LIVE_TAB
    media_tab: str = DEFAULT_MEDIA_TAB
    changes_tab: str = DEFAULT_CHANGES_TAB
    aliases_tab: str = DEFAULT_ALIASES_TAB
    source_tab: str = DEFAULT_SOURCE_TAB
    slugs_tab: str = DEFAULT_SLUGS_TAB
    environment: str = PRODUCTION
    cache_ttl_ms: int = PROD_CACHE_TTL_MS
    retry_attempts: int = 3
    retry_base_delay_ms: int = 250
    admin_emails: List[str] = field(default_factory=list)
    log_level: str = "INFO"
    log_path: str = ""

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_ms / 1000.0

    def credentials_file(self) -> Path:
        path = Path(self.credentials_path).expanduser()
        if not path.exists():
            raise SettingsError(f"Credentials file not found: {path}")
        return path

    def require_spreadsheet(self) -> str:
        if not self.spreadsheet_id:
            raise SettingsError("Missing ALUMNI_SHEET_ID")
        return self.spreadsheet_id

    def to_json(self) -> Dict[str, object]:
        # Inline credentials are never persisted to disk.
        return {
            "spreadsheet_id": self.spreadsheet_id,
            "credentials_path": self.credentials_path,
            "live_tab": self.live_tab,
            "media_tab": self.media_tab,
            "changes_tab": self.changes_tab,
            "aliases_tab": self.aliases_tab,
            "source_tab": self.source_tab,
            "slugs_tab": self.slugs_tab,
            "environment": self.environment,
            "cache_ttl_ms": self.cache_ttl_ms,
            "retry_attempts": self.retry_attempts,
            "retry_base_delay_ms": self.retry_base_delay_ms,
            "admin_emails": list(self.admin_emails),
            "log_level": self.log_level,
            "log_path": self.log_path,
        }


def _environment_defaults() -> Dict[str, object]:
    environment = _env("ALUMNISTORE_ENV", PRODUCTION).lower()
    if environment not in {DEVELOPMENT, PRODUCTION}:
        environment = PRODUCTION
    ttl_raw = _env("ALUMNISTORE_CACHE_TTL_MS")
    return {
        "spreadsheet_id": _env("ALUMNI_SHEET_ID"),
        "credentials_path": _env("ALUMNISTORE_CREDENTIALS_PATH", str(APP_DIR / "credentials" / "service_account.json")),
        "live_tab": _env("ALUMNI_LIVE_TAB", DEFAULT_LIVE_TAB),
        "media_tab": _env("ALUMNI_MEDIA_TAB", DEFAULT_MEDIA_TAB),
        "changes_tab": _env("ALUMNI_CHANGES_TAB", DEFAULT_CHANGES_TAB),
        "aliases_tab": _env("ALUMNI_ALIASES_TAB", DEFAULT_ALIASES_TAB),
        "source_tab": _env("ALUMNI_SOURCE_TAB", DEFAULT_SOURCE_TAB),
        "slugs_tab": _env("ALUMNI_SLUGS_TAB", DEFAULT_SLUGS_TAB),
        "environment": environment,
        "cache_ttl_ms": ttl_raw or None,
        "retry_attempts": 3,
        "retry_base_delay_ms": 250,
        "admin_emails": _split_emails(_env("ADMIN_EMAILS")),
        "log_level": _env("ALUMNISTORE_LOG_LEVEL", "INFO").upper(),
        "log_path": _env("ALUMNISTORE_LOG_PATH", str(APP_DIR / "logs" / "alumnistore.log")),
    }


def _clamp_int(value: object, default: int, minimum: int, maximum: int) -> int:
    try:
        return max(minimum, min(maximum, int(value)))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _ensure_settings_file(path: str) -> Dict[str, object]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise SettingsError(f"Settings file {path} is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, Mapping):
        raise SettingsError(f"Settings file {path} must contain a JSON object")
    return dict(data)


def _merge(defaults: Mapping[str, object], data: Mapping[str, object]) -> Dict[str, object]:
    merged: Dict[str, object] = dict(defaults)
    for key, value in data.items():
        if key not in defaults:
            logger.debug("Ignoring unknown settings key %r", key)
            continue
        if key == "admin_emails":
            if isinstance(value, list):
                merged[key] = [str(item).strip().lower() for item in value if str(item).strip()]
            elif isinstance(value, str):
                merged[key] = _split_emails(value)
        elif key in {"cache_ttl_ms", "retry_attempts", "retry_base_delay_ms"}:
            merged[key] = value
        elif isinstance(value, str) and value.strip():
            merged[key] = value.strip()
    return merged


def load_store_settings(path: Optional[str] = None, *, use_file: bool = True) -> StoreSettings:
    """Return settings from the JSON file at ``path`` layered over the environment."""

    defaults = _environment_defaults()
    data = _ensure_settings_file(path or DEFAULT_SETTINGS_PATH) if use_file else {}
    merged = _merge(defaults, data)

    environment = str(merged["environment"]).lower()
    if environment not in {DEVELOPMENT, PRODUCTION}:
        environment = PRODUCTION

    return StoreSettings(
        spreadsheet_id=str(merged["spreadsheet_id"]),
        credentials_path=str(merged["credentials_path"]),
        credentials_json=_env("GCP_SA_JSON"),
        live_tab=str(merged["live_tab"]),
        media_tab=str(merged["media_tab"]),
        changes_tab=str(merged["changes_tab"]),
        aliases_tab=str(merged["aliases_tab"]),
        source_tab=str(merged["source_tab"]),
        slugs_tab=str(merged["slugs_tab"]),
        environment=environment,
        cache_ttl_ms=_clamp_int(merged["cache_ttl_ms"], _default_ttl_ms(environment), 0, 3_600_000),
        retry_attempts=_clamp_int(merged["retry_attempts"], 3, 1, 8),
        retry_base_delay_ms=_clamp_int(merged["retry_base_delay_ms"], 250, 0, 30_000),
        admin_emails=list(merged["admin_emails"]),  # type: ignore[arg-type]
        log_level=str(merged["log_level"]).upper(),
        log_path=str(merged["log_path"]),
    )


def save_store_settings(settings: StoreSettings, path: Optional[str] = None) -> None:
    target = path or DEFAULT_SETTINGS_PATH
    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(target, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "DEVELOPMENT",
    "PRODUCTION",
    "SettingsError",
    "StoreSettings",
    "load_store_settings",
    "save_store_settings",
]
