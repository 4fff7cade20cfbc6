#!/usr/bin/env python3
"""
settings_manager.py — Configuration for the hard link audit

Two ways to configure a run:
- CLI: a config.env file (KEY=VALUE) plus the process environment.
  Variables already set in the environment win over the file.
- WebUI: a JSON settings file in CONFIG_DIR, seeded from the environment on
  first run and editable from the settings page.

Both end up as a Settings value. Missing required settings are reported all
at once through ConfigError.
"""

from __future__ import annotations

import json
import logging
import os
from copy import deepcopy
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values

from path_mapping import PathReconciler
from servarr_client import ServarrClient, ServarrError, ServarrType, build_client


def setup_logging(verbose: bool = False, log_dir: Optional[str] = None) -> logging.Logger:
    """Setup console (+ optional file) logging for the linkarr logger tree."""
    logger = logging.getLogger("linkarr")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    # Clear existing handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    # Console handler; user-facing lines are printed by report.Reporter
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.WARNING)
    ch.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(ch)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        log_file = path / f"linkarr_{datetime.now().strftime('%Y%m%d')}.log"
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(fh)
        logger.debug(f"Logging initialized - file: {log_file}")

    return logger


LOG = logging.getLogger("linkarr.settings")

TRUE_VALUES = {"1", "true", "yes", "on"}


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_VALUES


class ConfigError(Exception):
    """Required configuration is missing."""

    def __init__(self, missing: List[str], config_file: Optional[Path] = None):
        self.missing = list(missing)
        self.config_file = config_file
        super().__init__(f"Missing required configuration: {' '.join(self.missing)}")


# =============================================================================
# SETTINGS VALUE
# =============================================================================

# Environment name -> Settings field
ENV_KEYS = {
    "SONARR_URL": "sonarr_url",
    "SONARR_API_KEY": "sonarr_api_key",
    "RADARR_URL": "radarr_url",
    "RADARR_API_KEY": "radarr_api_key",
    "DOWNLOADS_PATH": "downloads_path",
    "MEDIA_PATH": "media_path",
    "MOVIES_DOWNLOAD_SUBDIR": "movies_download_subdir",
    "TV_DOWNLOAD_SUBDIR": "tv_download_subdir",
    "MOVIES_MEDIA_SUBDIR": "movies_media_subdir",
    "TV_MEDIA_SUBDIR": "tv_media_subdir",
    "REPORT_DIR": "report_dir",
    "VERBOSE": "verbose",
    "DOCKER_PATH_MAP_MOVIES": "path_map_movies",
    "DOCKER_PATH_MAP_TV": "path_map_tv",
    "DOCKER_PATH_MAP_DOWNLOADS": "path_map_downloads",
    "RESOLVE_SOURCES": "resolve_sources",
    "JSON_REPORT": "json_report",
    "API_TIMEOUT": "api_timeout",
    "LOG_DIR": "log_dir",
}

REQUIRED_KEYS = ("SONARR_URL", "SONARR_API_KEY", "RADARR_URL", "RADARR_API_KEY",
                 "DOWNLOADS_PATH", "MEDIA_PATH")


@dataclass
class Settings:
    sonarr_url: str = ""
    sonarr_api_key: str = ""
    radarr_url: str = ""
    radarr_api_key: str = ""
    downloads_path: str = ""
    media_path: str = ""
    movies_download_subdir: str = "movies"
    tv_download_subdir: str = "tv"
    movies_media_subdir: str = "movies"
    tv_media_subdir: str = "tv"
    report_dir: str = "./reports"
    verbose: bool = False
    path_map_movies: str = ""
    path_map_tv: str = ""
    path_map_downloads: str = ""
    resolve_sources: bool = False
    json_report: bool = False
    api_timeout: int = 30
    log_dir: str = ""

    @classmethod
    def from_env(cls, env: Mapping[str, Optional[str]]) -> "Settings":
        s = cls()
        for key, attr in ENV_KEYS.items():
            value = env.get(key)
            if value is None or value == "":
                continue
            if attr in ("verbose", "resolve_sources", "json_report"):
                setattr(s, attr, parse_bool(value))
            elif attr == "api_timeout":
                try:
                    s.api_timeout = int(value)
                except ValueError:
                    LOG.warning(f"Invalid API_TIMEOUT {value!r}, using {s.api_timeout}")
            else:
                setattr(s, attr, str(value))
        return s

    def to_env(self) -> Dict[str, str]:
        env = {}
        for key, attr in ENV_KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, bool):
                value = "true" if value else "false"
            env[key] = str(value)
        return env

    def missing(self) -> List[str]:
        return [key for key in REQUIRED_KEYS if not getattr(self, ENV_KEYS[key])]

    def validate(self, config_file: Optional[Path] = None) -> "Settings":
        missing = self.missing()
        if missing:
            raise ConfigError(missing, config_file)
        return self

    # --- derived paths -------------------------------------------------------

    @property
    def movies_media_dir(self) -> Path:
        return Path(self.media_path) / self.movies_media_subdir

    @property
    def tv_media_dir(self) -> Path:
        return Path(self.media_path) / self.tv_media_subdir

    @property
    def movies_download_dir(self) -> Path:
        return Path(self.downloads_path) / self.movies_download_subdir

    @property
    def tv_download_dir(self) -> Path:
        return Path(self.downloads_path) / self.tv_download_subdir

    def reconciler(self) -> PathReconciler:
        return PathReconciler.from_values(
            movies=self.path_map_movies, tv=self.path_map_tv, downloads=self.path_map_downloads,
        )

    def radarr_client(self) -> ServarrClient:
        return build_client(ServarrType.RADARR, self.radarr_url, self.radarr_api_key, self.api_timeout)

    def sonarr_client(self) -> ServarrClient:
        return build_client(ServarrType.SONARR, self.sonarr_url, self.sonarr_api_key, self.api_timeout)


def read_env(config_file: Optional[Path] = None,
             environ: Optional[Mapping[str, str]] = None) -> Dict[str, Optional[str]]:
    """config.env values overlaid with the process environment."""
    values: Dict[str, Optional[str]] = {}
    if config_file is not None and config_file.is_file():
        values.update(dotenv_values(config_file))
        LOG.debug(f"Loaded configuration file {config_file}")
    env = os.environ if environ is None else environ
    for key in ENV_KEYS:
        if env.get(key):
            values[key] = env[key]
    return values


def load_settings(config_file: Optional[Path] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    return Settings.from_env(read_env(config_file, environ))


# =============================================================================
# WEBUI SETTINGS STORE
# =============================================================================

DEFAULT_SETTINGS = {
    "general": {
        "downloads_path": "",
        "media_path": "",
        "movies_download_subdir": "movies",
        "tv_download_subdir": "tv",
        "movies_media_subdir": "movies",
        "tv_media_subdir": "tv",
        "report_dir": "/reports",
        "verbose": False,
        "resolve_sources": False,
        "json_report": True,
    },
    "sonarr": {
        "url": "",
        "api_key": "",
    },
    "radarr": {
        "url": "",
        "api_key": "",
    },
    "path_mappings": {
        "movies": "",
        "tv": "",
        "downloads": "",
    },
    "web": {
        "auth_enabled": False,
        "username": "",
        "password": "",
    },
}


def mask_key(key: str) -> str:
    return f"{key[:4]}...{key[-4:]}" if len(key) > 8 else "****"


class SettingsManager:
    """Thread-safe settings management with JSON persistence."""

    def __init__(self, config_dir: str = "/config"):
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.settings_file = self.config_dir / "settings.json"
        self._lock = RLock()
        self._settings: Dict[str, Any] = {}
        self._load()

    def _load(self):
        """Load settings from file or create defaults."""
        with self._lock:
            if self.settings_file.exists():
                try:
                    with open(self.settings_file, "r", encoding="utf-8") as f:
                        self._settings = json.load(f)
                    LOG.info(f"Loaded settings from {self.settings_file}")
                    self._migrate_if_needed()
                except (OSError, json.JSONDecodeError) as e:
                    LOG.error(f"Failed to load settings: {e}")
                    self._settings = deepcopy(DEFAULT_SETTINGS)
            else:
                LOG.info("No settings file found, creating from environment/defaults")
                self._settings = deepcopy(DEFAULT_SETTINGS)
                self._import_from_env()
                self._save()

    def _save(self) -> bool:
        try:
            with open(self.settings_file, "w", encoding="utf-8") as f:
                json.dump(self._settings, f, indent=2, ensure_ascii=False)
            LOG.debug("Settings saved")
            return True
        except OSError as e:
            LOG.error(f"Failed to save settings: {e}")
            return False

    def _migrate_if_needed(self):
        """Ensure all default keys exist."""
        changed = False
        for section, defaults in DEFAULT_SETTINGS.items():
            if section not in self._settings:
                self._settings[section] = deepcopy(defaults)
                changed = True
            else:
                for key, value in defaults.items():
                    if key not in self._settings[section]:
                        self._settings[section][key] = deepcopy(value)
                        changed = True
        if changed:
            self._save()

    def _import_from_env(self):
        """Seed settings from environment variables (and CONFIG_DIR/config.env)."""
        LOG.info("Importing settings from environment variables")
        s = load_settings(self.config_dir / "config.env")
        g = self._settings["general"]
        for key in g:
            if hasattr(s, key):
                g[key] = getattr(s, key)
        if s.report_dir == Settings.report_dir:
            g["report_dir"] = DEFAULT_SETTINGS["general"]["report_dir"]
        self._settings["sonarr"].update(url=s.sonarr_url, api_key=s.sonarr_api_key)
        self._settings["radarr"].update(url=s.radarr_url, api_key=s.radarr_api_key)
        self._settings["path_mappings"].update(
            movies=s.path_map_movies, tv=s.path_map_tv, downloads=s.path_map_downloads,
        )
        if os.environ.get("AUTH_USER") and os.environ.get("AUTH_PASS"):
            self._settings["web"].update(
                auth_enabled=True, username=os.environ["AUTH_USER"], password=os.environ["AUTH_PASS"],
            )

    def get_all(self) -> Dict[str, Any]:
        """Get all settings with masked sensitive data."""
        with self._lock:
            result = deepcopy(self._settings)
            for section in ("sonarr", "radarr"):
                key = result.get(section, {}).pop("api_key", "")
                result[section]["api_key_masked"] = mask_key(key) if key else ""
            if result.get("web", {}).pop("password", ""):
                result["web"]["password_masked"] = "********"
            return result

    def get_all_raw(self) -> Dict[str, Any]:
        with self._lock:
            return deepcopy(self._settings)

    def get(self, section: str, key: Optional[str] = None) -> Any:
        with self._lock:
            if section not in self._settings:
                return None
            if key is None:
                return deepcopy(self._settings[section])
            return deepcopy(self._settings[section].get(key))

    def update(self, section: str, data: Dict[str, Any]) -> bool:
        """Update known keys of a section. An empty api_key/password keeps the stored one."""
        with self._lock:
            if section not in self._settings:
                return False
            current = self._settings[section]
            for key, value in data.items():
                if key not in DEFAULT_SETTINGS[section]:
                    continue
                if key in ("api_key", "password") and not value:
                    continue
                current[key] = value
            LOG.info(f"Updated settings section: {section}")
            return self._save()

    def to_settings(self) -> Settings:
        with self._lock:
            cfg = self._settings
            general = cfg.get("general", {})
            pm = cfg.get("path_mappings", {})
            known = {f.name for f in fields(Settings)}
            s = Settings(**{k: v for k, v in general.items() if k in known})
            s.sonarr_url = cfg.get("sonarr", {}).get("url", "")
            s.sonarr_api_key = cfg.get("sonarr", {}).get("api_key", "")
            s.radarr_url = cfg.get("radarr", {}).get("url", "")
            s.radarr_api_key = cfg.get("radarr", {}).get("api_key", "")
            s.path_map_movies = pm.get("movies", "")
            s.path_map_tv = pm.get("tv", "")
            s.path_map_downloads = pm.get("downloads", "")
            return s

    def test_connection(self, app_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Test connection to Sonarr/Radarr and discover root folders."""
        LOG.info(f"Testing {app_type} connection")
        if app_type not in ("sonarr", "radarr"):
            return {"success": False, "message": f"Unknown app type: {app_type}"}

        stored = self.get(app_type) or {}
        url = config.get("url") or stored.get("url", "")
        api_key = config.get("api_key") or stored.get("api_key", "")
        if not url:
            return {"success": False, "message": "URL is required"}
        if not api_key:
            return {"success": False, "message": "API key is required"}

        client = build_client(ServarrType(app_type), url, api_key, timeout=15)
        if not client.test_connection():
            result = {"success": False, "message": client.instance.last_error or "Connection failed"}
        else:
            try:
                roots = client.get_root_folders()
            except ServarrError as e:
                LOG.debug(f"Root folder lookup failed: {e}")
                roots = []
            result = {
                "success": True,
                "message": f"Connected - v{client.instance.version}",
                "details": {"version": client.instance.version, "root_folders": roots},
            }
        LOG.info(f"Test result for {app_type}: {result.get('message')}")
        return result


# Global instance
_manager: Optional[SettingsManager] = None


def get_settings_manager(config_dir: str = "/config") -> SettingsManager:
    """Get or create the global settings manager."""
    global _manager
    if _manager is None:
        _manager = SettingsManager(config_dir)
    return _manager
