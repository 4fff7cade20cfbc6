#!/usr/bin/env python3
"""
servarr_client.py — Read-only Sonarr/Radarr API client for the hard link audit

Provides what the audit needs from the two media managers:
- List all media items with a file (movies, or episode files joined to series)
- Reachability probe (system/status)
- Import history lookup to find the original download of a file (source hint)

A failed request raises ServarrError; callers decide whether that means
"fall back to filesystem scan" or "skip this series". There are no retries.

API Reference Documentation:
- Sonarr API v3: https://sonarr.tv/docs/api/
  - GET /api/v3/series - All series
  - GET /api/v3/episodefile?seriesId={id} - Episode files for a series
  - GET /api/v3/history/series?seriesId={id}&eventType={type} - Series history
  - GET /api/v3/rootfolder - Root folders
  - GET /api/v3/system/status - System status/version

- Radarr API v3: https://radarr.video/docs/api/
  - GET /api/v3/movie - All movies
  - GET /api/v3/moviefile?movieId={id} - Movie files
  - GET /api/v3/history/movie?movieId={id}&eventType={type} - Movie history
  - GET /api/v3/rootfolder - Root folders
  - GET /api/v3/system/status - System status/version
"""

from __future__ import annotations

import json
import logging
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

LOG = logging.getLogger("linkarr.servarr")

IMPORT_EVENT = "downloadFolderImported"


# =============================================================================
# ENUMS AND DATA CLASSES
# =============================================================================

class ServarrType(Enum):
    """Type of Servarr application."""
    SONARR = "sonarr"
    RADARR = "radarr"


class ConnectionStatus(Enum):
    """Connection status for an instance."""
    CONNECTED = "connected"
    FAILED = "failed"
    NOT_TESTED = "not_tested"
    AUTH_ERROR = "auth_error"
    TIMEOUT = "timeout"


class Category(Enum):
    """Kind of media item being audited. The value is the report label."""
    FILM = "FILM"
    EPISODE = "EPISODE"


@dataclass(frozen=True)
class MediaItem:
    """A movie or episode file as reported by Radarr/Sonarr."""
    media_id: int
    title: str
    path: Optional[str]
    category: Category
    parent_id: Optional[int] = None

    @property
    def has_file(self) -> bool:
        return bool(self.path)


class ServarrError(Exception):
    """A Sonarr/Radarr request failed (transport, HTTP status or payload)."""

    def __init__(self, service: str, reason: str, status: Optional[int] = None):
        super().__init__(f"{service}: {reason}")
        self.service = service
        self.reason = reason
        self.status = status


@dataclass
class ServarrInstance:
    """Connection settings for one Sonarr/Radarr service."""
    name: str
    url: str
    api_key: str
    app_type: ServarrType
    timeout: int = 30
    version: str = ""
    connection_status: ConnectionStatus = ConnectionStatus.NOT_TESTED
    last_error: str = ""

    def __post_init__(self):
        self.url = (self.url or "").strip().rstrip("/")
        if self.url and not self.url.startswith("http"):
            self.url = f"http://{self.url}"

    @classmethod
    def from_dict(cls, data: dict, app_type: ServarrType) -> "ServarrInstance":
        return cls(
            name=data.get("name") or app_type.value,
            url=data.get("url", ""),
            api_key=data.get("api_key", data.get("apikey", "")),
            app_type=app_type,
            timeout=int(data.get("timeout", 30)),
        )


# =============================================================================
# SERVARR CLIENT
# =============================================================================

class ServarrClient:
    """HTTP client for the Sonarr/Radarr v3 API."""

    def __init__(self, instance: ServarrInstance):
        self.instance = instance
        self._ssl_ctx = ssl.create_default_context()
        self._ssl_ctx.check_hostname = False
        self._ssl_ctx.verify_mode = ssl.CERT_NONE

    @property
    def name(self) -> str:
        return self.instance.name

    def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.instance.url}/api/v3/{endpoint}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        headers = {
            "X-Api-Key": self.instance.api_key,
            "Accept": "application/json",
        }
        req = urllib.request.Request(url, headers=headers, method="GET")
        ctx = self._ssl_ctx if url.startswith("https") else None

        try:
            with urllib.request.urlopen(req, timeout=self.instance.timeout, context=ctx) as response:
                content = response.read()
        except urllib.error.HTTPError as e:
            if e.code == 401:
                self.instance.connection_status = ConnectionStatus.AUTH_ERROR
                raise ServarrError(self.name, "Invalid API key", status=401) from e
            raise ServarrError(self.name, f"HTTP {e.code}: {e.reason}", status=e.code) from e
        except urllib.error.URLError as e:
            if "timed out" in str(e.reason).lower():
                self.instance.connection_status = ConnectionStatus.TIMEOUT
            raise ServarrError(self.name, f"Connection failed: {e.reason}") from e
        except (OSError, ValueError) as e:
            raise ServarrError(self.name, str(e)) from e

        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ServarrError(self.name, f"Invalid JSON: {e}") from e

    def _request_list(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[dict]:
        result = self._request(endpoint, params)
        if result is None:
            return []
        if isinstance(result, dict) and "records" in result:
            result = result["records"]
        if not isinstance(result, list):
            raise ServarrError(self.name, f"Unexpected payload for {endpoint}: {type(result).__name__}")
        return result

    def test_connection(self) -> bool:
        """Lightweight reachability probe. Never raises."""
        if not self.instance.api_key:
            self.instance.connection_status = ConnectionStatus.FAILED
            self.instance.last_error = "API key not set"
            return False
        try:
            status = self._request("system/status") or {}
        except ServarrError as e:
            if self.instance.connection_status not in (ConnectionStatus.AUTH_ERROR, ConnectionStatus.TIMEOUT):
                self.instance.connection_status = ConnectionStatus.FAILED
            self.instance.last_error = e.reason
            LOG.debug(f"[{self.name}] Probe failed: {e.reason}")
            return False

        self.instance.version = str(status.get("version", "unknown"))
        self.instance.connection_status = ConnectionStatus.CONNECTED
        self.instance.last_error = ""
        LOG.debug(f"[{self.name}] Connected: {self.instance.app_type.value} v{self.instance.version}")
        return True

    # --- raw endpoints -------------------------------------------------------

    def get_all_movies(self) -> List[dict]:
        return self._request_list("movie")

    def get_movie_files(self, movie_id: int) -> List[dict]:
        return self._request_list("moviefile", {"movieId": movie_id})

    def get_all_series(self) -> List[dict]:
        return self._request_list("series")

    def get_episode_files(self, series_id: int) -> List[dict]:
        return self._request_list("episodefile", {"seriesId": series_id})

    def get_root_folders(self) -> List[str]:
        return [rf.get("path", "") for rf in self._request_list("rootfolder") if rf.get("path")]

    def get_history(self, media_id: int, event_type: str = IMPORT_EVENT) -> List[dict]:
        if self.instance.app_type == ServarrType.RADARR:
            return self._request_list("history/movie", {"movieId": media_id, "eventType": event_type})
        return self._request_list("history/series", {"seriesId": media_id, "eventType": event_type})

    # --- media items ---------------------------------------------------------

    def iter_movie_items(self, movies: Optional[List[dict]] = None) -> Iterator[MediaItem]:
        """Movies that have a file, in API listing order."""
        if movies is None:
            movies = self.get_all_movies()
        for movie in movies:
            if not movie.get("hasFile", False):
                continue
            path = (movie.get("movieFile") or {}).get("path", "")
            if not path:
                path = self._first_movie_file_path(movie.get("id", 0))
            if not path:
                continue
            yield MediaItem(
                media_id=movie.get("id", 0),
                title=movie.get("title", "Unknown"),
                path=path,
                category=Category.FILM,
            )

    def _first_movie_file_path(self, movie_id: int) -> str:
        # Older Radarr builds omit movieFile from the movie listing
        try:
            files = self.get_movie_files(movie_id)
        except ServarrError as e:
            LOG.debug(f"[{self.name}] moviefile lookup failed for movie {movie_id}: {e.reason}")
            return ""
        return files[0].get("path", "") if files else ""

    def iter_episode_items(self, series_list: Optional[List[dict]] = None,
                           on_series: Optional[Callable[[dict], None]] = None,
                           on_series_error: Optional[Callable[[dict, ServarrError], None]] = None
                           ) -> Iterator[MediaItem]:
        """Episode files of every series, joined to their series by id.

        A failed episode file request skips that series (reported through
        on_series_error) instead of aborting the listing.
        """
        if series_list is None:
            series_list = self.get_all_series()
        titles = {s.get("id"): s.get("title", "Unknown") for s in series_list}

        for series in series_list:
            series_id = series.get("id", 0)
            if on_series:
                on_series(series)
            try:
                episode_files = self.get_episode_files(series_id)
            except ServarrError as e:
                if on_series_error:
                    on_series_error(series, e)
                else:
                    LOG.warning(f"[{self.name}] Failed to fetch episodes for {series.get('title')}: {e.reason}")
                continue

            for ef in episode_files:
                path = ef.get("path", "")
                if not path:
                    continue
                parent_id = ef.get("seriesId", series_id)
                yield MediaItem(
                    media_id=ef.get("id", 0),
                    title=titles.get(parent_id, "Unknown"),
                    path=path,
                    category=Category.EPISODE,
                    parent_id=parent_id,
                )

    def get_import_sources(self, media_id: int) -> Dict[str, str]:
        """Map of imported (library) path -> dropped (download) path.

        Built from downloadFolderImported history events. The newest event
        wins when a file has been imported more than once.
        """
        sources: Dict[str, str] = {}
        records = self.get_history(media_id, IMPORT_EVENT)
        for record in sorted(records, key=lambda r: r.get("date", "")):
            data = record.get("data") or {}
            imported = data.get("importedPath", "")
            dropped = data.get("droppedPath", "")
            if imported and dropped:
                sources[imported] = dropped
        return sources


def build_client(app_type: ServarrType, url: str, api_key: str, timeout: int = 30) -> ServarrClient:
    return ServarrClient(ServarrInstance(
        name=app_type.value, url=url, api_key=api_key, app_type=app_type, timeout=timeout,
    ))
