#!/usr/bin/env python3
"""
path_mapping.py — Docker container path -> host path reconciliation

Sonarr/Radarr usually run in containers and report file paths as they see
them (e.g. /data/movies/...). The audit runs on the host, where the same
files live somewhere else (e.g. /mnt/storage/movies/...).

Rules are plain textual prefix substitutions, evaluated in a fixed order:
movies, then tv, then downloads. The first rule whose container prefix is a
prefix of the path wins and only its first occurrence is replaced. No path
normalisation is performed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence

LOG = logging.getLogger("linkarr.mapping")


class MappingScope(Enum):
    """Which configured rule a mapping came from. Order = priority."""
    MOVIES = "movies"
    TV = "tv"
    DOWNLOADS = "downloads"


SCOPE_PRIORITY = (MappingScope.MOVIES, MappingScope.TV, MappingScope.DOWNLOADS)


@dataclass(frozen=True)
class PathMapping:
    """Maps a container path prefix to the host path prefix."""
    scope: MappingScope
    container_path: str
    host_path: str

    @property
    def active(self) -> bool:
        return bool(self.container_path)

    def matches(self, path: str) -> bool:
        return self.active and path.startswith(self.container_path)

    def to_host(self, path: str) -> str:
        if self.matches(path):
            return path.replace(self.container_path, self.host_path, 1)
        return path

    @classmethod
    def parse(cls, scope: MappingScope, value: Optional[str]) -> Optional["PathMapping"]:
        """Parse ``container:host``. Returns None for empty or invalid values."""
        if not value:
            return None
        if ":" not in value:
            LOG.debug(f"Ignoring {scope.value} path map without ':' separator: {value!r}")
            return None
        container, host = value.split(":", 1)
        if not container:
            LOG.debug(f"Ignoring {scope.value} path map with empty container path: {value!r}")
            return None
        return cls(scope=scope, container_path=container, host_path=host)


class PathReconciler:
    """Ordered set of path mappings; applies the first match."""

    def __init__(self, mappings: Iterable[PathMapping] = ()):
        by_scope = {}
        for pm in mappings:
            if pm is not None and pm.active:
                by_scope.setdefault(pm.scope, pm)
        self.mappings: List[PathMapping] = [by_scope[s] for s in SCOPE_PRIORITY if s in by_scope]

    @classmethod
    def from_values(cls, movies: str = "", tv: str = "", downloads: str = "") -> "PathReconciler":
        return cls([
            PathMapping.parse(MappingScope.MOVIES, movies),
            PathMapping.parse(MappingScope.TV, tv),
            PathMapping.parse(MappingScope.DOWNLOADS, downloads),
        ])

    def reconcile(self, path: str) -> str:
        return reconcile(path, self.mappings)

    def __bool__(self) -> bool:
        return bool(self.mappings)

    def __len__(self) -> int:
        return len(self.mappings)


def reconcile(path: str, mappings: Sequence[PathMapping]) -> str:
    for pm in mappings:
        if pm.matches(path):
            return pm.to_host(path)
    return path
