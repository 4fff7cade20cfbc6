#!/usr/bin/env python3
"""
link_audit.py — Hard link detection for media library files

For every movie/episode file in the media tree we want a second directory
entry (normally the copy in the downloads tree) pointing at the same inode.
A link count of 1 means the import was a copy: the space is used twice and
the download cannot be cleaned up without losing the seed.

Classification of one file:
  - Missing:  path is not a regular file (warning only, not a problem)
  - Linked:   link count > 1
  - Unlinked: link count <= 1 (a link count of 0 means "unknown")

Each Unlinked file produces exactly one ProblemRecord and one
SuggestionRecord. Nothing is ever modified on disk.

Items come from Radarr/Sonarr (API mode) or from a recursive scan of the
category's media directory (filesystem mode). API mode falls back to the
filesystem scan when the service does not answer.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from path_mapping import PathReconciler
from servarr_client import Category, MediaItem, ServarrClient, ServarrError

LOG = logging.getLogger("linkarr.audit")

VIDEO_EXTS = frozenset({".mkv", ".mp4", ".avi", ".m4v"})
PROGRESS_EVERY = 10


# =============================================================================
# FILESYSTEM METADATA
# =============================================================================

class LinkStatus(Enum):
    LINKED = "linked"
    UNLINKED = "unlinked"
    MISSING = "missing"


@dataclass(frozen=True)
class LinkInfo:
    dev: int
    inode: int
    nlink: int


UNKNOWN_LINK_INFO = LinkInfo(dev=0, inode=0, nlink=0)


class StatProbe:
    """One way of reading (device, inode, link count) for a path."""
    name = "base"

    def query(self, path: str) -> Optional[LinkInfo]:
        raise NotImplementedError


class NativeStatProbe(StatProbe):
    """os.stat(), follows symlinks like `test -f` does."""
    name = "os.stat"

    def query(self, path: str) -> Optional[LinkInfo]:
        try:
            st = os.stat(path)
        except OSError as e:
            LOG.debug(f"os.stat failed for {path}: {e}")
            return None
        return LinkInfo(dev=st.st_dev, inode=st.st_ino, nlink=st.st_nlink)


class StatCommandProbe(StatProbe):
    """stat(1) with a platform specific format flag."""
    args: Sequence[str] = ()
    timeout = 10

    def query(self, path: str) -> Optional[LinkInfo]:
        try:
            proc = subprocess.run(
                ["stat", *self.args, path],
                capture_output=True, text=True, timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            LOG.debug(f"{self.name} failed for {path}: {e}")
            return None
        if proc.returncode != 0:
            return None
        return self.parse(proc.stdout)

    @staticmethod
    def parse(output: str) -> Optional[LinkInfo]:
        parts = output.split()
        if len(parts) != 3:
            return None
        try:
            dev, inode, nlink = (int(p) for p in parts)
        except ValueError:
            return None
        return LinkInfo(dev=dev, inode=inode, nlink=nlink)


class GnuStatProbe(StatCommandProbe):
    """GNU coreutils (Linux): stat -c '%d %i %h'."""
    name = "stat -c"
    args = ("-c", "%d %i %h")


class BsdStatProbe(StatCommandProbe):
    """BSD / macOS: stat -f '%d %i %l'."""
    name = "stat -f"
    args = ("-f", "%d %i %l")


def default_probes() -> List[StatProbe]:
    return [NativeStatProbe(), GnuStatProbe(), BsdStatProbe()]


class LinkInspector:
    """Tries each probe in order; all failing yields inode 0 / links 0."""

    def __init__(self, probes: Optional[Sequence[StatProbe]] = None):
        self.probes = list(probes) if probes is not None else default_probes()

    def inspect(self, path: str) -> LinkInfo:
        for probe in self.probes:
            info = probe.query(path)
            if info is not None:
                return info
        LOG.debug(f"No stat probe succeeded for {path}, links unknown")
        return UNKNOWN_LINK_INFO


def is_regular_file(path: Optional[str]) -> bool:
    return bool(path) and os.path.isfile(path)


def iter_video_files(root: Path, exts: frozenset = VIDEO_EXTS) -> Iterator[Path]:
    """Regular video files below root, depth first, names sorted per directory.

    Files and subdirectories interleave by name: a subdirectory is walked
    completely before the next entry of its parent.
    """
    try:
        with os.scandir(root) as it:
            entries = sorted(it, key=lambda e: e.name)
    except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
        LOG.debug(f"Cannot list {root}: {e}")
        return
    for entry in entries:
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
            is_video = not is_dir and entry.is_file(follow_symlinks=False) \
                and Path(entry.name).suffix.lower() in exts
        except OSError as e:
            LOG.debug(f"Skipping {entry.path}: {e}")
            continue
        if is_dir:
            yield from iter_video_files(Path(entry.path), exts)
        elif is_video:
            yield Path(entry.path)


# =============================================================================
# RECORDS AND RUN CONTEXT
# =============================================================================

@dataclass(frozen=True)
class ProblemRecord:
    category: Category
    path: str
    inode: int
    links: int
    source_hint: Optional[str] = None

    def format(self) -> str:
        lines = [
            f"[{self.category.value}] {self.path}",
            f"  - Inode: {self.inode}",
            f"  - Links: {self.links} (no hard link)",
        ]
        if self.source_hint:
            lines.append(f"  - Probable source: {self.source_hint}")
        return "\n".join(lines) + "\n\n"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["category"] = self.category.value
        return d


@dataclass(frozen=True)
class SuggestionRecord:
    destination: str
    source: Optional[str] = None
    comment: Optional[str] = None

    @classmethod
    def link(cls, source: str, destination: str) -> "SuggestionRecord":
        return cls(destination=destination, source=source)

    @classmethod
    def source_unknown(cls, destination: str) -> "SuggestionRecord":
        return cls(destination=destination, comment=f"Source unknown for: {destination}")

    @property
    def is_command(self) -> bool:
        return self.source is not None

    def format(self) -> str:
        if self.is_command:
            return f'ln "{self.source}" "{self.destination}"\n'
        return f"# {self.comment}\n"


@dataclass(frozen=True)
class AuditResult:
    status: LinkStatus
    path: str
    info: Optional[LinkInfo] = None
    problem: Optional[ProblemRecord] = None
    suggestion: Optional[SuggestionRecord] = None


@dataclass(frozen=True)
class RunSummary:
    movies_checked: int
    tv_checked: int
    problems_found: int
    missing_files: int
    linked_files: int
    fallbacks: tuple
    problems_file: Optional[str] = None
    suggestions_file: Optional[str] = None


@dataclass
class RunContext:
    """Counters and records owned by one run."""
    movies_checked: int = 0
    tv_checked: int = 0
    problems_found: int = 0
    missing_files: int = 0
    linked_files: int = 0
    problems: List[ProblemRecord] = field(default_factory=list)
    suggestions: List[SuggestionRecord] = field(default_factory=list)
    fallbacks: List[str] = field(default_factory=list)
    _summary: Optional[RunSummary] = field(default=None, repr=False)

    def count_checked(self, category: Category):
        self._ensure_open()
        if category == Category.FILM:
            self.movies_checked += 1
        else:
            self.tv_checked += 1

    def add_problem(self, problem: ProblemRecord, suggestion: SuggestionRecord):
        self._ensure_open()
        self.problems_found += 1
        self.problems.append(problem)
        self.suggestions.append(suggestion)

    def finalize(self, problems_file: Optional[str] = None,
                 suggestions_file: Optional[str] = None) -> RunSummary:
        if self._summary is None:
            self._summary = RunSummary(
                movies_checked=self.movies_checked,
                tv_checked=self.tv_checked,
                problems_found=self.problems_found,
                missing_files=self.missing_files,
                linked_files=self.linked_files,
                fallbacks=tuple(self.fallbacks),
                problems_file=problems_file,
                suggestions_file=suggestions_file,
            )
        return self._summary

    @property
    def finalized(self) -> bool:
        return self._summary is not None

    def _ensure_open(self):
        if self._summary is not None:
            raise RuntimeError("Run already finalized")


class NullReporter:
    """Reporter interface used by the auditor; discards everything."""

    def info(self, message: str):
        pass

    def ok(self, message: str):
        pass

    def warning(self, message: str):
        pass

    def error(self, message: str):
        pass

    def progress(self, current: int, total, kind: str):
        pass

    def clear_progress(self):
        pass

    def problem(self, problem: ProblemRecord, suggestion: SuggestionRecord):
        pass


# =============================================================================
# AUDITOR
# =============================================================================

class LinkAuditor:
    """Classifies media files and records problems into a RunContext."""

    def __init__(self, ctx: RunContext, inspector: Optional[LinkInspector] = None,
                 reporter=None, verbose: bool = False):
        self.ctx = ctx
        self.inspector = inspector or LinkInspector()
        self.reporter = reporter or NullReporter()
        self.verbose = verbose

    def audit(self, category: Category, path: str, source_hint: Optional[str] = None) -> AuditResult:
        if not is_regular_file(path):
            self.ctx.missing_files += 1
            self.reporter.warning(f"File not found: {path}")
            LOG.debug(f"Missing: {path}")
            return AuditResult(status=LinkStatus.MISSING, path=path)

        info = self.inspector.inspect(path)

        if info.nlink > 1:
            self.ctx.linked_files += 1
            if self.verbose:
                self.reporter.ok(f"{path} (links: {info.nlink})")
            return AuditResult(status=LinkStatus.LINKED, path=path, info=info)

        problem = ProblemRecord(
            category=category, path=path, inode=info.inode, links=info.nlink,
            source_hint=source_hint or None,
        )
        if source_hint and is_regular_file(source_hint):
            suggestion = SuggestionRecord.link(source_hint, path)
        else:
            suggestion = SuggestionRecord.source_unknown(path)

        self.ctx.add_problem(problem, suggestion)
        self.reporter.problem(problem, suggestion)
        LOG.debug(f"Unlinked: {path} (inode {info.inode}, links {info.nlink})")
        return AuditResult(status=LinkStatus.UNLINKED, path=path, info=info,
                           problem=problem, suggestion=suggestion)

    def check_item(self, item: MediaItem, path: str, source_hint: Optional[str] = None) -> AuditResult:
        self.ctx.count_checked(item.category)
        return self.audit(item.category, path, source_hint)


# =============================================================================
# DISCOVERY
# =============================================================================

@dataclass
class CategoryPlan:
    """Everything needed to audit one category (movies or TV)."""
    category: Category
    kind: str
    service: str
    media_dir: Path
    download_dir: Path
    client: Optional[ServarrClient] = None
    reconciler: PathReconciler = field(default_factory=PathReconciler)
    resolve_sources: bool = False


class SourceResolver:
    """Finds the download a library file was imported from (history API)."""

    def __init__(self, client: ServarrClient, reconciler: PathReconciler):
        self.client = client
        self.reconciler = reconciler
        self._cache: Dict[int, Dict[str, str]] = {}

    def hint_for(self, item: MediaItem) -> Optional[str]:
        key = item.parent_id if item.parent_id is not None else item.media_id
        if key not in self._cache:
            try:
                self._cache[key] = self.client.get_import_sources(key)
            except ServarrError as e:
                LOG.debug(f"[{self.client.name}] History lookup failed for {key}: {e.reason}")
                self._cache[key] = {}
        dropped = self._cache[key].get(item.path or "")
        if not dropped:
            return None
        return self.reconciler.reconcile(dropped)


def audit_items(auditor: LinkAuditor, plan: CategoryPlan, items: Iterable[MediaItem],
                total=None) -> int:
    """Reconcile and audit API items. Returns the number of items checked."""
    reporter = auditor.reporter
    resolver = SourceResolver(plan.client, plan.reconciler) \
        if plan.resolve_sources and plan.client else None
    count = 0
    for item in items:
        if not item.has_file:
            continue
        count += 1
        if total is not None:
            reporter.progress(count, total, plan.kind)
        host_path = plan.reconciler.reconcile(item.path)
        if auditor.verbose and host_path != item.path:
            reporter.info(f"Path translated: {item.path} -> {host_path}")
        hint = resolver.hint_for(item) if resolver else None
        auditor.check_item(item, host_path, hint)
    reporter.clear_progress()
    return count


def check_movies_api(auditor: LinkAuditor, plan: CategoryPlan) -> int:
    reporter = auditor.reporter
    reporter.info(f"Fetching movies from {plan.service}...")
    movies = plan.client.get_all_movies()
    items = list(plan.client.iter_movie_items(movies))
    reporter.info(f"Found {len(items)} movies with files")
    count = audit_items(auditor, plan, items, total=len(items))
    reporter.info(f"Checked {count} movies")
    return count


def check_tv_api(auditor: LinkAuditor, plan: CategoryPlan) -> int:
    reporter = auditor.reporter
    reporter.info(f"Fetching series from {plan.service}...")
    series_list = plan.client.get_all_series()
    reporter.info(f"Found {len(series_list)} series")

    def on_series(series: dict):
        reporter.info(f"Checking: {series.get('title', 'Unknown')}")

    def on_series_error(series: dict, error: ServarrError):
        reporter.warning(f"Failed to fetch episodes for {series.get('title', 'Unknown')}")
        LOG.debug(f"[{plan.service}] episodefile failed for series {series.get('id')}: {error.reason}")

    items = plan.client.iter_episode_items(series_list, on_series=on_series,
                                           on_series_error=on_series_error)
    count = audit_items(auditor, plan, items)
    reporter.info(f"Checked {count} episodes across {len(series_list)} series")
    return count


def check_filesystem(auditor: LinkAuditor, plan: CategoryPlan) -> int:
    reporter = auditor.reporter
    label, noun = ("Movies", "movie") if plan.category == Category.FILM else ("TV", "TV")
    if not plan.media_dir.is_dir():
        reporter.error(f"{label} media directory not found: {plan.media_dir}")
        return 0

    reporter.info(f"Scanning {plan.kind} directory: {plan.media_dir}")
    count = 0
    for path in iter_video_files(plan.media_dir):
        count += 1
        auditor.check_item(MediaItem(media_id=0, title=path.stem, path=str(path),
                                     category=plan.category), str(path))
        if count % PROGRESS_EVERY == 0:
            reporter.progress(count, "?", plan.kind)
    reporter.clear_progress()
    reporter.info(f"Checked {count} {noun} files")
    return count


def check_category(auditor: LinkAuditor, plan: CategoryPlan, use_api: bool = True) -> int:
    """API mode with filesystem fallback, or filesystem mode only."""
    if auditor.verbose:
        auditor.reporter.info(f"{plan.service}: media {plan.media_dir}, downloads {plan.download_dir}")
    if not use_api or plan.client is None:
        return check_filesystem(auditor, plan)

    reporter = auditor.reporter
    if not plan.client.test_connection():
        LOG.debug(f"[{plan.service}] unreachable: {plan.client.instance.last_error}")
        reporter.warning(f"{plan.service} API not available, falling back to filesystem scan")
        auditor.ctx.fallbacks.append(plan.service)
        return check_filesystem(auditor, plan)

    try:
        if plan.category == Category.FILM:
            return check_movies_api(auditor, plan)
        return check_tv_api(auditor, plan)
    except ServarrError as e:
        reporter.clear_progress()
        reporter.warning(f"Failed to fetch {plan.kind} from {plan.service} ({e.reason}), "
                         f"falling back to filesystem scan")
        auditor.ctx.fallbacks.append(plan.service)
        return check_filesystem(auditor, plan)
