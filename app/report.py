#!/usr/bin/env python3
"""
report.py — Report files and console output for the hard link audit

Per run, two append-only text files are written to the report directory:
  problems_<ts>.txt     one block per file without hard link
  suggestions_<ts>.txt  one line per problem: an `ln` command or a comment
and optionally report_<ts>.json with the run summary.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.text import Text

from link_audit import ProblemRecord, RunSummary, SuggestionRecord

LOG = logging.getLogger("linkarr.report")

TS_FORMAT = "%Y%m%d_%H%M%S"
ARTIFACT_PREFIXES = ("problems_", "suggestions_", "report_")
KEEP_REPORTS = 5

SUGGESTIONS_PREAMBLE = (
    "# To recreate the hard links, re-run the import in Sonarr/Radarr\n"
    "# or use the following commands if the source files exist:\n"
)


def now_stamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(TS_FORMAT)


class Reporter:
    """Console lines (info/ok/warning/error), progress and report files."""

    def __init__(self, console: Optional[Console] = None, err_console: Optional[Console] = None,
                 verbose: bool = False):
        self.console = console or Console(highlight=False)
        self.err_console = err_console or Console(stderr=True, highlight=False)
        self.verbose = verbose
        self.report_dir: Optional[Path] = None
        self.timestamp: Optional[str] = None
        self.problems_file: Optional[Path] = None
        self.suggestions_file: Optional[Path] = None
        self._progress_shown = False

    # --- report files --------------------------------------------------------

    def init_report(self, report_dir: Path, now: Optional[datetime] = None) -> Path:
        """Create the report directory and this run's empty artifact files."""
        report_dir = Path(report_dir)
        report_dir.mkdir(parents=True, exist_ok=True)
        self.report_dir = report_dir
        self.timestamp = now_stamp(now)
        self.problems_file = report_dir / f"problems_{self.timestamp}.txt"
        self.suggestions_file = report_dir / f"suggestions_{self.timestamp}.txt"
        self.problems_file.write_text("", encoding="utf-8")
        self.suggestions_file.write_text("", encoding="utf-8")
        self.line(f"Report initialized: {self.problems_file}")
        LOG.debug(f"Report files: {self.problems_file}, {self.suggestions_file}")
        return self.problems_file

    def _append(self, path: Optional[Path], text: str):
        if path is None:
            return
        with path.open("a", encoding="utf-8") as f:
            f.write(text)

    def problem(self, problem: ProblemRecord, suggestion: SuggestionRecord):
        self._append(self.problems_file, problem.format())
        self._append(self.suggestions_file, suggestion.format())
        if self.verbose:
            self.clear_progress()
            self.console.print(Text.assemble((f"[{problem.category.value}]", "red"), f" {problem.path}"),
                               soft_wrap=True)
            self.console.print(f"  - Inode: {problem.inode}, Links: {problem.links}", soft_wrap=True)

    def write_json_report(self, summary: RunSummary, now: Optional[datetime] = None) -> Path:
        now = now or datetime.now()
        path = Path(self.report_dir or ".") / f"report_{self.timestamp or now_stamp(now)}.json"
        data = summary_to_dict(summary, now)
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        LOG.debug(f"JSON report written: {path}")
        return path

    # --- console -------------------------------------------------------------

    def _print(self, icon: str, style: str, message: str, console: Optional[Console] = None):
        self.clear_progress()
        (console or self.console).print(Text.assemble((icon, style), " ", message), soft_wrap=True)

    def line(self, message: str = ""):
        self.clear_progress()
        self.console.print(Text(message), soft_wrap=True)

    def header(self, title: str):
        self.line()
        self.console.print(Text(f"=== {title} ===", style="bold"), soft_wrap=True)
        self.line()

    def info(self, message: str):
        self._print("ℹ", "blue", message)

    def ok(self, message: str):
        self._print("✓", "green", message)

    def warning(self, message: str):
        self._print("⚠", "yellow", message)

    def error(self, message: str):
        self._print("✗", "red", message, console=self.err_console)

    def progress(self, current: int, total, kind: str):
        if not self.console.is_terminal:
            return
        self.console.file.write(f"\r  Checking {kind}: {current}/{total}")
        self.console.file.flush()
        self._progress_shown = True

    def clear_progress(self):
        if not self._progress_shown:
            return
        self.console.file.write("\r" + " " * 60 + "\r")
        self.console.file.flush()
        self._progress_shown = False

    # --- summary -------------------------------------------------------------

    def print_summary(self, summary: RunSummary, json_file: Optional[Path] = None,
                      now: Optional[datetime] = None):
        now = now or datetime.now()
        self.header(f"Hard Link Report - {now.strftime('%Y-%m-%d %H:%M')}")
        self.ok(f"Movies checked: {summary.movies_checked}")
        self.ok(f"Episodes checked: {summary.tv_checked}")
        if summary.missing_files:
            self.warning(f"Files not found: {summary.missing_files}")
        if summary.problems_found == 0:
            self.ok("No problems detected!")
        else:
            self._print("✗", "red", f"Files without hard link: {summary.problems_found}")

            self.header("Problem files")
            self.console.out(read_text(self.problems_file), end="", highlight=False)

            suggestions = read_text(self.suggestions_file)
            if suggestions:
                self.header("Fix suggestions")
                self.console.out(SUGGESTIONS_PREAMBLE, highlight=False)
                self.console.out(suggestions, end="", highlight=False)

        self.line()
        self.console.print(Text("Reports saved in:", style="blue"))
        self.line(f"  - Problems: {self.problems_file}")
        self.line(f"  - Suggestions: {self.suggestions_file}")
        if json_file:
            self.line(f"  - Summary: {json_file}")


def read_text(path: Optional[Path]) -> str:
    if path is None or not path.is_file():
        return ""
    return path.read_text(encoding="utf-8")


def summary_to_dict(summary: RunSummary, now: Optional[datetime] = None) -> dict:
    return {
        "date": (now or datetime.now()).astimezone().isoformat(timespec="seconds"),
        "summary": {
            "movies_checked": summary.movies_checked,
            "tv_checked": summary.tv_checked,
            "problems_found": summary.problems_found,
            "missing_files": summary.missing_files,
        },
        "fallbacks": list(summary.fallbacks),
        "files": {
            "problems": summary.problems_file,
            "suggestions": summary.suggestions_file,
        },
    }


# =============================================================================
# PAST REPORTS
# =============================================================================

def list_artifacts(report_dir: Path, prefix: str) -> List[Path]:
    """Artifacts of one kind, newest first."""
    report_dir = Path(report_dir)
    if not report_dir.is_dir():
        return []
    files = [p for p in report_dir.iterdir() if p.is_file() and p.name.startswith(prefix)]
    return sorted(files, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)


def latest_artifact(report_dir: Path, prefix: str) -> Optional[Path]:
    files = list_artifacts(report_dir, prefix)
    return files[0] if files else None


def show_problems(report_dir: Path) -> str:
    if not Path(report_dir).is_dir():
        return "No reports directory. Run 'linkarr all' first.\n"
    latest = latest_artifact(report_dir, "problems_")
    content = read_text(latest)
    if not content:
        return "No problems found or no report available. Run 'linkarr all' first.\n"
    return content


def fix_suggestions(report_dir: Path) -> str:
    lines = [
        "#!/bin/bash",
        "# Hard link fix suggestions",
        "# Review each command before executing!",
        "",
    ]
    if not Path(report_dir).is_dir():
        lines.append("# No reports directory. Run 'linkarr all' first.")
        return "\n".join(lines) + "\n"
    content = read_text(latest_artifact(report_dir, "suggestions_"))
    if not content:
        lines.append("# No suggestions available. Run 'linkarr all' first.")
        return "\n".join(lines) + "\n"
    return "\n".join(lines) + "\n" + content


def clean_reports(report_dir: Path, keep: int = KEEP_REPORTS) -> int:
    """Delete all but the `keep` newest artifacts of each kind."""
    removed = 0
    for prefix in ARTIFACT_PREFIXES:
        for path in list_artifacts(report_dir, prefix)[keep:]:
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                LOG.warning(f"Could not remove {path}: {e}")
    return removed


def clean_all_reports(report_dir: Path) -> int:
    return clean_reports(report_dir, keep=0)


def group_runs(report_dir: Path) -> List[Dict]:
    """Past runs (newest first) keyed by timestamp, with problem counts."""
    runs: Dict[str, Dict] = {}
    for prefix in ARTIFACT_PREFIXES:
        for path in list_artifacts(report_dir, prefix):
            ts = path.stem[len(prefix):]
            run = runs.setdefault(ts, {"id": ts, "files": {}})
            run["files"][prefix.rstrip("_")] = path.name
    for ts, run in runs.items():
        problems = Path(report_dir) / run["files"].get("problems", "")
        text = read_text(problems) if "problems" in run["files"] else ""
        run["problems_found"] = sum(1 for line in text.splitlines() if line.startswith("["))
    return [runs[ts] for ts in sorted(runs, reverse=True)]
