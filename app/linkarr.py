#!/usr/bin/env python3
"""
linkarr.py — Hard link checker for Sonarr/Radarr libraries

Verifies that every movie/episode file in the media tree is hard-linked to
its download. Files imported as copies are listed in problems_<ts>.txt and a
fix suggestion is written to suggestions_<ts>.txt. Nothing is changed on disk.

Modes:
  all              movies + TV, API first with filesystem fallback (default)
  movies | tv      one category, API first with filesystem fallback
  movies-fs|tv-fs  one category, filesystem scan only
  test-api         probe Radarr and Sonarr, always exits 0
  show-problems    print the latest problems report
  fix-suggestions  print the latest suggestions as a shell script
  clean            keep the 5 newest reports of each kind
  clean-all        remove all reports

Exit status is 1 when at least one file has no hard link, or when the
configuration is incomplete; 0 otherwise.
"""

from __future__ import annotations

import argparse
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from link_audit import (
    BsdStatProbe, CategoryPlan, GnuStatProbe, LinkAuditor, LinkInspector,
    NativeStatProbe, RunContext, StatProbe, check_category,
)
from report import Reporter, clean_all_reports, clean_reports, fix_suggestions, show_problems
from servarr_client import Category
from settings_manager import ConfigError, Settings, load_settings, setup_logging

VERSION = "1.0.0"

LOG = logging.getLogger("linkarr")

AUDIT_MODES = {
    "all": ((Category.FILM, True), (Category.EPISODE, True)),
    "movies": ((Category.FILM, True),),
    "tv": ((Category.EPISODE, True),),
    "movies-fs": ((Category.FILM, False),),
    "tv-fs": ((Category.EPISODE, False),),
}
MAINTENANCE_MODES = ("show-problems", "fix-suggestions", "clean", "clean-all")
MODES = tuple(AUDIT_MODES) + ("test-api",) + MAINTENANCE_MODES

USAGE = f"Usage: linkarr [options] [{'|'.join(MODES)}]"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(prog="linkarr",
                                 description=f"Linkarr v{VERSION} - Hard link checker for Sonarr/Radarr",
                                 formatter_class=argparse.RawDescriptionHelpFormatter,
                                 epilog=__doc__.split("Modes:", 1)[1].split("Exit status", 1)[0])
    ap.add_argument("mode", nargs="?", default="all", help="What to check (default: all)")
    ap.add_argument("--config", default=os.environ.get("LINKARR_CONFIG", "config.env"),
                    help="KEY=VALUE configuration file (default: ./config.env)")
    ap.add_argument("--report-dir", default=None, help="Override REPORT_DIR")
    ap.add_argument("--verbose", "-v", action="store_true", default=None,
                    help="Print every checked file and path translation")
    ap.add_argument("--json-report", action="store_true", default=None,
                    help="Also write report_<ts>.json with the run summary")
    ap.add_argument("--resolve-sources", action="store_true", default=None,
                    help="Look up the original download in the import history to suggest ln commands")
    ap.add_argument("--log-dir", default=None, help="Write a debug log file to this directory")
    return ap.parse_args(argv)


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.report_dir:
        settings.report_dir = args.report_dir
    if args.verbose:
        settings.verbose = True
    if args.json_report:
        settings.json_report = True
    if args.resolve_sources:
        settings.resolve_sources = True
    if args.log_dir:
        settings.log_dir = args.log_dir
    return settings


def build_inspector() -> LinkInspector:
    """os.stat first, then stat(1) GNU and BSD flavours when the tool exists."""
    probes: List[StatProbe] = [NativeStatProbe()]
    if shutil.which("stat"):
        probes += [GnuStatProbe(), BsdStatProbe()]
    else:
        LOG.debug("stat(1) not found, only os.stat will be used")
    return LinkInspector(probes)


def build_plans(settings: Settings) -> Dict[Category, CategoryPlan]:
    reconciler = settings.reconciler()
    return {
        Category.FILM: CategoryPlan(
            category=Category.FILM, kind="movies", service="Radarr",
            media_dir=settings.movies_media_dir, download_dir=settings.movies_download_dir,
            client=settings.radarr_client(),
            reconciler=reconciler,
            resolve_sources=settings.resolve_sources,
        ),
        Category.EPISODE: CategoryPlan(
            category=Category.EPISODE, kind="episodes", service="Sonarr",
            media_dir=settings.tv_media_dir, download_dir=settings.tv_download_dir,
            client=settings.sonarr_client(),
            reconciler=reconciler,
            resolve_sources=settings.resolve_sources,
        ),
    }


def run_test_api(settings: Settings, reporter: Reporter) -> int:
    reporter.line("Testing API connections...")
    for client in (settings.radarr_client(), settings.sonarr_client()):
        inst = client.instance
        if client.test_connection():
            version = f" (v{inst.version})" if inst.version else ""
            reporter.line(f"OK: {inst.name} is reachable at {inst.url}{version}")
        elif inst.last_error == "API key not set":
            reporter.error(f"ERROR: API key not set for {inst.name}")
        else:
            reason = f" ({inst.last_error})" if inst.last_error else ""
            reporter.error(f"ERROR: Cannot connect to {inst.name} at {inst.url}{reason}")
    return 0


def run_maintenance(mode: str, report_dir: Path, reporter: Reporter) -> int:
    if mode == "show-problems":
        reporter.console.out(show_problems(report_dir), end="", highlight=False)
    elif mode == "fix-suggestions":
        reporter.console.out(fix_suggestions(report_dir), end="", highlight=False)
    elif mode == "clean":
        reporter.line("Cleaning old reports...")
        removed = clean_reports(report_dir)
        reporter.line(f"Done ({removed} removed)")
    elif mode == "clean-all":
        removed = clean_all_reports(report_dir)
        reporter.line(f"All reports removed ({removed})")
    return 0


def run_audit(settings: Settings, mode: str, reporter: Reporter,
              inspector: Optional[LinkInspector] = None) -> int:
    try:
        reporter.init_report(Path(settings.report_dir))
    except OSError as e:
        reporter.error(f"Cannot create report directory {settings.report_dir}: {e}")
        return 1

    reporter.header("Hard Link Check")
    reporter.info(f"Downloads: {settings.downloads_path}")
    reporter.info(f"Media: {settings.media_path}")

    ctx = RunContext()
    auditor = LinkAuditor(ctx, inspector or build_inspector(), reporter, verbose=settings.verbose)
    plans = build_plans(settings)

    for category, use_api in AUDIT_MODES[mode]:
        check_category(auditor, plans[category], use_api=use_api)

    summary = ctx.finalize(
        problems_file=str(reporter.problems_file),
        suggestions_file=str(reporter.suggestions_file),
    )
    json_file = reporter.write_json_report(summary) if settings.json_report else None
    reporter.print_summary(summary, json_file)
    LOG.debug(f"Run finished: {summary}")
    return 1 if summary.problems_found else 0


def main(argv: Optional[Sequence[str]] = None, reporter: Optional[Reporter] = None) -> int:
    args = parse_args(argv)
    reporter = reporter or Reporter()

    if args.mode not in MODES:
        reporter.error(USAGE)
        return 1

    config_file = Path(args.config)
    settings = apply_overrides(load_settings(config_file), args)
    reporter.verbose = settings.verbose
    setup_logging(verbose=settings.verbose, log_dir=settings.log_dir or None)
    LOG.debug(f"linkarr v{VERSION} mode={args.mode}")

    if args.mode in MAINTENANCE_MODES:
        return run_maintenance(args.mode, Path(settings.report_dir), reporter)

    try:
        settings.validate(config_file)
    except ConfigError as e:
        reporter.error(str(e))
        if not config_file.is_file():
            reporter.info(f"Configuration file not found: {config_file}")
            reporter.info("Copy config.env.example to config.env and configure it")
        return 1

    if args.mode == "test-api":
        return run_test_api(settings, reporter)

    return run_audit(settings, args.mode, reporter)


if __name__ == "__main__":
    sys.exit(main())
