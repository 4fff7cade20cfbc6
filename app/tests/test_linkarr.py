#!/usr/bin/env python3
"""
Unit tests for linkarr.py

Runs the CLI entry point end to end on temporary media trees with the
Sonarr/Radarr client patched.
"""

import io
import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from rich.console import Console

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import linkarr
from report import Reporter


class CliTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.downloads = self.root / "downloads"
        self.media = self.root / "media"
        self.reports = self.root / "reports"
        self.env = {
            "PATH": os.environ.get("PATH", ""),
            "SONARR_URL": "http://sonarr:8989",
            "SONARR_API_KEY": "sonarrkey",
            "RADARR_URL": "http://radarr:7878",
            "RADARR_API_KEY": "radarrkey",
            "DOWNLOADS_PATH": str(self.downloads),
            "MEDIA_PATH": str(self.media),
            "REPORT_DIR": str(self.reports),
        }
        self.out, self.err = io.StringIO(), io.StringIO()
        self.reporter = Reporter(
            console=Console(file=self.out, highlight=False, width=300),
            err_console=Console(file=self.err, highlight=False, width=300),
        )

    def tearDown(self):
        self._tmp.cleanup()

    def run_cli(self, *argv, env=None):
        args = ["--config", str(self.root / "config.env"), *argv]
        with patch.dict(os.environ, env if env is not None else self.env, clear=True):
            return linkarr.main(args, reporter=self.reporter)

    def media_file(self, rel, linked=False):
        path = self.media / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"video")
        if linked:
            src = self.downloads / Path(rel).name
            src.parent.mkdir(parents=True, exist_ok=True)
            os.link(path, src)
        return path

    def problems_text(self):
        files = list(self.reports.glob("problems_*.txt"))
        self.assertEqual(len(files), 1)
        return files[0].read_text()


class TestStartup(CliTestCase):
    """Test configuration errors and argument handling."""

    def test_missing_configuration_lists_all_names(self):
        code = self.run_cli("all", env={"PATH": os.environ.get("PATH", "")})
        self.assertEqual(code, 1)
        self.assertIn(
            "Missing required configuration: SONARR_URL SONARR_API_KEY RADARR_URL "
            "RADARR_API_KEY DOWNLOADS_PATH MEDIA_PATH",
            self.err.getvalue(),
        )
        self.assertIn("config.env.example", self.out.getvalue())
        self.assertFalse(self.reports.exists())

    def test_config_file_used(self):
        config = self.root / "config.env"
        config.write_text("\n".join(f"{k}={v}" for k, v in self.env.items() if k != "PATH"))
        self.media_file("movies/A/A.mkv", linked=True)
        code = self.run_cli("movies-fs", env={"PATH": os.environ.get("PATH", "")})
        self.assertEqual(code, 0)

    def test_unknown_mode(self):
        self.assertEqual(self.run_cli("everything"), 1)
        self.assertIn("Usage: linkarr", self.err.getvalue())

    def test_report_dir_creation_failure(self):
        self.reports.write_text("in the way")
        self.assertEqual(self.run_cli("movies-fs"), 1)
        self.assertIn("Cannot create report directory", self.err.getvalue())

    def test_parse_args_defaults(self):
        args = linkarr.parse_args([])
        self.assertEqual(args.mode, "all")
        self.assertIsNone(args.verbose)


class TestAuditModes(CliTestCase):
    """Test exit status and reports for the audit modes."""

    def test_filesystem_mode_with_problem(self):
        self.media_file("movies/Linked (2020)/Linked.mkv", linked=True)
        copy = self.media_file("movies/Copy (2021)/Copy.mkv")

        code = self.run_cli("movies-fs")

        self.assertEqual(code, 1)
        text = self.problems_text()
        self.assertEqual(text.count("[FILM]"), 1)
        self.assertIn(f"[FILM] {copy}", text)
        self.assertIn("Files without hard link: 1", self.out.getvalue())

    def test_filesystem_mode_clean(self):
        self.media_file("tv/Show/Season 01/S01E01.mkv", linked=True)
        self.assertEqual(self.run_cli("tv-fs"), 0)
        self.assertIn("No problems detected!", self.out.getvalue())
        self.assertIn("Episodes checked: 1", self.out.getvalue())

    def test_missing_media_directory_is_not_fatal(self):
        self.assertEqual(self.run_cli("tv-fs"), 0)
        self.assertIn("TV media directory not found", self.err.getvalue())

    @patch("servarr_client.ServarrClient.test_connection", return_value=False)
    def test_unreachable_services_fall_back(self, _probe):
        self.media_file("movies/A/A.mkv", linked=True)
        self.media_file("tv/S/e1.mkv")

        code = self.run_cli("all", "--json-report")

        self.assertEqual(code, 1)
        out = self.out.getvalue()
        self.assertIn("Radarr API not available, falling back to filesystem scan", out)
        self.assertIn("Sonarr API not available, falling back to filesystem scan", out)
        report = json.loads(next(self.reports.glob("report_*.json")).read_text())
        self.assertEqual(report["summary"]["problems_found"], 1)
        self.assertEqual(report["summary"]["movies_checked"], 1)
        self.assertEqual(report["fallbacks"], ["Radarr", "Sonarr"])

    def test_api_mode_with_docker_mapping(self):
        host_movies = self.media / "movies"
        copy = self.media_file("movies/Foo (2020)/Foo.mkv")
        self.env["DOCKER_PATH_MAP_MOVIES"] = f"/data/movies:{host_movies}"
        movies = [
            {"id": 1, "title": "Foo", "hasFile": True, "movieFile": {"path": "/data/movies/Foo (2020)/Foo.mkv"}},
            {"id": 2, "title": "Gone", "hasFile": True, "movieFile": {"path": "/data/movies/Gone/Gone.mkv"}},
        ]

        with patch("servarr_client.ServarrClient.test_connection", return_value=True), \
                patch("servarr_client.ServarrClient.get_all_movies", return_value=movies):
            code = self.run_cli("movies")

        self.assertEqual(code, 1)
        self.assertIn(f"[FILM] {copy}", self.problems_text())
        self.assertIn("Files not found: 1", self.out.getvalue())

    def test_shared_root_mapping_applies_to_episodes(self):
        copy = self.media_file("tv/Show/Season 01/S01E01.mkv")
        self.env["DOCKER_PATH_MAP_MOVIES"] = f"/data:{self.media}"
        series = [{"id": 7, "title": "Show"}]
        episode_files = [{"id": 70, "path": "/data/tv/Show/Season 01/S01E01.mkv"}]

        with patch("servarr_client.ServarrClient.test_connection", return_value=True), \
                patch("servarr_client.ServarrClient.get_all_series", return_value=series), \
                patch("servarr_client.ServarrClient.get_episode_files", return_value=episode_files):
            code = self.run_cli("tv")

        self.assertEqual(code, 1)
        self.assertIn(f"[EPISODE] {copy}", self.problems_text())
        self.assertNotIn("Files not found", self.out.getvalue())

    def test_verbose_flag(self):
        self.media_file("movies/A/A.mkv", linked=True)
        self.run_cli("movies-fs", "-v")
        self.assertIn("(links: 2)", self.out.getvalue())


class TestOtherModes(CliTestCase):
    """Test test-api and the report maintenance modes."""

    @patch("servarr_client.ServarrClient.test_connection", return_value=False)
    def test_test_api_always_exits_zero(self, _probe):
        self.assertEqual(self.run_cli("test-api"), 0)
        self.assertIn("ERROR: Cannot connect to radarr at http://radarr:7878", self.err.getvalue())
        self.assertIn("ERROR: Cannot connect to sonarr at http://sonarr:8989", self.err.getvalue())

    @patch("servarr_client.ServarrClient.test_connection", return_value=True)
    def test_test_api_ok(self, _probe):
        self.assertEqual(self.run_cli("test-api"), 0)
        self.assertIn("OK: radarr is reachable at http://radarr:7878", self.out.getvalue())

    def test_show_problems_without_configuration(self):
        env = {"PATH": os.environ.get("PATH", ""), "REPORT_DIR": str(self.reports)}
        self.reports.mkdir()
        (self.reports / "problems_20240101_000000.txt").write_text("[FILM] /m/a.mkv\n")
        self.assertEqual(self.run_cli("show-problems", env=env), 0)
        self.assertIn("[FILM] /m/a.mkv", self.out.getvalue())

    def test_fix_suggestions(self):
        self.reports.mkdir()
        (self.reports / "suggestions_20240101_000000.txt").write_text('ln "/d/a.mkv" "/m/a.mkv"\n')
        self.assertEqual(self.run_cli("fix-suggestions"), 0)
        self.assertIn('ln "/d/a.mkv" "/m/a.mkv"', self.out.getvalue())

    def test_clean_all(self):
        self.reports.mkdir()
        (self.reports / "problems_20240101_000000.txt").write_text("")
        self.assertEqual(self.run_cli("clean-all", "--report-dir", str(self.reports)), 0)
        self.assertEqual(list(self.reports.iterdir()), [])


if __name__ == "__main__":
    unittest.main()
