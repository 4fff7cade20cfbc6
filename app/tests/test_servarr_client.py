#!/usr/bin/env python3
"""
Unit tests for servarr_client.py

Tests instance parsing, request building, error mapping and media item
listing. HTTP is faked by patching urllib.request.urlopen.
"""

import io
import json
import os
import sys
import unittest
import urllib.error
from unittest.mock import patch, MagicMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from servarr_client import (
    Category,
    ConnectionStatus,
    ServarrClient,
    ServarrError,
    ServarrInstance,
    ServarrType,
    build_client,
)


def fake_response(payload):
    """Context-manager response as returned by urlopen()."""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    resp = MagicMock()
    resp.read.return_value = body
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    return resp


def http_error(code, reason="Error"):
    return urllib.error.HTTPError("http://x", code, reason, {}, io.BytesIO(b""))


class RoutedUrlopen:
    """urlopen replacement answering by endpoint (path after /api/v3/)."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, req, timeout=None, context=None):
        self.requests.append(req)
        endpoint = req.full_url.split("/api/v3/", 1)[1].split("?", 1)[0]
        answer = self.routes[endpoint]
        if callable(answer):
            answer = answer(req)
        if isinstance(answer, Exception):
            raise answer
        return fake_response(answer)


class TestServarrInstance(unittest.TestCase):
    """Test Servarr instance configuration."""

    def test_url_normalised(self):
        inst = ServarrInstance("radarr", "localhost:7878/", "key", ServarrType.RADARR)
        self.assertEqual(inst.url, "http://localhost:7878")

    def test_https_url_kept(self):
        inst = ServarrInstance("sonarr", " https://sonarr.example.com/ ", "key", ServarrType.SONARR)
        self.assertEqual(inst.url, "https://sonarr.example.com")

    def test_from_dict_basic(self):
        instance = ServarrInstance.from_dict(
            {"name": "main", "url": "http://localhost:8989", "api_key": "testkey123"},
            ServarrType.SONARR,
        )
        self.assertEqual(instance.name, "main")
        self.assertEqual(instance.api_key, "testkey123")
        self.assertEqual(instance.timeout, 30)

    def test_from_dict_defaults_name_and_apikey_alias(self):
        instance = ServarrInstance.from_dict({"url": "http://r:7878", "apikey": "k", "timeout": "5"},
                                             ServarrType.RADARR)
        self.assertEqual(instance.name, "radarr")
        self.assertEqual(instance.api_key, "k")
        self.assertEqual(instance.timeout, 5)


class TestRequests(unittest.TestCase):
    """Test request building and error mapping."""

    def setUp(self):
        self.client = build_client(ServarrType.RADARR, "http://radarr:7878", "secret", timeout=12)

    def test_request_headers_and_url(self):
        with patch("urllib.request.urlopen", return_value=fake_response([])) as mock_open:
            self.client.get_movie_files(5)
        req = mock_open.call_args[0][0]
        self.assertEqual(req.full_url, "http://radarr:7878/api/v3/moviefile?movieId=5")
        self.assertEqual(req.get_header("X-api-key"), "secret")
        self.assertEqual(req.get_header("Accept"), "application/json")
        self.assertEqual(mock_open.call_args[1]["timeout"], 12)

    def test_http_401_is_auth_error(self):
        with patch("urllib.request.urlopen", side_effect=http_error(401, "Unauthorized")):
            with self.assertRaises(ServarrError) as cm:
                self.client.get_all_movies()
        self.assertEqual(cm.exception.status, 401)
        self.assertEqual(self.client.instance.connection_status, ConnectionStatus.AUTH_ERROR)

    def test_http_error(self):
        with patch("urllib.request.urlopen", side_effect=http_error(500, "Server Error")):
            with self.assertRaises(ServarrError) as cm:
                self.client.get_all_movies()
        self.assertEqual(cm.exception.reason, "HTTP 500: Server Error")

    def test_connection_error(self):
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("Connection refused")):
            with self.assertRaises(ServarrError) as cm:
                self.client.get_all_movies()
        self.assertIn("Connection refused", cm.exception.reason)
        self.assertEqual(cm.exception.service, "radarr")

    def test_invalid_json(self):
        with patch("urllib.request.urlopen", return_value=fake_response(b"<html>")):
            with self.assertRaises(ServarrError):
                self.client.get_all_movies()

    def test_unexpected_payload(self):
        with patch("urllib.request.urlopen", return_value=fake_response({"message": "nope"})):
            with self.assertRaises(ServarrError):
                self.client.get_all_movies()

    def test_paged_records_unwrapped(self):
        with patch("urllib.request.urlopen", return_value=fake_response({"records": [{"id": 1}]})):
            self.assertEqual(self.client.get_history(1), [{"id": 1}])


class TestConnection(unittest.TestCase):
    """Test the reachability probe."""

    def test_success(self):
        client = build_client(ServarrType.SONARR, "http://sonarr:8989", "key")
        with patch("urllib.request.urlopen", return_value=fake_response({"version": "4.0.1"})):
            self.assertTrue(client.test_connection())
        self.assertEqual(client.instance.version, "4.0.1")
        self.assertEqual(client.instance.connection_status, ConnectionStatus.CONNECTED)

    def test_failure_never_raises(self):
        client = build_client(ServarrType.SONARR, "http://sonarr:8989", "key")
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("timed out")):
            self.assertFalse(client.test_connection())
        self.assertEqual(client.instance.connection_status, ConnectionStatus.TIMEOUT)

    def test_missing_api_key_skips_request(self):
        client = build_client(ServarrType.RADARR, "http://radarr:7878", "")
        with patch("urllib.request.urlopen") as mock_open:
            self.assertFalse(client.test_connection())
        mock_open.assert_not_called()
        self.assertEqual(client.instance.last_error, "API key not set")


class TestMediaItems(unittest.TestCase):
    """Test movie and episode listing."""

    def test_movies_with_files_only(self):
        client = build_client(ServarrType.RADARR, "http://radarr:7878", "key")
        routes = RoutedUrlopen({
            "movie": [
                {"id": 1, "title": "Foo", "hasFile": True, "movieFile": {"path": "/data/movies/Foo/Foo.mkv"}},
                {"id": 2, "title": "Bar", "hasFile": False},
                {"id": 3, "title": "Baz", "hasFile": True},
            ],
            "moviefile": [{"id": 30, "path": "/data/movies/Baz/Baz.mkv"}],
        })
        with patch("urllib.request.urlopen", routes):
            items = list(client.iter_movie_items())

        self.assertEqual([i.title for i in items], ["Foo", "Baz"])
        self.assertEqual(items[1].path, "/data/movies/Baz/Baz.mkv")
        self.assertTrue(all(i.category == Category.FILM for i in items))

    def test_episode_files_joined_to_series(self):
        client = build_client(ServarrType.SONARR, "http://sonarr:8989", "key")

        def episode_files(req):
            if "seriesId=2" in req.full_url:
                return http_error(500)
            return [{"id": 11, "seriesId": 1, "path": "/tv/Show/S01E01.mkv"}, {"id": 12, "seriesId": 1, "path": ""}]

        routes = RoutedUrlopen({
            "series": [{"id": 1, "title": "Show"}, {"id": 2, "title": "Broken"}],
            "episodefile": episode_files,
        })
        seen, failed = [], []
        with patch("urllib.request.urlopen", routes):
            items = list(client.iter_episode_items(
                on_series=lambda s: seen.append(s["title"]),
                on_series_error=lambda s, e: failed.append(s["title"]),
            ))

        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].title, "Show")
        self.assertEqual(items[0].parent_id, 1)
        self.assertEqual(items[0].category, Category.EPISODE)
        self.assertEqual(seen, ["Show", "Broken"])
        self.assertEqual(failed, ["Broken"])

    def test_import_sources_newest_wins(self):
        client = build_client(ServarrType.RADARR, "http://radarr:7878", "key")
        routes = RoutedUrlopen({
            "history/movie": [
                {"date": "2024-02-01T00:00:00Z", "data": {"importedPath": "/m/Foo.mkv", "droppedPath": "/dl/new/Foo.mkv"}},
                {"date": "2024-01-01T00:00:00Z", "data": {"importedPath": "/m/Foo.mkv", "droppedPath": "/dl/old/Foo.mkv"}},
                {"date": "2024-01-05T00:00:00Z", "data": {"importedPath": "/m/Bar.mkv"}},
            ],
        })
        with patch("urllib.request.urlopen", routes):
            sources = client.get_import_sources(1)

        self.assertEqual(sources, {"/m/Foo.mkv": "/dl/new/Foo.mkv"})
        self.assertIn("eventType=downloadFolderImported", routes.requests[0].full_url)

    def test_root_folders(self):
        client = ServarrClient(ServarrInstance("sonarr", "http://s:8989", "k", ServarrType.SONARR))
        with patch("urllib.request.urlopen", return_value=fake_response([{"path": "/tv"}, {"path": ""}])):
            self.assertEqual(client.get_root_folders(), ["/tv"])


if __name__ == "__main__":
    unittest.main()
