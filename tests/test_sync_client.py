import base64
import io
import json
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock
from urllib import error

SCRIPTS_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "scripts")
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

import livenote_sync  # noqa: E402


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class SyncClientTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory(prefix="livenote-client-test-")
        self.note_path = os.path.join(self._tmp.name, "todo.md")
        with open(self.note_path, "w", encoding="utf-8") as f:
            f.write("# Buy milk\n")

    def tearDown(self):
        self._tmp.cleanup()

    def run_main(self, argv, response=None, side_effect=None):
        stdout, stderr = io.StringIO(), io.StringIO()
        with mock.patch.object(livenote_sync.request, "urlopen") as urlopen:
            if side_effect is not None:
                urlopen.side_effect = side_effect
            else:
                urlopen.return_value = response
            with redirect_stdout(stdout), redirect_stderr(stderr):
                code = livenote_sync.main(argv)
        return code, urlopen, stdout.getvalue(), stderr.getvalue()

    def test_build_sync_request(self):
        req = livenote_sync.build_sync_request(
            "https://notes.example.com/", "todo.md", "# Hi", "divy", "pw"
        )
        self.assertEqual(req.full_url, "https://notes.example.com/sync")
        self.assertEqual(req.get_method(), "POST")
        self.assertEqual(json.loads(req.data.decode("utf-8")), {"title": "todo.md", "body": "# Hi"})
        self.assertEqual(req.get_header("Content-type"), "application/json")
        token = req.get_header("Authorization").split(" ", 1)[1]
        self.assertEqual(base64.b64decode(token).decode("utf-8"), "divy:pw")

    def test_raw_flag_targets_sync_raw(self):
        req = livenote_sync.build_sync_request("http://h", "a", "b", "u", "p", raw=True)
        self.assertEqual(req.full_url, "http://h/sync-raw")

    def test_main_posts_file(self):
        code, urlopen, out, _ = self.run_main(
            [self.note_path, "divy", "pw", "http://localhost:8080"],
            response=FakeResponse(200, f"Note synced: {self.note_path}".encode("utf-8")),
        )
        self.assertEqual(code, 0)
        req = urlopen.call_args[0][0]
        payload = json.loads(req.data.decode("utf-8"))
        self.assertEqual(payload, {"title": self.note_path, "body": "# Buy milk\n"})
        self.assertIn("Response: 200", out)

    def test_title_override(self):
        code, urlopen, _, _ = self.run_main(
            [self.note_path, "divy", "pw", "http://localhost:8080", "--title", "todo"],
            response=FakeResponse(200, b"Note synced: todo"),
        )
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(urlopen.call_args[0][0].data)["title"], "todo")

    def test_notes_config_is_skipped(self):
        code, urlopen, _, _ = self.run_main(
            ["/home/me/notes/.notes_config", "divy", "pw", "http://localhost:8080"],
        )
        self.assertEqual(code, 0)
        urlopen.assert_not_called()

    def test_http_error_exit_code(self):
        http_error = error.HTTPError(
            "http://localhost:8080/sync", 401, "Unauthorized", {}, io.BytesIO(b"Unauthorized")
        )
        code, _, out, _ = self.run_main(
            [self.note_path, "divy", "bad", "http://localhost:8080"], side_effect=http_error
        )
        self.assertEqual(code, 1)
        self.assertIn("Response: 401", out)
        self.assertIn("Unauthorized", out)

    def test_connection_error_exit_code(self):
        code, _, _, err = self.run_main(
            [self.note_path, "divy", "pw", "http://localhost:1"],
            side_effect=error.URLError("connection refused"),
        )
        self.assertEqual(code, 1)
        self.assertIn("connection refused", err)

    def test_missing_file(self):
        code, urlopen, _, err = self.run_main(
            [os.path.join(self._tmp.name, "gone.md"), "divy", "pw", "http://localhost:8080"],
        )
        self.assertEqual(code, 1)
        urlopen.assert_not_called()
        self.assertIn("cannot read", err)


if __name__ == "__main__":
    unittest.main(verbosity=2)
