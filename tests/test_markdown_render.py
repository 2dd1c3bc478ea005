import os
import sys
import unittest

BACKEND_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend")
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from markdown_render import guess_content_type, is_markdown_title, render_markdown  # noqa: E402


class MarkdownRenderTests(unittest.TestCase):
    def test_markdown_titles(self):
        self.assertTrue(is_markdown_title("todo"))
        self.assertTrue(is_markdown_title("notes.md"))
        self.assertTrue(is_markdown_title("dir/notes.md"))
        self.assertFalse(is_markdown_title("style.css"))
        self.assertFalse(is_markdown_title("app.js"))
        self.assertFalse(is_markdown_title("notes.md.bak"))

    def test_heading(self):
        self.assertIn("<h1>Buy milk</h1>", render_markdown("# Buy milk"))

    def test_fenced_code_and_tables(self):
        html = render_markdown("```\nx = 1\n```\n\n| a | b |\n|---|---|\n| 1 | 2 |\n")
        self.assertIn("<code>", html)
        self.assertIn("<table>", html)

    def test_external_links_open_in_new_tab(self):
        html = render_markdown("[site](https://example.com)")
        self.assertIn('target="_blank"', html)
        self.assertIn('rel="noopener noreferrer"', html)
        self.assertNotIn('target="_blank"', render_markdown("[local](/x/other)"))

    def test_empty_text(self):
        self.assertEqual(render_markdown(""), "")

    def test_content_type_guess(self):
        self.assertEqual(guess_content_type("style.css"), "text/css; charset=utf-8")
        self.assertTrue(guess_content_type("logo.png").startswith("image/png"))
        self.assertEqual(guess_content_type("data.unknownext"), "text/html")


if __name__ == "__main__":
    unittest.main(verbosity=2)
