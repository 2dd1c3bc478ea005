import mimetypes
import re

import markdown


MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "sane_lists"]
DEFAULT_CONTENT_TYPE = 'text/html'


def is_markdown_title(title):
    # Extension-less titles are plain notes written in markdown.
    return '.' not in title or title.endswith('.md')


def render_markdown(text):
    html = markdown.markdown(text or "", extensions=MARKDOWN_EXTENSIONS)
    return re.sub(
        r'<a href="(https?://[^"]+)"(?![^>]*target=)',
        r'<a href="\1" target="_blank" rel="noopener noreferrer"',
        html,
    )


def guess_content_type(title):
    content_type, _ = mimetypes.guess_type(title, strict=False)
    if not content_type:
        return DEFAULT_CONTENT_TYPE
    if content_type.startswith('text/') or content_type in {'application/javascript', 'application/json'}:
        return f"{content_type}; charset=utf-8"
    return content_type
