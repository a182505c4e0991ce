"""Best-effort extraction of generated images from assistant text."""

import re
from functools import lru_cache
from typing import List, Optional, Tuple

from .models import MediaAttachment

GENERATED_IMAGE_NAME = "Generated image"

MARKDOWN_IMAGE = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
HTML_IMAGE = re.compile(r"<img\s+[^>]*src=[\"']([^\"']+)[\"'][^>]*>", re.IGNORECASE)
HTML_ALT = re.compile(r"alt=[\"']([^\"']*)[\"']", re.IGNORECASE)
DIRECT_IMAGE = re.compile(
    r"(https?://[^\s<>\"')]+\.(?:png|jpg|jpeg|gif|webp|svg|bmp))(\?[^\s<>\"')]*)?",
    re.IGNORECASE,
)
BASE64_IMAGE = re.compile(r"(data:image/[a-zA-Z0-9+.-]+;base64,[A-Za-z0-9+/=]{100,})")


def _is_image_url(url: str) -> bool:
    return url.startswith(("data:image/", "http://", "https://"))


@lru_cache(maxsize=64)
def _extract(content: str) -> Tuple[Tuple[str, str], ...]:
    found: List[Tuple[str, str]] = []
    seen = set()

    def add(url: str, name: Optional[str]) -> None:
        if url not in seen:
            seen.add(url)
            found.append((url, name or GENERATED_IMAGE_NAME))

    for match in MARKDOWN_IMAGE.finditer(content):
        # ![alt](url "title"): the url is the first token
        parts = match.group(2).split()
        if parts and _is_image_url(parts[0]):
            add(parts[0], match.group(1))

    for match in HTML_IMAGE.finditer(content):
        url = match.group(1)
        if _is_image_url(url):
            alt = HTML_ALT.search(match.group(0))
            add(url, alt.group(1) if alt else None)

    for match in DIRECT_IMAGE.finditer(content):
        add(match.group(1) + (match.group(2) or ""), None)

    for match in BASE64_IMAGE.finditer(content):
        add(match.group(1), None)

    return tuple(found)


def extract_images(content: Optional[str], generated_by: Optional[str] = None) -> List[MediaAttachment]:
    """Finds image references in ``content``.

    Recognizes markdown images, HTML ``<img>`` tags, bare image URLs and base64
    data URIs. Duplicates are dropped, first occurrence wins. Results for a
    given content string are cached, so repeated scans of an unchanged buffer
    are cheap.
    """
    if not content:
        return []
    return [
        MediaAttachment(url=url, name=name, generated_by=generated_by)
        for url, name in _extract(content)
    ]
