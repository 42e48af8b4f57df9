"""Answer extraction: pull renderable HTML out of free-form model output.

The model tends to wrap its HTML answer in commentary ("Here's the result:")
and some providers leak tool-call sentinel tokens such as
``<｜tool▁calls▁begin｜>`` into plain content. Everything here is a regex
heuristic on purpose; callers only rely on ``extract_html``/``is_html``.
"""

import re
from dataclasses import dataclass
from typing import Optional

__all__ = ["extract_html", "is_html", "strip_tool_markers", "classify_answer", "FinalAnswer"]

_MARKER_RE = re.compile(r"<[｜|][^>]*?[｜|]>")
_STRAY_CHARS_RE = re.compile(r"[｜▁]")
_DOCTYPE_RE = re.compile(r"<!DOCTYPE", re.IGNORECASE)
_HTML_OPEN_RE = re.compile(r"<html", re.IGNORECASE)
_BLOCK_TAG_RE = re.compile(
    r"<(div|body|section|article|main|table|ul|ol|h[1-6]|p)\b[^>]*>",
    re.IGNORECASE,
)
_ANY_OPEN_TAG_RE = re.compile(r"<[a-z][a-z0-9]*[\s\S]*?>", re.IGNORECASE)
_ANY_CLOSE_TAG_RE = re.compile(r"</[a-z][a-z0-9]*>", re.IGNORECASE)

_TAG_PATTERN_RE = re.compile(r"</?[a-z][a-z0-9]*[\s\S]*?>", re.IGNORECASE)
_STRUCTURE_RE = re.compile(
    r"<(html|head|body|div|span|p|table|ul|ol|h[1-6]|a|img|button|form|input)[\s>]",
    re.IGNORECASE,
)
_COMPLETE_TAG_RE = re.compile(r"<[a-z][a-z0-9]*[\s\S]*?(/>|>)", re.IGNORECASE)


@dataclass
class FinalAnswer:
    content: Optional[str]
    html: Optional[str] = None

    @property
    def is_html(self) -> bool:
        return self.html is not None


def strip_tool_markers(text: str) -> str:
    """Remove leaked tool-call sentinels and their stray glyphs."""
    cleaned = _MARKER_RE.sub("", text)
    return _STRAY_CHARS_RE.sub("", cleaned)


def extract_html(text: Optional[str]) -> Optional[str]:
    """Return the HTML payload inside ``text``, or ``None`` for plain text."""
    if not text or not isinstance(text, str):
        return None

    trimmed = strip_tool_markers(text.strip()).strip()
    if not trimmed:
        return None

    if trimmed.startswith("<!DOCTYPE") or trimmed.startswith("<html"):
        return trimmed

    match = _DOCTYPE_RE.search(trimmed)
    if match:
        return trimmed[match.start():].strip()

    match = _HTML_OPEN_RE.search(trimmed)
    if match:
        return trimmed[match.start():].strip()

    match = _BLOCK_TAG_RE.search(trimmed)
    if match:
        fragment = trimmed[match.start():].strip()
        closing = f"</{match.group(1).lower()}>"
        # Last occurrence so nested tags of the same name stay intact.
        end = fragment.lower().rfind(closing)
        if end != -1:
            return fragment[:end + len(closing)].strip()
        return fragment

    match = _ANY_OPEN_TAG_RE.search(trimmed)
    if match:
        fragment = trimmed[match.start():]
        last_close = None
        for last_close in _ANY_CLOSE_TAG_RE.finditer(fragment):
            pass
        if last_close is not None:
            return fragment[:last_close.end()].strip()
        return fragment.strip()

    return None


def is_html(text: Optional[str]) -> bool:
    """Whether ``text`` already looks like markup.

    Needs a plausible tag (or a known structural tag) plus at least one
    complete opening or self-closing tag, so ``(< a b)`` and ``(<! ch)``
    stay code.
    """
    if not isinstance(text, str):
        return False
    plausible = bool(_TAG_PATTERN_RE.search(text) or _STRUCTURE_RE.search(text))
    return plausible and bool(_COMPLETE_TAG_RE.search(text))


def classify_answer(content: Optional[str]) -> FinalAnswer:
    """Decide how a final model message should be shown."""
    html = extract_html(content) if content else None
    if html:
        return FinalAnswer(content=content, html=html)
    if content and is_html(content):
        return FinalAnswer(content=content, html=content)
    return FinalAnswer(content=content)
