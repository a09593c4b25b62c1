"""Rich-text normalization: tracker HTML → clean structured text.

``normalize`` is idempotent: its output contains no tags and no decodable
entities, so a second pass leaves it unchanged. Truncation is a display
concern only and lives in ``truncate_text``.
"""

from __future__ import annotations

import html
import re
from collections.abc import Mapping
from html.parser import HTMLParser

_BLOCK_TAGS = {
    "p", "div", "ul", "ol", "table", "tr", "blockquote", "pre",
    "section", "article", "header", "footer", "dl", "dt", "dd",
}
_HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}
_SKIP_TAGS = {"script", "style", "head", "title"}
_CELL_TAGS = {"td", "th"}

_PARA = "\n\n"
_TAG_RE = re.compile(r"</?[A-Za-z][^<>]*>")
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
# declarations, processing instructions and bogus end tags
_MARKUP_RE = re.compile(r"<!--.*?-->|<![^>]*>|<\?[^>]*>|</[^>]*>", re.DOTALL)
# whatever is left that a parser would still read as the start of markup
_OPEN_MARKUP_RE = re.compile(r"<(?=[A-Za-z!?/])")
_SPACES_RE = re.compile("[ \t\r\f\v\u00a0\u200b]+")
_BLANKS_RE = re.compile(r"\n{3,}")
_IMG_SRC_RE = re.compile(r"""<img\b[^>]*?\bsrc\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)


class _TextExtractor(HTMLParser):
    def __init__(self, image_refs: Mapping[str, str]):
        super().__init__(convert_charrefs=True)
        self.image_refs = image_refs
        self.parts: list[str] = []
        self._skip_depth = 0
        self._row_has_cell = False

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
            return
        if self._skip_depth:
            return
        if tag in _BLOCK_TAGS:
            self.parts.append(_PARA)
            if tag == "tr":
                self._row_has_cell = False
        elif tag in _HEADING_TAGS:
            self.parts.append(_PARA + "**")
        elif tag == "li":
            self.parts.append("\n• ")
        elif tag == "br":
            self.parts.append("\n")
        elif tag in _CELL_TAGS:
            if self._row_has_cell:
                self.parts.append(" | ")
            self._row_has_cell = True
        elif tag == "img":
            self._image(dict(attrs))

    def handle_startendtag(self, tag, attrs):
        self.handle_starttag(tag, attrs)
        if tag in _SKIP_TAGS:
            self._skip_depth -= 1

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth:
            return
        if tag in _BLOCK_TAGS:
            self.parts.append(_PARA)
        elif tag in _HEADING_TAGS:
            self.parts.append("**" + _PARA)

    def handle_data(self, data):
        if not self._skip_depth:
            self.parts.append(data)

    def _image(self, attrs: dict) -> None:
        src = (attrs.get("src") or "").strip()
        if not src:
            return
        alt = (attrs.get("alt") or "image").strip() or "image"
        target = self.image_refs.get(src, src)
        self.parts.append(f"![{alt}]({target})")


def _decode_and_strip(text: str) -> str:
    # stripping can expose a new entity and decoding can expose new markup
    while True:
        cleaned = _MARKUP_RE.sub("", _TAG_RE.sub("", html.unescape(text)))
        if cleaned == text:
            return text
        text = cleaned


def _tidy_whitespace(text: str) -> str:
    lines = [_SPACES_RE.sub(" ", line).strip() for line in text.split("\n")]
    # "**" left behind by an empty heading
    lines = ["" if line == "****" else line for line in lines]
    return _BLANKS_RE.sub(_PARA, "\n".join(lines)).strip()


def normalize(raw: str | None, image_refs: Mapping[str, str] | None = None) -> str:
    """Convert tracker markup into clean text.

    Block elements become paragraphs, list items become ``• `` bullets,
    headings become ``**Heading**`` and ``<img>`` becomes a Markdown image
    pointing at ``image_refs[src]`` when the source was downloaded.
    """
    if not raw:
        return ""
    parser = _TextExtractor(image_refs or {})
    parser.feed(_COMMENT_RE.sub("", raw))
    parser.close()
    text = "".join(parser.parts)
    text = _decode_and_strip(text)
    text = _OPEN_MARKUP_RE.sub("< ", text)
    return _tidy_whitespace(text)


def extract_image_sources(raw: str | None) -> list[str]:
    """``<img src>`` values in order of first appearance, entity-decoded."""
    if not raw:
        return []
    seen: list[str] = []
    for match in _IMG_SRC_RE.finditer(raw):
        src = html.unescape(match.group(2)).strip()
        if src and src not in seen:
            seen.append(src)
    return seen


# -------------------------------------------------------------------
# Acceptance criteria fallback
# -------------------------------------------------------------------

_AC_HEADER_RE = re.compile(
    r"^(?:\*\*)?\s*(?:acceptance criteria|ac)\b\s*(?:\*\*)?\s*(?::\s*(?:\*\*)?\s*(.*)|$)",
    re.IGNORECASE,
)
_HEADING_LINE_RE = re.compile(r"^\*\*.+\*\*$")


def extract_acceptance_criteria(description: str) -> str:
    """Pull an "Acceptance Criteria:" block out of normalized description text.

    The block runs until the next ``**Heading**`` line or the end of text.
    """
    lines = description.split("\n")
    for i, line in enumerate(lines):
        match = _AC_HEADER_RE.match(line.strip())
        if not match:
            continue
        collected = [match.group(1)] if match.group(1) else []
        for follow in lines[i + 1:]:
            if _HEADING_LINE_RE.match(follow.strip()):
                break
            collected.append(follow)
        return "\n".join(collected).strip()
    return ""


# -------------------------------------------------------------------
# Display truncation
# -------------------------------------------------------------------

_WS_RE = re.compile(r"\s")


def truncate_text(text: str, max_len: int = 150) -> str:
    """Cut *text* at the last word boundary at or before *max_len*.

    The suffix reports exactly how many characters were elided, so
    ``len(kept) + elided == len(text)``. A word is never split; a single
    word longer than *max_len* is elided entirely.
    """
    if len(text) <= max_len:
        return text
    cut = 0
    for match in _WS_RE.finditer(text, 0, max_len + 1):
        cut = match.start()
    kept = text[:cut].rstrip()
    elided = len(text) - len(kept)
    return f"{kept}... ({elided} more chars)"


def truncate_to_paragraph(text: str, max_len: int = 150) -> str:
    """Show the first paragraph if it fits, else fall back to ``truncate_text``."""
    pos = text.find("\n\n")
    if 0 <= pos <= max_len:
        kept = text[:pos].rstrip()
        if len(kept) == len(text):
            return text
        return f"{kept}\n... ({len(text) - len(kept)} more chars)"
    return truncate_text(text, max_len)
