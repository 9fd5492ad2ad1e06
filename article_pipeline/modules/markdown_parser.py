"""
Minimal markdown scanner for inline images.

Produces a flat token stream of text runs and image nodes. Only what the
pipeline needs is understood:
- inline images: ![alt](url), ![alt](<url>), ![alt](url "title")
- backslash escapes and nested brackets in alt text
- balanced parentheses in bare URLs
- fenced code blocks and inline code spans (never scanned for images)

Joining the ``raw`` of all tokens always gives back the input text.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union

_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_HEADING_RE = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+|$)")
_ESCAPABLE_RE = re.compile(r"\\([!-/:-@\[-`{-~])")


@dataclass
class TextRun:
    """Plain text between images."""
    raw: str


@dataclass
class ImageNode:
    """Inline image markup."""
    raw: str
    alt: str
    url: str
    title: Optional[str] = None


Token = Union[TextRun, ImageNode]


def unescape(text: str) -> str:
    """Remove markdown backslash escapes."""
    return _ESCAPABLE_RE.sub(r"\1", text)


def heading_level(line: str) -> int:
    """Return ATX heading level of a line, or 0 if it is not a heading."""
    match = _HEADING_RE.match(line)
    return len(match.group(1)) if match else 0


def code_fence_mask(lines: list[str]) -> list[bool]:
    """
    Flag lines that belong to fenced code blocks (fence lines included).

    An unclosed fence runs to the end of the document.
    """
    mask = []
    fence: Optional[str] = None

    for line in lines:
        if fence is None:
            match = _FENCE_RE.match(line)
            if match:
                fence = match.group(1)
                mask.append(True)
            else:
                mask.append(False)
            continue

        mask.append(True)
        stripped = line.strip()
        if stripped and set(stripped) == {fence[0]} and len(stripped) >= len(fence):
            fence = None

    return mask


def tokenize(text: str) -> list[Token]:
    """Split text into TextRun and ImageNode tokens in document order."""
    tokens: list[Token] = []
    lines = text.splitlines(keepends=True)

    for line, in_code in zip(lines, code_fence_mask(lines)):
        if in_code:
            _append_text(tokens, line)
            continue
        for token in _scan_line(line):
            if isinstance(token, TextRun):
                _append_text(tokens, token.raw)
            else:
                tokens.append(token)

    return tokens


def iter_images(text: str) -> list[ImageNode]:
    """All image nodes of a text in document order."""
    return [t for t in tokenize(text) if isinstance(t, ImageNode)]


def render_image(alt: str, url: str, title: Optional[str] = None) -> str:
    """Render image markup, escaping where the parser would need it."""
    alt_md = re.sub(r"([\\\[\]])", r"\\\1", alt)

    dest = url
    if any(c.isspace() for c in url) or "<" in url or not _parens_balanced(url):
        dest = "<" + url.replace(">", "%3E") + ">"

    title_md = ""
    if title:
        escaped = title.replace("\\", "\\\\").replace('"', '\\"')
        title_md = f' "{escaped}"'

    return f"![{alt_md}]({dest}{title_md})"


def _append_text(tokens: list[Token], raw: str) -> None:
    if tokens and isinstance(tokens[-1], TextRun):
        tokens[-1] = TextRun(tokens[-1].raw + raw)
    else:
        tokens.append(TextRun(raw))


def _parens_balanced(url: str) -> bool:
    depth = 0
    for ch in url:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def _skip_blanks(s: str, i: int) -> int:
    while i < len(s) and s[i] in " \t":
        i += 1
    return i


def _backtick_run(s: str, i: int) -> int:
    j = i
    while j < len(s) and s[j] == "`":
        j += 1
    return j - i


def _find_closing_ticks(s: str, start: int, run: int) -> int:
    """Index just past a backtick run of exactly ``run`` length, or -1."""
    i = start
    while i < len(s):
        if s[i] == "`":
            length = _backtick_run(s, i)
            if length == run:
                return i + length
            i += length
        else:
            i += 1
    return -1


def _scan_line(line: str) -> list[Token]:
    out: list[Token] = []
    start = 0
    i = 0

    while i < len(line):
        ch = line[i]

        if ch == "\\":
            i += 2
            continue

        if ch == "`":
            run = _backtick_run(line, i)
            end = _find_closing_ticks(line, i + run, run)
            i = end if end != -1 else i + run
            continue

        if ch == "!" and line.startswith("[", i + 1):
            parsed = _parse_image(line, i)
            if parsed:
                node, end = parsed
                if start < i:
                    out.append(TextRun(line[start:i]))
                out.append(node)
                i = start = end
                continue

        i += 1

    if start < len(line):
        out.append(TextRun(line[start:]))
    return out


def _parse_image(s: str, pos: int) -> Optional[tuple[ImageNode, int]]:
    """Parse image markup starting at ``pos`` (which points at '!')."""
    n = len(s)

    # Alt text: balanced brackets, escapes skipped
    i = pos + 2
    depth = 1
    while i < n:
        c = s[i]
        if c == "\\":
            i += 2
            continue
        if c == "\n":
            return None
        if c == "[":
            depth += 1
        elif c == "]":
            depth -= 1
            if depth == 0:
                break
        i += 1
    if i >= n:
        return None
    raw_alt = s[pos + 2:i]

    i += 1
    if i >= n or s[i] != "(":
        return None
    i = _skip_blanks(s, i + 1)

    # Destination
    if i < n and s[i] == "<":
        j = i + 1
        while j < n and s[j] not in "<>\n":
            j += 2 if s[j] == "\\" else 1
        if j >= n or s[j] != ">":
            return None
        url = s[i + 1:j]
        i = j + 1
    else:
        j = i
        depth = 0
        while j < n:
            c = s[j]
            if c == "\\":
                j += 2
                continue
            if c.isspace():
                break
            if c == "(":
                depth += 1
            elif c == ")":
                if depth == 0:
                    break
                depth -= 1
            j += 1
        j = min(j, n)
        url = s[i:j]
        i = j

    # Optional title, separated from the destination by whitespace
    title = None
    k = _skip_blanks(s, i)
    if k > i and k < n and s[k] in "\"'(":
        closer = ")" if s[k] == "(" else s[k]
        m = k + 1
        while m < n and s[m] != closer:
            if s[m] == "\n":
                return None
            m += 2 if s[m] == "\\" else 1
        if m >= n:
            return None
        title = unescape(s[k + 1:m])
        i = _skip_blanks(s, m + 1)
    else:
        i = k

    if i >= n or s[i] != ")":
        return None

    end = i + 1
    node = ImageNode(raw=s[pos:end], alt=unescape(raw_alt), url=unescape(url), title=title)
    return node, end
