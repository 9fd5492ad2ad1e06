"""
Placeholder codec: reversible image <-> token transform for markdown.

decode() swaps every inline image for an indexed token such as [[IMG_1]] and
returns the ordered image table. After the text went through the generation
API, encode() puts the images back. Tokens the model dropped are recovered by
re-inserting their images after free section headings, or at the end of the
article under a separator, so no sourced image is ever lost.

Generation mode uses its own marker family (IMAGE_PLACEHOLDER_n written as
image URLs by the model), handled by extract_generation_markers() and
fill_generation_markers().
"""

import re
from dataclasses import dataclass, field
from typing import Optional

from .markdown_parser import (
    ImageNode,
    code_fence_mask,
    heading_level,
    iter_images,
    render_image,
    tokenize,
)

TOKEN_STEM = "IMG"
SEPARATOR = "---"
GENERATION_MARKER_RE = re.compile(r"IMAGE_PLACEHOLDER_(\d+)")


@dataclass
class ImageEntry:
    """One image found in an article during a single processing attempt."""
    index: int  # 1-based, document order
    alt_text: str
    source_url: str
    placeholder_token: str
    title: Optional[str] = None
    markup: str = ""  # original markup, restored verbatim if never resolved
    resolved_url: Optional[str] = None

    def render(self) -> str:
        """Markdown for this image, using the durable URL when available."""
        if self.resolved_url:
            return render_image(self.alt_text, self.resolved_url, self.title)
        return self.markup or render_image(self.alt_text, self.source_url, self.title)


@dataclass
class DecodedText:
    """Text with images replaced by tokens, plus the ordered image table."""
    text: str
    images: list[ImageEntry] = field(default_factory=list)


def decode(text: str) -> DecodedText:
    """
    Replace every inline image with an indexed placeholder token.

    The token stem is picked so that it never occurs in the input already.
    """
    stem = _choose_stem(text)
    parts = []
    images: list[ImageEntry] = []

    for token in tokenize(text):
        if isinstance(token, ImageNode):
            index = len(images) + 1
            entry = ImageEntry(
                index=index,
                alt_text=token.alt,
                source_url=token.url,
                placeholder_token=f"[[{stem}_{index}]]",
                title=token.title,
                markup=token.raw,
            )
            images.append(entry)
            parts.append(entry.placeholder_token)
        else:
            parts.append(token.raw)

    return DecodedText(text="".join(parts), images=images)


def encode(text: str, images: list[ImageEntry]) -> str:
    """
    Put images back into (possibly rewritten) text.

    1. Substitute each surviving token (first occurrence; copies are removed).
    2. Insert images whose token is gone after the next section heading
       not already followed by an image.
    3. Append whatever is left at the end under a separator.

    No token of the decode family survives in the result.
    """
    if not images:
        return text

    stem = _stem_of(images[0])
    unplaced = []

    for entry in sorted(images, key=lambda e: e.index):
        pattern = _token_pattern(re.escape(stem), str(entry.index))
        match = pattern.search(text)
        if not match:
            unplaced.append(entry)
            continue
        text = text[:match.start()] + entry.render() + text[match.end():]
        text = pattern.sub("", text)

    text = _token_pattern(re.escape(stem), r"\d+").sub("", text)

    if unplaced:
        text, unplaced = _insert_after_headings(text, unplaced)
    if unplaced:
        text = _append_with_separator(text, unplaced)

    return text


def extract_generation_markers(text: str) -> list[ImageEntry]:
    """Image entries for every ![alt](IMAGE_PLACEHOLDER_n) the model emitted."""
    entries: list[ImageEntry] = []

    for node in iter_images(text):
        match = GENERATION_MARKER_RE.fullmatch(node.url.strip())
        if not match:
            continue
        entries.append(ImageEntry(
            index=len(entries) + 1,
            alt_text=node.alt.strip() or f"Image {match.group(1)}",
            source_url=node.url,
            placeholder_token=match.group(0),
            title=node.title,
            markup=node.raw,
        ))

    return entries


def fill_generation_markers(text: str, images: list[ImageEntry]) -> str:
    """
    Substitute resolved URLs for generation markers.

    ``images`` must come from extract_generation_markers() on the same text.
    Markers without a resolved URL are dropped with their markup, and bare
    marker strings outside image markup are stripped.
    """
    pending = iter(images)
    parts = []

    for token in tokenize(text):
        if isinstance(token, ImageNode) and GENERATION_MARKER_RE.fullmatch(token.url.strip()):
            entry = next(pending, None)
            if entry is not None and entry.resolved_url:
                parts.append(render_image(entry.alt_text, entry.resolved_url, entry.title))
            continue
        parts.append(token.raw)

    return GENERATION_MARKER_RE.sub("", "".join(parts))


def first_image_url(text: str) -> Optional[str]:
    """URL of the first image in document order."""
    for node in iter_images(text):
        url = node.url.strip()
        if url and not GENERATION_MARKER_RE.fullmatch(url):
            return url
    return None


def _choose_stem(text: str) -> str:
    stem = TOKEN_STEM
    suffix = 0
    while f"[[{stem}_" in text:
        suffix += 1
        stem = f"{TOKEN_STEM}{suffix}"
    return stem


def _stem_of(entry: ImageEntry) -> str:
    return entry.placeholder_token[2:-2].rsplit("_", 1)[0]


def _token_pattern(stem_re: str, index_re: str) -> re.Pattern:
    # Models sometimes escape the brackets, pad them, or wrap the token in backticks
    return re.compile(
        r"`?\\?\[\\?\[\s*" + stem_re + "_" + index_re + r"\s*\\?\]\\?\]`?"
    )


def _followed_by_image(lines: list[str], idx: int) -> bool:
    for line in lines[idx + 1:]:
        if not line.strip():
            continue
        tokens = tokenize(line.strip())
        return bool(tokens) and isinstance(tokens[0], ImageNode)
    return False


def _insert_after_headings(
    text: str,
    pending: list[ImageEntry],
) -> tuple[str, list[ImageEntry]]:
    """Place one pending image under each free H2-H6 heading, in order."""
    lines = text.split("\n")
    in_code = code_fence_mask(lines)
    queue = list(pending)
    out = []

    for idx, line in enumerate(lines):
        out.append(line)
        if not queue or in_code[idx] or heading_level(line) < 2:
            continue
        if _followed_by_image(lines, idx):
            continue

        entry = queue.pop(0)
        out.extend(["", entry.render()])
        if idx + 1 < len(lines) and lines[idx + 1].strip():
            out.append("")

    return "\n".join(out), queue


def _append_with_separator(text: str, pending: list[ImageEntry]) -> str:
    images = "\n\n".join(entry.render() for entry in pending)
    body = text.rstrip()
    if not body:
        return images + "\n"
    return f"{body}\n\n{SEPARATOR}\n\n{images}\n"
