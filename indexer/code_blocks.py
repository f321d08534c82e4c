"""Literal code extraction from chunk text."""

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List

MIN_INLINE_SPANS = 3
DEFAULT_LANGUAGE = "text"

_FENCE_RE = re.compile(r"```(.*?)```", re.DOTALL)
_INLINE_RE = re.compile(r"(?<!`)`([^`\n]+)`(?!`)")
_LANGUAGE_RE = re.compile(r"[A-Za-z][\w+#.-]{0,19}")


@dataclass
class CodeBlock:
    language: str
    code: str
    # True for a block assembled from inline code spans
    synthetic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _split_fence(inner: str):
    """Split fence contents into (language, code).

    Chunk text has its newlines collapsed, so the info string may be followed by
    a space instead of a newline.
    """
    if "\n" in inner:
        first, rest = inner.split("\n", 1)
        first = first.strip()
        if not first or _LANGUAGE_RE.fullmatch(first):
            return first or DEFAULT_LANGUAGE, rest

    parts = inner.strip().split(" ", 1)
    if len(parts) == 2 and _LANGUAGE_RE.fullmatch(parts[0]):
        return parts[0], parts[1]
    return DEFAULT_LANGUAGE, inner


def extract_code_blocks(text: str) -> List[CodeBlock]:
    """Fenced code blocks in order, plus one synthetic block when the remaining
    prose carries at least three distinct inline code spans."""
    if not text or "`" not in text:
        return []

    blocks: List[CodeBlock] = []
    for match in _FENCE_RE.finditer(text):
        language, code = _split_fence(match.group(1))
        code = code.strip("\n").rstrip()
        if code.strip():
            blocks.append(CodeBlock(language=language, code=code))

    remainder = _FENCE_RE.sub(" ", text)
    spans: List[str] = []
    for match in _INLINE_RE.finditer(remainder):
        span = match.group(1).strip()
        if span and span not in spans:
            spans.append(span)

    if len(spans) >= MIN_INLINE_SPANS:
        blocks.append(CodeBlock(language=DEFAULT_LANGUAGE, code="\n".join(spans), synthetic=True))

    return blocks
