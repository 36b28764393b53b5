"""String replacement engine for the edit_file tool.

`replace()` swaps exactly one occurrence of a snippet. Matching is tried
exact first, then line-trimmed, then Unicode-normalized; each pass must find
a single match or the edit is rejected.
"""

from __future__ import annotations

import re

_UNICODE_SINGLE_QUOTES = re.compile(r"[‘’‚‛]")
_UNICODE_DOUBLE_QUOTES = re.compile(r"[“”„‟]")
_UNICODE_DASHES = re.compile(r"[‐‑‒–—―]")


class EditError(ValueError):
    """The snippet could not be replaced unambiguously."""


def _normalize_unicode(s: str) -> str:
    s = _UNICODE_SINGLE_QUOTES.sub("'", s)
    s = _UNICODE_DOUBLE_QUOTES.sub('"', s)
    s = _UNICODE_DASHES.sub("-", s)
    s = s.replace("…", "...")
    s = s.replace(" ", " ")
    return s


def _strip(line: str) -> str:
    return line.strip()


def _strip_normalized(line: str) -> str:
    return _normalize_unicode(line.strip())


def _line_spans(content: str, old_text: str, key) -> list[tuple[int, int]]:
    """All (start, end) character spans where old_text matches line-by-line
    after applying `key` to both sides."""
    content_lines = content.split("\n")
    old_lines = [key(line) for line in old_text.split("\n")]
    n = len(old_lines)
    offsets = [0]
    for line in content_lines:
        offsets.append(offsets[-1] + len(line) + 1)

    spans = []
    for i in range(len(content_lines) - n + 1):
        if all(key(content_lines[i + j]) == old_lines[j] for j in range(n)):
            start = offsets[i]
            end = offsets[i + n]
            # The span covers the trailing newline of the last line only when
            # old_text itself ends with one.
            if not old_text.endswith("\n"):
                end -= 1
            spans.append((start, min(end, len(content))))
    return spans


def replace(content: str, old_text: str, new_text: str) -> str:
    """Replace the single occurrence of old_text with new_text.

    Raises EditError:
      - "no changes" if old_text == new_text
      - "not found" if no pass matches
      - "multiple matches (N)" if the first pass that matches finds more
        than one occurrence
    """
    if not old_text:
        raise EditError("old text must not be empty")
    if old_text == new_text:
        raise EditError("no changes")

    exact = content.count(old_text)
    if exact == 1:
        return content.replace(old_text, new_text, 1)
    if exact > 1:
        raise EditError(f"multiple matches ({exact}), include more context")

    for key in (_strip, _strip_normalized):
        spans = _line_spans(content, old_text, key)
        if len(spans) == 1:
            start, end = spans[0]
            return content[:start] + new_text + content[end:]
        if len(spans) > 1:
            raise EditError(
                f"multiple matches ({len(spans)}), include more context"
            )

    raise EditError("not found")
