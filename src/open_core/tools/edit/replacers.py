"""Multi-strategy text replacement used by the edit tool.

``replace()`` locates a model-proposed search string in real file content with
six strategies, cheapest first, and stops at the first one that produces a
usable match:

  1. simple                 exact substring
  2. line_trimmed           per-line ``.strip()`` comparison
  3. block_anchor           first/last line anchors, interior scored by
                            normalized Levenshtein similarity (>= 0.7)
  4. whitespace_normalized  whitespace runs treated as equivalent
  5. indentation_flexible   uniform indentation shift allowed
  6. escape_normalized      ``\\n``, ``\\t``, ``\\\\`` and quote escapes

Each strategy yields candidate substrings of the original content. Without
``replace_all`` the candidate must be unique in the content, otherwise the
cascade moves on to the next strategy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterator

from open_core.errors import EditMatchError

BLOCK_ANCHOR_THRESHOLD = 0.7

Replacer = Callable[[str, str], Iterator[str]]


@dataclass(frozen=True)
class ReplaceResult:
    content: str
    strategy: str
    count: int


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def simple_replacer(content: str, search: str) -> Iterator[str]:
    if search in content:
        yield search


def line_trimmed_replacer(content: str, search: str) -> Iterator[str]:
    content_lines = content.split("\n")
    search_lines = search.split("\n")
    if search_lines and search_lines[-1] == "":
        search_lines.pop()
    if not search_lines:
        return

    stripped = [line.strip() for line in search_lines]
    size = len(stripped)
    for i in range(len(content_lines) - size + 1):
        if all(content_lines[i + j].strip() == stripped[j] for j in range(size)):
            yield "\n".join(content_lines[i : i + size])


def block_anchor_replacer(content: str, search: str) -> Iterator[str]:
    content_lines = content.split("\n")
    search_lines = search.split("\n")
    if search_lines and search_lines[-1] == "":
        search_lines.pop()
    if len(search_lines) < 3:
        return

    first = search_lines[0].strip()
    last = search_lines[-1].strip()

    candidates: list[tuple[int, int]] = []
    for i, line in enumerate(content_lines):
        if line.strip() != first:
            continue
        for j in range(i + 2, len(content_lines)):
            if content_lines[j].strip() == last:
                candidates.append((i, j))
                break

    if not candidates:
        return
    if len(candidates) == 1:
        start, end = candidates[0]
        yield "\n".join(content_lines[start : end + 1])
        return

    best: tuple[int, int] | None = None
    best_score = -1.0
    for start, end in candidates:
        score = _interior_similarity(content_lines, search_lines, start, end)
        if score >= BLOCK_ANCHOR_THRESHOLD and score > best_score:
            best_score = score
            best = (start, end)

    if best is not None:
        yield "\n".join(content_lines[best[0] : best[1] + 1])


def whitespace_normalized_replacer(content: str, search: str) -> Iterator[str]:
    tokens = search.split()
    if not tokens:
        return
    pattern = re.compile(r"\s+".join(re.escape(token) for token in tokens))
    seen: set[str] = set()
    for match in pattern.finditer(content):
        text = match.group(0)
        if text not in seen:
            seen.add(text)
            yield text


def indentation_flexible_replacer(content: str, search: str) -> Iterator[str]:
    content_lines = content.split("\n")
    search_lines = search.split("\n")
    if search_lines and search_lines[-1] == "":
        search_lines.pop()
    if not search_lines:
        return

    size = len(search_lines)
    for i in range(len(content_lines) - size + 1):
        window = content_lines[i : i + size]
        if _indentation_matches(window, search_lines):
            yield "\n".join(window)


def escape_normalized_replacer(content: str, search: str) -> Iterator[str]:
    normalized = _unescape(search)
    if not normalized:
        return
    pieces = []
    for char in normalized:
        escaped = _ESCAPED_FORMS.get(char)
        if escaped is None:
            pieces.append(re.escape(char))
        else:
            pieces.append(f"(?:{re.escape(char)}|{re.escape(escaped)})")
    pattern = re.compile("".join(pieces))
    seen: set[str] = set()
    for match in pattern.finditer(content):
        text = match.group(0)
        if text not in seen:
            seen.add(text)
            yield text


STRATEGIES: tuple[tuple[str, Replacer], ...] = (
    ("simple", simple_replacer),
    ("line_trimmed", line_trimmed_replacer),
    ("block_anchor", block_anchor_replacer),
    ("whitespace_normalized", whitespace_normalized_replacer),
    ("indentation_flexible", indentation_flexible_replacer),
    ("escape_normalized", escape_normalized_replacer),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def replace(
    content: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> ReplaceResult:
    """Replace ``old_string`` with ``new_string`` using the strategy cascade.

    Raises ValueError when the two strings are identical, and EditMatchError
    when no strategy finds a unique match (or any match with ``replace_all``).
    """
    if old_string == new_string:
        raise ValueError("old_string and new_string must be different")
    if not old_string:
        raise ValueError("old_string must not be empty")

    saw_ambiguous = False
    for name, replacer in STRATEGIES:
        candidates = [c for c in dict.fromkeys(replacer(content, old_string)) if c]
        if not candidates:
            continue

        if replace_all:
            updated = content
            count = 0
            for search in candidates:
                occurrences = updated.count(search)
                if occurrences:
                    updated = updated.replace(search, new_string)
                    count += occurrences
            if count == 0:
                continue
            return ReplaceResult(updated, name, count)

        if len(candidates) > 1:
            saw_ambiguous = True
            continue
        search = candidates[0]
        index = content.find(search)
        if index == -1:
            continue
        if index != content.rfind(search):
            saw_ambiguous = True
            continue
        updated = content[:index] + new_string + content[index + len(search) :]
        return ReplaceResult(updated, name, 1)

    if saw_ambiguous:
        raise EditMatchError(
            "Could not find a unique match for replacement: the search text appears multiple times. "
            "Provide more surrounding context or set replace_all.",
            ambiguous=True,
        )
    raise EditMatchError("Could not find the search text in the file content.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a or not b:
        return max(len(a), len(b))
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def line_similarity(a: str, b: str) -> float:
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


def _interior_similarity(content_lines: list[str], search_lines: list[str], start: int, end: int) -> float:
    block_size = end - start + 1
    to_check = min(len(search_lines) - 2, block_size - 2)
    if to_check <= 0:
        return 1.0
    total = 0.0
    for j in range(1, to_check + 1):
        total += line_similarity(content_lines[start + j].strip(), search_lines[j].strip())
    return total / to_check


def _leading_whitespace(line: str) -> int:
    return len(line) - len(line.lstrip())


def _indentation_matches(window: list[str], search_lines: list[str]) -> bool:
    content_base = next((line for line in window if line.strip()), None)
    search_base = next((line for line in search_lines if line.strip()), None)
    if content_base is None or search_base is None:
        return False

    shift = _leading_whitespace(content_base) - _leading_whitespace(search_base)
    for content_line, search_line in zip(window, search_lines):
        if not search_line.strip():
            if content_line.strip():
                return False
            continue
        if content_line.strip() != search_line.strip():
            return False
        if _leading_whitespace(content_line) != max(0, _leading_whitespace(search_line) + shift):
            return False
    return True


_ESCAPE_SEQUENCES = {
    "\\n": "\n",
    "\\t": "\t",
    "\\r": "\r",
    "\\\\": "\\",
    '\\"': '"',
    "\\'": "'",
}

_ESCAPED_FORMS = {value: key for key, value in _ESCAPE_SEQUENCES.items()}

_ESCAPE_PATTERN = re.compile(r"\\[ntr\\\"']")


def _unescape(text: str) -> str:
    return _ESCAPE_PATTERN.sub(lambda m: _ESCAPE_SEQUENCES[m.group(0)], text)
