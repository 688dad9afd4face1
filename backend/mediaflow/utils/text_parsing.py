"""
Text helpers for the prompt and array transforms.
"""

from __future__ import annotations

import re
from typing import Literal

SplitMode = Literal["newline", "delimiter", "regex"]

_VAR_TAG_RE = re.compile(r'<var="(\w+)">(.*?)</var>', re.DOTALL)
_VAR_REF_RE = re.compile(r"@(\w+)")
_SLASH_PATTERN_RE = re.compile(r"^/(.+)/([a-z]*)$", re.IGNORECASE)

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "u": 0,
    "g": 0,
}


def parse_var_tags(text: str) -> list[tuple[str, str]]:
    """Return (name, value) pairs for every inline <var="name">value</var> tag."""
    return [(m.group(1), m.group(2)) for m in _VAR_TAG_RE.finditer(text)]


def find_var_references(template: str) -> list[str]:
    """Distinct @name references in first-seen order."""
    seen: list[str] = []
    for match in _VAR_REF_RE.finditer(template):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def resolve_template(template: str, variables: dict[str, str]) -> tuple[str, list[str]]:
    """
    Substitute @name references with their values.

    Returns the resolved text and the names that had no value, which stay
    in the text verbatim.
    """
    resolved = template
    unresolved: list[str] = []
    for name in find_var_references(template):
        if name in variables:
            resolved = resolved.replace(f"@{name}", variables[name])
        else:
            unresolved.append(name)
    return resolved, unresolved


def compile_split_pattern(pattern: str) -> re.Pattern:
    """Accepts both `/pattern/flags` and a bare pattern."""
    slash_format = _SLASH_PATTERN_RE.match(pattern)
    if not slash_format:
        return re.compile(pattern)
    flags = 0
    for flag in slash_format.group(2).lower():
        if flag not in _REGEX_FLAGS:
            raise ValueError(f"Unsupported regex flag '{flag}'")
        flags |= _REGEX_FLAGS[flag]
    return re.compile(slash_format.group(1), flags)


def parse_text_to_array(
    input_text: str | None,
    split_mode: SplitMode = "delimiter",
    delimiter: str = "*",
    regex_pattern: str = "",
    trim_items: bool = True,
    remove_empty: bool = True,
) -> list[str]:
    """
    Split text into items.

    Raises re.error for an invalid regex and ValueError for an unsupported
    flag in `/pattern/flags` form.
    """
    source = input_text or ""
    if not source:
        return []

    if split_mode == "newline":
        raw_items = re.split(r"\r?\n", source)
    elif split_mode == "regex":
        raw_items = compile_split_pattern(regex_pattern).split(source) if regex_pattern else [source]
        # Capture groups make re.split interleave None for unmatched groups
        raw_items = [item for item in raw_items if item is not None]
    else:
        raw_items = source.split(delimiter) if delimiter else [source]

    items = raw_items
    if trim_items:
        items = [item.strip() for item in items]
    if remove_empty:
        items = [item for item in items if item]
    return items
