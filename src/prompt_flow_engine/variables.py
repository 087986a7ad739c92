"""Placeholder extraction and substitution over prompt text."""

from __future__ import annotations

import re
from typing import Mapping

# No escaping and no nested braces: a name is any run of characters except "}".
_PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")


def extract_variables(content: str) -> list[str]:
    """Return unique placeholder names in order of first appearance."""
    names: list[str] = []
    seen: set[str] = set()
    for match in _PLACEHOLDER_PATTERN.finditer(str(content or "")):
        name = match.group(1)
        if name in seen:
            continue
        seen.add(name)
        names.append(name)
    return names


def substitute(content: str, variables: Mapping[str, str]) -> str:
    """Replace mapped placeholders and leave unmapped ones as literal text.

    Matching is exact and case-sensitive; whitespace inside the braces is part
    of the name. An empty string is a valid value.
    """
    if not variables:
        return content

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        value = variables[name]
        if value is None:
            return ""
        return str(value)

    return _PLACEHOLDER_PATTERN.sub(replace, content)


def missing_variables(content: str, variables: Mapping[str, str]) -> list[str]:
    """Return placeholder names in `content` that have no entry in `variables`."""
    return [name for name in extract_variables(content) if name not in variables]


def prune_variables(content: str, variables: Mapping[str, str]) -> dict[str, str]:
    """Drop variable entries that no longer name a placeholder in `content`."""
    names = set(extract_variables(content))
    return {name: str(value) for name, value in variables.items() if name in names}
