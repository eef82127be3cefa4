"""Wildcard patterns for filtering worker messages and process names.

Vocabulary:

* ``*``   -- zero or more of any character
* ``?``   -- exactly one character
* ``[!]`` -- an exclusion class with nothing excluded, i.e. any one character

Everything else matches literally.  A pattern always has to match the whole
message, and matching is case-sensitive.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

EMPTY_EXCLUSION = "[!]"


def translate(pattern: str) -> str:
    """Translate a wildcard pattern into an (unanchored) regex source string."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith(EMPTY_EXCLUSION, i):
            parts.append(".")
            i += len(EMPTY_EXCLUSION)
            continue
        char = pattern[i]
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        i += 1
    return "".join(parts)


@dataclass(frozen=True)
class Matcher:
    """A compiled wildcard pattern."""

    pattern: str
    regex: re.Pattern[str]

    def test(self, message: str) -> bool:
        """Return ``True`` if the whole of *message* matches."""
        return self.regex.fullmatch(message) is not None

    def filter(self, messages: Iterable[str]) -> Iterator[str]:
        """Yield only the messages that match."""
        return (message for message in messages if self.test(message))


def compile(pattern: str) -> Matcher:
    """Compile *pattern* into a ``Matcher``.  Never fails."""
    return Matcher(pattern=pattern, regex=re.compile(translate(pattern), re.DOTALL))


def matches(pattern: str, message: str) -> bool:
    """Shortcut for ``compile(pattern).test(message)``."""
    return compile(pattern).test(message)
