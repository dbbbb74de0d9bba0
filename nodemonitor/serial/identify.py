"""Stateless matcher for device self-identification lines."""

from __future__ import annotations

import re
from typing import NamedTuple


class Identification(NamedTuple):
    device_id: str
    board_type: str


# JSON announce: {"id":"<id>","board":"<board>"}
_JSON_RE = re.compile(r'\{"id":"([^"]+)","board":"([^"]+)"\}')

# Tagged announce: [NODEID:<id>:<board>]
_NODEID_RE = re.compile(r"\[NODEID:([^:\]]+):([^\]]+)\]")

DEFAULT_PATTERNS: tuple[re.Pattern, ...] = (_JSON_RE, _NODEID_RE)


class IdentificationMatcher:
    """Match a line against an ordered list of identification encodings.

    Each pattern captures the device id in group 1 and the board type in
    group 2. The first pattern that matches wins.
    """

    def __init__(self, patterns: tuple[re.Pattern, ...] | list[re.Pattern] | None = None):
        self.patterns: list[re.Pattern] = []
        for pattern in DEFAULT_PATTERNS if patterns is None else patterns:
            self.add_pattern(pattern)

    def add_pattern(self, pattern: re.Pattern | str) -> None:
        """Append ``pattern``. It must capture at least two groups."""
        if isinstance(pattern, str):
            pattern = re.compile(pattern)
        if pattern.groups < 2:
            raise ValueError(f"Identification pattern needs two groups (id, board): {pattern.pattern!r}")
        self.patterns.append(pattern)

    def match(self, line: str | None) -> Identification | None:
        if not line:
            return None
        for pattern in self.patterns:
            m = pattern.search(line)
            if m:
                return Identification(m.group(1), m.group(2))
        return None


_default_matcher = IdentificationMatcher()


def match_identification(line: str | None) -> Identification | None:
    """Match ``line`` with the default encodings."""
    return _default_matcher.match(line)
