"""Segment-based endpoint pattern matching.

Patterns are ``/``-delimited paths where a segment of exactly ``*`` matches
any single path segment. Segment counts must be equal; there is no prefix,
suffix or multi-segment wildcard. Patterns are compiled into tagged segments
rather than regular expressions, so no pattern text ever reaches a regex
engine.
"""

from dataclasses import dataclass
from enum import Enum

from backend.app.deferred.errors import InvalidEndpointPatternError

WILDCARD = "*"


class SegmentKind(str, Enum):
    """Kind of compiled pattern segment."""

    literal = "literal"
    wildcard = "wildcard"


@dataclass(frozen=True)
class Segment:
    """One compiled pattern segment."""

    kind: SegmentKind
    value: str = ""

    def matches(self, part: str) -> bool:
        if self.kind == SegmentKind.wildcard:
            return part != ""
        return part == self.value


def split_path(path: str) -> list[str]:
    """Split a request path into segments, ignoring outer slashes."""
    stripped = path.strip().strip("/")
    if not stripped:
        return []
    return stripped.split("/")


@dataclass(frozen=True)
class EndpointPattern:
    """Compiled endpoint pattern."""

    source: str
    segments: tuple[Segment, ...]

    @classmethod
    def compile(cls, pattern: str) -> "EndpointPattern":
        """Compile a pattern string.

        Raises:
            InvalidEndpointPatternError: If the pattern is empty, contains an
                empty segment, or mixes ``*`` with other characters.
        """
        if not isinstance(pattern, str):
            raise InvalidEndpointPatternError(repr(pattern), "pattern must be a string")

        parts = split_path(pattern)
        if not parts:
            raise InvalidEndpointPatternError(pattern, "pattern is empty")

        segments: list[Segment] = []
        for index, part in enumerate(parts):
            if part == "":
                raise InvalidEndpointPatternError(pattern, f"empty segment at position {index}")
            if part == WILDCARD:
                segments.append(Segment(SegmentKind.wildcard))
            elif WILDCARD in part:
                raise InvalidEndpointPatternError(
                    pattern, f"segment {part!r} mixes a wildcard with literal text"
                )
            else:
                segments.append(Segment(SegmentKind.literal, part))

        return cls(source=pattern, segments=tuple(segments))

    def matches(self, path: str) -> bool:
        """Check whether a request path matches this pattern."""
        parts = split_path(path)
        if len(parts) != len(self.segments):
            return False
        return all(segment.matches(part) for segment, part in zip(self.segments, parts))
