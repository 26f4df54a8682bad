"""Marker-delimited managed regions of the instructions document.

A document is split into an ordered list of segments. Managed segments
(global, repo, rules) span from their start marker line to their end marker
line; everything else is plain text. Block operations work on this list
instead of searching the raw string at each call site.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .exceptions import ManagedDocumentError
from .models import DEFAULT_MARKER_PREFIX

DO_NOT_EDIT_COMMENT = "<!-- DO NOT EDIT THIS SECTION - Managed by agentsync -->"
REPO_PLACEHOLDER_COMMENT = "<!-- Repository-specific instructions below -->"

_HASH_COMMENT = re.compile(r"<!--\s*Content hash:\s*(?P<hash>\S+?)\s*-->")
_COUNT_COMMENT = re.compile(r"<!--\s*Rule count:\s*(?P<count>\d+)\s*-->")
_METADATA_COMMENT_PREFIXES = (
    "<!-- DO NOT EDIT",
    "<!-- Content hash:",
    "<!-- Rule count:",
)


class SegmentKind(str, Enum):
    """Kinds of regions in the managed document."""

    GLOBAL = "global"
    REPO = "repo"
    RULES = "rules"
    PLAIN = "plain"


MANAGED_KINDS = (SegmentKind.GLOBAL, SegmentKind.RULES, SegmentKind.REPO)


def start_marker(kind: SegmentKind, prefix: str = DEFAULT_MARKER_PREFIX) -> str:
    """Opening marker line for a managed block."""
    return f"<!-- {prefix}:{kind.value}:start -->"


def end_marker(kind: SegmentKind, prefix: str = DEFAULT_MARKER_PREFIX) -> str:
    """Closing marker line for a managed block."""
    return f"<!-- {prefix}:{kind.value}:end -->"


@dataclass(frozen=True)
class Segment:
    """A region of the document.

    ``start``/``end`` cover the whole region including marker lines;
    ``inner_start``/``inner_end`` cover only the text between the markers.
    Plain segments have ``inner_*`` equal to ``start``/``end``.
    """

    kind: SegmentKind
    start: int
    end: int
    inner_start: int
    inner_end: int

    def inner(self, document: str) -> str:
        return document[self.inner_start:self.inner_end]


def parse_segments(document: str, prefix: str = DEFAULT_MARKER_PREFIX) -> list[Segment]:
    """Split a document into plain and managed segments.

    Raises:
        ManagedDocumentError: If a marker appears more than once, a block is
            left open or closed without opening, or blocks are nested
    """
    events: list[tuple[int, int, SegmentKind, bool]] = []
    for kind in MANAGED_KINDS:
        for marker, is_start in ((start_marker(kind, prefix), True), (end_marker(kind, prefix), False)):
            positions = [m.start() for m in re.finditer(re.escape(marker), document)]
            if len(positions) > 1:
                msg = f"Marker {marker} appears {len(positions)} times"
                raise ManagedDocumentError(msg, details={"marker": marker})
            events.extend((pos, pos + len(marker), kind, is_start) for pos in positions)
    events.sort()

    segments: list[Segment] = []
    cursor = 0
    open_block: tuple[SegmentKind, int, int] | None = None

    for pos, after, kind, is_start in events:
        if is_start:
            if open_block is not None:
                msg = f"Block '{kind.value}' is nested inside block '{open_block[0].value}'"
                raise ManagedDocumentError(msg, details={"outer": open_block[0].value})
            if pos > cursor:
                segments.append(Segment(SegmentKind.PLAIN, cursor, pos, cursor, pos))
            open_block = (kind, pos, after)
            continue

        if open_block is None or open_block[0] is not kind:
            msg = f"End marker for '{kind.value}' without a matching start marker"
            raise ManagedDocumentError(msg, details={"block": kind.value})
        _, block_start, inner_start = open_block
        segments.append(Segment(kind, block_start, after, inner_start, pos))
        cursor = after
        open_block = None

    if open_block is not None:
        msg = f"Block '{open_block[0].value}' has no end marker"
        raise ManagedDocumentError(msg, details={"block": open_block[0].value})

    if cursor < len(document):
        segments.append(Segment(SegmentKind.PLAIN, cursor, len(document), cursor, len(document)))
    return segments


def find_segment(segments: list[Segment], kind: SegmentKind) -> Segment | None:
    """Return the single segment of the given managed kind, if present."""
    for segment in segments:
        if segment.kind is kind:
            return segment
    return None


def has_managed_blocks(segments: list[Segment]) -> bool:
    """True if any global, repo or rules block is present."""
    return any(segment.kind is not SegmentKind.PLAIN for segment in segments)


def replace_segment(document: str, segment: Segment, replacement: str) -> str:
    """Replace a whole segment (markers included) with new text."""
    return document[:segment.start] + replacement + document[segment.end:]


def build_global_block(content: str, content_hash: str, prefix: str = DEFAULT_MARKER_PREFIX) -> str:
    """Render the Global Block with its marker pair and embedded hash."""
    lines = [
        start_marker(SegmentKind.GLOBAL, prefix),
        DO_NOT_EDIT_COMMENT,
        f"<!-- Content hash: {content_hash} -->",
        "",
        content.strip(),
        "",
        end_marker(SegmentKind.GLOBAL, prefix),
    ]
    return "\n".join(lines)


def build_repo_block(content: str | None, prefix: str = DEFAULT_MARKER_PREFIX) -> str:
    """Render a fresh Repo Block seeded with optional content."""
    lines = [
        start_marker(SegmentKind.REPO, prefix),
        REPO_PLACEHOLDER_COMMENT,
        "",
        (content or "").strip(),
        "",
        end_marker(SegmentKind.REPO, prefix),
    ]
    return "\n".join(lines)


def build_rules_block(
    content: str,
    content_hash: str,
    rule_count: int,
    prefix: str = DEFAULT_MARKER_PREFIX,
) -> str:
    """Render the Rules Block with its marker pair, hash and rule count."""
    lines = [
        start_marker(SegmentKind.RULES, prefix),
        DO_NOT_EDIT_COMMENT,
        f"<!-- Content hash: {content_hash} -->",
        f"<!-- Rule count: {rule_count} -->",
        "",
        content.strip(),
        "",
        end_marker(SegmentKind.RULES, prefix),
    ]
    return "\n".join(lines)


def _split_header(block_inner: str) -> tuple[list[str], str]:
    """Separate the leading header comments from the block body.

    Only the contiguous comment lines at the top of the interior count as
    header; the same comments further down belong to the content.
    """
    lines = block_inner.split("\n")
    index = 0
    while index < len(lines) and not lines[index].strip():
        index += 1
    header_start = index
    while index < len(lines) and lines[index].strip().startswith(_METADATA_COMMENT_PREFIXES):
        index += 1
    return lines[header_start:index], "\n".join(lines[index:])


def embedded_hash(block_inner: str) -> str | None:
    """Read the ``Content hash`` comment from a block header."""
    header, _ = _split_header(block_inner)
    for line in header:
        match = _HASH_COMMENT.search(line)
        if match:
            return match.group("hash")
    return None


def embedded_rule_count(block_inner: str) -> int | None:
    """Read the ``Rule count`` comment from a rules block header."""
    header, _ = _split_header(block_inner)
    for line in header:
        match = _COUNT_COMMENT.search(line)
        if match:
            return int(match.group("count"))
    return None


def strip_block_metadata(block_inner: str) -> str:
    """Drop the header comments so the remaining text can be re-hashed."""
    _, body = _split_header(block_inner)
    return body.strip()


def repo_block_content(block_inner: str) -> str:
    """Repo Block interior without the placeholder comment."""
    kept = [line for line in block_inner.split("\n") if line.strip() != REPO_PLACEHOLDER_COMMENT]
    return "\n".join(kept).strip()
