"""Concatenate rule items into a single section for monolithic targets."""

from __future__ import annotations

import re
from dataclasses import dataclass

from .hashing import content_hash
from .markers import (
    SegmentKind,
    build_rules_block,
    find_segment,
    parse_segments,
    replace_segment,
)
from .models import DEFAULT_MARKER_PREFIX, ContentItem

RULES_SECTION_TITLE = "# Project Rules"
MAX_HEADING_LEVEL = 6

_HEADING_PATTERN = re.compile(r"^(?P<hashes>#{1,6})(?=[ \t]|$)")
_FENCE_PATTERN = re.compile(r"^[ ]{0,3}(?P<fence>`{3,}|~{3,})")


@dataclass(frozen=True)
class RulesSection:
    """Rendered Rules Block and the values recorded for it."""

    block: str
    content_hash: str
    rule_count: int


def shift_headings(body: str, levels: int = 1) -> str:
    """Demote ATX headings by ``levels``, capped at level 6.

    Lines inside fenced code blocks are left untouched.
    """
    out: list[str] = []
    fence: str | None = None

    for line in body.split("\n"):
        fence_match = _FENCE_PATTERN.match(line)
        if fence_match:
            marker = fence_match.group("fence")
            if fence is None:
                fence = marker
            elif marker[0] == fence[0] and len(marker) >= len(fence):
                fence = None
            out.append(line)
            continue

        if fence is None:
            heading = _HEADING_PATTERN.match(line)
            if heading:
                level = min(MAX_HEADING_LEVEL, len(heading.group("hashes")) + levels)
                line = "#" * level + line[heading.end():]
        out.append(line)

    return "\n".join(out)


def paths_comment(paths: list[str]) -> str | None:
    """Render conditional-loading globs as a comment for tools that ignore them."""
    if not paths:
        return None
    if len(paths) == 1:
        return f"<!-- Applies to: {paths[0]} -->"
    listed = "\n".join(f"     - {glob}" for glob in paths)
    return f"<!-- Applies to:\n{listed}\n-->"


def concatenate(items: list[ContentItem], prefix: str = DEFAULT_MARKER_PREFIX) -> RulesSection | None:
    """Combine rule items into one marker-wrapped section.

    Args:
        items: Rule items to include
        prefix: Marker prefix

    Returns:
        The rendered section, or None when there are no rules
    """
    if not items:
        return None

    parts = [RULES_SECTION_TITLE, ""]
    for item in sorted(items, key=lambda i: i.key):
        parts.append(f"<!-- Rule: {item.key} -->")
        comment = paths_comment(item.paths)
        if comment:
            parts.append(comment)
        parts.append("")
        parts.append(shift_headings(item.body.strip()))
        parts.append("")

    content = "\n".join(parts).strip()
    digest = content_hash(content)
    return RulesSection(
        block=build_rules_block(content, digest, len(items), prefix),
        content_hash=digest,
        rule_count=len(items),
    )


def apply_rules_block(
    document: str,
    section: RulesSection | None,
    prefix: str = DEFAULT_MARKER_PREFIX,
) -> str:
    """Insert, replace or remove the Rules Block in a managed document.

    A new block goes right after the Global Block, else right before the Repo
    Block, else at the end. Passing None removes an existing block.
    """
    segments = parse_segments(document, prefix)
    existing = find_segment(segments, SegmentKind.RULES)

    if section is None:
        if existing is None:
            return document
        before = document[:existing.start].rstrip("\n")
        after = document[existing.end:].lstrip("\n")
        if not before:
            return after
        if not after:
            return before + "\n"
        return f"{before}\n\n{after}"

    if existing is not None:
        return replace_segment(document, existing, section.block)

    global_block = find_segment(segments, SegmentKind.GLOBAL)
    if global_block is not None:
        return (
            document[:global_block.end]
            + "\n\n"
            + section.block
            + document[global_block.end:]
        )

    repo_block = find_segment(segments, SegmentKind.REPO)
    if repo_block is not None:
        return (
            document[:repo_block.start]
            + section.block
            + "\n\n"
            + document[repo_block.start:]
        )

    return f"{document.rstrip()}\n\n{section.block}\n"
