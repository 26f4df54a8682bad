"""Merge canonical instructions into a consuming repository's AGENTS.md.

The Global Block is replaced on every sync, the Repo Block is carried over
byte for byte, and loose pre-existing content (an unmanaged AGENTS.md or
per-tool files such as CLAUDE.md) is folded into the Repo Block so nothing
a user wrote is lost.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .hashing import content_hash
from .markers import (
    SegmentKind,
    build_global_block,
    build_repo_block,
    find_segment,
    has_managed_blocks,
    parse_segments,
    repo_block_content,
    replace_segment,
)
from .models import DEFAULT_MARKER_PREFIX

logger = logging.getLogger(__name__)

INSTRUCTIONS_FILE = "AGENTS.md"
DELEGATION_REFERENCE = "@AGENTS.md"
PER_TOOL_FILES = ("CLAUDE.md", ".claude/CLAUDE.md")

_REFERENCE_LINE = re.compile(r"^@(\.\./|\.claude/)?AGENTS\.md$")


@dataclass
class MergeResult:
    """Merged document plus what was carried into it."""

    content: str
    changed: bool
    merged: bool
    preserved_repo_content: bool
    folded_files: list[str] = field(default_factory=list)


def global_block_hash(global_content: str) -> str:
    """Hash recorded for the Global Block, both embedded and in the ledger."""
    return content_hash(global_content.strip())


def merge(
    previous: str | None,
    global_content: str,
    repo_seed: str | None,
    prefix: str = DEFAULT_MARKER_PREFIX,
) -> str:
    """Produce the updated managed document.

    Args:
        previous: Current document, or None on first sync
        global_content: Canonical instructions for the Global Block
        repo_seed: Initial Repo Block content when no managed blocks exist yet
        prefix: Marker prefix

    Returns:
        The merged document. Calling this again on its own output with the
        same ``global_content`` returns identical text.
    """
    global_block = build_global_block(global_content, global_block_hash(global_content), prefix)

    if previous is not None:
        segments = parse_segments(previous, prefix)
        if has_managed_blocks(segments):
            return _merge_managed(previous, global_block, prefix)

    return f"{global_block}\n\n{build_repo_block(repo_seed, prefix)}\n"


def _merge_managed(document: str, global_block: str, prefix: str) -> str:
    segments = parse_segments(document, prefix)
    existing_global = find_segment(segments, SegmentKind.GLOBAL)

    if existing_global is not None:
        document = replace_segment(document, existing_global, global_block)
    else:
        first_managed = next(s for s in segments if s.kind is not SegmentKind.PLAIN)
        document = (
            document[:first_managed.start]
            + global_block
            + "\n\n"
            + document[first_managed.start:]
        )

    if find_segment(parse_segments(document, prefix), SegmentKind.REPO) is None:
        document = f"{document.rstrip()}\n\n{build_repo_block(None, prefix)}\n"

    return document


def append_to_repo_block(document: str, extra: str, prefix: str = DEFAULT_MARKER_PREFIX) -> str:
    """Fold additional user content into the end of the Repo Block."""
    segments = parse_segments(document, prefix)
    repo = find_segment(segments, SegmentKind.REPO)
    if repo is None:
        return f"{document.rstrip()}\n\n{build_repo_block(extra, prefix)}\n"

    existing = repo_block_content(repo.inner(document))
    combined = f"{existing}\n\n{extra.strip()}" if existing else extra.strip()
    return replace_segment(document, repo, build_repo_block(combined, prefix))


def strip_delegation_reference(text: str) -> str:
    """Remove ``@AGENTS.md`` reference lines from a per-tool file."""
    kept = [line for line in text.split("\n") if not _REFERENCE_LINE.match(line.strip())]
    return "\n".join(kept).strip()


def _read_if_exists(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def merge_instructions(
    repo_root: Path,
    global_content: str,
    prefix: str = DEFAULT_MARKER_PREFIX,
    preserve_repo_content: bool = True,
) -> MergeResult:
    """Merge canonical instructions with what already lives in the repository.

    Nothing is written here; see :func:`write_instructions` and
    :func:`consolidate_per_tool_files`.
    """
    document_path = repo_root / INSTRUCTIONS_FILE
    existing = _read_if_exists(document_path)

    folded_files: list[str] = []
    folded_contents: list[str] = []
    for relative in PER_TOOL_FILES:
        text = _read_if_exists(repo_root / relative)
        if text is None:
            continue
        stripped = strip_delegation_reference(text)
        if stripped and stripped not in folded_contents:
            folded_contents.append(stripped)
            folded_files.append(relative)

    if not preserve_repo_content:
        logger.info("Repo content preservation disabled; rebuilding %s", INSTRUCTIONS_FILE)
        content = merge(None, global_content, None, prefix)
        return MergeResult(
            content=content,
            changed=existing != content,
            merged=False,
            preserved_repo_content=False,
        )

    previous_is_managed = existing is not None and has_managed_blocks(
        parse_segments(existing, prefix),
    )

    if previous_is_managed:
        content = merge(existing, global_content, None, prefix)
        if folded_contents:
            content = append_to_repo_block(content, "\n\n".join(folded_contents), prefix)
        preserved = True
    else:
        seed_parts = []
        if existing is not None and existing.strip():
            seed_parts.append(existing.strip())
        seed_parts.extend(folded_contents)
        content = merge(existing, global_content, "\n\n".join(seed_parts) or None, prefix)
        preserved = bool(seed_parts)

    if folded_files:
        logger.info("Folding %s into the repo block", ", ".join(folded_files))

    return MergeResult(
        content=content,
        changed=existing != content,
        merged=existing is not None or bool(folded_files),
        preserved_repo_content=preserved,
        folded_files=folded_files,
    )


def write_instructions(repo_root: Path, content: str) -> bool:
    """Write AGENTS.md if its content differs. Returns True when written."""
    path = repo_root / INSTRUCTIONS_FILE
    if _read_if_exists(path) == content:
        return False
    path.write_text(content, encoding="utf-8")
    return True


def consolidate_per_tool_files(repo_root: Path, create_reference: bool = True) -> list[str]:
    """Point per-tool instruction files at AGENTS.md.

    The root CLAUDE.md becomes a delegation reference; the nested
    ``.claude/CLAUDE.md`` is removed once its content has been folded.
    Must run after AGENTS.md is written.

    Args:
        repo_root: Consuming repository root
        create_reference: Create the root CLAUDE.md when it does not exist

    Returns:
        Repository-relative paths that were created, rewritten or removed
    """
    touched: list[str] = []
    reference = f"{DELEGATION_REFERENCE}\n"

    root_file = repo_root / PER_TOOL_FILES[0]
    current = _read_if_exists(root_file)
    if current != reference and (current is not None or create_reference):
        root_file.write_text(reference, encoding="utf-8")
        touched.append(PER_TOOL_FILES[0])

    nested_file = repo_root / PER_TOOL_FILES[1]
    if nested_file.exists():
        nested_file.unlink()
        touched.append(PER_TOOL_FILES[1])

    return touched
