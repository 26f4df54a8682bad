"""Detect drift between managed files and what the last sync wrote."""

from __future__ import annotations

import logging
from pathlib import Path

from .content import SKILL_DOCUMENT, MetadataKeys, body_hash, read_managed_metadata
from .exceptions import ManagedDocumentError
from .hashing import content_hash
from .ledger import read_ledger
from .markers import SegmentKind, find_segment, parse_segments, strip_block_metadata
from .merge import INSTRUCTIONS_FILE
from .models import (
    ContentClass,
    IntegrityReport,
    IntegrityViolation,
    Ledger,
    StatusReport,
)
from .targets import BUILTIN_TARGETS

logger = logging.getLogger(__name__)

MISSING = "missing"
MODIFIED = "modified"


def _check_document(repo_root: Path, ledger: Ledger, report: IntegrityReport) -> None:
    document_path = repo_root / INSTRUCTIONS_FILE
    instructions = ledger.content.instructions
    prefix = ledger.content.marker_prefix

    expected_blocks = [(SegmentKind.GLOBAL, instructions.global_block_hash)]
    if instructions.rules_block_hash:
        expected_blocks.append((SegmentKind.RULES, instructions.rules_block_hash))

    report.checked.append(INSTRUCTIONS_FILE)
    if not document_path.is_file():
        report.violations.append(IntegrityViolation(
            path=INSTRUCTIONS_FILE, kind=MISSING, expected=instructions.global_block_hash, actual="",
        ))
        return

    document = document_path.read_text(encoding="utf-8")
    try:
        segments = parse_segments(document, prefix)
    except ManagedDocumentError as e:
        report.violations.append(IntegrityViolation(
            path=INSTRUCTIONS_FILE, kind=MODIFIED, expected=instructions.global_block_hash, actual=str(e),
        ))
        return

    for kind, expected in expected_blocks:
        label = f"{INSTRUCTIONS_FILE} ({kind.value} block)"
        segment = find_segment(segments, kind)
        if segment is None:
            report.violations.append(IntegrityViolation(
                path=label, kind=MISSING, expected=expected, actual="",
            ))
            continue
        actual = content_hash(strip_block_metadata(segment.inner(document)))
        if actual != expected:
            report.violations.append(IntegrityViolation(
                path=label, kind=MODIFIED, expected=expected, actual=actual,
            ))


def _check_item_file(
    path: Path,
    relative: str,
    prefix: str,
    report: IntegrityReport,
) -> None:
    report.checked.append(relative)
    if not path.is_file():
        report.violations.append(IntegrityViolation(path=relative, kind=MISSING, expected="", actual=""))
        return

    text = path.read_text(encoding="utf-8", errors="replace")
    actual = body_hash(text)
    metadata = read_managed_metadata(text, prefix)
    if metadata is None:
        report.violations.append(IntegrityViolation(
            path=relative, kind=MODIFIED, expected="managed metadata", actual=actual,
        ))
        return

    expected = metadata.get(MetadataKeys.for_prefix(prefix).content_hash, "")
    if actual != expected:
        report.violations.append(IntegrityViolation(
            path=relative, kind=MODIFIED, expected=expected, actual=actual,
        ))


def check_integrity(repo_root: Path) -> IntegrityReport:
    """Verify every managed file against the last sync, without touching anything.

    Args:
        repo_root: Consuming repository root

    Returns:
        Report listing every modified or missing managed file. An
        unsynced repository yields ``synced=False`` and no violations.

    Raises:
        LedgerCompatibilityError: If the ledger schema major version differs
        LedgerError: If the ledger is unreadable
    """
    ledger, warning = read_ledger(repo_root)
    if ledger is None:
        return IntegrityReport(synced=False)

    report = IntegrityReport(synced=True, ledger_warning=warning)
    prefix = ledger.content.marker_prefix
    _check_document(repo_root, ledger, report)

    listed: dict[ContentClass, list[str]] = {
        ContentClass.SKILL: [f"{name}/{SKILL_DOCUMENT}" for name in ledger.content.skills],
        ContentClass.RULE: ledger.content.rules.files if ledger.content.rules else [],
        ContentClass.AGENT: ledger.content.agents.files if ledger.content.agents else [],
    }

    for target_name in ledger.content.targets:
        profile = BUILTIN_TARGETS.get(target_name)
        if profile is None:
            logger.warning("Ledger lists unknown target %s; skipping", target_name)
            continue
        for content_class, files in listed.items():
            output_dir = profile.output_dir(repo_root, content_class)
            if output_dir is None:
                continue
            for relative in files:
                path = output_dir / relative
                _check_item_file(path, path.relative_to(repo_root).as_posix(), prefix, report)

    logger.debug("Checked %d managed files", len(report.checked))
    return report


def status(repo_root: Path) -> StatusReport:
    """Summarize the recorded sync state of a repository.

    Raises:
        LedgerCompatibilityError: If the ledger schema major version differs
        LedgerError: If the ledger is unreadable
    """
    ledger, warning = read_ledger(repo_root)
    if ledger is None:
        return StatusReport(synced=False)

    content = ledger.content
    return StatusReport(
        synced=True,
        source=ledger.source,
        pinned_version=ledger.pinned_version,
        synced_at=ledger.synced_at,
        targets=content.targets,
        marker_prefix=content.marker_prefix,
        skill_count=len(content.skills),
        rule_count=len(content.rules.files) if content.rules else 0,
        agent_count=len(content.agents.files) if content.agents else 0,
        tool_version=ledger.tool_version,
        ledger_warning=warning,
    )
