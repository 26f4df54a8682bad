"""Sequence one sync run from source resolution to the ledger write."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from .concat import apply_rules_block, concatenate
from .config import ConfigLoader
from .content import discover_items, summarize, sync_class
from .exceptions import AgentSyncError, SourceValidationError
from .ledger import build_ledger, read_ledger, write_ledger
from .merge import (
    INSTRUCTIONS_FILE,
    consolidate_per_tool_files,
    global_block_hash,
    merge_instructions,
    write_instructions,
)
from .models import (
    ClassTally,
    ContentClass,
    ContentItem,
    DocumentOutcome,
    LedgerSource,
    ResolvedSource,
    SourceSpec,
    SyncOutcome,
    SyncWarning,
)
from .source import resolve_source
from .targets import TargetProfile, get_target, parse_target_names

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Progress of a sync run."""

    NOT_STARTED = "not_started"
    SOURCE_RESOLVED = "source_resolved"
    DOCUMENT_MERGED = "document_merged"
    ITEMS_SYNCED = "items_synced"
    LEDGER_WRITTEN = "ledger_written"
    ABORTED = "aborted"


_TRANSITIONS = {
    PipelineState.NOT_STARTED: PipelineState.SOURCE_RESOLVED,
    PipelineState.SOURCE_RESOLVED: PipelineState.DOCUMENT_MERGED,
    PipelineState.DOCUMENT_MERGED: PipelineState.ITEMS_SYNCED,
    PipelineState.ITEMS_SYNCED: PipelineState.LEDGER_WRITTEN,
}


def _retained(tallies: list[ClassTally], content_class: ContentClass) -> list[str]:
    """Skipped keys kept on disk by every target that holds the class."""
    kept = [set(tally.retained) for tally in tallies if tally.content_class is content_class]
    return sorted(set.intersection(*kept)) if kept else []


class SyncPipeline:
    """Runs one synchronization of a consuming repository.

    Fatal errors move the pipeline to ``ABORTED`` and propagate; per-item
    problems are collected as warnings on the outcome.
    """

    def __init__(
        self,
        repo_root: Path,
        spec: SourceSpec,
        targets: list[str] | None = None,
        override: bool = False,
        cwd: Path | None = None,
        loader: ConfigLoader | None = None,
    ) -> None:
        """Initialize a pipeline.

        Args:
            repo_root: Consuming repository to write into
            spec: Where to get canonical content from
            targets: Target names; the canonical config decides when None
            override: Discard existing repo content in the managed document
            cwd: Directory local auto-discovery starts from
            loader: Config loader to reuse
        """
        self.repo_root = Path(repo_root)
        self.spec = spec
        self.target_names = parse_target_names(targets) if targets else None
        self.override = override
        self.cwd = cwd
        self.loader = loader or ConfigLoader()
        self.state = PipelineState.NOT_STARTED
        self.warnings: list[SyncWarning] = []

    def _advance(self, expected: PipelineState) -> None:
        next_state = _TRANSITIONS.get(self.state)
        if next_state is not expected:
            msg = f"Cannot move from {self.state.value} to {expected.value}"
            raise AgentSyncError(msg)
        self.state = next_state
        logger.debug("Pipeline state: %s", self.state.value)

    def run(self) -> SyncOutcome:
        """Run the whole pipeline.

        Returns:
            Structured outcome of the run

        Raises:
            LedgerCompatibilityError: If the existing ledger cannot be used
            SourceResolutionError: If the source cannot be located or fetched
            SourceValidationError: If the source is missing required paths
            ConfigError: If a config file or target name is invalid
            ManagedDocumentError: If the managed document markers are broken
        """
        try:
            _, ledger_warning = read_ledger(self.repo_root, self.loader)
            with resolve_source(self.spec, cwd=self.cwd, loader=self.loader) as source:
                self._advance(PipelineState.SOURCE_RESOLVED)
                outcome = self._sync(source)
        except BaseException:
            self.state = PipelineState.ABORTED
            logger.debug("Pipeline aborted")
            raise

        outcome.ledger_warning = ledger_warning
        return outcome

    def _profiles(self, source: ResolvedSource) -> list[TargetProfile]:
        names = self.target_names or parse_target_names(source.config.targets)
        return [get_target(name) for name in names]

    def _read_global(self, source: ResolvedSource) -> str:
        try:
            return source.instructions_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            msg = f"Failed to read canonical instructions: {e}"
            raise SourceValidationError(msg, details={"path": str(source.instructions_path)}) from e

    def _write_document(self, content: str) -> bool:
        try:
            return write_instructions(self.repo_root, content)
        except OSError as e:
            msg = f"Failed to write {INSTRUCTIONS_FILE}: {e}"
            raise AgentSyncError(msg, details={"path": str(self.repo_root / INSTRUCTIONS_FILE)}) from e

    def _sync(self, source: ResolvedSource) -> SyncOutcome:
        profiles = self._profiles(source)
        prefix = source.marker_prefix
        preserve = source.config.merge.preserve_repo_content and not self.override

        global_content = self._read_global(source)
        merged = merge_instructions(self.repo_root, global_content, prefix, preserve)
        document_written = self._write_document(merged.content)
        consolidated: list[str] = []
        if preserve:
            uses_claude = any(profile.name == "claude" for profile in profiles)
            consolidated = consolidate_per_tool_files(self.repo_root, create_reference=uses_claude)
        self._advance(PipelineState.DOCUMENT_MERGED)

        items: dict[ContentClass, list[ContentItem]] = {}
        skipped: dict[ContentClass, list[str]] = {}
        for content_class in ContentClass:
            found, warnings, skipped_keys = discover_items(source, content_class)
            items[content_class] = found
            skipped[content_class] = skipped_keys
            self.warnings.extend(warnings)

        agents = items[ContentClass.AGENT]
        if agents and not any(profile.supports(ContentClass.AGENT) for profile in profiles):
            names = ", ".join(profile.name for profile in profiles)
            self.warnings.append(SyncWarning(
                kind="agents_unsupported",
                path=names,
                message=f"No active target supports agents ({names}); {len(agents)} agent(s) not synced",
            ))

        tallies = []
        for profile in profiles:
            for content_class in ContentClass:
                output_dir = profile.output_dir(self.repo_root, content_class)
                if output_dir is None:
                    continue
                tally, warnings = sync_class(
                    items[content_class],
                    output_dir,
                    content_class,
                    profile.name,
                    prefix,
                    protected=skipped[content_class],
                )
                tallies.append(tally)
                self.warnings.extend(warnings)
                logger.info(
                    "%s %s: %d created, %d updated, %d deleted",
                    profile.name, content_class.value,
                    len(tally.created), len(tally.updated), len(tally.deleted),
                )

        rules_section = None
        if any(profile.concatenates_rules for profile in profiles):
            rules_section = concatenate(items[ContentClass.RULE], prefix)
        final_document = apply_rules_block(merged.content, rules_section, prefix)
        if final_document != merged.content:
            document_written = self._write_document(final_document) or document_written
        self._advance(PipelineState.ITEMS_SYNCED)

        outcome = SyncOutcome(
            source=LedgerSource(
                kind=source.kind,
                repository=source.repository,
                path=source.path,
                ref=source.ref,
                commit=source.commit,
            ),
            pinned_version=source.pinned_version,
            targets=[profile.name for profile in profiles],
            document=DocumentOutcome(
                path=INSTRUCTIONS_FILE,
                changed=document_written,
                merged=merged.merged,
                preserved_repo_content=merged.preserved_repo_content,
                consolidated_files=consolidated,
                rules_block=rules_section is not None,
            ),
            tallies=tallies,
            skills=summarize(items[ContentClass.SKILL], _retained(tallies, ContentClass.SKILL)).files,
            rules=(
                summarize(items[ContentClass.RULE], _retained(tallies, ContentClass.RULE))
                if source.rules_path else None
            ),
            agents=(
                summarize(items[ContentClass.AGENT], _retained(tallies, ContentClass.AGENT))
                if source.agents_path else None
            ),
            global_block_hash=global_block_hash(global_content),
            rules_block_hash=rules_section.content_hash if rules_section else None,
            warnings=self.warnings,
        )

        outcome.ledger_path = write_ledger(self.repo_root, build_ledger(outcome, prefix))
        self._advance(PipelineState.LEDGER_WRITTEN)
        logger.info("Sync complete with %d warning(s)", len(self.warnings))
        return outcome


def run_sync(
    repo_root: Path,
    spec: SourceSpec,
    targets: list[str] | None = None,
    override: bool = False,
    cwd: Path | None = None,
) -> SyncOutcome:
    """Convenience wrapper around :class:`SyncPipeline`."""
    return SyncPipeline(repo_root, spec, targets=targets, override=override, cwd=cwd).run()
