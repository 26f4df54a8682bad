"""Core data models for the agentsync synchronization engine."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .frontmatter import FrontMatter

SEMVER_PATTERN = r"^\d+\.\d+\.\d+(?:-[a-zA-Z0-9\-.]+)?(?:\+[a-zA-Z0-9\-.]+)?$"
PREFIX_PATTERN = r"^[a-z][a-z0-9-]*$"
DEFAULT_MARKER_PREFIX = "agentsync"


class ContentClass(str, Enum):
    """Kinds of auxiliary content distributed alongside the instructions."""

    SKILL = "skills"
    RULE = "rules"
    AGENT = "agents"


class SourceKind(str, Enum):
    """Where a canonical source snapshot came from."""

    LOCAL = "local"
    REMOTE = "remote"


class CanonicalMeta(BaseModel):
    """Descriptive metadata about a canonical source."""

    name: str = Field(default="canonical", min_length=1)
    organization: str | None = None
    description: str | None = None


class CanonicalContentPaths(BaseModel):
    """Locations of content inside the canonical source."""

    instructions: str = Field(default="instructions/AGENTS.md")
    skills_dir: str = Field(default="skills")
    rules_dir: str | None = None
    agents_dir: str | None = None


class MarkersConfig(BaseModel):
    """Marker prefix applied to managed blocks and metadata keys."""

    prefix: str = Field(default=DEFAULT_MARKER_PREFIX)

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Validate prefix is usable in both markers and metadata keys."""
        if not re.match(PREFIX_PATTERN, v):
            msg = "Marker prefix must be lowercase letters, digits and dashes (e.g., acme-agents)"
            raise ValueError(msg)
        return v


class MergeConfig(BaseModel):
    """Managed document merge behaviour."""

    preserve_repo_content: bool = Field(default=True)


class CanonicalConfig(BaseModel):
    """Canonical source configuration (agentsync.yaml)."""

    version: str = Field(default="1.0.0", description="Semantic version of the config format")
    meta: CanonicalMeta = Field(default_factory=CanonicalMeta)
    content: CanonicalContentPaths = Field(default_factory=CanonicalContentPaths)
    targets: list[str] = Field(default_factory=lambda: ["claude"])
    markers: MarkersConfig = Field(default_factory=MarkersConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)

    @field_validator("version")
    @classmethod
    def validate_semver(cls, v: str) -> str:
        """Validate version follows semantic versioning."""
        if not re.match(SEMVER_PATTERN, v):
            msg = "Version must follow semantic versioning (e.g., 1.0.0)"
            raise ValueError(msg)
        return v


class DownstreamSource(BaseModel):
    """Source preference recorded in a consuming repository."""

    repository: str | None = None
    ref: str | None = None
    path: str | None = None


class DownstreamConfig(BaseModel):
    """Consuming repository configuration (.agentsync/config.yaml)."""

    source: DownstreamSource | None = None
    targets: list[str] | None = None


class SourceSpec(BaseModel):
    """A request for canonical content, before resolution."""

    kind: SourceKind
    path: Path | None = None
    repository: str | None = None
    ref: str | None = None

    @classmethod
    def local(cls, path: Path | None = None) -> SourceSpec:
        """Build a local specifier; no path means auto-discovery."""
        return cls(kind=SourceKind.LOCAL, path=path)

    @classmethod
    def remote(cls, repository: str, ref: str | None = None) -> SourceSpec:
        """Build a remote specifier; no ref means the latest release tag."""
        return cls(kind=SourceKind.REMOTE, repository=repository, ref=ref)


class ResolvedSource(BaseModel):
    """Read-only snapshot of canonical content for one sync."""

    model_config = ConfigDict(frozen=True)

    kind: SourceKind
    base_path: Path
    instructions_path: Path
    skills_path: Path
    rules_path: Path | None = None
    agents_path: Path | None = None
    marker_prefix: str = DEFAULT_MARKER_PREFIX
    path: str | None = None
    repository: str | None = None
    ref: str | None = None
    commit: str | None = None
    pinned_version: str | None = None
    config: CanonicalConfig = Field(default_factory=CanonicalConfig)

    def class_path(self, content_class: ContentClass) -> Path | None:
        """Return the source directory for a content class, if configured."""
        return {
            ContentClass.SKILL: self.skills_path,
            ContentClass.RULE: self.rules_path,
            ContentClass.AGENT: self.agents_path,
        }[content_class]


class ContentItem(BaseModel):
    """One skill, rule or agent discovered in the canonical source."""

    model_config = ConfigDict(frozen=True)

    content_class: ContentClass
    key: str = Field(..., description="Skill name, or path relative to the class directory")
    document_path: str = Field(..., description="Primary markdown file relative to the class dir")
    raw_text: str
    front_matter: FrontMatter | None = None
    body: str
    content_hash: str
    bundle_files: dict[str, bytes] = Field(
        default_factory=dict,
        description="Extra files of a skill bundle, relative to the class directory",
    )

    @property
    def paths(self) -> list[str]:
        """Glob list for conditional loading, if the item declares one."""
        value = (self.front_matter or {}).get("paths")
        if isinstance(value, list):
            return value
        if isinstance(value, str) and value:
            return [value]
        return []


class SyncWarning(BaseModel):
    """A recovered, per-item problem surfaced in the final report."""

    kind: str
    path: str
    message: str


class ClassTally(BaseModel):
    """Write/delete counts for one content class in one target."""

    target: str
    content_class: ContentClass
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    kept_unmanaged: list[str] = Field(default_factory=list)
    retained: list[str] = Field(
        default_factory=list,
        description="Skipped upstream items kept at their previously synced version",
    )

    @property
    def changes(self) -> int:
        """Number of creates, updates and deletes."""
        return len(self.created) + len(self.updated) + len(self.deleted)


class DocumentOutcome(BaseModel):
    """What happened to the managed instructions document."""

    path: str = "AGENTS.md"
    changed: bool = False
    merged: bool = False
    preserved_repo_content: bool = False
    consolidated_files: list[str] = Field(default_factory=list)
    rules_block: bool = False


class LedgerSource(BaseModel):
    """Origin of the content recorded in the ledger."""

    kind: SourceKind
    repository: str | None = None
    path: str | None = None
    ref: str | None = None
    commit: str | None = None


class InstructionsSummary(BaseModel):
    """Ledger record of the managed document."""

    global_block_hash: str
    merged: bool = True
    rules_block_hash: str | None = None


class ClassSummary(BaseModel):
    """Ledger record of one content class."""

    files: list[str] = Field(default_factory=list)
    content_hash: str = ""


class LedgerContent(BaseModel):
    """Everything the last sync wrote."""

    instructions: InstructionsSummary
    skills: list[str] = Field(default_factory=list)
    rules: ClassSummary | None = None
    agents: ClassSummary | None = None
    targets: list[str] = Field(default_factory=lambda: ["claude"])
    marker_prefix: str = DEFAULT_MARKER_PREFIX


class Ledger(BaseModel):
    """Persisted integrity record of the last successful sync."""

    schema_version: str
    pinned_version: str | None = None
    synced_at: datetime
    source: LedgerSource
    content: LedgerContent
    tool_version: str

    @field_validator("schema_version")
    @classmethod
    def validate_semver(cls, v: str) -> str:
        """Validate version follows semantic versioning."""
        if not re.match(SEMVER_PATTERN, v):
            msg = "Schema version must follow semantic versioning (e.g., 1.0.0)"
            raise ValueError(msg)
        return v


class SyncOutcome(BaseModel):
    """Structured result of one pipeline run."""

    source: LedgerSource
    pinned_version: str | None = None
    targets: list[str]
    document: DocumentOutcome = Field(default_factory=DocumentOutcome)
    tallies: list[ClassTally] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    rules: ClassSummary | None = None
    agents: ClassSummary | None = None
    global_block_hash: str = ""
    rules_block_hash: str | None = None
    warnings: list[SyncWarning] = Field(default_factory=list)
    ledger_warning: str | None = None
    ledger_path: Path | None = None

    def tally(self, target: str, content_class: ContentClass) -> ClassTally | None:
        """Look up the tally for a target/class pair."""
        for entry in self.tallies:
            if entry.target == target and entry.content_class == content_class:
                return entry
        return None


class IntegrityViolation(BaseModel):
    """A managed file whose content no longer matches its recorded hash."""

    path: str
    kind: str = Field(..., description="modified or missing")
    expected: str
    actual: str


class IntegrityReport(BaseModel):
    """Result of the integrity-check operation."""

    synced: bool
    checked: list[str] = Field(default_factory=list)
    violations: list[IntegrityViolation] = Field(default_factory=list)
    ledger_warning: str | None = None

    @property
    def ok(self) -> bool:
        """True when every managed file matches its recorded hash."""
        return not self.violations


class StatusReport(BaseModel):
    """Summary of a consuming repository's sync state."""

    synced: bool
    source: LedgerSource | None = None
    pinned_version: str | None = None
    synced_at: datetime | None = None
    targets: list[str] = Field(default_factory=list)
    marker_prefix: str | None = None
    skill_count: int = 0
    rule_count: int = 0
    agent_count: int = 0
    tool_version: str | None = None
    ledger_warning: str | None = None
