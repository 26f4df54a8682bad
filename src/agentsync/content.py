"""Discover, render and synchronize skills, rules and agents.

Synchronization for one content class in one target is split into three
steps so that the decision logic stays free of I/O:

1. :func:`discover_items` reads the canonical source into ``ContentItem``s.
2. :func:`scan_target` reads what is already in the target directory.
3. :func:`plan_class_sync` compares the two and returns a ``SyncPlan``;
   :func:`apply_plan` carries it out.

Deletion only ever touches items whose on-disk front matter carries the
managed flag. User-authored items are left alone even when their name
collides with an item that was removed upstream. Items that exist upstream
but fail validation are skipped and keep their previously synced copy.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from . import frontmatter
from .frontmatter import FrontMatter
from .hashing import aggregate_hash, content_hash
from .models import (
    DEFAULT_MARKER_PREFIX,
    ClassSummary,
    ClassTally,
    ContentClass,
    ContentItem,
    ResolvedSource,
    SyncWarning,
)

logger = logging.getLogger(__name__)

SKILL_DOCUMENT = "SKILL.md"
METADATA_KEY = "metadata"
REQUIRED_FIELDS: dict[ContentClass, tuple[str, ...]] = {
    ContentClass.SKILL: ("name", "description"),
    ContentClass.RULE: (),
    ContentClass.AGENT: ("name", "description"),
}


def to_metadata_prefix(prefix: str) -> str:
    """Convert a marker prefix to its metadata key form (dashes to underscores)."""
    return prefix.replace("-", "_")


def to_marker_prefix(metadata_prefix: str) -> str:
    """Convert a metadata key prefix back to marker form."""
    return metadata_prefix.replace("_", "-")


@dataclass(frozen=True)
class MetadataKeys:
    """Front-matter keys used for managed metadata under one prefix."""

    managed: str
    content_hash: str
    source_path: str

    @classmethod
    def for_prefix(cls, prefix: str) -> MetadataKeys:
        base = to_metadata_prefix(prefix)
        return cls(
            managed=f"{base}_managed",
            content_hash=f"{base}_content_hash",
            source_path=f"{base}_source_path",
        )


def inject_managed_metadata(item: ContentItem, prefix: str = DEFAULT_MARKER_PREFIX) -> str:
    """Render an item's document with managed metadata added.

    Author-supplied keys in the ``metadata`` map are kept; the managed keys
    are set or overwritten.
    """
    keys = MetadataKeys.for_prefix(prefix)
    front_matter: FrontMatter = dict(item.front_matter or {})

    existing = front_matter.get(METADATA_KEY)
    metadata = dict(existing) if isinstance(existing, dict) else {}
    metadata[keys.managed] = "true"
    metadata[keys.content_hash] = item.content_hash
    if item.content_class is ContentClass.RULE:
        metadata[keys.source_path] = item.key
    front_matter[METADATA_KEY] = metadata

    return frontmatter.serialize(front_matter, item.body)


def read_managed_metadata(text: str, prefix: str = DEFAULT_MARKER_PREFIX) -> dict[str, str] | None:
    """Return the managed metadata map of a document, or None if unmanaged."""
    front_matter, _ = frontmatter.parse(text)
    if front_matter is None:
        return None
    metadata = front_matter.get(METADATA_KEY)
    if not isinstance(metadata, dict):
        return None
    if metadata.get(MetadataKeys.for_prefix(prefix).managed) != "true":
        return None
    return metadata


def is_managed(text: str, prefix: str = DEFAULT_MARKER_PREFIX) -> bool:
    """Whether a document carries the managed flag for this prefix."""
    return read_managed_metadata(text, prefix) is not None


def body_hash(text: str) -> str:
    """Hash of a document's body, as recorded in managed metadata."""
    _, body = frontmatter.parse(text)
    return content_hash(body)


def _build_item(
    content_class: ContentClass,
    key: str,
    document_path: str,
    text: str,
    warnings: list[SyncWarning],
    bundle_files: dict[str, bytes] | None = None,
) -> ContentItem | None:
    front_matter, body = frontmatter.parse(text)

    if front_matter is None and frontmatter.has_opening_delimiter(text):
        warnings.append(SyncWarning(
            kind="malformed_front_matter",
            path=document_path,
            message="Front matter could not be parsed; item skipped",
        ))
        return None

    missing = [
        name for name in REQUIRED_FIELDS[content_class]
        if not isinstance((front_matter or {}).get(name), str) or not (front_matter or {})[name]
    ]
    if missing:
        warnings.append(SyncWarning(
            kind="missing_field",
            path=document_path,
            message=f"Missing required front-matter field(s): {', '.join(missing)}",
        ))
        return None

    return ContentItem(
        content_class=content_class,
        key=key,
        document_path=document_path,
        raw_text=text,
        front_matter=front_matter,
        body=body,
        content_hash=content_hash(body),
        bundle_files=bundle_files or {},
    )


def _read_text(path: Path, relative: str, warnings: list[SyncWarning]) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        warnings.append(SyncWarning(kind="read_error", path=relative, message=str(e)))
        return None


def _discover_skills(
    root: Path,
    warnings: list[SyncWarning],
    skipped: list[str],
) -> list[ContentItem]:
    items: list[ContentItem] = []
    for skill_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        document = skill_dir / SKILL_DOCUMENT
        if not document.is_file():
            logger.debug("Skipping %s: no %s", skill_dir.name, SKILL_DOCUMENT)
            continue

        relative = f"{skill_dir.name}/{SKILL_DOCUMENT}"
        text = _read_text(document, relative, warnings)
        if text is None:
            skipped.append(skill_dir.name)
            continue

        try:
            bundle = {
                path.relative_to(root).as_posix(): path.read_bytes()
                for path in sorted(skill_dir.rglob("*"))
                if path.is_file() and path != document
            }
        except OSError as e:
            warnings.append(SyncWarning(kind="read_error", path=skill_dir.name, message=str(e)))
            skipped.append(skill_dir.name)
            continue

        item = _build_item(ContentClass.SKILL, skill_dir.name, relative, text, warnings, bundle)
        if item is None:
            skipped.append(skill_dir.name)
        else:
            items.append(item)
    return items


def _discover_documents(
    root: Path,
    content_class: ContentClass,
    recursive: bool,
    warnings: list[SyncWarning],
    skipped: list[str],
) -> list[ContentItem]:
    pattern = root.rglob("*.md") if recursive else root.glob("*.md")
    items: list[ContentItem] = []
    for path in sorted(p for p in pattern if p.is_file()):
        relative = path.relative_to(root).as_posix()
        text = _read_text(path, relative, warnings)
        item = None if text is None else _build_item(content_class, relative, relative, text, warnings)
        if item is None:
            skipped.append(relative)
        else:
            items.append(item)
    return items


def discover_items(
    source: ResolvedSource,
    content_class: ContentClass,
) -> tuple[list[ContentItem], list[SyncWarning], list[str]]:
    """Read every item of a class from the canonical source.

    Invalid items are reported as warnings and left out of the result.
    Their keys are returned as well: a skipped item still exists upstream,
    so its previously synced copy must not be treated as an orphan.

    Returns:
        Items sorted by key, the warnings raised while reading them, and the
        keys of the items that were skipped
    """
    root = source.class_path(content_class)
    warnings: list[SyncWarning] = []
    skipped: list[str] = []
    if root is None or not root.is_dir():
        return [], warnings, skipped

    if content_class is ContentClass.SKILL:
        items = _discover_skills(root, warnings, skipped)
    else:
        items = _discover_documents(
            root,
            content_class,
            recursive=content_class is ContentClass.RULE,
            warnings=warnings,
            skipped=skipped,
        )

    for warning in warnings:
        logger.warning("%s: %s", warning.path, warning.message)
    logger.debug("Discovered %d %s, skipped %d", len(items), content_class.value, len(skipped))
    return sorted(items, key=lambda i: i.key), warnings, sorted(skipped)


def summarize(items: list[ContentItem], retained: list[str] | None = None) -> ClassSummary:
    """File list and aggregate hash for the ledger.

    ``retained`` keys are items kept at their previously synced version;
    they are listed but contribute nothing to the hash.
    """
    return ClassSummary(
        files=sorted({item.key for item in items} | set(retained or [])),
        content_hash=aggregate_hash([(item.key, item.body) for item in items]),
    )


@dataclass(frozen=True)
class OnDiskItem:
    """An item found in a target directory before syncing."""

    key: str
    files: dict[str, bytes]
    managed: bool


@dataclass
class SyncPlan:
    """Writes and deletions needed to bring one target directory up to date.

    All paths are relative to the class output directory.
    """

    content_class: ContentClass
    writes: dict[str, dict[str, bytes]] = field(default_factory=dict)
    deletes: dict[str, list[str]] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    kept_unmanaged: list[str] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)


def render_item(item: ContentItem, prefix: str = DEFAULT_MARKER_PREFIX) -> dict[str, bytes]:
    """All files an item produces, relative to the class output directory."""
    files = {item.document_path: inject_managed_metadata(item, prefix).encode("utf-8")}
    files.update(item.bundle_files)
    return files


def plan_class_sync(
    content_class: ContentClass,
    source_items: list[ContentItem],
    on_disk: list[OnDiskItem],
    prefix: str = DEFAULT_MARKER_PREFIX,
    protected: list[str] | None = None,
) -> SyncPlan:
    """Decide what to write and delete for one class in one target.

    Args:
        content_class: Class being synchronized
        source_items: Complete current item set from the canonical source
        on_disk: Items already present in the target directory
        prefix: Marker prefix used for managed metadata
        protected: Keys still present upstream but skipped during discovery.
            Their on-disk copies are neither written nor deleted.

    Returns:
        The plan; nothing is touched on disk
    """
    plan = SyncPlan(content_class=content_class)
    existing = {entry.key: entry for entry in on_disk}
    source_keys = {item.key for item in source_items}
    protected_keys = set(protected or [])

    for item in source_items:
        rendered = render_item(item, prefix)
        current = existing.get(item.key)

        if current is None:
            plan.writes[item.key] = rendered
            plan.created.append(item.key)
            continue

        changed = {path: data for path, data in rendered.items() if current.files.get(path) != data}
        stale = [path for path in current.files if path not in rendered] if current.managed else []
        if changed:
            plan.writes[item.key] = changed
        if stale:
            plan.deletes[item.key] = sorted(stale)

        if changed or stale:
            plan.updated.append(item.key)
        else:
            plan.unchanged.append(item.key)

    for entry in on_disk:
        if entry.key in source_keys:
            continue
        if entry.key in protected_keys and entry.managed:
            plan.retained.append(entry.key)
        elif entry.managed:
            plan.deletes[entry.key] = sorted(entry.files)
            plan.deleted.append(entry.key)
        else:
            plan.kept_unmanaged.append(entry.key)

    return plan


def _is_managed_file(path: Path, prefix: str) -> bool:
    try:
        return is_managed(path.read_text(encoding="utf-8", errors="replace"), prefix)
    except OSError:
        return False


def scan_target(
    output_dir: Path,
    content_class: ContentClass,
    prefix: str = DEFAULT_MARKER_PREFIX,
) -> list[OnDiskItem]:
    """Read existing items from a target's class directory."""
    if not output_dir.is_dir():
        return []

    found: list[OnDiskItem] = []
    if content_class is ContentClass.SKILL:
        for skill_dir in sorted(p for p in output_dir.iterdir() if p.is_dir()):
            files = {
                path.relative_to(output_dir).as_posix(): path.read_bytes()
                for path in sorted(skill_dir.rglob("*"))
                if path.is_file()
            }
            found.append(OnDiskItem(
                key=skill_dir.name,
                files=files,
                managed=_is_managed_file(skill_dir / SKILL_DOCUMENT, prefix),
            ))
        return found

    pattern = output_dir.rglob("*.md") if content_class is ContentClass.RULE else output_dir.glob("*.md")
    for path in sorted(p for p in pattern if p.is_file()):
        key = path.relative_to(output_dir).as_posix()
        found.append(OnDiskItem(
            key=key,
            files={key: path.read_bytes()},
            managed=_is_managed_file(path, prefix),
        ))
    return found


def _prune_empty_dirs(start: Path, stop: Path) -> None:
    current = start
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


def apply_plan(output_dir: Path, plan: SyncPlan, target: str) -> tuple[ClassTally, list[SyncWarning]]:
    """Carry out a sync plan in a target's class directory.

    A failed write or delete is recorded as a warning and the item is left
    out of the tally; other items are still processed.
    """
    warnings: list[SyncWarning] = []
    failed: set[str] = set()

    for key, files in plan.writes.items():
        try:
            for relative, data in files.items():
                destination = output_dir / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                destination.write_bytes(data)
        except OSError as e:
            failed.add(key)
            warnings.append(SyncWarning(kind="write_error", path=key, message=str(e)))
            logger.warning("Failed to write %s: %s", key, e)

    for key, files in plan.deletes.items():
        try:
            for relative in files:
                path = output_dir / relative
                path.unlink(missing_ok=True)
                _prune_empty_dirs(path.parent, output_dir)
            if plan.content_class is ContentClass.SKILL and key in plan.deleted:
                skill_dir = output_dir / key
                if skill_dir.is_dir():
                    shutil.rmtree(skill_dir)
        except OSError as e:
            failed.add(key)
            warnings.append(SyncWarning(kind="delete_error", path=key, message=str(e)))
            logger.warning("Failed to delete %s: %s", key, e)

    tally = ClassTally(
        target=target,
        content_class=plan.content_class,
        created=[key for key in plan.created if key not in failed],
        updated=[key for key in plan.updated if key not in failed],
        unchanged=list(plan.unchanged),
        deleted=[key for key in plan.deleted if key not in failed],
        kept_unmanaged=list(plan.kept_unmanaged),
        retained=list(plan.retained),
    )
    for key in tally.deleted:
        logger.debug("Deleted orphaned %s %s", plan.content_class.value, key)
    return tally, warnings


def sync_class(
    items: list[ContentItem],
    output_dir: Path,
    content_class: ContentClass,
    target: str,
    prefix: str = DEFAULT_MARKER_PREFIX,
    protected: list[str] | None = None,
) -> tuple[ClassTally, list[SyncWarning]]:
    """Synchronize one content class into one target directory."""
    on_disk = scan_target(output_dir, content_class, prefix)
    plan = plan_class_sync(content_class, items, on_disk, prefix, protected)
    return apply_plan(output_dir, plan, target)
