"""Tests for item discovery, managed metadata and the class synchronizer."""

from pathlib import Path

import pytest

from agentsync import frontmatter
from agentsync.content import (
    MetadataKeys,
    OnDiskItem,
    apply_plan,
    body_hash,
    discover_items,
    inject_managed_metadata,
    is_managed,
    plan_class_sync,
    read_managed_metadata,
    render_item,
    scan_target,
    summarize,
    sync_class,
    to_marker_prefix,
    to_metadata_prefix,
)
from agentsync.hashing import HASH_PATTERN
from agentsync.models import ContentClass, SourceKind
from agentsync.source import build_resolved_source


def discover(root: Path, content_class: ContentClass):
    items, warnings, _ = discover_items(build_resolved_source(root, SourceKind.LOCAL), content_class)
    return items, warnings


class TestPrefixes:
    """Test marker and metadata prefix conversion."""

    def test_round_trip(self) -> None:
        """Dashes and underscores convert both ways."""
        assert to_metadata_prefix("acme-agents") == "acme_agents"
        assert to_marker_prefix("acme_agents") == "acme-agents"

    def test_keys(self) -> None:
        """Metadata keys use the underscored prefix."""
        keys = MetadataKeys.for_prefix("acme-agents")
        assert keys.managed == "acme_agents_managed"
        assert keys.content_hash == "acme_agents_content_hash"
        assert keys.source_path == "acme_agents_source_path"


class TestDiscovery:
    """Test reading items from a canonical source."""

    def test_skills(self, canonical: Path) -> None:
        """Skills are directories with a SKILL.md and any bundled files."""
        (canonical / "skills" / "code-review" / "references").mkdir()
        (canonical / "skills" / "code-review" / "references" / "guide.md").write_text("guide")
        (canonical / "skills" / "not-a-skill").mkdir()

        items, warnings = discover(canonical, ContentClass.SKILL)

        assert warnings == []
        assert [item.key for item in items] == ["code-review"]
        skill = items[0]
        assert skill.document_path == "code-review/SKILL.md"
        assert skill.bundle_files == {"code-review/references/guide.md": b"guide"}
        assert HASH_PATTERN.match(skill.content_hash)

    def test_rules_nest_in_subdirectories(self, canonical: Path) -> None:
        """Rule keys keep their relative path."""
        items, _ = discover(canonical, ContentClass.RULE)

        assert [item.key for item in items] == ["style/typescript.md"]
        assert items[0].paths == ["src/**/*.ts"]

    def test_rules_without_front_matter(self, make_canonical) -> None:
        """Rules do not need front matter."""
        root = make_canonical(rules={"plain.md": "# Plain rule\n"})
        items, warnings = discover(root, ContentClass.RULE)

        assert warnings == []
        assert items[0].front_matter is None
        assert items[0].paths == []

    def test_missing_required_fields_skips_item(self, make_canonical) -> None:
        """A skill without a description is reported and skipped."""
        root = make_canonical(skills=["good"])
        bad = root / "skills" / "bad"
        bad.mkdir()
        (bad / "SKILL.md").write_text("---\nname: bad\n---\nbody\n")

        items, warnings = discover(root, ContentClass.SKILL)

        assert [item.key for item in items] == ["good"]
        assert len(warnings) == 1
        assert warnings[0].kind == "missing_field"
        assert warnings[0].path == "bad/SKILL.md"

    def test_malformed_rule_skipped(self, make_canonical) -> None:
        """A rule whose front matter cannot be read is reported and skipped."""
        root = make_canonical(rules={
            "good.md": "# Good\n",
            "broken.md": "---\npaths: [unterminated\n---\nbody\n",
        })
        items, warnings = discover(root, ContentClass.RULE)

        assert [item.key for item in items] == ["good.md"]
        assert [w.kind for w in warnings] == ["malformed_front_matter"]

    def test_skipped_keys_are_returned(self, make_canonical) -> None:
        """Items that fail validation are reported by key."""
        root = make_canonical(
            skills=["good"],
            rules={"ok.md": "# Ok\n", "bad.md": "---\npaths: [x\n---\nbody\n"},
        )
        (root / "skills" / "broken").mkdir()
        (root / "skills" / "broken" / "SKILL.md").write_text("---\nname: broken\n---\nbody\n")
        source = build_resolved_source(root, SourceKind.LOCAL)

        _, _, skipped_skills = discover_items(source, ContentClass.SKILL)
        _, _, skipped_rules = discover_items(source, ContentClass.RULE)

        assert skipped_skills == ["broken"]
        assert skipped_rules == ["bad.md"]

    def test_missing_class_directory(self, make_canonical) -> None:
        """An unconfigured class yields nothing."""
        root = make_canonical(config={"version": "1.0.0"})
        assert discover(root, ContentClass.AGENT) == ([], [])

    def test_summary_is_order_independent(self, canonical: Path) -> None:
        """The class hash depends on content, not discovery order."""
        items, _ = discover(canonical, ContentClass.RULE)
        summary = summarize(items)

        assert summary.files == ["style/typescript.md"]
        assert summary == summarize(list(reversed(items)))
        assert summarize([]).content_hash == ""


class TestManagedMetadata:
    """Test injecting and reading managed metadata."""

    def test_rule_metadata(self, canonical: Path) -> None:
        """Rules record the managed flag, hash and source path."""
        items, _ = discover(canonical, ContentClass.RULE)
        rendered = inject_managed_metadata(items[0])
        metadata = read_managed_metadata(rendered)

        assert metadata == {
            "agentsync_managed": "true",
            "agentsync_content_hash": items[0].content_hash,
            "agentsync_source_path": "style/typescript.md",
        }
        assert body_hash(rendered) == items[0].content_hash
        assert frontmatter.parse(rendered)[0]["paths"] == ["src/**/*.ts"]

    def test_skill_metadata_keeps_author_keys(self, make_canonical) -> None:
        """Existing metadata entries survive injection."""
        root = make_canonical(skills=[])
        skill = root / "skills" / "tagged"
        skill.mkdir()
        (skill / "SKILL.md").write_text(
            "---\nname: tagged\ndescription: d\nmetadata:\n  owner: platform\n---\nbody\n",
        )
        items, _ = discover(root, ContentClass.SKILL)
        metadata = read_managed_metadata(inject_managed_metadata(items[0]))

        assert metadata["owner"] == "platform"
        assert metadata["agentsync_managed"] == "true"
        assert "agentsync_source_path" not in metadata

    def test_prefix_scopes_ownership(self, canonical: Path) -> None:
        """A file managed under one prefix is not managed under another."""
        items, _ = discover(canonical, ContentClass.AGENT)
        rendered = inject_managed_metadata(items[0], prefix="acme-agents")

        assert is_managed(rendered, "acme-agents")
        assert not is_managed(rendered, "agentsync")
        assert "acme_agents_managed" in rendered

    def test_unmanaged_documents(self) -> None:
        """Plain files and files with other metadata are unmanaged."""
        assert not is_managed("# Mine\n")
        assert not is_managed("---\nname: mine\n---\nbody")
        assert not is_managed('---\nmetadata:\n  agentsync_managed: "false"\n---\n')


class TestPlan:
    """Test the pure planning step."""

    @pytest.fixture
    def items(self, canonical: Path):
        """Current skill items."""
        found, _ = discover(canonical, ContentClass.SKILL)
        return found

    def test_create(self, items) -> None:
        """Items absent on disk are created."""
        plan = plan_class_sync(ContentClass.SKILL, items, [])
        assert plan.created == ["code-review"]
        assert "code-review/SKILL.md" in plan.writes["code-review"]

    def test_unchanged(self, items) -> None:
        """Items already rendered on disk need nothing."""
        on_disk = [OnDiskItem("code-review", render_item(items[0]), managed=True)]
        plan = plan_class_sync(ContentClass.SKILL, items, on_disk)

        assert plan.unchanged == ["code-review"]
        assert plan.writes == {}
        assert plan.deletes == {}

    def test_update_removes_stale_bundle_files(self, items) -> None:
        """Files dropped from a managed bundle are deleted."""
        files = render_item(items[0])
        files["code-review/old.md"] = b"stale"
        plan = plan_class_sync(ContentClass.SKILL, items, [OnDiskItem("code-review", files, True)])

        assert plan.updated == ["code-review"]
        assert plan.deletes == {"code-review": ["code-review/old.md"]}

    def test_orphans(self, items) -> None:
        """Managed orphans are deleted, unmanaged ones are kept."""
        on_disk = [
            OnDiskItem("removed", {"removed/SKILL.md": b"x"}, managed=True),
            OnDiskItem("handmade", {"handmade/SKILL.md": b"y"}, managed=False),
        ]
        plan = plan_class_sync(ContentClass.SKILL, items, on_disk)

        assert plan.deleted == ["removed"]
        assert plan.kept_unmanaged == ["handmade"]
        assert "handmade" not in plan.deletes

    def test_protected_items_are_not_orphans(self, items) -> None:
        """A managed copy of an item skipped upstream is neither written nor deleted."""
        on_disk = [
            OnDiskItem("invalid-upstream", {"invalid-upstream/SKILL.md": b"x"}, managed=True),
            OnDiskItem("handmade", {"handmade/SKILL.md": b"y"}, managed=False),
        ]
        plan = plan_class_sync(
            ContentClass.SKILL, items, on_disk, protected=["invalid-upstream", "handmade"],
        )

        assert plan.retained == ["invalid-upstream"]
        assert plan.kept_unmanaged == ["handmade"]
        assert plan.deleted == []
        assert "invalid-upstream" not in plan.deletes
        assert "invalid-upstream" not in plan.writes


class TestSyncClass:
    """Test synchronizing into a real directory."""

    def test_second_run_changes_nothing(self, canonical: Path, repo: Path) -> None:
        """Syncing twice with no upstream change is a no-op."""
        items, _ = discover(canonical, ContentClass.RULE)
        output = repo / ".claude" / "rules"

        first, _ = sync_class(items, output, ContentClass.RULE, "claude")
        second, _ = sync_class(items, output, ContentClass.RULE, "claude")

        assert first.created == ["style/typescript.md"]
        assert second.changes == 0
        assert second.unchanged == ["style/typescript.md"]

    def test_unmanaged_collision_never_deleted(self, make_canonical, repo: Path) -> None:
        """A user file is kept even when an upstream item of that name is removed."""
        output = repo / ".claude" / "agents"
        output.mkdir(parents=True)
        (output / "reviewer.md").write_text("# My own reviewer\n")

        root = make_canonical(agents={})
        items, _ = discover(root, ContentClass.AGENT)
        tally, _ = sync_class(items, output, ContentClass.AGENT, "claude")

        assert tally.kept_unmanaged == ["reviewer.md"]
        assert (output / "reviewer.md").read_text() == "# My own reviewer\n"

    def test_orphan_deletion_prunes_directories(self, make_canonical, repo: Path) -> None:
        """Deleting the last rule in a subdirectory removes the directory."""
        root = make_canonical()
        output = repo / ".claude" / "rules"
        items, _ = discover(root, ContentClass.RULE)
        sync_class(items, output, ContentClass.RULE, "claude")
        assert (output / "style" / "typescript.md").exists()

        tally, _ = sync_class([], output, ContentClass.RULE, "claude")

        assert tally.deleted == ["style/typescript.md"]
        assert not (output / "style").exists()
        assert output.exists()

    def test_skill_directory_removed(self, canonical: Path, repo: Path) -> None:
        """A removed managed skill loses its whole directory."""
        output = repo / ".claude" / "skills"
        items, _ = discover(canonical, ContentClass.SKILL)
        sync_class(items, output, ContentClass.SKILL, "claude")
        (output / "code-review" / "notes.txt").write_text("added locally")

        tally, _ = sync_class([], output, ContentClass.SKILL, "claude")

        assert tally.deleted == ["code-review"]
        assert not (output / "code-review").exists()

    def test_scan_reports_management(self, canonical: Path, repo: Path) -> None:
        """Scanning distinguishes managed from unmanaged files."""
        output = repo / ".claude" / "agents"
        items, _ = discover(canonical, ContentClass.AGENT)
        sync_class(items, output, ContentClass.AGENT, "claude")
        (output / "mine.md").write_text("# Mine\n")

        found = {entry.key: entry.managed for entry in scan_target(output, ContentClass.AGENT)}
        assert found == {"mine.md": False, "reviewer.md": True}

    def test_write_failure_is_a_warning(self, canonical: Path, repo: Path) -> None:
        """A failed write is reported and left out of the tally."""
        output = repo / ".claude" / "rules"
        output.mkdir(parents=True)
        (output / "style").write_text("a file where a directory should be")

        items, _ = discover(canonical, ContentClass.RULE)
        plan = plan_class_sync(ContentClass.RULE, items, [])
        tally, warnings = apply_plan(output, plan, "claude")

        assert tally.created == []
        assert [w.kind for w in warnings] == ["write_error"]

    def test_skill_skipped_upstream_keeps_synced_copy(self, make_canonical, repo: Path) -> None:
        """A skill that stops validating upstream is kept, not deleted as an orphan."""
        root = make_canonical(skills=["alpha"])
        output = repo / ".claude" / "skills"
        items, _ = discover(root, ContentClass.SKILL)
        sync_class(items, output, ContentClass.SKILL, "claude")
        synced = (output / "alpha" / "SKILL.md").read_text()

        (root / "skills" / "alpha" / "SKILL.md").write_text("---\nname: alpha\n---\nbody\n")
        items, warnings, skipped = discover_items(build_resolved_source(root, SourceKind.LOCAL), ContentClass.SKILL)
        tally, _ = sync_class(items, output, ContentClass.SKILL, "claude", protected=skipped)

        assert [w.kind for w in warnings] == ["missing_field"]
        assert tally.deleted == []
        assert tally.retained == ["alpha"]
        assert (output / "alpha" / "SKILL.md").read_text() == synced
