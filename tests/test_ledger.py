"""Tests for the integrity ledger and schema compatibility."""

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from agentsync import __version__
from agentsync.exceptions import LedgerCompatibilityError, LedgerError
from agentsync.ledger import (
    SUPPORTED_SCHEMA_VERSION,
    Compatibility,
    build_ledger,
    check_compatibility,
    ledger_path,
    read_ledger,
    write_ledger,
)
from agentsync.models import (
    ClassSummary,
    DocumentOutcome,
    LedgerSource,
    SourceKind,
    SyncOutcome,
)


@pytest.fixture
def outcome() -> SyncOutcome:
    """A finished sync outcome."""
    return SyncOutcome(
        source=LedgerSource(kind=SourceKind.REMOTE, repository="acme/standards", ref="v1.2.0", commit="abc123"),
        pinned_version="1.2.0",
        targets=["claude", "codex"],
        document=DocumentOutcome(merged=True),
        skills=["code-review"],
        rules=ClassSummary(files=["style.md"], content_hash="sha256:111111111111"),
        global_block_hash="sha256:000000000000",
        rules_block_hash="sha256:222222222222",
    )


class TestCompatibility:
    """Test schema version comparison."""

    def test_same_version(self) -> None:
        """The supported version is fine."""
        assert check_compatibility(SUPPORTED_SCHEMA_VERSION).status is Compatibility.OK

    @pytest.mark.parametrize("version", ["1.1.0", "1.0.5"])
    def test_newer_minor_warns(self, version: str) -> None:
        """Minor and patch differences only warn."""
        result = check_compatibility(version)
        assert result.status is Compatibility.WARN
        assert "newer" in result.message

    def test_older_minor_warns(self) -> None:
        """Older minor versions warn as well."""
        assert check_compatibility("1.0.0", supported="1.2.0").status is Compatibility.WARN

    def test_newer_major_blocks(self) -> None:
        """A newer major needs an upgrade."""
        result = check_compatibility("2.0.0")
        assert result.status is Compatibility.BLOCKED
        assert result.kind == LedgerCompatibilityError.UPGRADE_REQUIRED
        assert "Upgrade" in result.message

    def test_older_major_blocks(self) -> None:
        """An older major needs migration."""
        result = check_compatibility("1.0.0", supported="2.0.0")
        assert result.status is Compatibility.BLOCKED
        assert result.kind == LedgerCompatibilityError.MIGRATION_REQUIRED
        assert "no longer supported" in result.message

    def test_invalid_version(self) -> None:
        """Non-semver versions are a ledger error."""
        with pytest.raises(LedgerError):
            check_compatibility("one")


class TestReadWrite:
    """Test persisting and reading the ledger."""

    def test_absent(self, tmp_path: Path) -> None:
        """A never-synced repository has no ledger."""
        assert read_ledger(tmp_path) == (None, None)

    def test_round_trip(self, tmp_path: Path, outcome: SyncOutcome) -> None:
        """What is written is read back."""
        synced_at = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
        ledger = build_ledger(outcome, "agentsync", synced_at=synced_at)
        path = write_ledger(tmp_path, ledger)

        assert path == ledger_path(tmp_path)
        loaded, warning = read_ledger(tmp_path)
        assert warning is None
        assert loaded == ledger
        assert loaded.tool_version == __version__
        assert loaded.content.instructions.rules_block_hash == "sha256:222222222222"

    def test_file_layout(self, tmp_path: Path, outcome: SyncOutcome) -> None:
        """The JSON uses the documented field names."""
        write_ledger(tmp_path, build_ledger(outcome, "agentsync"))
        data = json.loads(ledger_path(tmp_path).read_text())

        assert data["schema_version"] == SUPPORTED_SCHEMA_VERSION
        assert data["pinned_version"] == "1.2.0"
        assert data["source"]["kind"] == "remote"
        assert data["source"]["commit"] == "abc123"
        assert data["content"]["instructions"] == {
            "global_block_hash": "sha256:000000000000",
            "merged": True,
            "rules_block_hash": "sha256:222222222222",
        }
        assert data["content"]["skills"] == ["code-review"]
        assert data["content"]["rules"]["files"] == ["style.md"]
        assert data["content"]["agents"] is None
        assert data["content"]["targets"] == ["claude", "codex"]
        assert data["content"]["marker_prefix"] == "agentsync"

    def test_no_temp_files_left(self, tmp_path: Path, outcome: SyncOutcome) -> None:
        """The atomic write leaves only the ledger behind."""
        write_ledger(tmp_path, build_ledger(outcome, "agentsync"))
        write_ledger(tmp_path, build_ledger(outcome, "agentsync"))
        assert [p.name for p in ledger_path(tmp_path).parent.iterdir()] == ["lock.json"]

    def test_newer_major_blocks_before_parsing(self, tmp_path: Path) -> None:
        """Only the schema version is read from an incompatible ledger."""
        path = ledger_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"schema_version": "2.0.0", "content": "unknown layout"}))

        with pytest.raises(LedgerCompatibilityError) as exc_info:
            read_ledger(tmp_path)
        assert exc_info.value.kind == LedgerCompatibilityError.UPGRADE_REQUIRED

    def test_minor_difference_warns(self, tmp_path: Path, outcome: SyncOutcome) -> None:
        """A newer minor version is read with a warning."""
        data = build_ledger(outcome, "agentsync").model_dump(mode="json")
        data["schema_version"] = "1.3.0"
        path = ledger_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps(data))

        ledger, warning = read_ledger(tmp_path)
        assert ledger is not None
        assert "newer than expected" in warning

    @pytest.mark.parametrize("content", ["not json", "[]", '{"schema_version": "1.0.0"}'])
    def test_corrupt(self, tmp_path: Path, content: str) -> None:
        """Unreadable ledgers are reported."""
        path = ledger_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text(content)

        with pytest.raises(LedgerError):
            read_ledger(tmp_path)
