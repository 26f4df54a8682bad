"""Integrity ledger: the persisted record of the last successful sync."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from . import __version__
from .config import DOWNSTREAM_DIR, ConfigLoader
from .exceptions import ConfigError, LedgerCompatibilityError, LedgerError
from .models import (
    InstructionsSummary,
    Ledger,
    LedgerContent,
    SyncOutcome,
)

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSION = "1.0.0"
LEDGER_FILE = "lock.json"


class Compatibility(str, Enum):
    """Outcome of comparing a ledger schema version to the supported one."""

    OK = "ok"
    WARN = "warn"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class CompatibilityResult:
    """Compatibility status with the message to show, if any."""

    status: Compatibility
    message: str | None = None
    kind: str | None = None


def ledger_path(repo_root: Path) -> Path:
    """Location of the ledger inside a consuming repository."""
    return repo_root / DOWNSTREAM_DIR / LEDGER_FILE


def _parse_version(version: str) -> tuple[int, int, int]:
    core = version.split("-", 1)[0].split("+", 1)[0]
    parts = core.split(".")
    try:
        major, minor, patch = (int(part) for part in parts)
    except ValueError:
        msg = f"Invalid ledger schema version: {version!r}"
        raise LedgerError(msg, details={"schema_version": version}) from None
    return major, minor, patch


def check_compatibility(
    schema_version: str,
    supported: str = SUPPORTED_SCHEMA_VERSION,
) -> CompatibilityResult:
    """Compare a ledger schema version with the supported one by major component.

    Args:
        schema_version: Version recorded in the ledger
        supported: Version this engine writes

    Returns:
        OK for an exact match, WARN for a minor/patch difference, BLOCKED for
        a different major version

    Raises:
        LedgerError: If the version is not a semantic version
    """
    found = _parse_version(schema_version)
    expected = _parse_version(supported)

    if found[0] > expected[0]:
        return CompatibilityResult(
            status=Compatibility.BLOCKED,
            kind=LedgerCompatibilityError.UPGRADE_REQUIRED,
            message=(
                f"Ledger schema {schema_version} was written by a newer agentsync "
                f"(supported: {supported}). Upgrade agentsync to continue."
            ),
        )
    if found[0] < expected[0]:
        return CompatibilityResult(
            status=Compatibility.BLOCKED,
            kind=LedgerCompatibilityError.MIGRATION_REQUIRED,
            message=(
                f"Ledger schema {schema_version} is no longer supported "
                f"(supported: {supported}). The ledger needs migration; re-run sync "
                "with a compatible agentsync or remove the ledger and sync again."
            ),
        )
    if found > expected:
        return CompatibilityResult(
            status=Compatibility.WARN,
            message=(
                f"Ledger schema {schema_version} is newer than expected ({supported}). "
                "Some recorded details may be ignored."
            ),
        )
    if found < expected:
        return CompatibilityResult(
            status=Compatibility.WARN,
            message=f"Ledger schema {schema_version} is older than {supported}; it will be rewritten.",
        )
    return CompatibilityResult(status=Compatibility.OK)


def ensure_compatible(schema_version: str) -> str | None:
    """Raise for a blocked schema version, otherwise return any warning.

    Raises:
        LedgerCompatibilityError: If the major version differs
    """
    result = check_compatibility(schema_version)
    if result.status is Compatibility.BLOCKED:
        raise LedgerCompatibilityError(
            result.message or "Incompatible ledger",
            kind=result.kind or LedgerCompatibilityError.UPGRADE_REQUIRED,
            details={"schema_version": schema_version, "supported": SUPPORTED_SCHEMA_VERSION},
        )
    if result.message:
        logger.warning(result.message)
    return result.message


def _load_raw(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        msg = f"Ledger {path} is not valid JSON: {e}"
        raise LedgerError(msg, details={"path": str(path)}) from e
    except OSError as e:
        msg = f"Failed to read ledger {path}: {e}"
        raise LedgerError(msg, details={"path": str(path)}) from e

    if not isinstance(data, dict) or not isinstance(data.get("schema_version"), str):
        msg = f"Ledger {path} has no schema_version"
        raise LedgerError(msg, details={"path": str(path)})
    return data


def read_ledger(
    repo_root: Path,
    loader: ConfigLoader | None = None,
) -> tuple[Ledger | None, str | None]:
    """Read the ledger of a consuming repository.

    The schema version is checked before anything else in the file is
    interpreted.

    Returns:
        The ledger (None if the repository was never synced) and a
        compatibility warning, if any

    Raises:
        LedgerCompatibilityError: If the schema major version is unsupported
        LedgerError: If the file is unreadable or malformed
    """
    path = ledger_path(repo_root)
    if not path.exists():
        return None, None

    data = _load_raw(path)
    warning = ensure_compatible(data["schema_version"])

    try:
        (loader or ConfigLoader()).validate_against_schema(data, "ledger", path)
    except ConfigError as e:
        raise LedgerError(e.args[0], details=e.details) from e

    try:
        return Ledger.model_validate(data), warning
    except ValidationError as e:
        msg = f"Ledger {path} is malformed: {e}"
        raise LedgerError(msg, details={"path": str(path)}) from e


def build_ledger(outcome: SyncOutcome, marker_prefix: str, synced_at: datetime | None = None) -> Ledger:
    """Summarize a finished sync as a ledger record."""
    return Ledger(
        schema_version=SUPPORTED_SCHEMA_VERSION,
        pinned_version=outcome.pinned_version,
        synced_at=synced_at or datetime.now(UTC),
        source=outcome.source,
        content=LedgerContent(
            instructions=InstructionsSummary(
                global_block_hash=outcome.global_block_hash,
                merged=outcome.document.merged,
                rules_block_hash=outcome.rules_block_hash,
            ),
            skills=outcome.skills,
            rules=outcome.rules,
            agents=outcome.agents,
            targets=outcome.targets,
            marker_prefix=marker_prefix,
        ),
        tool_version=__version__,
    )


def write_ledger(repo_root: Path, ledger: Ledger) -> Path:
    """Write the ledger atomically.

    The file is written next to its destination and renamed into place, so
    readers never observe a partially written ledger.

    Raises:
        LedgerError: If the file cannot be written
    """
    path = ledger_path(repo_root)
    payload = json.dumps(ledger.model_dump(mode="json"), indent=2) + "\n"

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=".lock-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        msg = f"Failed to write ledger {path}: {e}"
        raise LedgerError(msg, details={"path": str(path)}) from e

    logger.info("Wrote ledger %s", path)
    return path
