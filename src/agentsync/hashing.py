"""Canonical content hash used by items, managed blocks and the ledger."""

from __future__ import annotations

import hashlib
import re

HASH_PREFIX = "sha256:"
HASH_LENGTH = 12
HASH_PATTERN = re.compile(r"^sha256:[0-9a-f]{12}$")


def content_hash(text: str) -> str:
    """Return ``sha256:`` plus the first 12 hex characters of the digest."""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return f"{HASH_PREFIX}{digest[:HASH_LENGTH]}"


def aggregate_hash(entries: list[tuple[str, str]]) -> str:
    """Hash a set of ``(relative_path, body)`` pairs independent of input order.

    Returns an empty string for an empty set so the ledger can omit it.
    """
    if not entries:
        return ""
    combined = "\n---\n".join(f"{path}:{body}" for path, body in sorted(entries))
    return content_hash(combined)
