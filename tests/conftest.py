"""Shared fixtures for building canonical sources and consuming repositories."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

SKILL_TEXT = """\
---
name: {name}
description: {name} skill
---

# {name}

Use this skill for {name} work.
"""

RULE_TEXT = """\
---
paths: ["src/**/*.ts"]
---

# TypeScript Style

Prefer `const` over `let`.
"""

AGENT_TEXT = """\
---
name: reviewer
description: Reviews pull requests
---

You review code carefully.
"""

INSTRUCTIONS_TEXT = """\
# Company Standards

Always write tests.
"""


def write_canonical(
    root: Path,
    skills: list[str] | None = None,
    rules: dict[str, str] | None = None,
    agents: dict[str, str] | None = None,
    instructions: str = INSTRUCTIONS_TEXT,
    config: dict | None = None,
) -> Path:
    """Create a canonical source tree under ``root``."""
    root.mkdir(parents=True, exist_ok=True)
    data = config if config is not None else {
        "version": "1.0.0",
        "meta": {"name": "test-standards"},
        "content": {
            "instructions": "instructions/AGENTS.md",
            "skills_dir": "skills",
            "rules_dir": "rules",
            "agents_dir": "agents",
        },
    }
    (root / "agentsync.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")

    (root / "instructions").mkdir(exist_ok=True)
    (root / "instructions" / "AGENTS.md").write_text(instructions, encoding="utf-8")

    (root / "skills").mkdir(exist_ok=True)
    for name in skills if skills is not None else ["code-review"]:
        skill_dir = root / "skills" / name
        skill_dir.mkdir(parents=True, exist_ok=True)
        (skill_dir / "SKILL.md").write_text(SKILL_TEXT.format(name=name), encoding="utf-8")

    (root / "rules").mkdir(exist_ok=True)
    for relative, text in (rules if rules is not None else {"style/typescript.md": RULE_TEXT}).items():
        path = root / "rules" / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    (root / "agents").mkdir(exist_ok=True)
    for relative, text in (agents if agents is not None else {"reviewer.md": AGENT_TEXT}).items():
        (root / "agents" / relative).write_text(text, encoding="utf-8")

    return root


@pytest.fixture
def make_canonical(tmp_path: Path) -> Callable[..., Path]:
    """Factory for canonical source trees inside the test's temp directory."""

    def factory(name: str = "canonical", **kwargs) -> Path:
        return write_canonical(tmp_path / name, **kwargs)

    return factory


@pytest.fixture
def canonical(make_canonical: Callable[..., Path]) -> Path:
    """A canonical source with one skill, one rule and one agent."""
    return make_canonical()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """An empty consuming repository."""
    path = tmp_path / "consumer"
    path.mkdir()
    return path
