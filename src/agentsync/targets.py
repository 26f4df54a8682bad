"""Capability profiles for downstream AI tools."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import ConfigError
from .models import ContentClass

DEFAULT_TARGETS = ["claude"]


class ContentModel(str, Enum):
    """How a tool consumes auxiliary content."""

    STRUCTURED = "structured"  # reads a directory of discrete files
    MONOLITHIC = "monolithic"  # reads only the single instructions document


class TargetProfile(BaseModel):
    """One downstream consumer and where each content class lands for it."""

    model_config = ConfigDict(frozen=True)

    name: str
    content_model: ContentModel
    class_dirs: dict[ContentClass, str] = Field(
        default_factory=dict,
        description="Content classes written as files, mapped to repo-relative directories",
    )

    @property
    def concatenates_rules(self) -> bool:
        """Monolithic tools receive rules as a block of the managed document."""
        return self.content_model is ContentModel.MONOLITHIC

    def output_dir(self, repo_root: Path, content_class: ContentClass) -> Path | None:
        """Directory a content class is written to, or None if not file-based here."""
        relative = self.class_dirs.get(content_class)
        return repo_root / relative if relative is not None else None

    def supports(self, content_class: ContentClass) -> bool:
        """Whether this tool can receive the content class in any form."""
        if content_class in self.class_dirs:
            return True
        return content_class is ContentClass.RULE and self.concatenates_rules


BUILTIN_TARGETS: dict[str, TargetProfile] = {
    "claude": TargetProfile(
        name="claude",
        content_model=ContentModel.STRUCTURED,
        class_dirs={
            ContentClass.SKILL: ".claude/skills",
            ContentClass.RULE: ".claude/rules",
            ContentClass.AGENT: ".claude/agents",
        },
    ),
    "codex": TargetProfile(
        name="codex",
        content_model=ContentModel.MONOLITHIC,
        class_dirs={ContentClass.SKILL: ".codex/skills"},
    ),
}


def get_target(name: str) -> TargetProfile:
    """Look up a built-in target profile by name.

    Raises:
        ConfigError: If the name is not a known target
    """
    try:
        return BUILTIN_TARGETS[name]
    except KeyError:
        supported = ", ".join(sorted(BUILTIN_TARGETS))
        msg = f'Invalid target "{name}". Supported targets: {supported}'
        raise ConfigError(msg, details={"target": name}) from None


def parse_target_names(values: list[str] | None) -> list[str]:
    """Normalize repeated and comma-separated target names.

    Defaults to ``claude`` when nothing is given.
    """
    names: list[str] = []
    for value in values or []:
        for part in value.split(","):
            name = part.strip().lower()
            if not name:
                continue
            get_target(name)
            if name not in names:
                names.append(name)
    return names or list(DEFAULT_TARGETS)
