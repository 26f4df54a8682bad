"""Resolve a source specifier into a read-only canonical snapshot.

Local sources are used in place. Remote sources are shallow-cloned into a
temporary directory that exists only for the duration of the
:func:`resolve_source` context::

    with resolve_source(SourceSpec.remote("acme/agent-standards")) as source:
        run_sync(source)
    # the clone is gone here, whether the sync succeeded or not
"""

from __future__ import annotations

import fnmatch
import logging
import re
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.cmd import Git

from .config import ConfigLoader
from .exceptions import ConfigError, SourceResolutionError, SourceValidationError
from .models import CanonicalConfig, ResolvedSource, SourceKind, SourceSpec

logger = logging.getLogger(__name__)

SIBLING_PATTERNS = ("agentsync", "agent-conf", "*-agent-conf", "*agent-standards", "*-agents")
GIT_TIMEOUT_SECONDS = 120
GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_HTTP_LOW_SPEED_LIMIT": "1000",
    "GIT_HTTP_LOW_SPEED_TIME": "30",
}

_SHORTHAND_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_TAG_VERSION_PATTERN = re.compile(
    r"^v?(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)(?:-(?P<pre>[0-9A-Za-z.-]+))?$",
)


def repository_url(repository: str) -> str:
    """Turn ``owner/repo`` shorthand into a GitHub URL; pass URLs through.

    Raises:
        SourceResolutionError: If the value is neither a URL nor shorthand
    """
    if "://" in repository or repository.startswith("git@"):
        return repository
    if _SHORTHAND_PATTERN.match(repository):
        return f"https://github.com/{repository}.git"
    msg = f"Invalid repository '{repository}'. Use owner/repo or a git URL"
    raise SourceResolutionError(msg, details={"repository": repository})


def version_from_ref(ref: str) -> str | None:
    """Return the semantic version a tag-like ref names, without the ``v``."""
    match = _TAG_VERSION_PATTERN.match(ref)
    if not match:
        return None
    return ref[1:] if ref.startswith("v") else ref


def _version_key(match: re.Match[str]) -> tuple[int, int, int, int, str]:
    pre = match.group("pre")
    # A release sorts after any of its pre-releases.
    return (
        int(match.group("major")),
        int(match.group("minor")),
        int(match.group("patch")),
        0 if pre else 1,
        pre or "",
    )


def select_latest_tag(tags: list[str]) -> str | None:
    """Pick the highest semantic-version tag, ignoring non-version tags."""
    versioned = []
    for tag in tags:
        match = _TAG_VERSION_PATTERN.match(tag)
        if match:
            versioned.append((tag, match))
    if not versioned:
        return None
    latest, _ = max(versioned, key=lambda entry: _version_key(entry[1]))
    return latest


def latest_release_tag(url: str) -> str:
    """Find the latest release tag of a remote repository.

    Raises:
        SourceResolutionError: If the remote cannot be listed or has no
            version tags
    """
    try:
        output = Git().ls_remote(
            "--tags", url, env=GIT_ENV, kill_after_timeout=GIT_TIMEOUT_SECONDS,
        )
    except GitCommandError as e:
        msg = f"Failed to list tags of {url}: {(e.stderr or '').strip() or e}"
        raise SourceResolutionError(msg, details={"url": url}) from e

    tags = []
    for line in output.splitlines():
        _, _, ref = line.partition("\t")
        if ref.startswith("refs/tags/"):
            tags.append(ref.removeprefix("refs/tags/").removesuffix("^{}"))

    latest = select_latest_tag(tags)
    if latest is None:
        msg = f"No release tags found in {url}. Pass --ref to choose a branch or tag"
        raise SourceResolutionError(msg, details={"url": url})
    return latest


def _has_required_paths(directory: Path, config: CanonicalConfig) -> bool:
    return (
        (directory / config.content.instructions).is_file()
        and (directory / config.content.skills_dir).is_dir()
    )


def is_canonical_source(directory: Path, loader: ConfigLoader | None = None) -> bool:
    """Check whether a directory looks like a canonical source."""
    if not directory.is_dir():
        return False
    try:
        config = (loader or ConfigLoader()).load_canonical(directory)
    except ConfigError:
        return False
    return _has_required_paths(directory, config)


def discover_local_source(start: Path, loader: ConfigLoader | None = None) -> Path:
    """Locate a canonical source near ``start``.

    Ancestors are checked first (the current directory is inside the
    canonical source), then sibling directories with a likely name at each
    level going up.

    Raises:
        SourceResolutionError: If nothing is found
    """
    loader = loader or ConfigLoader()
    start = start.resolve()
    ancestors = [start, *start.parents]

    for directory in ancestors:
        if is_canonical_source(directory, loader):
            logger.debug("Found canonical source at %s", directory)
            return directory

    for directory in ancestors:
        parent = directory.parent
        if parent == directory:
            break
        try:
            siblings = sorted(p for p in parent.iterdir() if p.is_dir() and p != directory)
        except OSError:
            continue
        for sibling in siblings:
            if any(fnmatch.fnmatch(sibling.name, pattern) for pattern in SIBLING_PATTERNS):
                if is_canonical_source(sibling, loader):
                    logger.debug("Found sibling canonical source at %s", sibling)
                    return sibling

    msg = (
        "Could not find a canonical source. Pass --source <path> or --repo <owner/repo>, "
        "or run from inside the canonical repository"
    )
    raise SourceResolutionError(msg, details={"start": str(start)})


def local_commit(path: Path) -> str | None:
    """HEAD commit of the work tree containing ``path``, if any."""
    try:
        return Repo(path, search_parent_directories=True).head.commit.hexsha
    except (InvalidGitRepositoryError, NoSuchPathError, ValueError):
        return None


def build_resolved_source(
    base_path: Path,
    kind: SourceKind,
    loader: ConfigLoader | None = None,
    **origin: str | None,
) -> ResolvedSource:
    """Validate a canonical source directory and describe it.

    Raises:
        ConfigError: If ``agentsync.yaml`` is invalid
        SourceValidationError: If the instructions file or skills directory
            is missing
    """
    config = (loader or ConfigLoader()).load_canonical(base_path)

    instructions = base_path / config.content.instructions
    if not instructions.is_file():
        msg = f"Canonical source is missing its instructions file: {config.content.instructions}"
        raise SourceValidationError(msg, details={"path": str(instructions)})

    skills = base_path / config.content.skills_dir
    if not skills.is_dir():
        msg = f"Canonical source is missing its skills directory: {config.content.skills_dir}"
        raise SourceValidationError(msg, details={"path": str(skills)})

    def optional_dir(relative: str | None) -> Path | None:
        if relative is None:
            return None
        candidate = base_path / relative
        if not candidate.is_dir():
            logger.debug("Configured directory %s does not exist; skipping", relative)
            return None
        return candidate

    return ResolvedSource(
        kind=kind,
        base_path=base_path,
        instructions_path=instructions,
        skills_path=skills,
        rules_path=optional_dir(config.content.rules_dir),
        agents_path=optional_dir(config.content.agents_dir),
        marker_prefix=config.markers.prefix,
        config=config,
        **origin,
    )


def _clone(url: str, ref: str, destination: Path) -> str:
    try:
        repo = Repo.clone_from(url, destination, depth=1, branch=ref, env=GIT_ENV)
    except GitCommandError as e:
        stderr = (e.stderr or "").strip()
        msg = f"Failed to clone {url} at '{ref}': {stderr or e}"
        raise SourceResolutionError(msg, details={"url": url, "ref": ref}) from e
    return repo.head.commit.hexsha


@contextmanager
def resolve_source(
    spec: SourceSpec,
    cwd: Path | None = None,
    loader: ConfigLoader | None = None,
) -> Iterator[ResolvedSource]:
    """Resolve a specifier into a snapshot valid inside the ``with`` block.

    Args:
        spec: Local path (or auto-discovery) or remote repository and ref
        cwd: Directory auto-discovery starts from
        loader: Config loader to reuse

    Yields:
        The validated snapshot

    Raises:
        SourceResolutionError: If the source cannot be located or fetched
        SourceValidationError: If required paths are missing
        ConfigError: If the canonical config is invalid
    """
    loader = loader or ConfigLoader()

    if spec.kind is SourceKind.LOCAL:
        if spec.path is not None:
            base = (cwd or Path.cwd()) / spec.path if not spec.path.is_absolute() else spec.path
            base = base.resolve()
            if not base.is_dir():
                msg = f"Source path does not exist: {base}"
                raise SourceResolutionError(msg, details={"path": str(base)})
        else:
            base = discover_local_source(cwd or Path.cwd(), loader)

        commit = local_commit(base)
        logger.info("Using local source %s", base)
        yield build_resolved_source(
            base,
            SourceKind.LOCAL,
            loader,
            path=str(base),
            commit=commit,
            pinned_version=commit,
        )
        return

    if not spec.repository:
        msg = "A remote source needs a repository"
        raise SourceResolutionError(msg)

    url = repository_url(spec.repository)
    ref = spec.ref or latest_release_tag(url)
    temp_dir = Path(tempfile.mkdtemp(prefix="agentsync-"))
    try:
        logger.info("Cloning %s at %s", spec.repository, ref)
        commit = _clone(url, ref, temp_dir / "source")
        yield build_resolved_source(
            temp_dir / "source",
            SourceKind.REMOTE,
            loader,
            repository=spec.repository,
            ref=ref,
            commit=commit,
            pinned_version=version_from_ref(ref) or commit,
        )
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)
