"""Configuration loader with schema validation."""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from pydantic import BaseModel, ValidationError

from .exceptions import ConfigError
from .models import CanonicalConfig, DownstreamConfig

CANONICAL_CONFIG_FILE = "agentsync.yaml"
DOWNSTREAM_DIR = ".agentsync"
DOWNSTREAM_CONFIG_FILE = "config.yaml"


class ConfigLoader:
    """Loads and validates canonical and downstream configuration files."""

    def __init__(self) -> None:
        self._schema_cache: dict[str, dict[str, Any]] = {}

    def load_schema(self, schema_name: str) -> dict[str, Any]:
        """Load and cache a bundled JSON schema."""
        if schema_name not in self._schema_cache:
            schema_file = resources.files("agentsync") / "schemas" / f"{schema_name}.schema.json"
            try:
                self._schema_cache[schema_name] = json.loads(schema_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                msg = f"Failed to load schema {schema_name}: {e}"
                raise ConfigError(msg) from e

        return self._schema_cache[schema_name]

    def validate_against_schema(self, data: Any, schema_name: str, source: Path | None = None) -> None:
        """Validate parsed data against a bundled JSON schema.

        Raises:
            ConfigError: If the data does not satisfy the schema
        """
        schema = self.load_schema(schema_name)

        try:
            jsonschema.validate(data, schema)
        except jsonschema.ValidationError as e:
            location = "/".join(str(part) for part in e.absolute_path) or "<root>"
            msg = f"Schema validation failed at {location}: {e.message}"
            raise ConfigError(
                msg,
                details={
                    "path": list(e.absolute_path),
                    "schema": schema_name,
                    "file": str(source) if source else None,
                },
            ) from e

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        try:
            with path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"Failed to parse {path.name}: {e}"
            raise ConfigError(msg, details={"file": str(path)}) from e
        except OSError as e:
            msg = f"Failed to read {path}: {e}"
            raise ConfigError(msg, details={"file": str(path)}) from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            msg = f"{path.name} must contain a mapping at the top level"
            raise ConfigError(msg, details={"file": str(path)})
        return data

    def _load(self, path: Path, schema_name: str, model: type[BaseModel]) -> Any:
        data = self._read_yaml(path)
        self.validate_against_schema(data, schema_name, path)

        try:
            return model.model_validate(data)
        except ValidationError as e:
            msg = f"Invalid {path.name}: {e}"
            raise ConfigError(msg, details={"file": str(path)}) from e

    def load_canonical(self, source_root: Path) -> CanonicalConfig:
        """Load ``agentsync.yaml`` from a canonical source root.

        Args:
            source_root: Root directory of the canonical source

        Returns:
            Validated config; defaults when the file does not exist

        Raises:
            ConfigError: If the file is unreadable or invalid
        """
        path = source_root / CANONICAL_CONFIG_FILE
        if not path.exists():
            return CanonicalConfig()
        return self._load(path, "canonical", CanonicalConfig)

    def load_downstream(self, repo_root: Path) -> DownstreamConfig | None:
        """Load ``.agentsync/config.yaml`` from a consuming repository.

        Returns:
            Validated config, or None when the repository has none

        Raises:
            ConfigError: If the file is unreadable or invalid
        """
        path = repo_root / DOWNSTREAM_DIR / DOWNSTREAM_CONFIG_FILE
        if not path.exists():
            return None
        return self._load(path, "downstream", DownstreamConfig)


def dump_canonical(config: CanonicalConfig) -> str:
    """Render a canonical config as YAML."""
    data = config.model_dump(mode="json", exclude_none=True)
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
