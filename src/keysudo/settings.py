"""Engine settings with YAML loading and schema validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import jsonschema
import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ConfigError
from .host import DEFAULT_ORIGIN_SCHEME
from .mapping import DEFAULT_MAPPING_MODE
from .models import DEFAULT_MAPPING_STORE, DEFAULT_STACK_FILE
from .patcher import DEFAULT_INCLUDE_MARKER, DEFAULT_STACK_MODE
from .synthesizer import MODULE_REFERENCE

_MODE_SCHEMA = {
    "oneOf": [
        {"type": "integer", "minimum": 0, "maximum": 0o7777},
        {"type": "string", "pattern": "^(0o?)?[0-7]{3,4}$"},
    ],
}

SETTINGS_SCHEMA: dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "KeySudo Settings",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "stack_file": {"type": "string", "minLength": 1},
        "mapping_store": {"type": "string", "minLength": 1},
        "module_reference": {"type": "string", "minLength": 1},
        "include_marker": {"type": "string", "minLength": 1},
        "stack_mode": _MODE_SCHEMA,
        "mapping_mode": _MODE_SCHEMA,
        "mapping_owner": {"type": ["integer", "null"], "minimum": 0},
        "mapping_group": {"type": ["integer", "null"], "minimum": 0},
        "unique_snapshots": {"type": "boolean"},
        "prune_duplicates": {"type": "boolean"},
        "origin_scheme": {"type": "string", "minLength": 1},
    },
}


class KeySudoSettings(BaseModel):
    """Tunables for the configuration engine."""

    stack_file: Path = Field(default=DEFAULT_STACK_FILE, description="PAM stack file")
    mapping_store: Path = Field(
        default=DEFAULT_MAPPING_STORE,
        description="Credential mapping file",
    )
    module_reference: str = Field(default=MODULE_REFERENCE)
    include_marker: str = Field(default=DEFAULT_INCLUDE_MARKER)
    stack_mode: int = Field(default=DEFAULT_STACK_MODE)
    mapping_mode: int = Field(default=DEFAULT_MAPPING_MODE)
    mapping_owner: int | None = Field(default=0, description="uid, None to skip chown")
    mapping_group: int | None = Field(default=0, description="gid, None to skip chown")
    unique_snapshots: bool = Field(
        default=False,
        description="Disambiguate snapshots taken within the same second",
    )
    prune_duplicates: bool = Field(
        default=False,
        description="Remove extra owned lines instead of failing",
    )
    origin_scheme: str = Field(default=DEFAULT_ORIGIN_SCHEME)

    @field_validator("stack_mode", "mapping_mode", mode="before")
    @classmethod
    def parse_octal(cls, v: Any) -> Any:
        """Accept '0640' or '0o640' as well as integers."""
        if isinstance(v, str):
            return int(v.removeprefix("0o"), 8)
        return v


def load_settings(path: Path | None = None) -> KeySudoSettings:
    """Load settings from a YAML file, or return defaults.

    Args:
        path: YAML settings file, None for defaults

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    if path is None:
        return KeySudoSettings()

    path = Path(path)
    if not path.exists():
        msg = f"Settings file not found: {path}"
        raise ConfigError(msg, details={"path": str(path)})

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        msg = f"Failed to parse settings YAML: {e}"
        raise ConfigError(msg, details={"path": str(path)}) from e
    except OSError as e:
        msg = f"Failed to read settings file: {e}"
        raise ConfigError(msg, details={"path": str(path)}) from e

    try:
        jsonschema.validate(data, SETTINGS_SCHEMA)
    except jsonschema.ValidationError as e:
        msg = f"Settings validation failed: {e.message}"
        raise ConfigError(
            msg,
            details={"path": str(path), "field": list(e.absolute_path)},
        ) from e

    try:
        return KeySudoSettings.model_validate(data)
    except PydanticValidationError as e:
        msg = f"Settings validation failed: {e}"
        raise ConfigError(msg, details={"path": str(path)}) from e
