"""Core data models for the KeySudo configuration engine."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ValidationError

DEFAULT_MAPPING_STORE = Path("/etc/u2f_mappings")
DEFAULT_STACK_FILE = Path("/etc/pam.d/sudo")

# identity, then a colon, then a non-empty payload
RECORD_PATTERN = re.compile(r"^(?P<identity>[^:\s]+):(?P<payload>\S.*)$")


class AuthMode(str, Enum):
    """Authentication policy modes."""

    PASSWORDLESS = "passwordless"
    TWO_FACTOR = "2fa"

    @property
    def control(self) -> str:
        """PAM control token for this mode."""
        if self is AuthMode.PASSWORDLESS:
            return "sufficient"
        return "required"

    @classmethod
    def from_value(cls, value: str | AuthMode) -> AuthMode:
        """Convert user input to a mode, accepting a few common spellings.

        Raises:
            ValidationError: If the value names no known mode
        """
        if isinstance(value, AuthMode):
            return value
        normalized = value.strip().lower()
        aliases = {
            "passwordless": cls.PASSWORDLESS,
            "2fa": cls.TWO_FACTOR,
            "two-factor": cls.TWO_FACTOR,
            "twofactor": cls.TWO_FACTOR,
        }
        if normalized not in aliases:
            msg = f"Invalid mode: {value!r} (must be 'passwordless' or '2fa')"
            raise ValidationError(msg, details={"mode": value})
        return aliases[normalized]


class PolicyConfig(BaseModel):
    """The desired authentication policy. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    mode: AuthMode = Field(..., description="Passwordless or two-factor")
    prompt_cue: bool = Field(
        default=True,
        description="Ask the module to print a touch prompt",
    )
    mapping_store_path: Path = Field(
        default=DEFAULT_MAPPING_STORE,
        description="Absolute path of the credential mapping file",
    )
    origin_identifier: str = Field(
        ...,
        description="Host-scoped origin, e.g. pam://host1",
    )

    @field_validator("mapping_store_path")
    @classmethod
    def validate_absolute(cls, v: Path) -> Path:
        """The module resolves authfile without a working directory."""
        if not v.is_absolute():
            msg = "Mapping store path must be absolute"
            raise ValueError(msg)
        return v

    @field_validator("origin_identifier")
    @classmethod
    def validate_origin(cls, v: str) -> str:
        """Origins end up as a single whitespace-free option token."""
        if not v or any(ch.isspace() for ch in v):
            msg = "Origin identifier must be non-empty and contain no whitespace"
            raise ValueError(msg)
        return v


class CredentialRecord(BaseModel):
    """One `identity:payload` line of the mapping store."""

    model_config = ConfigDict(frozen=True)

    identity: str
    payload: str

    @classmethod
    def parse(cls, raw: str) -> CredentialRecord:
        """Parse the output of the registration tool.

        Only the shape is checked; the payload is opaque.

        Raises:
            ValidationError: If the text is not `identity:non-empty-payload`
        """
        text = raw.strip()
        match = RECORD_PATTERN.match(text)
        if match is None or "\n" in text:
            msg = "Invalid credential record, expected 'identity:payload'"
            raise ValidationError(msg, details={"record": raw})
        return cls(identity=match.group("identity"), payload=match.group("payload"))

    def to_line(self) -> str:
        """Render the record as it is stored."""
        return f"{self.identity}:{self.payload}"


class SnapshotHandle(BaseModel):
    """An immutable copy of a stack file taken before mutation."""

    model_config = ConfigDict(frozen=True)

    source: Path
    path: Path
    timestamp: datetime
    mode: int = Field(..., description="Permission bits copied from the source")


class LineKind(str, Enum):
    """Classification of a stack file line."""

    OWNED = "owned"
    DELEGATION = "delegation"
    AUTH = "auth"
    OTHER = "other"


class ClassifiedLine(BaseModel):
    """A stack line with its position and classification."""

    index: int
    text: str
    kind: LineKind


class ScanState(str, Enum):
    """Outcome of looking for the owned line."""

    NOT_FOUND = "not_found"
    FOUND_AT = "found_at"


class ScanResult(BaseModel):
    """Positions of every owned line in a classified stack."""

    owned_indices: list[int] = Field(default_factory=list)

    @property
    def state(self) -> ScanState:
        """NOT_FOUND or FOUND_AT."""
        return ScanState.FOUND_AT if self.owned_indices else ScanState.NOT_FOUND

    @property
    def index(self) -> int | None:
        """Index of the canonical (first) owned line."""
        return self.owned_indices[0] if self.owned_indices else None

    @property
    def duplicates(self) -> list[int]:
        """Indices of owned lines after the first one."""
        return self.owned_indices[1:]


class PatchAction(str, Enum):
    """What the patcher did to the stack."""

    REPLACED = "replaced"
    INSERTED_BEFORE_INCLUDE = "inserted_before_include"
    INSERTED_AFTER_AUTH = "inserted_after_auth"
    APPENDED = "appended"


class PatchResult(BaseModel):
    """Summary of a stack patch."""

    path: Path
    action: PatchAction
    index: int = Field(..., description="Zero-based index of the owned line")
    changed: bool = Field(..., description="Whether the content differs from before")
    removed_duplicates: list[int] = Field(default_factory=list)


class MergeResult(BaseModel):
    """Summary of a mapping store merge."""

    path: Path
    identity: str
    replaced: bool = Field(..., description="A prior record for the identity existed")
    ownership_enforced: bool


class ApplyResult(BaseModel):
    """Outcome of the full merge, snapshot and patch sequence."""

    policy: PolicyConfig
    line: str
    merge: MergeResult
    snapshot: SnapshotHandle
    patch: PatchResult
