"""Mapping store merger: one `identity:record` line per identity."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .exceptions import MergeError, ValidationError
from .fs import atomic_write_text, read_text_verbatim, split_lines
from .models import CredentialRecord, MergeResult

logger = logging.getLogger(__name__)

DEFAULT_MAPPING_MODE = 0o640


def identity_of(line: str) -> str | None:
    """Identity prefix of a stored line, or None for blank lines."""
    if not line.strip():
        return None
    return line.split(":", 1)[0]


class MappingStore:
    """Maintains the credential mapping file referenced by the owned line."""

    def __init__(
        self,
        path: Path,
        mode: int = DEFAULT_MAPPING_MODE,
        owner: int | None = 0,
        group: int | None = 0,
    ) -> None:
        """Initialize the store.

        Args:
            path: Mapping file location
            mode: Permission bits enforced after every write
            owner: uid to chown to (None leaves it alone)
            group: gid to chown to (None leaves it alone)
        """
        self.path = Path(path)
        self.mode = mode
        self.owner = owner
        self.group = group

    def read_lines(self) -> list[str]:
        """Return the stored lines; a missing file is an empty store."""
        try:
            return split_lines(read_text_verbatim(self.path))
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            msg = f"Failed to read mapping store {self.path}: {e}"
            raise MergeError(msg, details={"path": str(self.path)}) from e

    def identities(self) -> list[str]:
        """Identities with a stored record, in file order."""
        return [i for i in (identity_of(line) for line in self.read_lines()) if i]

    def merge(self, identity: str, record: CredentialRecord) -> MergeResult:
        """Store `record` as the only line for `identity`.

        Every other identity's line is kept verbatim. The write goes through
        a temp file and rename so a failure never loses or duplicates a line.

        Raises:
            ValidationError: If the record belongs to a different identity
            MergeError: If the store cannot be read or written
        """
        if record.identity != identity:
            msg = f"Credential record is for '{record.identity}', not '{identity}'"
            raise ValidationError(msg, details={"identity": identity, "path": str(self.path)})

        existing = self.read_lines()
        kept = [line for line in existing if line.strip() and identity_of(line) != identity]
        replaced = len(kept) != len([line for line in existing if line.strip()])
        kept.append(record.to_line())

        details = {"path": str(self.path), "identity": identity}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_text(self.path, "\n".join(kept) + "\n", self.mode)
        except OSError as e:
            msg = f"Failed to write mapping store {self.path}: {e}"
            raise MergeError(msg, details=details) from e

        enforced = self._enforce_ownership()
        logger.info(
            "%s record for %s in %s",
            "Replaced" if replaced else "Added",
            identity,
            self.path,
        )
        return MergeResult(
            path=self.path,
            identity=identity,
            replaced=replaced,
            ownership_enforced=enforced,
        )

    def _enforce_ownership(self) -> bool:
        if self.owner is None and self.group is None:
            return False
        if os.geteuid() != 0:
            logger.warning(
                "Not running as root; ownership of %s left unchanged",
                self.path,
            )
            return False
        try:
            os.chown(
                self.path,
                -1 if self.owner is None else self.owner,
                -1 if self.group is None else self.group,
            )
        except OSError as e:
            msg = f"Failed to set ownership of {self.path}: {e}"
            raise MergeError(msg, details={"path": str(self.path)}) from e
        return True


def merge(path: Path, identity: str, record: CredentialRecord) -> MergeResult:
    """Merge a record into the store at `path` with default permissions."""
    return MappingStore(path).merge(identity, record)
