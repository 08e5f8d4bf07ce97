"""Stack patcher: find or insert the owned line in a PAM stack file.

Patching runs in two phases. Every line is first classified as owned,
delegation (`@include common-auth`), auth-phase or other. The output is then
computed from the classified list by a pure function, so the insertion
policy can be tested without touching the filesystem.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .exceptions import (
    DuplicateOwnedLineError,
    InvariantError,
    NotFoundError,
    PatchError,
)
from .fs import atomic_write_text, read_text_verbatim, split_lines
from .models import (
    ClassifiedLine,
    LineKind,
    PatchAction,
    PatchResult,
    ScanResult,
    SnapshotHandle,
)
from .synthesizer import MODULE_REFERENCE

logger = logging.getLogger(__name__)

INCLUDE_DIRECTIVE = "@include"
DEFAULT_INCLUDE_MARKER = "common-auth"
AUTH_TYPES = ("auth", "-auth")
# stock /etc/pam.d mode; set stack_mode for a world-unreadable stack
DEFAULT_STACK_MODE = 0o644


def _references_module(field: str, module_reference: str) -> bool:
    return field == module_reference or field.endswith(f"/{module_reference}")


def classify_line(
    index: int,
    text: str,
    module_reference: str = MODULE_REFERENCE,
    include_marker: str = DEFAULT_INCLUDE_MARKER,
) -> ClassifiedLine:
    """Classify a single stack line.

    Blank lines and comments are always OTHER, so a commented-out module
    line is preserved and never treated as owned.
    """
    stripped = text.strip()
    kind = LineKind.OTHER
    if stripped and not stripped.startswith("#"):
        fields = stripped.split()
        if any(_references_module(field, module_reference) for field in fields):
            kind = LineKind.OWNED
        elif fields[0] == INCLUDE_DIRECTIVE and len(fields) > 1 and fields[1] == include_marker:
            kind = LineKind.DELEGATION
        elif fields[0] in AUTH_TYPES:
            kind = LineKind.AUTH
    return ClassifiedLine(index=index, text=text, kind=kind)


def classify(
    lines: list[str],
    module_reference: str = MODULE_REFERENCE,
    include_marker: str = DEFAULT_INCLUDE_MARKER,
) -> list[ClassifiedLine]:
    """Classify every line of a stack, keeping order."""
    classified = [
        classify_line(i, line, module_reference, include_marker)
        for i, line in enumerate(lines)
    ]
    for item in classified:
        logger.debug("line %d classified as %s", item.index + 1, item.kind.value)
    return classified


def scan(classified: list[ClassifiedLine]) -> ScanResult:
    """Locate every owned line."""
    return ScanResult(
        owned_indices=[c.index for c in classified if c.kind == LineKind.OWNED],
    )


def compose(
    classified: list[ClassifiedLine],
    new_line: str,
    prune_duplicates: bool = False,
) -> tuple[list[str], PatchAction, int, list[int]]:
    """Compute the patched stack from a classified one.

    Args:
        classified: Output of `classify`
        new_line: Owned line to place
        prune_duplicates: Drop owned lines after the first instead of failing

    Returns:
        Tuple of (output lines, action taken, index of the owned line,
        indices of removed duplicates in the input)

    Raises:
        DuplicateOwnedLineError: If more than one owned line exists and
            `prune_duplicates` is false
    """
    texts = [c.text for c in classified]
    result = scan(classified)

    if result.index is not None:
        if result.duplicates and not prune_duplicates:
            numbers = [i + 1 for i in result.owned_indices]
            msg = (
                f"Found {len(numbers)} owned lines (lines {numbers}); "
                "refusing to guess which one is canonical"
            )
            raise DuplicateOwnedLineError(msg, details={"lines": numbers})

        dropped = set(result.duplicates)
        output: list[str] = []
        for i, text in enumerate(texts):
            if i == result.index:
                output.append(new_line)
            elif i not in dropped:
                output.append(text)
        return output, PatchAction.REPLACED, result.index, result.duplicates

    for item in classified:
        if item.kind == LineKind.DELEGATION:
            output = [*texts[: item.index], new_line, *texts[item.index :]]
            return output, PatchAction.INSERTED_BEFORE_INCLUDE, item.index, []

    for item in classified:
        if item.kind == LineKind.AUTH:
            position = item.index + 1
            output = [*texts[:position], new_line, *texts[position:]]
            return output, PatchAction.INSERTED_AFTER_AUTH, position, []

    return [*texts, new_line], PatchAction.APPENDED, len(texts), []


class StackPatcher:
    """Rewrites a stack file so it holds exactly one owned line."""

    def __init__(
        self,
        module_reference: str = MODULE_REFERENCE,
        include_marker: str = DEFAULT_INCLUDE_MARKER,
        mode: int = DEFAULT_STACK_MODE,
    ) -> None:
        """Initialize the patcher.

        Args:
            module_reference: Token identifying the owned line
            include_marker: Target of the `@include` line to insert before
            mode: Permission bits applied after every write
        """
        self.module_reference = module_reference
        self.include_marker = include_marker
        self.mode = mode

    def read_lines(self, path: Path) -> tuple[str, list[str]]:
        """Read a stack file.

        Raises:
            NotFoundError: If the file does not exist
            PatchError: If it cannot be read
        """
        try:
            content = read_text_verbatim(path)
        except FileNotFoundError as e:
            msg = f"Stack file not found: {path}"
            raise NotFoundError(msg, details={"path": str(path)}) from e
        except (OSError, UnicodeDecodeError) as e:
            msg = f"Failed to read stack file {path}: {e}"
            raise PatchError(msg, details={"path": str(path)}) from e
        return content, split_lines(content)

    def inspect(self, path: Path) -> ScanResult:
        """Scan a stack file without modifying it."""
        _, lines = self.read_lines(Path(path))
        return scan(classify(lines, self.module_reference, self.include_marker))

    def patch(
        self,
        path: Path,
        new_line: str,
        snapshot: SnapshotHandle | None = None,
        prune_duplicates: bool = False,
    ) -> PatchResult:
        """Replace or insert the owned line and write the file atomically.

        Must only be called after a successful snapshot of `path`.

        Args:
            path: Stack file to patch
            new_line: Synthesized owned line
            snapshot: Snapshot taken beforehand, reported in errors
            prune_duplicates: Remove owned lines after the first

        Returns:
            Summary of what changed

        Raises:
            NotFoundError: If the stack file does not exist
            InvariantError: If the composed stack is unusable
            PatchError: If writing fails; the original file is intact
        """
        path = Path(path)
        details: dict[str, Any] = {"path": str(path)}
        if snapshot is not None:
            details["snapshot"] = str(snapshot.path)

        owned = classify_line(0, new_line, self.module_reference, self.include_marker)
        if "\n" in new_line or owned.kind != LineKind.OWNED:
            msg = f"Refusing to write a line that is not an owned {self.module_reference} line"
            raise InvariantError(msg, details={**details, "line": new_line})

        content, lines = self.read_lines(path)
        classified = classify(lines, self.module_reference, self.include_marker)
        try:
            output, action, index, removed = compose(classified, new_line, prune_duplicates)
        except DuplicateOwnedLineError as e:
            e.details.update(details)
            raise

        if removed:
            logger.warning(
                "Removed duplicate %s lines %s from %s",
                self.module_reference,
                [i + 1 for i in removed],
                path,
            )

        text = "\n".join(output) + "\n" if output else ""
        if not text.strip():
            msg = f"Composed stack for {path} is empty; not writing"
            raise InvariantError(msg, details=details)

        check = scan(classify(output, self.module_reference, self.include_marker))
        if len(check.owned_indices) != 1:
            msg = f"Composed stack for {path} has {len(check.owned_indices)} owned lines"
            raise InvariantError(msg, details=details)

        changed = text != content
        try:
            if changed:
                atomic_write_text(path, text, self.mode)
            else:
                path.chmod(self.mode)
        except OSError as e:
            msg = f"Failed to write stack file {path}: {e}"
            raise PatchError(msg, details=details) from e

        logger.info("Owned line %s at line %d of %s", action.value, index + 1, path)
        return PatchResult(
            path=path,
            action=action,
            index=check.owned_indices[0],
            changed=changed,
            removed_duplicates=removed,
        )
