"""Timestamped, permission-preserving snapshots of stack files."""

from __future__ import annotations

import logging
import os
import re
import shutil
import stat
from datetime import datetime
from pathlib import Path
from typing import Callable

from .exceptions import NotFoundError, SnapshotError
from .models import SnapshotHandle

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
SNAPSHOT_INFIX = ".bak."


class SnapshotManager:
    """Creates and lists backups of a file before it is mutated.

    Snapshots are written next to the source as
    `<name>.bak.<YYYYMMDD_HHMMSS>`. Two snapshots within the same second
    share a name and the later one overwrites the earlier, unless the
    manager is created with `unique=True`, which appends `.1`, `.2`, ...
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = datetime.now,
        unique: bool = False,
    ) -> None:
        """Initialize the manager.

        Args:
            clock: Source of the capture time
            unique: Disambiguate snapshots taken within the same second
        """
        self.clock = clock
        self.unique = unique

    def snapshot_path_for(self, path: Path, timestamp: datetime) -> Path:
        """Return the snapshot name for `path` at `timestamp`."""
        base = path.with_name(f"{path.name}{SNAPSHOT_INFIX}{timestamp.strftime(TIMESTAMP_FORMAT)}")
        if not self.unique or not base.exists():
            return base

        counter = 1
        while True:
            candidate = base.with_name(f"{base.name}.{counter}")
            if not candidate.exists():
                return candidate
            counter += 1

    def snapshot(self, path: Path) -> SnapshotHandle:
        """Copy `path` to a new timestamped file.

        Args:
            path: File about to be mutated

        Returns:
            Handle naming the snapshot, for rollback instructions

        Raises:
            NotFoundError: If `path` does not exist
            SnapshotError: If the copy cannot be written
        """
        path = Path(path)
        if not path.is_file():
            msg = f"File not found: {path}"
            raise NotFoundError(msg, details={"path": str(path)})

        timestamp = self.clock().replace(microsecond=0)
        target = self.snapshot_path_for(path, timestamp)

        # staged under a temp name; an older same-second snapshot survives a failed copy
        staging = target.with_name(f".{target.name}.tmp")
        try:
            mode = stat.S_IMODE(path.stat().st_mode)
            staging.unlink(missing_ok=True)
            shutil.copy2(path, staging)
            os.replace(staging, target)
        except OSError as e:
            staging.unlink(missing_ok=True)
            msg = f"Failed to snapshot {path}: {e}"
            raise SnapshotError(
                msg,
                details={"path": str(path), "target": str(target)},
            ) from e

        logger.info("Snapshot of %s written to %s", path, target)
        return SnapshotHandle(source=path, path=target, timestamp=timestamp, mode=mode)

    def list_snapshots(self, path: Path) -> list[Path]:
        """List existing snapshots of `path`, newest first."""
        path = Path(path)
        pattern = re.compile(
            rf"^{re.escape(path.name)}{re.escape(SNAPSHOT_INFIX)}(\d{{8}}_\d{{6}})(?:\.(\d+))?$",
        )
        if not path.parent.is_dir():
            return []

        found: list[tuple[str, int, Path]] = []
        for candidate in path.parent.iterdir():
            match = pattern.match(candidate.name)
            if match and candidate.is_file():
                found.append((match.group(1), int(match.group(2) or 0), candidate))

        found.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [item[2] for item in found]
