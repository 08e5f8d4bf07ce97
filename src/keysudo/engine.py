"""Unit of work: merge the credential, snapshot the stack, patch it."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable

from pydantic import ValidationError as PydanticValidationError

from .exceptions import KeySudoError, ValidationError
from .host import build_origin, resolve_hostname
from .mapping import MappingStore
from .models import ApplyResult, AuthMode, CredentialRecord, PolicyConfig
from .patcher import StackPatcher
from .settings import KeySudoSettings
from .snapshot import SnapshotManager
from .synthesizer import synthesize

logger = logging.getLogger(__name__)


class KeySudoEngine:
    """Applies an authentication policy to the host.

    The sequence is not transactional. Each step is durable on its own, and
    re-running the whole sequence with the same inputs is idempotent, which
    is how a partially applied run is repaired.
    """

    def __init__(
        self,
        settings: KeySudoSettings | None = None,
        clock: Callable[[], datetime] = datetime.now,
        hostname: Callable[[], str] = resolve_hostname,
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Engine settings, defaults when omitted
            clock: Time source for snapshot names
            hostname: Host identity source for the origin
        """
        self.settings = settings or KeySudoSettings()
        self.hostname = hostname
        self.snapshots = SnapshotManager(clock=clock, unique=self.settings.unique_snapshots)
        self.patcher = StackPatcher(
            module_reference=self.settings.module_reference,
            include_marker=self.settings.include_marker,
            mode=self.settings.stack_mode,
        )

    def default_origin(self) -> str:
        """Origin built from the local host name."""
        return build_origin(self.hostname(), self.settings.origin_scheme)

    def build_policy(
        self,
        mode: str | AuthMode,
        prompt_cue: bool = True,
        mapping_store_path: Path | None = None,
        origin: str | None = None,
    ) -> PolicyConfig:
        """Build the immutable policy value once from user input.

        Raises:
            ValidationError: If the mode, path or origin is unusable
        """
        try:
            return PolicyConfig(
                mode=AuthMode.from_value(mode),
                prompt_cue=prompt_cue,
                mapping_store_path=mapping_store_path or self.settings.mapping_store,
                origin_identifier=origin or self.default_origin(),
            )
        except PydanticValidationError as e:
            msg = f"Invalid policy: {e.errors()[0]['msg']}"
            raise ValidationError(msg, details={"mode": str(mode)}) from e

    def mapping_store(self, path: Path) -> MappingStore:
        """Mapping store at `path` with the configured permissions."""
        return MappingStore(
            path,
            mode=self.settings.mapping_mode,
            owner=self.settings.mapping_owner,
            group=self.settings.mapping_group,
        )

    def apply(
        self,
        policy: PolicyConfig,
        identity: str,
        record: CredentialRecord,
        stack_file: Path | None = None,
        prune_duplicates: bool | None = None,
    ) -> ApplyResult:
        """Record the credential, then snapshot and patch the stack file.

        Args:
            policy: Policy to enforce
            identity: User the credential belongs to
            record: Credential record from the registration tool
            stack_file: Stack file override
            prune_duplicates: Override of the settings flag

        Returns:
            What was done at each step

        Raises:
            KeySudoError: On any failure. Errors raised after the snapshot
                carry its path in `details["snapshot"]`.
        """
        stack_file = Path(stack_file or self.settings.stack_file)
        if prune_duplicates is None:
            prune_duplicates = self.settings.prune_duplicates

        merge_result = self.mapping_store(policy.mapping_store_path).merge(identity, record)

        handle = self.snapshots.snapshot(stack_file)
        line = synthesize(policy, self.settings.module_reference)
        try:
            patch_result = self.patcher.patch(
                stack_file,
                line,
                snapshot=handle,
                prune_duplicates=prune_duplicates,
            )
        except KeySudoError as e:
            e.details.setdefault("snapshot", str(handle.path))
            logger.error("Stack file left as before; snapshot at %s", handle.path)
            raise

        return ApplyResult(
            policy=policy,
            line=line,
            merge=merge_result,
            snapshot=handle,
            patch=patch_result,
        )
