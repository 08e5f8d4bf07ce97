"""KeySudo: security-key authentication for sudo via pam_u2f."""

__version__ = "0.1.0"
__author__ = "KeySudo Contributors"
__description__ = "Security-key authentication for sudo via pam_u2f"

from .engine import KeySudoEngine
from .mapping import MappingStore
from .models import AuthMode, CredentialRecord, PolicyConfig
from .patcher import StackPatcher
from .settings import KeySudoSettings, load_settings
from .snapshot import SnapshotManager
from .synthesizer import synthesize

__all__ = [
    "AuthMode",
    "CredentialRecord",
    "KeySudoEngine",
    "KeySudoSettings",
    "MappingStore",
    "PolicyConfig",
    "SnapshotManager",
    "StackPatcher",
    "load_settings",
    "synthesize",
]
