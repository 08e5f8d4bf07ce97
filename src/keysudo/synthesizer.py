"""Line synthesizer for the owned pam_u2f stack entry."""

from __future__ import annotations

from .models import PolicyConfig

MODULE_REFERENCE = "pam_u2f.so"
CUE_TOKEN = "cue"
FIELD_SEPARATOR = "  "
AUTH_PHASE = "auth"


def build_options(policy: PolicyConfig) -> list[str]:
    """Ordered module options for a policy."""
    options: list[str] = []
    if policy.prompt_cue:
        options.append(CUE_TOKEN)
    options.append(f"authfile={policy.mapping_store_path}")
    options.append(f"origin={policy.origin_identifier}")
    return options


def synthesize(policy: PolicyConfig, module_reference: str = MODULE_REFERENCE) -> str:
    """Build the single stack line owned by KeySudo.

    Pure and deterministic: the same policy always yields the same bytes.

    Args:
        policy: Desired authentication policy
        module_reference: Module token written in the third field

    Returns:
        Stack line without a trailing newline
    """
    fields = [AUTH_PHASE, policy.mode.control, module_reference, *build_options(policy)]
    return FIELD_SEPARATOR.join(fields)
