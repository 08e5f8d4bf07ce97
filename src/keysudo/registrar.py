"""Credential acquisition through the external pamu2fcfg tool."""

from __future__ import annotations

import getpass
import logging
import os
import shlex
import shutil
import subprocess

from .exceptions import RegistrationError, ValidationError
from .models import CredentialRecord

logger = logging.getLogger(__name__)

REGISTRATION_TOOL = "pamu2fcfg"


def detect_target_user() -> str:
    """Name of the user who invoked sudo, or the login user.

    Raises:
        ValidationError: If no user can be determined
    """
    user = os.environ.get("SUDO_USER")
    if not user:
        try:
            user = os.getlogin()
        except OSError:
            user = None
    if not user:
        msg = "Could not detect actual user. Please specify with --user USERNAME"
        raise ValidationError(msg)
    return user


def build_command(user: str, origin: str) -> list[str]:
    """Command line that registers a key for `user` against `origin`."""
    tool = [REGISTRATION_TOOL, f"-o{origin}", f"-i{origin}"]
    if user == getpass.getuser():
        return tool
    return ["su", "-", user, "-c", shlex.join(tool)]


def register_credential(user: str, origin: str, timeout: float | None = 120.0) -> CredentialRecord:
    """Run the registration tool and return the record it prints.

    The device must be touched while the tool runs; the payload is not
    interpreted.

    Raises:
        RegistrationError: If the tool is missing, fails or times out
        ValidationError: If the output is not `identity:payload`
    """
    if shutil.which(REGISTRATION_TOOL) is None:
        msg = f"{REGISTRATION_TOOL} not found; install the libpam-u2f tools first"
        raise RegistrationError(msg, details={"identity": user})

    command = build_command(user, origin)
    logger.info("Registering credential for %s with origin %s", user, origin)
    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        msg = f"Failed to run {REGISTRATION_TOOL}: {e}"
        raise RegistrationError(msg, details={"identity": user}) from e

    if completed.returncode != 0:
        output = (completed.stderr or completed.stdout).strip()
        msg = f"{REGISTRATION_TOOL} exited with status {completed.returncode}: {output}"
        raise RegistrationError(msg, details={"identity": user})

    lines = [line for line in completed.stdout.splitlines() if line.strip()]
    if not lines:
        msg = f"{REGISTRATION_TOOL} produced no output"
        raise RegistrationError(msg, details={"identity": user})

    record = CredentialRecord.parse(lines[-1])
    if record.identity != user:
        msg = f"Registered record is for '{record.identity}', expected '{user}'"
        raise ValidationError(msg, details={"identity": user})
    return record
