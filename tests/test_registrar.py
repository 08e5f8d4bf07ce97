"""Tests for the registration tool adapter."""

import subprocess

import pytest

from keysudo.exceptions import RegistrationError, ValidationError
from keysudo.registrar import build_command, detect_target_user, register_credential


def _completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestRegistrar:
    """Test credential acquisition through pamu2fcfg."""

    @pytest.fixture(autouse=True)
    def tool_installed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Pretend pamu2fcfg is on PATH."""
        monkeypatch.setattr("keysudo.registrar.shutil.which", lambda name: f"/usr/bin/{name}")

    def test_command_for_other_user(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test registration for another user goes through su."""
        monkeypatch.setattr("keysudo.registrar.getpass.getuser", lambda: "root")
        assert build_command("alice", "pam://host1") == [
            "su", "-", "alice", "-c", "pamu2fcfg -opam://host1 -ipam://host1",
        ]

    def test_command_for_current_user(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test registration for the current user runs the tool directly."""
        monkeypatch.setattr("keysudo.registrar.getpass.getuser", lambda: "alice")
        assert build_command("alice", "pam://host1") == [
            "pamu2fcfg", "-opam://host1", "-ipam://host1",
        ]

    def test_register_success(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the last output line is parsed as the record."""
        monkeypatch.setattr(
            "keysudo.registrar.subprocess.run",
            lambda *a, **k: _completed("Touch the device\nalice:KH,PK,es256,+presence\n"),
        )
        record = register_credential("alice", "pam://host1")
        assert record.identity == "alice"
        assert record.payload == "KH,PK,es256,+presence"

    def test_tool_failure(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a non-zero exit raises RegistrationError."""
        monkeypatch.setattr(
            "keysudo.registrar.subprocess.run",
            lambda *a, **k: _completed(stderr="No device found", returncode=1),
        )
        with pytest.raises(RegistrationError, match="No device found"):
            register_credential("alice", "pam://host1")

    def test_empty_output(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a silent success is still an error."""
        monkeypatch.setattr("keysudo.registrar.subprocess.run", lambda *a, **k: _completed())
        with pytest.raises(RegistrationError, match="no output"):
            register_credential("alice", "pam://host1")

    def test_malformed_output(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test output without a payload is rejected."""
        monkeypatch.setattr("keysudo.registrar.subprocess.run", lambda *a, **k: _completed("alice:\n"))
        with pytest.raises(ValidationError):
            register_credential("alice", "pam://host1")

    def test_wrong_identity(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a record for another user is rejected."""
        monkeypatch.setattr("keysudo.registrar.subprocess.run", lambda *a, **k: _completed("bob:XYZ\n"))
        with pytest.raises(ValidationError, match="expected 'alice'"):
            register_credential("alice", "pam://host1")

    def test_tool_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a missing tool is reported before running anything."""
        monkeypatch.setattr("keysudo.registrar.shutil.which", lambda name: None)
        with pytest.raises(RegistrationError, match="not found"):
            register_credential("alice", "pam://host1")

    def test_detect_user_from_sudo(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test SUDO_USER wins."""
        monkeypatch.setenv("SUDO_USER", "alice")
        assert detect_target_user() == "alice"

    def test_detect_user_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test an undetectable user raises ValidationError."""
        monkeypatch.delenv("SUDO_USER", raising=False)

        def no_login() -> str:
            raise OSError("no controlling terminal")

        monkeypatch.setattr("keysudo.registrar.os.getlogin", no_login)
        with pytest.raises(ValidationError, match="--user"):
            detect_target_user()
