"""Tests for the mapping store merger."""

import stat
from pathlib import Path

import pytest

from keysudo.exceptions import MergeError, ValidationError
from keysudo.mapping import MappingStore, identity_of, merge
from keysudo.models import CredentialRecord


def _record(raw: str) -> CredentialRecord:
    return CredentialRecord.parse(raw)


class TestMappingStore:
    """Test per-identity record maintenance."""

    @pytest.fixture
    def store_path(self, tmp_path: Path) -> Path:
        """Path of a mapping store with two users."""
        path = tmp_path / "u2f_mappings"
        path.write_text("alice:AAA\nbob:BBB\n", encoding="utf-8")
        return path

    @pytest.fixture
    def store(self, store_path: Path) -> MappingStore:
        """Store that never attempts a chown."""
        return MappingStore(store_path, owner=None, group=None)

    def test_replace_existing_identity(self, store: MappingStore, store_path: Path) -> None:
        """Test re-merging an identity replaces its record only."""
        result = store.merge("alice", _record("alice:CCC"))

        lines = store_path.read_text(encoding="utf-8").splitlines()
        assert sorted(lines) == ["alice:CCC", "bob:BBB"]
        assert result.replaced is True
        assert result.identity == "alice"

    def test_add_new_identity(self, store: MappingStore, store_path: Path) -> None:
        """Test a new identity is appended and others kept verbatim."""
        result = store.merge("carol", _record("carol:KH,PK,es256,+presence"))

        assert store_path.read_text(encoding="utf-8") == (
            "alice:AAA\nbob:BBB\ncarol:KH,PK,es256,+presence\n"
        )
        assert result.replaced is False

    def test_single_record_per_identity(self, store: MappingStore, store_path: Path) -> None:
        """Test any merge sequence leaves one line per identity, last write winning."""
        for raw in ["alice:1", "bob:2", "alice:3", "carol:4", "alice:5", "bob:6"]:
            record = _record(raw)
            store.merge(record.identity, record)

        lines = store_path.read_text(encoding="utf-8").splitlines()
        identities = [identity_of(line) for line in lines]
        assert len(identities) == len(set(identities))
        assert dict(line.split(":", 1) for line in lines) == {
            "alice": "5",
            "bob": "6",
            "carol": "4",
        }

    def test_prefix_identity_not_confused(self, tmp_path: Path) -> None:
        """Test 'al' does not remove 'alice'."""
        path = tmp_path / "u2f_mappings"
        path.write_text("alice:AAA\n", encoding="utf-8")
        MappingStore(path, owner=None, group=None).merge("al", _record("al:XXX"))
        assert path.read_text(encoding="utf-8").splitlines() == ["alice:AAA", "al:XXX"]

    def test_missing_store_created(self, tmp_path: Path) -> None:
        """Test an absent store is treated as empty and created with parents."""
        path = tmp_path / "nested" / "u2f_mappings"
        MappingStore(path, owner=None, group=None).merge("alice", _record("alice:AAA"))
        assert path.read_text(encoding="utf-8") == "alice:AAA\n"

    def test_permissions_enforced(self, store: MappingStore, store_path: Path) -> None:
        """Test the file ends up owner rw, group r, no other access."""
        store_path.chmod(0o666)
        store.merge("alice", _record("alice:CCC"))
        assert stat.S_IMODE(store_path.stat().st_mode) == 0o640

    def test_blank_lines_dropped(self, tmp_path: Path) -> None:
        """Test blank lines are not kept as records."""
        path = tmp_path / "u2f_mappings"
        path.write_text("alice:AAA\n\n\nbob:BBB", encoding="utf-8")
        MappingStore(path, owner=None, group=None).merge("bob", _record("bob:CCC"))
        assert path.read_text(encoding="utf-8") == "alice:AAA\nbob:CCC\n"

    def test_other_lines_kept_byte_for_byte(self, tmp_path: Path) -> None:
        """Test carriage returns and form feeds in other records survive."""
        path = tmp_path / "u2f_mappings"
        path.write_bytes(b"alice:AAA\r\ncarol:C\x0cC\nbob:BBB\n")
        MappingStore(path, owner=None, group=None).merge("bob", _record("bob:ZZZ"))
        assert path.read_bytes() == b"alice:AAA\r\ncarol:C\x0cC\nbob:ZZZ\n"

    def test_rewrite_keeps_existing_owner_as_root(
        self,
        store: MappingStore,
        store_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test the replacement file inherits the store's owner and group."""
        original = store_path.stat()
        calls: list[tuple[Path, int, int]] = []
        monkeypatch.setattr("keysudo.fs.os.geteuid", lambda: 0)
        monkeypatch.setattr(
            "keysudo.fs.os.chown",
            lambda path, uid, gid: calls.append((Path(path), uid, gid)),
        )

        store.merge("alice", _record("alice:CCC"))

        assert [(uid, gid) for _, uid, gid in calls] == [(original.st_uid, original.st_gid)]
        assert calls[0][0] != store_path

    def test_identity_mismatch_rejected(self, store: MappingStore, store_path: Path) -> None:
        """Test a record registered for someone else is refused."""
        before = store_path.read_bytes()
        with pytest.raises(ValidationError, match="not 'alice'"):
            store.merge("alice", _record("mallory:EVIL"))
        assert store_path.read_bytes() == before

    def test_identities(self, store: MappingStore) -> None:
        """Test enrolled identities are listed in file order."""
        assert store.identities() == ["alice", "bob"]

    def test_write_failure_loses_nothing(
        self,
        store: MappingStore,
        store_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a failed rename raises MergeError and keeps the old store."""
        before = store_path.read_bytes()

        def failing_replace(*args: object, **kwargs: object) -> None:
            raise OSError(13, "Permission denied")

        monkeypatch.setattr("keysudo.fs.os.replace", failing_replace)
        with pytest.raises(MergeError) as exc_info:
            store.merge("alice", _record("alice:CCC"))

        assert store_path.read_bytes() == before
        assert exc_info.value.details["identity"] == "alice"
        assert exc_info.value.details["path"] == str(store_path)

    def test_ownership_skipped_when_not_root(
        self,
        store_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test chown is not attempted without root."""
        monkeypatch.setattr("keysudo.mapping.os.geteuid", lambda: 1000)
        result = MappingStore(store_path).merge("alice", _record("alice:CCC"))
        assert result.ownership_enforced is False

    def test_ownership_enforced_as_root(
        self,
        store_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test chown to the configured owner runs as root."""
        calls: list[tuple[object, int, int]] = []
        monkeypatch.setattr("keysudo.mapping.os.geteuid", lambda: 0)
        monkeypatch.setattr(
            "keysudo.mapping.os.chown",
            lambda path, uid, gid: calls.append((path, uid, gid)),
        )
        result = MappingStore(store_path, owner=0, group=42).merge("alice", _record("alice:CCC"))

        assert result.ownership_enforced is True
        assert calls[-1] == (store_path, 0, 42)

    def test_module_level_merge(self, store_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the convenience function merges with defaults."""
        monkeypatch.setattr("keysudo.mapping.os.geteuid", lambda: 1000)
        merge(store_path, "bob", _record("bob:ZZZ"))
        assert sorted(store_path.read_text(encoding="utf-8").splitlines()) == [
            "alice:AAA",
            "bob:ZZZ",
        ]
