"""
Tests for backup staging, the manifest and restoring user files.
"""

import json
import os
import stat
from datetime import datetime

import pytest

from minipc import backup
from minipc.backup import (
    Stager, StagedItem, SectionRecord, archive_name, render_manifest, parse_manifest, relocate,
    pack, extract, load_manifest, restore_item, run_restore, MANIFEST_NAME, REFERENCE,
)
from minipc.error_handling import StorageError, ValidationError, PermissionError


class TestManifest:
    def test_archive_name(self):
        assert archive_name(datetime(2025, 3, 4, 5, 6, 7)) == "minipc-backup-20250304-050607.tar.gz"

    def test_render_and_parse(self):
        records = {"ssh": SectionRecord("SSH keys", [StagedItem("ssh/.ssh", "/home/alice/.ssh")])}
        text = render_manifest("alice", "/home/alice", records, created=datetime(2025, 1, 2, 3, 4, 5))
        data = json.loads(text)
        assert data["version"] == 1
        assert data["created"] == "2025-01-02T03:04:05"
        assert data["home"] == "/home/alice"
        assert parse_manifest(text) == records

    def test_invalid_json(self):
        with pytest.raises(StorageError) as exc:
            parse_manifest("{not json")
        assert exc.value.code == "MPC-E611"

    def test_unknown_version(self):
        with pytest.raises(StorageError) as exc:
            parse_manifest(json.dumps({"version": 99, "sections": {}}))
        assert exc.value.code == "MPC-E612"

    @pytest.mark.parametrize("origin,expected", [
        ("/home/alice/.ssh", "/home/bob/.ssh"),
        ("/home/alice", "/home/bob"),
        ("/home/alice2/.ssh", "/home/alice2/.ssh"),
        ("/etc/fstab", "/etc/fstab"),
    ])
    def test_relocate(self, origin, expected):
        assert relocate(origin, "/home/alice/", "/home/bob") == expected


class TestStager:
    def test_copy_dir_and_file(self, tmp_path):
        home = tmp_path / "home"
        (home / ".ssh").mkdir(parents=True)
        (home / ".ssh" / "id_ed25519").write_text("key")
        (home / "starship.toml").write_text("x = 1")
        stage = tmp_path / "stage"
        stager = Stager(str(stage), "alice")

        item = stager.copy("ssh", str(home / ".ssh"))
        assert item == StagedItem("ssh/.ssh", str(home / ".ssh"))
        assert (stage / "ssh" / ".ssh" / "id_ed25519").read_text() == "key"
        assert stager.copy("config", str(home / "starship.toml")).staged == "config/starship.toml"

    def test_copy_missing(self, tmp_path):
        assert Stager(str(tmp_path), "alice").copy("ssh", str(tmp_path / "nope")) is None

    def test_write(self, tmp_path):
        item = Stager(str(tmp_path), "alice").write("filesystem", "lsblk.txt", "sda\n")
        assert item.kind == REFERENCE
        assert (tmp_path / "filesystem" / "lsblk.txt").read_text() == "sda\n"


class TestArchive:
    def test_pack_extract_manifest(self, tmp_path):
        stage = tmp_path / "stage"
        stager = Stager(str(stage), "alice")
        item = stager.write("filesystem", "fstab", "UUID=1 / btrfs\n", origin="/etc/fstab")
        (stage / MANIFEST_NAME).write_text(
            render_manifest("alice", "/home/alice", {"filesystem": SectionRecord("fstab", [item])}))
        archive = tmp_path / "out.tar.gz"
        pack(str(stage), str(archive))
        assert stat.S_IMODE(os.stat(archive).st_mode) == 0o600

        dest = tmp_path / "extract"
        dest.mkdir()
        extract(str(archive), str(dest))
        records, home = load_manifest(str(dest))
        assert home == "/home/alice"
        assert records["filesystem"].items == [item]
        assert (dest / "filesystem" / "fstab").read_text() == "UUID=1 / btrfs\n"

    def test_extract_corrupt(self, tmp_path):
        bad = tmp_path / "bad.tar.gz"
        bad.write_bytes(b"not a tarball")
        with pytest.raises(StorageError) as exc:
            extract(str(bad), str(tmp_path))
        assert exc.value.code == "MPC-E613"

    def test_manifest_missing(self, tmp_path):
        with pytest.raises(StorageError) as exc:
            load_manifest(str(tmp_path))
        assert exc.value.code == "MPC-E614"


class TestRestoreItem:
    def test_user_dir_relocated_with_permissions(self, tmp_path):
        extract_dir = tmp_path / "extract"
        (extract_dir / "ssh" / ".ssh").mkdir(parents=True)
        (extract_dir / "ssh" / ".ssh" / "id_ed25519").write_text("secret")
        (extract_dir / "ssh" / ".ssh" / "id_ed25519.pub").write_text("public")
        new_home = tmp_path / "bob"
        new_home.mkdir()

        item = StagedItem("ssh/.ssh", "/home/alice/.ssh")
        restore_item(str(extract_dir), "ssh", item, "/home/alice", str(new_home))
        ssh_dir = new_home / ".ssh"
        assert (ssh_dir / "id_ed25519").read_text() == "secret"
        assert stat.S_IMODE(os.stat(ssh_dir).st_mode) == 0o700
        assert stat.S_IMODE(os.stat(ssh_dir / "id_ed25519").st_mode) == 0o600
        assert stat.S_IMODE(os.stat(ssh_dir / "id_ed25519.pub").st_mode) == 0o644

    def test_reference_is_not_copied(self, tmp_path):
        (tmp_path / "filesystem").mkdir()
        (tmp_path / "filesystem" / "lsblk.txt").write_text("sda\n")
        target = tmp_path / "never"
        restore_item(str(tmp_path), "filesystem", StagedItem("filesystem/lsblk.txt", str(target), kind=REFERENCE),
                     "/home/alice", "/home/bob")
        assert not target.exists()


class TestRunRestore:
    def test_refuses_root(self, monkeypatch, tmp_path):
        monkeypatch.setattr(backup, "is_root", lambda: True)
        with pytest.raises(PermissionError) as exc:
            run_restore(str(tmp_path / "a.tar.gz"))
        assert exc.value.code == "MPC-E102"

    def test_missing_archive(self, monkeypatch, tmp_path):
        monkeypatch.setattr(backup, "is_root", lambda: False)
        with pytest.raises(ValidationError) as exc:
            run_restore(str(tmp_path / "a.tar.gz"))
        assert exc.value.code == "MPC-E804"
