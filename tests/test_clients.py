"""
Tests for client ~/.ssh/config handling.
"""

import os
import stat

import pytest

from minipc import clients
from minipc.clients import has_ssh_host, render_host_block, add_ssh_host, run_client, PROXY_COMMAND
from minipc.error_handling import ValidationError


class TestSshConfig:
    def test_render_host_block(self):
        block = render_host_block("minipc", "ab12.example.com", "alice", comment="MiniPC")
        assert block == ("\n# MiniPC\nHost minipc\n  HostName ab12.example.com\n"
                         f"  ProxyCommand {PROXY_COMMAND}\n  User alice\n")

    def test_has_ssh_host(self):
        text = "Host minipc-old\n  HostName x\nHost minipc\n  HostName y\n"
        assert has_ssh_host(text, "minipc")
        assert not has_ssh_host("Host minipc-old\n", "minipc")
        assert not has_ssh_host("", "minipc")

    def test_add_once(self, tmp_path):
        ssh_dir = tmp_path / ".ssh"
        assert add_ssh_host("minipc", "ab12.example.com", "alice", ssh_dir=str(ssh_dir))
        assert not add_ssh_host("minipc", "other.example.com", "bob", ssh_dir=str(ssh_dir))
        text = (ssh_dir / "config").read_text()
        assert text.count("Host minipc\n") == 1
        assert "other.example.com" not in text
        assert stat.S_IMODE(os.stat(ssh_dir / "config").st_mode) == 0o600
        assert stat.S_IMODE(os.stat(ssh_dir).st_mode) == 0o700

    def test_appends_to_existing(self, tmp_path):
        ssh_dir = tmp_path / ".ssh"
        ssh_dir.mkdir()
        (ssh_dir / "config").write_text("Host github.com\n  User git\n")
        add_ssh_host("server-vm", "vm-1.example.com", "ubuntu", ssh_dir=str(ssh_dir))
        text = (ssh_dir / "config").read_text()
        assert text.startswith("Host github.com\n")
        assert "Host server-vm\n  HostName vm-1.example.com\n" in text


class TestClientPhases:
    def test_unknown_phase(self):
        with pytest.raises(ValidationError) as exc:
            run_client("phase9")
        assert exc.value.code == "MPC-E803"

    def test_phase1_writes_host_alias(self, tmp_path, monkeypatch):
        answers = iter(["ab12.example.com", "alice"])
        monkeypatch.setattr(clients, "safe_text_ask", lambda *a, **kw: next(answers))
        monkeypatch.setattr(clients, "user_home", lambda user=None: str(tmp_path))
        assert clients.client_phase1() == "minipc"
        assert "Host minipc\n  HostName ab12.example.com\n" in (tmp_path / ".ssh" / "config").read_text()

    def test_missing_hostname(self, monkeypatch):
        monkeypatch.setattr(clients, "safe_text_ask", lambda *a, **kw: "")
        with pytest.raises(ValidationError) as exc:
            clients.client_phase2()
        assert exc.value.code == "MPC-E801"
